from .enums import JobQueueStatus, JobRunStatus, CircuitState
from .job_queue import PricingJobQueueEntry
from .job_runs import PricingJobRun, PricingJobControl
from .circuit_breakers import PricingCircuitBreaker
from .variant_retries import PricingVariantRetry
from .catalog import CatalogVariant, PriceSnapshot
from .api_usage import PricingApiUsage

__all__ = [
    "JobQueueStatus",
    "JobRunStatus",
    "CircuitState",
    "PricingJobQueueEntry",
    "PricingJobRun",
    "PricingJobControl",
    "PricingCircuitBreaker",
    "PricingVariantRetry",
    "CatalogVariant",
    "PriceSnapshot",
    "PricingApiUsage",
]
