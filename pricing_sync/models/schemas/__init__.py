from .base import ResponseBase
from .pricing_jobs import (
    EnqueueRequest,
    EnqueueResponse,
    RunNextRequest,
    QueueEntryRead,
    JobRunRead,
    RunOutcome,
    CancelRequest,
    ForceFinishRequest,
    StuckRunRead,
    SweepRequest,
    SweepSummary,
    CircuitBreakerRead,
    RetryEntryRead,
    RetryLedgerRead,
    ReviveRequest,
)

__all__ = [
    # Base
    "ResponseBase",

    # Pricing jobs
    "EnqueueRequest",
    "EnqueueResponse",
    "RunNextRequest",
    "QueueEntryRead",
    "JobRunRead",
    "RunOutcome",
    "CancelRequest",
    "ForceFinishRequest",
    "StuckRunRead",
    "SweepRequest",
    "SweepSummary",
    "CircuitBreakerRead",
    "RetryEntryRead",
    "RetryLedgerRead",
    "ReviveRequest",
]
