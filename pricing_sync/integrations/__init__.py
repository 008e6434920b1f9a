"""
Integrations package initialization.
Exports the upstream pricing client and its result/error types.
"""
from .justtcg import (
    BatchPricingClient,
    BatchFetchResult,
    PriceResult,
    RequestRecord,
    UpstreamError,
    UpstreamAuthError,
)

__all__ = [
    "BatchPricingClient",
    "BatchFetchResult",
    "PriceResult",
    "RequestRecord",
    "UpstreamError",
    "UpstreamAuthError",
]
