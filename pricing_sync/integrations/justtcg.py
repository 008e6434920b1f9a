"""JustTCG upstream pricing client (batched variant lookups).

One ``fetch_prices`` call prices up to ``batch_size`` variant identifiers with a
single ``POST /cards/batch``. Outcomes are folded into a ``BatchFetchResult``
instead of raising, with one exception: credential failures (401/403 or a
missing API key) raise ``UpstreamAuthError`` immediately because no amount of
retrying will fix them.

Retry semantics per request:
  - 429: exponential backoff (BACKOFF_POLICY), bounded attempts.
  - 5xx / network errors / timeouts / undecodable bodies: same bounded backoff.
  - other 4xx: not retried.
A successful but empty batch response for more than one identifier falls back
to one ``GET /cards?variantId=`` per identifier, so "nothing priced" can be
told apart from "bad batch filter".

Every request made (including retries) is passed to the optional
``on_request`` hook so callers can persist usage accounting.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence

import aiohttp

from pricing_sync.config import BACKOFF_POLICY, JUSTTCG_SETTINGS, PROCESSOR_SETTINGS
from pricing_sync.utils import get_logger
from pricing_sync.utils.backoff import compute_backoff_seconds
from pricing_sync.utils.normalization import normalize_condition, normalize_printing
from pricing_sync.utils.ratelimiter import WindowRateLimiter

logger = get_logger(__name__)

BATCH_ENDPOINT = "/cards/batch"
SINGLE_ENDPOINT = "/cards"


class UpstreamError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    """Credential missing or rejected (401/403). Fatal for the run."""


@dataclass(slots=True)
class PriceResult:
    item_id: str
    price: float | None
    price_change_24h: float | None = None
    condition: str | None = None
    printing: str | None = None
    currency: str = "USD"
    source_updated_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BatchFetchResult:
    prices: list[PriceResult]
    missing: list[str]
    attempts: int
    requests_made: int
    rate_limited: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class RequestRecord:
    endpoint: str
    status_code: int  # 0 when no HTTP response was received
    response_time_ms: int
    success: bool
    error_message: str | None = None


@dataclass(slots=True)
class _Response:
    payload: Any
    attempts: int
    rate_limited: bool = False
    error: str | None = None


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(epoch: Any) -> datetime | None:
    seconds = _to_float(epoch)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_variants(payload: Any, wanted: Iterable[str] | None = None) -> list[PriceResult]:
    """Flatten ``data[].variants[]`` into PriceResults, optionally filtered to ``wanted`` ids."""
    wanted_set = set(wanted) if wanted is not None else None
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    results: list[PriceResult] = []
    for card in data:
        if not isinstance(card, dict):
            continue
        variants = card.get("variants")
        # Some responses return variants directly rather than nested in cards.
        entries = variants if isinstance(variants, list) else [card]
        for variant in entries:
            if not isinstance(variant, dict) or not variant.get("id"):
                continue
            variant_id = str(variant["id"])
            if wanted_set is not None and variant_id not in wanted_set:
                continue
            results.append(
                PriceResult(
                    item_id=variant_id,
                    price=_to_float(variant.get("price")),
                    price_change_24h=_to_float(variant.get("priceChange24h")),
                    condition=normalize_condition(variant.get("condition")),
                    printing=normalize_printing(variant.get("printing")),
                    currency=variant.get("currency") or "USD",
                    source_updated_at=_to_datetime(variant.get("lastUpdated")),
                    raw={**variant, "cardId": card.get("id") if variants is not None else variant.get("cardId")},
                )
            )
    return results


class BatchPricingClient:
    """Async client for the upstream pricing API."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        batch_size: int | None = None,
        rate_limiter: WindowRateLimiter | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        on_request: Callable[[RequestRecord], None] | None = None,
    ):
        self.api_key = api_key if api_key is not None else JUSTTCG_SETTINGS["api_key"]
        self.base_url = str(base_url or JUSTTCG_SETTINGS["base_url"]).rstrip("/")
        self.batch_size = int(batch_size or PROCESSOR_SETTINGS["batch_size"])
        self.max_attempts = int(max_attempts or BACKOFF_POLICY["max_attempts"])
        self.rate_limiter = rate_limiter or WindowRateLimiter(sleep=sleep)
        self.on_request = on_request
        self._sleep = sleep
        self._monotonic = monotonic
        self._session: aiohttp.ClientSession | None = None

    # ----------------------------- transport ----------------------------- #
    def _headers(self) -> dict[str, str]:
        return {
            "X-API-Key": str(self.api_key),
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": str(JUSTTCG_SETTINGS["user_agent"]),
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=float(JUSTTCG_SETTINGS["request_timeout_seconds"]))  # type: ignore[arg-type]
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._headers())
        return self._session

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
    ) -> tuple[int, Any]:
        """Issue one HTTP request. Returns (status, parsed body or error text)."""
        session = await self._get_session()
        async with session.request(method, f"{self.base_url}{path}", params=params, json=json) as response:
            if response.status >= 400:
                text = await response.text(errors="replace")
                return response.status, {"error": text[:400]}
            return response.status, await response.json(content_type=None)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "BatchPricingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _record(self, endpoint: str, status: int, started: float, error: str | None) -> None:
        if self.on_request is None:
            return
        self.on_request(
            RequestRecord(
                endpoint=endpoint,
                status_code=status,
                response_time_ms=int((self._monotonic() - started) * 1000),
                success=200 <= status < 300,
                error_message=error,
            )
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
    ) -> _Response:
        if not self.api_key:
            raise UpstreamAuthError("JUSTTCG_API_KEY is not configured")

        attempts = 0
        rate_limited = False
        error: str | None = None
        while attempts < self.max_attempts:
            attempts += 1
            await self.rate_limiter.acquire()
            started = self._monotonic()
            try:
                status, payload = await self._send(method, path, params=params, json=json)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error = f"network error: {e.__class__.__name__}: {e}"
                self._record(path, 0, started, error)
            except ValueError as e:
                # JSONDecodeError and UnicodeDecodeError: a gateway page or a garbled body.
                error = f"invalid response body: {e.__class__.__name__}: {e}"[:400]
                self._record(path, 0, started, error)
            else:
                if 200 <= status < 300:
                    self._record(path, status, started, None)
                    return _Response(payload=payload, attempts=attempts, rate_limited=rate_limited)
                detail = payload.get("error") if isinstance(payload, dict) else None
                error = f"HTTP {status}" + (f": {detail}" if detail else "")
                self._record(path, status, started, error)
                if status in (401, 403):
                    logger.error("Upstream rejected credentials", endpoint=path, status_code=status)
                    raise UpstreamAuthError(f"API authentication failed ({status})", status_code=status)
                if status == 429:
                    rate_limited = True
                elif status < 500:
                    # Client error other than auth/rate limit: retrying will not help.
                    break

            if attempts >= self.max_attempts:
                break
            backoff = compute_backoff_seconds(attempts)
            logger.warning(
                "Upstream request retry scheduled",
                endpoint=path,
                attempt=attempts,
                backoff_seconds=round(backoff, 2),
                error=error,
            )
            await self._sleep(backoff)

        return _Response(payload=None, attempts=attempts, rate_limited=rate_limited, error=error)

    # ----------------------------- public API ----------------------------- #
    async def fetch_prices(self, item_ids: Sequence[str]) -> BatchFetchResult:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return BatchFetchResult(prices=[], missing=[], attempts=0, requests_made=0)
        if len(ids) > self.batch_size:
            raise ValueError(f"Batch of {len(ids)} exceeds batch size {self.batch_size}")

        response = await self._request("POST", BATCH_ENDPOINT, json=[{"variantId": i} for i in ids])
        requests_made = response.attempts
        rate_limited = response.rate_limited
        prices = parse_variants(response.payload, ids) if response.payload is not None else []

        if response.error is None and not prices and len(ids) > 1:
            logger.info("Empty batch result, trying per-item fallback", batch_size=len(ids))
            for item_id in ids:
                single = await self._request("GET", SINGLE_ENDPOINT, params={"variantId": item_id})
                requests_made += single.attempts
                rate_limited = rate_limited or single.rate_limited
                if single.payload is not None:
                    prices.extend(parse_variants(single.payload, [item_id]))

        found = {p.item_id for p in prices}
        missing = [i for i in ids if i not in found]
        if response.error is not None:
            logger.warning(
                "Batch price fetch failed",
                batch_size=len(ids),
                attempts=response.attempts,
                rate_limited=rate_limited,
                error=response.error,
            )
        return BatchFetchResult(
            prices=prices,
            missing=missing,
            attempts=response.attempts,
            requests_made=requests_made,
            rate_limited=rate_limited,
            error=response.error,
        )


__all__ = [
    "BatchPricingClient",
    "BatchFetchResult",
    "PriceResult",
    "RequestRecord",
    "UpstreamError",
    "UpstreamAuthError",
    "parse_variants",
]
