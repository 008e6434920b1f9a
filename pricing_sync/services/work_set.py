"""Work-set selection for a pricing run.

A variant is eligible when it has never been priced or its ``last_priced_at``
is older than the staleness window. Variants the retry ledger has marked dead,
or whose next retry is not due yet, are skipped. Never-priced variants come
first, then the stalest. The set is capped at ``max_batches * batch_size`` so
``expected_batches`` never exceeds the per-run ceiling.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import case, or_, select
from sqlalchemy.orm import Session

from pricing_sync.config import PROCESSOR_SETTINGS
from pricing_sync.models.db import CatalogVariant, PricingVariantRetry


def stale_cutoff(now: datetime, staleness_minutes: int | None = None) -> datetime:
    minutes = int(staleness_minutes if staleness_minutes is not None else PROCESSOR_SETTINGS["staleness_window_minutes"])
    return now - timedelta(minutes=minutes)


def select_work_set(
    db: Session,
    game: str,
    now: datetime,
    *,
    staleness_minutes: int | None = None,
    limit: int | None = None,
) -> list[str]:
    cutoff = stale_cutoff(now, staleness_minutes)
    blocked = select(PricingVariantRetry.item_id).where(
        PricingVariantRetry.game == game,
        or_(
            PricingVariantRetry.retry_count > PricingVariantRetry.max_retries,
            PricingVariantRetry.next_retry_at > now,
        ),
    )
    query = (
        db.query(CatalogVariant.id)
        .filter(
            CatalogVariant.game == game,
            or_(CatalogVariant.last_priced_at.is_(None), CatalogVariant.last_priced_at < cutoff),
            CatalogVariant.id.not_in(blocked),
        )
        .order_by(
            case((CatalogVariant.last_priced_at.is_(None), 0), else_=1),
            CatalogVariant.last_priced_at.asc(),
            CatalogVariant.id.asc(),
        )
    )
    if limit is not None:
        query = query.limit(limit)
    return [row.id for row in query.all()]


def partition(item_ids: Sequence[str], batch_size: int) -> list[list[str]]:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [list(item_ids[i:i + batch_size]) for i in range(0, len(item_ids), batch_size)]


__all__ = ["select_work_set", "partition", "stale_cutoff"]
