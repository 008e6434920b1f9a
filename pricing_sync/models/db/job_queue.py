from __future__ import annotations
"""SQLAlchemy model for the per-game pricing job queue."""
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, Index, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from pricing_sync.database import Base
from .enums import JobQueueStatus

_ACTIVE_PREDICATE = text("status IN ('queued', 'running')")


class PricingJobQueueEntry(Base):
    __tablename__ = "pricing_job_queue"
    __table_args__ = (
        # At most one queued/running entry per game, enforced by the store itself.
        Index(
            "uq_pricing_job_queue_active_game",
            "game",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_pricing_job_queue_dequeue", "status", "priority", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobQueueStatus.QUEUED.value)
    # Higher runs first
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
