from __future__ import annotations
"""SQLAlchemy models for pricing job runs and their cancellation requests."""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship, Mapped, mapped_column
from pricing_sync.database import Base
from .enums import JobRunStatus

if TYPE_CHECKING:  # pragma: no cover
    from .api_usage import PricingApiUsage


class PricingJobRun(Base):
    __tablename__ = "pricing_job_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Queue entry this run executes, if it was started by the scheduler
    queue_job_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("pricing_job_queue.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=JobRunStatus.RUNNING.value, index=True)

    expected_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancellation: Mapped["PricingJobControl | None"] = relationship(
        "PricingJobControl", back_populates="job_run", uselist=False, cascade="all, delete-orphan"
    )
    api_usage: Mapped[list["PricingApiUsage"]] = relationship(
        "PricingApiUsage", back_populates="job_run", cascade="all, delete-orphan"
    )

    @property
    def is_finished(self) -> bool:
        return self.status in JobRunStatus.terminal()


class PricingJobControl(Base):
    """Presence of a row is the cooperative-cancellation signal for a run."""
    __tablename__ = "pricing_job_control"
    job_run_id: Mapped[int] = mapped_column(Integer, ForeignKey("pricing_job_runs.id", ondelete="CASCADE"), primary_key=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    job_run: Mapped[PricingJobRun] = relationship("PricingJobRun", back_populates="cancellation")
