from __future__ import annotations
"""SQLAlchemy model for per-request upstream API accounting."""
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship, Mapped, mapped_column
from pricing_sync.database import Base

if TYPE_CHECKING:  # pragma: no cover
    from .job_runs import PricingJobRun


class PricingApiUsage(Base):
    __tablename__ = "pricing_api_usage"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_run_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("pricing_job_runs.id", ondelete="CASCADE"), nullable=True, index=True)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    # 0 when the request never produced an HTTP response (network error / timeout)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    job_run: Mapped["PricingJobRun | None"] = relationship("PricingJobRun", back_populates="api_usage")
