from __future__ import annotations
"""SQLAlchemy model for per-game upstream circuit breaker state."""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from pricing_sync.database import Base
from .enums import CircuitState


class PricingCircuitBreaker(Base):
    __tablename__ = "pricing_circuit_breaker"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    game: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default=CircuitState.CLOSED.value)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    recovery_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=1800)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
