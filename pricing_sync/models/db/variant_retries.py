from __future__ import annotations
"""SQLAlchemy model for the per-variant retry ledger."""
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from pricing_sync.database import Base


class PricingVariantRetry(Base):
    __tablename__ = "pricing_variant_retries"
    __table_args__ = (
        UniqueConstraint("game", "item_id", name="uq_pricing_variant_retries_game_item"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    item_id: Mapped[str] = mapped_column(String(128), nullable=False)
    game: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Number of failed attempts recorded; > max_retries marks the item dead.
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    @property
    def is_dead(self) -> bool:
        return self.retry_count > self.max_retries
