from __future__ import annotations
"""SQLAlchemy models for the catalog surface the sync engine reads and writes.

Catalog discovery/import is owned elsewhere; the engine only reads variant
identifiers plus their last-priced timestamp and writes fresh price fields and
immutable price snapshots.
"""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, ForeignKey, Numeric, JSON, Index
from sqlalchemy.orm import relationship, Mapped, mapped_column
from pricing_sync.database import Base


class CatalogVariant(Base):
    __tablename__ = "catalog_variants"
    __table_args__ = (
        Index("ix_catalog_variants_game_last_priced", "game", "last_priced_at"),
    )
    # Upstream variant identifier
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    game: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    card_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tcgplayer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    printing: Mapped[str | None] = mapped_column(String(64), nullable=True)
    condition: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    price: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    last_priced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    snapshots: Mapped[list["PriceSnapshot"]] = relationship("PriceSnapshot", back_populates="variant")


class PriceSnapshot(Base):
    """Immutable per-update record of the observed price fields."""
    __tablename__ = "price_snapshots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    variant_id: Mapped[str] = mapped_column(String(128), ForeignKey("catalog_variants.id"), nullable=False, index=True)
    game: Mapped[str] = mapped_column(String(64), nullable=False)
    job_run_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("pricing_job_runs.id", ondelete="SET NULL"), nullable=True)
    printing: Mapped[str | None] = mapped_column(String(64), nullable=True)
    condition: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    price: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    price_change_24h: Mapped[float | None] = mapped_column(Numeric(8, 2), nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    variant: Mapped[CatalogVariant] = relationship("CatalogVariant", back_populates="snapshots")
