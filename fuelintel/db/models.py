"""SQLAlchemy async database models for the FuelIntel price store.

Stations are upserted in place; price changes are append-only history rows.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class StationModel(Base):
    """Fuel station as last reported by the upstream."""

    __tablename__ = "stations"

    numero: Mapped[str] = mapped_column(String(64), primary_key=True)
    nombre: Mapped[str] = mapped_column(Text, nullable=False)
    direccion: Mapped[str | None] = mapped_column(Text)

    # Location
    lat: Mapped[float | None] = mapped_column(Float)
    lng: Mapped[float | None] = mapped_column(Float)
    entidad_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    municipio_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    brand: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("lat IS NULL OR (lat >= -90 AND lat <= 90)", name="check_station_lat"),
        CheckConstraint("lng IS NULL OR (lng >= -180 AND lng <= 180)", name="check_station_lng"),
    )


class PriceChangeModel(Base):
    """One observed price for a (station, fuel type); never updated or deleted."""

    __tablename__ = "price_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_numero: Mapped[str] = mapped_column(
        String(64), ForeignKey("stations.numero"), nullable=False
    )
    fuel_type: Mapped[str] = mapped_column(String(16), nullable=False)
    subproducto: Mapped[str | None] = mapped_column(Text)
    price: Mapped[float] = mapped_column(Float, nullable=False)

    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="check_price_positive"),
        CheckConstraint(
            "fuel_type IN ('regular', 'premium', 'diesel')",
            name="check_fuel_type_valid",
        ),
        Index("idx_price_changes_lookup", "station_numero", "fuel_type", "changed_at"),
    )
