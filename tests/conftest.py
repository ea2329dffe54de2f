"""Pytest configuration and fixtures for FuelIntel tests.

Provides common fixtures for testing.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fuelintel.config import reset_config
from fuelintel.pipeline.fuel_types import FuelType
from fuelintel.pipeline.types import (
    LastKnownPrice,
    ParsedPrice,
    ParsedStation,
    StationRecord,
)

REGULAR_LABEL = "Regular (con un índice de octano ([RON+MON]/2) mínimo de 87)"
PREMIUM_LABEL = "Premium (con un índice de octano ([RON+MON]/2) mínimo de 91)"
DIESEL_LABEL = "Diésel"


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


def make_station(station_id: str, estado_id: int = 9, municipio_id: int = 15) -> StationRecord:
    return StationRecord(
        station_id=station_id,
        name=f"Estación {station_id}",
        address="Av. Insurgentes Sur 100",
        region_id=estado_id,
        subregion_id=estado_id * 1000 + municipio_id,
        latitude=19.43,
        longitude=-99.13,
    )


def make_price(station_id: str, fuel_type: FuelType, price: float) -> ParsedPrice:
    labels = {
        FuelType.REGULAR: REGULAR_LABEL,
        FuelType.PREMIUM: PREMIUM_LABEL,
        FuelType.DIESEL: DIESEL_LABEL,
    }
    return ParsedPrice(
        station_id=station_id,
        fuel_type=fuel_type,
        raw_label=labels[fuel_type],
        price=price,
        product="Gasolinas" if fuel_type is not FuelType.DIESEL else "Diésel",
    )


def make_parsed_station(station_id: str, prices: dict[FuelType, float]) -> ParsedStation:
    return ParsedStation(
        station=make_station(station_id),
        prices=[make_price(station_id, fuel, price) for fuel, price in prices.items()],
    )


def make_last_price(station_id: str, fuel_type: str, price: float) -> LastKnownPrice:
    return LastKnownPrice(
        station_id=station_id,
        fuel_type=fuel_type,
        price=price,
        changed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def price_row(
    numero: str,
    subproducto: str,
    precio: float | str,
    nombre: str = "Gasolinera Centro",
    latitud: float | None = 19.43,
    longitud: float | None = -99.13,
) -> dict:
    """Raw row shaped like the upstream Petroliferos endpoint."""
    return {
        "Numero": numero,
        "Nombre": nombre,
        "Direccion": "Av. Reforma 1",
        "Latitud": latitud,
        "Longitud": longitud,
        "Producto": "Diésel" if "sel" in subproducto else "Gasolinas",
        "SubProducto": subproducto,
        "PrecioVigente": precio,
    }


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.delenv("SCRAPER_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("SCRAPER_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("DRY_RUN", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def station_factory():
    return make_station


@pytest.fixture
def parsed_station_factory():
    return make_parsed_station


@pytest.fixture
def last_price_factory():
    return make_last_price


@pytest.fixture
def price_row_factory():
    return price_row
