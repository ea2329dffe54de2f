"""Parsing and validation of raw upstream station price rows.

The upstream returns one row per (station, SubProducto). Rows are grouped
into ParsedStation records here, and anything the change detector must never
see (unknown fuel labels, non-positive prices, malformed stations) is
filtered out.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from fuelintel.pipeline.fuel_types import FuelType, map_subproducto_to_fuel_type, validate_fuel_type
from fuelintel.pipeline.types import ParsedPrice, ParsedStation, StationRecord

logger = logging.getLogger(__name__)


def composite_municipio_id(estado_id: int, municipio_id: int | str) -> int:
    """Municipio ids are only unique within an estado: estado_id * 1000 + municipio_id."""
    return int(estado_id) * 1000 + int(municipio_id)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class DataParser:
    """Turns raw StationPrice rows into validated ParsedStation records."""

    def __init__(self, max_valid_price: float = 100.0):
        """Initialize parser.

        Args:
            max_valid_price: Upper bound for a plausible per-litre price
        """
        self.max_valid_price = max_valid_price

    def parse_station_prices(
        self,
        rows: Iterable[dict],
        estado_id: int,
        municipio_id: int | str,
    ) -> list[ParsedStation]:
        """Group raw rows by station, keeping the first price per fuel type.

        Args:
            rows: Raw rows from the pricing endpoint
            estado_id: Estado the rows were fetched for
            municipio_id: Municipio the rows were fetched for

        Returns:
            Parsed stations in first-seen order
        """
        subregion_id = composite_municipio_id(estado_id, municipio_id)
        stations: dict[str, ParsedStation] = {}

        for row in rows:
            try:
                station_id = str(row.get("Numero") or "").strip()
                if not station_id:
                    logger.debug(f"Skipping row without station number: {row!r}")
                    continue

                parsed = stations.get(station_id)
                if parsed is None:
                    parsed = ParsedStation(
                        station=StationRecord(
                            station_id=station_id,
                            name=(row.get("Nombre") or "").strip(),
                            address=(row.get("Direccion") or "").strip(),
                            region_id=int(estado_id),
                            subregion_id=subregion_id,
                            latitude=_to_float(row.get("Latitud")) or None,
                            longitude=_to_float(row.get("Longitud")) or None,
                        )
                    )
                    stations[station_id] = parsed

                price = self._parse_price(row, station_id)
                if price is None:
                    continue
                if any(p.fuel_type is price.fuel_type for p in parsed.prices):
                    continue
                parsed.prices.append(price)

            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse station row {row!r}: {e}")
                continue

        return list(stations.values())

    def _parse_price(self, row: dict, station_id: str) -> Optional[ParsedPrice]:
        fuel_type = map_subproducto_to_fuel_type(row.get("SubProducto"))
        if fuel_type is None:
            return None

        raw_price = _to_float(row.get("PrecioVigente"))
        if raw_price is None or raw_price <= 0:
            return None

        return ParsedPrice(
            station_id=station_id,
            fuel_type=fuel_type,
            raw_label=row.get("SubProducto") or "",
            price=round(raw_price, 2),
            product=row.get("Producto") or "",
        )

    @staticmethod
    def validate_station(station: StationRecord) -> bool:
        """Check identity and location fields are usable."""
        if not station.station_id or not station.station_id.strip():
            return False
        if not station.name or not station.name.strip():
            return False
        if not station.region_id or station.region_id <= 0:
            return False
        if not station.subregion_id or station.subregion_id <= 0:
            return False
        if station.latitude is not None and not -90 <= station.latitude <= 90:
            return False
        if station.longitude is not None and not -180 <= station.longitude <= 180:
            return False
        return True

    def validate_price(self, price: ParsedPrice) -> bool:
        """Check a price is positive, plausible and of a known fuel type."""
        if not price.station_id or not price.station_id.strip():
            return False
        if not validate_fuel_type(price.fuel_type):
            return False
        if price.price <= 0 or price.price > self.max_valid_price:
            logger.warning(f"Invalid price {price.price} for station {price.station_id}")
            return False
        return True

    def filter_valid(self, parsed_stations: Iterable[ParsedStation]) -> list[ParsedStation]:
        """Drop invalid stations and invalid prices from a parsed batch."""
        valid: list[ParsedStation] = []
        for parsed in parsed_stations:
            if not self.validate_station(parsed.station):
                logger.debug(f"Dropping invalid station {parsed.station.station_id!r}")
                continue
            parsed.prices = [p for p in parsed.prices if self.validate_price(p)]
            valid.append(parsed)
        return valid

    @staticmethod
    def summarize(parsed_stations: list[ParsedStation]) -> dict:
        """Station, price and per-fuel counts for a parsed batch."""
        fuel_type_counts = {fuel.value: 0 for fuel in FuelType}
        total_prices = 0
        for parsed in parsed_stations:
            total_prices += len(parsed.prices)
            for price in parsed.prices:
                fuel_type_counts[price.fuel_type.value] += 1

        total_stations = len(parsed_stations)
        return {
            "total_stations": total_stations,
            "total_prices": total_prices,
            "fuel_type_counts": fuel_type_counts,
            "average_prices_per_station": (
                total_prices / total_stations if total_stations else 0.0
            ),
        }
