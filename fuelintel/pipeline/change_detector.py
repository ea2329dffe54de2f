"""Price change detection against the last-known price snapshot.

Implements the append-only history rule:
- Load the latest stored price for every (station, fuel type) once per run
- Compare each incoming price with its baseline entry
- Emit a PriceChange only for new or changed prices; unchanged prices are counted

Detection is pure over the baseline and the parsed batch, so a run can be
replayed in tests without a database.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

from fuelintel.core.errors import BaselineLoadError
from fuelintel.pipeline.fuel_types import FuelType
from fuelintel.pipeline.types import (
    ChangeDetectionResult,
    LastKnownPrice,
    ParsedPrice,
    ParsedStation,
    PriceChange,
    PriceClassification,
    PriceKey,
    StationRecord,
)

logger = logging.getLogger(__name__)

_DIFF_PRECISION = 9


def _key(station_id: str, fuel_type: str | FuelType) -> PriceKey:
    if isinstance(fuel_type, FuelType):
        fuel_type = fuel_type.value
    return PriceKey(station_id, fuel_type)


class PriceRepository(Protocol):
    """Storage operations the pipeline needs from the price store."""

    async def get_all_last_prices(self) -> dict[PriceKey, LastKnownPrice]: ...

    async def upsert_stations(self, stations: list[StationRecord]) -> int: ...

    async def insert_price_changes(self, changes: list[PriceChange]) -> int: ...


class ChangeDetector:
    """Classify incoming prices as new, changed or unchanged."""

    def __init__(self, repository: Optional[PriceRepository], epsilon: float = 0.001):
        """Initialize detector.

        Args:
            repository: Source of the last-known prices (None for dry runs)
            epsilon: Minimum absolute difference that counts as a change
        """
        self.repository = repository
        self.epsilon = epsilon
        self._last_prices: dict[PriceKey, LastKnownPrice] = {}
        self._known_stations: set[str] = set()
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def baseline_size(self) -> int:
        return len(self._last_prices)

    async def load_existing_data(self) -> None:
        """Load the baseline from the repository.

        Raises:
            BaselineLoadError: If the repository read fails. Running against an
                empty baseline would report every price as new, so this is fatal.
        """
        if self.repository is None:
            raise BaselineLoadError("No price repository configured")

        logger.info("Loading existing price data")
        try:
            last_prices = await self.repository.get_all_last_prices()
        except Exception as e:
            logger.error(f"Failed to load existing price data: {e}")
            raise BaselineLoadError(f"Failed to load existing price data: {e}") from e

        self._last_prices = dict(last_prices)
        self._known_stations = {key.station_id for key in self._last_prices}
        self._loaded = True
        logger.info(
            f"Loaded {len(self._last_prices)} existing prices "
            f"for {len(self._known_stations)} stations"
        )

    def mark_loaded_empty(self) -> None:
        """Use an explicitly empty baseline (dry runs)."""
        self._last_prices = {}
        self._known_stations = set()
        self._loaded = True

    def detect_changes(self, parsed_stations: Iterable[ParsedStation]) -> ChangeDetectionResult:
        """Classify a batch of parsed stations against the baseline.

        Args:
            parsed_stations: Validated, de-duplicated stations with their prices

        Returns:
            ChangeDetectionResult with new/updated stations, price changes and stats

        Raises:
            RuntimeError: If no baseline has been loaded
        """
        if not self._loaded:
            raise RuntimeError("Baseline not loaded; call load_existing_data() first")

        result = ChangeDetectionResult()
        stats = result.stats
        changed_at = datetime.now(timezone.utc)

        for parsed in parsed_stations:
            stats.total_stations_processed += 1
            station = parsed.station

            if self.is_new_station(station.station_id):
                result.new_stations.append(station)
                stats.new_stations_found += 1
            else:
                result.updated_stations.append(station)
                stats.updated_stations_found += 1

            for price in parsed.prices:
                classification = self.classify_price(price)

                if classification is PriceClassification.UNCHANGED_PRICE:
                    stats.unchanged_prices_skipped += 1
                    continue

                if classification is PriceClassification.NEW_PRICE:
                    stats.new_prices_added += 1
                else:
                    stats.changed_prices_detected += 1

                result.price_changes.append(
                    PriceChange(
                        station_id=price.station_id,
                        fuel_type=price.fuel_type.value,
                        raw_label=price.raw_label,
                        price=price.price,
                        changed_at=changed_at,
                    )
                )

        stats.price_changes_detected = len(result.price_changes)

        logger.info(
            f"Change detection: {stats.total_stations_processed} stations, "
            f"{stats.new_stations_found} new, {stats.price_changes_detected} price changes "
            f"({stats.new_prices_added} new, {stats.changed_prices_detected} changed, "
            f"{stats.unchanged_prices_skipped} unchanged)"
        )
        return result

    def classify_price(self, price: ParsedPrice) -> PriceClassification:
        last = self._last_prices.get(price.key)
        if last is None:
            return PriceClassification.NEW_PRICE
        # Rounded so float noise cannot push a difference of exactly epsilon over it
        if round(abs(price.price - last.price), _DIFF_PRECISION) > self.epsilon:
            return PriceClassification.CHANGED_PRICE
        return PriceClassification.UNCHANGED_PRICE

    def is_price_changed(self, price: ParsedPrice) -> bool:
        """True for new and changed prices, i.e. anything that gets recorded."""
        return self.classify_price(price) is not PriceClassification.UNCHANGED_PRICE

    def has_existing_price(self, station_id: str, fuel_type: str) -> bool:
        return _key(station_id, fuel_type) in self._last_prices

    def get_last_price(self, station_id: str, fuel_type: str) -> Optional[float]:
        last = self._last_prices.get(_key(station_id, fuel_type))
        return last.price if last else None

    def is_new_station(self, station_id: str) -> bool:
        return station_id not in self._known_stations

    def reset(self) -> None:
        """Drop the baseline; a new load is required before detecting again."""
        self._last_prices = {}
        self._known_stations = set()
        self._loaded = False
