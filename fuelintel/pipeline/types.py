"""Type definitions for pipeline operations."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional

from fuelintel.pipeline.fuel_types import FuelType


class PriceKey(NamedTuple):
    """Composite key identifying one price series."""

    station_id: str
    fuel_type: str


class PriceClassification(str, Enum):
    """How an incoming price relates to the baseline."""

    NEW_PRICE = "new_price"
    CHANGED_PRICE = "changed_price"
    UNCHANGED_PRICE = "unchanged_price"


class StationClassification(str, Enum):
    """Whether a station was already known before this run."""

    NEW_STATION = "new_station"
    UPDATED_STATION = "updated_station"


class RunStatus(str, Enum):
    """Final status reported to the webhook receiver."""

    COMPLETED = "completed"
    FAILED = "failed"


class ErrorType(str, Enum):
    """Error categories reported in the webhook ``errors`` array."""

    ESTADOS_ERROR = "ESTADOS_ERROR"
    ESTADO_ERROR = "ESTADO_ERROR"
    MUNICIPIO_ERROR = "MUNICIPIO_ERROR"
    BASELINE_ERROR = "BASELINE_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    ORCHESTRATOR_ERROR = "ORCHESTRATOR_ERROR"


@dataclass(frozen=True)
class LastKnownPrice:
    """Most recent stored price for one (station, fuel type)."""

    station_id: str
    fuel_type: str
    price: float
    changed_at: datetime

    @property
    def key(self) -> PriceKey:
        return PriceKey(self.station_id, self.fuel_type)


@dataclass
class StationRecord:
    """Station identity and location as reported upstream."""

    station_id: str
    name: str
    address: str
    region_id: int
    subregion_id: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    brand: Optional[str] = None
    is_active: bool = True


@dataclass
class ParsedPrice:
    """One validated price for a station and fuel type."""

    station_id: str
    fuel_type: FuelType
    raw_label: str
    price: float
    product: str = ""

    @property
    def key(self) -> PriceKey:
        return PriceKey(self.station_id, self.fuel_type.value)


@dataclass
class ParsedStation:
    """A station with all prices parsed for it in this run."""

    station: StationRecord
    prices: list[ParsedPrice] = field(default_factory=list)


@dataclass(frozen=True)
class PriceChange:
    """A price to be appended to the price history."""

    station_id: str
    fuel_type: str
    raw_label: str
    price: float
    changed_at: datetime


@dataclass
class ChangeDetectionStats:
    """Per-category tallies for one detection batch."""

    total_stations_processed: int = 0
    new_stations_found: int = 0
    updated_stations_found: int = 0
    price_changes_detected: int = 0
    new_prices_added: int = 0
    changed_prices_detected: int = 0
    unchanged_prices_skipped: int = 0


@dataclass
class ChangeDetectionResult:
    """Classified change set for one batch of parsed stations."""

    new_stations: list[StationRecord] = field(default_factory=list)
    updated_stations: list[StationRecord] = field(default_factory=list)
    price_changes: list[PriceChange] = field(default_factory=list)
    stats: ChangeDetectionStats = field(default_factory=ChangeDetectionStats)


@dataclass
class ErrorDetail:
    """Structured error summary sent downstream instead of a stack trace."""

    type: str
    message: str
    endpoint: Optional[str] = None
    estado_id: Optional[int] = None

    def to_dict(self) -> dict:
        """Wire form; ``None`` fields are omitted."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class RunStatistics:
    """Mutable accumulator owned by the orchestrator for one run."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    estados_processed: int = 0
    municipios_processed: int = 0
    stations_found: int = 0
    price_changes_detected: int = 0
    new_stations_added: int = 0
    errors_encountered: int = 0

    def as_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


@dataclass
class RunOptions:
    """Per-invocation switches for a scraper run."""

    dry_run: bool = False
    max_estados: Optional[int] = None
    max_municipios_per_estado: Optional[int] = None


@dataclass
class RunSummary:
    """Outcome of a run, returned to the CLI."""

    status: RunStatus
    started_at: datetime
    completed_at: datetime
    statistics: RunStatistics
    errors: list[ErrorDetail] = field(default_factory=list)
    stopped_early: bool = False
    webhook_delivered: bool = False

    @property
    def success(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()
