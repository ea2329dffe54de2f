"""Scraper orchestrator - one full ingestion run.

Walks the upstream geography (estados -> municipios -> station prices),
detects price changes against the stored baseline, persists them and reports
the outcome through the completion webhook.

Key features:
- Resilient: a failing estado or municipio is recorded and skipped
- Bounded: municipios of an estado are fetched concurrently up to a cap
- Guarded: every upstream fetch goes through the circuit breaker
- Reported: the webhook is sent exactly once per run, whatever the outcome
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog

from fuelintel.config import OrchestratorConfig
from fuelintel.core.circuit_breaker import CircuitBreaker, CircuitState
from fuelintel.core.errors import BaselineLoadError, PersistenceError
from fuelintel.core.rate_limiter import RateLimiter
from fuelintel.core.webhook_notifier import WebhookNotifier
from fuelintel.pipeline.change_detector import ChangeDetector, PriceRepository
from fuelintel.pipeline.data_parser import DataParser
from fuelintel.pipeline.government_api import GovernmentApiClient
from fuelintel.pipeline.types import (
    ChangeDetectionResult,
    ErrorDetail,
    ErrorType,
    ParsedStation,
    RunOptions,
    RunStatistics,
    RunStatus,
    RunSummary,
)

logger = structlog.get_logger(__name__)


def _record_id(record: Any, field: str) -> Optional[int]:
    """Integer id from an untyped upstream catalog record, or None."""
    try:
        return int(record[field])
    except (KeyError, IndexError, TypeError, ValueError):
        return None


def merge_stations(parsed_stations: list[ParsedStation]) -> list[ParsedStation]:
    """De-duplicate a batch by station id.

    Station fields of the last occurrence win; prices are merged per fuel
    type, later occurrences overriding earlier ones.
    """
    merged: dict[str, ParsedStation] = {}
    for parsed in parsed_stations:
        station_id = parsed.station.station_id
        existing = merged.get(station_id)
        if existing is None:
            merged[station_id] = ParsedStation(station=parsed.station, prices=list(parsed.prices))
            continue

        prices = {p.fuel_type: p for p in existing.prices}
        for price in parsed.prices:
            prices[price.fuel_type] = price
        merged[station_id] = ParsedStation(station=parsed.station, prices=list(prices.values()))

    return list(merged.values())


class ScraperOrchestrator:
    """Coordinates a single scraper run.

    Responsibilities:
    1. Load the last-known price baseline (fatal on failure)
    2. Fetch estados, then each estado's municipios and their station prices
    3. Detect changes once, over the whole de-duplicated batch
    4. Persist new/updated stations and price changes
    5. Send the signed completion webhook
    """

    def __init__(
        self,
        api: GovernmentApiClient,
        change_detector: ChangeDetector,
        repository: Optional[PriceRepository],
        notifier: WebhookNotifier,
        breaker: CircuitBreaker,
        config: OrchestratorConfig | None = None,
        *,
        parser: DataParser | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        """Initialize orchestrator.

        Args:
            api: Upstream catalog and pricing client
            change_detector: Detector owning the price baseline
            repository: Price store (None for dry runs)
            notifier: Completion webhook notifier
            breaker: Circuit breaker guarding the upstream API
            config: Municipio concurrency settings
            parser: Row parser/validator
            rate_limiter: Shared request limiter, reported in get_status()
        """
        self.api = api
        self.change_detector = change_detector
        self.repository = repository
        self.notifier = notifier
        self.breaker = breaker
        self.config = config or OrchestratorConfig()
        self.parser = parser or DataParser()
        self.rate_limiter = rate_limiter

        self._running = False
        self._should_stop = False
        self._stopped_early = False
        self._statistics = RunStatistics()
        self._errors: list[ErrorDetail] = []
        self._fatal_recorded = False
        self._parsed: list[ParsedStation] = []
        self.last_summary: Optional[RunSummary] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Request a cooperative stop; in-flight requests are left to settle."""
        if self._running:
            logger.info("scraper_stop_requested")
        self._should_stop = True

    def get_status(self) -> dict:
        """Running flag, breaker and limiter snapshots, current statistics."""
        return {
            "is_running": self._running,
            "stop_requested": self._should_stop,
            "circuit_breaker": self.breaker.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats() if self.rate_limiter else None,
            "statistics": self._statistics.as_dict(),
            "errors": [e.to_dict() for e in self._errors],
        }

    async def run(self, options: RunOptions | None = None) -> Optional[RunSummary]:
        """Execute one full scraper run.

        Args:
            options: Dry run switch and estado/municipio limits

        Returns:
            RunSummary, or None if a run was already in progress

        Raises:
            BaselineLoadError, PersistenceError, HttpClientError, CircuitOpenError:
                Fatal errors, re-raised after the webhook has been sent
        """
        if self._running:
            logger.warning("scraper_already_running")
            return None

        options = options or RunOptions()
        run_id = uuid4().hex[:12]

        self._running = True
        self._should_stop = False
        self._stopped_early = False
        self._statistics = RunStatistics()
        self._errors = []
        self._fatal_recorded = False
        self._parsed = []
        started_at = self._statistics.started_at
        status = RunStatus.COMPLETED

        structlog.contextvars.bind_contextvars(run_id=run_id)
        logger.info(
            "scraper_run_started",
            dry_run=options.dry_run,
            max_estados=options.max_estados,
            max_municipios_per_estado=options.max_municipios_per_estado,
        )

        try:
            if options.dry_run:
                self.change_detector.mark_loaded_empty()
            else:
                await self._load_baseline()

            await self._scrape_all(options)

            result = self._detect(merge_stations(self._parsed))

            if options.dry_run:
                logger.info(
                    "dry_run_skipping_persistence",
                    new_stations=len(result.new_stations),
                    updated_stations=len(result.updated_stations),
                    price_changes=len(result.price_changes),
                )
            else:
                await self._save_changes(result)

            logger.info("scraper_run_completed", **self._statistics.as_dict())

        except BaseException as e:
            # Cancellation and interrupts also end the run as failed
            status = RunStatus.FAILED
            if not self._fatal_recorded:
                self._record_error(ErrorType.ORCHESTRATOR_ERROR, str(e) or type(e).__name__)
            logger.error("scraper_run_failed", error=str(e), error_type=type(e).__name__)
            raise

        finally:
            completed_at = datetime.now(timezone.utc)
            webhook_delivered = await self._notify(started_at, completed_at, status)

            self.last_summary = RunSummary(
                status=status,
                started_at=started_at,
                completed_at=completed_at,
                statistics=self._statistics,
                errors=list(self._errors),
                stopped_early=self._stopped_early,
                webhook_delivered=webhook_delivered,
            )
            self._running = False
            structlog.contextvars.unbind_contextvars("run_id")

        return self.last_summary

    async def _load_baseline(self) -> None:
        try:
            await self.change_detector.load_existing_data()
        except BaselineLoadError as e:
            self._record_error(ErrorType.BASELINE_ERROR, str(e))
            self._fatal_recorded = True
            raise

    async def _scrape_all(self, options: RunOptions) -> None:
        try:
            estados = await self.breaker.execute(lambda: self.api.fetch_estados())
        except Exception as e:
            self._record_error(
                ErrorType.ESTADOS_ERROR, str(e), endpoint=self.api.estados_url
            )
            self._fatal_recorded = True
            raise

        if options.max_estados:
            estados = estados[: options.max_estados]
        logger.info("processing_estados", count=len(estados))

        for index, estado in enumerate(estados):
            if self._should_stop:
                logger.info("scraper_stopped_by_request", estados_remaining=len(estados) - index)
                self._stopped_early = True
                break

            estado_id = _record_id(estado, "EntidadFederativaId")
            if estado_id is None:
                logger.warning("estado_record_invalid", record=repr(estado))
                self._record_error(
                    ErrorType.ESTADO_ERROR,
                    f"estado record without a valid EntidadFederativaId: {estado!r}",
                    endpoint=self.api.estados_url,
                )
            elif await self._process_estado(estado_id, options):
                self._statistics.estados_processed += 1

            if self._breaker_open():
                logger.error("circuit_breaker_open_stopping", breaker=self.breaker.name)
                self._stopped_early = True
                break

            if index % 5 == 4:
                logger.info("scraper_progress", **self._statistics.as_dict())

    async def _process_estado(self, estado_id: int, options: RunOptions) -> bool:
        try:
            municipios = await self.breaker.execute(
                lambda: self.api.fetch_municipios(estado_id)
            )
        except Exception as e:
            logger.warning("estado_failed", estado_id=estado_id, error=str(e))
            self._record_error(
                ErrorType.ESTADO_ERROR,
                str(e),
                endpoint=self.api.municipios_url,
                estado_id=estado_id,
            )
            return False

        if options.max_municipios_per_estado:
            municipios = municipios[: options.max_municipios_per_estado]
        logger.info("processing_municipios", estado_id=estado_id, count=len(municipios))

        municipio_ids: list[int] = []
        for municipio in municipios:
            municipio_id = _record_id(municipio, "MunicipioId")
            if municipio_id is None:
                logger.warning(
                    "municipio_record_invalid", estado_id=estado_id, record=repr(municipio)
                )
                self._record_error(
                    ErrorType.MUNICIPIO_ERROR,
                    f"municipio record without a valid MunicipioId: {municipio!r}",
                    endpoint=self.api.municipios_url,
                    estado_id=estado_id,
                )
                continue
            municipio_ids.append(municipio_id)

        slots = asyncio.Semaphore(self.config.max_concurrent_municipios)

        async def process_with_slot(municipio_id: int) -> None:
            async with slots:
                if self._should_stop or self._breaker_open():
                    self._stopped_early = True
                    return
                await self._process_municipio(estado_id, municipio_id)

        await asyncio.gather(*(process_with_slot(m) for m in municipio_ids))
        return True

    async def _process_municipio(self, estado_id: int, municipio_id: int) -> None:
        try:
            rows = await self.breaker.execute(
                lambda: self.api.fetch_station_prices(estado_id, municipio_id)
            )
        except Exception as e:
            logger.warning(
                "municipio_failed",
                estado_id=estado_id,
                municipio_id=municipio_id,
                error=str(e),
            )
            self._record_error(
                ErrorType.MUNICIPIO_ERROR,
                f"municipio {municipio_id}: {e}",
                endpoint=self.api.prices_url,
                estado_id=estado_id,
            )
            return

        parsed = self.parser.parse_station_prices(rows, estado_id, municipio_id)
        valid = self.parser.filter_valid(parsed)
        self._parsed.extend(valid)

        self._statistics.municipios_processed += 1
        self._statistics.stations_found += len(valid)
        logger.debug(
            "municipio_processed",
            estado_id=estado_id,
            municipio_id=municipio_id,
            stations=len(valid),
        )

    def _detect(self, stations: list[ParsedStation]) -> ChangeDetectionResult:
        result = self.change_detector.detect_changes(stations)
        self._statistics.price_changes_detected = result.stats.price_changes_detected
        self._statistics.new_stations_added = result.stats.new_stations_found
        return result

    async def _save_changes(self, result: ChangeDetectionResult) -> None:
        if self.repository is None:
            raise PersistenceError("No price repository configured for a non dry run")

        stations = result.new_stations + result.updated_stations
        try:
            if stations:
                saved = await self.repository.upsert_stations(stations)
                logger.info("stations_saved", count=saved)
            if result.price_changes:
                inserted = await self.repository.insert_price_changes(result.price_changes)
                logger.info("price_changes_saved", count=inserted)
        except Exception as e:
            self._record_error(ErrorType.PERSISTENCE_ERROR, str(e))
            self._fatal_recorded = True
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to save changes: {e}") from e

    async def _notify(
        self, started_at: datetime, completed_at: datetime, status: RunStatus
    ) -> bool:
        try:
            payload = self.notifier.build_payload(
                started_at, completed_at, status, self._statistics, self._errors
            )
            return bool(await self.notifier.send_completion_webhook(payload))
        except Exception as e:
            logger.error("webhook_failed", error=str(e), error_type=type(e).__name__)
            return False

    def _breaker_open(self) -> bool:
        return self.breaker.effective_state() is CircuitState.OPEN

    def _record_error(
        self,
        error_type: ErrorType,
        message: str,
        *,
        endpoint: str | None = None,
        estado_id: int | None = None,
    ) -> None:
        self._errors.append(
            ErrorDetail(
                type=error_type.value,
                message=message,
                endpoint=endpoint,
                estado_id=estado_id,
            )
        )
        self._statistics.errors_encountered += 1
