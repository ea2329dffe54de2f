"""Unit tests for the scraper orchestrator.

The upstream is replaced with an in-memory fake, the repository and webhook
delivery with AsyncMocks.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from fuelintel.config import OrchestratorConfig, WebhookConfig
from fuelintel.core.circuit_breaker import CircuitBreaker, CircuitState
from fuelintel.core.errors import (
    BaselineLoadError,
    PersistenceError,
    TransientHttpError,
)
from fuelintel.core.webhook_notifier import WebhookNotifier
from fuelintel.pipeline.change_detector import ChangeDetector
from fuelintel.pipeline.fuel_types import FuelType
from fuelintel.pipeline.orchestrator import ScraperOrchestrator, merge_stations
from fuelintel.pipeline.types import RunOptions, RunStatus


class FakeGovernmentApi:
    """In-memory upstream: estados -> municipios -> price rows."""

    estados_url = "https://catalog.test/entidadesfederativas"
    municipios_url = "https://catalog.test/municipios"
    prices_url = "https://prices.test/Petroliferos"

    def __init__(self, geography: dict[int, dict[int, list[dict]]]):
        self.geography = geography
        self.failing_estados: set[int] = set()
        self.failing_municipios: set[tuple[int, int]] = set()
        self.estados_error: Exception | None = None
        self.price_calls: list[tuple[int, int]] = []
        self.on_prices = None
        self.extra_estados: list = []
        self.extra_municipios: dict[int, list] = {}
        self.price_gate: asyncio.Event | None = None

    async def fetch_estados(self):
        if self.estados_error:
            raise self.estados_error
        return [
            {"EntidadFederativaId": e, "Nombre": f"Estado {e}"} for e in self.geography
        ] + self.extra_estados

    async def fetch_municipios(self, estado_id):
        if estado_id in self.failing_estados:
            raise TransientHttpError("HTTP 503 after 4 attempt(s)", status_code=503, attempts=4)
        return [
            {"MunicipioId": m, "EntidadFederativaId": estado_id, "Nombre": f"Municipio {m}"}
            for m in self.geography[estado_id]
        ] + self.extra_municipios.get(estado_id, [])

    async def fetch_station_prices(self, estado_id, municipio_id):
        self.price_calls.append((estado_id, municipio_id))
        if self.on_prices:
            self.on_prices(estado_id, municipio_id)
        if self.price_gate is not None:
            await self.price_gate.wait()
        await asyncio.sleep(0)
        if (estado_id, municipio_id) in self.failing_municipios:
            raise TransientHttpError("timeout", attempts=4)
        return self.geography[estado_id][municipio_id]


def make_repository(last_prices=()):
    repository = AsyncMock()
    repository.get_all_last_prices.return_value = {lp.key: lp for lp in last_prices}
    repository.upsert_stations.side_effect = lambda stations: len(stations)
    repository.insert_price_changes.side_effect = lambda changes: len(changes)
    return repository


def make_notifier(deliver=True):
    notifier = WebhookNotifier(WebhookConfig(url="https://app.test/hook", secret="k"))
    notifier.send_completion_webhook = AsyncMock(return_value=deliver)
    return notifier


def make_orchestrator(api, repository, notifier, breaker=None, concurrency=5):
    return ScraperOrchestrator(
        api,
        ChangeDetector(repository),
        repository,
        notifier,
        breaker or CircuitBreaker("test", failure_threshold=50),
        OrchestratorConfig(max_concurrent_municipios=concurrency),
    )


def sent_payload(notifier) -> dict:
    notifier.send_completion_webhook.assert_awaited_once()
    return notifier.send_completion_webhook.await_args.args[0]


@pytest.fixture
def geography(price_row_factory):
    return {
        9: {
            15: [
                price_row_factory("A", "Regular (con un índice de octano mínimo de 87)", 22.50),
                price_row_factory("A", "Diésel", 24.30),
            ],
            16: [price_row_factory("B", "Premium (con un índice de octano mínimo de 91)", 24.00)],
        },
        19: {
            39: [price_row_factory("C", "Regular (con un índice de octano mínimo de 87)", 21.99)],
        },
    }


class TestSuccessfulRun:
    """Runs where every fetch succeeds."""

    @pytest.mark.asyncio
    async def test_full_run_detects_and_persists(self, geography, last_price_factory):
        """Test baseline A(regular 22.50, diesel 24.10) yields 3 price changes."""
        api = FakeGovernmentApi(geography)
        repository = make_repository(
            [
                last_price_factory("A", "regular", 22.50),
                last_price_factory("A", "diesel", 24.10),
            ]
        )
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, repository, notifier)

        summary = await orchestrator.run(RunOptions())

        assert summary.status is RunStatus.COMPLETED
        assert summary.success
        assert summary.webhook_delivered
        stats = summary.statistics
        assert stats.estados_processed == 2
        assert stats.municipios_processed == 3
        assert stats.stations_found == 3
        assert stats.price_changes_detected == 3
        assert stats.new_stations_added == 2
        assert stats.errors_encountered == 0

        upserted = repository.upsert_stations.await_args.args[0]
        assert sorted(s.station_id for s in upserted) == ["A", "B", "C"]
        changes = repository.insert_price_changes.await_args.args[0]
        assert sorted((c.station_id, c.fuel_type) for c in changes) == [
            ("A", "diesel"),
            ("B", "premium"),
            ("C", "regular"),
        ]

        payload = sent_payload(notifier)
        assert payload["status"] == "completed"
        assert payload["statistics"]["price_changes_detected"] == 3
        assert payload["errors"] == []
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_dry_run_skips_baseline_and_persistence(self, geography):
        api = FakeGovernmentApi(geography)
        repository = make_repository()
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, repository, notifier)

        summary = await orchestrator.run(RunOptions(dry_run=True))

        assert summary.success
        assert summary.statistics.price_changes_detected == 4
        repository.get_all_last_prices.assert_not_awaited()
        repository.upsert_stations.assert_not_awaited()
        repository.insert_price_changes.assert_not_awaited()
        notifier.send_completion_webhook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_limits_restrict_geography(self, geography):
        api = FakeGovernmentApi(geography)
        orchestrator = make_orchestrator(api, make_repository(), make_notifier())

        summary = await orchestrator.run(
            RunOptions(dry_run=True, max_estados=1, max_municipios_per_estado=1)
        )

        assert api.price_calls == [(9, 15)]
        assert summary.statistics.estados_processed == 1
        assert summary.statistics.municipios_processed == 1

    @pytest.mark.asyncio
    async def test_municipio_concurrency_bounded(self):
        geography = {1: {m: [] for m in range(1, 11)}}
        api = FakeGovernmentApi(geography)
        in_flight = 0
        peak = 0

        async def slow_prices(estado_id, municipio_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return []

        api.fetch_station_prices = slow_prices
        orchestrator = make_orchestrator(api, make_repository(), make_notifier(), concurrency=3)

        summary = await orchestrator.run(RunOptions(dry_run=True))

        assert summary.statistics.municipios_processed == 10
        assert peak == 3


class TestPartialFailures:
    """Estado and municipio failures are recorded and skipped."""

    @pytest.mark.asyncio
    async def test_municipio_failure_does_not_abort(self, geography):
        api = FakeGovernmentApi(geography)
        api.failing_municipios.add((9, 16))
        repository = make_repository()
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, repository, notifier)

        summary = await orchestrator.run(RunOptions())

        assert summary.status is RunStatus.COMPLETED
        assert summary.statistics.municipios_processed == 2
        assert summary.statistics.errors_encountered == 1
        payload = sent_payload(notifier)
        assert payload["errors"] == [
            {
                "type": "MUNICIPIO_ERROR",
                "message": "municipio 16: timeout",
                "endpoint": FakeGovernmentApi.prices_url,
                "estado_id": 9,
            }
        ]

    @pytest.mark.asyncio
    async def test_estado_failure_moves_to_next_estado(self, geography):
        api = FakeGovernmentApi(geography)
        api.failing_estados.add(9)
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, make_repository(), notifier)

        summary = await orchestrator.run(RunOptions())

        assert summary.status is RunStatus.COMPLETED
        assert summary.statistics.estados_processed == 1
        assert api.price_calls == [(19, 39)]
        error = sent_payload(notifier)["errors"][0]
        assert error["type"] == "ESTADO_ERROR"
        assert error["estado_id"] == 9

    @pytest.mark.asyncio
    async def test_municipio_record_without_id_is_skipped(self, geography):
        api = FakeGovernmentApi(geography)
        api.extra_municipios[9] = [{"Nombre": "sin id"}]
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, make_repository(), notifier)

        summary = await orchestrator.run(RunOptions(dry_run=True))

        assert summary.status is RunStatus.COMPLETED
        assert sorted(api.price_calls) == [(9, 15), (9, 16), (19, 39)]
        assert summary.statistics.estados_processed == 2
        assert summary.statistics.municipios_processed == 3
        assert summary.statistics.errors_encountered == 1
        error = sent_payload(notifier)["errors"][0]
        assert error["type"] == "MUNICIPIO_ERROR"
        assert error["estado_id"] == 9
        assert error["endpoint"] == FakeGovernmentApi.municipios_url

    @pytest.mark.asyncio
    async def test_estado_records_without_valid_id_are_skipped(self, geography):
        api = FakeGovernmentApi(geography)
        api.extra_estados = [{"Nombre": "sin id"}, {"EntidadFederativaId": "x"}, "basura"]
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, make_repository(), notifier)

        summary = await orchestrator.run(RunOptions(dry_run=True))

        assert summary.status is RunStatus.COMPLETED
        assert summary.statistics.estados_processed == 2
        assert summary.statistics.errors_encountered == 3
        errors = sent_payload(notifier)["errors"]
        assert [e["type"] for e in errors] == ["ESTADO_ERROR"] * 3
        assert all(e["endpoint"] == FakeGovernmentApi.estados_url for e in errors)

    @pytest.mark.asyncio
    async def test_open_breaker_stops_scheduling(self, geography):
        """Test the run stops once the breaker opens instead of hammering upstream."""
        api = FakeGovernmentApi(geography)
        api.failing_estados.add(9)
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_period=60)
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, make_repository(), notifier, breaker=breaker)

        summary = await orchestrator.run(RunOptions())

        assert breaker.effective_state() is CircuitState.OPEN
        assert summary.stopped_early
        assert api.price_calls == []
        assert summary.statistics.estados_processed == 0
        notifier.send_completion_webhook.assert_awaited_once()


class TestFatalFailures:
    """Failures that abort the run still send exactly one webhook."""

    @pytest.mark.asyncio
    async def test_baseline_failure_is_fatal(self, geography):
        api = FakeGovernmentApi(geography)
        repository = make_repository()
        repository.get_all_last_prices.side_effect = ConnectionError("db down")
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, repository, notifier)

        with pytest.raises(BaselineLoadError):
            await orchestrator.run(RunOptions())

        assert api.price_calls == []
        payload = sent_payload(notifier)
        assert payload["status"] == "failed"
        assert [e["type"] for e in payload["errors"]] == ["BASELINE_ERROR"]
        assert orchestrator.last_summary.status is RunStatus.FAILED
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_estados_failure_is_fatal(self, geography):
        api = FakeGovernmentApi(geography)
        api.estados_error = TransientHttpError("HTTP 503", status_code=503, attempts=4)
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, make_repository(), notifier)

        with pytest.raises(TransientHttpError):
            await orchestrator.run(RunOptions())

        payload = sent_payload(notifier)
        assert payload["status"] == "failed"
        assert payload["errors"][0]["type"] == "ESTADOS_ERROR"
        assert payload["errors"][0]["endpoint"] == FakeGovernmentApi.estados_url

    @pytest.mark.asyncio
    async def test_persistence_failure_is_fatal(self, geography):
        api = FakeGovernmentApi(geography)
        repository = make_repository()
        repository.insert_price_changes.side_effect = PersistenceError("constraint violated")
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, repository, notifier)

        with pytest.raises(PersistenceError):
            await orchestrator.run(RunOptions())

        payload = sent_payload(notifier)
        assert payload["status"] == "failed"
        assert [e["type"] for e in payload["errors"]] == ["PERSISTENCE_ERROR"]

    @pytest.mark.asyncio
    async def test_cancelled_run_reported_as_failed(self, geography):
        """Test a run cancelled mid-scrape sends a failed payload and persists nothing."""
        api = FakeGovernmentApi(geography)
        api.price_gate = asyncio.Event()
        repository = make_repository()
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, repository, notifier)

        task = asyncio.create_task(orchestrator.run(RunOptions()))
        while not api.price_calls:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        payload = sent_payload(notifier)
        assert payload["status"] == "failed"
        assert payload["errors"][-1]["type"] == "ORCHESTRATOR_ERROR"
        repository.insert_price_changes.assert_not_awaited()
        assert orchestrator.last_summary.status is RunStatus.FAILED
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_webhook_failure_does_not_change_outcome(self, geography):
        api = FakeGovernmentApi(geography)
        notifier = make_notifier()
        notifier.send_completion_webhook.side_effect = RuntimeError("receiver down")
        orchestrator = make_orchestrator(api, make_repository(), notifier)

        summary = await orchestrator.run(RunOptions())

        assert summary.status is RunStatus.COMPLETED
        assert not summary.webhook_delivered


class TestRunControl:
    """stop(), re-entrancy and status."""

    @pytest.mark.asyncio
    async def test_stop_flag_halts_remaining_work(self, geography):
        api = FakeGovernmentApi(geography)
        orchestrator = make_orchestrator(api, make_repository(), make_notifier(), concurrency=1)
        api.on_prices = lambda estado_id, municipio_id: orchestrator.stop()

        summary = await orchestrator.run(RunOptions())

        assert api.price_calls == [(9, 15)]
        assert summary.stopped_early
        assert summary.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_run_refused(self, geography):
        """Test a second run while one is active returns None and sends nothing."""
        api = FakeGovernmentApi(geography)
        notifier = make_notifier()
        orchestrator = make_orchestrator(api, make_repository(), notifier)

        first = asyncio.create_task(orchestrator.run(RunOptions(dry_run=True)))
        await asyncio.sleep(0)
        assert orchestrator.is_running

        assert await orchestrator.run(RunOptions(dry_run=True)) is None

        summary = await first
        assert summary.success
        notifier.send_completion_webhook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_status(self, geography):
        orchestrator = make_orchestrator(FakeGovernmentApi(geography), make_repository(), make_notifier())

        await orchestrator.run(RunOptions(dry_run=True))
        status = orchestrator.get_status()

        assert status["is_running"] is False
        assert status["circuit_breaker"]["state"] == "CLOSED"
        assert status["statistics"]["municipios_processed"] == 3


class TestMergeStations:
    """De-duplication of the parsed batch."""

    def test_last_station_fields_win_and_prices_merge(self, parsed_station_factory):
        first = parsed_station_factory("A", {FuelType.REGULAR: 22.0, FuelType.DIESEL: 24.0})
        second = parsed_station_factory("A", {FuelType.REGULAR: 22.5})
        second.station.name = "Renamed"

        merged = merge_stations([first, second])

        assert len(merged) == 1
        assert merged[0].station.name == "Renamed"
        prices = {p.fuel_type: p.price for p in merged[0].prices}
        assert prices == {FuelType.REGULAR: 22.5, FuelType.DIESEL: 24.0}
