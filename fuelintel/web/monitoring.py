"""Monitoring endpoints for a running scraper process.

Exposes health, status and metrics while a run is in progress:
- GET /health: database, government API and circuit breaker checks
- GET /status: orchestrator status snapshot
- GET /metrics.json: run statistics, breaker and limiter stats
- GET /metrics: Prometheus exposition
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry, Gauge
from prometheus_fastapi_instrumentator import Instrumentator

from fuelintel.core.circuit_breaker import CircuitState
from fuelintel.pipeline.government_api import GovernmentApiClient
from fuelintel.pipeline.orchestrator import ScraperOrchestrator

logger = logging.getLogger(__name__)

SKIPPED = "skipped"

_BREAKER_STATE_VALUES = {
    CircuitState.CLOSED.value: 0,
    CircuitState.HALF_OPEN.value: 1,
    CircuitState.OPEN.value: 2,
}


def _register_pipeline_gauges(registry: CollectorRegistry, orchestrator: ScraperOrchestrator) -> None:
    def statistic(name: str) -> Callable[[], float]:
        return lambda: float(orchestrator.get_status()["statistics"][name])

    for name, description in [
        ("estados_processed", "Estados processed in the current run"),
        ("municipios_processed", "Municipios processed in the current run"),
        ("stations_found", "Stations found in the current run"),
        ("price_changes_detected", "Price changes detected in the current run"),
        ("new_stations_added", "New stations added in the current run"),
        ("errors_encountered", "Errors encountered in the current run"),
    ]:
        Gauge(f"scraper_{name}", description, registry=registry).set_function(statistic(name))

    Gauge(
        "scraper_running", "1 while a scraper run is in progress", registry=registry
    ).set_function(lambda: 1.0 if orchestrator.is_running else 0.0)
    Gauge(
        "scraper_circuit_breaker_state",
        "Circuit breaker state (0=closed, 1=half_open, 2=open)",
        registry=registry,
    ).set_function(
        lambda: float(_BREAKER_STATE_VALUES[orchestrator.breaker.effective_state().value])
    )


def create_monitoring_app(
    orchestrator: ScraperOrchestrator,
    api: Optional[GovernmentApiClient] = None,
    db_check: Optional[Callable[[], Awaitable[bool]]] = None,
) -> FastAPI:
    """Create the monitoring FastAPI application.

    Args:
        orchestrator: Orchestrator whose run is being monitored
        api: Government API client for the upstream health check
        db_check: Async callable returning database reachability

    Returns:
        FastAPI app
    """
    app = FastAPI(title="FuelIntel Scraper Monitoring", version="1.0.0")
    started = time.monotonic()

    registry = CollectorRegistry()
    _register_pipeline_gauges(registry, orchestrator)
    Instrumentator(registry=registry).instrument(app).expose(app, include_in_schema=False)

    @app.get("/health")
    async def health():
        """Healthy only if every configured check passes; 503 otherwise.

        A check with nothing to contact (no database in dry runs) is reported
        as "skipped" and does not affect the result.
        """
        checks: dict[str, bool | str] = {
            "database": SKIPPED,
            "government_api": SKIPPED,
            "circuit_breaker": orchestrator.breaker.effective_state() is not CircuitState.OPEN,
        }

        if db_check is not None:
            try:
                checks["database"] = bool(await db_check())
            except Exception as e:
                logger.error(f"Database health check failed: {e}")
                checks["database"] = False

        if api is not None:
            try:
                checks["government_api"] = bool(await api.test_connection())
            except Exception as e:
                logger.error(f"Government API health check failed: {e}")
                checks["government_api"] = False

        healthy = all(result is True for result in checks.values() if result != SKIPPED)
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "checks": checks,
                "uptime": round(time.monotonic() - started, 3),
            },
        )

    @app.get("/status")
    async def status():
        return orchestrator.get_status()

    @app.get("/metrics.json")
    async def metrics_json():
        snapshot = orchestrator.get_status()
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scraper": {**snapshot["statistics"], "is_running": snapshot["is_running"]},
            "circuit_breaker": snapshot["circuit_breaker"],
            "rate_limiter": snapshot["rate_limiter"],
            "uptime": round(time.monotonic() - started, 3),
        }

    return app
