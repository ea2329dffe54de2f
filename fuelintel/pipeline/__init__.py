"""Fuel price ingestion pipeline.

Fetches the government catalog and daily price report, detects price
changes against the stored history and reports each run via webhook.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fuelintel.config import AppConfig
from fuelintel.core.circuit_breaker import CircuitBreaker
from fuelintel.core.http_client import ResilientHttpClient
from fuelintel.core.rate_limiter import RateLimiter
from fuelintel.core.webhook_notifier import WebhookNotifier
from fuelintel.pipeline.change_detector import ChangeDetector, PriceRepository
from fuelintel.pipeline.data_parser import DataParser
from fuelintel.pipeline.government_api import GovernmentApiClient
from fuelintel.pipeline.orchestrator import ScraperOrchestrator


@dataclass
class Pipeline:
    """Wired pipeline components for one process."""

    orchestrator: ScraperOrchestrator
    api: GovernmentApiClient
    http: ResilientHttpClient
    rate_limiter: RateLimiter
    breaker: CircuitBreaker
    notifier: WebhookNotifier
    repository: Optional[PriceRepository]

    async def aclose(self) -> None:
        await self.http.aclose()


def build_pipeline(
    config: AppConfig,
    repository: Optional[PriceRepository] = None,
) -> Pipeline:
    """Wire fresh pipeline instances from configuration.

    Args:
        config: Application configuration
        repository: Price store override; by default a SqlPriceRepository is
            built unless the configuration is a dry run

    Returns:
        Pipeline holding the orchestrator and its collaborators
    """
    if repository is None and not config.dry_run:
        from fuelintel.db.connection import get_session_factory
        from fuelintel.db.price_queries import SqlPriceRepository

        repository = SqlPriceRepository(get_session_factory())

    rate_limiter = RateLimiter(config.rate_limit.max_concurrency)
    http = ResilientHttpClient(config.http, rate_limiter)
    api = GovernmentApiClient(http, config.api)
    breaker = CircuitBreaker(
        "government-api",
        failure_threshold=config.circuit_breaker.failure_threshold,
        cooldown_period=config.circuit_breaker.cooldown_period,
        success_threshold=config.circuit_breaker.success_threshold,
    )
    notifier = WebhookNotifier(config.webhook)

    orchestrator = ScraperOrchestrator(
        api,
        ChangeDetector(repository, epsilon=config.detection.price_epsilon),
        repository,
        notifier,
        breaker,
        config.orchestrator,
        parser=DataParser(max_valid_price=config.detection.max_valid_price),
        rate_limiter=rate_limiter,
    )

    return Pipeline(
        orchestrator=orchestrator,
        api=api,
        http=http,
        rate_limiter=rate_limiter,
        breaker=breaker,
        notifier=notifier,
        repository=repository,
    )


__all__ = ["Pipeline", "build_pipeline"]
