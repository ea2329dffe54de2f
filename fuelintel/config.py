"""FuelIntel scraper configuration management.

Loads configuration from environment variables with sensible defaults.
Retry, breaker, limiter and change-detection thresholds all live here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from fuelintel.core.errors import ConfigurationError

# Load .env file if present
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class DBConfig:
    """Database connection configuration."""

    url: str | None = None
    pool_size: int = 10
    pool_max_overflow: int = 20
    pool_timeout: int = 30
    echo: bool = False  # SQL logging


@dataclass
class ApiConfig:
    """Upstream government catalog and pricing endpoints."""

    catalog_base: str = "https://api-catalogo.cne.gob.mx/api/utiles"
    pricing_base: str = "https://api-reportediario.cne.gob.mx/api/EstacionServicio"
    expected_estados: int = 32


@dataclass
class HttpConfig:
    """Outbound HTTP behaviour: timeouts, retry budget and pacing."""

    timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0  # seconds
    min_request_interval: float = 0.1  # seconds between request starts
    user_agent: str = "FuelIntel-Scraper/1.0"


@dataclass
class RateLimitConfig:
    """Concurrency cap for upstream requests."""

    max_concurrency: int = 10


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker thresholds for the upstream API."""

    failure_threshold: int = 5
    cooldown_period: float = 60.0  # seconds
    success_threshold: int = 3


@dataclass
class WebhookConfig:
    """Completion webhook destination and delivery policy."""

    url: str | None = None
    secret: str | None = None
    max_attempts: int = 3
    retry_base_delay: float = 1.0  # seconds
    timeout: float = 30.0
    max_errors: int = 100

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.secret)


@dataclass
class DetectionConfig:
    """Change detection and price validation tolerances."""

    price_epsilon: float = 0.001
    max_valid_price: float = 100.0


@dataclass
class OrchestratorConfig:
    """Run orchestration settings."""

    max_concurrent_municipios: int = 5


@dataclass
class AppConfig:
    """Root application configuration.

    Loads from environment variables. Call ``validate()`` at startup to fail
    fast on nonsensical values.
    """

    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "text"  # json or text
    dry_run: bool = False
    monitoring_port: int = 9090

    db: DBConfig = field(default_factory=DBConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables.

        Optional (with defaults):
        - DATABASE_URL: async SQLAlchemy URL (required for non dry runs)
        - SCRAPER_WEBHOOK_URL / SCRAPER_WEBHOOK_SECRET: completion webhook
        - LOG_LEVEL, LOG_FORMAT, ENVIRONMENT, DRY_RUN
        - Thresholds: SCRAPER_MAX_RETRIES, SCRAPER_RATE_LIMIT,
          CB_FAILURE_THRESHOLD, CB_COOLDOWN_PERIOD, CB_SUCCESS_THRESHOLD, ...

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed
        """
        try:
            return cls(
                environment=os.getenv("ENVIRONMENT", "development"),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                log_format=os.getenv("LOG_FORMAT", "text"),
                dry_run=_env_bool("DRY_RUN"),
                monitoring_port=int(os.getenv("MONITORING_PORT", "9090")),
                db=DBConfig(
                    url=os.getenv("DATABASE_URL"),
                    pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
                    pool_max_overflow=int(os.getenv("DB_POOL_MAX_OVERFLOW", "20")),
                    pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
                    echo=_env_bool("DB_ECHO"),
                ),
                api=ApiConfig(
                    catalog_base=os.getenv(
                        "GOV_CATALOG_BASE", "https://api-catalogo.cne.gob.mx/api/utiles"
                    ),
                    pricing_base=os.getenv(
                        "GOV_PRICING_BASE",
                        "https://api-reportediario.cne.gob.mx/api/EstacionServicio",
                    ),
                ),
                http=HttpConfig(
                    timeout=float(os.getenv("SCRAPER_TIMEOUT", "30")),
                    max_retries=int(os.getenv("SCRAPER_MAX_RETRIES", "3")),
                    retry_base_delay=float(os.getenv("SCRAPER_RETRY_BASE_DELAY", "1.0")),
                    retry_multiplier=float(os.getenv("SCRAPER_RETRY_MULTIPLIER", "2.0")),
                    retry_max_delay=float(os.getenv("SCRAPER_RETRY_MAX_DELAY", "30.0")),
                    min_request_interval=float(
                        os.getenv("SCRAPER_MIN_REQUEST_INTERVAL", "0.1")
                    ),
                    user_agent=os.getenv("SCRAPER_USER_AGENT", "FuelIntel-Scraper/1.0"),
                ),
                rate_limit=RateLimitConfig(
                    max_concurrency=int(os.getenv("SCRAPER_RATE_LIMIT", "10")),
                ),
                circuit_breaker=CircuitBreakerConfig(
                    failure_threshold=int(os.getenv("CB_FAILURE_THRESHOLD", "5")),
                    cooldown_period=float(os.getenv("CB_COOLDOWN_PERIOD", "60")),
                    success_threshold=int(os.getenv("CB_SUCCESS_THRESHOLD", "3")),
                ),
                webhook=WebhookConfig(
                    url=os.getenv("SCRAPER_WEBHOOK_URL") or None,
                    secret=os.getenv("SCRAPER_WEBHOOK_SECRET") or None,
                    max_attempts=int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3")),
                    retry_base_delay=float(os.getenv("WEBHOOK_RETRY_BASE_DELAY", "1.0")),
                    timeout=float(os.getenv("WEBHOOK_TIMEOUT", "30")),
                    max_errors=int(os.getenv("WEBHOOK_MAX_ERRORS", "100")),
                ),
                detection=DetectionConfig(
                    price_epsilon=float(os.getenv("PRICE_CHANGE_EPSILON", "0.001")),
                    max_valid_price=float(os.getenv("MAX_VALID_PRICE", "100")),
                ),
                orchestrator=OrchestratorConfig(
                    max_concurrent_municipios=int(
                        os.getenv("SCRAPER_MUNICIPIO_CONCURRENCY", "5")
                    ),
                ),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric configuration value: {e}") from e

    def validate(self) -> None:
        """Check thresholds and required settings.

        Raises:
            ConfigurationError: Listing every invalid setting found
        """
        problems: list[str] = []

        if not self.dry_run and not self.db.url:
            problems.append("DATABASE_URL is required unless DRY_RUN=true")
        if self.http.max_retries < 0:
            problems.append("SCRAPER_MAX_RETRIES must be >= 0")
        if self.http.retry_base_delay < 0 or self.http.retry_max_delay < 0:
            problems.append("retry delays must be >= 0")
        if self.http.retry_multiplier < 1:
            problems.append("SCRAPER_RETRY_MULTIPLIER must be >= 1")
        if self.http.min_request_interval < 0:
            problems.append("SCRAPER_MIN_REQUEST_INTERVAL must be >= 0")
        if self.http.timeout <= 0:
            problems.append("SCRAPER_TIMEOUT must be > 0")
        if self.rate_limit.max_concurrency < 1:
            problems.append("SCRAPER_RATE_LIMIT must be >= 1")
        if self.circuit_breaker.failure_threshold < 1:
            problems.append("CB_FAILURE_THRESHOLD must be >= 1")
        if self.circuit_breaker.success_threshold < 1:
            problems.append("CB_SUCCESS_THRESHOLD must be >= 1")
        if self.circuit_breaker.cooldown_period < 0:
            problems.append("CB_COOLDOWN_PERIOD must be >= 0")
        if self.webhook.max_attempts < 1:
            problems.append("WEBHOOK_MAX_ATTEMPTS must be >= 1")
        if self.detection.price_epsilon < 0:
            problems.append("PRICE_CHANGE_EPSILON must be >= 0")
        if self.orchestrator.max_concurrent_municipios < 1:
            problems.append("SCRAPER_MUNICIPIO_CONCURRENCY must be >= 1")
        if self.environment == "production" and bool(self.webhook.url) != bool(
            self.webhook.secret
        ):
            problems.append(
                "SCRAPER_WEBHOOK_URL and SCRAPER_WEBHOOK_SECRET must be set together"
            )

        if problems:
            raise ConfigurationError("; ".join(problems))


# Singleton instance (lazy-loaded)
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create singleton AppConfig instance from environment.

    Returns:
        AppConfig: Application configuration
    """
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (used by tests and the CLI)."""
    global _config
    _config = None
