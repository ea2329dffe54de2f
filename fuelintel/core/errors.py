"""Exception hierarchy for the FuelIntel ingestion pipeline."""

from __future__ import annotations


class FuelIntelError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(FuelIntelError):
    """Raised when configuration is missing or invalid."""


class CircuitOpenError(FuelIntelError):
    """Raised by a circuit breaker that refuses a call without attempting it."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit breaker '{name}' is OPEN; retry after {self.retry_after:.1f}s"
        )


class HttpClientError(FuelIntelError):
    """Base class for errors raised by the resilient HTTP client."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        attempts: int = 1,
    ):
        self.url = url
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class TransientHttpError(HttpClientError):
    """A retryable failure that persisted after the retry budget was spent."""


class UpstreamHttpError(HttpClientError):
    """A non-retryable HTTP status returned by the upstream."""


class MalformedResponseError(HttpClientError):
    """The upstream answered, but the body was not the JSON shape expected."""


class BaselineLoadError(FuelIntelError):
    """The last-known price snapshot could not be loaded."""


class PersistenceError(FuelIntelError):
    """A read or write against the price store failed."""


class WebhookError(FuelIntelError):
    """Completion webhook delivery failed."""


class WebhookAuthError(WebhookError):
    """The webhook receiver rejected our signature (HTTP 401/403)."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(
            f"Webhook authentication failed with HTTP {status_code} at {url}; "
            "check the webhook secret"
        )
