"""Resilient HTTP client for the upstream government API.

Wraps ``httpx.AsyncClient`` with:
- a minimum spacing between request starts (per client instance)
- a concurrency cap (RateLimiter)
- automatic retry with capped exponential backoff for transient failures

Circuit breaking is applied by the caller around logical fetches, so one
failed request counts once toward a breaker, after its retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from fuelintel.config import HttpConfig
from fuelintel.core.errors import (
    HttpClientError,
    MalformedResponseError,
    TransientHttpError,
    UpstreamHttpError,
)
from fuelintel.core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Statuses worth retrying: timeouts, payload too large (upstream flakiness),
# throttling, 5xx gateway errors and Cloudflare 52x origin errors.
RETRYABLE_STATUS_CODES = frozenset({408, 413, 429, 500, 502, 503, 504, 521, 522, 524})

# Timeouts, connection reset/refused, DNS failure, network unreachable.
RETRYABLE_TRANSPORT_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def is_retryable_exception(exc: BaseException) -> bool:
    """Whether a transport-level exception belongs to the retry allow-list."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, RETRYABLE_TRANSPORT_ERRORS)


def compute_backoff_delay(
    attempt: int, base: float, multiplier: float, max_delay: float
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    delay = min(base * multiplier ** (attempt - 1), max_delay)
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base * multiplier ** (attempt - 1), max_delay)


class ResilientHttpClient:
    """Rate-limited, retrying JSON client.

    Example:
        >>> async with ResilientHttpClient(HttpConfig(), RateLimiter(10)) as http:
        ...     estados = await http.get(f"{base}/entidadesfederativas")
    """

    def __init__(
        self,
        config: HttpConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize client.

        Args:
            config: Timeouts, retry budget and pacing interval
            rate_limiter: Shared concurrency limiter (a private one is created if omitted)
            transport: Optional httpx transport (tests inject httpx.MockTransport)
            sleep: Awaitable sleep used for backoff and pacing
        """
        self.config = config or HttpConfig()
        self.rate_limiter = rate_limiter or RateLimiter()
        self._sleep = sleep
        self._last_request_time: float | None = None
        self._pacing_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            timeout=self.config.timeout,
            transport=transport,
            follow_redirects=True,
            headers={
                "User-Agent": self.config.user_agent,
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> ResilientHttpClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` using this client's configuration."""
        return compute_backoff_delay(
            attempt,
            self.config.retry_base_delay,
            self.config.retry_multiplier,
            self.config.retry_max_delay,
        )

    async def get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        skip_rate_limit: bool = False,
    ) -> Any:
        """GET ``url`` and return the decoded JSON body."""
        return await self._request("GET", url, params=params, skip_rate_limit=skip_rate_limit)

    async def post(
        self,
        url: str,
        body: Any = None,
        *,
        skip_rate_limit: bool = False,
    ) -> Any:
        """POST ``body`` as JSON and return the decoded JSON body. Never retried."""
        return await self._request("POST", url, json=body, skip_rate_limit=skip_rate_limit)

    async def _request(
        self, method: str, url: str, *, skip_rate_limit: bool, **kwargs: Any
    ) -> Any:
        if skip_rate_limit:
            response = await self._send_with_retry(method, url, paced=False, **kwargs)
        else:
            response = await self.rate_limiter.execute(
                lambda: self._send_with_retry(method, url, paced=True, **kwargs)
            )
        return self._decode(response, method, url)

    async def _enforce_pacing(self) -> None:
        """Space request issuance at least ``min_request_interval`` apart.

        Called inside a limiter slot before every attempt, retries included.
        """
        async with self._pacing_lock:
            if self._last_request_time is not None:
                wait = self._last_request_time + self.config.min_request_interval - time.monotonic()
                if wait > 0:
                    await self._sleep(wait)
            self._last_request_time = time.monotonic()

    async def _send_with_retry(
        self, method: str, url: str, *, paced: bool, **kwargs: Any
    ) -> httpx.Response:
        max_attempts = self.config.max_retries + 1 if method in IDEMPOTENT_METHODS else 1
        attempts_made = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable_exception),
            before_sleep=lambda retry_state: self._log_retry(retry_state, method, url),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts_made = attempt.retry_state.attempt_number
                    if paced:
                        await self._enforce_pacing()
                    logger.debug(f"[HTTP] {method} {url} (attempt {attempts_made})")
                    response = await self._client.request(method, url, **kwargs)
                    logger.debug(f"[HTTP] Response {response.status_code} from {url}")
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in RETRYABLE_STATUS_CODES:
                logger.error(
                    f"[HTTP] {method} {url} failed with HTTP {status} "
                    f"after {attempts_made} attempt(s)"
                )
                raise TransientHttpError(
                    f"HTTP {status} from {url} after {attempts_made} attempt(s)",
                    url=url,
                    status_code=status,
                    attempts=attempts_made,
                ) from e
            logger.error(f"[HTTP] {method} {url} rejected with HTTP {status} (not retried)")
            raise UpstreamHttpError(
                f"HTTP {status} from {url}",
                url=url,
                status_code=status,
                attempts=attempts_made,
            ) from e
        except RETRYABLE_TRANSPORT_ERRORS as e:
            logger.error(
                f"[HTTP] {method} {url} failed after {attempts_made} attempt(s): "
                f"{type(e).__name__}: {e}"
            )
            raise TransientHttpError(
                f"{type(e).__name__} for {url} after {attempts_made} attempt(s): {e}",
                url=url,
                attempts=attempts_made,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"[HTTP] {method} {url} failed: {type(e).__name__}: {e}")
            raise HttpClientError(
                f"{type(e).__name__} for {url}: {e}", url=url, attempts=attempts_made
            ) from e

        return response

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.backoff_delay(retry_state.attempt_number)

    @staticmethod
    def _log_retry(retry_state: RetryCallState, method: str, url: str) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if isinstance(exc, httpx.HTTPStatusError):
            reason = f"HTTP {exc.response.status_code}"
        else:
            reason = f"{type(exc).__name__}: {exc}"
        logger.warning(
            f"[HTTP] Retry {retry_state.attempt_number} for {method} {url} ({reason}), "
            f"waiting {delay * 1000:.0f}ms"
        )

    @staticmethod
    def _decode(response: httpx.Response, method: str, url: str) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"[HTTP] {method} {url} returned a body that is not JSON")
            raise MalformedResponseError(
                f"Malformed JSON from {url}: {e}",
                url=url,
                status_code=response.status_code,
            ) from e
