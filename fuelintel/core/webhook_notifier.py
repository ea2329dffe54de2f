"""Signed completion webhook for scraper runs.

The payload is serialized exactly once to canonical JSON and the HMAC-SHA256
signature is computed over those bytes; the same bytes are sent on every
attempt, so the receiver can verify the signature against the raw body.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from fuelintel.config import WebhookConfig
from fuelintel.core.errors import WebhookAuthError, WebhookError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="

STATISTICS_FIELDS = (
    "estados_processed",
    "municipios_processed",
    "stations_found",
    "price_changes_detected",
    "new_stations_added",
    "errors_encountered",
)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of an ``X-Webhook-Signature`` header value."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature)


def _error_to_dict(error: Any) -> dict:
    if hasattr(error, "to_dict"):
        return error.to_dict()
    if is_dataclass(error):
        data = asdict(error)
    else:
        data = dict(error)
    return {k: v for k, v in data.items() if v is not None}


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, WebhookAuthError)


class WebhookNotifier:
    """Deliver the run completion payload to the web application.

    Example:
        >>> notifier = WebhookNotifier(config.webhook)
        >>> payload = notifier.build_payload(started, completed, "completed", stats)
        >>> await notifier.send_completion_webhook(payload)
    """

    def __init__(
        self,
        config: WebhookConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize notifier.

        Args:
            config: Webhook URL, secret and delivery policy
            transport: Optional httpx transport (tests inject httpx.MockTransport)
            sleep: Awaitable sleep used between attempts
        """
        self.config = config
        self._transport = transport
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return self.config.enabled

    def build_payload(
        self,
        started_at: datetime,
        completed_at: datetime,
        status: str,
        statistics: Any,
        errors: Iterable[Any] = (),
    ) -> dict:
        """Build the canonical payload dict.

        Args:
            started_at: Run start time
            completed_at: Run end time
            status: "completed" or "failed"
            statistics: RunStatistics or a mapping with the same counter names
            errors: ErrorDetail objects or dicts; capped at ``max_errors``

        Returns:
            Payload dict in wire key order
        """
        if isinstance(statistics, Mapping):
            counters = statistics
        else:
            counters = {name: getattr(statistics, name, 0) for name in STATISTICS_FIELDS}

        error_list = [_error_to_dict(e) for e in errors]
        if len(error_list) > self.config.max_errors:
            logger.warning(
                "webhook_errors_truncated",
                total=len(error_list),
                kept=self.config.max_errors,
            )
            error_list = error_list[: self.config.max_errors]

        return {
            "started_at": format_timestamp(started_at),
            "completed_at": format_timestamp(completed_at),
            "status": getattr(status, "value", status),
            "statistics": {
                name: int(counters.get(name, 0) or 0) for name in STATISTICS_FIELDS
            },
            "errors": error_list,
        }

    @staticmethod
    def serialize(payload: dict) -> bytes:
        """Canonical JSON: compact separators, insertion key order, UTF-8."""
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def sign(self, body: bytes) -> str:
        if not self.config.secret:
            raise WebhookError("Webhook secret is not configured")
        return compute_signature(self.config.secret, body)

    async def send_completion_webhook(self, payload: dict) -> bool:
        """POST the signed payload, retrying transient failures.

        Returns:
            False if the webhook is not configured, True once delivered

        Raises:
            WebhookAuthError: On 401/403 (not retried)
            Exception: The last delivery error once attempts are exhausted
        """
        if not self.is_configured:
            logger.warning("webhook_not_configured", reason="missing URL or secret")
            return False

        url = self.config.url
        body = self.serialize(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: self.sign(body),
            "User-Agent": "FuelIntel-Webhook/1.0",
        }

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        async with httpx.AsyncClient(
            timeout=self.config.timeout, transport=self._transport
        ) as client:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    logger.info("webhook_sending", url=url, attempt=attempt_number)
                    response = await client.post(url, content=body, headers=headers)

                    if response.status_code in (401, 403):
                        logger.error(
                            "webhook_auth_failed",
                            url=url,
                            status_code=response.status_code,
                        )
                        raise WebhookAuthError(response.status_code, url)

                    response.raise_for_status()

        logger.info(
            "webhook_delivered",
            url=url,
            status=payload.get("status"),
            attempts=attempt_number,
        )
        return True

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.config.retry_base_delay * 2 ** (retry_state.attempt_number - 1)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "webhook_retry",
            url=self.config.url,
            attempt=retry_state.attempt_number,
            max_attempts=self.config.max_attempts,
            delay=retry_state.next_action.sleep if retry_state.next_action else 0.0,
            error=f"{type(exc).__name__}: {exc}",
        )
