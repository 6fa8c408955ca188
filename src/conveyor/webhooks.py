"""Webhook notifications for pipeline and rollout lifecycle events.

Sends JSON POSTs to every configured webhook subscribed to an event. Server
errors (5xx), timeouts and connection errors are retried with exponential
backoff; client errors (4xx) are not. Delivery failures are logged and
returned, never raised, so a broken webhook cannot fail a pipeline.

Example:
    >>> config = WebhookConfig(
    ...     url="https://hooks.example.com/conveyor",
    ...     events=["rollout_succeeded", "rollout_failed"],
    ... )
    >>> notifier = WebhookNotifier([config])
    >>> results = notifier.notify_all("rollout_failed", {"environment": "production"})
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from conveyor.schemas.config import WebhookConfig
from conveyor.telemetry.tracing import create_span

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

logger = structlog.get_logger(__name__)


class WebhookNotificationResult(BaseModel):
    """Result of a webhook notification attempt.

    Examples:
        >>> WebhookNotificationResult(success=True, status_code=200, url="https://x").attempts
        1
    """

    model_config = ConfigDict(extra="forbid")

    success: bool = Field(..., description="Whether notification delivered successfully")
    status_code: int | None = Field(default=None, description="HTTP response status code")
    url: str = Field(..., description="Target webhook URL")
    error: str | None = Field(default=None, description="Error message if failed")
    attempts: int = Field(default=1, ge=1, description="Number of delivery attempts")


class WebhookNotifier:
    """Delivers lifecycle events to configured webhooks.

    Attributes:
        configs: Webhook configurations.
    """

    def __init__(
        self,
        configs: list[WebhookConfig],
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.configs = list(configs)
        self._transport = transport
        self._sleep = sleep

    def subscribers(self, event_type: str) -> list[WebhookConfig]:
        """Configs subscribed to event_type."""
        return [c for c in self.configs if event_type in c.events]

    def build_payload(self, event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **event_data,
        }

    def notify(
        self,
        config: WebhookConfig,
        event_type: str,
        event_data: dict[str, Any],
    ) -> WebhookNotificationResult:
        """Send one event to one webhook, retrying transient failures."""
        payload = self.build_payload(event_type, event_data)
        allowed = 1 + config.retry_count
        log = logger.bind(url=config.url, event_type=event_type)

        with create_span(
            "conveyor.webhook.notify",
            attributes={"url": config.url, "event_type": event_type, "max_attempts": allowed},
        ) as span:
            started = time.monotonic()
            with httpx.Client(timeout=config.timeout_seconds, transport=self._transport) as client:
                attempt = 0
                while True:
                    attempt += 1
                    status_code, error, transient = self._post(client, config, payload)
                    if error is None:
                        break
                    if not transient or attempt >= allowed:
                        break
                    delay = BACKOFF_BASE_SECONDS * 2 ** (attempt - 1)
                    log.warning(
                        "webhook_delivery_retry",
                        error=error,
                        attempt=attempt,
                        max_attempts=allowed,
                        backoff_seconds=delay,
                    )
                    self._sleep(delay)

            success = error is None
            span.set_attribute("attempts", attempt)
            span.set_attribute("success", success)
            if success:
                log.info(
                    "webhook_delivered",
                    status_code=status_code,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            else:
                log.error(
                    "webhook_delivery_failed",
                    status_code=status_code,
                    error=error,
                    attempts=attempt,
                )
            return WebhookNotificationResult(
                success=success,
                status_code=status_code,
                url=config.url,
                error=error,
                attempts=attempt,
            )

    @staticmethod
    def _post(
        client: httpx.Client, config: WebhookConfig, payload: dict[str, Any]
    ) -> tuple[int | None, str | None, bool]:
        """POST once. Returns (status code, error or None, whether to retry)."""
        try:
            response = client.post(config.url, json=payload, headers=config.headers or {})
        except httpx.TimeoutException:
            return None, "Request timed out", True
        except httpx.RequestError as e:
            return None, str(e), True
        code = response.status_code
        if code >= 500:
            return code, f"Server error: {code}", True
        if code >= 400:
            return code, f"Client error: {code}", False
        return code, None, False

    def notify_all(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> list[WebhookNotificationResult]:
        """Send an event to every subscribed webhook; one failure does not stop the rest."""
        subscribed = self.subscribers(event_type)
        if not subscribed:
            logger.debug("webhook_no_subscribers", event_type=event_type)
        return [self.notify(config, event_type, event_data) for config in subscribed]


__all__: list[str] = [
    "WebhookNotificationResult",
    "WebhookNotifier",
]
