"""Notification delivery over HTTP webhooks.

Posts one JSON document per event to a configured endpoint.  Delivery is
retried a few times with exponential backoff.

INVARIANT: Notification is fire-and-forget.  Failures are logged but never
propagate to the provisioning step that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from provisioning_engine.jobs.retry import RetryConfig, compute_delay
from provisioning_engine.models.events import NotificationKind

logger = logging.getLogger(__name__)

_DEFAULT_RETRY = RetryConfig(max_retries=2, base_delay=1.0, max_delay=4.0, jitter=False)


class WebhookNotifier:
    """Deliver notifications to an HTTP endpoint.

    Parameters
    ----------
    url:
        Endpoint receiving ``POST`` requests with a JSON body.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    retry:
        Backoff parameters between delivery attempts.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._retry = retry or _DEFAULT_RETRY

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def notify(
        self,
        tenant_id: str,
        event_kind: NotificationKind,
        detail: dict[str, Any] | None = None,
    ) -> None:
        body = {
            "tenant_id": tenant_id,
            "event": event_kind.value,
            "detail": detail or {},
            "sent_at": datetime.now(UTC).isoformat(),
        }
        headers = {"X-Provisioning-Event": event_kind.value}

        last_error: str | None = None
        for attempt in range(self._retry.max_retries + 1):
            try:
                response = await self._client.post(self._url, json=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = str(exc)
            else:
                if 200 <= response.status_code < 300:
                    logger.info(
                        "Notification delivered: tenant=%s event=%s attempt=%d",
                        tenant_id,
                        event_kind.value,
                        attempt + 1,
                    )
                    return
                last_error = f"HTTP {response.status_code}"
                if 400 <= response.status_code < 500:
                    break

            if attempt < self._retry.max_retries:
                await asyncio.sleep(compute_delay(attempt, self._retry))

        logger.error(
            "Notification delivery failed: tenant=%s event=%s error=%s",
            tenant_id,
            event_kind.value,
            last_error,
        )
