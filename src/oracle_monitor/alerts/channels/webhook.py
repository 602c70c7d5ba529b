"""Webhook notification channel."""

from __future__ import annotations

import logging

import httpx

from oracle_monitor.alerts.formatter import AlertFormatter
from oracle_monitor.alerts.models import AlertPayload

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class WebhookChannel:
    """POSTs alerts as JSON to a webhook URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        formatter: AlertFormatter | None = None,
        client: httpx.AsyncClient | None = None,
        name: str | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._formatter = formatter or AlertFormatter()
        self._client = client
        self._owns_client = client is None
        if name:
            self.name = name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=5.0))
            self._owns_client = True
        return self._client

    async def send(self, payload: AlertPayload) -> bool:
        try:
            response = await self._get_client().post(
                self._url,
                json=self._formatter.webhook_body(payload),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Webhook timed out for alert %s: %s", payload.fingerprint, e)
            return False
        except httpx.RequestError as e:
            logger.warning("Webhook request failed for alert %s: %s", payload.fingerprint, e)
            return False

        if not response.is_success:
            logger.warning(
                "Webhook returned HTTP %s for alert %s: %s",
                response.status_code,
                payload.fingerprint,
                response.text[:200],
            )
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
