"""Shared HTTP POST delivery for webhook-style channels."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from stacks_alert_pipeline.alerter.models import DeliveryResult, NotificationEnvelope
from stacks_alert_pipeline.rules.models import NotificationChannel

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# Client errors worth retrying: request timeout and rate limiting.
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def classify_status(status_code: int) -> DeliveryResult:
    """Map an HTTP response status to a delivery outcome."""
    if 200 <= status_code < 300:
        return DeliveryResult.success()
    error = f"Endpoint returned status {status_code}"
    if status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES:
        return DeliveryResult.retryable(error)
    return DeliveryResult.permanent(error)


def _redact(url: str) -> str:
    return url if len(url) <= 40 else f"{url[:40]}..."


class HttpPostTransport:
    """POSTs a JSON body built from the envelope to the envelope's recipient URL.

    Subclasses set ``channel`` and implement ``build_body``. A client can be
    injected (tests use ``httpx.MockTransport``); otherwise one is created
    lazily and closed by ``aclose``.
    """

    channel: NotificationChannel

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def build_body(self, envelope: NotificationEnvelope) -> dict[str, Any]:
        raise NotImplementedError

    async def deliver(self, envelope: NotificationEnvelope) -> DeliveryResult:
        url = envelope.recipient
        if not url:
            return DeliveryResult.permanent(f"No {self.channel.value.lower()} URL configured")

        client = self._get_client()
        try:
            response = await client.post(url, json=self.build_body(envelope))
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
            logger.warning("%s recipient %s is not a usable URL: %s", self.channel.value, _redact(url), e)
            return DeliveryResult.permanent(f"Invalid URL: {e}")
        except httpx.TimeoutException:
            logger.warning("%s delivery to %s timed out", self.channel.value, _redact(url))
            return DeliveryResult.retryable("Request timed out")
        except httpx.TransportError as e:
            logger.warning("%s delivery to %s failed: %s", self.channel.value, _redact(url), e)
            return DeliveryResult.retryable(f"Transport error: {e}")

        result = classify_status(response.status_code)
        if not result.succeeded:
            logger.warning("%s delivery to %s: %s", self.channel.value, _redact(url), result.error)
        return result

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
