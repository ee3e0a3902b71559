"""
Completion webhooks.

The body is compact JSON with sorted keys; the X-Signature header carries
hex(HMAC-SHA256(secret, body)) so receivers can authenticate it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Optional

import httpx
import structlog

from .db import Payment
from .errors import WebhookDeliveryError

logger = structlog.get_logger()

EVENT_PAYMENT_COMPLETED = "payment.completed"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_payload(event: str, payment: Payment) -> bytes:
    obj: dict[str, Any] = {"event": event, "payment": payment.public_dict()}
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


class WebhookNotifier:
    """Posts signed payment events to a single endpoint."""

    def __init__(
        self,
        url: str,
        secret: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def payment_completed(self, payment: Payment) -> bool:
        """
        Send a payment.completed event.

        Returns False when no webhook URL is configured.

        Raises:
            WebhookDeliveryError: request failed or returned non-2xx
        """
        if not self.enabled:
            logger.debug("webhook_disabled", payment_id=payment.id)
            return False

        body = build_payload(EVENT_PAYMENT_COMPLETED, payment)
        headers = {
            "Content-Type": "application/json",
            "X-Signature": sign_payload(self.secret, body),
        }

        logger.info("webhook_sending", payment_id=payment.id, event=EVENT_PAYMENT_COMPLETED)
        client = await self._get_client()
        try:
            response = await client.post(self.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(f"webhook request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "webhook_rejected",
                payment_id=payment.id,
                status=response.status_code,
                body=response.text[:200],
            )
            raise WebhookDeliveryError(f"webhook failed with status {response.status_code}")

        logger.info("webhook_sent", payment_id=payment.id)
        return True

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
