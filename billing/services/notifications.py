from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import httpx

from billing.config import Settings

logger = logging.getLogger(__name__)


class NotificationEmitter(Protocol):
    """Publishes payment events to the notification subsystem.

    Callers treat every method as best-effort and call them only after the
    ledger transaction has committed.
    """

    async def emit_payment_received(self, user_id: str, payment: dict[str, Any]) -> None: ...

    async def emit_payment_failed(self, user_id: str, transaction_id: str, reason: str) -> None: ...

    async def emit_partner_commission(
        self, user_id: str, amount: Decimal, order_id: str, currency: str
    ) -> None: ...


class LoggingNotificationEmitter:
    """Emitter used when no notification transport is configured."""

    async def emit_payment_received(self, user_id: str, payment: dict[str, Any]) -> None:
        logger.info(
            "payment received event",
            extra={
                "event": "payment.received",
                "user_id": user_id,
                "payment_id": payment.get("payment_id"),
                "amount": payment.get("amount"),
                "currency": payment.get("currency"),
                "status": payment.get("status"),
            },
        )

    async def emit_payment_failed(self, user_id: str, transaction_id: str, reason: str) -> None:
        logger.info(
            "payment failed event",
            extra={
                "event": "payment.failed",
                "user_id": user_id,
                "transaction_id": transaction_id,
                "reason": reason,
            },
        )

    async def emit_partner_commission(
        self, user_id: str, amount: Decimal, order_id: str, currency: str
    ) -> None:
        logger.info(
            "partner commission event",
            extra={
                "event": "partner.commission",
                "user_id": user_id,
                "commission": amount,
                "transaction_id": order_id,
                "currency": currency,
            },
        )


class HttpNotificationEmitter:
    """Posts events as JSON to the notification service."""

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url
        self.timeout = timeout

    async def _publish(self, event_type: str, user_id: str, data: dict[str, Any], priority: str) -> None:
        body = {
            "type": event_type,
            "user_id": user_id,
            "priority": priority,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {k: (format(v, "f") if isinstance(v, Decimal) else v) for k, v in data.items()},
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()

    async def emit_payment_received(self, user_id: str, payment: dict[str, Any]) -> None:
        await self._publish("payment.received", user_id, payment, "normal")

    async def emit_payment_failed(self, user_id: str, transaction_id: str, reason: str) -> None:
        await self._publish(
            "payment.failed",
            user_id,
            {"payment_id": transaction_id, "reason": reason},
            "high",
        )

    async def emit_partner_commission(
        self, user_id: str, amount: Decimal, order_id: str, currency: str
    ) -> None:
        await self._publish(
            "partner.commission",
            user_id,
            {"commission": amount, "order_id": order_id, "currency": currency},
            "normal",
        )


def build_notification_emitter(cfg: Settings) -> NotificationEmitter:
    if cfg.notification_url:
        return HttpNotificationEmitter(cfg.notification_url, timeout=cfg.notification_timeout_seconds)
    return LoggingNotificationEmitter()
