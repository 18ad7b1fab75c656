from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from billing.config import Settings
from billing.domain.enums import PaymentType
from billing.domain.models import GatewayConfig, PaymentTransaction, User
from billing.repositories.memory_store import InMemoryDatabase
from billing.services.payment_processing import PaymentProcessingService

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def emit_payment_received(self, user_id: str, payment: dict[str, Any]) -> None:
        self.events.append(("payment_received", user_id, dict(payment)))

    async def emit_payment_failed(self, user_id: str, transaction_id: str, reason: str) -> None:
        self.events.append(("payment_failed", user_id, {"transaction_id": transaction_id, "reason": reason}))

    async def emit_partner_commission(
        self, user_id: str, amount: Decimal, order_id: str, currency: str
    ) -> None:
        self.events.append(
            ("partner_commission", user_id, {"amount": amount, "order_id": order_id, "currency": currency})
        )

    def of(self, kind: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [event for event in self.events if event[0] == kind]


class StaticGatewayConfigs:
    def __init__(self, **configs: GatewayConfig):
        self.configs = {name.replace("_", "-"): cfg for name, cfg in configs.items()}

    def get(self, gateway: str) -> GatewayConfig:
        return self.configs.get(gateway, GatewayConfig(name=gateway))


class RecordingWebhookLog:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def record(self, **fields: Any) -> None:
        self.records.append(fields)


@pytest.fixture
def cfg() -> Settings:
    return Settings(_env_file=None, db_host="", webhook_timeout_seconds=2.0)


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def processor(db: InMemoryDatabase, notifier: RecordingNotifier, cfg: Settings) -> PaymentProcessingService:
    return PaymentProcessingService(db.unit_of_work, notifier, cfg, clock=lambda: FIXED_NOW)


def seed_transaction(
    db: InMemoryDatabase,
    *,
    id: str = "tx-1",
    user_id: str = "u1",
    gateway_id: str = "yookassa",
    amount: str = "9.99",
    currency: str = "RUB",
    type: PaymentType = PaymentType.SUBSCRIPTION,
    metadata: dict[str, Any] | None = None,
    external_id: str | None = None,
) -> PaymentTransaction:
    with db.unit_of_work() as uow:
        return uow.ledger.create(
            id=id,
            user_id=user_id,
            gateway_id=gateway_id,
            amount=Decimal(amount),
            currency=currency,
            type=type,
            metadata=metadata,
            external_id=external_id,
        )


def seed_user(db: InMemoryDatabase, user_id: str = "u1", **kwargs: Any) -> User:
    return db.add_user(User(id=user_id, **kwargs))
