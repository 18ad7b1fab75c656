from __future__ import annotations

from enum import Enum


class WebhookStatus(str, Enum):
    """Canonical status carried by a normalized webhook."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class TransactionStatus(str, Enum):
    """Status of a ledger row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EarningStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
