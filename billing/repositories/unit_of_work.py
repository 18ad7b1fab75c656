from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, ContextManager, Protocol

from billing.domain.enums import PaymentType
from billing.domain.models import (
    Partner,
    PartnerEarning,
    PaymentTransaction,
    ReferralAccrual,
    Subscription,
    User,
)
from billing.domain.statuses import TransactionStatus


class TransactionLedger(Protocol):
    """Payment transaction rows; the idempotency anchor of the pipeline."""

    def get_by_external_id(
        self, external_id: str, gateway_id: str, *, for_update: bool = False
    ) -> PaymentTransaction | None: ...

    def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> PaymentTransaction | None: ...

    def create(
        self,
        *,
        user_id: str,
        gateway_id: str,
        amount: Decimal,
        currency: str,
        type: PaymentType,
        metadata: dict[str, Any] | None = None,
        external_id: str | None = None,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> PaymentTransaction: ...

    def update(self, transaction_id: str, **fields: Any) -> PaymentTransaction: ...


class UserStore(Protocol):
    def get(self, user_id: str) -> User | None: ...

    def add_balance(self, user_id: str, amount: Decimal) -> Decimal: ...


class SubscriptionStore(Protocol):
    def get_active(self, user_id: str) -> Subscription | None: ...

    def extend(self, subscription_id: str, days: int) -> Subscription: ...

    def create(self, user_id: str, plan_id: str, days: int, now: datetime) -> Subscription: ...


class ReferralStore(Protocol):
    def add_points(self, referrer_id: str, referred_id: str, points: int) -> ReferralAccrual: ...


class PartnerStore(Protocol):
    def get(self, partner_id: str) -> Partner | None: ...

    def record_earning(self, earning: PartnerEarning) -> PartnerEarning: ...

    def credit(self, partner_id: str, amount: Decimal) -> None: ...


class UnitOfWork(Protocol):
    """Stores bound to one open database transaction."""

    ledger: TransactionLedger
    users: UserStore
    subscriptions: SubscriptionStore
    referrals: ReferralStore
    partners: PartnerStore

    def savepoint(self, name: str) -> ContextManager[None]:
        """Nested scope; an exception rolls back only the work done inside it."""
        ...


UnitOfWorkFactory = Callable[[], ContextManager[UnitOfWork]]


class LedgerUnavailable(RuntimeError):
    """The relational store is not configured or not reachable."""


class LedgerUpdateError(RuntimeError):
    """A ledger write did not affect the expected row."""
