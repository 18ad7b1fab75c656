from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from billing.domain.enums import PaymentType
from billing.domain.models import (
    Partner,
    PartnerEarning,
    PaymentTransaction,
    ReferralAccrual,
    Subscription,
    User,
)
from billing.domain.statuses import SubscriptionStatus, TransactionStatus

from .unit_of_work import LedgerUpdateError


@dataclass
class _State:
    transactions: Dict[str, PaymentTransaction] = field(default_factory=dict)
    users: Dict[str, User] = field(default_factory=dict)
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    referrals: Dict[tuple[str, str], ReferralAccrual] = field(default_factory=dict)
    partners: Dict[str, Partner] = field(default_factory=dict)
    earnings: list[PartnerEarning] = field(default_factory=list)


class InMemoryTransactionLedger:
    def __init__(self, db: "InMemoryDatabase"):
        self.db = db

    def get_by_external_id(
        self, external_id: str, gateway_id: str, *, for_update: bool = False
    ) -> Optional[PaymentTransaction]:
        if not external_id:
            return None
        for tx in self.db.state.transactions.values():
            if tx.external_id == external_id and tx.gateway_id == gateway_id:
                return copy.deepcopy(tx)
        return None

    def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> Optional[PaymentTransaction]:
        tx = self.db.state.transactions.get(str(transaction_id)) if transaction_id else None
        return copy.deepcopy(tx) if tx else None

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
        id: str | None = None,
    ) -> PaymentTransaction:
        if external_id and self.get_by_external_id(external_id, gateway_id):
            raise LedgerUpdateError(f"Duplicate external id {gateway_id}/{external_id}")
        now = datetime.now(timezone.utc)
        tx = PaymentTransaction(
            id=id or str(uuid.uuid4()),
            user_id=user_id,
            gateway_id=gateway_id,
            external_id=external_id,
            amount=Decimal(amount),
            currency=currency,
            status=status,
            type=type,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.db.state.transactions[tx.id] = tx
        return copy.deepcopy(tx)

    def update(self, transaction_id: str, **fields: Any) -> PaymentTransaction:
        tx = self.db.state.transactions.get(str(transaction_id))
        if tx is None:
            raise LedgerUpdateError(f"Transaction {transaction_id} not found")
        external_id = fields.get("external_id")
        if external_id:
            clash = self.get_by_external_id(external_id, tx.gateway_id)
            if clash and clash.id != tx.id:
                raise LedgerUpdateError(f"Duplicate external id {tx.gateway_id}/{external_id}")
        for key, value in fields.items():
            setattr(tx, key, value)
        tx.updated_at = datetime.now(timezone.utc)
        return copy.deepcopy(tx)


class InMemoryUserStore:
    def __init__(self, db: "InMemoryDatabase"):
        self.db = db

    def get(self, user_id: str) -> Optional[User]:
        user = self.db.state.users.get(user_id)
        return copy.deepcopy(user) if user else None

    def add_balance(self, user_id: str, amount: Decimal) -> Decimal:
        user = self.db.state.users.get(user_id)
        if user is None:
            raise LedgerUpdateError(f"User {user_id} not found")
        user.balance += amount
        return user.balance


class InMemorySubscriptionStore:
    def __init__(self, db: "InMemoryDatabase"):
        self.db = db

    def get_active(self, user_id: str) -> Optional[Subscription]:
        active = [
            s
            for s in self.db.state.subscriptions.values()
            if s.user_id == user_id and s.status is SubscriptionStatus.ACTIVE
        ]
        if not active:
            return None
        return copy.deepcopy(max(active, key=lambda s: s.expire_at))

    def extend(self, subscription_id: str, days: int) -> Subscription:
        sub = self.db.state.subscriptions.get(subscription_id)
        if sub is None:
            raise LedgerUpdateError(f"Subscription {subscription_id} not found")
        sub.expire_at = sub.expire_at + timedelta(days=days)
        return copy.deepcopy(sub)

    def create(self, user_id: str, plan_id: str, days: int, now: datetime) -> Subscription:
        sub = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            plan_id=plan_id,
            expire_at=now + timedelta(days=days),
        )
        self.db.state.subscriptions[sub.id] = sub
        return copy.deepcopy(sub)

    def for_user(self, user_id: str) -> list[Subscription]:
        return [copy.deepcopy(s) for s in self.db.state.subscriptions.values() if s.user_id == user_id]


class InMemoryReferralStore:
    def __init__(self, db: "InMemoryDatabase"):
        self.db = db

    def add_points(self, referrer_id: str, referred_id: str, points: int) -> ReferralAccrual:
        key = (referrer_id, referred_id)
        accrual = self.db.state.referrals.get(key)
        if accrual is None:
            accrual = ReferralAccrual(referrer_id=referrer_id, referred_id=referred_id)
            self.db.state.referrals[key] = accrual
        accrual.points_earned += int(points)
        return copy.deepcopy(accrual)

    def get(self, referrer_id: str, referred_id: str) -> Optional[ReferralAccrual]:
        accrual = self.db.state.referrals.get((referrer_id, referred_id))
        return copy.deepcopy(accrual) if accrual else None


class InMemoryPartnerStore:
    def __init__(self, db: "InMemoryDatabase"):
        self.db = db

    def get(self, partner_id: str) -> Optional[Partner]:
        partner = self.db.state.partners.get(partner_id)
        return copy.deepcopy(partner) if partner else None

    def record_earning(self, earning: PartnerEarning) -> PartnerEarning:
        earning.id = earning.id or str(uuid.uuid4())
        self.db.state.earnings.append(copy.deepcopy(earning))
        return earning

    def credit(self, partner_id: str, amount: Decimal) -> None:
        partner = self.db.state.partners.get(partner_id)
        if partner is None:
            raise LedgerUpdateError(f"Partner {partner_id} not found")
        partner.balance += amount
        partner.total_earnings += amount

    def earnings(self) -> list[PartnerEarning]:
        return [copy.deepcopy(e) for e in self.db.state.earnings]


class InMemoryUnitOfWork:
    def __init__(self, db: "InMemoryDatabase"):
        self.db = db
        self.ledger = db.ledger
        self.users = db.users
        self.subscriptions = db.subscriptions
        self.referrals = db.referrals
        self.partners = db.partners

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        snapshot = copy.deepcopy(self.db.state)
        try:
            yield
        except Exception:
            self.db.state = snapshot
            raise


class InMemoryDatabase:
    """In-process stand-in for the relational store.

    A transaction snapshots the whole state and restores it on error; one
    lock serializes transactions the way row locks serialize deliveries of
    the same webhook.
    """

    def __init__(self) -> None:
        self.state = _State()
        self._lock = threading.Lock()
        self.ledger = InMemoryTransactionLedger(self)
        self.users = InMemoryUserStore(self)
        self.subscriptions = InMemorySubscriptionStore(self)
        self.referrals = InMemoryReferralStore(self)
        self.partners = InMemoryPartnerStore(self)

    @contextmanager
    def unit_of_work(self) -> Iterator[InMemoryUnitOfWork]:
        with self._lock:
            snapshot = copy.deepcopy(self.state)
            try:
                yield InMemoryUnitOfWork(self)
            except BaseException:
                self.state = snapshot
                raise

    def add_user(self, user: User) -> User:
        self.state.users[user.id] = user
        return user

    def add_partner(self, partner: Partner) -> Partner:
        self.state.partners[partner.id] = partner
        return partner

    def add_subscription(self, subscription: Subscription) -> Subscription:
        subscription.id = subscription.id or str(uuid.uuid4())
        self.state.subscriptions[subscription.id] = subscription
        return subscription

    def delete_partner(self, partner_id: str) -> None:
        self.state.partners.pop(partner_id, None)
