from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from billing.domain.models import Partner, PartnerEarning, ReferralAccrual, Subscription, User
from billing.domain.statuses import SubscriptionStatus

from .unit_of_work import LedgerUpdateError


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class PgUserStore:
    """Read-only user projection plus the balance column."""

    def __init__(self, cur: Any):
        self.cur = cur

    def get(self, user_id: str) -> User | None:
        self.cur.execute(
            """
            SELECT id, referred_by, partner_id, balance
              FROM users
             WHERE id = %s
             LIMIT 1
            """,
            (user_id,),
        )
        row = self.cur.fetchone()
        if not row:
            return None
        return User(
            id=str(row[0]),
            referred_by=str(row[1]) if row[1] else None,
            partner_id=str(row[2]) if row[2] else None,
            balance=_decimal(row[3]),
        )

    def add_balance(self, user_id: str, amount: Decimal) -> Decimal:
        self.cur.execute(
            """
            UPDATE users
               SET balance = COALESCE(balance, 0) + %s,
                   updated_at = NOW()
             WHERE id = %s
            RETURNING balance
            """,
            (amount, user_id),
        )
        row = self.cur.fetchone()
        if not row:
            raise LedgerUpdateError(f"User {user_id} not found")
        return _decimal(row[0])


class PgSubscriptionStore:
    def __init__(self, cur: Any):
        self.cur = cur

    @staticmethod
    def _hydrate(row: tuple[Any, ...]) -> Subscription:
        return Subscription(
            id=str(row[0]),
            user_id=str(row[1]),
            plan_id=str(row[2]),
            status=SubscriptionStatus(str(row[3])),
            expire_at=row[4],
        )

    def get_active(self, user_id: str) -> Subscription | None:
        self.cur.execute(
            """
            SELECT id, user_id, plan_id, status, expire_at
              FROM subscriptions
             WHERE user_id = %s AND status = 'active'
             ORDER BY expire_at DESC
             LIMIT 1
             FOR UPDATE
            """,
            (user_id,),
        )
        row = self.cur.fetchone()
        return self._hydrate(row) if row else None

    def extend(self, subscription_id: str, days: int) -> Subscription:
        self.cur.execute(
            """
            UPDATE subscriptions
               SET expire_at = expire_at + make_interval(days => %s),
                   updated_at = NOW()
             WHERE id = %s
            RETURNING id, user_id, plan_id, status, expire_at
            """,
            (int(days), subscription_id),
        )
        row = self.cur.fetchone()
        if not row:
            raise LedgerUpdateError(f"Subscription {subscription_id} not found")
        return self._hydrate(row)

    def create(self, user_id: str, plan_id: str, days: int, now: datetime) -> Subscription:
        self.cur.execute(
            """
            INSERT INTO subscriptions (id, user_id, plan_id, status, expire_at, created_at, updated_at)
            VALUES (%s, %s, %s, 'active', %s + make_interval(days => %s), NOW(), NOW())
            RETURNING id, user_id, plan_id, status, expire_at
            """,
            (str(uuid.uuid4()), user_id, plan_id, now, int(days)),
        )
        return self._hydrate(self.cur.fetchone())


class PgReferralStore:
    def __init__(self, cur: Any):
        self.cur = cur

    def add_points(self, referrer_id: str, referred_id: str, points: int) -> ReferralAccrual:
        self.cur.execute(
            """
            INSERT INTO referrals (referrer_id, referred_id, points_earned, status, created_at)
            VALUES (%s, %s, %s, 'completed', NOW())
            ON CONFLICT (referrer_id, referred_id) DO UPDATE
                SET points_earned = referrals.points_earned + EXCLUDED.points_earned
            RETURNING referrer_id, referred_id, points_earned
            """,
            (referrer_id, referred_id, int(points)),
        )
        row = self.cur.fetchone()
        return ReferralAccrual(referrer_id=str(row[0]), referred_id=str(row[1]), points_earned=int(row[2]))


class PgPartnerStore:
    def __init__(self, cur: Any):
        self.cur = cur

    def get(self, partner_id: str) -> Partner | None:
        self.cur.execute(
            """
            SELECT id, user_id, commission_rate, balance, total_earnings
              FROM partners
             WHERE id = %s
             LIMIT 1
             FOR UPDATE
            """,
            (partner_id,),
        )
        row = self.cur.fetchone()
        if not row:
            return None
        return Partner(
            id=str(row[0]),
            user_id=str(row[1]) if row[1] else None,
            commission_rate=Decimal(str(row[2])) if row[2] is not None else None,
            balance=_decimal(row[3]),
            total_earnings=_decimal(row[4]),
        )

    def record_earning(self, earning: PartnerEarning) -> PartnerEarning:
        earning.id = earning.id or str(uuid.uuid4())
        self.cur.execute(
            """
            INSERT INTO partner_earnings (
                id, partner_id, referred_user_id, order_id, amount, commission_rate, status, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
            """,
            (
                earning.id,
                earning.partner_id,
                earning.referred_user_id,
                earning.order_id,
                earning.amount,
                earning.commission_rate,
                earning.status.value,
            ),
        )
        return earning

    def credit(self, partner_id: str, amount: Decimal) -> None:
        self.cur.execute(
            """
            UPDATE partners
               SET balance = COALESCE(balance, 0) + %s,
                   total_earnings = COALESCE(total_earnings, 0) + %s,
                   updated_at = NOW()
             WHERE id = %s
            """,
            (amount, amount, partner_id),
        )
        if self.cur.rowcount == 0:
            raise LedgerUpdateError(f"Partner {partner_id} not found")
