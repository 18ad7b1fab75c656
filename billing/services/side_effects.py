"""Side effects applied when a payment completes.

Each applier writes only its own tables through the unit of work it is
given and raises on failure. The orchestrator runs every call inside a
savepoint, so a failing applier never touches the ledger row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP

from billing.domain.models import PartnerEarning, ReferralAccrual, Subscription, SubscriptionMetadata
from billing.repositories.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")


class PartnerNotFound(LookupError):
    pass


@dataclass(frozen=True)
class PartnerCommissionNotice:
    """Commission event to publish once the transaction has committed."""

    user_id: str
    amount: Decimal
    order_id: str
    currency: str


class SubscriptionActivator:
    def activate(
        self, uow: UnitOfWork, user_id: str, metadata: SubscriptionMetadata, now: datetime
    ) -> Subscription:
        """Extend the active subscription, or start one from ``now``.

        Extension adds to the current ``expire_at`` so unused time is kept.
        """
        existing = uow.subscriptions.get_active(user_id)
        if existing is not None and existing.id:
            subscription = uow.subscriptions.extend(existing.id, metadata.duration_days)
            action = "extended"
        else:
            subscription = uow.subscriptions.create(user_id, metadata.plan_id, metadata.duration_days, now)
            action = "created"
        logger.info(
            f"subscription {action}",
            extra={
                "user_id": user_id,
                "plan_id": metadata.plan_id,
                "duration_days": metadata.duration_days,
            },
        )
        return subscription


class BalanceAdjuster:
    def add(self, uow: UnitOfWork, user_id: str, amount: Decimal) -> Decimal:
        if amount <= 0:
            raise ValueError("Balance top-up must be positive")
        balance = uow.users.add_balance(user_id, amount)
        logger.info("balance added", extra={"user_id": user_id, "amount": amount})
        return balance


class ReferralAccruer:
    def __init__(self, rate: Decimal = Decimal("0.1")):
        self.rate = rate

    def points_for(self, amount: Decimal) -> int:
        return int((amount * self.rate).to_integral_value(rounding=ROUND_FLOOR))

    def accrue(self, uow: UnitOfWork, referrer_id: str, referred_id: str, amount: Decimal) -> ReferralAccrual:
        # Small payments floor to zero points; the accrual row is still written.
        points = self.points_for(amount)
        accrual = uow.referrals.add_points(referrer_id, referred_id, points)
        logger.info(
            "referral points added",
            extra={
                "referrer_id": referrer_id,
                "user_id": referred_id,
                "amount": amount,
                "points": points,
            },
        )
        return accrual


class PartnerCommissionAccruer:
    def __init__(self, default_rate: Decimal = Decimal("0.1")):
        self.default_rate = default_rate

    def accrue(
        self,
        uow: UnitOfWork,
        partner_id: str,
        user_id: str,
        amount: Decimal,
        order_id: str,
        currency: str,
    ) -> PartnerCommissionNotice | None:
        """Record a pending earning and credit the partner.

        The rate is the partner's current one. Returns the notice for the
        partner's owning user, or None when the partner has no user.
        """
        partner = uow.partners.get(partner_id)
        if partner is None:
            raise PartnerNotFound(f"Partner {partner_id} not found")
        rate = partner.commission_rate if partner.commission_rate is not None else self.default_rate
        commission = (amount * rate).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
        uow.partners.record_earning(
            PartnerEarning(
                partner_id=partner_id,
                referred_user_id=user_id,
                order_id=order_id,
                amount=commission,
                commission_rate=rate,
            )
        )
        uow.partners.credit(partner_id, commission)
        logger.info(
            "partner commission added",
            extra={
                "partner_id": partner_id,
                "user_id": user_id,
                "commission": commission,
                "transaction_id": order_id,
            },
        )
        if not partner.user_id:
            return None
        return PartnerCommissionNotice(
            user_id=partner.user_id,
            amount=commission,
            order_id=order_id,
            currency=currency,
        )
