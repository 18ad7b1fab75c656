from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Union

from .enums import PaymentType
from .statuses import EarningStatus, SubscriptionStatus, TransactionStatus, WebhookStatus


@dataclass(frozen=True)
class SubscriptionMetadata:
    plan_id: str
    duration_days: int


@dataclass(frozen=True)
class IncompleteSubscriptionMetadata:
    """A subscription payment whose plan data could not be read."""

    missing: tuple[str, ...]


@dataclass(frozen=True)
class BalanceMetadata:
    pass


@dataclass(frozen=True)
class OtherMetadata:
    pass


OrderMetadata = Union[SubscriptionMetadata, IncompleteSubscriptionMetadata, BalanceMetadata, OtherMetadata]


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_order_metadata(raw: Mapping[str, Any] | None, fallback_type: str | None = None) -> OrderMetadata | None:
    """Turn the open metadata map into its closed per-type variant.

    Returns None when neither the map nor ``fallback_type`` says what the
    payment is for.
    """
    raw = raw or {}
    type_value = _first(raw, "type", "payment_type") or fallback_type
    if type_value is None:
        return None
    try:
        payment_type = PaymentType(str(type_value).lower())
    except ValueError:
        return OtherMetadata()
    if payment_type is PaymentType.BALANCE:
        return BalanceMetadata()
    if payment_type is PaymentType.OTHER:
        return OtherMetadata()

    missing: list[str] = []
    plan_id = _first(raw, "planId", "plan_id")
    if plan_id is None:
        missing.append("planId")
    duration_raw = _first(raw, "durationDays", "duration_days")
    duration_days: int | None = None
    if duration_raw is None:
        missing.append("durationDays")
    else:
        try:
            parsed = Decimal(str(duration_raw).strip())
            if parsed == parsed.to_integral_value() and parsed > 0:
                duration_days = int(parsed)
        except ArithmeticError:
            duration_days = None
        if duration_days is None:
            missing.append("durationDays")
    if missing:
        return IncompleteSubscriptionMetadata(missing=tuple(missing))
    return SubscriptionMetadata(plan_id=str(plan_id), duration_days=int(duration_days or 0))


@dataclass(frozen=True)
class WebhookPayload:
    """Gateway-agnostic view of one webhook delivery. ``amount`` is in major units."""

    gateway: str
    external_id: str
    status: WebhookStatus
    amount: Decimal
    currency: str
    payment_id: str | None = None
    order: OrderMetadata | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
    error_message: str | None = None
    customer_email: str | None = None

    @property
    def gateway_id(self) -> str:
        """Ledger gateway id: ``metadata.gatewayId`` when present, else the gateway name."""
        value = self.metadata.get("gatewayId") or self.metadata.get("gateway_id")
        return str(value) if value else self.gateway


@dataclass
class PaymentTransaction:
    """Ledger row for one payment attempt."""

    id: str
    user_id: str
    gateway_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.PENDING
    type: PaymentType = PaymentType.OTHER
    external_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class User:
    id: str
    referred_by: str | None = None
    partner_id: str | None = None
    balance: Decimal = Decimal("0")


@dataclass
class Subscription:
    user_id: str
    plan_id: str
    expire_at: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    id: str | None = None


@dataclass
class ReferralAccrual:
    referrer_id: str
    referred_id: str
    points_earned: int = 0


@dataclass
class Partner:
    id: str
    user_id: str | None
    commission_rate: Decimal | None = None
    balance: Decimal = Decimal("0")
    total_earnings: Decimal = Decimal("0")


@dataclass
class PartnerEarning:
    partner_id: str
    referred_user_id: str
    order_id: str
    amount: Decimal
    commission_rate: Decimal
    status: EarningStatus = EarningStatus.PENDING
    id: str | None = None


@dataclass(frozen=True)
class GatewayConfig:
    """Authentication settings for one gateway's webhooks."""

    name: str
    webhook_secret: str = ""
    allowed_ips: tuple[str, ...] = ()
