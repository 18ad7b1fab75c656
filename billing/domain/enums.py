from __future__ import annotations

from enum import Enum


class GatewayName(str, Enum):
    """Payment gateways that deliver webhooks."""

    CRYPTOPAY = "cryptopay"
    YOOKASSA = "yookassa"
    HELEKET = "heleket"
    PAL24 = "pal24"
    PLATEGA = "platega"
    WATA = "wata"
    TELEGRAM_STARS = "telegram-stars"


class PaymentType(str, Enum):
    """What a payment buys."""

    SUBSCRIPTION = "subscription"
    BALANCE = "balance"
    OTHER = "other"


class VerificationStatus(str, Enum):
    """Outcome of webhook authentication, as stored in the audit log."""

    SUCCESS = "SUCCESS"
    INVALID = "INVALID"
    MISSING = "MISSING"
    SKIPPED = "SKIPPED"
