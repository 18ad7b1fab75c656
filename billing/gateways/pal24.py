"""Pal24 webhooks.

Pal24 signs a colon-joined digest string with the shop secret appended,
``md5(payment_id:order_id:status:amount:currency:secret)``, rather than the
raw body. Amounts are plain decimal numbers in major units.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from billing.domain.enums import GatewayName
from billing.domain.models import WebhookPayload, parse_order_metadata
from billing.domain.statuses import WebhookStatus

from .base import (
    GatewayAdapter,
    MalformedPayload,
    digest_matches,
    first_amount,
    load_object,
    md5_hex,
    merge_metadata,
    optional_mapping,
    optional_str,
    parse_timestamp,
    require_str,
)

GATEWAY = GatewayName.PAL24.value

_SUCCESS = {"success", "completed"}
_FAILED = {"failed", "cancelled"}


def map_status(status: str) -> WebhookStatus:
    if status in _SUCCESS:
        return WebhookStatus.SUCCESS
    if status in _FAILED:
        return WebhookStatus.FAILED
    return WebhookStatus.PENDING


def _number_text(value: Any) -> str:
    # Pal24 renders numbers without trailing zeros (100.5, not 100.50)
    if isinstance(value, (int, Decimal)) and not isinstance(value, bool):
        return format(Decimal(value).normalize(), "f")
    return "" if value is None else str(value)


def signature_base(data: dict[str, Any], secret: str) -> str:
    parts = [
        _number_text(data.get("payment_id")),
        _number_text(data.get("order_id")),
        _number_text(data.get("status")),
        _number_text(data.get("amount")),
        _number_text(data.get("currency")),
        secret,
    ]
    return ":".join(parts)


def validate_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    try:
        data = load_object(GATEWAY, raw_body)
    except MalformedPayload:
        return False
    computed = md5_hex(signature_base(data, secret))
    return digest_matches(computed, signature)


def parse_payload(raw_body: bytes) -> WebhookPayload:
    data = load_object(GATEWAY, raw_body)
    status = map_status(require_str(GATEWAY, data, "status"))
    metadata = optional_mapping(GATEWAY, data, "metadata")
    currency = optional_str(data, "pay_currency") or require_str(GATEWAY, data, "currency")
    error_message = optional_str(data, "error")
    if status is WebhookStatus.FAILED and not error_message:
        error_message = "Payment failed"
    return WebhookPayload(
        gateway=GATEWAY,
        payment_id=require_str(GATEWAY, data, "order_id"),
        external_id=require_str(GATEWAY, data, "payment_id"),
        status=status,
        amount=first_amount(GATEWAY, data, "pay_amount", "amount"),
        currency=currency.upper(),
        order=parse_order_metadata(metadata),
        metadata=merge_metadata(
            metadata,
            transactionId=optional_str(data, "transaction_id"),
            paymentMethod=optional_str(data, "payment_method"),
            originalAmount=optional_str(data, "amount"),
            originalCurrency=optional_str(data, "currency"),
        ),
        timestamp=parse_timestamp(data.get("completed_at") or data.get("created_at")),
        error_message=error_message if status is WebhookStatus.FAILED else None,
        customer_email=optional_str(data, "payer_email"),
    )


ADAPTER = GatewayAdapter(
    name=GATEWAY,
    validate_signature=validate_signature,
    parse_payload=parse_payload,
    signature_headers=("X-Signature", "X-Pal24-Signature"),
)
