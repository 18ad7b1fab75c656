"""YooKassa webhooks.

YooKassa sends ``{"type": "notification", "event": ..., "object": {...}}``.
Payment objects carry both ``status`` and a ``paid`` flag; a canceled
payment that was nevertheless paid is a success. Refund notifications
(``refund.*``) reference the original payment through ``payment_id``.
"""

from __future__ import annotations

from billing.domain.enums import GatewayName
from billing.domain.models import WebhookPayload, parse_order_metadata
from billing.domain.statuses import WebhookStatus

from .base import (
    GatewayAdapter,
    MalformedPayload,
    hmac_sha256_matches,
    load_object,
    merge_metadata,
    optional_mapping,
    optional_str,
    parse_timestamp,
    require_mapping,
    require_str,
    to_decimal,
)

GATEWAY = GatewayName.YOOKASSA.value


def map_status(status: str, paid: bool) -> WebhookStatus:
    if status in {"succeeded", "canceled"}:
        return WebhookStatus.SUCCESS if paid else WebhookStatus.FAILED
    return WebhookStatus.PENDING


def validate_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    return hmac_sha256_matches(raw_body, signature, secret)


def parse_payload(raw_body: bytes) -> WebhookPayload:
    data = load_object(GATEWAY, raw_body)
    obj = require_mapping(GATEWAY, data, "object")
    event = optional_str(data, "event") or ""
    amount_obj = require_mapping(GATEWAY, obj, "amount")
    metadata = optional_mapping(GATEWAY, obj, "metadata")

    if event.startswith("refund."):
        external_id = require_str(GATEWAY, obj, "payment_id")
        status = WebhookStatus.REFUNDED
    else:
        external_id = require_str(GATEWAY, obj, "id")
        raw_status = require_str(GATEWAY, obj, "status")
        paid = obj.get("paid", False)
        if not isinstance(paid, bool):
            raise MalformedPayload(GATEWAY, "'paid' must be a boolean")
        status = map_status(raw_status, paid)

    cancellation = optional_mapping(GATEWAY, obj, "cancellation_details")
    error_message = None
    if status is WebhookStatus.FAILED:
        error_message = optional_str(cancellation, "reason") or "Payment canceled"

    payment_method = optional_mapping(GATEWAY, obj, "payment_method")
    payment_id = metadata.get("payment_id") or metadata.get("transaction_id")
    return WebhookPayload(
        gateway=GATEWAY,
        payment_id=str(payment_id) if payment_id else None,
        external_id=external_id,
        status=status,
        amount=to_decimal(GATEWAY, amount_obj.get("value"), "amount.value"),
        currency=require_str(GATEWAY, amount_obj, "currency").upper(),
        order=parse_order_metadata(metadata),
        metadata=merge_metadata(
            metadata,
            event=event or None,
            description=optional_str(obj, "description"),
            paymentMethod=optional_str(payment_method, "type"),
            paymentMethodTitle=optional_str(payment_method, "title"),
            capturedAt=optional_str(obj, "captured_at"),
            isTest=obj.get("test"),
        ),
        timestamp=parse_timestamp(obj.get("captured_at") or obj.get("created_at")),
        error_message=error_message,
    )


ADAPTER = GatewayAdapter(
    name=GATEWAY,
    validate_signature=validate_signature,
    parse_payload=parse_payload,
    signature_headers=("X-Signature", "X-YooKassa-Signature"),
)
