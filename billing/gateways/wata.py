from __future__ import annotations

from billing.domain.enums import GatewayName
from billing.domain.models import WebhookPayload, parse_order_metadata
from billing.domain.statuses import WebhookStatus

from .base import (
    GatewayAdapter,
    first_amount,
    hmac_sha256_matches,
    load_object,
    merge_metadata,
    optional_mapping,
    optional_str,
    parse_timestamp,
    require_str,
)

GATEWAY = GatewayName.WATA.value

_STATUSES = {
    "success": WebhookStatus.SUCCESS,
    "completed": WebhookStatus.SUCCESS,
    "failed": WebhookStatus.FAILED,
    "cancelled": WebhookStatus.FAILED,
    "refunded": WebhookStatus.REFUNDED,
}


def map_status(status: str) -> WebhookStatus:
    return _STATUSES.get(status, WebhookStatus.PENDING)


def validate_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    return hmac_sha256_matches(raw_body, signature, secret)


def parse_payload(raw_body: bytes) -> WebhookPayload:
    data = load_object(GATEWAY, raw_body)
    status = map_status(require_str(GATEWAY, data, "status"))
    metadata = optional_mapping(GATEWAY, data, "metadata")
    error = optional_mapping(GATEWAY, data, "error")
    currency = optional_str(data, "payment_currency") or require_str(GATEWAY, data, "currency")
    error_message = None
    if status is WebhookStatus.FAILED:
        error_message = optional_str(error, "message") or "Payment failed"
    return WebhookPayload(
        gateway=GATEWAY,
        payment_id=require_str(GATEWAY, data, "order_id"),
        external_id=require_str(GATEWAY, data, "id"),
        status=status,
        amount=first_amount(GATEWAY, data, "payment_amount", "amount"),
        currency=currency.upper(),
        order=parse_order_metadata(metadata),
        metadata=merge_metadata(
            metadata,
            paymentMethod=optional_str(data, "payment_method"),
            paymentSystem=optional_str(data, "payment_system"),
            description=optional_str(data, "description"),
            originalAmount=optional_str(data, "amount"),
            originalCurrency=optional_str(data, "currency"),
            errorCode=optional_str(error, "code"),
        ),
        timestamp=parse_timestamp(data.get("processed_at") or data.get("created_at")),
        error_message=error_message,
        customer_email=optional_str(data, "customer_email"),
    )


ADAPTER = GatewayAdapter(
    name=GATEWAY,
    validate_signature=validate_signature,
    parse_payload=parse_payload,
    signature_headers=("X-Wata-Signature", "X-Signature"),
)
