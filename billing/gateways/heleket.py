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

GATEWAY = GatewayName.HELEKET.value

_SUCCESS = {"completed", "confirmed"}
_FAILED = {"cancelled", "expired", "failed"}


def map_status(status: str) -> WebhookStatus:
    if status in _SUCCESS:
        return WebhookStatus.SUCCESS
    if status in _FAILED:
        return WebhookStatus.FAILED
    return WebhookStatus.PENDING


def validate_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    return hmac_sha256_matches(raw_body, signature, secret)


def parse_payload(raw_body: bytes) -> WebhookPayload:
    data = load_object(GATEWAY, raw_body)
    raw_status = require_str(GATEWAY, data, "status")
    status = map_status(raw_status)
    metadata = optional_mapping(GATEWAY, data, "metadata")
    currency = optional_str(data, "pay_currency") or require_str(GATEWAY, data, "currency")
    return WebhookPayload(
        gateway=GATEWAY,
        payment_id=require_str(GATEWAY, data, "order_id"),
        external_id=require_str(GATEWAY, data, "id"),
        status=status,
        # pay_amount is what the payer actually sent; amount is the invoice figure
        amount=first_amount(GATEWAY, data, "pay_amount", "amount"),
        currency=currency.upper(),
        order=parse_order_metadata(metadata),
        metadata=merge_metadata(
            metadata,
            network=optional_str(data, "network"),
            address=optional_str(data, "address"),
            fromAddress=optional_str(data, "from_address"),
            transactionHash=optional_str(data, "tx_hash"),
            merchantAmount=optional_str(data, "merchant_amount"),
            originalAmount=optional_str(data, "amount"),
            originalCurrency=optional_str(data, "currency"),
        ),
        timestamp=parse_timestamp(data.get("updated_at")),
        error_message=f"Invoice {raw_status}" if status is WebhookStatus.FAILED else None,
    )


ADAPTER = GatewayAdapter(
    name=GATEWAY,
    validate_signature=validate_signature,
    parse_payload=parse_payload,
    signature_headers=("X-Signature", "Sign"),
)
