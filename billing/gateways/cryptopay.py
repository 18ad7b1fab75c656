from __future__ import annotations

from decimal import Decimal

from billing.domain.enums import GatewayName
from billing.domain.models import WebhookPayload, parse_order_metadata
from billing.domain.statuses import WebhookStatus

from .base import (
    GatewayAdapter,
    decode_json_metadata,
    first_amount,
    hmac_sha256_matches,
    load_object,
    merge_metadata,
    optional_str,
    parse_timestamp,
    require_mapping,
    require_str,
)

GATEWAY = GatewayName.CRYPTOPAY.value

_SUCCESS = {"paid", "completed"}
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
    invoice = require_mapping(GATEWAY, data, "payload")
    invoice_id = require_str(GATEWAY, invoice, "invoice_id")
    status = map_status(require_str(GATEWAY, invoice, "status"))

    # Unpaid invoices carry no paid_amount yet.
    if invoice.get("paid_amount") in (None, "") and invoice.get("pay_amount") in (None, ""):
        amount = Decimal("0")
    else:
        amount = first_amount(GATEWAY, invoice, "paid_amount", "pay_amount")

    metadata = decode_json_metadata(invoice.get("metadata"))
    return WebhookPayload(
        gateway=GATEWAY,
        payment_id=optional_str(invoice, "custom_id") or optional_str(metadata, "payment_id"),
        external_id=invoice_id,
        status=status,
        amount=amount,
        currency=(optional_str(invoice, "pay_currency") or "BTC").upper(),
        order=parse_order_metadata(metadata),
        metadata=merge_metadata(
            metadata,
            network=optional_str(invoice, "network"),
            address=optional_str(invoice, "address"),
            description=optional_str(invoice, "description"),
            payload=optional_str(invoice, "payload"),
            updateType=optional_str(data, "update_type"),
        ),
        timestamp=parse_timestamp(invoice.get("paid_at") or data.get("request_date")),
        error_message=f"Invoice {invoice['status']}" if status is WebhookStatus.FAILED else None,
    )


ADAPTER = GatewayAdapter(
    name=GATEWAY,
    validate_signature=validate_signature,
    parse_payload=parse_payload,
    signature_headers=("X-Cryptopay-Signature", "X-Signature"),
)
