"""Telegram Stars payments.

Telegram delivers ``successful_payment`` inside a bot update, either under
``message`` or at the top level, and ``pre_checkout_query`` before the charge.
There is no body signature: the webhook is authenticated by the secret token
registered with ``setWebhook`` and echoed in
``X-Telegram-Bot-Api-Secret-Token``. ``total_amount`` is in hundredths.
"""

from __future__ import annotations

import hmac
from typing import Any

from billing.domain.enums import GatewayName
from billing.domain.models import WebhookPayload, parse_order_metadata
from billing.domain.statuses import WebhookStatus

from .base import (
    GatewayAdapter,
    MalformedPayload,
    decode_json_metadata,
    from_minor_units,
    load_object,
    merge_metadata,
    optional_mapping,
    optional_str,
    parse_timestamp,
    require_str,
    to_decimal,
)

GATEWAY = GatewayName.TELEGRAM_STARS.value
STARS_CURRENCY = "XTR"


def validate_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(signature.strip().encode("utf-8"), secret.encode("utf-8"))


def _minor_amount(section: dict[str, Any]) -> int:
    value = to_decimal(GATEWAY, section.get("total_amount"), "total_amount")
    if value != value.to_integral_value():
        raise MalformedPayload(GATEWAY, "'total_amount' must be an integer")
    return int(value)


def parse_payload(raw_body: bytes) -> WebhookPayload:
    data = load_object(GATEWAY, raw_body)
    message = optional_mapping(GATEWAY, data, "message")
    successful = optional_mapping(GATEWAY, message, "successful_payment") or optional_mapping(
        GATEWAY, data, "successful_payment"
    )
    pre_checkout = optional_mapping(GATEWAY, data, "pre_checkout_query")

    if successful:
        section = successful
        status = WebhookStatus.SUCCESS
        external_id = require_str(GATEWAY, successful, "telegram_payment_charge_id")
    elif pre_checkout:
        section = pre_checkout
        status = WebhookStatus.PENDING
        external_id = require_str(GATEWAY, pre_checkout, "id")
    else:
        raise MalformedPayload(GATEWAY, "no payment data in update")

    metadata = decode_json_metadata(section.get("invoice_payload"), raw_key="rawPayload")
    chat = optional_mapping(GATEWAY, message, "chat")
    sender = optional_mapping(GATEWAY, pre_checkout, "from") or optional_mapping(GATEWAY, message, "from")
    telegram_user_id = optional_str(chat, "id") or optional_str(sender, "id")

    return WebhookPayload(
        gateway=GATEWAY,
        payment_id=optional_str(metadata, "payment_id"),
        external_id=external_id,
        status=status,
        amount=from_minor_units(_minor_amount(section)),
        currency=(optional_str(section, "currency") or STARS_CURRENCY).upper(),
        order=parse_order_metadata(metadata),
        metadata=merge_metadata(
            metadata,
            telegramUserId=telegram_user_id,
            telegramUsername=optional_str(sender, "username"),
            providerPaymentChargeId=optional_str(successful, "provider_payment_charge_id"),
            updateId=optional_str(data, "update_id"),
            isStarsPayment=True,
        ),
        timestamp=parse_timestamp(message.get("date")),
    )


ADAPTER = GatewayAdapter(
    name=GATEWAY,
    validate_signature=validate_signature,
    parse_payload=parse_payload,
    signature_headers=("X-Telegram-Bot-Api-Secret-Token",),
)
