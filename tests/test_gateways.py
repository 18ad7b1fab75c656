from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from billing.domain.models import (
    BalanceMetadata,
    IncompleteSubscriptionMetadata,
    OtherMetadata,
    SubscriptionMetadata,
    parse_order_metadata,
)
from billing.domain.statuses import WebhookStatus
from billing.gateways import cryptopay, heleket, pal24, platega, telegram_stars, wata, yookassa
from billing.gateways.base import MalformedPayload, from_minor_units
from billing.gateways.registry import get_adapter


def _body(data: dict) -> bytes:
    return json.dumps(data).encode("utf-8")


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def _yookassa(status: str = "succeeded", paid: bool = True, **obj_extra) -> bytes:
    obj = {
        "id": "yk-1",
        "status": status,
        "paid": paid,
        "amount": {"value": "9.99", "currency": "rub"},
        "metadata": {"payment_id": "tx-1", "type": "subscription", "planId": "basic", "durationDays": 30},
    }
    obj.update(obj_extra)
    return _body({"type": "notification", "event": f"payment.{status}", "object": obj})


@pytest.mark.parametrize(
    "status,paid,expected",
    [
        ("succeeded", True, WebhookStatus.SUCCESS),
        ("succeeded", False, WebhookStatus.FAILED),
        ("canceled", True, WebhookStatus.SUCCESS),
        ("canceled", False, WebhookStatus.FAILED),
        ("pending", False, WebhookStatus.PENDING),
        ("waiting_for_capture", True, WebhookStatus.PENDING),
    ],
)
def test_yookassa_status_table(status: str, paid: bool, expected: WebhookStatus) -> None:
    assert yookassa.map_status(status, paid) is expected
    assert yookassa.parse_payload(_yookassa(status, paid)).status is expected


def test_yookassa_payload_normalized() -> None:
    payload = yookassa.parse_payload(_yookassa())
    assert payload.gateway == "yookassa"
    assert payload.external_id == "yk-1"
    assert payload.payment_id == "tx-1"
    assert payload.amount == Decimal("9.99")
    assert payload.currency == "RUB"
    assert payload.order == SubscriptionMetadata(plan_id="basic", duration_days=30)
    assert payload.gateway_id == "yookassa"


def test_yookassa_canceled_carries_reason() -> None:
    raw = _yookassa("canceled", False, cancellation_details={"reason": "insufficient_funds"})
    assert yookassa.parse_payload(raw).error_message == "insufficient_funds"


def test_yookassa_refund_keys_on_original_payment() -> None:
    raw = _body(
        {
            "event": "refund.succeeded",
            "object": {"id": "rf-1", "payment_id": "yk-1", "status": "succeeded", "amount": {"value": "1", "currency": "RUB"}},
        }
    )
    payload = yookassa.parse_payload(raw)
    assert payload.status is WebhookStatus.REFUNDED
    assert payload.external_id == "yk-1"


def test_yookassa_rejects_non_boolean_paid() -> None:
    with pytest.raises(MalformedPayload):
        yookassa.parse_payload(_yookassa(paid="yes"))  # type: ignore[arg-type]


def test_hmac_signature_accepts_prefix_and_rejects_tampering() -> None:
    raw = _yookassa()
    signature = _sign(raw, "shh")
    assert yookassa.validate_signature(raw, signature, "shh")
    assert yookassa.validate_signature(raw, f"sha256={signature}", "shh")
    assert not yookassa.validate_signature(raw + b" ", signature, "shh")
    assert not yookassa.validate_signature(raw, signature, "other")
    assert not yookassa.validate_signature(raw, "", "shh")
    assert not yookassa.validate_signature(raw, "sha256=caf\xe9", "shh")


def test_telegram_stars_minor_units() -> None:
    raw = _body(
        {
            "update_id": 7,
            "message": {
                "chat": {"id": 42},
                "date": 1700000000,
                "successful_payment": {
                    "currency": "XTR",
                    "total_amount": 500,
                    "invoice_payload": json.dumps({"payment_id": "tx-9", "type": "balance"}),
                    "telegram_payment_charge_id": "tg-1",
                    "provider_payment_charge_id": "prov-1",
                },
            },
        }
    )
    payload = telegram_stars.parse_payload(raw)
    assert payload.amount == Decimal("5.00")
    assert payload.currency == "XTR"
    assert payload.status is WebhookStatus.SUCCESS
    assert payload.external_id == "tg-1"
    assert payload.payment_id == "tx-9"
    assert payload.order == BalanceMetadata()
    assert payload.metadata["telegramUserId"] == "42"


def test_telegram_stars_pre_checkout_is_pending() -> None:
    raw = _body({"pre_checkout_query": {"id": "pcq-1", "currency": "XTR", "total_amount": 100, "from": {"id": 1}}})
    payload = telegram_stars.parse_payload(raw)
    assert payload.status is WebhookStatus.PENDING
    assert payload.amount == Decimal("1.00")


@pytest.mark.parametrize(
    "update",
    [
        {"update_id": 1, "message": {"text": "hi"}},
        {"successful_payment": {"telegram_payment_charge_id": "x", "total_amount": 5.5}},
    ],
)
def test_telegram_stars_malformed(update: dict) -> None:
    with pytest.raises(MalformedPayload):
        telegram_stars.parse_payload(_body(update))


def test_telegram_stars_secret_token() -> None:
    assert telegram_stars.validate_signature(b"{}", "token-1", "token-1")
    assert not telegram_stars.validate_signature(b"{}", "token-2", "token-1")


def test_cryptopay_unpaid_invoice_has_zero_amount() -> None:
    raw = _body(
        {
            "update_type": "invoice_paid",
            "payload": {
                "invoice_id": 991,
                "status": "active",
                "custom_id": "tx-2",
                "metadata": json.dumps({"type": "balance"}),
            },
        }
    )
    payload = cryptopay.parse_payload(raw)
    assert payload.amount == Decimal("0")
    assert payload.status is WebhookStatus.PENDING
    assert payload.payment_id == "tx-2"
    assert payload.external_id == "991"
    assert payload.currency == "BTC"
    assert payload.order == BalanceMetadata()


def test_cryptopay_paid_amount() -> None:
    raw = b'{"payload": {"invoice_id": "i-1", "status": "paid", "paid_amount": 0.00012, "pay_currency": "btc"}}'
    payload = cryptopay.parse_payload(raw)
    assert payload.amount == Decimal("0.00012")
    assert payload.status is WebhookStatus.SUCCESS


def test_heleket_prefers_paid_amount() -> None:
    raw = _body(
        {"id": "hl-1", "order_id": "tx-3", "status": "confirmed", "amount": "10", "pay_amount": "10.5", "currency": "usdt"}
    )
    payload = heleket.parse_payload(raw)
    assert payload.amount == Decimal("10.5")
    assert payload.currency == "USDT"
    assert payload.metadata["originalAmount"] == "10"


def test_pal24_md5_signature() -> None:
    raw = b'{"payment_id": "pay-1", "order_id": "tx-4", "status": "success", "amount": 100.50, "currency": "RUB"}'
    expected = hashlib.md5(b"pay-1:tx-4:success:100.5:RUB:secret").hexdigest()
    assert pal24.validate_signature(raw, expected, "secret")
    assert pal24.validate_signature(raw, expected.upper(), "secret")
    assert not pal24.validate_signature(raw, expected, "wrong")
    assert not pal24.validate_signature(b"not json", expected, "secret")
    assert not pal24.validate_signature(raw, "\xe9" * 32, "secret")


def test_platega_failed_message() -> None:
    raw = _body(
        {"transaction_id": "pl-1", "order_id": "tx-5", "status": "failed", "amount": 100, "currency": "rub", "error_code": "DECLINED"}
    )
    payload = platega.parse_payload(raw)
    assert payload.status is WebhookStatus.FAILED
    assert payload.error_message == "DECLINED"


def test_wata_refund_status() -> None:
    raw = _body({"id": "w-1", "order_id": "tx-6", "status": "refunded", "amount": "15.00", "currency": "RUB"})
    assert wata.parse_payload(raw).status is WebhookStatus.REFUNDED


@pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'{"object": "nope"}'])
def test_malformed_bodies(raw: bytes) -> None:
    with pytest.raises(MalformedPayload):
        yookassa.parse_payload(raw)


def test_negative_amount_rejected() -> None:
    raw = _body({"id": "w-1", "order_id": "tx-6", "status": "success", "amount": "-1", "currency": "RUB"})
    with pytest.raises(MalformedPayload):
        wata.parse_payload(raw)


def test_registry_lookup() -> None:
    assert get_adapter("YooKassa").name == "yookassa"
    assert get_adapter("telegram_stars").name == "telegram-stars"
    assert get_adapter("stripe") is None
    assert get_adapter("") is None


def test_signature_header_lookup_is_case_insensitive() -> None:
    adapter = get_adapter("telegram-stars")
    assert adapter.signature_from({"x-telegram-bot-api-secret-token": " tok "}) == "tok"
    assert adapter.signature_from({}) == ""


def test_minor_units_rounding() -> None:
    assert from_minor_units(1) == Decimal("0.01")
    assert from_minor_units(12345) == Decimal("123.45")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ({"type": "subscription", "planId": "pro", "durationDays": "30"}, SubscriptionMetadata("pro", 30)),
        ({"payment_type": "subscription", "plan_id": "pro", "duration_days": 7}, SubscriptionMetadata("pro", 7)),
        ({"type": "subscription", "durationDays": 30}, IncompleteSubscriptionMetadata(("planId",))),
        ({"type": "subscription", "planId": "pro", "durationDays": 0}, IncompleteSubscriptionMetadata(("durationDays",))),
        ({"type": "BALANCE"}, BalanceMetadata()),
        ({"type": "gift"}, OtherMetadata()),
        ({}, None),
    ],
)
def test_parse_order_metadata(raw: dict, expected) -> None:
    assert parse_order_metadata(raw) == expected
