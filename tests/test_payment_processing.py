from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from billing.domain.enums import PaymentType
from billing.domain.models import (
    IncompleteSubscriptionMetadata,
    Partner,
    Subscription,
    SubscriptionMetadata,
    WebhookPayload,
)
from billing.domain.result import Err, ErrorKind, Ok
from billing.domain.statuses import TransactionStatus, WebhookStatus
from billing.services.side_effects import ReferralAccruer

from conftest import FIXED_NOW, seed_transaction, seed_user

SUBSCRIPTION = {"type": "subscription", "planId": "basic", "durationDays": 30}


def _payload(
    status: WebhookStatus = WebhookStatus.SUCCESS,
    *,
    external_id: str = "yk-1",
    payment_id: str | None = "tx-1",
    amount: str = "9.99",
    currency: str = "RUB",
    gateway: str = "yookassa",
    order=None,
    error_message: str | None = None,
) -> WebhookPayload:
    return WebhookPayload(
        gateway=gateway,
        external_id=external_id,
        status=status,
        amount=Decimal(amount),
        currency=currency,
        payment_id=payment_id,
        order=order,
        error_message=error_message,
    )


def _tx(db, tx_id: str = "tx-1"):
    with db.unit_of_work() as uow:
        return uow.ledger.get_by_id(tx_id)


@pytest.mark.asyncio
async def test_successful_subscription_payment_end_to_end(db, processor, notifier) -> None:
    seed_user(db, "u1", referred_by="r1")
    seed_user(db, "r1")
    seed_transaction(db, metadata=SUBSCRIPTION)

    result = await processor.process_successful_payment(
        _payload(order=SubscriptionMetadata(plan_id="basic", duration_days=30))
    )

    assert isinstance(result, Ok)
    assert result.value.transaction_id == "tx-1"
    assert result.value.side_effect_failures == ()
    tx = _tx(db)
    assert tx.status is TransactionStatus.COMPLETED
    assert tx.external_id == "yk-1"
    assert tx.paid_at == FIXED_NOW

    subscriptions = db.subscriptions.for_user("u1")
    assert len(subscriptions) == 1
    assert subscriptions[0].expire_at == FIXED_NOW + timedelta(days=30)

    accrual = db.referrals.get("r1", "u1")
    assert accrual is not None
    assert accrual.points_earned == 0

    received = notifier.of("payment_received")
    assert received == [
        (
            "payment_received",
            "u1",
            {"payment_id": "tx-1", "amount": Decimal("9.99"), "currency": "RUB", "status": "completed"},
        )
    ]


@pytest.mark.asyncio
async def test_redelivery_is_a_no_op(db, processor, notifier) -> None:
    seed_user(db, "u1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="50")

    first = await processor.process_successful_payment(_payload(amount="50"))
    second = await processor.process_successful_payment(_payload(amount="50"))

    assert isinstance(first, Ok) and not first.value.already_processed
    assert isinstance(second, Ok) and second.value.already_processed
    assert db.users.get("u1").balance == Decimal("50")
    assert len(notifier.of("payment_received")) == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_apply_once(db, processor) -> None:
    seed_user(db, "u1", referred_by="r1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="100")

    results = await asyncio.gather(
        *(processor.process_successful_payment(_payload(amount="100")) for _ in range(5))
    )

    assert all(isinstance(r, Ok) for r in results)
    assert sum(1 for r in results if not r.value.already_processed) == 1
    assert db.users.get("u1").balance == Decimal("100")
    assert db.referrals.get("r1", "u1").points_earned == 10


@pytest.mark.asyncio
async def test_lookup_prefers_external_id(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="5", external_id="yk-1")

    result = await processor.process_successful_payment(_payload(amount="5", payment_id=None))

    assert isinstance(result, Ok)
    assert _tx(db).status is TransactionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_transaction_on_success_is_an_error(db, processor) -> None:
    result = await processor.process_successful_payment(_payload(payment_id="missing"))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.TRANSACTION_NOT_FOUND
    assert result.kind.http_status == 500


@pytest.mark.asyncio
async def test_missing_user_leaves_row_pending(db, processor, notifier) -> None:
    seed_transaction(db, user_id="ghost", metadata=SUBSCRIPTION)

    result = await processor.process_successful_payment(_payload())

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.USER_NOT_FOUND
    assert _tx(db).status is TransactionStatus.PENDING
    assert notifier.events == []


@pytest.mark.asyncio
async def test_referral_failure_keeps_the_rest(db, processor, monkeypatch) -> None:
    seed_user(db, "u1", referred_by="r1")
    seed_transaction(db, metadata=SUBSCRIPTION)

    def boom(*args, **kwargs):
        raise RuntimeError("referrals table locked")

    monkeypatch.setattr(db.referrals, "add_points", boom)

    result = await processor.process_successful_payment(_payload())

    assert isinstance(result, Ok)
    failures = result.value.side_effect_failures
    assert [f.kind for f in failures] == [ErrorKind.SIDE_EFFECT_FAILURE]
    assert failures[0].context["step"] == "accrue_referral"
    assert _tx(db).status is TransactionStatus.COMPLETED
    assert len(db.subscriptions.for_user("u1")) == 1
    assert db.referrals.get("r1", "u1") is None


@pytest.mark.asyncio
async def test_failed_savepoint_discards_partial_writes(db, processor, monkeypatch) -> None:
    seed_user(db, "u1", partner_id="p1")
    db.add_partner(Partner(id="p1", user_id="owner", commission_rate=Decimal("0.2")))
    seed_transaction(db, type=PaymentType.BALANCE, amount="100")

    def credit_fails(partner_id, amount):
        raise RuntimeError("partner row vanished")

    monkeypatch.setattr(db.partners, "credit", credit_fails)

    result = await processor.process_successful_payment(_payload(amount="100"))

    assert isinstance(result, Ok)
    assert db.partners.earnings() == []
    assert db.users.get("u1").balance == Decimal("100")


@pytest.mark.asyncio
async def test_ledger_failure_rolls_back_everything(db, processor, monkeypatch, notifier) -> None:
    seed_user(db, "u1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="20")

    def exploding_effects(*args, **kwargs):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(processor, "_apply_effects", exploding_effects)

    result = await processor.process_successful_payment(_payload(amount="20"))

    assert isinstance(result, Err)
    assert result.kind is ErrorKind.LEDGER_FAILURE
    assert _tx(db).status is TransactionStatus.PENDING
    assert notifier.events == []


@pytest.mark.asyncio
async def test_subscription_is_extended_not_duplicated(db, processor) -> None:
    seed_user(db, "u1")
    db.add_subscription(Subscription(user_id="u1", plan_id="basic", expire_at=FIXED_NOW + timedelta(days=10)))
    seed_transaction(db, metadata=SUBSCRIPTION)

    await processor.process_successful_payment(_payload())

    subscriptions = db.subscriptions.for_user("u1")
    assert len(subscriptions) == 1
    assert subscriptions[0].expire_at == FIXED_NOW + timedelta(days=40)


@pytest.mark.asyncio
async def test_order_falls_back_to_ledger_metadata(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db, metadata={"planId": "pro", "durationDays": 7})

    await processor.process_successful_payment(_payload(order=None))

    subscriptions = db.subscriptions.for_user("u1")
    assert [s.plan_id for s in subscriptions] == ["pro"]
    assert subscriptions[0].expire_at == FIXED_NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_incomplete_payload_order_is_completed_from_ledger(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db, metadata={"type": "subscription", "planId": "pro", "durationDays": 7})

    result = await processor.process_successful_payment(
        _payload(order=IncompleteSubscriptionMetadata(missing=("planId", "durationDays")))
    )

    assert isinstance(result, Ok)
    subscriptions = db.subscriptions.for_user("u1")
    assert [s.plan_id for s in subscriptions] == ["pro"]
    assert subscriptions[0].expire_at == FIXED_NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_incomplete_subscription_metadata_is_skipped(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db, metadata={"type": "subscription", "planId": "basic"})

    result = await processor.process_successful_payment(_payload())

    assert isinstance(result, Ok)
    assert result.value.side_effect_failures == ()
    assert db.subscriptions.for_user("u1") == []
    assert _tx(db).status is TransactionStatus.COMPLETED


@pytest.mark.asyncio
async def test_partner_commission_uses_current_rate(db, processor, notifier) -> None:
    seed_user(db, "u1", partner_id="p1")
    db.add_partner(Partner(id="p1", user_id="owner", commission_rate=Decimal("0.15")))
    seed_transaction(db, type=PaymentType.BALANCE, amount="33.33")

    await processor.process_successful_payment(_payload(amount="33.33"))

    earnings = db.partners.earnings()
    assert len(earnings) == 1
    assert earnings[0].amount == Decimal("5.00")
    assert earnings[0].order_id == "tx-1"
    partner = db.partners.get("p1")
    assert partner.balance == Decimal("5.00")
    assert partner.total_earnings == Decimal("5.00")
    assert notifier.of("partner_commission") == [
        ("partner_commission", "owner", {"amount": Decimal("5.00"), "order_id": "tx-1", "currency": "RUB"})
    ]


@pytest.mark.asyncio
async def test_partner_without_rate_uses_default(db, processor) -> None:
    seed_user(db, "u1", partner_id="p1")
    db.add_partner(Partner(id="p1", user_id=None))
    seed_transaction(db, type=PaymentType.BALANCE, amount="100")

    await processor.process_successful_payment(_payload(amount="100"))

    assert db.partners.earnings()[0].amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_deleted_partner_is_skipped(db, processor, notifier) -> None:
    seed_user(db, "u1", partner_id="p1")
    db.add_partner(Partner(id="p1", user_id="owner"))
    db.delete_partner("p1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="100")

    result = await processor.process_successful_payment(_payload(amount="100"))

    assert isinstance(result, Ok)
    assert result.value.side_effect_failures[0].context["step"] == "accrue_partner_commission"
    assert _tx(db).status is TransactionStatus.COMPLETED
    assert db.users.get("u1").balance == Decimal("100")
    assert notifier.of("partner_commission") == []


@pytest.mark.asyncio
async def test_foreign_currency_settles_at_ledger_amount(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db, gateway_id="cryptopay", type=PaymentType.BALANCE, amount="25", currency="USD")

    await processor.process_successful_payment(
        _payload(gateway="cryptopay", external_id="inv-1", amount="0.0004", currency="BTC")
    )

    assert db.users.get("u1").balance == Decimal("25")


@pytest.mark.asyncio
async def test_failed_payment_marks_row(db, processor, notifier) -> None:
    seed_user(db, "u1")
    seed_transaction(db, metadata=SUBSCRIPTION)

    result = await processor.process_failed_payment(
        _payload(WebhookStatus.FAILED, error_message="insufficient_funds")
    )

    assert isinstance(result, Ok)
    tx = _tx(db)
    assert tx.status is TransactionStatus.FAILED
    assert tx.error_message == "insufficient_funds"
    assert db.subscriptions.for_user("u1") == []
    assert notifier.of("payment_failed") == [
        ("payment_failed", "u1", {"transaction_id": "tx-1", "reason": "insufficient_funds"})
    ]


@pytest.mark.asyncio
async def test_failed_payment_for_unknown_transaction_is_acknowledged(db, processor, notifier) -> None:
    result = await processor.process_failed_payment(_payload(WebhookStatus.FAILED, payment_id="nope"))

    assert isinstance(result, Ok)
    assert result.value.transaction_id is None
    assert notifier.events == []


@pytest.mark.asyncio
async def test_failure_after_completion_is_ignored(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="10")
    await processor.process_successful_payment(_payload(amount="10"))

    result = await processor.process_failed_payment(_payload(WebhookStatus.FAILED))

    assert isinstance(result, Ok) and result.value.already_processed
    assert _tx(db).status is TransactionStatus.COMPLETED


@pytest.mark.asyncio
async def test_pending_and_refunded_are_acknowledged(db, processor) -> None:
    seed_user(db, "u1")
    seed_transaction(db)

    for status in (WebhookStatus.PENDING, WebhookStatus.REFUNDED):
        result = await processor.process(_payload(status))
        assert isinstance(result, Ok)
    assert _tx(db).status is TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_payment(db, processor, notifier, monkeypatch) -> None:
    seed_user(db, "u1")
    seed_transaction(db, type=PaymentType.BALANCE, amount="10")

    async def unreachable(*args, **kwargs):
        raise ConnectionError("notification service down")

    monkeypatch.setattr(notifier, "emit_payment_received", unreachable)

    result = await processor.process_successful_payment(_payload(amount="10"))

    assert isinstance(result, Ok)
    assert _tx(db).status is TransactionStatus.COMPLETED


@pytest.mark.parametrize(
    "amount,points",
    [("9.99", 0), ("10", 1), ("129.90", 12), ("0", 0)],
)
def test_referral_points_floor(amount: str, points: int) -> None:
    assert ReferralAccruer(Decimal("0.1")).points_for(Decimal(amount)) == points
