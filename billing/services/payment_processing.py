from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar

from billing.config import Settings, settings
from billing.domain.models import (
    BalanceMetadata,
    IncompleteSubscriptionMetadata,
    OrderMetadata,
    PaymentTransaction,
    SubscriptionMetadata,
    User,
    WebhookPayload,
    parse_order_metadata,
)
from billing.domain.result import Err, ErrorKind, Ok, Result
from billing.domain.statuses import TransactionStatus, WebhookStatus
from billing.repositories.unit_of_work import UnitOfWork, UnitOfWorkFactory

from .notifications import NotificationEmitter
from .side_effects import (
    BalanceAdjuster,
    PartnerCommissionAccruer,
    PartnerCommissionNotice,
    ReferralAccruer,
    SubscriptionActivator,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingOutcome:
    """What a webhook did to the ledger."""

    transaction_id: str | None
    status: TransactionStatus | None
    message: str
    already_processed: bool = False
    side_effect_failures: tuple[Err, ...] = ()


@dataclass
class _Applied:
    outcome: ProcessingOutcome
    user_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    partner_notices: list[PartnerCommissionNotice] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentProcessingService:
    """Applies verified webhooks to the ledger and its dependent accounts.

    All writes for one webhook share a single unit of work. The ledger row is
    read with a row lock and a terminal row short-circuits, so a redelivered
    webhook never applies its effects twice. Notifications go out only after
    the unit of work has committed.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWorkFactory,
        notifier: NotificationEmitter,
        cfg: Settings = settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.unit_of_work = unit_of_work
        self.notifier = notifier
        self.settings = cfg
        self.clock = clock
        self.subscriptions = SubscriptionActivator()
        self.balances = BalanceAdjuster()
        self.referrals = ReferralAccruer(Decimal(str(cfg.referral_points_rate)))
        self.partners = PartnerCommissionAccruer(Decimal(str(cfg.default_partner_commission_rate)))
        self._pending: set[asyncio.Future] = set()

    async def process(self, payload: WebhookPayload) -> Result[ProcessingOutcome]:
        """Dispatch on the normalized webhook status."""
        if payload.status is WebhookStatus.SUCCESS:
            return await self.process_successful_payment(payload)
        if payload.status is WebhookStatus.FAILED:
            return await self.process_failed_payment(payload)
        logger.info(
            "webhook acknowledged without ledger change",
            extra={
                "gateway": payload.gateway,
                "external_id": payload.external_id,
                "status": payload.status.value,
            },
        )
        return Ok(
            ProcessingOutcome(
                transaction_id=payload.payment_id,
                status=None,
                message=f"Webhook with status {payload.status.value} acknowledged",
            )
        )

    async def process_successful_payment(self, payload: WebhookPayload) -> Result[ProcessingOutcome]:
        return await self._shielded(self._complete_success(payload))

    async def process_failed_payment(self, payload: WebhookPayload) -> Result[ProcessingOutcome]:
        return await self._shielded(self._complete_failure(payload))

    async def drain(self) -> None:
        """Wait for webhooks whose callers stopped waiting; called on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _shielded(self, work: Awaitable[Result[ProcessingOutcome]]) -> Result[ProcessingOutcome]:
        # A caller timing out must not stop a commit in flight or its notifications.
        task = asyncio.ensure_future(work)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return await asyncio.shield(task)

    async def _complete_success(self, payload: WebhookPayload) -> Result[ProcessingOutcome]:
        result = await self._run(self._apply_success, payload)
        if isinstance(result, Err):
            return result
        applied = result.value
        if not applied.outcome.already_processed:
            await self._emit_after_commit(applied)
        return Ok(applied.outcome)

    async def _complete_failure(self, payload: WebhookPayload) -> Result[ProcessingOutcome]:
        result = await self._run(self._apply_failure, payload)
        if isinstance(result, Err):
            return result
        applied = result.value
        outcome = applied.outcome
        if outcome.status is TransactionStatus.FAILED and not outcome.already_processed:
            try:
                await self.notifier.emit_payment_failed(
                    applied.user_id or "",
                    outcome.transaction_id or "",
                    payload.error_message or "Payment failed",
                )
            except Exception as exc:
                logger.warning(
                    "payment failed notification not sent",
                    extra={"transaction_id": outcome.transaction_id, "error": str(exc)},
                )
        return Ok(outcome)

    async def _run(
        self, work: Callable[[WebhookPayload], Result[_Applied]], payload: WebhookPayload
    ) -> Result[_Applied]:
        try:
            return await asyncio.to_thread(work, payload)
        except Exception as exc:
            logger.error(
                "ledger transaction failed",
                extra={
                    "gateway": payload.gateway,
                    "external_id": payload.external_id,
                    "payment_id": payload.payment_id,
                    "error": str(exc),
                },
                exc_info=True,
            )
            return Err(
                ErrorKind.LEDGER_FAILURE,
                f"Ledger update failed: {exc}",
                {"external_id": payload.external_id, "payment_id": payload.payment_id},
            )

    def _resolve(self, uow: UnitOfWork, payload: WebhookPayload) -> PaymentTransaction | None:
        tx = None
        if payload.external_id:
            tx = uow.ledger.get_by_external_id(payload.external_id, payload.gateway_id, for_update=True)
        if tx is None and payload.payment_id:
            tx = uow.ledger.get_by_id(payload.payment_id, for_update=True)
        return tx

    def _apply_success(self, payload: WebhookPayload) -> Result[_Applied]:
        context = {"gateway": payload.gateway, "external_id": payload.external_id, "payment_id": payload.payment_id}
        with self.unit_of_work() as uow:
            tx = self._resolve(uow, payload)
            if tx is None:
                logger.error("transaction not found for successful payment", extra=context)
                return Err(ErrorKind.TRANSACTION_NOT_FOUND, "Transaction not found", context)

            if tx.status.is_terminal:
                logger.info(
                    "transaction already processed",
                    extra={**context, "transaction_id": tx.id, "status": tx.status.value},
                )
                return Ok(
                    _Applied(
                        ProcessingOutcome(
                            transaction_id=tx.id,
                            status=tx.status,
                            message="Payment already processed",
                            already_processed=True,
                        )
                    )
                )

            # Load the user before any write so a missing user leaves the row untouched.
            user = uow.users.get(tx.user_id)
            if user is None:
                logger.error(
                    "user not found for transaction",
                    extra={**context, "transaction_id": tx.id, "user_id": tx.user_id},
                )
                return Err(
                    ErrorKind.USER_NOT_FOUND,
                    f"User {tx.user_id} not found",
                    {**context, "transaction_id": tx.id},
                )

            now = self.clock()
            fields: dict[str, Any] = {"status": TransactionStatus.COMPLETED, "paid_at": now}
            if payload.external_id:
                fields["external_id"] = payload.external_id
            uow.ledger.update(tx.id, **fields)
            amount = self._settlement_amount(payload, tx)
            logger.info(
                "transaction completed",
                extra={
                    **context,
                    "transaction_id": tx.id,
                    "user_id": user.id,
                    "amount": amount,
                    "currency": tx.currency,
                },
            )

            failures, notices = self._apply_effects(uow, tx, user, payload, amount, now)
            return Ok(
                _Applied(
                    ProcessingOutcome(
                        transaction_id=tx.id,
                        status=TransactionStatus.COMPLETED,
                        message="Payment processed",
                        side_effect_failures=tuple(failures),
                    ),
                    user_id=user.id,
                    amount=amount,
                    currency=tx.currency,
                    partner_notices=notices,
                )
            )

    def _apply_effects(
        self,
        uow: UnitOfWork,
        tx: PaymentTransaction,
        user: User,
        payload: WebhookPayload,
        amount: Decimal,
        now: datetime,
    ) -> tuple[list[Err], list[PartnerCommissionNotice]]:
        failures: list[Err] = []
        notices: list[PartnerCommissionNotice] = []
        context = {"transaction_id": tx.id, "user_id": user.id, "gateway": payload.gateway}

        order = self._order_for(payload, tx)
        if isinstance(order, SubscriptionMetadata):
            result = self._isolated(
                uow, "activate_subscription", lambda: self.subscriptions.activate(uow, user.id, order, now), context
            )
            if isinstance(result, Err):
                failures.append(result)
        elif isinstance(order, IncompleteSubscriptionMetadata):
            logger.warning(
                "subscription metadata incomplete; activation skipped",
                extra={**context, "reason": ",".join(order.missing)},
            )
        elif isinstance(order, BalanceMetadata):
            result = self._isolated(
                uow, "add_balance", lambda: self.balances.add(uow, user.id, amount), context
            )
            if isinstance(result, Err):
                failures.append(result)

        if user.referred_by:
            referrer_id = user.referred_by
            result = self._isolated(
                uow,
                "accrue_referral",
                lambda: self.referrals.accrue(uow, referrer_id, user.id, amount),
                {**context, "referrer_id": referrer_id},
            )
            if isinstance(result, Err):
                failures.append(result)

        if user.partner_id:
            partner_id = user.partner_id
            result = self._isolated(
                uow,
                "accrue_partner_commission",
                lambda: self.partners.accrue(uow, partner_id, user.id, amount, tx.id, tx.currency),
                {**context, "partner_id": partner_id},
            )
            if isinstance(result, Err):
                failures.append(result)
            elif result.value is not None:
                notices.append(result.value)

        return failures, notices

    def _isolated(self, uow: UnitOfWork, step: str, action: Callable[[], T], context: dict[str, Any]) -> Result[T]:
        try:
            with uow.savepoint(step):
                return Ok(action())
        except Exception as exc:
            logger.error(
                "side effect failed",
                extra={**context, "kind": step, "error": str(exc)},
                exc_info=True,
            )
            return Err(ErrorKind.SIDE_EFFECT_FAILURE, f"{step} failed: {exc}", {**context, "step": step})

    @staticmethod
    def _order_for(payload: WebhookPayload, tx: PaymentTransaction) -> OrderMetadata | None:
        """Payload metadata wins unless it is an incomplete subscription the ledger can complete."""
        if payload.order is not None and not isinstance(payload.order, IncompleteSubscriptionMetadata):
            return payload.order
        stored = parse_order_metadata(tx.metadata, fallback_type=tx.type.value)
        if payload.order is None or isinstance(stored, SubscriptionMetadata):
            return stored
        return payload.order

    @staticmethod
    def _settlement_amount(payload: WebhookPayload, tx: PaymentTransaction) -> Decimal:
        """Gross amount in the ledger currency.

        Crypto gateways report the paid amount in the coin, so the ledger's
        own amount is used whenever the currencies differ.
        """
        if payload.currency and payload.currency.upper() == (tx.currency or "").upper():
            if payload.amount != tx.amount:
                logger.warning(
                    "webhook amount differs from ledger amount",
                    extra={"transaction_id": tx.id, "amount": payload.amount, "reason": f"ledger={tx.amount}"},
                )
            return payload.amount
        return tx.amount

    def _apply_failure(self, payload: WebhookPayload) -> Result[_Applied]:
        context = {"gateway": payload.gateway, "external_id": payload.external_id, "payment_id": payload.payment_id}
        with self.unit_of_work() as uow:
            tx = self._resolve(uow, payload)
            if tx is None:
                logger.warning("transaction not found for failed payment; acknowledging", extra=context)
                return Ok(
                    _Applied(
                        ProcessingOutcome(
                            transaction_id=None,
                            status=None,
                            message="Transaction not found; failure acknowledged",
                        )
                    )
                )

            if tx.status.is_terminal:
                logger.info(
                    "transaction already processed",
                    extra={**context, "transaction_id": tx.id, "status": tx.status.value},
                )
                return Ok(
                    _Applied(
                        ProcessingOutcome(
                            transaction_id=tx.id,
                            status=tx.status,
                            message="Payment already processed",
                            already_processed=True,
                        )
                    )
                )

            fields: dict[str, Any] = {
                "status": TransactionStatus.FAILED,
                "error_message": payload.error_message or "Payment failed",
            }
            if payload.external_id and not tx.external_id:
                fields["external_id"] = payload.external_id
            uow.ledger.update(tx.id, **fields)
            logger.info(
                "transaction failed",
                extra={**context, "transaction_id": tx.id, "user_id": tx.user_id, "reason": fields["error_message"]},
            )
            return Ok(
                _Applied(
                    ProcessingOutcome(
                        transaction_id=tx.id,
                        status=TransactionStatus.FAILED,
                        message="Payment failure recorded",
                    ),
                    user_id=tx.user_id,
                )
            )

    async def _emit_after_commit(self, applied: _Applied) -> None:
        outcome = applied.outcome
        try:
            await self.notifier.emit_payment_received(
                applied.user_id or "",
                {
                    "payment_id": outcome.transaction_id,
                    "amount": applied.amount,
                    "currency": applied.currency,
                    "status": TransactionStatus.COMPLETED.value,
                },
            )
        except Exception as exc:
            logger.warning(
                "payment received notification not sent",
                extra={"transaction_id": outcome.transaction_id, "error": str(exc)},
            )
        for notice in applied.partner_notices:
            try:
                await self.notifier.emit_partner_commission(
                    notice.user_id, notice.amount, notice.order_id, notice.currency
                )
            except Exception as exc:
                logger.warning(
                    "partner commission notification not sent",
                    extra={"transaction_id": notice.order_id, "user_id": notice.user_id, "error": str(exc)},
                )
