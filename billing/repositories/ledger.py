from __future__ import annotations

import json
import uuid
from functools import partial
from decimal import Decimal, InvalidOperation
from typing import Any

from psycopg2.extras import Json

from billing.domain.enums import PaymentType
from billing.domain.models import PaymentTransaction
from billing.domain.statuses import TransactionStatus

from .unit_of_work import LedgerUpdateError

_COLUMNS = """
    id, user_id, gateway_id, external_id, amount, currency, status, type,
    metadata, error_message, paid_at, created_at, updated_at
"""

# Columns the orchestrator may change on an existing row
_UPDATABLE = ("external_id", "status", "metadata", "error_message", "paid_at")
_dumps = partial(json.dumps, default=str)


def _hydrate_transaction(row: tuple[Any, ...]) -> PaymentTransaction:
    (
        tid,
        user_id,
        gateway_id,
        external_id,
        amount,
        currency,
        status,
        payment_type,
        metadata,
        error_message,
        paid_at,
        created_at,
        updated_at,
    ) = row
    try:
        amount_value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError("Invalid persisted transaction amount") from exc
    try:
        type_value = PaymentType(str(payment_type))
    except ValueError:
        type_value = PaymentType.OTHER
    return PaymentTransaction(
        id=str(tid),
        user_id=str(user_id),
        gateway_id=str(gateway_id),
        external_id=str(external_id) if external_id else None,
        amount=amount_value,
        currency=str(currency),
        status=TransactionStatus(str(status)),
        type=type_value,
        metadata=dict(metadata or {}),
        error_message=error_message,
        paid_at=paid_at,
        created_at=created_at,
        updated_at=updated_at,
    )


class PgTransactionLedger:
    """``payment_transactions`` access over a cursor owned by the caller's transaction."""

    def __init__(self, cur: Any):
        self.cur = cur

    def get_by_external_id(
        self, external_id: str, gateway_id: str, *, for_update: bool = False
    ) -> PaymentTransaction | None:
        if not external_id:
            return None
        self.cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM payment_transactions
             WHERE external_id = %s AND gateway_id = %s
             LIMIT 1
             {"FOR UPDATE" if for_update else ""}
            """,
            (external_id, gateway_id),
        )
        row = self.cur.fetchone()
        return _hydrate_transaction(row) if row else None

    def get_by_id(self, transaction_id: str, *, for_update: bool = False) -> PaymentTransaction | None:
        if not transaction_id:
            return None
        self.cur.execute(
            f"""
            SELECT {_COLUMNS}
              FROM payment_transactions
             WHERE id = %s
             LIMIT 1
             {"FOR UPDATE" if for_update else ""}
            """,
            (str(transaction_id),),
        )
        row = self.cur.fetchone()
        return _hydrate_transaction(row) if row else None

    def create(
        self,
        *,
        user_id: str,
        gateway_id: str,
        amount: Decimal,
        currency: str,
        type: PaymentType,
        metadata: dict[str, Any] | None = None,
        external_id: str | None = None,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> PaymentTransaction:
        self.cur.execute(
            f"""
            INSERT INTO payment_transactions (
                id, user_id, gateway_id, external_id, amount, currency, status, type,
                metadata, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
            RETURNING {_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                user_id,
                gateway_id,
                external_id,
                amount,
                currency,
                status.value,
                type.value,
                Json(metadata or {}, dumps=_dumps),
            ),
        )
        return _hydrate_transaction(self.cur.fetchone())

    def update(self, transaction_id: str, **fields: Any) -> PaymentTransaction:
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update ledger columns: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValueError("No fields to update")
        assignments: list[str] = []
        values: list[Any] = []
        for column in _UPDATABLE:
            if column not in fields:
                continue
            value = fields[column]
            if isinstance(value, TransactionStatus):
                value = value.value
            elif column == "metadata":
                value = Json(value or {}, dumps=_dumps)
            assignments.append(f"{column} = %s")
            values.append(value)
        values.append(str(transaction_id))
        self.cur.execute(
            f"""
            UPDATE payment_transactions
               SET {", ".join(assignments)}, updated_at = NOW()
             WHERE id = %s
            RETURNING {_COLUMNS}
            """,
            tuple(values),
        )
        row = self.cur.fetchone()
        if not row:
            raise LedgerUpdateError(f"Transaction {transaction_id} not found")
        return _hydrate_transaction(row)
