from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from billing.config import settings
from billing.db.client import get_conn

from .accounts import PgPartnerStore, PgReferralStore, PgSubscriptionStore, PgUserStore
from .ledger import PgTransactionLedger
from .unit_of_work import LedgerUnavailable


class PgUnitOfWork:
    """PostgreSQL-backed stores sharing one cursor and therefore one transaction."""

    def __init__(self, cur: Any):
        self.cur = cur
        self.ledger = PgTransactionLedger(cur)
        self.users = PgUserStore(cur)
        self.subscriptions = PgSubscriptionStore(cur)
        self.referrals = PgReferralStore(cur)
        self.partners = PgPartnerStore(cur)

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        # name comes from code, never from webhook input
        self.cur.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            self.cur.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        self.cur.execute(f"RELEASE SAVEPOINT {name}")


@contextmanager
def pg_unit_of_work() -> Iterator[PgUnitOfWork]:
    """Open one database transaction for a webhook.

    Commit, rollback and returning the connection to the pool are handled by
    ``get_conn``.
    """
    with get_conn(statement_timeout_ms=settings.db_statement_timeout_ms) as conn:
        if conn is None:
            raise LedgerUnavailable("Database is not configured")
        with conn.cursor() as cur:
            yield PgUnitOfWork(cur)
