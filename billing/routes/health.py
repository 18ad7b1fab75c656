from __future__ import annotations

import os
import platform
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import logging

from fastapi import APIRouter

from billing.config import settings
from billing.db.client import get_conn
from billing.domain.statuses import TransactionStatus
from billing.gateways.registry import ADAPTERS

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_ledger_metrics() -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "connected": False,
        "status_counts": {},
        "pending_by_gateway": {},
        "completed_last_24h": {"count": 0, "amount": "0"},
    }
    try:
        with get_conn() as conn:
            if conn is None:
                return metrics
            metrics["connected"] = True
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT status, COUNT(*)
                      FROM payment_transactions
                     GROUP BY status
                    """,
                )
                for status_value, count in cur.fetchall() or []:
                    metrics["status_counts"][str(status_value)] = int(count)

                cur.execute(
                    """
                    SELECT gateway_id, COUNT(*)
                      FROM payment_transactions
                     WHERE status = %s
                     GROUP BY gateway_id
                    """,
                    (TransactionStatus.PENDING.value,),
                )
                metrics["pending_by_gateway"] = {
                    str(gateway): int(count)
                    for gateway, count in (cur.fetchall() or [])
                }

                cur.execute(
                    """
                    SELECT COUNT(*), COALESCE(SUM(amount), 0)
                      FROM payment_transactions
                     WHERE status = %s
                       AND paid_at >= NOW() - INTERVAL '1 day'
                    """,
                    (TransactionStatus.COMPLETED.value,),
                )
                row = cur.fetchone()
                if row:
                    metrics["completed_last_24h"] = {
                        "count": int(row[0] or 0),
                        "amount": format(Decimal(str(row[1] or 0)), "f"),
                    }
    except Exception as exc:  # noqa: BLE001
        logger.info("health metrics collection failed", extra={"error": str(exc)})
    return metrics


@router.get("/health/metrics")
async def health_metrics() -> dict[str, Any]:
    """Detailed service health endpoint with lightweight ledger metrics."""

    captured_at = datetime.now(timezone.utc)
    raw_metrics = _collect_ledger_metrics()
    db_connected = bool(raw_metrics.pop("connected", False))
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())
    status = "ok" if db_connected else "degraded"

    return {
        "status": status,
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "gateways": sorted(ADAPTERS),
            "environment": settings.app_env,
            "version": settings.app_version,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "connected": db_connected,
            "schema": settings.db_schema or None,
        },
        "transactions": raw_metrics,
    }
