from __future__ import annotations

import json
from functools import partial
from typing import Any

from psycopg2.extras import Json

from billing.db.client import get_conn

_SENSITIVE_HEADERS = {"authorization", "cookie", "x-telegram-bot-api-secret-token"}
_dumps = partial(json.dumps, default=str)


def mask_headers(headers: dict[str, Any]) -> dict[str, Any]:
    return {
        key: ("***" if key.lower() in _SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


class PgWebhookLogStore:
    """Audit trail of every inbound webhook call."""

    def record(
        self,
        *,
        gateway: str,
        payload: Any,
        headers: dict[str, Any] | None = None,
        ip_address: str | None = None,
        verification_status: str = "UNKNOWN",
        result_message: str | None = None,
        status_code: int | None = None,
        external_id: str | None = None,
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_logs (
                        gateway, external_id, payload, headers, ip_address,
                        verification_status, result_message, status_code, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
                    """,
                    (
                        gateway,
                        external_id,
                        Json(payload if isinstance(payload, (dict, list)) else {"raw": payload}, dumps=_dumps),
                        Json(mask_headers(headers or {})),
                        ip_address,
                        verification_status,
                        result_message,
                        status_code,
                    ),
                )
