from __future__ import annotations

import json
import logging
from typing import Any, Optional

from billing.config import Settings, settings
from billing.db.client import get_conn
from billing.domain.models import GatewayConfig

logger = logging.getLogger(__name__)


def _parse_allowed_ips(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(str(ip).strip() for ip in raw if str(ip).strip())
    try:
        decoded = json.loads(str(raw))
    except ValueError:
        decoded = str(raw).split(",")
    if isinstance(decoded, str):
        decoded = [decoded]
    return tuple(str(ip).strip() for ip in decoded if str(ip).strip())


class GatewayConfigUnavailable(RuntimeError):
    pass


class GatewayConfigStore:
    """Webhook secret and IP allowlist per gateway.

    An active row in the ``gateways`` table wins; environment settings are
    the fallback when the database is disabled or has no row.
    """

    def __init__(self, cfg: Settings = settings):
        self.settings = cfg

    def _from_db(self, gateway: str) -> Optional[GatewayConfig]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT config->>'webhookSecret', config->'allowedIps'
                      FROM gateways
                     WHERE LOWER(name) = LOWER(%s) AND is_active = true
                     LIMIT 1
                    """,
                    (gateway,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return GatewayConfig(
                    name=gateway,
                    webhook_secret=str(row[0] or ""),
                    allowed_ips=_parse_allowed_ips(row[1]),
                )

    def get(self, gateway: str) -> GatewayConfig:
        """Raise ``GatewayConfigUnavailable`` when the table cannot be read.

        Falling back to settings on a database error could drop a secret that
        only lives in the table.
        """
        if self.settings.db_enabled:
            try:
                found = self._from_db(gateway)
            except Exception as exc:
                logger.error(
                    "gateway config lookup failed",
                    extra={"gateway": gateway, "error": str(exc)},
                )
                raise GatewayConfigUnavailable(f"Cannot read config for {gateway}") from exc
            if found is not None and (found.webhook_secret or found.allowed_ips):
                return found
        return GatewayConfig(
            name=gateway,
            webhook_secret=self.settings.gateway_secret(gateway),
            allowed_ips=tuple(self.settings.gateway_allowed_ips(gateway)),
        )
