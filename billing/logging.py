from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict


class JsonFormatter(logging.Formatter):
    """Format log records as JSON."""

    # Whitelisted extra fields to enrich logs
    extra_fields = (
        "gateway",
        "payment_id",
        "external_id",
        "transaction_id",
        "user_id",
        "referrer_id",
        "partner_id",
        "plan_id",
        "duration_days",
        "amount",
        "points",
        "commission",
        "currency",
        "status",
        "kind",
        "event",
        "endpoint",
        "ip",
        "reason",
        "error",
    )

    def _coerce(self, value: Any) -> Any:
        if isinstance(value, Decimal):
            return format(value, "f")
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {str(k): self._coerce(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._coerce(item) for item in value]
        return value

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for field in self.extra_fields:
            if hasattr(record, field):
                data[field] = self._coerce(getattr(record, field))
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging() -> None:
    """Configure root logger to use JSON formatter."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=logging.INFO, handlers=[handler])
