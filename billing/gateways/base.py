from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Mapping

from billing.domain.models import WebhookPayload

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")


class MalformedPayload(ValueError):
    """Raised by a normalizer when the body does not have the gateway's shape."""

    def __init__(self, gateway: str, reason: str):
        super().__init__(f"Invalid {gateway} webhook payload: {reason}")
        self.gateway = gateway
        self.reason = reason


SignatureValidator = Callable[[bytes, str, str], bool]
PayloadNormalizer = Callable[[bytes], WebhookPayload]


@dataclass(frozen=True)
class GatewayAdapter:
    """Signature validator and payload normalizer for one gateway."""

    name: str
    validate_signature: SignatureValidator
    parse_payload: PayloadNormalizer
    signature_headers: tuple[str, ...] = ("X-Signature",)

    def signature_from(self, headers: Mapping[str, str]) -> str:
        lowered = {str(key).lower(): value for key, value in headers.items()}
        for header in self.signature_headers:
            value = lowered.get(header.lower())
            if value:
                return value.strip()
        return ""


def hmac_sha256_matches(raw_body: bytes, signature: str, secret: str, prefix: str = "sha256=") -> bool:
    """Compare a hex HMAC-SHA256 of ``raw_body`` with ``signature`` in constant time."""
    if not signature or not secret:
        return False
    provided = signature.strip()
    if prefix and provided.lower().startswith(prefix):
        provided = provided[len(prefix):]
    computed = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return digest_matches(computed, provided)


def digest_matches(computed: str, provided: str) -> bool:
    """Constant-time, case-insensitive hex comparison; header text may hold any character."""
    return hmac.compare_digest(
        computed.lower().encode("utf-8"),
        provided.strip().lower().encode("utf-8", "replace"),
    )


def md5_hex(data: str) -> str:
    return hashlib.md5(data.encode("utf-8")).hexdigest()  # noqa: S324


def load_object(gateway: str, raw_body: bytes) -> dict[str, Any]:
    """Decode the body as a JSON object, keeping numbers exact."""
    try:
        data = json.loads(raw_body, parse_float=Decimal)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedPayload(gateway, "body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedPayload(gateway, "body is not a JSON object")
    return data


def require_mapping(gateway: str, data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise MalformedPayload(gateway, f"'{key}' must be an object")
    return value


def optional_mapping(gateway: str, data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedPayload(gateway, f"'{key}' must be an object")
    return value


def require_str(gateway: str, data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or isinstance(value, (dict, list, bool)):
        raise MalformedPayload(gateway, f"'{key}' is required")
    text = str(value).strip()
    if not text:
        raise MalformedPayload(gateway, f"'{key}' is required")
    return text


def optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def to_decimal(gateway: str, value: Any, field: str) -> Decimal:
    """Parse a gateway amount (number or numeric string) as a non-negative Decimal."""
    if value is None or isinstance(value, bool):
        raise MalformedPayload(gateway, f"'{field}' is required")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise MalformedPayload(gateway, f"'{field}' is not a number") from exc
    if not amount.is_finite() or amount < 0:
        raise MalformedPayload(gateway, f"'{field}' must be a non-negative number")
    return amount


def first_amount(gateway: str, data: Mapping[str, Any], *keys: str) -> Decimal:
    """First present amount among ``keys``."""
    for key in keys:
        if data.get(key) not in (None, ""):
            return to_decimal(gateway, data[key], key)
    raise MalformedPayload(gateway, f"one of {', '.join(keys)} is required")


def from_minor_units(amount: int | Decimal, factor: int = 100) -> Decimal:
    value = Decimal(amount) / Decimal(factor)
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def decode_json_metadata(value: Any, raw_key: str = "raw") -> dict[str, Any]:
    """Metadata some gateways ship as a JSON-encoded string."""
    if value is None or value == "":
        return {}
    if isinstance(value, dict):
        return dict(value)
    try:
        decoded = json.loads(str(value), parse_float=Decimal)
    except ValueError:
        return {raw_key: value}
    if isinstance(decoded, dict):
        return decoded
    return {raw_key: value}


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 strings and unix seconds; None when absent or unreadable."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, Decimal)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("unparseable webhook timestamp", extra={"reason": text})
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def merge_metadata(base: Mapping[str, Any], **extra: Any) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if value is not None:
            merged[key] = value
    return merged
