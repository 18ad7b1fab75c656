from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure taxonomy of the webhook pipeline."""

    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_PAYLOAD = "malformed_payload"
    FORBIDDEN_SOURCE = "forbidden_source"
    UNKNOWN_GATEWAY = "unknown_gateway"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    USER_NOT_FOUND = "user_not_found"
    LEDGER_FAILURE = "ledger_failure"
    TIMEOUT = "timeout"
    SIDE_EFFECT_FAILURE = "side_effect_failure"

    @property
    def http_status(self) -> int:
        """Status code returned to the gateway.

        Rejected requests are 4xx; anything the gateway
        should retry is 5xx.
        """
        mapping = {
            ErrorKind.SIGNATURE_INVALID: 401,
            ErrorKind.MALFORMED_PAYLOAD: 400,
            ErrorKind.FORBIDDEN_SOURCE: 403,
            ErrorKind.UNKNOWN_GATEWAY: 404,
            ErrorKind.TIMEOUT: 503,
        }
        return mapping.get(self, 500)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)


Result = Union[Ok[T], Err]
