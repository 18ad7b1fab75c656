from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from billing.config import Settings, settings
from billing.domain.enums import VerificationStatus
from billing.domain.models import GatewayConfig, WebhookPayload
from billing.domain.result import Err, ErrorKind, Ok, Result
from billing.gateways.base import GatewayAdapter, MalformedPayload
from billing.gateways.registry import get_adapter

from .payment_processing import PaymentProcessingService, ProcessingOutcome

logger = logging.getLogger(__name__)


class GatewayConfigSource(Protocol):
    def get(self, gateway: str) -> GatewayConfig: ...


class WebhookLogSink(Protocol):
    def record(self, **fields: Any) -> None: ...


@dataclass(frozen=True)
class InboundWebhook:
    """One HTTP delivery as received, before any authentication."""

    gateway: str
    raw_body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    client_ip: str | None = None


@dataclass
class _Trace:
    gateway: str
    verification: VerificationStatus = VerificationStatus.SKIPPED
    payload: WebhookPayload | None = None


def ip_allowed(client_ip: str | None, allowed: tuple[str, ...]) -> bool:
    """Exact addresses and CIDR ranges; an empty allowlist admits everyone."""
    if not allowed:
        return True
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("invalid allowlist entry", extra={"ip": entry})
    return False


class WebhookIngestionService:
    """Authenticates, normalizes and dispatches inbound gateway webhooks."""

    def __init__(
        self,
        processor: PaymentProcessingService,
        gateway_configs: GatewayConfigSource,
        webhook_log: Optional[WebhookLogSink] = None,
        cfg: Settings = settings,
    ):
        self.processor = processor
        self.gateway_configs = gateway_configs
        self.webhook_log = webhook_log
        self.settings = cfg

    async def ingest(self, webhook: InboundWebhook) -> Result[ProcessingOutcome]:
        trace = _Trace(gateway=webhook.gateway)
        try:
            result = await asyncio.wait_for(
                self._ingest(webhook, trace), timeout=self.settings.webhook_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                "webhook processing timed out",
                extra={"gateway": webhook.gateway, "external_id": trace.payload.external_id if trace.payload else None},
            )
            result = Err(ErrorKind.TIMEOUT, "Webhook processing timed out", {"gateway": webhook.gateway})
        await self._record(webhook, trace, result)
        return result

    async def _ingest(self, webhook: InboundWebhook, trace: _Trace) -> Result[ProcessingOutcome]:
        adapter = get_adapter(webhook.gateway)
        if adapter is None:
            logger.warning("unknown gateway", extra={"gateway": webhook.gateway})
            return Err(ErrorKind.UNKNOWN_GATEWAY, f"Unknown gateway: {webhook.gateway}")
        trace.gateway = adapter.name

        try:
            config = await asyncio.to_thread(self.gateway_configs.get, adapter.name)
        except Exception as exc:
            logger.error(
                "gateway config unavailable",
                extra={"gateway": adapter.name, "error": str(exc)},
                exc_info=True,
            )
            return Err(ErrorKind.LEDGER_FAILURE, "Gateway configuration unavailable", {"gateway": adapter.name})
        if not ip_allowed(webhook.client_ip, config.allowed_ips):
            logger.warning(
                "webhook from address outside allowlist",
                extra={"gateway": adapter.name, "ip": webhook.client_ip},
            )
            return Err(ErrorKind.FORBIDDEN_SOURCE, "Source address not allowed", {"ip": webhook.client_ip})

        trace.verification = self._authenticate(adapter, config, webhook)
        if trace.verification is VerificationStatus.MISSING:
            return Err(ErrorKind.SIGNATURE_INVALID, "Missing signature", {"gateway": adapter.name})
        if trace.verification is VerificationStatus.INVALID:
            return Err(ErrorKind.SIGNATURE_INVALID, "Invalid signature", {"gateway": adapter.name})

        try:
            payload = adapter.parse_payload(webhook.raw_body)
        except MalformedPayload as exc:
            logger.warning("malformed webhook payload", extra={"gateway": adapter.name, "reason": exc.reason})
            return Err(ErrorKind.MALFORMED_PAYLOAD, str(exc), {"gateway": adapter.name})
        trace.payload = payload

        logger.info(
            "webhook received",
            extra={
                "gateway": adapter.name,
                "external_id": payload.external_id,
                "payment_id": payload.payment_id,
                "status": payload.status.value,
                "amount": payload.amount,
                "currency": payload.currency,
            },
        )
        return await self.processor.process(payload)

    def _authenticate(
        self, adapter: GatewayAdapter, config: GatewayConfig, webhook: InboundWebhook
    ) -> VerificationStatus:
        if not config.webhook_secret:
            if self.settings.require_webhook_secret:
                logger.error("webhook secret not configured", extra={"gateway": adapter.name})
                return VerificationStatus.MISSING
            logger.warning("webhook secret not configured; signature check skipped", extra={"gateway": adapter.name})
            return VerificationStatus.SKIPPED
        signature = adapter.signature_from(webhook.headers)
        if not signature:
            logger.warning("webhook signature missing", extra={"gateway": adapter.name})
            return VerificationStatus.MISSING
        try:
            valid = adapter.validate_signature(webhook.raw_body, signature, config.webhook_secret)
        except Exception as exc:
            logger.warning(
                "signature check raised; treating as invalid",
                extra={"gateway": adapter.name, "ip": webhook.client_ip, "error": str(exc)},
            )
            valid = False
        if not valid:
            logger.warning("invalid webhook signature", extra={"gateway": adapter.name, "ip": webhook.client_ip})
            return VerificationStatus.INVALID
        return VerificationStatus.SUCCESS

    async def _record(self, webhook: InboundWebhook, trace: _Trace, result: Result[ProcessingOutcome]) -> None:
        if self.webhook_log is None:
            return
        if isinstance(result, Ok):
            status_code, message = 200, result.value.message
        else:
            status_code, message = result.kind.http_status, result.message
        try:
            await asyncio.to_thread(
                self.webhook_log.record,
                gateway=trace.gateway,
                payload=_decode_for_log(webhook.raw_body),
                headers=dict(webhook.headers),
                ip_address=webhook.client_ip,
                verification_status=trace.verification.value,
                result_message=message,
                status_code=status_code,
                external_id=trace.payload.external_id if trace.payload else None,
            )
        except Exception as exc:
            logger.warning("webhook log not written", extra={"gateway": trace.gateway, "error": str(exc)})


def _decode_for_log(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return raw_body.decode("utf-8", errors="replace")
