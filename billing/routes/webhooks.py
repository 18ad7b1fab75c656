from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from billing.config import settings
from billing.domain.dtos import WebhookResponse, WebhookUrlResponse, WebhookVerifyResponse
from billing.domain.result import Ok
from billing.gateways.registry import get_adapter
from billing.repositories.gateway_store import GatewayConfigStore
from billing.repositories.pg_store import pg_unit_of_work
from billing.repositories.webhook_log import PgWebhookLogStore
from billing.services.notifications import build_notification_emitter
from billing.services.payment_processing import PaymentProcessingService
from billing.services.webhook_ingestion import InboundWebhook, WebhookIngestionService

router = APIRouter(prefix="/webhook/payments", tags=["webhooks"])
logger = logging.getLogger(__name__)

_service = WebhookIngestionService(
    PaymentProcessingService(pg_unit_of_work, build_notification_emitter(settings)),
    GatewayConfigStore(settings),
    PgWebhookLogStore(),
)


def get_ingestion_service() -> WebhookIngestionService:
    return _service


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post("/{gateway}", response_model=WebhookResponse)
async def receive_webhook(
    gateway: str,
    request: Request,
    service: WebhookIngestionService = Depends(get_ingestion_service),
) -> JSONResponse:
    """Entry point for payment gateway callbacks.

    2xx tells the gateway to stop retrying; 5xx asks it to retry later.
    """
    webhook = InboundWebhook(
        gateway=gateway,
        raw_body=await request.body(),
        headers=dict(request.headers),
        client_ip=_client_ip(request),
    )
    result = await service.ingest(webhook)
    if isinstance(result, Ok):
        body = WebhookResponse(
            success=True,
            message=result.value.message,
            payment_id=result.value.transaction_id,
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(by_alias=True))
    body = WebhookResponse(success=False, message=result.message)
    return JSONResponse(status_code=result.kind.http_status, content=body.model_dump(by_alias=True))


@router.get("/{gateway}/verify", response_model=WebhookVerifyResponse)
async def verify_webhook(gateway: str) -> WebhookVerifyResponse:
    """Some gateways check the endpoint with GET before enabling it."""
    adapter = get_adapter(gateway)
    if adapter is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown gateway: {gateway}")
    return WebhookVerifyResponse(
        gateway=adapter.name,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/{gateway}/url", response_model=WebhookUrlResponse, response_model_by_alias=True)
async def webhook_url(gateway: str, request: Request) -> WebhookUrlResponse:
    adapter = get_adapter(gateway)
    if adapter is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown gateway: {gateway}")
    base = (settings.public_base_url or str(request.base_url)).rstrip("/")
    url = f"{base}{router.prefix}/{adapter.name}"
    return WebhookUrlResponse(gateway=adapter.name, webhook_url=url, verification_url=f"{url}/verify")
