from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class WebhookResponse(BaseModel):
    """Body returned to the gateway for every webhook call."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    payment_id: str | None = Field(default=None, alias="paymentId")


class WebhookVerifyResponse(BaseModel):
    success: bool = True
    message: str = "Webhook endpoint verified"
    gateway: str
    timestamp: str


class WebhookUrlResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    gateway: str
    webhook_url: str = Field(..., alias="webhookUrl")
    verification_url: str = Field(..., alias="verificationUrl")
    documentation: str = "Use this URL in your payment gateway settings"
