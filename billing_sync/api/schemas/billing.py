from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class CreateSubscriptionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan_id: UUID
    payer_email: str = Field(..., min_length=3)


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    plan_id: str
    payer_email: str
    status: str


class MirrorSubscriptionResponse(BaseModel):
    id: str
    mirror_plan_id: str | None
    payer_id: str | None
    status: str
    init_point: str | None
    next_payment_date: datetime | None
    last_event_at: datetime | None


class CreateSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    mirror: MirrorSubscriptionResponse


class SubscriptionDetailsResponse(BaseModel):
    subscription: SubscriptionResponse
    mirror: MirrorSubscriptionResponse | None


class ProcessorWebhookResponse(BaseModel):
    handled: bool
    remote_id: str | None = None
    outcome: str | None = None
    error: str | None = None
