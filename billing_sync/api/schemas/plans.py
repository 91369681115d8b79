from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class PlanUpsertRequest(BaseModel):
    name: str
    description: str
    price: Decimal
    duration_value: int
    duration_unit: str = "months"
    installments: int = 1
    is_active: bool = True
    support_level: str = "basic"
    features: list[str] = Field(default_factory=list)
    position: int | None = None
    enable_remote: bool = False


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str
    price: Decimal
    duration_value: int
    duration_unit: str
    installments: int
    installment_price: Decimal
    is_active: bool
    support_level: str
    features: list[str]
    position: int | None
    remote_enabled: bool
    mirror_status: str
    mirror_error: str | None
    mirror_sync_attempts: int
    created_at: datetime
    updated_at: datetime


class AutoRecurringResponse(BaseModel):
    frequency: int
    frequency_type: str
    amount: Decimal
    repetitions: int
    currency_id: str


class MirrorPlanResponse(BaseModel):
    id: str
    plan_id: str
    reason: str
    status: str
    init_point: str | None
    auto_recurring: AutoRecurringResponse
    updated_at: datetime


class SyncErrorResponse(BaseModel):
    kind: str
    message: str


class PlanSyncResponse(BaseModel):
    plan: PlanResponse
    mirror: MirrorPlanResponse | None
    mirror_synced: bool
    plan_updated: bool
    error: SyncErrorResponse | None = None


class MirrorStateResponse(BaseModel):
    tag: str
    error: str | None = None
    attempts: int | None = None


class PlanSyncStateResponse(BaseModel):
    plan: PlanResponse
    mirror: MirrorPlanResponse | None
    state: MirrorStateResponse
