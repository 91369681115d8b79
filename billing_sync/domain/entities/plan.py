from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal


DurationUnit = Literal["days", "months"]
SupportLevel = Literal["basic", "standard", "premium"]
MirrorStatus = Literal["absent", "pending", "synced", "stale"]


@dataclass(frozen=True)
class PlanFields:
    """Business fields written by callers; installment_price is always derived."""

    name: str
    description: str
    price: Decimal
    duration_value: int
    duration_unit: DurationUnit
    installments: int
    installment_price: Decimal
    is_active: bool
    support_level: SupportLevel
    features: tuple[str, ...] = field(default_factory=tuple)
    position: int | None = None


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    price: Decimal
    duration_value: int
    duration_unit: DurationUnit
    installments: int
    installment_price: Decimal
    is_active: bool
    support_level: SupportLevel
    features: tuple[str, ...]
    position: int | None
    remote_enabled: bool
    mirror_status: MirrorStatus
    mirror_error: str | None
    mirror_sync_attempts: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PlanSnapshot:
    """What the processor client sees of a plan."""

    plan_id: str
    name: str
    price: Decimal
    duration_value: int
    duration_unit: DurationUnit
    installments: int
    installment_price: Decimal


def snapshot_of(plan: Plan) -> PlanSnapshot:
    return PlanSnapshot(
        plan_id=plan.id,
        name=plan.name,
        price=plan.price,
        duration_value=plan.duration_value,
        duration_unit=plan.duration_unit,
        installments=plan.installments,
        installment_price=plan.installment_price,
    )
