from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from billing_sync.domain.entities.mirror import MirrorPlan
from billing_sync.domain.entities.plan import Plan
from billing_sync.domain.entities.sync_state import MirrorState


@dataclass(frozen=True)
class PlanSyncInput:
    name: str
    description: str
    price: Decimal
    duration_value: int
    duration_unit: str
    installments: int
    is_active: bool
    support_level: str
    enable_remote: bool
    features: tuple[str, ...] = field(default_factory=tuple)
    position: int | None = None
    plan_id: str | None = None


@dataclass(frozen=True)
class SyncErrorInfo:
    kind: str
    message: str


@dataclass(frozen=True)
class PlanSyncOutput:
    plan: Plan
    mirror: MirrorPlan | None
    mirror_synced: bool
    plan_updated: bool
    error: SyncErrorInfo | None = None


@dataclass(frozen=True)
class PlanSyncStateOutput:
    plan: Plan
    mirror: MirrorPlan | None
    state: MirrorState
