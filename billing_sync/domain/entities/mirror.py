from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal


FrequencyType = Literal["days", "months"]


@dataclass(frozen=True)
class AutoRecurring:
    frequency: int
    frequency_type: FrequencyType
    amount: Decimal
    repetitions: int
    currency_id: str


@dataclass(frozen=True)
class RemotePlan:
    """Processor acknowledgement of a create/update of a preapproval plan."""

    id: str
    reason: str
    status: str
    init_point: str | None
    auto_recurring: AutoRecurring
    raw_payload: dict[str, Any]


@dataclass(frozen=True)
class MirrorPlan:
    id: str
    plan_id: str
    reason: str
    status: str
    init_point: str | None
    auto_recurring: AutoRecurring
    raw_payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class RemoteSubscription:
    id: str
    mirror_plan_id: str | None
    payer_id: str | None
    status: str
    date_created: datetime | None
    last_modified: datetime | None
    next_payment_date: datetime | None
    init_point: str | None
    raw_payload: dict[str, Any]


@dataclass(frozen=True)
class MirrorSubscription:
    id: str
    subscription_id: str
    mirror_plan_id: str | None
    payer_id: str | None
    status: str
    date_created: datetime | None
    next_payment_date: datetime | None
    init_point: str | None
    last_event_at: datetime | None
    raw_payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
