from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Subscription:
    id: str
    user_id: str
    plan_id: str
    payer_email: str
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str
    mirror_plan_id: str
    reason: str
    payer_email: str
