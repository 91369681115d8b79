from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from billing_sync.domain.entities.mirror import MirrorSubscription
from billing_sync.domain.entities.subscription import Subscription


RemoteStatusOutcome = Literal[
    "applied",
    "stale_ignored",
    "duplicate_ignored",
    "orphan_dropped",
]


@dataclass(frozen=True)
class CreateSubscriptionInput:
    user_id: str
    plan_id: str
    payer_email: str


@dataclass(frozen=True)
class CreateSubscriptionOutput:
    subscription: Subscription
    mirror: MirrorSubscription


@dataclass(frozen=True)
class ProcessorWebhookInput:
    payload: dict[str, Any]
    signature: str | None
    request_id: str | None


@dataclass(frozen=True)
class RemoteStatusUpdateOutput:
    remote_id: str
    outcome: RemoteStatusOutcome
    mirror: MirrorSubscription | None


@dataclass(frozen=True)
class SubscriptionDetailsOutput:
    subscription: Subscription
    mirror: MirrorSubscription | None
