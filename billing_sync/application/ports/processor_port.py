from __future__ import annotations

from typing import Any, Protocol

from billing_sync.domain.entities.mirror import RemotePlan, RemoteSubscription
from billing_sync.domain.entities.plan import PlanSnapshot
from billing_sync.domain.entities.subscription import SubscriptionSnapshot


class ProcessorPort(Protocol):
    """Payment processor subscription API. No local storage side effects.

    Implementations raise `ProcessorUnreachableError` for transient failures
    (timeouts included) and `ProcessorRejectedError` for permanent ones.
    """

    def create_remote_plan(self, *, snapshot: PlanSnapshot, idempotency_key: str) -> RemotePlan:
        ...

    def update_remote_plan(self, *, remote_id: str, snapshot: PlanSnapshot) -> RemotePlan:
        ...

    def create_remote_subscription(
        self,
        *,
        snapshot: SubscriptionSnapshot,
        idempotency_key: str,
    ) -> RemoteSubscription:
        ...

    def get_remote_subscription(self, *, remote_id: str) -> RemoteSubscription:
        ...

    def parse_subscription_payload(self, payload: dict[str, Any]) -> RemoteSubscription:
        ...

    def verify_webhook(self, *, signature: str | None, request_id: str | None, data_id: str) -> None:
        ...

    @property
    def timeout_seconds(self) -> float:
        ...
