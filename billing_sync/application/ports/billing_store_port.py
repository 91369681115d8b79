from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from billing_sync.domain.entities.mirror import MirrorPlan, MirrorSubscription, RemotePlan, RemoteSubscription
from billing_sync.domain.entities.plan import MirrorStatus, Plan, PlanFields
from billing_sync.domain.entities.subscription import Subscription


class BillingTransaction(Protocol):
    """Writes scoped to one local transaction.

    `lock_plan` and `lock_mirror_subscription` hold a row lock until the
    transaction ends. Unique violations surface as
    `LocalConstraintViolationError`, lock waits beyond the budget as
    `PlanLockTimeoutError`.
    """

    def insert_plan(
        self,
        *,
        plan_id: str,
        fields: PlanFields,
        remote_enabled: bool,
        now: datetime,
    ) -> Plan:
        ...

    def lock_plan(self, *, plan_id: str) -> Plan | None:
        ...

    def update_plan(
        self,
        *,
        plan_id: str,
        fields: PlanFields,
        remote_enabled: bool,
        mirror_status: MirrorStatus,
        now: datetime,
    ) -> Plan:
        ...

    def mark_mirror_synced(self, *, plan_id: str, now: datetime) -> Plan:
        ...

    def mark_mirror_stale(self, *, plan_id: str, error: str, now: datetime) -> Plan:
        ...

    def mark_mirror_stale_unless_synced(self, *, plan_id: str, error: str, now: datetime) -> Plan | None:
        ...

    def get_mirror_plan(self, *, plan_id: str) -> MirrorPlan | None:
        ...

    def insert_mirror_plan(self, *, plan_id: str, remote: RemotePlan, now: datetime) -> MirrorPlan:
        ...

    def update_mirror_plan(
        self,
        *,
        plan_id: str,
        remote_id: str,
        remote: RemotePlan,
        now: datetime,
    ) -> MirrorPlan:
        ...

    def insert_subscription(
        self,
        *,
        subscription_id: str,
        user_id: str,
        plan_id: str,
        payer_email: str,
        status: str,
        now: datetime,
    ) -> Subscription:
        ...

    def insert_mirror_subscription(
        self,
        *,
        subscription_id: str,
        remote: RemoteSubscription,
        now: datetime,
    ) -> MirrorSubscription:
        ...

    def lock_mirror_subscription(self, *, remote_id: str) -> MirrorSubscription | None:
        ...

    def update_mirror_subscription(
        self,
        *,
        remote: RemoteSubscription,
        last_event_at: datetime | None,
        now: datetime,
    ) -> MirrorSubscription:
        ...

    def update_subscription_status(self, *, subscription_id: str, status: str, now: datetime) -> None:
        ...


class BillingStorePort(Protocol):
    def transaction(self) -> AbstractContextManager[BillingTransaction]:
        ...

    def get_plan(self, *, plan_id: str) -> Plan | None:
        ...

    def get_mirror_plan(self, *, plan_id: str) -> MirrorPlan | None:
        ...

    def list_plans(self, *, include_inactive: bool) -> list[Plan]:
        ...

    def get_subscription(self, *, subscription_id: str) -> Subscription | None:
        ...

    def get_mirror_subscription(self, *, subscription_id: str) -> MirrorSubscription | None:
        ...
