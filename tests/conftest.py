from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
import threading

import pytest

from billing_sync.application.retry import RetryPolicy
from billing_sync.domain.entities.mirror import MirrorPlan, MirrorSubscription, RemotePlan, RemoteSubscription
from billing_sync.domain.entities.plan import Plan, PlanFields, snapshot_of
from billing_sync.domain.entities.subscription import Subscription
from billing_sync.domain.exceptions import LocalConstraintViolationError, PlanLockTimeoutError
from billing_sync.domain.services.auto_recurring import build_auto_recurring
from billing_sync.domain.services.plan_pricing import build_plan_fields
from billing_sync.infrastructure.clients.mercadopago_client import (
    MercadoPagoClient,
    MercadoPagoClientSettings,
)


class FakeBillingStore:
    """In-memory store with row locks and commit-on-success transactions."""

    def __init__(self, *, lock_timeout_seconds: float = 2.0):
        self.plans: dict[str, Plan] = {}
        self.mirror_plans: dict[str, MirrorPlan] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.mirror_subscriptions: dict[str, MirrorSubscription] = {}
        self.commits = 0
        self.rollbacks = 0
        self._lock_timeout_seconds = lock_timeout_seconds
        self._guard = threading.Lock()
        self._row_locks: dict[str, threading.Lock] = {}
        self._lock_script: dict[str, list[bool]] = {}

    @contextmanager
    def transaction(self):
        tx = FakeBillingTransaction(self)
        try:
            yield tx
        except BaseException:
            with self._guard:
                self.rollbacks += 1
            raise
        else:
            with self._guard:
                for table, writes in tx.writes.items():
                    getattr(self, table).update(writes)
                self.commits += 1
        finally:
            tx.release()

    def get_plan(self, *, plan_id: str) -> Plan | None:
        return self.plans.get(plan_id)

    def get_mirror_plan(self, *, plan_id: str) -> MirrorPlan | None:
        return self.mirror_plans.get(plan_id)

    def list_plans(self, *, include_inactive: bool) -> list[Plan]:
        plans = [plan for plan in self.plans.values() if include_inactive or plan.is_active]
        return sorted(plans, key=lambda plan: (plan.position is None, plan.position or 0, plan.name))

    def get_subscription(self, *, subscription_id: str) -> Subscription | None:
        return self.subscriptions.get(subscription_id)

    def get_mirror_subscription(self, *, subscription_id: str) -> MirrorSubscription | None:
        for mirror in self.mirror_subscriptions.values():
            if mirror.subscription_id == subscription_id:
                return mirror
        return None

    def fail_lock(self, key: str, *, after: int = 0, times: int = 1) -> None:
        """Let `after` acquisitions of `key` through, then time out `times` of them."""
        self._lock_script.setdefault(key, []).extend([False] * after + [True] * times)

    def acquire(self, key: str) -> threading.Lock:
        with self._guard:
            script = self._lock_script.get(key)
            if script and script.pop(0):
                raise PlanLockTimeoutError(f"Row lock not acquired for {key}.")
            lock = self._row_locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=self._lock_timeout_seconds):
            raise PlanLockTimeoutError(f"Row lock not acquired for {key}.")
        return lock

    def seed_plan(self, plan: Plan) -> Plan:
        self.plans[plan.id] = plan
        return plan

    def seed_mirror_plan(self, mirror: MirrorPlan) -> MirrorPlan:
        self.mirror_plans[mirror.plan_id] = mirror
        return mirror

    def seed_mirror_subscription(self, subscription: Subscription, mirror: MirrorSubscription) -> None:
        self.subscriptions[subscription.id] = subscription
        self.mirror_subscriptions[mirror.id] = mirror


class FakeBillingTransaction:
    def __init__(self, store: FakeBillingStore):
        self._store = store
        self._held: list[threading.Lock] = []
        self.writes: dict[str, dict] = {
            "plans": {},
            "mirror_plans": {},
            "subscriptions": {},
            "mirror_subscriptions": {},
        }

    def release(self) -> None:
        while self._held:
            self._held.pop().release()

    def _read(self, table: str, key: str):
        if key in self.writes[table]:
            return self.writes[table][key]
        return getattr(self._store, table).get(key)

    def _visible(self, table: str) -> dict:
        merged = dict(getattr(self._store, table))
        merged.update(self.writes[table])
        return merged

    def _lock(self, key: str) -> None:
        self._held.append(self._store.acquire(key))

    def insert_plan(self, *, plan_id: str, fields: PlanFields, remote_enabled: bool, now: datetime) -> Plan:
        if any(plan.name == fields.name for plan in self._visible("plans").values()):
            raise LocalConstraintViolationError("Local constraint violated: plans_name_key.")
        plan = Plan(
            id=plan_id,
            name=fields.name,
            description=fields.description,
            price=fields.price,
            duration_value=fields.duration_value,
            duration_unit=fields.duration_unit,
            installments=fields.installments,
            installment_price=fields.installment_price,
            is_active=fields.is_active,
            support_level=fields.support_level,
            features=fields.features,
            position=fields.position,
            remote_enabled=remote_enabled,
            mirror_status="pending" if remote_enabled else "absent",
            mirror_error=None,
            mirror_sync_attempts=0,
            created_at=now,
            updated_at=now,
        )
        self.writes["plans"][plan_id] = plan
        return plan

    def lock_plan(self, *, plan_id: str) -> Plan | None:
        self._lock(f"plan:{plan_id}")
        return self._read("plans", plan_id)

    def update_plan(self, *, plan_id, fields, remote_enabled, mirror_status, now) -> Plan:
        plan = replace(
            self._read("plans", plan_id),
            name=fields.name,
            description=fields.description,
            price=fields.price,
            duration_value=fields.duration_value,
            duration_unit=fields.duration_unit,
            installments=fields.installments,
            installment_price=fields.installment_price,
            is_active=fields.is_active,
            support_level=fields.support_level,
            features=fields.features,
            position=fields.position,
            remote_enabled=remote_enabled,
            mirror_status=mirror_status,
            updated_at=now,
        )
        self.writes["plans"][plan_id] = plan
        return plan

    def mark_mirror_synced(self, *, plan_id: str, now: datetime) -> Plan:
        plan = replace(
            self._read("plans", plan_id),
            mirror_status="synced",
            mirror_error=None,
            mirror_sync_attempts=0,
            updated_at=now,
        )
        self.writes["plans"][plan_id] = plan
        return plan

    def mark_mirror_stale(self, *, plan_id: str, error: str, now: datetime) -> Plan:
        current = self._read("plans", plan_id)
        plan = replace(
            current,
            mirror_status="stale",
            mirror_error=error,
            mirror_sync_attempts=current.mirror_sync_attempts + 1,
            updated_at=now,
        )
        self.writes["plans"][plan_id] = plan
        return plan

    def mark_mirror_stale_unless_synced(self, *, plan_id: str, error: str, now: datetime) -> Plan | None:
        self._lock(f"plan:{plan_id}")
        current = self._read("plans", plan_id)
        if current is None or not current.remote_enabled or current.mirror_status == "synced":
            return None
        return self.mark_mirror_stale(plan_id=plan_id, error=error, now=now)

    def get_mirror_plan(self, *, plan_id: str) -> MirrorPlan | None:
        return self._read("mirror_plans", plan_id)

    def insert_mirror_plan(self, *, plan_id: str, remote: RemotePlan, now: datetime) -> MirrorPlan:
        if self._read("mirror_plans", plan_id) is not None:
            raise LocalConstraintViolationError("Local constraint violated: uq_mirror_plans_plan_id.")
        mirror = _mirror_from_remote(plan_id, remote, created_at=now, updated_at=now)
        self.writes["mirror_plans"][plan_id] = mirror
        return mirror

    def update_mirror_plan(self, *, plan_id: str, remote_id: str, remote: RemotePlan, now: datetime) -> MirrorPlan:
        current = self._read("mirror_plans", plan_id)
        assert current.id == remote_id
        mirror = _mirror_from_remote(plan_id, remote, created_at=current.created_at, updated_at=now)
        self.writes["mirror_plans"][plan_id] = mirror
        return mirror

    def insert_subscription(self, *, subscription_id, user_id, plan_id, payer_email, status, now) -> Subscription:
        subscription = Subscription(
            id=subscription_id,
            user_id=user_id,
            plan_id=plan_id,
            payer_email=payer_email,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.writes["subscriptions"][subscription_id] = subscription
        return subscription

    def insert_mirror_subscription(self, *, subscription_id, remote: RemoteSubscription, now) -> MirrorSubscription:
        mirror = MirrorSubscription(
            id=remote.id,
            subscription_id=subscription_id,
            mirror_plan_id=remote.mirror_plan_id,
            payer_id=remote.payer_id,
            status=remote.status,
            date_created=remote.date_created,
            next_payment_date=remote.next_payment_date,
            init_point=remote.init_point,
            last_event_at=remote.last_modified or remote.date_created,
            raw_payload=remote.raw_payload,
            created_at=now,
            updated_at=now,
        )
        self.writes["mirror_subscriptions"][remote.id] = mirror
        return mirror

    def lock_mirror_subscription(self, *, remote_id: str) -> MirrorSubscription | None:
        self._lock(f"mirror_subscription:{remote_id}")
        return self._read("mirror_subscriptions", remote_id)

    def update_mirror_subscription(self, *, remote: RemoteSubscription, last_event_at, now) -> MirrorSubscription:
        current = self._read("mirror_subscriptions", remote.id)
        mirror = replace(
            current,
            payer_id=remote.payer_id,
            status=remote.status,
            date_created=remote.date_created or current.date_created,
            next_payment_date=remote.next_payment_date,
            last_event_at=last_event_at,
            raw_payload=remote.raw_payload,
            updated_at=now,
        )
        self.writes["mirror_subscriptions"][remote.id] = mirror
        return mirror

    def update_subscription_status(self, *, subscription_id: str, status: str, now: datetime) -> None:
        current = self._read("subscriptions", subscription_id)
        self.writes["subscriptions"][subscription_id] = replace(current, status=status, updated_at=now)


class FakeProcessor:
    """Scripted processor: echoes the requested terms unless told to fail."""

    timeout_seconds = 5.0

    def __init__(self):
        self.calls: list[tuple] = []
        self.failures: dict[str, list[Exception]] = {}
        self.remote_subscriptions: dict[str, dict] = {}
        self.amount_override: Decimal | None = None
        self.update_id_override: str | None = None
        self.verified: list[dict] = []
        self._counter = 0
        self._counter_lock = threading.Lock()
        self._parser = MercadoPagoClient(
            MercadoPagoClientSettings(
                api_base="https://api.mercadopago.test",
                access_token="token",
                back_url="https://example.com/back",
                currency_id="ARS",
                timeout_seconds=self.timeout_seconds,
            )
        )

    def fail(self, operation: str, exc: Exception, *, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([exc] * times)

    def calls_to(self, operation: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def _maybe_fail(self, operation: str) -> None:
        queue = self.failures.get(operation)
        if queue:
            raise queue.pop(0)

    def _next_id(self, prefix: str) -> str:
        with self._counter_lock:
            self._counter += 1
            return f"{prefix}-{self._counter}"

    def _remote_plan(self, remote_id: str, snapshot) -> RemotePlan:
        auto_recurring = build_auto_recurring(snapshot, currency_id="ARS")
        if self.amount_override is not None:
            auto_recurring = replace(auto_recurring, amount=self.amount_override)
        return RemotePlan(
            id=remote_id,
            reason=snapshot.name,
            status="active",
            init_point=f"https://mp.test/plans/{remote_id}",
            auto_recurring=auto_recurring,
            raw_payload={"id": remote_id, "reason": snapshot.name},
        )

    def create_remote_plan(self, *, snapshot, idempotency_key):
        self.calls.append(("create_remote_plan", snapshot, idempotency_key))
        self._maybe_fail("create_remote_plan")
        return self._remote_plan(self._next_id("mp"), snapshot)

    def update_remote_plan(self, *, remote_id, snapshot):
        self.calls.append(("update_remote_plan", snapshot, remote_id))
        self._maybe_fail("update_remote_plan")
        return self._remote_plan(self.update_id_override or remote_id, snapshot)

    def create_remote_subscription(self, *, snapshot, idempotency_key):
        self.calls.append(("create_remote_subscription", snapshot, idempotency_key))
        self._maybe_fail("create_remote_subscription")
        remote_id = self._next_id("sub")
        payload = {
            "id": remote_id,
            "preapproval_plan_id": snapshot.mirror_plan_id,
            "payer_id": 77,
            "status": "pending",
            "date_created": "2026-01-10T10:00:00.000-03:00",
            "init_point": f"https://mp.test/subscriptions/{remote_id}",
        }
        return self._parser.parse_subscription_payload(payload)

    def get_remote_subscription(self, *, remote_id):
        self.calls.append(("get_remote_subscription", remote_id))
        self._maybe_fail("get_remote_subscription")
        return self._parser.parse_subscription_payload(self.remote_subscriptions[remote_id])

    def parse_subscription_payload(self, payload):
        return self._parser.parse_subscription_payload(payload)

    def verify_webhook(self, *, signature, request_id, data_id):
        self.verified.append({"signature": signature, "request_id": request_id, "data_id": data_id})
        self._maybe_fail("verify_webhook")


def _mirror_from_remote(plan_id: str, remote: RemotePlan, *, created_at, updated_at) -> MirrorPlan:
    return MirrorPlan(
        id=remote.id,
        plan_id=plan_id,
        reason=remote.reason,
        status=remote.status,
        init_point=remote.init_point,
        auto_recurring=remote.auto_recurring,
        raw_payload=remote.raw_payload,
        created_at=created_at,
        updated_at=updated_at,
    )


def make_plan(plan_id: str = "plan-1", **overrides) -> Plan:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    fields = build_plan_fields(
        name=overrides.pop("name", "Pro Monthly"),
        description="Full access",
        price=overrides.pop("price", Decimal("1200")),
        duration_value=overrides.pop("duration_value", 1),
        duration_unit=overrides.pop("duration_unit", "months"),
        installments=overrides.pop("installments", 1),
        is_active=overrides.pop("is_active", True),
        support_level="basic",
    )
    values = dict(
        id=plan_id,
        name=fields.name,
        description=fields.description,
        price=fields.price,
        duration_value=fields.duration_value,
        duration_unit=fields.duration_unit,
        installments=fields.installments,
        installment_price=fields.installment_price,
        is_active=fields.is_active,
        support_level=fields.support_level,
        features=(),
        position=None,
        remote_enabled=False,
        mirror_status="absent",
        mirror_error=None,
        mirror_sync_attempts=0,
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return Plan(**values)


def make_mirror_plan(plan: Plan, remote_id: str = "mp-seed") -> MirrorPlan:
    return MirrorPlan(
        id=remote_id,
        plan_id=plan.id,
        reason=plan.name,
        status="active",
        init_point=None,
        auto_recurring=build_auto_recurring(
            snapshot_of(plan),
            currency_id="ARS",
        ),
        raw_payload={"id": remote_id},
        created_at=plan.created_at,
        updated_at=plan.updated_at,
    )


@pytest.fixture
def store() -> FakeBillingStore:
    return FakeBillingStore()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay_seconds=0.0, max_delay_seconds=0.0)
