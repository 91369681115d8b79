from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import time

from fastapi.testclient import TestClient
import httpx

from billing_sync.api.deps import (
    get_apply_remote_status_update_use_case,
    get_create_subscription_use_case,
    get_subscription_use_case,
    get_sync_plan_use_case,
)
from billing_sync.application.dto.billing import RemoteStatusUpdateOutput, SubscriptionDetailsOutput
from billing_sync.application.dto.plan_sync import PlanSyncOutput, PlanSyncStateOutput, SyncErrorInfo
from billing_sync.application.use_cases.apply_remote_status_update import ApplyRemoteStatusUpdateUseCase
from billing_sync.domain.entities.subscription import Subscription
from billing_sync.domain.entities.sync_state import Stale
from billing_sync.domain.exceptions import (
    InvalidWebhookSignatureError,
    PlanNotFoundError,
    PlanValidationError,
    ProcessorUnreachableError,
    ResyncExhaustedError,
    SubscriptionNotFoundError,
)
from billing_sync.main import app

from conftest import make_mirror_plan, make_plan


PLAN_ID = "3f1c9a6e-8b2d-4c55-9e0a-6d7b1f2a4c81"
SUBSCRIPTION_ID = "a2b4c6d8-1e3f-4a5b-8c7d-9e0f1a2b3c4d"


class FakeSyncPlanUseCase:
    def __init__(self, *, error: Exception | None = None):
        self.commands = []
        self.resyncs = []
        self._error = error

    def create_or_update_plan(self, command):
        self.commands.append(command)
        if self._error is not None:
            raise self._error
        plan = make_plan(plan_id=command.plan_id or "plan-1", remote_enabled=True, mirror_status="synced")
        return PlanSyncOutput(
            plan=plan,
            mirror=make_mirror_plan(plan, remote_id="mp-1"),
            mirror_synced=True,
            plan_updated=True,
        )

    def resync_mirror(self, plan_id, *, force=False):
        self.resyncs.append((plan_id, force))
        if self._error is not None:
            raise self._error
        plan = make_plan(plan_id=plan_id, remote_enabled=True, mirror_status="stale", mirror_sync_attempts=1)
        return PlanSyncOutput(
            plan=plan,
            mirror=None,
            mirror_synced=False,
            plan_updated=False,
            error=SyncErrorInfo(kind="processor_unreachable", message="timed out"),
        )

    def get_plan_sync_state(self, plan_id):
        if self._error is not None:
            raise self._error
        plan = make_plan(plan_id=plan_id, remote_enabled=True, mirror_status="stale", mirror_error="boom")
        return PlanSyncStateOutput(plan=plan, mirror=None, state=Stale(error="boom", attempts=2))

    def list_plans(self, *, include_inactive=False):
        self.listed = include_inactive
        return [make_plan("plan-1"), make_plan("plan-2", name="Basic", is_active=False)]

    def retire_plan(self, plan_id):
        self.retired = plan_id
        if self._error is not None:
            raise self._error
        plan = make_plan(plan_id=plan_id, is_active=False)
        return PlanSyncOutput(plan=plan, mirror=None, mirror_synced=False, plan_updated=True)


class FakeWebhookUseCase:
    def __init__(self, *, error: Exception | None = None):
        self.commands = []
        self._error = error

    def execute(self, command):
        self.commands.append(command)
        if self._error is not None:
            raise self._error
        return RemoteStatusUpdateOutput(remote_id="sub-1", outcome="applied", mirror=None)


class FakeGetSubscriptionUseCase:
    def __init__(self, output: SubscriptionDetailsOutput | None = None):
        self.requested = []
        self._output = output

    def execute(self, subscription_id):
        self.requested.append(subscription_id)
        if self._output is None:
            raise SubscriptionNotFoundError("Subscription not found.")
        return self._output


class FakeCreateSubscriptionUseCase:
    def execute(self, command):
        raise PlanValidationError("Plan mirror is stale; resync the plan before subscribing.")


PLAN_BODY = {
    "name": "Pro Monthly",
    "description": "Full access",
    "price": "1200",
    "duration_value": 1,
    "duration_unit": "months",
    "installments": 1,
    "enable_remote": True,
}


def _client(dependency, factory) -> TestClient:
    app.dependency_overrides[dependency] = factory
    return TestClient(app)


def test_create_plan_returns_sync_result():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.post("/v1/plans", json=PLAN_BODY)

    assert response.status_code == 201
    payload = response.json()
    assert payload["mirror_synced"] is True
    assert payload["plan"]["installment_price"] == "1200.00"
    assert payload["mirror"]["auto_recurring"]["amount"] == "1200.00"
    assert payload["error"] is None
    assert use_case.commands[0].plan_id is None
    assert use_case.commands[0].enable_remote is True

    app.dependency_overrides.clear()


def test_update_plan_passes_path_id():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.put(f"/v1/plans/{PLAN_ID}", json=PLAN_BODY)

    assert response.status_code == 200
    assert response.json()["plan"]["id"] == PLAN_ID
    assert use_case.commands[0].plan_id == PLAN_ID

    app.dependency_overrides.clear()


def test_update_plan_rejects_malformed_id_before_use_case():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.put("/v1/plans/abc", json=PLAN_BODY)

    assert response.status_code == 422
    assert use_case.commands == []

    app.dependency_overrides.clear()


def test_resync_rejects_malformed_id_before_use_case():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.post("/v1/plans/abc/resync")

    assert response.status_code == 422
    assert use_case.resyncs == []

    app.dependency_overrides.clear()


def test_list_plans_forwards_inactive_flag():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.get("/v1/plans?include_inactive=true")

    assert response.status_code == 200
    assert [plan["id"] for plan in response.json()] == ["plan-1", "plan-2"]
    assert response.json()[1]["is_active"] is False
    assert use_case.listed is True

    app.dependency_overrides.clear()


def test_delete_plan_retires_instead_of_removing():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.delete(f"/v1/plans/{PLAN_ID}")

    assert response.status_code == 200
    assert response.json()["plan"]["is_active"] is False
    assert use_case.retired == PLAN_ID

    app.dependency_overrides.clear()


def test_create_plan_maps_validation_error_to_422():
    client = _client(
        get_sync_plan_use_case,
        lambda: FakeSyncPlanUseCase(error=PlanValidationError("name too short")),
    )

    response = client.post("/v1/plans", json=PLAN_BODY)

    assert response.status_code == 422
    assert response.json()["detail"] == {"kind": "validation_error", "message": "name too short"}

    app.dependency_overrides.clear()


def test_create_plan_maps_unreachable_to_503():
    client = _client(
        get_sync_plan_use_case,
        lambda: FakeSyncPlanUseCase(error=ProcessorUnreachableError("timed out")),
    )

    response = client.post("/v1/plans", json=PLAN_BODY)

    assert response.status_code == 503

    app.dependency_overrides.clear()


def test_sync_state_returns_tagged_state():
    client = _client(get_sync_plan_use_case, lambda: FakeSyncPlanUseCase())

    response = client.get(f"/v1/plans/{PLAN_ID}/sync-state")

    assert response.status_code == 200
    assert response.json()["state"] == {"tag": "stale", "error": "boom", "attempts": 2}

    app.dependency_overrides.clear()


def test_sync_state_maps_not_found_to_404():
    client = _client(get_sync_plan_use_case, lambda: FakeSyncPlanUseCase(error=PlanNotFoundError("Plan not found.")))

    response = client.get(f"/v1/plans/{PLAN_ID}/sync-state")

    assert response.status_code == 404

    app.dependency_overrides.clear()


def test_resync_forwards_force_flag_and_reports_error():
    use_case = FakeSyncPlanUseCase()
    client = _client(get_sync_plan_use_case, lambda: use_case)

    response = client.post(f"/v1/plans/{PLAN_ID}/resync?force=true")

    assert response.status_code == 200
    assert response.json()["error"] == {"kind": "processor_unreachable", "message": "timed out"}
    assert use_case.resyncs == [(PLAN_ID, True)]

    app.dependency_overrides.clear()


def test_resync_exhausted_maps_to_409():
    client = _client(
        get_sync_plan_use_case,
        lambda: FakeSyncPlanUseCase(error=ResyncExhaustedError("failed 5 times")),
    )

    response = client.post(f"/v1/plans/{PLAN_ID}/resync")

    assert response.status_code == 409

    app.dependency_overrides.clear()


def test_create_subscription_maps_unsynced_plan_to_422():
    client = _client(get_create_subscription_use_case, lambda: FakeCreateSubscriptionUseCase())

    response = client.post(
        "/v1/subscriptions",
        json={"user_id": "user-1", "plan_id": PLAN_ID, "payer_email": "a@b.com"},
    )

    assert response.status_code == 422

    app.dependency_overrides.clear()


def test_webhook_forwards_headers_and_reports_outcome():
    use_case = FakeWebhookUseCase()
    client = _client(get_apply_remote_status_update_use_case, lambda: use_case)

    response = client.post(
        "/v1/billing/webhook",
        json={"type": "subscription_preapproval", "data": {"id": "sub-1"}},
        headers={"x-signature": "ts=1,v1=abc", "x-request-id": "req-1"},
    )

    assert response.status_code == 200
    assert response.json() == {"handled": True, "remote_id": "sub-1", "outcome": "applied", "error": None}
    assert use_case.commands[0].signature == "ts=1,v1=abc"
    assert use_case.commands[0].request_id == "req-1"

    app.dependency_overrides.clear()


def test_webhook_replies_200_when_processing_fails():
    client = _client(
        get_apply_remote_status_update_use_case,
        lambda: FakeWebhookUseCase(
            error=InvalidWebhookSignatureError("Invalid processor webhook signature.")
        ),
    )

    response = client.post("/v1/billing/webhook", json={"data": {"id": "sub-1"}})

    assert response.status_code == 200
    assert response.json()["handled"] is False
    assert response.json()["error"] == "invalid_webhook_signature"

    app.dependency_overrides.clear()


def test_webhook_rejects_non_json_body():
    client = _client(get_apply_remote_status_update_use_case, lambda: FakeWebhookUseCase())

    response = client.post("/v1/billing/webhook", content=b"not json")

    assert response.status_code == 400

    app.dependency_overrides.clear()


def test_get_subscription_returns_local_row():
    subscription = Subscription(
        id=SUBSCRIPTION_ID,
        user_id="user-1",
        plan_id=PLAN_ID,
        payer_email="a@b.com",
        status="authorized",
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    use_case = FakeGetSubscriptionUseCase(SubscriptionDetailsOutput(subscription=subscription, mirror=None))
    client = _client(get_subscription_use_case, lambda: use_case)

    response = client.get(f"/v1/subscriptions/{SUBSCRIPTION_ID}")

    assert response.status_code == 200
    assert response.json()["subscription"]["status"] == "authorized"
    assert response.json()["mirror"] is None
    assert use_case.requested == [SUBSCRIPTION_ID]

    app.dependency_overrides.clear()


def test_get_subscription_maps_missing_to_404():
    client = _client(get_subscription_use_case, lambda: FakeGetSubscriptionUseCase())

    response = client.get(f"/v1/subscriptions/{SUBSCRIPTION_ID}")

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "subscription_not_found"

    app.dependency_overrides.clear()


def test_orphan_webhook_retry_does_not_stall_other_requests(store, processor, fast_retry):
    use_case = ApplyRemoteStatusUpdateUseCase(
        store=store,
        processor=processor,
        retry_policy=fast_retry,
        orphan_retry_delay_seconds=0.5,
    )
    app.dependency_overrides[get_apply_remote_status_update_use_case] = lambda: use_case
    orphan = {
        "id": "sub-9",
        "preapproval_plan_id": "mp-1",
        "payer_id": 77,
        "status": "authorized",
        "date_created": "2026-01-10T12:00:00Z",
        "last_modified": "2026-01-10T13:00:00Z",
    }

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:

            async def timed_health():
                await asyncio.sleep(0.05)
                started = time.perf_counter()
                response = await client.get("/health")
                return response, time.perf_counter() - started

            return await asyncio.gather(client.post("/v1/billing/webhook", json=orphan), timed_health())

    webhook, (health, health_latency) = asyncio.run(scenario())

    assert webhook.json()["outcome"] == "orphan_dropped"
    assert health.status_code == 200
    assert health_latency < 0.25

    app.dependency_overrides.clear()


def test_health():
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
