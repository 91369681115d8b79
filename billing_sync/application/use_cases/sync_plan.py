from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable
from uuid import uuid4

from billing_sync.application.dto.plan_sync import (
    PlanSyncInput,
    PlanSyncOutput,
    PlanSyncStateOutput,
    SyncErrorInfo,
)
from billing_sync.application.ports.billing_store_port import BillingStorePort, BillingTransaction
from billing_sync.application.ports.processor_port import ProcessorPort
from billing_sync.application.retry import RetryPolicy, call_with_retry
from billing_sync.domain.entities.mirror import MirrorPlan, RemotePlan
from billing_sync.domain.entities.plan import MirrorStatus, Plan, PlanFields, snapshot_of
from billing_sync.domain.entities.sync_state import mirror_state_of
from billing_sync.domain.exceptions import (
    BillingSyncError,
    PlanLockTimeoutError,
    PlanNotFoundError,
    PlanValidationError,
    ProcessorRejectedError,
    ProcessorUnreachableError,
    ResyncExhaustedError,
)
from billing_sync.domain.services.auto_recurring import auto_recurring_matches
from billing_sync.domain.services.plan_pricing import build_plan_fields

from .sync_common import describe_error, plan_idempotency_key, utcnow


logger = logging.getLogger(__name__)


class SyncPlanUseCase:
    def __init__(
        self,
        *,
        store: BillingStorePort,
        processor: ProcessorPort,
        retry_policy: RetryPolicy,
        lock_budget_seconds: float,
        max_resync_attempts: int,
        id_factory: Callable[[], str] | None = None,
    ):
        envelope = retry_policy.max_elapsed_seconds(call_timeout_seconds=processor.timeout_seconds)
        if envelope >= lock_budget_seconds:
            raise ValueError(
                "Processor retry envelope "
                f"({envelope:.2f}s) must be shorter than the plan lock budget ({lock_budget_seconds:.2f}s)."
            )
        self._store = store
        self._processor = processor
        self._retry_policy = retry_policy
        self._max_resync_attempts = max_resync_attempts
        self._id_factory = id_factory or (lambda: str(uuid4()))

    def create_or_update_plan(self, command: PlanSyncInput) -> PlanSyncOutput:
        fields = build_plan_fields(
            name=command.name,
            description=command.description,
            price=command.price,
            duration_value=command.duration_value,
            duration_unit=command.duration_unit,
            installments=command.installments,
            is_active=command.is_active,
            support_level=command.support_level,
            features=command.features,
            position=command.position,
        )
        if command.plan_id is None:
            return self._create(fields, enable_remote=command.enable_remote)
        return self._update(command.plan_id, fields, enable_remote=command.enable_remote)

    def resync_mirror(self, plan_id: str, *, force: bool = False) -> PlanSyncOutput:
        plan = self._store.get_plan(plan_id=plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found.")
        if not plan.remote_enabled:
            raise PlanValidationError("Plan is not flagged for remote billing.")
        if not force and plan.mirror_sync_attempts >= self._max_resync_attempts:
            raise ResyncExhaustedError(
                f"Mirror sync failed {plan.mirror_sync_attempts} times; use force to retry."
            )

        logger.info(
            "sync_plan: resync_requested plan_id=%s status=%s attempts=%s force=%s",
            plan_id,
            plan.mirror_status,
            plan.mirror_sync_attempts,
            force,
        )
        return self._sync_mirror(plan_id, plan_updated=False)

    def get_plan_sync_state(self, plan_id: str) -> PlanSyncStateOutput:
        plan = self._store.get_plan(plan_id=plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found.")
        mirror = self._store.get_mirror_plan(plan_id=plan_id)
        return PlanSyncStateOutput(plan=plan, mirror=mirror, state=mirror_state_of(plan, mirror))

    def list_plans(self, *, include_inactive: bool = False) -> list[Plan]:
        return self._store.list_plans(include_inactive=include_inactive)

    def retire_plan(self, plan_id: str) -> PlanSyncOutput:
        plan = self._store.get_plan(plan_id=plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found.")

        logger.info("sync_plan: retire_requested plan_id=%s remote_enabled=%s", plan_id, plan.remote_enabled)
        return self.create_or_update_plan(
            PlanSyncInput(
                name=plan.name,
                description=plan.description,
                price=plan.price,
                duration_value=plan.duration_value,
                duration_unit=plan.duration_unit,
                installments=plan.installments,
                is_active=False,
                support_level=plan.support_level,
                enable_remote=plan.remote_enabled,
                features=plan.features,
                position=plan.position,
                plan_id=plan_id,
            )
        )

    def _create(self, fields: PlanFields, *, enable_remote: bool) -> PlanSyncOutput:
        plan_id = self._id_factory()
        now = utcnow()
        try:
            with self._store.transaction() as tx:
                plan = tx.insert_plan(
                    plan_id=plan_id,
                    fields=fields,
                    remote_enabled=enable_remote,
                    now=now,
                )
                if not enable_remote:
                    logger.info("sync_plan: created_local_only plan_id=%s", plan_id)
                    return PlanSyncOutput(plan=plan, mirror=None, mirror_synced=False, plan_updated=True)

                snapshot = snapshot_of(plan)
                remote = call_with_retry(
                    lambda: self._processor.create_remote_plan(
                        snapshot=snapshot,
                        idempotency_key=plan_idempotency_key(snapshot),
                    ),
                    policy=self._retry_policy,
                    operation="create_remote_plan",
                    context=f"plan_id={plan_id}",
                )
                _ensure_terms_match(remote, plan)
                mirror = tx.insert_mirror_plan(plan_id=plan_id, remote=remote, now=now)
                plan = tx.mark_mirror_synced(plan_id=plan_id, now=now)
        except (ProcessorUnreachableError, ProcessorRejectedError) as exc:
            logger.warning(
                "sync_plan: create_rolled_back plan_id=%s kind=%s error=%s",
                plan_id,
                exc.kind,
                exc.message,
            )
            raise

        logger.info("sync_plan: created plan_id=%s mirror_id=%s", plan_id, mirror.id)
        return PlanSyncOutput(plan=plan, mirror=mirror, mirror_synced=True, plan_updated=True)

    def _update(self, plan_id: str, fields: PlanFields, *, enable_remote: bool) -> PlanSyncOutput:
        now = utcnow()
        with self._store.transaction() as tx:
            current = tx.lock_plan(plan_id=plan_id)
            if current is None:
                raise PlanNotFoundError("Plan not found.")
            plan = tx.update_plan(
                plan_id=plan_id,
                fields=fields,
                remote_enabled=current.remote_enabled or enable_remote,
                mirror_status=_status_after_local_update(current, enable_remote=enable_remote),
                now=now,
            )
        logger.info(
            "sync_plan: updated_local plan_id=%s installment_price=%s mirror_status=%s",
            plan_id,
            plan.installment_price,
            plan.mirror_status,
        )

        if not enable_remote:
            mirror = self._store.get_mirror_plan(plan_id=plan_id)
            return PlanSyncOutput(plan=plan, mirror=mirror, mirror_synced=False, plan_updated=True)
        return self._sync_mirror(plan_id, plan_updated=True)

    def _sync_mirror(self, plan_id: str, *, plan_updated: bool) -> PlanSyncOutput:
        failure: BillingSyncError | None = None
        try:
            with self._store.transaction() as tx:
                plan = tx.lock_plan(plan_id=plan_id)
                if plan is None:
                    raise PlanNotFoundError("Plan not found.")
                # Existence must be re-read under the lock; a concurrent writer may have created it.
                mirror = tx.get_mirror_plan(plan_id=plan_id)
                now = utcnow()
                try:
                    remote = self._push_plan(plan, mirror)
                    _ensure_same_remote(remote, mirror)
                    _ensure_terms_match(remote, plan)
                except (ProcessorUnreachableError, ProcessorRejectedError) as exc:
                    failure = exc
                    plan = tx.mark_mirror_stale(plan_id=plan_id, error=describe_error(exc), now=now)
                else:
                    mirror = _write_mirror(tx, plan_id=plan_id, remote=remote, existing=mirror, now=now)
                    plan = tx.mark_mirror_synced(plan_id=plan_id, now=now)
        except PlanNotFoundError:
            raise
        except BillingSyncError as exc:
            logger.warning(
                "sync_plan: sync_aborted plan_id=%s kind=%s error=%s",
                plan_id,
                exc.kind,
                exc.message,
            )
            return self._abandoned_sync(plan_id, exc, plan_updated=plan_updated)
        except Exception as exc:
            logger.exception("sync_plan: sync_failed plan_id=%s", plan_id)
            self._mark_stale_unless_synced(plan_id, error=f"unexpected_error: {type(exc).__name__}")
            raise

        if failure is not None:
            logger.warning(
                "sync_plan: mirror_stale plan_id=%s kind=%s attempts=%s error=%s",
                plan_id,
                failure.kind,
                plan.mirror_sync_attempts,
                failure.message,
            )
            return PlanSyncOutput(
                plan=plan,
                mirror=mirror,
                mirror_synced=False,
                plan_updated=plan_updated,
                error=SyncErrorInfo(kind=failure.kind, message=failure.message),
            )

        logger.info("sync_plan: mirror_synced plan_id=%s mirror_id=%s", plan_id, mirror.id)
        return PlanSyncOutput(plan=plan, mirror=mirror, mirror_synced=True, plan_updated=plan_updated)

    def _abandoned_sync(self, plan_id: str, exc: BillingSyncError, *, plan_updated: bool) -> PlanSyncOutput:
        try:
            plan = self._mark_stale_unless_synced(plan_id, error=describe_error(exc))
        except PlanLockTimeoutError as lock_exc:
            logger.error(
                "sync_plan: stale_mark_failed alert=plan_left_pending plan_id=%s error=%s",
                plan_id,
                lock_exc.message,
            )
            plan = None
        if plan is None:
            plan = self._store.get_plan(plan_id=plan_id)
            if plan is None:
                raise PlanNotFoundError("Plan not found.") from exc
        return PlanSyncOutput(
            plan=plan,
            mirror=self._store.get_mirror_plan(plan_id=plan_id),
            mirror_synced=False,
            plan_updated=plan_updated,
            error=SyncErrorInfo(kind=exc.kind, message=exc.message),
        )

    def _mark_stale_unless_synced(self, plan_id: str, *, error: str) -> Plan | None:
        # A writer that held the lock may have synced the mirror already.
        with self._store.transaction() as tx:
            plan = tx.mark_mirror_stale_unless_synced(plan_id=plan_id, error=error, now=utcnow())
        if plan is None:
            logger.info("sync_plan: stale_mark_skipped plan_id=%s reason=synced_concurrently", plan_id)
        return plan

    def _push_plan(self, plan: Plan, mirror: MirrorPlan | None) -> RemotePlan:
        snapshot = snapshot_of(plan)
        if mirror is None:
            return call_with_retry(
                lambda: self._processor.create_remote_plan(
                    snapshot=snapshot,
                    idempotency_key=plan_idempotency_key(snapshot),
                ),
                policy=self._retry_policy,
                operation="create_remote_plan",
                context=f"plan_id={plan.id}",
            )
        return call_with_retry(
            lambda: self._processor.update_remote_plan(remote_id=mirror.id, snapshot=snapshot),
            policy=self._retry_policy,
            operation="update_remote_plan",
            context=f"plan_id={plan.id} mirror_id={mirror.id}",
        )


def _status_after_local_update(current: Plan, *, enable_remote: bool) -> MirrorStatus:
    if enable_remote:
        return "pending"
    if current.mirror_status == "absent":
        return "absent"
    # Local change not pushed: the existing mirror no longer matches.
    return "stale"


def _ensure_terms_match(remote: RemotePlan, plan: Plan) -> None:
    if not auto_recurring_matches(remote.auto_recurring, snapshot_of(plan)):
        raise ProcessorRejectedError(
            f"Processor acknowledged plan {remote.id} with terms that differ from the local plan."
        )


def _ensure_same_remote(remote: RemotePlan, mirror: MirrorPlan | None) -> None:
    if mirror is not None and remote.id != mirror.id:
        raise ProcessorRejectedError(
            f"Processor answered the update of plan {mirror.id} with plan {remote.id}."
        )


def _write_mirror(
    tx: BillingTransaction,
    *,
    plan_id: str,
    remote: RemotePlan,
    existing: MirrorPlan | None,
    now: datetime,
) -> MirrorPlan:
    if existing is None:
        return tx.insert_mirror_plan(plan_id=plan_id, remote=remote, now=now)
    return tx.update_mirror_plan(plan_id=plan_id, remote_id=existing.id, remote=remote, now=now)
