from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from billing_sync.api.deps import get_sync_plan_use_case
from billing_sync.api.errors import to_http_exception
from billing_sync.api.schemas.plans import (
    AutoRecurringResponse,
    MirrorPlanResponse,
    MirrorStateResponse,
    PlanResponse,
    PlanSyncResponse,
    PlanSyncStateResponse,
    PlanUpsertRequest,
    SyncErrorResponse,
)
from billing_sync.application.dto.plan_sync import PlanSyncInput, PlanSyncOutput
from billing_sync.application.use_cases.sync_plan import SyncPlanUseCase
from billing_sync.domain.entities.mirror import MirrorPlan
from billing_sync.domain.entities.plan import Plan
from billing_sync.domain.entities.sync_state import MirrorState, Stale
from billing_sync.domain.exceptions import BillingSyncError


router = APIRouter()


@router.post("/v1/plans", response_model=PlanSyncResponse, status_code=201)
def create_plan(
    req: PlanUpsertRequest,
    use_case: SyncPlanUseCase = Depends(get_sync_plan_use_case),
):
    try:
        output = use_case.create_or_update_plan(_to_input(req, plan_id=None))
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc
    return _to_sync_response(output)


@router.get("/v1/plans", response_model=list[PlanResponse])
def list_plans(
    include_inactive: bool = False,
    use_case: SyncPlanUseCase = Depends(get_sync_plan_use_case),
):
    plans = use_case.list_plans(include_inactive=include_inactive)
    return [_to_plan_response(plan) for plan in plans]


@router.put("/v1/plans/{plan_id}", response_model=PlanSyncResponse)
def update_plan(
    plan_id: UUID,
    req: PlanUpsertRequest,
    use_case: SyncPlanUseCase = Depends(get_sync_plan_use_case),
):
    try:
        output = use_case.create_or_update_plan(_to_input(req, plan_id=str(plan_id)))
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc
    return _to_sync_response(output)


@router.delete("/v1/plans/{plan_id}", response_model=PlanSyncResponse)
def retire_plan(
    plan_id: UUID,
    use_case: SyncPlanUseCase = Depends(get_sync_plan_use_case),
):
    try:
        output = use_case.retire_plan(str(plan_id))
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc
    return _to_sync_response(output)


@router.get("/v1/plans/{plan_id}/sync-state", response_model=PlanSyncStateResponse)
def get_plan_sync_state(
    plan_id: UUID,
    use_case: SyncPlanUseCase = Depends(get_sync_plan_use_case),
):
    try:
        output = use_case.get_plan_sync_state(str(plan_id))
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc
    return PlanSyncStateResponse(
        plan=_to_plan_response(output.plan),
        mirror=_to_mirror_response(output.mirror),
        state=_to_state_response(output.state),
    )


@router.post("/v1/plans/{plan_id}/resync", response_model=PlanSyncResponse)
def resync_plan(
    plan_id: UUID,
    force: bool = False,
    use_case: SyncPlanUseCase = Depends(get_sync_plan_use_case),
):
    try:
        output = use_case.resync_mirror(str(plan_id), force=force)
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc
    return _to_sync_response(output)


def _to_input(req: PlanUpsertRequest, *, plan_id: str | None) -> PlanSyncInput:
    return PlanSyncInput(
        name=req.name,
        description=req.description,
        price=req.price,
        duration_value=req.duration_value,
        duration_unit=req.duration_unit,
        installments=req.installments,
        is_active=req.is_active,
        support_level=req.support_level,
        enable_remote=req.enable_remote,
        features=tuple(req.features),
        position=req.position,
        plan_id=plan_id,
    )


def _to_sync_response(output: PlanSyncOutput) -> PlanSyncResponse:
    error = None
    if output.error is not None:
        error = SyncErrorResponse(kind=output.error.kind, message=output.error.message)
    return PlanSyncResponse(
        plan=_to_plan_response(output.plan),
        mirror=_to_mirror_response(output.mirror),
        mirror_synced=output.mirror_synced,
        plan_updated=output.plan_updated,
        error=error,
    )


def _to_plan_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        price=plan.price,
        duration_value=plan.duration_value,
        duration_unit=plan.duration_unit,
        installments=plan.installments,
        installment_price=plan.installment_price,
        is_active=plan.is_active,
        support_level=plan.support_level,
        features=list(plan.features),
        position=plan.position,
        remote_enabled=plan.remote_enabled,
        mirror_status=plan.mirror_status,
        mirror_error=plan.mirror_error,
        mirror_sync_attempts=plan.mirror_sync_attempts,
        created_at=plan.created_at,
        updated_at=plan.updated_at,
    )


def _to_mirror_response(mirror: MirrorPlan | None) -> MirrorPlanResponse | None:
    if mirror is None:
        return None
    recurring = mirror.auto_recurring
    return MirrorPlanResponse(
        id=mirror.id,
        plan_id=mirror.plan_id,
        reason=mirror.reason,
        status=mirror.status,
        init_point=mirror.init_point,
        auto_recurring=AutoRecurringResponse(
            frequency=recurring.frequency,
            frequency_type=recurring.frequency_type,
            amount=recurring.amount,
            repetitions=recurring.repetitions,
            currency_id=recurring.currency_id,
        ),
        updated_at=mirror.updated_at,
    )


def _to_state_response(state: MirrorState) -> MirrorStateResponse:
    if isinstance(state, Stale):
        return MirrorStateResponse(tag=state.tag, error=state.error, attempts=state.attempts)
    return MirrorStateResponse(tag=state.tag)
