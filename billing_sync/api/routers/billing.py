from __future__ import annotations

import json
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from billing_sync.api.deps import (
    get_apply_remote_status_update_use_case,
    get_create_subscription_use_case,
    get_subscription_use_case,
)
from billing_sync.api.errors import to_http_exception
from billing_sync.api.schemas.billing import (
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    MirrorSubscriptionResponse,
    ProcessorWebhookResponse,
    SubscriptionDetailsResponse,
    SubscriptionResponse,
)
from billing_sync.application.dto.billing import CreateSubscriptionInput, ProcessorWebhookInput
from billing_sync.application.use_cases.apply_remote_status_update import ApplyRemoteStatusUpdateUseCase
from billing_sync.application.use_cases.create_subscription import CreateSubscriptionUseCase
from billing_sync.application.use_cases.get_subscription import GetSubscriptionUseCase
from billing_sync.domain.entities.mirror import MirrorSubscription
from billing_sync.domain.entities.subscription import Subscription
from billing_sync.domain.exceptions import BillingSyncError


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/v1/subscriptions", response_model=CreateSubscriptionResponse, status_code=201)
def create_subscription(
    req: CreateSubscriptionRequest,
    use_case: CreateSubscriptionUseCase = Depends(get_create_subscription_use_case),
):
    try:
        output = use_case.execute(
            CreateSubscriptionInput(
                user_id=req.user_id,
                plan_id=str(req.plan_id),
                payer_email=req.payer_email,
            )
        )
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc

    return CreateSubscriptionResponse(
        subscription=_to_subscription_response(output.subscription),
        mirror=_to_mirror_response(output.mirror),
    )


@router.get("/v1/subscriptions/{subscription_id}", response_model=SubscriptionDetailsResponse)
def get_subscription(
    subscription_id: UUID,
    use_case: GetSubscriptionUseCase = Depends(get_subscription_use_case),
):
    try:
        output = use_case.execute(str(subscription_id))
    except BillingSyncError as exc:
        raise to_http_exception(exc) from exc

    mirror = None
    if output.mirror is not None:
        mirror = _to_mirror_response(output.mirror)
    return SubscriptionDetailsResponse(
        subscription=_to_subscription_response(output.subscription),
        mirror=mirror,
    )


@router.post("/v1/billing/webhook", response_model=ProcessorWebhookResponse)
async def processor_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="x-signature"),
    x_request_id: str | None = Header(None, alias="x-request-id"),
    use_case: ApplyRemoteStatusUpdateUseCase = Depends(get_apply_remote_status_update_use_case),
):
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object.")

    # The processor retries every non-2xx reply; failures are logged, not bounced.
    try:
        output = await run_in_threadpool(
            use_case.execute,
            ProcessorWebhookInput(
                payload=payload,
                signature=x_signature,
                request_id=x_request_id,
            ),
        )
    except BillingSyncError as exc:
        logger.warning(
            "processor_webhook: failed kind=%s error=%s type=%s",
            exc.kind,
            exc.message,
            payload.get("type"),
        )
        return ProcessorWebhookResponse(handled=False, error=exc.kind)

    if output is None:
        return ProcessorWebhookResponse(handled=False)
    return ProcessorWebhookResponse(handled=True, remote_id=output.remote_id, outcome=output.outcome)


def _to_subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        user_id=subscription.user_id,
        plan_id=subscription.plan_id,
        payer_email=subscription.payer_email,
        status=subscription.status,
    )


def _to_mirror_response(mirror: MirrorSubscription) -> MirrorSubscriptionResponse:
    return MirrorSubscriptionResponse(
        id=mirror.id,
        mirror_plan_id=mirror.mirror_plan_id,
        payer_id=mirror.payer_id,
        status=mirror.status,
        init_point=mirror.init_point,
        next_payment_date=mirror.next_payment_date,
        last_event_at=mirror.last_event_at,
    )
