from __future__ import annotations

from dataclasses import replace
import logging
from typing import Callable
from uuid import uuid4

from billing_sync.application.dto.billing import CreateSubscriptionInput, CreateSubscriptionOutput
from billing_sync.application.ports.billing_store_port import BillingStorePort
from billing_sync.application.ports.processor_port import ProcessorPort
from billing_sync.application.retry import RetryPolicy, call_with_retry
from billing_sync.domain.entities.subscription import SubscriptionSnapshot
from billing_sync.domain.entities.sync_state import Synced, mirror_state_of
from billing_sync.domain.exceptions import (
    PlanNotFoundError,
    PlanValidationError,
    ProcessorRejectedError,
    ProcessorUnreachableError,
)

from .sync_common import subscription_idempotency_key, utcnow


logger = logging.getLogger(__name__)


class CreateSubscriptionUseCase:
    def __init__(
        self,
        *,
        store: BillingStorePort,
        processor: ProcessorPort,
        retry_policy: RetryPolicy,
        id_factory: Callable[[], str] | None = None,
    ):
        self._store = store
        self._processor = processor
        self._retry_policy = retry_policy
        self._id_factory = id_factory or (lambda: str(uuid4()))

    def execute(self, command: CreateSubscriptionInput) -> CreateSubscriptionOutput:
        payer_email = command.payer_email.strip().lower()
        if "@" not in payer_email:
            raise PlanValidationError("payer_email is invalid.")

        plan = self._store.get_plan(plan_id=command.plan_id)
        if plan is None:
            raise PlanNotFoundError("Plan not found.")
        if not plan.is_active:
            raise PlanValidationError("Plan is not active.")
        state = mirror_state_of(plan, self._store.get_mirror_plan(plan_id=plan.id))
        if not isinstance(state, Synced):
            raise PlanValidationError(f"Plan mirror is {state.tag}; resync the plan before subscribing.")

        subscription_id = self._id_factory()
        now = utcnow()
        snapshot = SubscriptionSnapshot(
            subscription_id=subscription_id,
            mirror_plan_id=state.mirror.id,
            reason=state.mirror.reason,
            payer_email=payer_email,
        )
        try:
            with self._store.transaction() as tx:
                subscription = tx.insert_subscription(
                    subscription_id=subscription_id,
                    user_id=command.user_id,
                    plan_id=plan.id,
                    payer_email=payer_email,
                    status="pending",
                    now=now,
                )
                remote = call_with_retry(
                    lambda: self._processor.create_remote_subscription(
                        snapshot=snapshot,
                        idempotency_key=subscription_idempotency_key(snapshot),
                    ),
                    policy=self._retry_policy,
                    operation="create_remote_subscription",
                    context=f"subscription_id={subscription_id}",
                )
                mirror = tx.insert_mirror_subscription(
                    subscription_id=subscription_id,
                    remote=remote,
                    now=now,
                )
                tx.update_subscription_status(subscription_id=subscription_id, status=remote.status, now=now)
        except (ProcessorUnreachableError, ProcessorRejectedError) as exc:
            logger.warning(
                "create_subscription: rolled_back subscription_id=%s plan_id=%s kind=%s error=%s",
                subscription_id,
                plan.id,
                exc.kind,
                exc.message,
            )
            raise

        logger.info(
            "create_subscription: created subscription_id=%s mirror_id=%s status=%s",
            subscription_id,
            mirror.id,
            mirror.status,
        )
        return CreateSubscriptionOutput(
            subscription=replace(subscription, status=remote.status),
            mirror=mirror,
        )

