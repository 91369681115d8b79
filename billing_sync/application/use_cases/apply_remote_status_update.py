from __future__ import annotations

import logging
import time
from typing import Any

from billing_sync.application.dto.billing import ProcessorWebhookInput, RemoteStatusUpdateOutput
from billing_sync.application.ports.billing_store_port import BillingStorePort
from billing_sync.application.ports.processor_port import ProcessorPort
from billing_sync.application.retry import RetryPolicy, call_with_retry
from billing_sync.domain.entities.mirror import MirrorSubscription, RemoteSubscription
from billing_sync.domain.exceptions import OrphanWebhookError, PlanValidationError

from .sync_common import utcnow


logger = logging.getLogger(__name__)

SUBSCRIPTION_NOTIFICATION_TYPES = {"subscription_preapproval", "preapproval"}


class ApplyRemoteStatusUpdateUseCase:
    def __init__(
        self,
        *,
        store: BillingStorePort,
        processor: ProcessorPort,
        retry_policy: RetryPolicy,
        orphan_retry_delay_seconds: float,
    ):
        self._store = store
        self._processor = processor
        self._retry_policy = retry_policy
        self._orphan_retry_delay_seconds = orphan_retry_delay_seconds

    def execute(self, command: ProcessorWebhookInput) -> RemoteStatusUpdateOutput | None:
        payload = command.payload
        data_id = _notification_data_id(payload)
        if not data_id:
            raise PlanValidationError("Webhook payload is missing the resource id.")

        self._processor.verify_webhook(
            signature=command.signature,
            request_id=command.request_id,
            data_id=data_id,
        )

        if "status" not in payload:
            notification_type = str(payload.get("type") or "")
            if notification_type not in SUBSCRIPTION_NOTIFICATION_TYPES:
                logger.info(
                    "processor_webhook: ignored type=%s action=%s data_id=%s",
                    notification_type,
                    payload.get("action"),
                    data_id,
                )
                return None
            remote = call_with_retry(
                lambda: self._processor.get_remote_subscription(remote_id=data_id),
                policy=self._retry_policy,
                operation="get_remote_subscription",
                context=f"remote_id={data_id}",
            )
            payload = remote.raw_payload

        return self.apply_remote_status_update(data_id, payload)

    def apply_remote_status_update(self, remote_id: str, payload: dict[str, Any]) -> RemoteStatusUpdateOutput:
        incoming = self._processor.parse_subscription_payload(payload)
        if incoming.id != remote_id:
            raise PlanValidationError("Webhook payload id does not match the notified resource.")

        try:
            return self._apply_once(incoming)
        except OrphanWebhookError as exc:
            # Creation may not have committed yet; give it one more chance.
            logger.info(
                "processor_webhook: orphan_retry remote_id=%s delay=%.2f error=%s",
                remote_id,
                self._orphan_retry_delay_seconds,
                exc.message,
            )
        time.sleep(self._orphan_retry_delay_seconds)

        try:
            return self._apply_once(incoming)
        except OrphanWebhookError as exc:
            logger.error(
                "processor_webhook: orphan_dropped alert=orphan_webhook remote_id=%s status=%s error=%s",
                remote_id,
                incoming.status,
                exc.message,
            )
            return RemoteStatusUpdateOutput(remote_id=remote_id, outcome="orphan_dropped", mirror=None)

    def _apply_once(self, incoming: RemoteSubscription) -> RemoteStatusUpdateOutput:
        with self._store.transaction() as tx:
            current = tx.lock_mirror_subscription(remote_id=incoming.id)
            if current is None:
                raise OrphanWebhookError(f"No mirror subscription for remote id {incoming.id}.")

            marker = incoming.last_modified or incoming.date_created
            if _is_older(marker, current.last_event_at):
                logger.info(
                    "processor_webhook: stale_ignored remote_id=%s marker=%s stored=%s",
                    incoming.id,
                    marker,
                    current.last_event_at,
                )
                return RemoteStatusUpdateOutput(remote_id=incoming.id, outcome="stale_ignored", mirror=current)
            if marker == current.last_event_at and _same_content(current, incoming):
                logger.info("processor_webhook: duplicate_ignored remote_id=%s", incoming.id)
                return RemoteStatusUpdateOutput(remote_id=incoming.id, outcome="duplicate_ignored", mirror=current)

            now = utcnow()
            mirror = tx.update_mirror_subscription(
                remote=incoming,
                last_event_at=marker or current.last_event_at,
                now=now,
            )
            tx.update_subscription_status(
                subscription_id=current.subscription_id,
                status=incoming.status,
                now=now,
            )

        logger.info(
            "processor_webhook: applied remote_id=%s status=%s->%s",
            incoming.id,
            current.status,
            mirror.status,
        )
        return RemoteStatusUpdateOutput(remote_id=incoming.id, outcome="applied", mirror=mirror)


def _notification_data_id(payload: dict[str, Any]) -> str | None:
    data = payload.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    if payload.get("id") and "status" in payload:
        return str(payload["id"])
    return None


def _is_older(marker, stored) -> bool:
    if stored is None:
        return False
    # Without a marker the push cannot be ordered against what is stored.
    if marker is None:
        return True
    return marker < stored


def _same_content(current: MirrorSubscription, incoming: RemoteSubscription) -> bool:
    return (
        current.status == incoming.status
        and current.next_payment_date == incoming.next_payment_date
        and current.payer_id == incoming.payer_id
        and current.raw_payload == incoming.raw_payload
    )
