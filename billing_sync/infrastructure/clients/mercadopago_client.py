from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import hashlib
import hmac
import logging
from typing import Any

import httpx

from billing_sync.application.ports.processor_port import ProcessorPort
from billing_sync.domain.entities.mirror import AutoRecurring, RemotePlan, RemoteSubscription
from billing_sync.domain.entities.plan import PlanSnapshot
from billing_sync.domain.entities.subscription import SubscriptionSnapshot
from billing_sync.domain.exceptions import (
    InvalidWebhookSignatureError,
    ProcessorRejectedError,
    ProcessorUnreachableError,
)
from billing_sync.domain.services.auto_recurring import build_auto_recurring
from billing_sync.domain.services.plan_pricing import CENTS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MercadoPagoClientSettings:
    api_base: str
    access_token: str
    back_url: str
    currency_id: str
    timeout_seconds: float
    webhook_secret: str = ""


class MercadoPagoClient(ProcessorPort):
    def __init__(self, settings: MercadoPagoClientSettings, *, transport: httpx.BaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    @property
    def timeout_seconds(self) -> float:
        return self._settings.timeout_seconds

    def create_remote_plan(self, *, snapshot: PlanSnapshot, idempotency_key: str) -> RemotePlan:
        payload = self._request(
            "POST",
            "/preapproval_plan",
            body=self._plan_body(snapshot),
            idempotency_key=idempotency_key,
        )
        return self._to_remote_plan(payload)

    def update_remote_plan(self, *, remote_id: str, snapshot: PlanSnapshot) -> RemotePlan:
        payload = self._request(
            "PUT",
            f"/preapproval_plan/{remote_id}",
            body=self._plan_body(snapshot),
        )
        return self._to_remote_plan(payload)

    def create_remote_subscription(
        self,
        *,
        snapshot: SubscriptionSnapshot,
        idempotency_key: str,
    ) -> RemoteSubscription:
        payload = self._request(
            "POST",
            "/preapproval",
            body={
                "preapproval_plan_id": snapshot.mirror_plan_id,
                "reason": snapshot.reason,
                "payer_email": snapshot.payer_email,
                "external_reference": snapshot.subscription_id,
                "back_url": self._settings.back_url,
                "status": "pending",
            },
            idempotency_key=idempotency_key,
        )
        return self.parse_subscription_payload(payload)

    def get_remote_subscription(self, *, remote_id: str) -> RemoteSubscription:
        payload = self._request("GET", f"/preapproval/{remote_id}")
        return self.parse_subscription_payload(payload)

    def parse_subscription_payload(self, payload: dict[str, Any]) -> RemoteSubscription:
        remote_id = payload.get("id")
        status = payload.get("status")
        if not remote_id or not status:
            raise ProcessorRejectedError("Processor subscription payload is missing id or status.")
        payer_id = payload.get("payer_id")
        return RemoteSubscription(
            id=str(remote_id),
            mirror_plan_id=_str_or_none(payload.get("preapproval_plan_id")),
            payer_id=str(payer_id) if payer_id is not None else None,
            status=str(status),
            date_created=_to_datetime(payload.get("date_created")),
            last_modified=_to_datetime(payload.get("last_modified")),
            next_payment_date=_to_datetime(payload.get("next_payment_date")),
            init_point=_str_or_none(payload.get("init_point")),
            raw_payload=dict(payload),
        )

    def verify_webhook(self, *, signature: str | None, request_id: str | None, data_id: str) -> None:
        secret = self._settings.webhook_secret
        if not secret:
            return
        if not signature:
            raise InvalidWebhookSignatureError("Missing x-signature header.")

        parts = dict(
            part.strip().split("=", 1)
            for part in signature.split(",")
            if "=" in part
        )
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            raise InvalidWebhookSignatureError("Malformed x-signature header.")

        manifest = f"id:{data_id.lower()};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"
        expected = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, received):
            raise InvalidWebhookSignatureError("Invalid processor webhook signature.")

    def _plan_body(self, snapshot: PlanSnapshot) -> dict:
        auto_recurring = build_auto_recurring(snapshot, currency_id=self._settings.currency_id)
        return {
            "reason": snapshot.name,
            "auto_recurring": {
                "frequency": auto_recurring.frequency,
                "frequency_type": auto_recurring.frequency_type,
                "repetitions": auto_recurring.repetitions,
                "transaction_amount": float(auto_recurring.amount),
                "currency_id": auto_recurring.currency_id,
            },
            "back_url": self._settings.back_url,
        }

    def _to_remote_plan(self, payload: dict) -> RemotePlan:
        remote_id = payload.get("id")
        if not remote_id:
            raise ProcessorRejectedError("Processor plan response is missing id.")

        recurring = payload.get("auto_recurring") or {}
        try:
            amount = Decimal(str(recurring.get("transaction_amount"))).quantize(CENTS)
            auto_recurring = AutoRecurring(
                frequency=int(recurring.get("frequency")),
                frequency_type=str(recurring.get("frequency_type")),  # type: ignore[arg-type]
                amount=amount,
                repetitions=int(recurring.get("repetitions") or 0),
                currency_id=str(recurring.get("currency_id") or self._settings.currency_id),
            )
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise ProcessorRejectedError(f"Processor plan {remote_id} has malformed auto_recurring.") from exc

        return RemotePlan(
            id=str(remote_id),
            reason=str(payload.get("reason") or ""),
            status=str(payload.get("status") or "active"),
            init_point=_str_or_none(payload.get("init_point")),
            auto_recurring=auto_recurring,
            raw_payload=dict(payload),
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        headers = {"Authorization": f"Bearer {self._settings.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        try:
            with httpx.Client(
                base_url=self._settings.api_base,
                timeout=self._settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProcessorUnreachableError(f"{method} {path} timed out.") from exc
        except httpx.TransportError as exc:
            raise ProcessorUnreachableError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProcessorUnreachableError(f"{method} {path} returned {response.status_code}.")
        if response.status_code >= 400:
            logger.warning(
                "mercadopago_client: rejected method=%s path=%s status=%s body=%s",
                method,
                path,
                response.status_code,
                response.text[:500],
            )
            raise ProcessorRejectedError(_error_message(response))

        try:
            payload = response.json()
        except ValueError as exc:
            # The call may have landed; idempotency keys make a retry safe.
            raise ProcessorUnreachableError(f"{method} {path} returned a non-JSON body.") from exc
        if not isinstance(payload, dict):
            raise ProcessorRejectedError(f"{method} {path} returned an unexpected body.")
        return payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Processor returned {response.status_code}."
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return f"Processor returned {response.status_code}: {message}"
    return f"Processor returned {response.status_code}."


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _to_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
