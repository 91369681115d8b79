from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Mapping

from billing_sync.domain.entities.mirror import AutoRecurring, MirrorPlan, MirrorSubscription
from billing_sync.domain.entities.plan import Plan
from billing_sync.domain.entities.subscription import Subscription


def _as_str(value: Any) -> str:
    return str(value)


def _as_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def map_row_to_plan(row: Mapping[str, Any]) -> Plan:
    return Plan(
        id=_as_str(row["id"]),
        name=row["name"],
        description=row["description"],
        price=Decimal(row["price"]),
        duration_value=int(row["duration_value"]),
        duration_unit=row["duration_unit"],
        installments=int(row["installments"]),
        installment_price=Decimal(row["installment_price"]),
        is_active=bool(row["is_active"]),
        support_level=row["support_level"],
        features=tuple(_as_json(row.get("features")) or ()),
        position=int(row["position"]) if row.get("position") is not None else None,
        remote_enabled=bool(row["remote_enabled"]),
        mirror_status=row["mirror_status"],
        mirror_error=row.get("mirror_error"),
        mirror_sync_attempts=int(row["mirror_sync_attempts"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def map_row_to_mirror_plan(row: Mapping[str, Any]) -> MirrorPlan:
    return MirrorPlan(
        id=_as_str(row["id"]),
        plan_id=_as_str(row["plan_id"]),
        reason=row["reason"],
        status=row["status"],
        init_point=row.get("init_point"),
        auto_recurring=AutoRecurring(
            frequency=int(row["frequency"]),
            frequency_type=row["frequency_type"],
            amount=Decimal(row["amount"]),
            repetitions=int(row["repetitions"]),
            currency_id=row["currency_id"],
        ),
        raw_payload=_as_json(row["raw_payload"]) or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def map_row_to_subscription(row: Mapping[str, Any]) -> Subscription:
    return Subscription(
        id=_as_str(row["id"]),
        user_id=_as_str(row["user_id"]),
        plan_id=_as_str(row["plan_id"]),
        payer_email=row["payer_email"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def map_row_to_mirror_subscription(row: Mapping[str, Any]) -> MirrorSubscription:
    return MirrorSubscription(
        id=_as_str(row["id"]),
        subscription_id=_as_str(row["subscription_id"]),
        mirror_plan_id=row.get("mirror_plan_id"),
        payer_id=row.get("payer_id"),
        status=row["status"],
        date_created=row.get("date_created"),
        next_payment_date=row.get("next_payment_date"),
        init_point=row.get("init_point"),
        last_event_at=row.get("last_event_at"),
        raw_payload=_as_json(row["raw_payload"]) or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
