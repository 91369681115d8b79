from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from billing_sync.domain.entities.plan import PlanSnapshot
from billing_sync.domain.entities.subscription import SubscriptionSnapshot
from billing_sync.domain.exceptions import BillingSyncError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def describe_error(exc: BillingSyncError) -> str:
    return f"{exc.kind}: {exc.message}"


def plan_idempotency_key(snapshot: PlanSnapshot) -> str:
    terms = "|".join(
        [
            snapshot.plan_id,
            snapshot.name,
            str(snapshot.installment_price),
            str(snapshot.duration_value),
            snapshot.duration_unit,
            str(snapshot.installments),
        ]
    )
    digest = hashlib.sha256(terms.encode("utf-8")).hexdigest()[:16]
    return f"plan-{snapshot.plan_id}-{digest}"


def subscription_idempotency_key(snapshot: SubscriptionSnapshot) -> str:
    return f"subscription-{snapshot.subscription_id}"
