from __future__ import annotations

from billing_sync.domain.entities.mirror import AutoRecurring
from billing_sync.domain.entities.plan import PlanSnapshot
from billing_sync.domain.services.plan_pricing import CENTS


def build_auto_recurring(snapshot: PlanSnapshot, *, currency_id: str) -> AutoRecurring:
    # Plan duration covers every installment; each charge spans one slice of it.
    frequency = snapshot.duration_value // snapshot.installments
    frequency_type = "days" if snapshot.duration_unit == "days" else "months"
    return AutoRecurring(
        frequency=frequency,
        frequency_type=frequency_type,
        amount=snapshot.installment_price.quantize(CENTS),
        repetitions=snapshot.installments,
        currency_id=currency_id,
    )


def auto_recurring_matches(auto_recurring: AutoRecurring, snapshot: PlanSnapshot) -> bool:
    expected = build_auto_recurring(snapshot, currency_id=auto_recurring.currency_id)
    return expected == auto_recurring
