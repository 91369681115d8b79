from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from billing_sync.domain.entities.plan import PlanFields
from billing_sync.domain.exceptions import PlanValidationError


CENTS = Decimal("0.01")
DURATION_UNITS = ("days", "months")
SUPPORT_LEVELS = ("basic", "standard", "premium")


def derive_installment_price(price: Decimal, installments: int) -> Decimal:
    if installments < 1:
        raise PlanValidationError("installments must be >= 1.")
    if installments == 1:
        return Decimal(price)
    return (Decimal(price) / Decimal(installments)).quantize(CENTS, rounding=ROUND_HALF_UP)


def build_plan_fields(
    *,
    name: str,
    description: str,
    price: Decimal,
    duration_value: int,
    duration_unit: str,
    installments: int,
    is_active: bool,
    support_level: str,
    features: tuple[str, ...] | list[str] = (),
    position: int | None = None,
) -> PlanFields:
    name = (name or "").strip()
    if not 3 <= len(name) <= 100:
        raise PlanValidationError("name must have between 3 and 100 characters.")
    if not (description or "").strip():
        raise PlanValidationError("description must not be empty.")
    if price is None or Decimal(price) < 0:
        raise PlanValidationError("price must be >= 0.")
    if duration_value < 1:
        raise PlanValidationError("duration_value must be >= 1.")
    if duration_unit not in DURATION_UNITS:
        raise PlanValidationError("duration_unit must be 'days' or 'months'.")
    if installments < 1:
        raise PlanValidationError("installments must be >= 1.")
    if duration_value % installments != 0:
        raise PlanValidationError("duration_value must be divisible by installments.")
    if support_level not in SUPPORT_LEVELS:
        raise PlanValidationError("support_level must be 'basic', 'standard' or 'premium'.")

    price = Decimal(price).quantize(CENTS, rounding=ROUND_HALF_UP)
    return PlanFields(
        name=name,
        description=description.strip(),
        price=price,
        duration_value=duration_value,
        duration_unit=duration_unit,  # type: ignore[arg-type]
        installments=installments,
        installment_price=derive_installment_price(price, installments),
        is_active=is_active,
        support_level=support_level,  # type: ignore[arg-type]
        features=tuple(features),
        position=position,
    )
