from __future__ import annotations

from fastapi import HTTPException

from billing_sync.domain.exceptions import (
    BillingSyncError,
    LocalConstraintViolationError,
    PlanLockTimeoutError,
    PlanNotFoundError,
    PlanValidationError,
    ProcessorRejectedError,
    ProcessorUnreachableError,
    ResyncExhaustedError,
    SubscriptionNotFoundError,
)


STATUS_BY_ERROR: tuple[tuple[type[BillingSyncError], int], ...] = (
    (PlanValidationError, 422),
    (PlanNotFoundError, 404),
    (SubscriptionNotFoundError, 404),
    (ProcessorRejectedError, 422),
    (ProcessorUnreachableError, 503),
    (LocalConstraintViolationError, 409),
    (PlanLockTimeoutError, 409),
    (ResyncExhaustedError, 409),
)


def to_http_exception(exc: BillingSyncError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"kind": exc.kind, "message": exc.message})
    return HTTPException(status_code=400, detail={"kind": exc.kind, "message": exc.message})
