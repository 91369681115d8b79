from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException

from billing_sync.application.retry import RetryPolicy
from billing_sync.application.use_cases.apply_remote_status_update import ApplyRemoteStatusUpdateUseCase
from billing_sync.application.use_cases.create_subscription import CreateSubscriptionUseCase
from billing_sync.application.use_cases.get_subscription import GetSubscriptionUseCase
from billing_sync.application.use_cases.sync_plan import SyncPlanUseCase
from billing_sync.infrastructure.clients.mercadopago_client import (
    MercadoPagoClient,
    MercadoPagoClientSettings,
)
from billing_sync.infrastructure.db.engine import get_engine
from billing_sync.infrastructure.db.repositories.billing_repository import SqlBillingRepository
from billing_sync.shared.config import get_settings


def _get_db_engine():
    settings = get_settings()
    if not settings.postgres_dsn:
        raise HTTPException(status_code=500, detail="POSTGRES_DSN is required.")
    return get_engine(settings.postgres_dsn)


@lru_cache(maxsize=1)
def _get_processor_client() -> MercadoPagoClient:
    settings = get_settings()
    if not settings.mp_access_token:
        raise HTTPException(status_code=500, detail="MP_ACCESS_TOKEN is required.")
    return MercadoPagoClient(
        MercadoPagoClientSettings(
            api_base=settings.mp_api_base,
            access_token=settings.mp_access_token,
            back_url=settings.mp_back_url,
            currency_id=settings.mp_currency_id,
            timeout_seconds=settings.mp_timeout_seconds,
            webhook_secret=settings.mp_webhook_secret,
        )
    )


def _get_billing_repository() -> SqlBillingRepository:
    settings = get_settings()
    return SqlBillingRepository(
        _get_db_engine(),
        lock_timeout_seconds=settings.plan_lock_budget_seconds,
    )


def _get_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.sync_retry_max_attempts,
        initial_delay_seconds=settings.sync_retry_initial_delay_seconds,
        max_delay_seconds=settings.sync_retry_max_delay_seconds,
    )


def get_sync_plan_use_case() -> SyncPlanUseCase:
    settings = get_settings()
    try:
        return SyncPlanUseCase(
            store=_get_billing_repository(),
            processor=_get_processor_client(),
            retry_policy=_get_retry_policy(),
            lock_budget_seconds=settings.plan_lock_budget_seconds,
            max_resync_attempts=settings.max_resync_attempts,
        )
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def get_create_subscription_use_case() -> CreateSubscriptionUseCase:
    return CreateSubscriptionUseCase(
        store=_get_billing_repository(),
        processor=_get_processor_client(),
        retry_policy=_get_retry_policy(),
    )


def get_subscription_use_case() -> GetSubscriptionUseCase:
    return GetSubscriptionUseCase(store=_get_billing_repository())


def get_apply_remote_status_update_use_case() -> ApplyRemoteStatusUpdateUseCase:
    settings = get_settings()
    return ApplyRemoteStatusUpdateUseCase(
        store=_get_billing_repository(),
        processor=_get_processor_client(),
        retry_policy=_get_retry_policy(),
        orphan_retry_delay_seconds=settings.orphan_retry_delay_seconds,
    )
