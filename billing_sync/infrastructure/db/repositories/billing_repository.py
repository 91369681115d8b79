from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import json
import logging
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from billing_sync.application.ports.billing_store_port import BillingStorePort, BillingTransaction
from billing_sync.domain.entities.mirror import MirrorPlan, MirrorSubscription, RemotePlan, RemoteSubscription
from billing_sync.domain.entities.plan import MirrorStatus, Plan, PlanFields
from billing_sync.domain.entities.subscription import Subscription
from billing_sync.domain.exceptions import LocalConstraintViolationError, PlanLockTimeoutError
from billing_sync.infrastructure.db.mappers.billing_mapper import (
    map_row_to_mirror_plan,
    map_row_to_mirror_subscription,
    map_row_to_plan,
    map_row_to_subscription,
)


logger = logging.getLogger(__name__)

LOCK_NOT_AVAILABLE = "55P03"

PLAN_COLUMNS = """
    id, name, description, price, duration_value, duration_unit, installments,
    installment_price, is_active, support_level, features, position, remote_enabled,
    mirror_status, mirror_error, mirror_sync_attempts, created_at, updated_at
"""

MIRROR_PLAN_COLUMNS = """
    id, plan_id, reason, status, init_point, frequency, frequency_type, amount,
    repetitions, currency_id, raw_payload, created_at, updated_at
"""

MIRROR_SUBSCRIPTION_COLUMNS = """
    id, subscription_id, mirror_plan_id, payer_id, status, date_created, next_payment_date,
    init_point, last_event_at, raw_payload, created_at, updated_at
"""


class SqlBillingRepository(BillingStorePort):
    def __init__(self, engine, *, lock_timeout_seconds: float):
        self._engine = engine
        self._lock_timeout_ms = max(1, int(lock_timeout_seconds * 1000))

    @contextmanager
    def transaction(self) -> Iterator[BillingTransaction]:
        try:
            with self._engine.begin() as conn:
                conn.execute(text(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'"))
                yield _SqlBillingTransaction(conn)
        except IntegrityError as exc:
            logger.warning("billing_repository: constraint_violation error=%s", exc.orig)
            raise LocalConstraintViolationError(_constraint_message(exc)) from exc
        except OperationalError as exc:
            if _sqlstate(exc) != LOCK_NOT_AVAILABLE:
                raise
            raise PlanLockTimeoutError(
                f"Row lock not acquired within {self._lock_timeout_ms}ms."
            ) from exc

    def get_plan(self, *, plan_id: str) -> Plan | None:
        sql = f"""
            SELECT {PLAN_COLUMNS}
            FROM public.plans
            WHERE id = :plan_id
            LIMIT 1
        """
        with self._engine.connect() as conn:
            row = conn.execute(text(sql), {"plan_id": plan_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_plan(row)

    def get_mirror_plan(self, *, plan_id: str) -> MirrorPlan | None:
        sql = f"""
            SELECT {MIRROR_PLAN_COLUMNS}
            FROM public.mirror_plans
            WHERE plan_id = :plan_id
            LIMIT 1
        """
        with self._engine.connect() as conn:
            row = conn.execute(text(sql), {"plan_id": plan_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_mirror_plan(row)

    def list_plans(self, *, include_inactive: bool) -> list[Plan]:
        sql = f"""
            SELECT {PLAN_COLUMNS}
            FROM public.plans
            WHERE (:include_inactive OR is_active)
            ORDER BY position ASC NULLS LAST, name ASC
        """
        with self._engine.connect() as conn:
            rows = conn.execute(text(sql), {"include_inactive": include_inactive}).mappings().all()
        return [map_row_to_plan(row) for row in rows]

    def get_subscription(self, *, subscription_id: str) -> Subscription | None:
        sql = """
            SELECT id, user_id, plan_id, payer_email, status, created_at, updated_at
            FROM public.subscriptions
            WHERE id = :subscription_id
            LIMIT 1
        """
        with self._engine.connect() as conn:
            row = conn.execute(text(sql), {"subscription_id": subscription_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_subscription(row)

    def get_mirror_subscription(self, *, subscription_id: str) -> MirrorSubscription | None:
        sql = f"""
            SELECT {MIRROR_SUBSCRIPTION_COLUMNS}
            FROM public.mirror_subscriptions
            WHERE subscription_id = :subscription_id
            LIMIT 1
        """
        with self._engine.connect() as conn:
            row = conn.execute(text(sql), {"subscription_id": subscription_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_mirror_subscription(row)


class _SqlBillingTransaction(BillingTransaction):
    def __init__(self, conn):
        self._conn = conn

    def insert_plan(
        self,
        *,
        plan_id: str,
        fields: PlanFields,
        remote_enabled: bool,
        now: datetime,
    ) -> Plan:
        sql = f"""
            INSERT INTO public.plans (
                id, name, description, price, duration_value, duration_unit, installments,
                installment_price, is_active, support_level, features, position, remote_enabled,
                mirror_status, mirror_error, mirror_sync_attempts, created_at, updated_at
            ) VALUES (
                :id, :name, :description, :price, :duration_value, :duration_unit, :installments,
                :installment_price, :is_active, :support_level, CAST(:features AS jsonb), :position,
                :remote_enabled, :mirror_status, NULL, 0, :now, :now
            )
            RETURNING {PLAN_COLUMNS}
        """
        params = _plan_params(fields)
        params.update(
            {
                "id": plan_id,
                "remote_enabled": remote_enabled,
                "mirror_status": "pending" if remote_enabled else "absent",
                "now": now,
            }
        )
        row = self._conn.execute(text(sql), params).mappings().one()
        return map_row_to_plan(row)

    def lock_plan(self, *, plan_id: str) -> Plan | None:
        sql = f"""
            SELECT {PLAN_COLUMNS}
            FROM public.plans
            WHERE id = :plan_id
            FOR UPDATE
        """
        row = self._conn.execute(text(sql), {"plan_id": plan_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_plan(row)

    def update_plan(
        self,
        *,
        plan_id: str,
        fields: PlanFields,
        remote_enabled: bool,
        mirror_status: MirrorStatus,
        now: datetime,
    ) -> Plan:
        sql = f"""
            UPDATE public.plans
            SET name = :name,
                description = :description,
                price = :price,
                duration_value = :duration_value,
                duration_unit = :duration_unit,
                installments = :installments,
                installment_price = :installment_price,
                is_active = :is_active,
                support_level = :support_level,
                features = CAST(:features AS jsonb),
                position = :position,
                remote_enabled = :remote_enabled,
                mirror_status = :mirror_status,
                updated_at = :now
            WHERE id = :id
            RETURNING {PLAN_COLUMNS}
        """
        params = _plan_params(fields)
        params.update(
            {
                "id": plan_id,
                "remote_enabled": remote_enabled,
                "mirror_status": mirror_status,
                "now": now,
            }
        )
        row = self._conn.execute(text(sql), params).mappings().one()
        return map_row_to_plan(row)

    def mark_mirror_synced(self, *, plan_id: str, now: datetime) -> Plan:
        sql = f"""
            UPDATE public.plans
            SET mirror_status = 'synced',
                mirror_error = NULL,
                mirror_sync_attempts = 0,
                updated_at = :now
            WHERE id = :plan_id
            RETURNING {PLAN_COLUMNS}
        """
        row = self._conn.execute(text(sql), {"plan_id": plan_id, "now": now}).mappings().one()
        return map_row_to_plan(row)

    def mark_mirror_stale(self, *, plan_id: str, error: str, now: datetime) -> Plan:
        sql = f"""
            UPDATE public.plans
            SET mirror_status = 'stale',
                mirror_error = :error,
                mirror_sync_attempts = mirror_sync_attempts + 1,
                updated_at = :now
            WHERE id = :plan_id
            RETURNING {PLAN_COLUMNS}
        """
        row = self._conn.execute(
            text(sql),
            {"plan_id": plan_id, "error": error, "now": now},
        ).mappings().one()
        return map_row_to_plan(row)

    def mark_mirror_stale_unless_synced(self, *, plan_id: str, error: str, now: datetime) -> Plan | None:
        sql = f"""
            UPDATE public.plans
            SET mirror_status = 'stale',
                mirror_error = :error,
                mirror_sync_attempts = mirror_sync_attempts + 1,
                updated_at = :now
            WHERE id = :plan_id
              AND remote_enabled
              AND mirror_status <> 'synced'
            RETURNING {PLAN_COLUMNS}
        """
        row = self._conn.execute(
            text(sql),
            {"plan_id": plan_id, "error": error, "now": now},
        ).mappings().first()
        if row is None:
            return None
        return map_row_to_plan(row)

    def get_mirror_plan(self, *, plan_id: str) -> MirrorPlan | None:
        sql = f"""
            SELECT {MIRROR_PLAN_COLUMNS}
            FROM public.mirror_plans
            WHERE plan_id = :plan_id
            LIMIT 1
        """
        row = self._conn.execute(text(sql), {"plan_id": plan_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_mirror_plan(row)

    def insert_mirror_plan(self, *, plan_id: str, remote: RemotePlan, now: datetime) -> MirrorPlan:
        sql = f"""
            INSERT INTO public.mirror_plans (
                id, plan_id, reason, status, init_point, frequency, frequency_type, amount,
                repetitions, currency_id, raw_payload, created_at, updated_at
            ) VALUES (
                :id, :plan_id, :reason, :status, :init_point, :frequency, :frequency_type, :amount,
                :repetitions, :currency_id, CAST(:raw_payload AS jsonb), :now, :now
            )
            RETURNING {MIRROR_PLAN_COLUMNS}
        """
        params = _remote_plan_params(remote)
        params.update({"plan_id": plan_id, "now": now})
        row = self._conn.execute(text(sql), params).mappings().one()
        return map_row_to_mirror_plan(row)

    def update_mirror_plan(
        self,
        *,
        plan_id: str,
        remote_id: str,
        remote: RemotePlan,
        now: datetime,
    ) -> MirrorPlan:
        sql = f"""
            UPDATE public.mirror_plans
            SET reason = :reason,
                status = :status,
                init_point = :init_point,
                frequency = :frequency,
                frequency_type = :frequency_type,
                amount = :amount,
                repetitions = :repetitions,
                currency_id = :currency_id,
                raw_payload = CAST(:raw_payload AS jsonb),
                updated_at = :now
            WHERE id = :remote_id
              AND plan_id = :plan_id
            RETURNING {MIRROR_PLAN_COLUMNS}
        """
        params = _remote_plan_params(remote)
        params.pop("id")
        params.update({"plan_id": plan_id, "remote_id": remote_id, "now": now})
        row = self._conn.execute(text(sql), params).mappings().one()
        return map_row_to_mirror_plan(row)

    def insert_subscription(
        self,
        *,
        subscription_id: str,
        user_id: str,
        plan_id: str,
        payer_email: str,
        status: str,
        now: datetime,
    ) -> Subscription:
        sql = """
            INSERT INTO public.subscriptions (
                id, user_id, plan_id, payer_email, status, created_at, updated_at
            ) VALUES (
                :id, :user_id, :plan_id, :payer_email, :status, :now, :now
            )
            RETURNING id, user_id, plan_id, payer_email, status, created_at, updated_at
        """
        row = self._conn.execute(
            text(sql),
            {
                "id": subscription_id,
                "user_id": user_id,
                "plan_id": plan_id,
                "payer_email": payer_email,
                "status": status,
                "now": now,
            },
        ).mappings().one()
        return map_row_to_subscription(row)

    def insert_mirror_subscription(
        self,
        *,
        subscription_id: str,
        remote: RemoteSubscription,
        now: datetime,
    ) -> MirrorSubscription:
        sql = f"""
            INSERT INTO public.mirror_subscriptions (
                id, subscription_id, mirror_plan_id, payer_id, status, date_created,
                next_payment_date, init_point, last_event_at, raw_payload, created_at, updated_at
            ) VALUES (
                :id, :subscription_id, :mirror_plan_id, :payer_id, :status, :date_created,
                :next_payment_date, :init_point, :last_event_at, CAST(:raw_payload AS jsonb), :now, :now
            )
            RETURNING {MIRROR_SUBSCRIPTION_COLUMNS}
        """
        params = _remote_subscription_params(remote)
        params.update(
            {
                "subscription_id": subscription_id,
                "mirror_plan_id": remote.mirror_plan_id,
                "date_created": remote.date_created,
                "last_event_at": remote.last_modified or remote.date_created,
                "now": now,
            }
        )
        row = self._conn.execute(text(sql), params).mappings().one()
        return map_row_to_mirror_subscription(row)

    def lock_mirror_subscription(self, *, remote_id: str) -> MirrorSubscription | None:
        sql = f"""
            SELECT {MIRROR_SUBSCRIPTION_COLUMNS}
            FROM public.mirror_subscriptions
            WHERE id = :remote_id
            FOR UPDATE
        """
        row = self._conn.execute(text(sql), {"remote_id": remote_id}).mappings().first()
        if row is None:
            return None
        return map_row_to_mirror_subscription(row)

    def update_mirror_subscription(
        self,
        *,
        remote: RemoteSubscription,
        last_event_at: datetime | None,
        now: datetime,
    ) -> MirrorSubscription:
        sql = f"""
            UPDATE public.mirror_subscriptions
            SET payer_id = :payer_id,
                status = :status,
                date_created = COALESCE(:date_created, date_created),
                next_payment_date = :next_payment_date,
                init_point = COALESCE(:init_point, init_point),
                last_event_at = :last_event_at,
                raw_payload = CAST(:raw_payload AS jsonb),
                updated_at = :now
            WHERE id = :id
            RETURNING {MIRROR_SUBSCRIPTION_COLUMNS}
        """
        params = _remote_subscription_params(remote)
        params.update({"date_created": remote.date_created, "last_event_at": last_event_at, "now": now})
        row = self._conn.execute(text(sql), params).mappings().one()
        return map_row_to_mirror_subscription(row)

    def update_subscription_status(self, *, subscription_id: str, status: str, now: datetime) -> None:
        sql = """
            UPDATE public.subscriptions
            SET status = :status,
                updated_at = :now
            WHERE id = :subscription_id
        """
        self._conn.execute(
            text(sql),
            {"subscription_id": subscription_id, "status": status, "now": now},
        )


def _plan_params(fields: PlanFields) -> dict:
    return {
        "name": fields.name,
        "description": fields.description,
        "price": fields.price,
        "duration_value": fields.duration_value,
        "duration_unit": fields.duration_unit,
        "installments": fields.installments,
        "installment_price": fields.installment_price,
        "is_active": fields.is_active,
        "support_level": fields.support_level,
        "features": json.dumps(list(fields.features)),
        "position": fields.position,
    }


def _remote_plan_params(remote: RemotePlan) -> dict:
    recurring = remote.auto_recurring
    return {
        "id": remote.id,
        "reason": remote.reason,
        "status": remote.status,
        "init_point": remote.init_point,
        "frequency": recurring.frequency,
        "frequency_type": recurring.frequency_type,
        "amount": recurring.amount,
        "repetitions": recurring.repetitions,
        "currency_id": recurring.currency_id,
        "raw_payload": json.dumps(remote.raw_payload, default=str),
    }


def _remote_subscription_params(remote: RemoteSubscription) -> dict:
    return {
        "id": remote.id,
        "payer_id": remote.payer_id,
        "status": remote.status,
        "next_payment_date": remote.next_payment_date,
        "init_point": remote.init_point,
        "raw_payload": json.dumps(remote.raw_payload, default=str),
    }


def _sqlstate(exc: OperationalError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _constraint_message(exc: IntegrityError) -> str:
    diag = getattr(exc.orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint:
        return f"Local constraint violated: {constraint}."
    return "Local constraint violated."
