from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from billing_sync.infrastructure.db.engine import Base


class PlanModel(Base):
    __tablename__ = "plans"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
        CheckConstraint("installments >= 1", name="ck_plans_installments_positive"),
        CheckConstraint("duration_unit IN ('days', 'months')", name="ck_plans_duration_unit"),
        CheckConstraint(
            "mirror_status IN ('absent', 'pending', 'synced', 'stale')",
            name="ck_plans_mirror_status",
        ),
        {"schema": "public"},
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration_value: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_unit: Mapped[str] = mapped_column(Text, nullable=False)
    installments: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    installment_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    support_level: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'basic'"))
    features: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    position: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)
    remote_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    mirror_status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'absent'"))
    mirror_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    mirror_sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))


class MirrorPlanModel(Base):
    __tablename__ = "mirror_plans"
    __table_args__ = (
        UniqueConstraint("plan_id", name="uq_mirror_plans_plan_id"),
        {"schema": "public"},
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    plan_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("public.plans.id"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    init_point: Mapped[str | None] = mapped_column(Text, nullable=True)
    frequency: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency_type: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    repetitions: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_id: Mapped[str] = mapped_column(Text, nullable=False)
    raw_payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"
    __table_args__ = ({"schema": "public"},)

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    plan_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("public.plans.id"), nullable=False)
    payer_email: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))


class MirrorSubscriptionModel(Base):
    __tablename__ = "mirror_subscriptions"
    __table_args__ = (
        UniqueConstraint("subscription_id", name="uq_mirror_subscriptions_subscription_id"),
        {"schema": "public"},
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    subscription_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("public.subscriptions.id"),
        nullable=False,
    )
    mirror_plan_id: Mapped[str | None] = mapped_column(Text, ForeignKey("public.mirror_plans.id"), nullable=True)
    payer_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    date_created: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    init_point: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
