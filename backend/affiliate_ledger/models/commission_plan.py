from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, BigInteger
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import UUIDType


class CommissionPlan(Base):
    """
    Compensation terms for a clinic's affiliates.

    Rates are kept as nullable columns for storage; the engine turns each pair
    (initial, recurring) into a RateSchedule once per plan.
    """

    __tablename__ = "commission_plans"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(120), nullable=False)

    # FLAT | PERCENT | HYBRID
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False, default="PERCENT")

    initial_percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    initial_flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # ALL_PAYMENTS | FIRST_PAYMENT_ONLY
    applies_to: Mapped[str] = mapped_column(String(30), nullable=False, default="ALL_PAYMENTS")

    recurring_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # null = no window limit
    recurring_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # percent of the normal commission paid after month 12; null = no decay
    recurring_decay_pct: Mapped[int | None] = mapped_column(Integer, nullable=True)

    hold_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clawback_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    tier_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # REVENUE | CONVERSIONS | BOTH
    tier_metric: Mapped[str] = mapped_column(String(20), nullable=False, default="REVENUE")

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    tiers: Mapped[list["CommissionTier"]] = relationship(
        back_populates="plan",
        order_by="CommissionTier.level",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    product_rates: Mapped[list["ProductRate"]] = relationship(
        back_populates="plan",
        lazy="selectin",
        cascade="all, delete-orphan",
    )


class CommissionTier(Base):
    __tablename__ = "commission_tiers"
    __table_args__ = (
        UniqueConstraint("plan_id", "level", name="uq_commission_tiers_plan_level"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    level: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)

    min_revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    min_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # null = keep the plan's value
    percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bonus_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    plan: Mapped[CommissionPlan] = relationship(back_populates="tiers")


class ProductRate(Base):
    """Plan-level override for a SKU, a category, or a price range."""

    __tablename__ = "commission_product_rates"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_sku: Mapped[str | None] = mapped_column(String(80), nullable=True)
    product_category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    min_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    percent_bps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    flat_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    plan: Mapped[CommissionPlan] = relationship(back_populates="product_rates")


class PlanAssignment(Base):
    """
    Affiliate -> plan over [effective_from, effective_to]; effective_to null = open-ended.
    Intervals for one affiliate never overlap (enforced by assign_plan).
    """

    __tablename__ = "commission_plan_assignments"
    __table_args__ = (
        Index("ix_plan_assignments_affiliate_from", "affiliate_id", "effective_from"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False,
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="RESTRICT"),
        nullable=False,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("commission_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )

    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    plan: Mapped[CommissionPlan] = relationship(lazy="selectin")
