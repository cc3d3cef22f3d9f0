# backend/affiliate_ledger/models/commission_event.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import JSONType, UUIDType


class CommissionEvent(Base):
    """
    One ledger row per qualifying payment.

    (clinic_id, stripe_event_id) is the idempotency key: a second insert for the
    same payment fails at the storage layer and is reported as a skip.

    Status moves forward only:
      PENDING -> APPROVED -> PAID
      any     -> REVERSED

    NOTE:
      - The Python attribute cannot be named "metadata" because SQLAlchemy Declarative uses it.
      - We map attribute `event_metadata` -> DB column name "metadata".
    """

    __tablename__ = "commission_events"
    __table_args__ = (
        UniqueConstraint("clinic_id", "stripe_event_id", name="uq_commission_events_clinic_stripe_event"),
        Index("ix_commission_events_affiliate_occurred", "affiliate_id", "occurred_at"),
        Index("ix_commission_events_clinic_occurred", "clinic_id", "occurred_at"),
        Index("ix_commission_events_affiliate_status_payout", "affiliate_id", "status", "payout_id"),
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
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("patients.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType,
        ForeignKey("commission_plans.id", ondelete="SET NULL"),
        nullable=True,
    )
    ref_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    stripe_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # charge / invoice / payment intent id; refunds reference it
    stripe_object_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    event_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # PENDING | APPROVED | PAID | REVERSED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", server_default="PENDING")

    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_month: Mapped[int | None] = mapped_column(Integer, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hold_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payout_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_payouts.id", ondelete="SET NULL"),
        nullable=True,
    )

    # calculation breakdown (base, tier bonus, product rule, recurring multiplier)
    # NOTE: attribute name cannot be "metadata" in SQLAlchemy Declarative
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",  # keep DB column name
        JSONType,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
