from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import UUIDType


class Affiliate(Base):
    """
    A marketing partner credited for patient acquisition within one clinic.

    Never deleted: status goes ACTIVE -> INACTIVE.
    lifetime_* columns are only ever changed by atomic increments issued in the
    same transaction as the commission event that causes them.
    """

    __tablename__ = "affiliates"
    __table_args__ = (
        Index("ix_affiliates_clinic_status", "clinic_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    display_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # ACTIVE | INACTIVE
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE", server_default="ACTIVE")

    lifetime_revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    lifetime_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    current_tier_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType,
        ForeignKey("commission_tiers.id", ondelete="SET NULL"),
        nullable=True,
    )
    tier_qualified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class AffiliateRefCode(Base):
    """
    Traffic-source code for an affiliate. Unique per (clinic, code).
    Immutable once created apart from the is_active toggle.
    """

    __tablename__ = "affiliate_ref_codes"
    __table_args__ = (
        UniqueConstraint("clinic_id", "ref_code", name="uq_affiliate_ref_codes_clinic_code"),
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
        index=True,
    )

    # stored normalized: trimmed + uppercase
    ref_code: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
