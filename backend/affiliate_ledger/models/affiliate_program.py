from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import UUIDType


class AffiliateProgram(Base):
    """Per-clinic program settings. Missing row = defaults from settings."""

    __tablename__ = "affiliate_programs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    minimum_payout_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=5000, server_default="5000")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AttributionConfig(Base):
    """Per-clinic multi-touch attribution settings."""

    __tablename__ = "attribution_configs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # FIRST_CLICK | LAST_CLICK | LINEAR | TIME_DECAY | POSITION
    new_patient_model: Mapped[str] = mapped_column(String(20), nullable=False, default="FIRST_CLICK")
    returning_patient_model: Mapped[str] = mapped_column(String(20), nullable=False, default="LAST_CLICK")

    cookie_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
