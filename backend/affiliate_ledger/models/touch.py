from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import UUIDType


class AffiliateTouch(Base):
    """
    Append-only marketing interaction. Only converted_at / converted_patient_id
    are ever written after insert, and only once.
    """

    __tablename__ = "affiliate_touches"
    __table_args__ = (
        Index("ix_affiliate_touches_clinic_created", "clinic_id", "created_at"),
        Index("ix_affiliate_touches_affiliate_created", "affiliate_id", "created_at"),
        Index("ix_affiliate_touches_fingerprint", "clinic_id", "visitor_fingerprint"),
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
    ref_code: Mapped[str] = mapped_column(String(64), nullable=False)

    # CLICK | IMPRESSION | POSTBACK
    touch_type: Mapped[str] = mapped_column(String(20), nullable=False, default="CLICK")

    # hashed client-side; never raw IP/UA
    visitor_fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    cookie_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    landing_page: Mapped[str | None] = mapped_column(String(500), nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(120), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(120), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_patient_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType,
        ForeignKey("patients.id", ondelete="SET NULL"),
        nullable=True,
    )
