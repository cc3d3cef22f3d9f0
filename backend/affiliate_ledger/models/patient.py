from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import JSONType, UUIDType


class Patient(Base):
    """
    The slice of the platform's patient record the ledger reads and writes.

    attribution_* is set at most once by normal resolution; only an explicit
    forced operation (or removal) may clear or overwrite it.
    """

    __tablename__ = "patients"
    __table_args__ = (
        Index("ix_patients_attribution_affiliate", "attribution_affiliate_id", "attribution_first_touch_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # free-form labels, e.g. "affiliate:SPRING24"
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    attribution_affiliate_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="SET NULL"),
        nullable=True,
    )
    attribution_ref_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attribution_first_touch_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # intake source that set the attribution (heyflow, admin, ...)
    attribution_source: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
