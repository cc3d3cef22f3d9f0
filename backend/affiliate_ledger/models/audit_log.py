from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from affiliate_ledger.db.base import Base
from affiliate_ledger.db.types import JSONType, UUIDType


class AuditLog(Base):
    """Who/what changed a ledger record outside the normal forward flow."""

    __tablename__ = "ledger_audit_logs"
    __table_args__ = (
        Index("ix_ledger_audit_entity", "entity_type", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    clinic_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType, nullable=True, index=True)

    # ATTRIBUTION_CLEARED, ATTRIBUTION_REMOVED, COMMISSION_REVERSED, PAYOUT_COMPLETED, ...
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # calling service (JWT sub) when known
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)

    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
