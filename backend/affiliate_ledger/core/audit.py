from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.models.audit_log import AuditLog


def add_audit_log(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: Any,
    clinic_id: uuid.UUID | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    description: str | None = None,
    actor: str | None = None,
) -> AuditLog:
    """
    Stage an audit row on the caller's session.
    It commits (or rolls back) with the change it describes.
    """
    entry = AuditLog(
        clinic_id=clinic_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor=actor,
        old_values=old_values,
        new_values=new_values,
        description=description,
    )
    db.add(entry)
    return entry
