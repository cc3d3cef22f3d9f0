# backend/affiliate_ledger/crud/patients.py
from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.models.patient import Patient

AFFILIATE_TAG_PREFIX = "affiliate:"


async def get_patient(
    db: AsyncSession,
    patient_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Optional[Patient]:
    """
    for_update=True takes a row lock (PostgreSQL) so check-then-write on the
    attribution fields is serialized per patient. SQLite ignores FOR UPDATE and
    serializes writers on its own.
    """
    stmt = select(Patient).where(Patient.id == patient_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


def without_affiliate_tags(tags: list[str] | None) -> list[str]:
    return [t for t in (tags or []) if not t.startswith(AFFILIATE_TAG_PREFIX)]


def with_affiliate_tag(tags: list[str] | None, ref_code: str) -> list[str]:
    tag = f"{AFFILIATE_TAG_PREFIX}{ref_code}"
    current = list(tags or [])
    if tag not in current:
        current.append(tag)
    return current
