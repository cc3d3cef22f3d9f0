# backend/affiliate_ledger/crud/affiliates.py
from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.models.affiliate import Affiliate, AffiliateRefCode
from affiliate_ledger.models.affiliate_program import AffiliateProgram, AttributionConfig


async def get_affiliate(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID | None = None,
) -> Optional[Affiliate]:
    stmt = select(Affiliate).where(Affiliate.id == affiliate_id).execution_options(populate_existing=True)
    if clinic_id is not None:
        stmt = stmt.where(Affiliate.clinic_id == clinic_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_active_ref_code(
    db: AsyncSession,
    clinic_id: uuid.UUID,
    ref_code: str,
) -> Optional[AffiliateRefCode]:
    """
    Active ref code whose affiliate is ACTIVE too.
    `ref_code` must already be normalized.
    """
    stmt = (
        select(AffiliateRefCode)
        .join(Affiliate, Affiliate.id == AffiliateRefCode.affiliate_id)
        .where(AffiliateRefCode.clinic_id == clinic_id)
        .where(AffiliateRefCode.ref_code == ref_code)
        .where(AffiliateRefCode.is_active.is_(True))
        .where(Affiliate.status == "ACTIVE")
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_program(db: AsyncSession, clinic_id: uuid.UUID) -> Optional[AffiliateProgram]:
    stmt = select(AffiliateProgram).where(AffiliateProgram.clinic_id == clinic_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_attribution_config(db: AsyncSession, clinic_id: uuid.UUID) -> Optional[AttributionConfig]:
    stmt = select(AttributionConfig).where(AttributionConfig.clinic_id == clinic_id)
    return (await db.execute(stmt)).scalar_one_or_none()
