# backend/affiliate_ledger/core/touches.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.core.attribution import normalize_ref_code
from affiliate_ledger.core.config import settings
from affiliate_ledger.core.dates import as_utc, utcnow
from affiliate_ledger.core.errors import storage_guard
from affiliate_ledger.core.statuses import TouchType
from affiliate_ledger.crud.affiliates import get_active_ref_code
from affiliate_ledger.models.touch import AffiliateTouch

logger = logging.getLogger(__name__)

# Postbacks are conversion callbacks; repeating one is meaningful, so no dedup.
DEDUP_TOUCH_TYPES = {TouchType.CLICK.value, TouchType.IMPRESSION.value}


@dataclass(frozen=True)
class TouchOutcome:
    found: bool
    touch_id: uuid.UUID | None = None
    affiliate_id: uuid.UUID | None = None
    duplicate: bool = False


async def record_touch(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    ref_code: str,
    visitor_fingerprint: str,
    touch_type: str = TouchType.CLICK.value,
    cookie_id: Optional[str] = None,
    landing_page: Optional[str] = None,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    utm_campaign: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> TouchOutcome:
    """
    Append a touch for an active ref code.

    Same visitor + code + type inside the dedup window returns the earlier
    touch instead of inserting a second one.
    """
    touch_type = TouchType(str(touch_type).upper()).value
    code = normalize_ref_code(ref_code)
    if not code or not visitor_fingerprint:
        return TouchOutcome(found=False)

    at = as_utc(created_at) if created_at else utcnow()

    async with storage_guard(db, "record_touch", clinic_id=str(clinic_id), ref_code=code):
        rc = await get_active_ref_code(db, clinic_id, code)
        if not rc:
            await db.commit()
            logger.debug("Touch for unknown ref code ignored", extra={"ledger": {"clinic_id": str(clinic_id)}})
            return TouchOutcome(found=False)

        if touch_type in DEDUP_TOUCH_TYPES:
            window_start = at - timedelta(hours=settings.TOUCH_DEDUP_WINDOW_HOURS)
            existing = (
                await db.execute(
                    select(AffiliateTouch.id)
                    .where(AffiliateTouch.clinic_id == clinic_id)
                    .where(AffiliateTouch.ref_code == code)
                    .where(AffiliateTouch.visitor_fingerprint == visitor_fingerprint)
                    .where(AffiliateTouch.touch_type == touch_type)
                    .where(AffiliateTouch.created_at >= window_start)
                    .where(AffiliateTouch.created_at <= at)
                    .order_by(AffiliateTouch.created_at.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if existing is not None:
                await db.commit()
                return TouchOutcome(found=True, touch_id=existing, affiliate_id=rc.affiliate_id, duplicate=True)

        touch = AffiliateTouch(
            clinic_id=clinic_id,
            affiliate_id=rc.affiliate_id,
            ref_code=code,
            touch_type=touch_type,
            visitor_fingerprint=visitor_fingerprint,
            cookie_id=cookie_id,
            landing_page=landing_page,
            utm_source=utm_source,
            utm_medium=utm_medium,
            utm_campaign=utm_campaign,
            created_at=at,
        )
        db.add(touch)
        await db.commit()

    return TouchOutcome(found=True, touch_id=touch.id, affiliate_id=touch.affiliate_id)


async def mark_touch_converted(
    db: AsyncSession,
    touch_id: uuid.UUID,
    patient_id: uuid.UUID,
    converted_at: Optional[datetime] = None,
    *,
    clinic_id: uuid.UUID | None = None,
) -> bool:
    """Set converted_at once. False if the touch is unknown or already converted."""
    at = as_utc(converted_at) if converted_at else utcnow()
    stmt = (
        update(AffiliateTouch)
        .where(AffiliateTouch.id == touch_id)
        .where(AffiliateTouch.converted_at.is_(None))
        .values(converted_at=at, converted_patient_id=patient_id)
        .execution_options(synchronize_session=False)
    )
    if clinic_id is not None:
        stmt = stmt.where(AffiliateTouch.clinic_id == clinic_id)

    async with storage_guard(db, "mark_touch_converted", touch_id=str(touch_id)):
        res = await db.execute(stmt)
        await db.commit()
    return (res.rowcount or 0) > 0
