# backend/affiliate_ledger/core/attribution.py
from __future__ import annotations

import enum
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.core.attribution_models import (
    WeightedTouch,
    apply_model,
    confidence,
    pick_winner,
)
from affiliate_ledger.core.audit import add_audit_log
from affiliate_ledger.core.config import settings
from affiliate_ledger.core.dates import as_utc, utcnow
from affiliate_ledger.core.errors import storage_guard
from affiliate_ledger.core.statuses import AttributionModel, TouchType
from affiliate_ledger.crud.affiliates import get_active_ref_code, get_attribution_config
from affiliate_ledger.crud.patients import get_patient, with_affiliate_tag, without_affiliate_tags
from affiliate_ledger.models.patient import Patient
from affiliate_ledger.models.touch import AffiliateTouch

logger = logging.getLogger(__name__)

REF_CODE_RE = re.compile(r"^[A-Z0-9][A-Z0-9_-]{0,63}$")

# upper bound on touches weighed for one visitor
MAX_TOUCHES_PER_RESOLUTION = 200


def normalize_ref_code(code: str | None) -> str | None:
    if not code:
        return None
    c = code.strip().upper()
    return c if REF_CODE_RE.match(c) else None


class AttributionStatus(str, enum.Enum):
    ATTRIBUTED = "ATTRIBUTED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    REMOVED = "REMOVED"


@dataclass(frozen=True)
class Attribution:
    affiliate_id: uuid.UUID
    ref_code: str | None
    first_touch_at: datetime | None
    source: str | None = None


@dataclass(frozen=True)
class AttributionOutcome:
    status: AttributionStatus
    patient_id: uuid.UUID
    # the attribution now on the patient (ATTRIBUTED) or the one that blocked the write (CONFLICT)
    attribution: Attribution | None = None
    # what a forced write or a removal replaced
    previous: Attribution | None = None
    changed: bool = False


def _snapshot(patient: Patient) -> Attribution | None:
    if patient.attribution_affiliate_id is None:
        return None
    first_touch = patient.attribution_first_touch_at
    return Attribution(
        affiliate_id=patient.attribution_affiliate_id,
        ref_code=patient.attribution_ref_code,
        first_touch_at=as_utc(first_touch) if first_touch else None,
        source=patient.attribution_source,
    )


def _audit_values(a: Attribution) -> dict:
    return {
        "affiliate_id": str(a.affiliate_id),
        "ref_code": a.ref_code,
        "first_touch_at": a.first_touch_at.isoformat() if a.first_touch_at else None,
        "source": a.source,
    }


def _clear(patient: Patient) -> None:
    patient.attribution_affiliate_id = None
    patient.attribution_ref_code = None
    patient.attribution_first_touch_at = None
    patient.attribution_source = None
    patient.tags = without_affiliate_tags(patient.tags)


async def attribute(
    db: AsyncSession,
    *,
    patient_id: uuid.UUID,
    ref_code: str,
    clinic_id: uuid.UUID,
    source: str,
    force: bool = False,
    actor: Optional[str] = None,
) -> AttributionOutcome:
    """
    Link a patient to the affiliate owning `ref_code`.

    NOT_FOUND: unknown/inactive code, inactive affiliate, unknown patient.
    CONFLICT: patient already attributed and force is False; the existing
    attribution is returned untouched.
    A forced write clears the old attribution (audited) before setting the new one,
    all in one transaction under a row lock on the patient.
    """
    code = normalize_ref_code(ref_code)
    if not code:
        return AttributionOutcome(status=AttributionStatus.NOT_FOUND, patient_id=patient_id)

    log_ctx = {"patient_id": str(patient_id), "clinic_id": str(clinic_id), "ref_code": code}

    async with storage_guard(db, "attribute", **log_ctx):
        patient = await get_patient(db, patient_id, for_update=True)
        if not patient or patient.clinic_id != clinic_id:
            await db.commit()
            return AttributionOutcome(status=AttributionStatus.NOT_FOUND, patient_id=patient_id)

        rc = await get_active_ref_code(db, clinic_id, code)
        if not rc:
            await db.commit()
            logger.debug("Attribution skipped: ref code not active", extra={"ledger": log_ctx})
            return AttributionOutcome(status=AttributionStatus.NOT_FOUND, patient_id=patient_id)

        existing = _snapshot(patient)
        if existing and not force:
            await db.commit()
            logger.warning("Attribution refused: patient already attributed", extra={"ledger": log_ctx})
            return AttributionOutcome(
                status=AttributionStatus.CONFLICT,
                patient_id=patient_id,
                attribution=existing,
            )

        if existing:
            _clear(patient)
            await db.flush()
            add_audit_log(
                db,
                action="ATTRIBUTION_CLEARED",
                entity_type="patient",
                entity_id=patient.id,
                clinic_id=clinic_id,
                old_values=_audit_values(existing),
                description=f"Forced re-attribution to {code} (source={source})",
                actor=actor,
            )

        now = utcnow()
        patient.attribution_affiliate_id = rc.affiliate_id
        patient.attribution_ref_code = code
        patient.attribution_first_touch_at = now
        patient.attribution_source = source
        patient.tags = with_affiliate_tag(patient.tags, code)

        await db.commit()

    logger.info(
        "Patient attributed",
        extra={"ledger": {**log_ctx, "affiliate_id": str(rc.affiliate_id), "forced": bool(existing)}},
    )
    return AttributionOutcome(
        status=AttributionStatus.ATTRIBUTED,
        patient_id=patient_id,
        attribution=Attribution(affiliate_id=rc.affiliate_id, ref_code=code, first_touch_at=now, source=source),
        previous=existing,
        changed=True,
    )


async def remove_attribution(
    db: AsyncSession,
    patient_id: uuid.UUID,
    *,
    clinic_id: uuid.UUID | None = None,
    actor: Optional[str] = None,
) -> AttributionOutcome:
    """Clear attribution fields and affiliate:* tags. Nothing to clear is still a success."""
    async with storage_guard(db, "remove_attribution", patient_id=str(patient_id)):
        patient = await get_patient(db, patient_id, for_update=True)
        if not patient or (clinic_id is not None and patient.clinic_id != clinic_id):
            await db.commit()
            return AttributionOutcome(status=AttributionStatus.NOT_FOUND, patient_id=patient_id)

        existing = _snapshot(patient)
        stale_tags = len(without_affiliate_tags(patient.tags)) != len(patient.tags or [])
        if not existing and not stale_tags:
            await db.commit()
            return AttributionOutcome(status=AttributionStatus.REMOVED, patient_id=patient_id)

        _clear(patient)
        add_audit_log(
            db,
            action="ATTRIBUTION_REMOVED",
            entity_type="patient",
            entity_id=patient.id,
            clinic_id=patient.clinic_id,
            old_values=_audit_values(existing) if existing else None,
            actor=actor,
        )
        await db.commit()

    logger.info("Patient attribution removed", extra={"ledger": {"patient_id": str(patient_id)}})
    return AttributionOutcome(
        status=AttributionStatus.REMOVED,
        patient_id=patient_id,
        previous=existing,
        changed=True,
    )


async def get_patient_attribution(
    db: AsyncSession,
    patient_id: uuid.UUID,
    clinic_id: uuid.UUID | None = None,
) -> Attribution | None:
    patient = await get_patient(db, patient_id)
    if not patient or (clinic_id is not None and patient.clinic_id != clinic_id):
        return None
    return _snapshot(patient)


# -----------------------------
# Multi-touch resolution
# -----------------------------
@dataclass(frozen=True)
class TouchAttribution:
    affiliate_id: uuid.UUID
    ref_code: str
    touch_id: uuid.UUID
    model: str
    confidence: str
    weight: float
    touches: list[WeightedTouch] = field(default_factory=list)


async def resolve_touch_attribution(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    visitor_fingerprint: Optional[str] = None,
    cookie_id: Optional[str] = None,
    is_new_patient: bool = True,
    now: Optional[datetime] = None,
) -> TouchAttribution | None:
    """
    Pick the affiliate to credit from the visitor's touches inside the clinic's
    cookie window, weighted by the clinic's configured model.
    Read-only; callers pass the winning ref code to attribute().
    """
    if not visitor_fingerprint and not cookie_id:
        return None

    now = as_utc(now) if now else utcnow()
    config = await get_attribution_config(db, clinic_id)
    if config:
        model = config.new_patient_model if is_new_patient else config.returning_patient_model
        window_days = config.cookie_window_days
    else:
        model = AttributionModel.FIRST_CLICK.value if is_new_patient else AttributionModel.LAST_CLICK.value
        window_days = settings.DEFAULT_COOKIE_WINDOW_DAYS

    identity = []
    if visitor_fingerprint:
        identity.append(AffiliateTouch.visitor_fingerprint == visitor_fingerprint)
    if cookie_id:
        identity.append(AffiliateTouch.cookie_id == cookie_id)

    rows = (
        await db.execute(
            select(AffiliateTouch)
            .where(AffiliateTouch.clinic_id == clinic_id)
            .where(AffiliateTouch.touch_type.in_([TouchType.CLICK.value, TouchType.IMPRESSION.value]))
            .where(AffiliateTouch.created_at >= now - timedelta(days=window_days))
            .where(AffiliateTouch.created_at <= now)
            .where(or_(*identity))
            .order_by(AffiliateTouch.created_at.asc(), AffiliateTouch.id.asc())
            .limit(MAX_TOUCHES_PER_RESOLUTION)
        )
    ).scalars().all()

    if not rows:
        return None

    weighted = apply_model(
        model,
        [
            WeightedTouch(touch_id=t.id, affiliate_id=t.affiliate_id, ref_code=t.ref_code, created_at=as_utc(t.created_at))
            for t in rows
        ],
        now,
    )
    winner = pick_winner(weighted)

    logger.info(
        "Touch attribution resolved",
        extra={"ledger": {"clinic_id": str(clinic_id), "model": model, "touch_count": len(rows)}},
    )
    return TouchAttribution(
        affiliate_id=winner.affiliate_id,
        ref_code=winner.ref_code,
        touch_id=winner.touch_id,
        model=model,
        confidence=confidence(bool(visitor_fingerprint), bool(cookie_id)),
        weight=winner.weight,
        touches=weighted,
    )
