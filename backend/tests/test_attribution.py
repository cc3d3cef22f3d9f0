# tests/test_attribution.py
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from affiliate_ledger.core.attribution import (
    AttributionStatus,
    attribute,
    get_patient_attribution,
    normalize_ref_code,
    remove_attribution,
    resolve_touch_attribution,
)
from affiliate_ledger.core.attribution_models import position, time_decay
from affiliate_ledger.models.audit_log import AuditLog
from affiliate_ledger.models.patient import Patient

from conftest import T0


async def audit_actions(db, patient_id) -> list[str]:
    rows = await db.execute(
        select(AuditLog.action).where(AuditLog.entity_id == str(patient_id)).order_by(AuditLog.action)
    )
    return list(rows.scalars().all())


def test_normalize_ref_code():
    assert normalize_ref_code("  spring24 ") == "SPRING24"
    assert normalize_ref_code("dr-smith_2") == "DR-SMITH_2"
    assert normalize_ref_code("") is None
    assert normalize_ref_code(None) is None
    assert normalize_ref_code("has space") is None
    assert normalize_ref_code("-LEADING") is None


@pytest.mark.asyncio
async def test_attribute_links_patient_and_tags(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic, ref_code="SPRING24")
    patient = await factory.patient(clinic, tags=["vip"])

    outcome = await attribute(db, patient_id=patient.id, ref_code="spring24", clinic_id=clinic.id, source="heyflow")

    assert outcome.status is AttributionStatus.ATTRIBUTED
    assert outcome.changed is True
    assert outcome.previous is None
    assert outcome.attribution.affiliate_id == affiliate.id
    assert outcome.attribution.ref_code == "SPRING24"

    fresh = await factory.reload(Patient, patient.id)
    assert fresh.attribution_affiliate_id == affiliate.id
    assert fresh.attribution_ref_code == "SPRING24"
    assert fresh.attribution_first_touch_at is not None
    assert fresh.attribution_source == "heyflow"
    assert fresh.tags == ["vip", "affiliate:SPRING24"]


@pytest.mark.asyncio
async def test_second_unforced_attribution_is_a_conflict(db, factory):
    clinic = await factory.clinic()
    first = await factory.affiliate(clinic, ref_code="FIRST")
    await factory.affiliate(clinic, ref_code="SECOND")
    patient = await factory.patient(clinic)

    await attribute(db, patient_id=patient.id, ref_code="FIRST", clinic_id=clinic.id, source="intake")
    outcome = await attribute(db, patient_id=patient.id, ref_code="SECOND", clinic_id=clinic.id, source="intake")

    assert outcome.status is AttributionStatus.CONFLICT
    assert outcome.changed is False
    assert outcome.attribution.affiliate_id == first.id
    assert outcome.attribution.ref_code == "FIRST"

    fresh = await factory.reload(Patient, patient.id)
    assert fresh.attribution_affiliate_id == first.id
    assert fresh.attribution_ref_code == "FIRST"
    assert fresh.tags == ["affiliate:FIRST"]


@pytest.mark.asyncio
async def test_forced_attribution_replaces_and_audits(db, factory):
    clinic = await factory.clinic()
    first = await factory.affiliate(clinic, ref_code="FIRST")
    second = await factory.affiliate(clinic, ref_code="SECOND")
    patient = await factory.patient(clinic, tags=["vip"])

    await attribute(db, patient_id=patient.id, ref_code="FIRST", clinic_id=clinic.id, source="intake")
    outcome = await attribute(
        db,
        patient_id=patient.id,
        ref_code="SECOND",
        clinic_id=clinic.id,
        source="admin",
        force=True,
        actor="admin-ui",
    )

    assert outcome.status is AttributionStatus.ATTRIBUTED
    assert outcome.previous.affiliate_id == first.id
    assert outcome.attribution.affiliate_id == second.id

    fresh = await factory.reload(Patient, patient.id)
    assert fresh.attribution_affiliate_id == second.id
    assert fresh.attribution_ref_code == "SECOND"
    assert fresh.attribution_source == "admin"
    assert fresh.tags == ["vip", "affiliate:SECOND"]

    assert await audit_actions(db, patient.id) == ["ATTRIBUTION_CLEARED"]
    entry = (await db.execute(select(AuditLog).where(AuditLog.entity_id == str(patient.id)))).scalar_one()
    assert entry.old_values["ref_code"] == "FIRST"
    assert entry.actor == "admin-ui"


@pytest.mark.asyncio
async def test_forced_attribution_without_existing_is_plain_write(db, factory):
    clinic = await factory.clinic()
    await factory.affiliate(clinic, ref_code="SPRING24")
    patient = await factory.patient(clinic)

    outcome = await attribute(
        db, patient_id=patient.id, ref_code="SPRING24", clinic_id=clinic.id, source="admin", force=True
    )

    assert outcome.status is AttributionStatus.ATTRIBUTED
    assert outcome.previous is None
    assert await audit_actions(db, patient.id) == []


@pytest.mark.asyncio
async def test_not_found_outcomes(db, factory):
    clinic = await factory.clinic()
    other = await factory.clinic("Other Clinic")
    await factory.affiliate(clinic, ref_code="RETIRED", ref_code_active=False)
    await factory.affiliate(clinic, ref_code="PAUSED", status="INACTIVE")
    await factory.affiliate(clinic, ref_code="SPRING24")
    patient = await factory.patient(clinic)
    foreign_patient = await factory.patient(other)

    cases = [
        (patient.id, "UNKNOWN", clinic.id),
        (patient.id, "RETIRED", clinic.id),
        (patient.id, "PAUSED", clinic.id),
        (patient.id, "   ", clinic.id),
        (uuid.uuid4(), "SPRING24", clinic.id),
        (foreign_patient.id, "SPRING24", clinic.id),
    ]
    for patient_id, code, clinic_id in cases:
        outcome = await attribute(db, patient_id=patient_id, ref_code=code, clinic_id=clinic_id, source="intake")
        assert outcome.status is AttributionStatus.NOT_FOUND, code

    fresh = await factory.reload(Patient, patient.id)
    assert fresh.attribution_affiliate_id is None


@pytest.mark.asyncio
async def test_remove_attribution_clears_fields_and_tags(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic, ref_code="SPRING24")
    patient = await factory.patient(clinic, tags=["vip"])
    await attribute(db, patient_id=patient.id, ref_code="SPRING24", clinic_id=clinic.id, source="intake")

    outcome = await remove_attribution(db, patient.id, clinic_id=clinic.id, actor="admin-ui")

    assert outcome.status is AttributionStatus.REMOVED
    assert outcome.changed is True
    assert outcome.previous.affiliate_id == affiliate.id

    fresh = await factory.reload(Patient, patient.id)
    assert fresh.attribution_affiliate_id is None
    assert fresh.attribution_ref_code is None
    assert fresh.attribution_first_touch_at is None
    assert fresh.tags == ["vip"]
    assert await audit_actions(db, patient.id) == ["ATTRIBUTION_REMOVED"]


@pytest.mark.asyncio
async def test_remove_attribution_is_a_noop_success_when_nothing_set(db, factory):
    clinic = await factory.clinic()
    patient = await factory.patient(clinic)

    outcome = await remove_attribution(db, patient.id)

    assert outcome.status is AttributionStatus.REMOVED
    assert outcome.changed is False
    assert await audit_actions(db, patient.id) == []

    missing = await remove_attribution(db, uuid.uuid4())
    assert missing.status is AttributionStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_remove_attribution_drops_stray_affiliate_tags(db, factory):
    clinic = await factory.clinic()
    patient = await factory.patient(clinic, tags=["affiliate:OLD", "vip"])

    outcome = await remove_attribution(db, patient.id)

    assert outcome.changed is True
    fresh = await factory.reload(Patient, patient.id)
    assert fresh.tags == ["vip"]


@pytest.mark.asyncio
async def test_get_patient_attribution(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic)
    attributed = await factory.attributed_patient(clinic, affiliate)
    plain = await factory.patient(clinic)

    current = await get_patient_attribution(db, attributed.id, clinic.id)
    assert current.affiliate_id == affiliate.id
    assert current.ref_code == "SPRING24"
    assert current.first_touch_at == T0

    assert await get_patient_attribution(db, plain.id) is None
    assert await get_patient_attribution(db, attributed.id, uuid.uuid4()) is None


# -----------------------------
# Multi-touch
# -----------------------------
def test_position_weights():
    assert position(1) == [1.0]
    assert position(2) == [0.5, 0.5]
    weights = position(4)
    assert weights[0] == pytest.approx(0.4)
    assert weights[-1] == pytest.approx(0.4)
    assert weights[1] == pytest.approx(0.1)
    assert sum(weights) == pytest.approx(1.0)


def test_time_decay_halves_every_week():
    now = T0
    weights = time_decay([now - timedelta(days=7), now], now)
    assert weights[1] == pytest.approx(2 * weights[0])
    assert sum(weights) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_new_patient_defaults_to_first_click(db, factory):
    clinic = await factory.clinic()
    early = await factory.affiliate(clinic, ref_code="EARLY")
    late = await factory.affiliate(clinic, ref_code="LATE")
    await factory.touch(early, ref_code="EARLY", fingerprint="fp-1", created_at=T0 - timedelta(days=10))
    await factory.touch(late, ref_code="LATE", fingerprint="fp-1", created_at=T0 - timedelta(days=1))

    new_patient = await resolve_touch_attribution(db, clinic_id=clinic.id, visitor_fingerprint="fp-1", now=T0)
    returning = await resolve_touch_attribution(
        db, clinic_id=clinic.id, visitor_fingerprint="fp-1", is_new_patient=False, now=T0
    )

    assert new_patient.affiliate_id == early.id
    assert new_patient.model == "FIRST_CLICK"
    assert new_patient.confidence == "medium"
    assert returning.affiliate_id == late.id
    assert returning.model == "LAST_CLICK"


@pytest.mark.asyncio
async def test_touch_resolution_honours_clinic_config(db, factory):
    clinic = await factory.clinic()
    await factory.attribution_config(clinic, new_patient_model="POSITION", cookie_window_days=7)
    old = await factory.affiliate(clinic, ref_code="OLD")
    first = await factory.affiliate(clinic, ref_code="FIRST")
    last = await factory.affiliate(clinic, ref_code="LAST")
    await factory.touch(old, ref_code="OLD", cookie_id="ck-1", created_at=T0 - timedelta(days=20))
    await factory.touch(first, ref_code="FIRST", cookie_id="ck-1", created_at=T0 - timedelta(days=5))
    await factory.touch(last, ref_code="LAST", cookie_id="ck-1", created_at=T0 - timedelta(days=1))

    resolved = await resolve_touch_attribution(db, clinic_id=clinic.id, cookie_id="ck-1", now=T0)

    # the 20-day-old touch is outside the 7 day window; 50/50 tie goes to the earlier touch
    assert resolved.model == "POSITION"
    assert len(resolved.touches) == 2
    assert resolved.weight == pytest.approx(0.5)
    assert resolved.affiliate_id == first.id


@pytest.mark.asyncio
async def test_touch_resolution_without_identity_or_touches(db, factory):
    clinic = await factory.clinic()

    assert await resolve_touch_attribution(db, clinic_id=clinic.id) is None
    assert await resolve_touch_attribution(db, clinic_id=clinic.id, visitor_fingerprint="nobody", now=T0) is None
