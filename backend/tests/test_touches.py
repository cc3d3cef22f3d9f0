# tests/test_touches.py
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from affiliate_ledger.core.touches import mark_touch_converted, record_touch
from affiliate_ledger.models.touch import AffiliateTouch

from conftest import T0


async def count_touches(db) -> int:
    return (await db.execute(select(func.count(AffiliateTouch.id)))).scalar_one()


@pytest.mark.asyncio
async def test_touch_recorded_for_active_code(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic, ref_code="SPRING24")

    outcome = await record_touch(
        db,
        clinic_id=clinic.id,
        ref_code="  spring24 ",
        visitor_fingerprint="fp-1",
        utm_source="instagram",
        created_at=T0,
    )

    assert outcome.found is True
    assert outcome.duplicate is False
    assert outcome.affiliate_id == affiliate.id

    touch = await factory.reload(AffiliateTouch, outcome.touch_id)
    assert touch.ref_code == "SPRING24"
    assert touch.touch_type == "CLICK"
    assert touch.utm_source == "instagram"
    assert touch.converted_at is None


@pytest.mark.asyncio
async def test_unknown_or_retired_codes_are_not_found(db, factory):
    clinic = await factory.clinic()
    await factory.affiliate(clinic, ref_code="RETIRED", ref_code_active=False)
    await factory.affiliate(clinic, ref_code="GONE", status="INACTIVE")

    for code in ("NOPE", "RETIRED", "GONE", "bad code!"):
        outcome = await record_touch(db, clinic_id=clinic.id, ref_code=code, visitor_fingerprint="fp-1")
        assert outcome.found is False
        assert outcome.touch_id is None

    assert await count_touches(db) == 0


@pytest.mark.asyncio
async def test_ref_codes_are_clinic_scoped(db, factory):
    clinic = await factory.clinic()
    other = await factory.clinic("Other Clinic")
    await factory.affiliate(clinic, ref_code="SPRING24")

    outcome = await record_touch(db, clinic_id=other.id, ref_code="SPRING24", visitor_fingerprint="fp-1")

    assert outcome.found is False


@pytest.mark.asyncio
async def test_repeat_click_inside_window_is_deduplicated(db, factory):
    clinic = await factory.clinic()
    await factory.affiliate(clinic, ref_code="SPRING24")

    first = await record_touch(db, clinic_id=clinic.id, ref_code="SPRING24", visitor_fingerprint="fp-1", created_at=T0)
    again = await record_touch(
        db,
        clinic_id=clinic.id,
        ref_code="SPRING24",
        visitor_fingerprint="fp-1",
        created_at=T0 + timedelta(hours=3),
    )

    assert again.found is True
    assert again.duplicate is True
    assert again.touch_id == first.touch_id
    assert await count_touches(db) == 1


@pytest.mark.asyncio
async def test_click_after_window_or_from_other_visitor_is_new(db, factory):
    clinic = await factory.clinic()
    await factory.affiliate(clinic, ref_code="SPRING24")

    first = await record_touch(db, clinic_id=clinic.id, ref_code="SPRING24", visitor_fingerprint="fp-1", created_at=T0)
    later = await record_touch(
        db,
        clinic_id=clinic.id,
        ref_code="SPRING24",
        visitor_fingerprint="fp-1",
        created_at=T0 + timedelta(hours=25),
    )
    other_visitor = await record_touch(
        db,
        clinic_id=clinic.id,
        ref_code="SPRING24",
        visitor_fingerprint="fp-2",
        created_at=T0 + timedelta(minutes=5),
    )

    assert later.duplicate is False
    assert later.touch_id != first.touch_id
    assert other_visitor.duplicate is False
    assert await count_touches(db) == 3


@pytest.mark.asyncio
async def test_postbacks_are_never_deduplicated(db, factory):
    clinic = await factory.clinic()
    await factory.affiliate(clinic, ref_code="SPRING24")

    for _ in range(2):
        outcome = await record_touch(
            db,
            clinic_id=clinic.id,
            ref_code="SPRING24",
            visitor_fingerprint="fp-1",
            touch_type="postback",
            created_at=T0,
        )
        assert outcome.duplicate is False

    assert await count_touches(db) == 2


@pytest.mark.asyncio
async def test_unknown_touch_type_is_rejected(db, factory):
    clinic = await factory.clinic()
    await factory.affiliate(clinic, ref_code="SPRING24")

    with pytest.raises(ValueError):
        await record_touch(db, clinic_id=clinic.id, ref_code="SPRING24", visitor_fingerprint="fp-1", touch_type="SWIPE")


@pytest.mark.asyncio
async def test_touch_converted_only_once(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic)
    touch = await factory.touch(affiliate, fingerprint="fp-1")
    first_patient = await factory.patient(clinic)
    second_patient = await factory.patient(clinic)

    assert await mark_touch_converted(db, touch.id, first_patient.id, T0 + timedelta(days=1)) is True
    assert await mark_touch_converted(db, touch.id, second_patient.id, T0 + timedelta(days=2)) is False

    fresh = await factory.reload(AffiliateTouch, touch.id)
    assert fresh.converted_patient_id == first_patient.id
    assert fresh.converted_at is not None


@pytest.mark.asyncio
async def test_convert_unknown_touch_or_wrong_clinic_changes_nothing(db, factory):
    clinic = await factory.clinic()
    other = await factory.clinic("Other Clinic")
    affiliate = await factory.affiliate(clinic)
    touch = await factory.touch(affiliate)
    patient = await factory.patient(clinic)

    assert await mark_touch_converted(db, uuid.uuid4(), patient.id) is False
    assert await mark_touch_converted(db, touch.id, patient.id, clinic_id=other.id) is False

    fresh = await factory.reload(AffiliateTouch, touch.id)
    assert fresh.converted_at is None
