# tests/test_reporting.py
from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from affiliate_ledger.core.payouts import batch_payout
from affiliate_ledger.core.reporting import (
    AffiliateMetrics,
    LeaderboardMetric,
    build_leaderboard,
    build_trend_series,
    get_affiliate_commission_stats,
    get_dashboard_summary,
    rank_entries,
    suppress_count,
    suppress_dependent,
)
from affiliate_ledger.db.session import engine as app_engine

from conftest import T0, requires_postgres

START = T0 - timedelta(days=1)
END = T0 + timedelta(days=1)


async def affiliate_with_conversions(
    factory,
    clinic,
    ref_code: str,
    conversions: int,
    *,
    amount_cents: int = 10_000,
    clicks: int = 0,
    status: str = "ACTIVE",
):
    affiliate = await factory.affiliate(clinic, ref_code=ref_code, display_name=ref_code.title(), status=status)
    patient = await factory.attributed_patient(clinic, affiliate, ref_code=ref_code)
    for _ in range(conversions):
        await factory.event(
            affiliate,
            patient,
            amount_cents=amount_cents,
            commission_cents=amount_cents // 10,
            status="APPROVED",
            ref_code=ref_code,
        )
    for _ in range(clicks):
        await factory.touch(affiliate, ref_code=ref_code, created_at=T0)
    return affiliate, patient


def by_name(board):
    return {e.display_name: e for e in board.entries}


# -----------------------------
# Suppression
# -----------------------------
def test_small_counts_are_masked():
    assert suppress_count(0) == 0
    assert suppress_count(1) == "<5"
    assert suppress_count(4) == "<5"
    assert suppress_count(5) == 5
    assert suppress_dependent(3, 12_345) is None
    assert suppress_dependent(0, 0) == 0
    assert suppress_dependent(7, 12_345) == 12_345


def test_ranking_is_stable_on_raw_values():
    metrics = [
        AffiliateMetrics(uuid.uuid4(), "First", clicks=2),
        AffiliateMetrics(uuid.uuid4(), "Second", clicks=9),
        AffiliateMetrics(uuid.uuid4(), "Third", clicks=2),
    ]

    entries = rank_entries(metrics, LeaderboardMetric.CLICKS, limit=10)

    assert [e.display_name for e in entries] == ["Second", "First", "Third"]
    assert [e.rank for e in entries] == [1, 2, 3]
    assert entries == rank_entries(metrics, LeaderboardMetric.CLICKS, limit=10)


# -----------------------------
# Leaderboard
# -----------------------------
@pytest.mark.asyncio
async def test_leaderboard_masks_small_conversion_counts(db, factory):
    clinic = await factory.clinic()
    alpha, alpha_patient = await affiliate_with_conversions(factory, clinic, "ALPHA", 5, clicks=10)
    await affiliate_with_conversions(factory, clinic, "BRAVO", 3, amount_cents=30_000, clicks=3)
    await affiliate_with_conversions(factory, clinic, "CHARLIE", 0, clicks=4)
    await factory.event(alpha, alpha_patient, status="REVERSED", ref_code="ALPHA")

    board = await build_leaderboard(db, clinic_id=clinic.id, metric="conversions", start=START, end=END)

    assert [e.display_name for e in board.entries] == ["Alpha", "Bravo", "Charlie"]
    rows = by_name(board)

    assert rows["Alpha"].value == 5
    assert rows["Alpha"].conversions == 5
    assert rows["Alpha"].revenue_cents == 50_000
    assert rows["Alpha"].commission_cents == 5_000
    assert rows["Alpha"].conversion_rate == 50.0
    assert rows["Alpha"].percent_of_total is None

    assert rows["Bravo"].value == "<5"
    assert rows["Bravo"].conversions == "<5"
    assert rows["Bravo"].revenue_cents is None
    assert rows["Bravo"].commission_cents is None
    assert rows["Bravo"].conversion_rate is None
    assert rows["Bravo"].percent_of_total is None
    assert rows["Bravo"].clicks == 3

    assert rows["Charlie"].value == 0
    assert rows["Charlie"].conversions == 0
    assert rows["Charlie"].revenue_cents == 0
    assert rows["Charlie"].conversion_rate == 0.0

    assert board.totals.clicks == 17
    assert board.totals.conversions is None
    assert board.totals.revenue_cents is None
    assert board.totals.commission_cents is None


@pytest.mark.asyncio
async def test_leaderboard_ranks_on_raw_values_behind_the_mask(db, factory):
    clinic = await factory.clinic()
    await affiliate_with_conversions(factory, clinic, "ALPHA", 5, clicks=10)
    await affiliate_with_conversions(factory, clinic, "BRAVO", 3, amount_cents=30_000, clicks=3)
    await affiliate_with_conversions(factory, clinic, "CHARLIE", 0, clicks=4)

    revenue = await build_leaderboard(db, clinic_id=clinic.id, metric="revenue", start=START, end=END)
    clicks = await build_leaderboard(db, clinic_id=clinic.id, metric="clicks", start=START, end=END)
    rate = await build_leaderboard(db, clinic_id=clinic.id, metric="conversionRate", start=START, end=END)

    assert [e.display_name for e in revenue.entries] == ["Bravo", "Alpha", "Charlie"]
    assert revenue.entries[0].value is None
    assert revenue.entries[1].value == 50_000
    assert revenue.entries[1].percent_of_total is None

    # clicks are not conversion-derived and stay visible
    assert [e.display_name for e in clicks.entries] == ["Alpha", "Charlie", "Bravo"]
    assert clicks.entries[2].value == 3
    assert clicks.entries[2].percent_of_total == 17.65

    assert [e.display_name for e in rate.entries] == ["Bravo", "Alpha", "Charlie"]
    assert rate.entries[0].value is None
    assert rate.entries[1].value == 50.0


@pytest.mark.asyncio
async def test_leaderboard_totals_are_masked_too(db, factory):
    clinic = await factory.clinic()
    await affiliate_with_conversions(factory, clinic, "ALPHA", 2, clicks=1)
    await affiliate_with_conversions(factory, clinic, "BRAVO", 1)

    board = await build_leaderboard(db, clinic_id=clinic.id, metric="conversions", start=START, end=END)

    assert board.totals.conversions == "<5"
    assert board.totals.revenue_cents is None
    assert board.totals.commission_cents is None
    assert board.totals.clicks == 1


@pytest.mark.asyncio
async def test_leaderboard_shows_shares_and_totals_when_nothing_is_masked(db, factory):
    clinic = await factory.clinic()
    await affiliate_with_conversions(factory, clinic, "ALPHA", 6)
    await affiliate_with_conversions(factory, clinic, "BRAVO", 5)
    await affiliate_with_conversions(factory, clinic, "CHARLIE", 0)

    board = await build_leaderboard(db, clinic_id=clinic.id, metric="revenue", start=START, end=END)
    rows = by_name(board)

    assert rows["Alpha"].percent_of_total == 54.55
    assert rows["Bravo"].percent_of_total == 45.45
    assert rows["Charlie"].percent_of_total == 0.0
    assert board.totals.conversions == 11
    assert board.totals.revenue_cents == 110_000
    assert board.totals.commission_cents == 11_000


@pytest.mark.asyncio
async def test_leaderboard_ties_follow_creation_order(db, factory):
    clinic = await factory.clinic()
    for code in ("DELTA", "ECHO", "FOXTROT"):
        await affiliate_with_conversions(factory, clinic, code, 0)
    await affiliate_with_conversions(factory, clinic, "GOLF", 9, status="INACTIVE")

    first = await build_leaderboard(db, clinic_id=clinic.id, metric="conversions", start=START, end=END)
    second = await build_leaderboard(db, clinic_id=clinic.id, metric="conversions", start=START, end=END)

    assert [e.display_name for e in first.entries] == ["Delta", "Echo", "Foxtrot"]
    assert first.entries == second.entries
    assert all(e.percent_of_total == 0.0 for e in first.entries)


@pytest.mark.asyncio
async def test_leaderboard_limits_and_validation(db, factory):
    clinic = await factory.clinic()
    await affiliate_with_conversions(factory, clinic, "ALPHA", 6)
    await affiliate_with_conversions(factory, clinic, "BRAVO", 5)

    top = await build_leaderboard(db, clinic_id=clinic.id, metric="conversions", start=START, end=END, limit=1)
    assert [e.display_name for e in top.entries] == ["Alpha"]
    assert top.totals.conversions == 11

    with pytest.raises(ValueError):
        await build_leaderboard(db, clinic_id=clinic.id, metric="conversions", start=END, end=START)
    with pytest.raises(ValueError):
        await build_leaderboard(db, clinic_id=clinic.id, metric="bogus", start=START, end=END)
    with pytest.raises(ValueError):
        await build_leaderboard(db, clinic_id=clinic.id, metric="clicks", start=START, end=END, limit=0)

    empty = await build_leaderboard(db, clinic_id=uuid.uuid4(), metric="revenue", start=START, end=END)
    assert empty.entries == []
    assert empty.totals.conversions == 0


# -----------------------------
# Trends
# -----------------------------
async def trend_fixture(factory):
    clinic = await factory.clinic()
    affiliate, patient = await affiliate_with_conversions(factory, clinic, "ALPHA", 5)
    await factory.event(affiliate, patient, occurred_at=T0 + timedelta(days=2))
    await factory.event(affiliate, patient, occurred_at=T0 + timedelta(days=8))
    await factory.event(affiliate, patient, status="REVERSED")
    await affiliate_with_conversions(factory, clinic, "BRAVO", 1)
    return clinic, affiliate


@pytest.mark.asyncio
async def test_daily_trend_is_dense_and_masked(db, factory):
    clinic, alpha = await trend_fixture(factory)
    start = datetime(2026, 3, 2, tzinfo=timezone.utc)
    end = datetime(2026, 3, 4, 23, 59, tzinfo=timezone.utc)

    points = await build_trend_series(db, clinic_id=clinic.id, start=start, end=end, affiliate_id=alpha.id)

    assert [p.period_start for p in points] == [date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4)]
    assert points[0].conversions == 5
    assert points[0].revenue_cents == 50_000
    assert points[0].commission_cents == 5_000
    assert (points[1].conversions, points[1].revenue_cents, points[1].commission_cents) == (0, 0, 0)
    assert (points[2].conversions, points[2].revenue_cents, points[2].commission_cents) == ("<5", None, None)

    clinic_wide = await build_trend_series(db, clinic_id=clinic.id, start=start, end=end)
    assert clinic_wide[0].conversions == 6


@pytest.mark.asyncio
async def test_weekly_trend_only_has_populated_weeks(db, factory):
    clinic, alpha = await trend_fixture(factory)
    start = datetime(2026, 3, 2, tzinfo=timezone.utc)
    end = datetime(2026, 3, 22, 23, 59, tzinfo=timezone.utc)

    points = await build_trend_series(
        db, clinic_id=clinic.id, start=start, end=end, granularity="week", affiliate_id=alpha.id
    )

    assert [p.period_start for p in points] == [date(2026, 3, 2), date(2026, 3, 9)]
    assert points[0].conversions == 6
    assert points[0].revenue_cents == 60_000
    assert points[1].conversions == "<5"


@pytest.mark.asyncio
async def test_daily_trend_buckets_by_utc_day(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic)
    patient = await factory.attributed_patient(clinic, affiliate)
    late = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc)
    early = datetime(2026, 3, 3, 0, 30, tzinfo=timezone.utc)
    for _ in range(5):
        await factory.event(affiliate, patient, occurred_at=late)
    for _ in range(6):
        await factory.event(affiliate, patient, occurred_at=early)

    points = await build_trend_series(
        db,
        clinic_id=clinic.id,
        start=datetime(2026, 3, 2, tzinfo=timezone.utc),
        end=datetime(2026, 3, 3, 23, 59, tzinfo=timezone.utc),
    )

    assert [(p.period_start, p.conversions) for p in points] == [(date(2026, 3, 2), 5), (date(2026, 3, 3), 6)]


@requires_postgres
@pytest.mark.asyncio
async def test_app_engine_sessions_run_in_utc():
    async with app_engine.connect() as conn:
        assert (await conn.execute(text("SHOW timezone"))).scalar_one() == "UTC"


@pytest.mark.asyncio
async def test_trend_window_validation(db, factory):
    clinic = await factory.clinic()

    with pytest.raises(ValueError):
        await build_trend_series(db, clinic_id=clinic.id, start=END, end=START)
    with pytest.raises(ValueError):
        await build_trend_series(db, clinic_id=clinic.id, start=T0 - timedelta(days=400), end=T0)
    with pytest.raises(ValueError):
        await build_trend_series(db, clinic_id=clinic.id, start=START, end=END, granularity="month")


# -----------------------------
# Affiliate views
# -----------------------------
@pytest.mark.asyncio
async def test_commission_stats_by_status(db, factory):
    clinic = await factory.clinic()
    affiliate, patient = await affiliate_with_conversions(factory, clinic, "ALPHA", 5)
    await factory.event(affiliate, patient, commission_cents=1000, status="PENDING")
    await factory.event(affiliate, patient, commission_cents=1000, status="REVERSED")

    stats = await get_affiliate_commission_stats(
        db, affiliate_id=affiliate.id, clinic_id=clinic.id, start=START, end=END
    )

    assert set(stats.by_status) == {"PENDING", "APPROVED", "PAID", "REVERSED"}
    assert stats.by_status["APPROVED"].count == 5
    assert stats.by_status["APPROVED"].amount_cents == 5000
    assert stats.by_status["PENDING"].count == "<5"
    assert stats.by_status["PENDING"].amount_cents == 1000
    assert stats.by_status["PAID"].count == 0
    assert stats.by_status["REVERSED"].count == "<5"

    assert len(stats.trend) == 3
    assert stats.trend[1].period_start == T0.date()
    assert stats.trend[1].conversions == 6

    assert await get_affiliate_commission_stats(db, affiliate_id=affiliate.id, clinic_id=uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_dashboard_summary(db, factory):
    clinic = await factory.clinic()
    affiliate = await factory.affiliate(clinic, ref_code="SPRING24")
    await factory.ref_code(affiliate, "ALT")
    patient = await factory.attributed_patient(clinic, affiliate)

    await factory.event(affiliate, patient, commission_cents=3000, status="APPROVED")
    await batch_payout(db, affiliate.id, clinic_id=clinic.id)
    await factory.event(affiliate, patient, commission_cents=2000, status="APPROVED")
    await factory.event(affiliate, patient, commission_cents=500, status="PENDING")
    await factory.event(affiliate, patient, commission_cents=500, status="PENDING")
    await factory.event(affiliate, patient, commission_cents=4000, status="PAID")
    await factory.event(affiliate, patient, commission_cents=999, status="REVERSED")
    await factory.event(affiliate, patient, commission_cents=100, status="APPROVED", occurred_at=T0 - timedelta(days=20))

    for _ in range(3):
        await factory.touch(affiliate, ref_code="SPRING24", created_at=T0 - timedelta(days=1))
    await factory.touch(affiliate, ref_code="ALT", created_at=T0 - timedelta(days=2))
    await factory.touch(affiliate, ref_code="ALT", created_at=T0 - timedelta(days=2), touch_type="IMPRESSION")
    await factory.touch(affiliate, ref_code="SPRING24", created_at=T0 - timedelta(days=40))

    now = T0 + timedelta(hours=1)
    summary = await get_dashboard_summary(db, affiliate_id=affiliate.id, clinic_id=clinic.id, now=now)

    assert summary.available_cents == 2100
    assert summary.pending_cents == 1000
    assert summary.processing_cents == 3000
    assert summary.paid_cents == 4000
    assert summary.lifetime_cents == 10_100

    assert summary.this_month.conversions == 5
    assert summary.this_month.revenue_cents == 50_000
    assert summary.this_month.commission_cents == 10_000
    assert summary.last_month.conversions == "<5"
    assert summary.last_month.revenue_cents is None

    assert summary.funnel.clicks == 4
    assert summary.funnel.tagged_profiles == "<5"
    assert summary.funnel.intakes == "<5"
    assert summary.funnel.conversion_rate is None

    assert [(c.ref_code, c.clicks) for c in summary.top_ref_codes] == [("SPRING24", 3), ("ALT", 1)]
    assert summary.top_ref_codes[0].conversions == 6
    assert summary.top_ref_codes[1].conversions == 0

    assert len(summary.click_trend) == 30
    assert summary.click_trend[-1].day == T0.date()
    trend = {p.day: p.clicks for p in summary.click_trend}
    assert trend[date(2026, 3, 1)] == 3
    assert trend[date(2026, 2, 28)] == 1
    assert trend[T0.date()] == 0

    assert await get_dashboard_summary(db, affiliate_id=uuid.uuid4(), clinic_id=clinic.id, now=now) is None
