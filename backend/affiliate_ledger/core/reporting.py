# backend/affiliate_ledger/core/reporting.py
"""
Read-side aggregates over touches and commission events.

Privacy rule: a conversion count n with 0 < n < SUPPRESSION_THRESHOLD is shown as
"<5" and every number derived from it (revenue, commission, rates, shares) as None.
Zero is shown as 0. REVERSED events never count.

Every report runs a fixed number of grouped queries, whatever the number of affiliates.
"""
from __future__ import annotations

import enum
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import and_, case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.core.config import settings
from affiliate_ledger.core.dates import as_date, as_utc, month_start, previous_month_start, utcnow, week_start
from affiliate_ledger.core.statuses import AffiliateStatus, CommissionStatus, TouchType
from affiliate_ledger.crud.affiliates import get_affiliate
from affiliate_ledger.models.affiliate import Affiliate
from affiliate_ledger.models.commission_event import CommissionEvent
from affiliate_ledger.models.patient import Patient
from affiliate_ledger.models.touch import AffiliateTouch

CountValue = Union[int, str]

DASHBOARD_WINDOW_DAYS = 30
TOP_REF_CODES = 5


# -----------------------------
# Suppression
# -----------------------------
def suppression_sentinel() -> str:
    return f"<{settings.SUPPRESSION_THRESHOLD}"


def is_suppressed(count: int) -> bool:
    return 0 < count < settings.SUPPRESSION_THRESHOLD


def suppress_count(count: int) -> CountValue:
    return suppression_sentinel() if is_suppressed(count) else count


def suppress_dependent(count: int, value: Any) -> Any:
    return None if is_suppressed(count) else value


def any_suppressed(metrics) -> bool:
    return any(is_suppressed(m.conversions) for m in metrics)


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator * 100, 2)


def _window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start = as_utc(start)
    end = as_utc(end)
    if end < start:
        raise ValueError("window end must not be before start")
    return start, end


def _live_events():
    return CommissionEvent.status != CommissionStatus.REVERSED.value


# -----------------------------
# Per-affiliate metrics
# -----------------------------
@dataclass
class AffiliateMetrics:
    affiliate_id: uuid.UUID
    display_name: str
    clicks: int = 0
    conversions: int = 0
    revenue_cents: int = 0
    commission_cents: int = 0

    @property
    def conversion_rate(self) -> float:
        return _rate(self.conversions, self.clicks)


async def collect_affiliate_metrics(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> list[AffiliateMetrics]:
    """
    Clicks and non-reversed conversions/revenue/commission for every ACTIVE
    affiliate of the clinic, in (created_at, id) order. Three queries total.
    """
    start, end = _window(start, end)

    affiliates = (
        await db.execute(
            select(Affiliate.id, Affiliate.display_name)
            .where(Affiliate.clinic_id == clinic_id)
            .where(Affiliate.status == AffiliateStatus.ACTIVE.value)
            .order_by(Affiliate.created_at.asc(), Affiliate.id.asc())
        )
    ).all()
    metrics = {row.id: AffiliateMetrics(affiliate_id=row.id, display_name=row.display_name) for row in affiliates}
    if not metrics:
        return []

    clicks = await db.execute(
        select(AffiliateTouch.affiliate_id, func.count(AffiliateTouch.id))
        .where(AffiliateTouch.clinic_id == clinic_id)
        .where(AffiliateTouch.touch_type == TouchType.CLICK.value)
        .where(AffiliateTouch.created_at >= start)
        .where(AffiliateTouch.created_at <= end)
        .group_by(AffiliateTouch.affiliate_id)
    )
    for affiliate_id, n in clicks.all():
        if affiliate_id in metrics:
            metrics[affiliate_id].clicks = int(n or 0)

    events = await db.execute(
        select(
            CommissionEvent.affiliate_id,
            func.count(CommissionEvent.id),
            func.coalesce(func.sum(CommissionEvent.event_amount_cents), 0),
            func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0),
        )
        .where(CommissionEvent.clinic_id == clinic_id)
        .where(_live_events())
        .where(CommissionEvent.occurred_at >= start)
        .where(CommissionEvent.occurred_at <= end)
        .group_by(CommissionEvent.affiliate_id)
    )
    for affiliate_id, n, revenue, commission in events.all():
        if affiliate_id in metrics:
            m = metrics[affiliate_id]
            m.conversions = int(n or 0)
            m.revenue_cents = int(revenue or 0)
            m.commission_cents = int(commission or 0)

    return list(metrics.values())


# -----------------------------
# Leaderboard
# -----------------------------
class LeaderboardMetric(str, enum.Enum):
    CONVERSIONS = "conversions"
    REVENUE = "revenue"
    CLICKS = "clicks"
    CONVERSION_RATE = "conversionRate"


def _metric_value(m: AffiliateMetrics, metric: LeaderboardMetric) -> float:
    if metric is LeaderboardMetric.CONVERSIONS:
        return m.conversions
    if metric is LeaderboardMetric.REVENUE:
        return m.revenue_cents
    if metric is LeaderboardMetric.CLICKS:
        return m.clicks
    return m.conversion_rate


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    affiliate_id: uuid.UUID
    display_name: str
    value: Any
    percent_of_total: float | None
    clicks: int
    conversions: CountValue
    revenue_cents: int | None
    commission_cents: int | None
    conversion_rate: float | None


@dataclass(frozen=True)
class LeaderboardTotals:
    clicks: int
    conversions: CountValue | None
    revenue_cents: int | None
    commission_cents: int | None


@dataclass(frozen=True)
class Leaderboard:
    metric: str
    start: datetime
    end: datetime
    entries: list[LeaderboardEntry]
    totals: LeaderboardTotals


def rank_entries(
    metrics: list[AffiliateMetrics],
    metric: LeaderboardMetric,
    limit: int,
) -> list[LeaderboardEntry]:
    """
    Rank by the raw metric, descending. sorted() is stable, so equal values keep
    input order and reruns over the same snapshot return the same rows.

    A share of a conversion-derived total is hidden on every row once any row is
    suppressed; visible shares would give the masked value away by subtraction.
    """
    total_value = sum(_metric_value(m, metric) for m in metrics)
    ranked = sorted(metrics, key=lambda m: _metric_value(m, metric), reverse=True)
    hide_shares = metric is not LeaderboardMetric.CLICKS and any_suppressed(metrics)

    entries = []
    for i, m in enumerate(ranked[:limit], start=1):
        raw = _metric_value(m, metric)
        share = round(raw / total_value * 100, 2) if total_value else 0.0
        if hide_shares:
            share = None

        if metric is LeaderboardMetric.CONVERSIONS:
            value = suppress_count(m.conversions)
        elif metric is LeaderboardMetric.CLICKS:
            value = m.clicks
        else:
            value = suppress_dependent(m.conversions, raw)

        entries.append(
            LeaderboardEntry(
                rank=i,
                affiliate_id=m.affiliate_id,
                display_name=m.display_name,
                value=value,
                percent_of_total=share if metric is LeaderboardMetric.CLICKS else suppress_dependent(m.conversions, share),
                clicks=m.clicks,
                conversions=suppress_count(m.conversions),
                revenue_cents=suppress_dependent(m.conversions, m.revenue_cents),
                commission_cents=suppress_dependent(m.conversions, m.commission_cents),
                conversion_rate=suppress_dependent(m.conversions, m.conversion_rate),
            )
        )
    return entries


async def build_leaderboard(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    metric: str,
    start: datetime,
    end: datetime,
    limit: int = 50,
) -> Leaderboard:
    chosen = LeaderboardMetric(metric)
    if limit < 1:
        raise ValueError("limit must be >= 1")
    limit = min(limit, settings.LEADERBOARD_MAX_ROWS)
    start, end = _window(start, end)

    metrics = await collect_affiliate_metrics(db, clinic_id=clinic_id, start=start, end=end)

    conversions = sum(m.conversions for m in metrics)
    if is_suppressed(conversions) or not any_suppressed(metrics):
        totals = LeaderboardTotals(
            clicks=sum(m.clicks for m in metrics),
            conversions=suppress_count(conversions),
            revenue_cents=suppress_dependent(conversions, sum(m.revenue_cents for m in metrics)),
            commission_cents=suppress_dependent(conversions, sum(m.commission_cents for m in metrics)),
        )
    else:
        # a visible total minus the visible rows would reveal the masked ones
        totals = LeaderboardTotals(
            clicks=sum(m.clicks for m in metrics),
            conversions=None,
            revenue_cents=None,
            commission_cents=None,
        )
    return Leaderboard(
        metric=chosen.value,
        start=start,
        end=end,
        entries=rank_entries(metrics, chosen, limit),
        totals=totals,
    )


# -----------------------------
# Trend series
# -----------------------------
class Granularity(str, enum.Enum):
    DAY = "day"
    WEEK = "week"


@dataclass(frozen=True)
class TrendPoint:
    period_start: date
    conversions: CountValue
    revenue_cents: int | None
    commission_cents: int | None


@dataclass
class _Bucket:
    conversions: int = 0
    revenue_cents: int = 0
    commission_cents: int = 0


def _masked(day: date, b: _Bucket) -> TrendPoint:
    return TrendPoint(
        period_start=day,
        conversions=suppress_count(b.conversions),
        revenue_cents=suppress_dependent(b.conversions, b.revenue_cents),
        commission_cents=suppress_dependent(b.conversions, b.commission_cents),
    )


def _days(first: date, last: date) -> list[date]:
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def shape_trend(daily: dict[date, _Bucket], first: date, last: date, granularity: Granularity) -> list[TrendPoint]:
    """Daily: dense, zero-filled. Weekly: Monday-start buckets that have data."""
    if granularity is Granularity.DAY:
        return [_masked(d, daily.get(d, _Bucket())) for d in _days(first, last)]

    weeks: dict[date, _Bucket] = defaultdict(_Bucket)
    for d, b in daily.items():
        w = weeks[week_start(d)]
        w.conversions += b.conversions
        w.revenue_cents += b.revenue_cents
        w.commission_cents += b.commission_cents
    return [_masked(w, weeks[w]) for w in sorted(weeks)]


async def build_trend_series(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    start: datetime,
    end: datetime,
    granularity: str = Granularity.DAY.value,
    affiliate_id: uuid.UUID | None = None,
) -> list[TrendPoint]:
    chosen = Granularity(granularity)
    start, end = _window(start, end)
    if (end - start).days > settings.TREND_MAX_DAYS:
        raise ValueError(f"trend window is limited to {settings.TREND_MAX_DAYS} days")

    day_col = func.date(CommissionEvent.occurred_at)
    stmt = (
        select(
            day_col.label("day"),
            func.count(CommissionEvent.id),
            func.coalesce(func.sum(CommissionEvent.event_amount_cents), 0),
            func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0),
        )
        .where(CommissionEvent.clinic_id == clinic_id)
        .where(_live_events())
        .where(CommissionEvent.occurred_at >= start)
        .where(CommissionEvent.occurred_at <= end)
        .group_by(day_col)
    )
    if affiliate_id is not None:
        stmt = stmt.where(CommissionEvent.affiliate_id == affiliate_id)

    daily: dict[date, _Bucket] = {}
    for day, n, revenue, commission in (await db.execute(stmt)).all():
        daily[as_date(day)] = _Bucket(int(n or 0), int(revenue or 0), int(commission or 0))

    return shape_trend(daily, start.date(), end.date(), chosen)


# -----------------------------
# Affiliate views
# -----------------------------
@dataclass(frozen=True)
class StatusTotals:
    count: CountValue
    amount_cents: int


@dataclass(frozen=True)
class CommissionStats:
    affiliate_id: uuid.UUID
    start: datetime
    end: datetime
    by_status: dict[str, StatusTotals]
    trend: list[TrendPoint]


async def get_affiliate_commission_stats(
    db: AsyncSession,
    *,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Optional[CommissionStats]:
    """
    Per-status counts (suppressed) and commission sums over the window, plus a
    dense daily trend. Defaults to the last 30 days.
    """
    end = as_utc(end) if end else utcnow()
    start = as_utc(start) if start else end - timedelta(days=DASHBOARD_WINDOW_DAYS)
    start, end = _window(start, end)

    affiliate = await get_affiliate(db, affiliate_id, clinic_id)
    if not affiliate:
        return None

    rows = await db.execute(
        select(
            CommissionEvent.status,
            func.count(CommissionEvent.id),
            func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0),
        )
        .where(CommissionEvent.affiliate_id == affiliate_id)
        .where(CommissionEvent.clinic_id == clinic_id)
        .where(CommissionEvent.occurred_at >= start)
        .where(CommissionEvent.occurred_at <= end)
        .group_by(CommissionEvent.status)
    )
    by_status = {s.value: StatusTotals(count=0, amount_cents=0) for s in CommissionStatus}
    for status, n, amount in rows.all():
        by_status[status] = StatusTotals(count=suppress_count(int(n or 0)), amount_cents=int(amount or 0))

    trend = await build_trend_series(
        db,
        clinic_id=clinic_id,
        start=start,
        end=end,
        granularity=Granularity.DAY.value,
        affiliate_id=affiliate_id,
    )
    return CommissionStats(affiliate_id=affiliate_id, start=start, end=end, by_status=by_status, trend=trend)


@dataclass(frozen=True)
class PeriodTotals:
    conversions: CountValue
    revenue_cents: int | None
    commission_cents: int | None


@dataclass(frozen=True)
class Funnel:
    clicks: int
    tagged_profiles: CountValue
    intakes: CountValue
    conversion_rate: float | None


@dataclass(frozen=True)
class RefCodeStats:
    ref_code: str
    clicks: int
    conversions: CountValue


@dataclass(frozen=True)
class ClickPoint:
    day: date
    clicks: int


@dataclass(frozen=True)
class DashboardSummary:
    affiliate_id: uuid.UUID
    available_cents: int
    pending_cents: int
    processing_cents: int
    paid_cents: int
    lifetime_cents: int
    this_month: PeriodTotals
    last_month: PeriodTotals
    funnel: Funnel
    top_ref_codes: list[RefCodeStats] = field(default_factory=list)
    click_trend: list[ClickPoint] = field(default_factory=list)


def _sum_if(condition, column):
    return func.coalesce(func.sum(case((condition, column), else_=0)), 0)


def _period(n: int, revenue: int, commission: int) -> PeriodTotals:
    return PeriodTotals(
        conversions=suppress_count(n),
        revenue_cents=suppress_dependent(n, revenue),
        commission_cents=suppress_dependent(n, commission),
    )


async def get_dashboard_summary(
    db: AsyncSession,
    *,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[DashboardSummary]:
    """
    Balances are the affiliate's own money and are never suppressed; every
    conversion-derived figure is.
    """
    now = as_utc(now) if now else utcnow()
    affiliate = await get_affiliate(db, affiliate_id, clinic_id)
    if not affiliate:
        return None

    ev = CommissionEvent
    mine = (ev.affiliate_id == affiliate_id, ev.clinic_id == clinic_id)
    amount = ev.commission_amount_cents

    balances = (
        await db.execute(
            select(
                _sum_if(and_(ev.status == CommissionStatus.APPROVED.value, ev.payout_id.is_(None)), amount),
                _sum_if(ev.status == CommissionStatus.PENDING.value, amount),
                _sum_if(and_(ev.status == CommissionStatus.APPROVED.value, ev.payout_id.is_not(None)), amount),
                _sum_if(ev.status == CommissionStatus.PAID.value, amount),
                _sum_if(_live_events(), amount),
            ).where(*mine)
        )
    ).one()

    this_start = month_start(now)
    last_start = previous_month_start(now)
    in_this = ev.occurred_at >= this_start
    months = (
        await db.execute(
            select(
                _sum_if(in_this, 1),
                _sum_if(in_this, ev.event_amount_cents),
                _sum_if(in_this, amount),
                _sum_if(~in_this, 1),
                _sum_if(~in_this, ev.event_amount_cents),
                _sum_if(~in_this, amount),
            )
            .where(*mine)
            .where(_live_events())
            .where(ev.occurred_at >= last_start)
            .where(ev.occurred_at <= now)
        )
    ).one()

    # funnel + trends over the trailing window
    first_day = (now - timedelta(days=DASHBOARD_WINDOW_DAYS - 1)).date()
    window_start = datetime(first_day.year, first_day.month, first_day.day, tzinfo=now.tzinfo)

    clicks_q = (
        select(AffiliateTouch.ref_code, func.count(AffiliateTouch.id).label("clicks"))
        .where(AffiliateTouch.affiliate_id == affiliate_id)
        .where(AffiliateTouch.clinic_id == clinic_id)
        .where(AffiliateTouch.touch_type == TouchType.CLICK.value)
        .where(AffiliateTouch.created_at >= window_start)
        .where(AffiliateTouch.created_at <= now)
    )
    clicks_by_code = {
        code: int(n or 0) for code, n in (await db.execute(clicks_q.group_by(AffiliateTouch.ref_code))).all()
    }
    total_clicks = sum(clicks_by_code.values())

    tagged = (
        await db.execute(
            select(func.count(Patient.id))
            .where(Patient.clinic_id == clinic_id)
            .where(Patient.attribution_affiliate_id == affiliate_id)
            .where(Patient.attribution_first_touch_at >= window_start)
            .where(Patient.attribution_first_touch_at <= now)
        )
    ).scalar() or 0

    window_events = (
        select(ev.ref_code, func.count(ev.id))
        .where(*mine)
        .where(_live_events())
        .where(ev.occurred_at >= window_start)
        .where(ev.occurred_at <= now)
        .group_by(ev.ref_code)
    )
    conversions_by_code: dict[str, int] = {}
    for code, n in (await db.execute(window_events)).all():
        if code:
            conversions_by_code[code] = int(n or 0)
    intakes = (
        await db.execute(
            select(func.count(distinct(ev.patient_id)))
            .where(*mine)
            .where(_live_events())
            .where(ev.occurred_at >= window_start)
            .where(ev.occurred_at <= now)
        )
    ).scalar() or 0

    top_codes = sorted(clicks_by_code.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_REF_CODES]

    day_col = func.date(AffiliateTouch.created_at)
    per_day = {
        as_date(day): int(n or 0)
        for day, n in (
            await db.execute(
                select(day_col, func.count(AffiliateTouch.id))
                .where(AffiliateTouch.affiliate_id == affiliate_id)
                .where(AffiliateTouch.clinic_id == clinic_id)
                .where(AffiliateTouch.touch_type == TouchType.CLICK.value)
                .where(AffiliateTouch.created_at >= window_start)
                .where(AffiliateTouch.created_at <= now)
                .group_by(day_col)
            )
        ).all()
    }

    return DashboardSummary(
        affiliate_id=affiliate_id,
        available_cents=int(balances[0]),
        pending_cents=int(balances[1]),
        processing_cents=int(balances[2]),
        paid_cents=int(balances[3]),
        lifetime_cents=int(balances[4]),
        this_month=_period(int(months[0]), int(months[1]), int(months[2])),
        last_month=_period(int(months[3]), int(months[4]), int(months[5])),
        funnel=Funnel(
            clicks=total_clicks,
            tagged_profiles=suppress_count(int(tagged)),
            intakes=suppress_count(int(intakes)),
            conversion_rate=suppress_dependent(int(intakes), _rate(int(intakes), total_clicks)),
        ),
        top_ref_codes=[
            RefCodeStats(ref_code=code, clicks=n, conversions=suppress_count(conversions_by_code.get(code, 0)))
            for code, n in top_codes
        ],
        click_trend=[ClickPoint(day=d, clicks=per_day.get(d, 0)) for d in _days(first_day, now.date())],
    )
