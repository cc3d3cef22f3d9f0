# backend/affiliate_ledger/schemas/reports.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel

# "<5" when suppressed
CountOut = Union[int, str]


class LeaderboardEntryOut(BaseModel):
    model_config = {"from_attributes": True}

    rank: int
    affiliate_id: UUID
    display_name: str
    value: Optional[Union[int, float, str]] = None
    percent_of_total: Optional[float] = None
    clicks: int
    conversions: CountOut
    revenue_cents: Optional[int] = None
    commission_cents: Optional[int] = None
    conversion_rate: Optional[float] = None


class LeaderboardTotalsOut(BaseModel):
    model_config = {"from_attributes": True}

    clicks: int
    conversions: Optional[CountOut] = None
    revenue_cents: Optional[int] = None
    commission_cents: Optional[int] = None


class LeaderboardOut(BaseModel):
    model_config = {"from_attributes": True}

    metric: str
    start: datetime
    end: datetime
    entries: list[LeaderboardEntryOut]
    totals: LeaderboardTotalsOut


class TrendPointOut(BaseModel):
    model_config = {"from_attributes": True}

    period_start: date
    conversions: CountOut
    revenue_cents: Optional[int] = None
    commission_cents: Optional[int] = None


class StatusTotalsOut(BaseModel):
    model_config = {"from_attributes": True}

    count: CountOut
    amount_cents: int


class CommissionStatsOut(BaseModel):
    model_config = {"from_attributes": True}

    affiliate_id: UUID
    start: datetime
    end: datetime
    by_status: dict[str, StatusTotalsOut]
    trend: list[TrendPointOut]


class PeriodTotalsOut(BaseModel):
    model_config = {"from_attributes": True}

    conversions: CountOut
    revenue_cents: Optional[int] = None
    commission_cents: Optional[int] = None


class FunnelOut(BaseModel):
    model_config = {"from_attributes": True}

    clicks: int
    tagged_profiles: CountOut
    intakes: CountOut
    conversion_rate: Optional[float] = None


class RefCodeStatsOut(BaseModel):
    model_config = {"from_attributes": True}

    ref_code: str
    clicks: int
    conversions: CountOut


class ClickPointOut(BaseModel):
    model_config = {"from_attributes": True}

    day: date
    clicks: int


class DashboardSummaryOut(BaseModel):
    model_config = {"from_attributes": True}

    affiliate_id: UUID
    available_cents: int
    pending_cents: int
    processing_cents: int
    paid_cents: int
    lifetime_cents: int
    this_month: PeriodTotalsOut
    last_month: PeriodTotalsOut
    funnel: FunnelOut
    top_ref_codes: list[RefCodeStatsOut]
    click_trend: list[ClickPointOut]


class TierOut(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    level: int
    name: str
    min_revenue_cents: int
    min_conversions: int


class TierProgressOut(BaseModel):
    model_config = {"from_attributes": True}

    current: Optional[TierOut] = None
    next: Optional[TierOut] = None
    progress_pct: float
