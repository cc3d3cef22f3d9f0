# backend/affiliate_ledger/api/v1/reports.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.api.deps.service import ensure_clinic_access, require_service
from affiliate_ledger.core.commission_plans import get_tier_progress
from affiliate_ledger.core.config import settings
from affiliate_ledger.core.reporting import (
    build_leaderboard,
    build_trend_series,
    get_affiliate_commission_stats,
    get_dashboard_summary,
)
from affiliate_ledger.core.security import ServicePrincipal
from affiliate_ledger.db.session import get_db
from affiliate_ledger.schemas.reports import (
    CommissionStatsOut,
    DashboardSummaryOut,
    LeaderboardOut,
    TierProgressOut,
    TrendPointOut,
)

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/clinics/{clinic_id}/leaderboard", response_model=LeaderboardOut)
async def leaderboard(
    clinic_id: UUID,
    start: datetime,
    end: datetime,
    metric: str = Query(default="conversions", pattern=r"^(conversions|revenue|clicks|conversionRate)$"),
    limit: int = Query(default=settings.LEADERBOARD_MAX_ROWS, ge=1, le=settings.LEADERBOARD_MAX_ROWS),
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    try:
        board = await build_leaderboard(db, clinic_id=clinic_id, metric=metric, start=start, end=end, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return LeaderboardOut.model_validate(board)


@router.get("/clinics/{clinic_id}/trends", response_model=list[TrendPointOut])
async def trends(
    clinic_id: UUID,
    start: datetime,
    end: datetime,
    granularity: str = Query(default="day", pattern=r"^(day|week)$"),
    affiliate_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    try:
        points = await build_trend_series(
            db,
            clinic_id=clinic_id,
            start=start,
            end=end,
            granularity=granularity,
            affiliate_id=affiliate_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return [TrendPointOut.model_validate(p) for p in points]


@router.get("/clinics/{clinic_id}/affiliates/{affiliate_id}/dashboard", response_model=DashboardSummaryOut)
async def affiliate_dashboard(
    clinic_id: UUID,
    affiliate_id: UUID,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    summary = await get_dashboard_summary(db, affiliate_id=affiliate_id, clinic_id=clinic_id)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Affiliate not found")
    return DashboardSummaryOut.model_validate(summary)


@router.get("/clinics/{clinic_id}/affiliates/{affiliate_id}/commission-stats", response_model=CommissionStatsOut)
async def affiliate_commission_stats(
    clinic_id: UUID,
    affiliate_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    try:
        stats = await get_affiliate_commission_stats(
            db,
            affiliate_id=affiliate_id,
            clinic_id=clinic_id,
            start=start,
            end=end,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Affiliate not found")
    return CommissionStatsOut.model_validate(stats)


@router.get("/clinics/{clinic_id}/affiliates/{affiliate_id}/tier-progress", response_model=TierProgressOut)
async def affiliate_tier_progress(
    clinic_id: UUID,
    affiliate_id: UUID,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    progress = await get_tier_progress(db, affiliate_id, clinic_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No tiered plan in effect")
    return TierProgressOut.model_validate(progress)
