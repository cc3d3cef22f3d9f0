# backend/affiliate_ledger/core/commission_plans.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.core.dates import as_utc, utcnow
from affiliate_ledger.core.errors import PlanAssignmentOverlapError, storage_guard
from affiliate_ledger.core.statuses import PlanType, TierMetric
from affiliate_ledger.models.affiliate import Affiliate
from affiliate_ledger.models.commission_plan import (
    CommissionPlan,
    CommissionTier,
    PlanAssignment,
    ProductRate,
)

logger = logging.getLogger(__name__)


# -----------------------------
# Rate schedules
# -----------------------------
@dataclass(frozen=True)
class Flat:
    amount_cents: int


@dataclass(frozen=True)
class Percent:
    bps: int


@dataclass(frozen=True)
class Hybrid:
    amount_cents: int
    bps: int


RateSchedule = Union[Flat, Percent, Hybrid]


def schedule_from_fields(plan_type: str, flat_amount_cents: int | None, percent_bps: int | None) -> RateSchedule:
    kind = PlanType(plan_type)
    if kind is PlanType.FLAT:
        return Flat(amount_cents=flat_amount_cents or 0)
    if kind is PlanType.PERCENT:
        return Percent(bps=percent_bps or 0)
    return Hybrid(amount_cents=flat_amount_cents or 0, bps=percent_bps or 0)


def override_schedule(
    schedule: RateSchedule,
    *,
    flat_amount_cents: int | None = None,
    percent_bps: int | None = None,
) -> RateSchedule:
    """Swap in tier values. A term the variant does not use stays unused."""
    if isinstance(schedule, Flat):
        return Flat(flat_amount_cents) if flat_amount_cents is not None else schedule
    if isinstance(schedule, Percent):
        return Percent(percent_bps) if percent_bps is not None else schedule
    return Hybrid(
        amount_cents=schedule.amount_cents if flat_amount_cents is None else flat_amount_cents,
        bps=schedule.bps if percent_bps is None else percent_bps,
    )


def compute_commission_cents(amount_cents: int, schedule: RateSchedule) -> int:
    """
    flat + round(amount * bps / 10000), halves rounded up, clamped to [0, amount].
    """
    if amount_cents < 0:
        raise ValueError("amount_cents must be >= 0")

    flat = 0
    bps = 0
    if isinstance(schedule, Flat):
        flat = schedule.amount_cents
    elif isinstance(schedule, Percent):
        bps = schedule.bps
    else:
        flat = schedule.amount_cents
        bps = schedule.bps

    percent_part = (amount_cents * max(bps, 0) + 5000) // 10000
    return max(0, min(amount_cents, flat + percent_part))


@dataclass(frozen=True)
class PlanRates:
    initial: RateSchedule
    recurring: RateSchedule


def plan_rates(plan: CommissionPlan) -> PlanRates:
    initial = schedule_from_fields(plan.plan_type, plan.initial_flat_amount_cents, plan.initial_percent_bps)
    if plan.recurring_flat_amount_cents is None and plan.recurring_percent_bps is None:
        # no recurring terms configured: recurring payments earn the initial terms
        recurring = initial
    else:
        recurring = schedule_from_fields(plan.plan_type, plan.recurring_flat_amount_cents, plan.recurring_percent_bps)
    return PlanRates(initial=initial, recurring=recurring)


def product_rate_schedule(rate: ProductRate) -> RateSchedule:
    if rate.percent_bps is not None:
        return Percent(rate.percent_bps)
    return Flat(rate.flat_amount_cents or 0)


def describe_product_rate(rate: ProductRate) -> str:
    if rate.product_sku:
        return f"SKU: {rate.product_sku}"
    if rate.product_category:
        return f"Category: {rate.product_category}"
    return f"Price range: {rate.min_price_cents}-{rate.max_price_cents}"


def select_product_rate(
    rates: Iterable[ProductRate],
    *,
    product_sku: str | None,
    product_category: str | None,
    amount_cents: int,
) -> ProductRate | None:
    """Highest priority active rule wins; within a rule SKU, then category, then price range."""
    active = sorted((r for r in rates if r.is_active), key=lambda r: r.priority, reverse=True)
    for rule in active:
        if rule.product_sku and product_sku and rule.product_sku == product_sku:
            return rule
        if (
            rule.product_category
            and product_category
            and rule.product_category.lower() == product_category.lower()
        ):
            return rule
        if rule.min_price_cents is not None and rule.max_price_cents is not None:
            if rule.min_price_cents <= amount_cents <= rule.max_price_cents:
                return rule
    return None


# -----------------------------
# Tiers
# -----------------------------
def _tier_met(tier: CommissionTier, metric: str, revenue_cents: int, conversions: int) -> bool:
    if metric == TierMetric.CONVERSIONS.value:
        return conversions >= tier.min_conversions
    if metric == TierMetric.BOTH.value:
        return revenue_cents >= tier.min_revenue_cents and conversions >= tier.min_conversions
    return revenue_cents >= tier.min_revenue_cents


def resolve_tier(
    tiers: Iterable[CommissionTier],
    *,
    metric: str,
    revenue_cents: int,
    conversions: int,
) -> CommissionTier | None:
    """Highest level whose threshold is met."""
    current = None
    for tier in sorted(tiers, key=lambda t: t.level):
        if _tier_met(tier, metric, revenue_cents, conversions):
            current = tier
    return current


def _progress_pct(value: int, threshold: int) -> float:
    if threshold <= 0:
        return 100.0
    return min(100.0, value / threshold * 100)


@dataclass(frozen=True)
class TierProgress:
    current: CommissionTier | None
    next: CommissionTier | None
    progress_pct: float


def tier_progress(
    tiers: Iterable[CommissionTier],
    *,
    metric: str,
    revenue_cents: int,
    conversions: int,
) -> TierProgress:
    ordered = sorted(tiers, key=lambda t: t.level)
    current = resolve_tier(ordered, metric=metric, revenue_cents=revenue_cents, conversions=conversions)
    higher = [t for t in ordered if current is None or t.level > current.level]
    if not higher:
        return TierProgress(current=current, next=None, progress_pct=100.0)

    nxt = higher[0]
    if metric == TierMetric.CONVERSIONS.value:
        pct = _progress_pct(conversions, nxt.min_conversions)
    elif metric == TierMetric.BOTH.value:
        pct = min(
            _progress_pct(revenue_cents, nxt.min_revenue_cents),
            _progress_pct(conversions, nxt.min_conversions),
        )
    else:
        pct = _progress_pct(revenue_cents, nxt.min_revenue_cents)
    return TierProgress(current=current, next=nxt, progress_pct=pct)


# -----------------------------
# Assignments
# -----------------------------
async def resolve_effective_plan(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
    at: datetime,
) -> Optional[PlanAssignment]:
    """
    The assignment whose [effective_from, effective_to] contains `at`;
    most recent effective_from wins. Plan, tiers and product rates are eager-loaded.
    """
    at = as_utc(at)
    stmt = (
        select(PlanAssignment)
        .where(PlanAssignment.affiliate_id == affiliate_id)
        .where(PlanAssignment.clinic_id == clinic_id)
        .where(PlanAssignment.effective_from <= at)
        .where(or_(PlanAssignment.effective_to.is_(None), PlanAssignment.effective_to >= at))
        .order_by(PlanAssignment.effective_from.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _find_overlap(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    start: datetime,
    end: datetime | None,
    exclude_id: uuid.UUID | None = None,
) -> PlanAssignment | None:
    # closed intervals: [a.from, a.to] and [start, end] share an instant
    stmt = (
        select(PlanAssignment)
        .where(PlanAssignment.affiliate_id == affiliate_id)
        .where(or_(PlanAssignment.effective_to.is_(None), PlanAssignment.effective_to >= start))
    )
    if end is not None:
        stmt = stmt.where(PlanAssignment.effective_from <= end)
    if exclude_id is not None:
        stmt = stmt.where(PlanAssignment.id != exclude_id)
    return (await db.execute(stmt.order_by(PlanAssignment.effective_from).limit(1))).scalar_one_or_none()


async def assign_plan(
    db: AsyncSession,
    *,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
    plan_id: uuid.UUID,
    effective_from: datetime,
    effective_to: Optional[datetime] = None,
) -> PlanAssignment:
    """
    Create an assignment. Raises PlanAssignmentOverlapError if the interval
    shares any instant with another assignment of the affiliate.
    The affiliate row is locked so two concurrent assignments cannot both pass the check.
    """
    start = as_utc(effective_from)
    end = as_utc(effective_to) if effective_to else None
    if end is not None and end < start:
        raise ValueError("effective_to must not be before effective_from")

    async with storage_guard(db, "assign_plan", affiliate_id=str(affiliate_id), plan_id=str(plan_id)):
        affiliate = (
            await db.execute(
                select(Affiliate)
                .where(Affiliate.id == affiliate_id)
                .where(Affiliate.clinic_id == clinic_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        plan = (
            await db.execute(
                select(CommissionPlan.id)
                .where(CommissionPlan.id == plan_id)
                .where(CommissionPlan.clinic_id == clinic_id)
            )
        ).scalar_one_or_none()
        if not affiliate or not plan:
            await db.commit()
            raise ValueError("Affiliate or plan not found in clinic")

        clash = await _find_overlap(db, affiliate_id, start, end)
        if clash:
            clash_id = clash.id
            await db.commit()
            logger.warning(
                "Plan assignment rejected: overlapping interval",
                extra={"ledger": {"affiliate_id": str(affiliate_id), "conflicting_assignment_id": str(clash_id)}},
            )
            raise PlanAssignmentOverlapError(affiliate_id, clash_id)

        assignment = PlanAssignment(
            clinic_id=clinic_id,
            affiliate_id=affiliate_id,
            plan_id=plan_id,
            effective_from=start,
            effective_to=end,
        )
        db.add(assignment)
        await db.commit()

    logger.info(
        "Plan assigned",
        extra={"ledger": {"affiliate_id": str(affiliate_id), "plan_id": str(plan_id), "assignment_id": str(assignment.id)}},
    )
    return assignment


async def end_plan_assignment(
    db: AsyncSession,
    assignment_id: uuid.UUID,
    effective_to: datetime,
    *,
    clinic_id: uuid.UUID | None = None,
) -> Optional[PlanAssignment]:
    """Close (or move the end of) an assignment. None if it does not exist."""
    end = as_utc(effective_to)

    async with storage_guard(db, "end_plan_assignment", assignment_id=str(assignment_id)):
        stmt = select(PlanAssignment).where(PlanAssignment.id == assignment_id)
        if clinic_id is not None:
            stmt = stmt.where(PlanAssignment.clinic_id == clinic_id)
        assignment = (await db.execute(stmt)).scalar_one_or_none()
        if not assignment:
            await db.commit()
            return None

        affiliate_id = assignment.affiliate_id
        start = as_utc(assignment.effective_from)
        if end < start:
            await db.commit()
            raise ValueError("effective_to must not be before effective_from")

        # serialize with assign_plan for the same affiliate
        await db.execute(select(Affiliate.id).where(Affiliate.id == affiliate_id).with_for_update())
        clash = await _find_overlap(db, affiliate_id, start, end, exclude_id=assignment.id)
        if clash:
            clash_id = clash.id
            await db.commit()
            raise PlanAssignmentOverlapError(affiliate_id, clash_id)

        assignment.effective_to = end
        await db.commit()

    logger.info("Plan assignment ended", extra={"ledger": {"assignment_id": str(assignment_id)}})
    return assignment


async def get_tier_progress(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
    at: Optional[datetime] = None,
) -> Optional[TierProgress]:
    """Tier standing under the plan in effect at `at` (default now). None without a tiered plan."""
    affiliate = (
        await db.execute(
            select(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .where(Affiliate.clinic_id == clinic_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not affiliate:
        return None

    assignment = await resolve_effective_plan(db, affiliate_id, clinic_id, at or utcnow())
    plan = assignment.plan if assignment else None
    if plan is None or not plan.tier_enabled or not plan.tiers:
        return None

    return tier_progress(
        plan.tiers,
        metric=plan.tier_metric,
        revenue_cents=affiliate.lifetime_revenue_cents,
        conversions=affiliate.lifetime_conversions,
    )
