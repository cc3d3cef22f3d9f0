# backend/affiliate_ledger/core/commissions.py
from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.core.audit import add_audit_log
from affiliate_ledger.core.commission_plans import (
    RateSchedule,
    compute_commission_cents,
    describe_product_rate,
    override_schedule,
    plan_rates,
    product_rate_schedule,
    resolve_effective_plan,
    resolve_tier,
    select_product_rate,
)
from affiliate_ledger.core.dates import as_utc, utcnow
from affiliate_ledger.core.errors import LedgerStorageError, storage_guard
from affiliate_ledger.core.statuses import AffiliateStatus, AppliesTo, CommissionStatus, PayoutStatus
from affiliate_ledger.crud.affiliates import get_affiliate
from affiliate_ledger.crud.patients import get_patient
from affiliate_ledger.models.affiliate import Affiliate
from affiliate_ledger.models.commission_event import CommissionEvent
from affiliate_ledger.models.commission_plan import CommissionPlan, CommissionTier, ProductRate
from affiliate_ledger.models.payout import Payout

logger = logging.getLogger(__name__)

# decay applies from month 13 on
RECURRING_DECAY_AFTER_MONTH = 12


class SkipReason(str, enum.Enum):
    DUPLICATE = "DUPLICATE"
    NO_ATTRIBUTION = "NO_ATTRIBUTION"
    AFFILIATE_INACTIVE = "AFFILIATE_INACTIVE"
    NO_PLAN = "NO_PLAN"
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"
    RECURRING_DISABLED = "RECURRING_DISABLED"
    RECURRING_WINDOW_EXHAUSTED = "RECURRING_WINDOW_EXHAUSTED"
    ZERO_COMMISSION = "ZERO_COMMISSION"
    NOT_FOUND = "NOT_FOUND"
    CLAWBACK_DISABLED = "CLAWBACK_DISABLED"
    ALREADY_REVERSED = "ALREADY_REVERSED"


@dataclass(frozen=True)
class CommissionResult:
    success: bool
    skipped: bool = False
    skip_reason: SkipReason | None = None
    commission_event_id: uuid.UUID | None = None
    commission_amount_cents: int | None = None


def _skip(reason: SkipReason, event_id: uuid.UUID | None = None) -> CommissionResult:
    return CommissionResult(success=True, skipped=True, skip_reason=reason, commission_event_id=event_id)


# -----------------------------
# Pure calculation
# -----------------------------
@dataclass(frozen=True)
class CommissionBreakdown:
    base_commission_cents: int
    tier_bonus_cents: int
    recurring_multiplier_pct: int
    total_commission_cents: int
    tier_name: str | None = None
    product_rule: str | None = None

    def as_metadata(self) -> dict[str, Any]:
        return {
            "base_commission_cents": self.base_commission_cents,
            "tier_bonus_cents": self.tier_bonus_cents,
            "recurring_multiplier_pct": self.recurring_multiplier_pct,
            "total_commission_cents": self.total_commission_cents,
            "tier_name": self.tier_name,
            "product_rule": self.product_rule,
        }


def recurring_multiplier_pct(
    recurring_month: int | None,
    recurring_months: int | None,
    recurring_decay_pct: int | None,
) -> int:
    if recurring_month is None:
        return 100
    if recurring_months is not None and recurring_month > recurring_months:
        return 0
    if recurring_decay_pct is not None and recurring_month > RECURRING_DECAY_AFTER_MONTH:
        return max(0, min(100, recurring_decay_pct))
    return 100


def calculate_commission(
    amount_cents: int,
    schedule: RateSchedule,
    *,
    tier: CommissionTier | None = None,
    product_rate: ProductRate | None = None,
    multiplier_pct: int = 100,
) -> CommissionBreakdown:
    """
    Order: tier overrides the schedule, a product rule replaces it, the tier
    bonus is added, then the recurring multiplier. Total is clamped to [0, amount].
    """
    if amount_cents < 0:
        raise ValueError("amount_cents must be >= 0")

    if tier is not None:
        schedule = override_schedule(
            schedule,
            flat_amount_cents=tier.flat_amount_cents,
            percent_bps=tier.percent_bps,
        )
    if product_rate is not None:
        schedule = product_rate_schedule(product_rate)

    base = compute_commission_cents(amount_cents, schedule)
    bonus = (tier.bonus_cents or 0) if tier is not None else 0

    total = ((base + bonus) * multiplier_pct + 50) // 100
    total = max(0, min(amount_cents, total))

    return CommissionBreakdown(
        base_commission_cents=base,
        tier_bonus_cents=bonus,
        recurring_multiplier_pct=multiplier_pct,
        total_commission_cents=total,
        tier_name=tier.name if tier is not None else None,
        product_rule=describe_product_rate(product_rate) if product_rate is not None else None,
    )


# -----------------------------
# Aggregates
# -----------------------------
async def _refresh_tier(db: AsyncSession, affiliate_id: uuid.UUID, plan: CommissionPlan | None, now: datetime) -> None:
    """Recompute current_tier_id from the just-updated aggregates (same transaction)."""
    row = (
        await db.execute(
            select(
                Affiliate.lifetime_revenue_cents,
                Affiliate.lifetime_conversions,
                Affiliate.current_tier_id,
            ).where(Affiliate.id == affiliate_id)
        )
    ).one()

    new_tier_id = None
    if plan is not None and plan.tier_enabled and plan.tiers:
        tier = resolve_tier(
            plan.tiers,
            metric=plan.tier_metric,
            revenue_cents=row.lifetime_revenue_cents,
            conversions=row.lifetime_conversions,
        )
        new_tier_id = tier.id if tier else None

    if new_tier_id != row.current_tier_id:
        await db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(current_tier_id=new_tier_id, tier_qualified_at=now if new_tier_id else None)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Affiliate tier changed",
            extra={"ledger": {"affiliate_id": str(affiliate_id), "tier_id": str(new_tier_id) if new_tier_id else None}},
        )


async def _apply_aggregates(db: AsyncSession, affiliate_id: uuid.UUID, revenue_delta: int, conversions_delta: int) -> None:
    await db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate_id)
        .values(
            lifetime_revenue_cents=Affiliate.lifetime_revenue_cents + revenue_delta,
            lifetime_conversions=Affiliate.lifetime_conversions + conversions_delta,
        )
        .execution_options(synchronize_session=False)
    )


async def _existing_event_id(db: AsyncSession, clinic_id: uuid.UUID, stripe_event_id: str) -> uuid.UUID | None:
    return (
        await db.execute(
            select(CommissionEvent.id)
            .where(CommissionEvent.clinic_id == clinic_id)
            .where(CommissionEvent.stripe_event_id == stripe_event_id)
        )
    ).scalar_one_or_none()


# -----------------------------
# Payment succeeded
# -----------------------------
async def process_payment_for_commission(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    patient_id: uuid.UUID,
    stripe_event_id: str,
    stripe_object_id: str,
    amount_cents: int,
    occurred_at: datetime,
    is_first_payment: bool = False,
    is_recurring: bool = False,
    recurring_month: Optional[int] = None,
    product_sku: Optional[str] = None,
    product_category: Optional[str] = None,
) -> CommissionResult:
    """
    Turn one succeeded payment into at most one commission event.

    Safe to call any number of times for the same (clinic_id, stripe_event_id):
    the unique key on that pair makes every call after the first a DUPLICATE skip.
    Expected non-commissionable payments come back as skips; only storage
    failures raise (LedgerStorageError), and the caller must not fail the payment on it.
    """
    if amount_cents < 0:
        raise ValueError("amount_cents must be >= 0")
    if not stripe_event_id:
        raise ValueError("stripe_event_id is required")

    occurred_at = as_utc(occurred_at)
    log_ctx = {"clinic_id": str(clinic_id), "stripe_event_id": stripe_event_id}

    async with storage_guard(db, "process_payment_for_commission", **log_ctx):
        existing_id = await _existing_event_id(db, clinic_id, stripe_event_id)
        if existing_id:
            await db.commit()
            logger.debug("Commission skipped: duplicate event", extra={"ledger": log_ctx})
            return _skip(SkipReason.DUPLICATE, existing_id)

        patient = await get_patient(db, patient_id)
        if not patient or patient.clinic_id != clinic_id or patient.attribution_affiliate_id is None:
            await db.commit()
            logger.debug("Commission skipped: no attribution", extra={"ledger": log_ctx})
            return _skip(SkipReason.NO_ATTRIBUTION)

        affiliate_id = patient.attribution_affiliate_id
        ref_code = patient.attribution_ref_code
        log_ctx["affiliate_id"] = str(affiliate_id)

        affiliate = await get_affiliate(db, affiliate_id, clinic_id)
        if not affiliate or affiliate.status != AffiliateStatus.ACTIVE.value:
            await db.commit()
            logger.debug("Commission skipped: affiliate inactive", extra={"ledger": log_ctx})
            return _skip(SkipReason.AFFILIATE_INACTIVE)

        assignment = await resolve_effective_plan(db, affiliate_id, clinic_id, occurred_at)
        plan = assignment.plan if assignment else None
        if plan is None or not plan.is_active:
            await db.commit()
            logger.debug("Commission skipped: no effective plan", extra={"ledger": log_ctx})
            return _skip(SkipReason.NO_PLAN)

        if plan.applies_to == AppliesTo.FIRST_PAYMENT_ONLY.value and not is_first_payment:
            await db.commit()
            return _skip(SkipReason.FIRST_PAYMENT_ONLY)

        use_recurring = is_recurring and not is_first_payment
        multiplier = 100
        if use_recurring:
            if not plan.recurring_enabled:
                await db.commit()
                return _skip(SkipReason.RECURRING_DISABLED)
            multiplier = recurring_multiplier_pct(recurring_month, plan.recurring_months, plan.recurring_decay_pct)
            if multiplier == 0:
                await db.commit()
                return _skip(SkipReason.RECURRING_WINDOW_EXHAUSTED)

        rates = plan_rates(plan)
        tier = None
        if plan.tier_enabled:
            tier = resolve_tier(
                plan.tiers,
                metric=plan.tier_metric,
                revenue_cents=affiliate.lifetime_revenue_cents,
                conversions=affiliate.lifetime_conversions,
            )
        product_rate = select_product_rate(
            plan.product_rates,
            product_sku=product_sku,
            product_category=product_category,
            amount_cents=amount_cents,
        )

        breakdown = calculate_commission(
            amount_cents,
            rates.recurring if use_recurring else rates.initial,
            tier=tier,
            product_rate=product_rate,
            multiplier_pct=multiplier,
        )
        if breakdown.total_commission_cents <= 0:
            await db.commit()
            logger.debug("Commission skipped: zero amount", extra={"ledger": log_ctx})
            return _skip(SkipReason.ZERO_COMMISSION)

        event = CommissionEvent(
            clinic_id=clinic_id,
            affiliate_id=affiliate_id,
            patient_id=patient_id,
            plan_id=plan.id,
            ref_code=ref_code,
            stripe_event_id=stripe_event_id,
            stripe_object_id=stripe_object_id,
            event_amount_cents=amount_cents,
            commission_amount_cents=breakdown.total_commission_cents,
            status=CommissionStatus.PENDING.value,
            is_recurring=use_recurring,
            recurring_month=recurring_month if use_recurring else None,
            occurred_at=occurred_at,
            hold_until=occurred_at + timedelta(days=plan.hold_days or 0),
            event_metadata=breakdown.as_metadata(),
        )
        db.add(event)
        try:
            await db.flush()
        except IntegrityError:
            # lost the unique-insert race to a concurrent delivery of the same event
            await db.rollback()
            winner_id = await _existing_event_id(db, clinic_id, stripe_event_id)
            await db.commit()
            if winner_id is None:
                logger.exception("Commission insert failed", extra={"ledger": log_ctx})
                raise LedgerStorageError("process_payment_for_commission failed")
            logger.debug("Commission skipped: duplicate event (concurrent)", extra={"ledger": log_ctx})
            return _skip(SkipReason.DUPLICATE, winner_id)

        await _apply_aggregates(db, affiliate_id, amount_cents, 1)
        await _refresh_tier(db, affiliate_id, plan, utcnow())
        await db.commit()

    logger.info(
        "Commission created",
        extra={
            "ledger": {
                **log_ctx,
                "commission_event_id": str(event.id),
                "commission_amount_cents": event.commission_amount_cents,
            }
        },
    )
    return CommissionResult(
        success=True,
        skipped=False,
        commission_event_id=event.id,
        commission_amount_cents=event.commission_amount_cents,
    )


# -----------------------------
# Lifecycle
# -----------------------------
async def approve_pending_commissions(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    clinic_id: uuid.UUID | None = None,
) -> int:
    """PENDING -> APPROVED for every event whose hold has elapsed. Returns rows moved."""
    now = as_utc(now) if now else utcnow()
    stmt = (
        update(CommissionEvent)
        .where(CommissionEvent.status == CommissionStatus.PENDING.value)
        .where(or_(CommissionEvent.hold_until.is_(None), CommissionEvent.hold_until <= now))
        .values(status=CommissionStatus.APPROVED.value, approved_at=now)
        .execution_options(synchronize_session=False)
    )
    if clinic_id is not None:
        stmt = stmt.where(CommissionEvent.clinic_id == clinic_id)

    async with storage_guard(db, "approve_pending_commissions"):
        res = await db.execute(stmt)
        await db.commit()

    moved = res.rowcount or 0
    logger.info("Commissions approved", extra={"ledger": {"count": moved}})
    return moved


async def reverse_commission_for_refund(
    db: AsyncSession,
    *,
    clinic_id: uuid.UUID,
    stripe_object_id: str,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
) -> CommissionResult:
    """
    Refund / chargeback on the underlying payment: move its commission to REVERSED
    and take the payment back out of the affiliate's lifetime aggregates.
    Only when the event's plan has clawback enabled. Repeat calls are skips.
    """
    log_ctx = {"clinic_id": str(clinic_id), "stripe_object_id": stripe_object_id}

    async with storage_guard(db, "reverse_commission_for_refund", **log_ctx):
        event = (
            await db.execute(
                select(CommissionEvent)
                .where(CommissionEvent.clinic_id == clinic_id)
                .where(CommissionEvent.stripe_object_id == stripe_object_id)
                .order_by(CommissionEvent.status == CommissionStatus.REVERSED.value, CommissionEvent.created_at)
                .execution_options(populate_existing=True)
                .limit(1)
            )
        ).scalar_one_or_none()
        if event is None:
            await db.commit()
            return _skip(SkipReason.NOT_FOUND)
        if event.status == CommissionStatus.REVERSED.value:
            await db.commit()
            return _skip(SkipReason.ALREADY_REVERSED, event.id)

        plan = None
        if event.plan_id is not None:
            plan = (
                await db.execute(
                    select(CommissionPlan)
                    .where(CommissionPlan.id == event.plan_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
        if plan is not None and not plan.clawback_enabled:
            await db.commit()
            logger.debug("Reversal skipped: clawback disabled", extra={"ledger": log_ctx})
            return _skip(SkipReason.CLAWBACK_DISABLED, event.id)

        # payout row is locked before the event row, the same order complete_payout takes
        open_payout = None
        if event.payout_id is not None:
            open_payout = (
                await db.execute(
                    select(Payout)
                    .where(Payout.id == event.payout_id)
                    .where(Payout.status == PayoutStatus.PROCESSING.value)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            # a settlement may have committed while we waited on the lock
            event = (
                await db.execute(
                    select(CommissionEvent)
                    .where(CommissionEvent.id == event.id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            if event.status == CommissionStatus.REVERSED.value:
                await db.commit()
                return _skip(SkipReason.ALREADY_REVERSED, event.id)

        now = utcnow()
        prior_status = event.status
        prior_payout_id = event.payout_id
        values = {
            "status": CommissionStatus.REVERSED.value,
            "reversed_at": now,
            "reversal_reason": (reason or "refund")[:255],
        }
        if open_payout is not None:
            # an unsettled payout must not pay a reversed commission
            values["payout_id"] = None
        res = await db.execute(
            update(CommissionEvent)
            .where(CommissionEvent.id == event.id)
            .where(CommissionEvent.status == prior_status)
            .where(CommissionEvent.reversed_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if (res.rowcount or 0) == 0:
            await db.commit()
            logger.info("Commission already reversed", extra={"ledger": log_ctx})
            return _skip(SkipReason.ALREADY_REVERSED, event.id)

        if open_payout is not None:
            await db.execute(
                update(Payout)
                .where(Payout.id == open_payout.id)
                .values(
                    net_amount_cents=Payout.net_amount_cents - event.commission_amount_cents,
                    event_count=Payout.event_count - 1,
                )
                .execution_options(synchronize_session=False)
            )
            log_ctx["released_from_payout_id"] = str(open_payout.id)

        await _apply_aggregates(db, event.affiliate_id, -event.event_amount_cents, -1)
        await _refresh_tier(db, event.affiliate_id, plan, now)
        add_audit_log(
            db,
            action="COMMISSION_REVERSED",
            entity_type="commission_event",
            entity_id=event.id,
            clinic_id=clinic_id,
            old_values={"status": prior_status, "payout_id": str(prior_payout_id) if prior_payout_id else None},
            new_values={
                "status": CommissionStatus.REVERSED.value,
                "payout_id": None if open_payout is not None else (str(prior_payout_id) if prior_payout_id else None),
            },
            description=reason,
            actor=actor,
        )
        await db.commit()

    logger.info(
        "Commission reversed",
        extra={"ledger": {**log_ctx, "commission_event_id": str(event.id), "prior_status": prior_status}},
    )
    return CommissionResult(
        success=True,
        skipped=False,
        commission_event_id=event.id,
        commission_amount_cents=event.commission_amount_cents,
    )
