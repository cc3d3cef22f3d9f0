# backend/affiliate_ledger/core/payouts.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.core.audit import add_audit_log
from affiliate_ledger.core.config import settings
from affiliate_ledger.core.dates import utcnow
from affiliate_ledger.core.errors import InvalidStateTransition, storage_guard
from affiliate_ledger.core.statuses import CommissionStatus, PayoutStatus
from affiliate_ledger.crud.affiliates import get_affiliate, get_program
from affiliate_ledger.models.commission_event import CommissionEvent
from affiliate_ledger.models.payout import Payout

logger = logging.getLogger(__name__)


def _unclaimed_approved(affiliate_id: uuid.UUID):
    # the same predicate selects and claims; it is what keeps a claim exclusive
    return (
        CommissionEvent.affiliate_id == affiliate_id,
        CommissionEvent.status == CommissionStatus.APPROVED.value,
        CommissionEvent.payout_id.is_(None),
    )


async def _available(db: AsyncSession, affiliate_id: uuid.UUID) -> tuple[int, int]:
    row = (
        await db.execute(
            select(
                func.count(CommissionEvent.id),
                func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0),
            ).where(*_unclaimed_approved(affiliate_id))
        )
    ).one()
    return int(row[0] or 0), int(row[1] or 0)


async def minimum_payout_cents(db: AsyncSession, clinic_id: uuid.UUID) -> int:
    program = await get_program(db, clinic_id)
    if program is not None:
        return program.minimum_payout_cents
    return settings.DEFAULT_MINIMUM_PAYOUT_CENTS


@dataclass(frozen=True)
class PayoutEligibility:
    eligible: bool
    available_cents: int
    minimum_cents: int
    event_count: int


async def check_payout_eligibility(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
) -> PayoutEligibility:
    count, available = await _available(db, affiliate_id)
    minimum = await minimum_payout_cents(db, clinic_id)
    return PayoutEligibility(
        eligible=count > 0 and available >= minimum,
        available_cents=available,
        minimum_cents=minimum,
        event_count=count,
    )


async def batch_payout(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    *,
    clinic_id: uuid.UUID | None = None,
    minimum_cents: Optional[int] = None,
) -> Optional[Payout]:
    """
    Claim every APPROVED, unclaimed event of the affiliate into one PROCESSING payout.

    None (and nothing written) when there is nothing to claim, the balance is
    under `minimum_cents`, or a concurrent run claimed the events first.
    Payout insert and event claim share one transaction.
    """
    log_ctx = {"affiliate_id": str(affiliate_id)}

    async with storage_guard(db, "batch_payout", **log_ctx):
        affiliate = await get_affiliate(db, affiliate_id, clinic_id)
        if not affiliate:
            await db.commit()
            return None

        count, available = await _available(db, affiliate_id)
        if count == 0:
            await db.commit()
            logger.debug("Payout skipped: nothing approved", extra={"ledger": log_ctx})
            return None
        if minimum_cents is not None and available < minimum_cents:
            await db.commit()
            logger.debug("Payout skipped: below minimum", extra={"ledger": {**log_ctx, "available_cents": available}})
            return None

        payout = Payout(
            clinic_id=affiliate.clinic_id,
            affiliate_id=affiliate_id,
            net_amount_cents=0,
            event_count=0,
            status=PayoutStatus.PROCESSING.value,
            created_at=utcnow(),
        )
        db.add(payout)
        await db.flush()

        claimed = await db.execute(
            update(CommissionEvent)
            .where(*_unclaimed_approved(affiliate_id))
            .values(payout_id=payout.id)
            .execution_options(synchronize_session=False)
        )
        if (claimed.rowcount or 0) == 0:
            await db.rollback()
            logger.info("Payout skipped: events claimed by a concurrent run", extra={"ledger": log_ctx})
            return None

        # sum what this payout actually claimed, not the pre-count
        totals = (
            await db.execute(
                select(
                    func.count(CommissionEvent.id),
                    func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0),
                ).where(CommissionEvent.payout_id == payout.id)
            )
        ).one()
        payout.event_count = int(totals[0] or 0)
        payout.net_amount_cents = int(totals[1] or 0)
        await db.commit()

    logger.info(
        "Payout batched",
        extra={
            "ledger": {
                **log_ctx,
                "payout_id": str(payout.id),
                "net_amount_cents": payout.net_amount_cents,
                "event_count": payout.event_count,
            }
        },
    )
    return payout


async def _locked_payout(db: AsyncSession, payout_id: uuid.UUID, clinic_id: uuid.UUID | None) -> Optional[Payout]:
    stmt = (
        select(Payout)
        .where(Payout.id == payout_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if clinic_id is not None:
        stmt = stmt.where(Payout.clinic_id == clinic_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def complete_payout(
    db: AsyncSession,
    payout_id: uuid.UUID,
    *,
    clinic_id: uuid.UUID | None = None,
    actor: Optional[str] = None,
) -> Optional[Payout]:
    """Settlement confirmed: PROCESSING -> COMPLETED and its APPROVED events -> PAID."""
    async with storage_guard(db, "complete_payout", payout_id=str(payout_id)):
        payout = await _locked_payout(db, payout_id, clinic_id)
        if not payout:
            await db.commit()
            return None
        if payout.status != PayoutStatus.PROCESSING.value:
            current = payout.status
            await db.commit()
            raise InvalidStateTransition("payout", current, PayoutStatus.COMPLETED.value)

        now = utcnow()
        paid = await db.execute(
            update(CommissionEvent)
            .where(CommissionEvent.payout_id == payout.id)
            .where(CommissionEvent.status == CommissionStatus.APPROVED.value)
            .values(status=CommissionStatus.PAID.value, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        # settle at what was actually paid; reversed events never count
        totals = (
            await db.execute(
                select(
                    func.count(CommissionEvent.id),
                    func.coalesce(func.sum(CommissionEvent.commission_amount_cents), 0),
                )
                .where(CommissionEvent.payout_id == payout.id)
                .where(CommissionEvent.status == CommissionStatus.PAID.value)
            )
        ).one()
        payout.event_count = int(totals[0] or 0)
        payout.net_amount_cents = int(totals[1] or 0)
        payout.status = PayoutStatus.COMPLETED.value
        payout.completed_at = now
        add_audit_log(
            db,
            action="PAYOUT_COMPLETED",
            entity_type="payout",
            entity_id=payout.id,
            clinic_id=payout.clinic_id,
            old_values={"status": PayoutStatus.PROCESSING.value},
            new_values={
                "status": PayoutStatus.COMPLETED.value,
                "events_paid": paid.rowcount or 0,
                "net_amount_cents": payout.net_amount_cents,
            },
            actor=actor,
        )
        await db.commit()

    logger.info("Payout completed", extra={"ledger": {"payout_id": str(payout_id)}})
    return payout


async def fail_payout(
    db: AsyncSession,
    payout_id: uuid.UUID,
    reason: str,
    *,
    clinic_id: uuid.UUID | None = None,
    actor: Optional[str] = None,
) -> Optional[Payout]:
    """Settlement failed: PROCESSING -> FAILED; claimed events are released for a later batch."""
    async with storage_guard(db, "fail_payout", payout_id=str(payout_id)):
        payout = await _locked_payout(db, payout_id, clinic_id)
        if not payout:
            await db.commit()
            return None
        if payout.status != PayoutStatus.PROCESSING.value:
            current = payout.status
            await db.commit()
            raise InvalidStateTransition("payout", current, PayoutStatus.FAILED.value)

        released = await db.execute(
            update(CommissionEvent)
            .where(CommissionEvent.payout_id == payout.id)
            .values(payout_id=None)
            .execution_options(synchronize_session=False)
        )
        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = (reason or "")[:255] or None
        payout.failed_at = utcnow()
        add_audit_log(
            db,
            action="PAYOUT_FAILED",
            entity_type="payout",
            entity_id=payout.id,
            clinic_id=payout.clinic_id,
            old_values={"status": PayoutStatus.PROCESSING.value},
            new_values={"status": PayoutStatus.FAILED.value, "events_released": released.rowcount or 0},
            description=reason,
            actor=actor,
        )
        await db.commit()

    logger.warning("Payout failed", extra={"ledger": {"payout_id": str(payout_id), "reason": reason}})
    return payout


PAYOUT_HISTORY_MAX_LIMIT = 100


@dataclass(frozen=True)
class PayoutHistory:
    payouts: list[Payout]
    total: int
    page: int
    limit: int


async def get_payout_history(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    clinic_id: uuid.UUID,
    *,
    page: int = 1,
    limit: int = 20,
) -> PayoutHistory:
    """Newest first, one page at a time."""
    if page < 1 or limit < 1:
        raise ValueError("page and limit must be >= 1")
    limit = min(limit, PAYOUT_HISTORY_MAX_LIMIT)

    scope = (Payout.affiliate_id == affiliate_id, Payout.clinic_id == clinic_id)
    payouts = (
        await db.execute(
            select(Payout)
            .where(*scope)
            .order_by(Payout.created_at.desc(), Payout.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    total = (await db.execute(select(func.count(Payout.id)).where(*scope))).scalar_one()
    return PayoutHistory(payouts=list(payouts), total=int(total or 0), page=page, limit=limit)
