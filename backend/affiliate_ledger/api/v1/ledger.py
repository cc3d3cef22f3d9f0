# backend/affiliate_ledger/api/v1/ledger.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger.api.deps.service import ensure_clinic_access, require_service
from affiliate_ledger.core.attribution import (
    AttributionOutcome,
    AttributionStatus,
    attribute,
    get_patient_attribution,
    remove_attribution,
    resolve_touch_attribution,
)
from affiliate_ledger.core.commission_plans import assign_plan, end_plan_assignment
from affiliate_ledger.core.commissions import (
    CommissionResult,
    approve_pending_commissions,
    process_payment_for_commission,
    reverse_commission_for_refund,
)
from affiliate_ledger.core.payouts import (
    batch_payout,
    check_payout_eligibility,
    complete_payout,
    fail_payout,
    get_payout_history,
)
from affiliate_ledger.core.security import ServicePrincipal
from affiliate_ledger.core.touches import mark_touch_converted, record_touch
from affiliate_ledger.db.session import get_db
from affiliate_ledger.schemas.ledger import (
    ApproveIn,
    ApproveOut,
    AttributionIn,
    AttributionOut,
    AttributionOutcomeOut,
    CommissionResultOut,
    PaymentSucceededIn,
    PayoutEligibilityOut,
    PayoutFailIn,
    PayoutHistoryOut,
    PayoutOut,
    PlanAssignmentEndIn,
    PlanAssignmentIn,
    PlanAssignmentOut,
    RefundIn,
    TouchAttributionIn,
    TouchAttributionOut,
    TouchConvertedIn,
    TouchIn,
    TouchOut,
)

router = APIRouter(prefix="/ledger", tags=["ledger"])


def _outcome_out(outcome: AttributionOutcome) -> AttributionOutcomeOut:
    return AttributionOutcomeOut(
        status=outcome.status.value,
        patient_id=outcome.patient_id,
        attribution=AttributionOut.model_validate(outcome.attribution) if outcome.attribution else None,
        previous=AttributionOut.model_validate(outcome.previous) if outcome.previous else None,
        changed=outcome.changed,
    )


def _commission_out(result: CommissionResult) -> CommissionResultOut:
    return CommissionResultOut(
        success=result.success,
        skipped=result.skipped,
        skip_reason=result.skip_reason.value if result.skip_reason else None,
        commission_event_id=result.commission_event_id,
        commission_amount_cents=result.commission_amount_cents,
    )


# -----------------------------
# Touches
# -----------------------------
@router.post("/touches", response_model=TouchOut, status_code=status.HTTP_201_CREATED)
async def create_touch(
    payload: TouchIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, payload.clinic_id)
    outcome = await record_touch(db, **payload.model_dump())
    if not outcome.found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ref code not found")
    return TouchOut(touch_id=outcome.touch_id, affiliate_id=outcome.affiliate_id, duplicate=outcome.duplicate)


@router.post("/clinics/{clinic_id}/touches/{touch_id}/converted")
async def convert_touch(
    clinic_id: UUID,
    touch_id: UUID,
    payload: TouchConvertedIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    changed = await mark_touch_converted(
        db,
        touch_id,
        payload.patient_id,
        payload.converted_at,
        clinic_id=clinic_id,
    )
    return {"converted": changed}


# -----------------------------
# Attribution
# -----------------------------
@router.post("/attributions", response_model=AttributionOutcomeOut)
async def create_attribution(
    payload: AttributionIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, payload.clinic_id)
    outcome = await attribute(
        db,
        patient_id=payload.patient_id,
        ref_code=payload.ref_code,
        clinic_id=payload.clinic_id,
        source=payload.source,
        force=payload.force,
        actor=principal.service,
    )
    if outcome.status is AttributionStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient or ref code not found")
    if outcome.status is AttributionStatus.CONFLICT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "attribution_exists",
                "message": "Patient is already attributed; retry with force to overwrite.",
                "existing": _outcome_out(outcome).model_dump(mode="json")["attribution"],
            },
        )
    return _outcome_out(outcome)


@router.get("/clinics/{clinic_id}/patients/{patient_id}/attribution", response_model=AttributionOut)
async def read_attribution(
    clinic_id: UUID,
    patient_id: UUID,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    current = await get_patient_attribution(db, patient_id, clinic_id)
    if current is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No attribution")
    return AttributionOut.model_validate(current)


@router.delete("/clinics/{clinic_id}/patients/{patient_id}/attribution", response_model=AttributionOutcomeOut)
async def delete_attribution(
    clinic_id: UUID,
    patient_id: UUID,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    outcome = await remove_attribution(db, patient_id, clinic_id=clinic_id, actor=principal.service)
    if outcome.status is AttributionStatus.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return _outcome_out(outcome)


@router.post("/attributions/resolve", response_model=TouchAttributionOut)
async def resolve_attribution(
    payload: TouchAttributionIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, payload.clinic_id)
    resolved = await resolve_touch_attribution(
        db,
        clinic_id=payload.clinic_id,
        visitor_fingerprint=payload.visitor_fingerprint,
        cookie_id=payload.cookie_id,
        is_new_patient=payload.is_new_patient,
    )
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No touches for visitor")
    return TouchAttributionOut.model_validate(resolved)


# -----------------------------
# Commissions
# -----------------------------
@router.post("/commissions/payment-succeeded", response_model=CommissionResultOut)
async def payment_succeeded(
    payload: PaymentSucceededIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, payload.clinic_id)
    result = await process_payment_for_commission(db, **payload.model_dump())
    return _commission_out(result)


@router.post("/commissions/refunded", response_model=CommissionResultOut)
async def payment_refunded(
    payload: RefundIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, payload.clinic_id)
    result = await reverse_commission_for_refund(
        db,
        clinic_id=payload.clinic_id,
        stripe_object_id=payload.stripe_object_id,
        reason=payload.reason,
        actor=principal.service,
    )
    return _commission_out(result)


@router.post("/commissions/approve", response_model=ApproveOut)
async def approve_commissions(
    payload: ApproveIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    clinic_id = payload.clinic_id or principal.clinic_id
    ensure_clinic_access(principal, clinic_id)
    moved = await approve_pending_commissions(db, now=payload.now, clinic_id=clinic_id)
    return ApproveOut(approved=moved)


# -----------------------------
# Plan assignments
# -----------------------------
@router.post("/plan-assignments", response_model=PlanAssignmentOut, status_code=status.HTTP_201_CREATED)
async def create_plan_assignment(
    payload: PlanAssignmentIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, payload.clinic_id)
    try:
        assignment = await assign_plan(db, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return PlanAssignmentOut.model_validate(assignment)


@router.post("/clinics/{clinic_id}/plan-assignments/{assignment_id}/end", response_model=PlanAssignmentOut)
async def close_plan_assignment(
    clinic_id: UUID,
    assignment_id: UUID,
    payload: PlanAssignmentEndIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    try:
        assignment = await end_plan_assignment(db, assignment_id, payload.effective_to, clinic_id=clinic_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found")
    return PlanAssignmentOut.model_validate(assignment)


# -----------------------------
# Payouts
# -----------------------------
@router.get(
    "/clinics/{clinic_id}/affiliates/{affiliate_id}/payout-eligibility",
    response_model=PayoutEligibilityOut,
)
async def payout_eligibility(
    clinic_id: UUID,
    affiliate_id: UUID,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    return PayoutEligibilityOut.model_validate(await check_payout_eligibility(db, affiliate_id, clinic_id))


@router.post("/clinics/{clinic_id}/affiliates/{affiliate_id}/payouts", response_model=Optional[PayoutOut])
async def create_payout(
    clinic_id: UUID,
    affiliate_id: UUID,
    minimum_cents: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    """null when there was nothing to batch."""
    ensure_clinic_access(principal, clinic_id)
    payout = await batch_payout(db, affiliate_id, clinic_id=clinic_id, minimum_cents=minimum_cents)
    return PayoutOut.model_validate(payout) if payout else None


@router.post("/clinics/{clinic_id}/payouts/{payout_id}/complete", response_model=PayoutOut)
async def settle_payout(
    clinic_id: UUID,
    payout_id: UUID,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    payout = await complete_payout(db, payout_id, clinic_id=clinic_id, actor=principal.service)
    if payout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout not found")
    return PayoutOut.model_validate(payout)


@router.post("/clinics/{clinic_id}/payouts/{payout_id}/fail", response_model=PayoutOut)
async def reject_payout(
    clinic_id: UUID,
    payout_id: UUID,
    payload: PayoutFailIn,
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    payout = await fail_payout(db, payout_id, payload.reason, clinic_id=clinic_id, actor=principal.service)
    if payout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout not found")
    return PayoutOut.model_validate(payout)


@router.get("/clinics/{clinic_id}/affiliates/{affiliate_id}/payouts", response_model=PayoutHistoryOut)
async def payout_history(
    clinic_id: UUID,
    affiliate_id: UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    principal: ServicePrincipal = Depends(require_service),
):
    ensure_clinic_access(principal, clinic_id)
    history = await get_payout_history(db, affiliate_id, clinic_id, page=page, limit=limit)
    return PayoutHistoryOut.model_validate(history)
