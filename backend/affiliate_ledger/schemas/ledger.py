# backend/affiliate_ledger/schemas/ledger.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


# -----------------------------
# Touches
# -----------------------------
class TouchIn(BaseModel):
    clinic_id: UUID
    ref_code: str = Field(min_length=1, max_length=64)
    touch_type: str = Field(default="CLICK", pattern=r"^(CLICK|IMPRESSION|POSTBACK)$")
    visitor_fingerprint: str = Field(min_length=1, max_length=128)
    cookie_id: Optional[str] = Field(default=None, max_length=128)
    landing_page: Optional[str] = Field(default=None, max_length=500)
    utm_source: Optional[str] = Field(default=None, max_length=120)
    utm_medium: Optional[str] = Field(default=None, max_length=120)
    utm_campaign: Optional[str] = Field(default=None, max_length=120)
    created_at: Optional[datetime] = None


class TouchOut(BaseModel):
    model_config = {"from_attributes": True}

    touch_id: UUID
    affiliate_id: UUID
    duplicate: bool


class TouchConvertedIn(BaseModel):
    patient_id: UUID
    converted_at: Optional[datetime] = None


# -----------------------------
# Attribution
# -----------------------------
class AttributionIn(BaseModel):
    clinic_id: UUID
    patient_id: UUID
    ref_code: str = Field(min_length=1, max_length=64)
    source: str = Field(default="intake", max_length=64)
    force: bool = False


class AttributionOut(BaseModel):
    model_config = {"from_attributes": True}

    affiliate_id: UUID
    ref_code: Optional[str] = None
    first_touch_at: Optional[datetime] = None
    source: Optional[str] = None


class AttributionOutcomeOut(BaseModel):
    model_config = {"from_attributes": True}

    status: str
    patient_id: UUID
    attribution: Optional[AttributionOut] = None
    previous: Optional[AttributionOut] = None
    changed: bool = False


class TouchAttributionIn(BaseModel):
    clinic_id: UUID
    visitor_fingerprint: Optional[str] = Field(default=None, max_length=128)
    cookie_id: Optional[str] = Field(default=None, max_length=128)
    is_new_patient: bool = True


class TouchAttributionOut(BaseModel):
    model_config = {"from_attributes": True}

    affiliate_id: UUID
    ref_code: str
    touch_id: UUID
    model: str
    confidence: str
    weight: float


# -----------------------------
# Commissions
# -----------------------------
class PaymentSucceededIn(BaseModel):
    clinic_id: UUID
    patient_id: UUID
    stripe_event_id: str = Field(min_length=1, max_length=255)
    stripe_object_id: str = Field(min_length=1, max_length=255)
    amount_cents: int = Field(ge=0)
    occurred_at: datetime
    is_first_payment: bool = False
    is_recurring: bool = False
    recurring_month: Optional[int] = Field(default=None, ge=1)
    product_sku: Optional[str] = Field(default=None, max_length=80)
    product_category: Optional[str] = Field(default=None, max_length=80)


class RefundIn(BaseModel):
    clinic_id: UUID
    stripe_object_id: str = Field(min_length=1, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=255)


class CommissionResultOut(BaseModel):
    model_config = {"from_attributes": True}

    success: bool
    skipped: bool
    skip_reason: Optional[str] = None
    commission_event_id: Optional[UUID] = None
    commission_amount_cents: Optional[int] = None


class ApproveIn(BaseModel):
    clinic_id: Optional[UUID] = None
    now: Optional[datetime] = None


class ApproveOut(BaseModel):
    approved: int


# -----------------------------
# Plans
# -----------------------------
class PlanAssignmentIn(BaseModel):
    clinic_id: UUID
    affiliate_id: UUID
    plan_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None


class PlanAssignmentEndIn(BaseModel):
    effective_to: datetime


class PlanAssignmentOut(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    clinic_id: UUID
    affiliate_id: UUID
    plan_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None


# -----------------------------
# Payouts
# -----------------------------
class PayoutEligibilityOut(BaseModel):
    model_config = {"from_attributes": True}

    eligible: bool
    available_cents: int
    minimum_cents: int
    event_count: int


class PayoutOut(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    clinic_id: UUID
    affiliate_id: UUID
    net_amount_cents: int
    event_count: int
    status: str
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class PayoutFailIn(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class PayoutHistoryOut(BaseModel):
    model_config = {"from_attributes": True}

    payouts: list[PayoutOut]
    total: int
    page: int
    limit: int
