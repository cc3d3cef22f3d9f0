# affiliate_ledger/core/statuses.py
# Stored as plain uppercase strings; these enums are the canonical spellings.

import enum


class AffiliateStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class TouchType(str, enum.Enum):
    CLICK = "CLICK"
    IMPRESSION = "IMPRESSION"
    POSTBACK = "POSTBACK"


class PlanType(str, enum.Enum):
    FLAT = "FLAT"
    PERCENT = "PERCENT"
    HYBRID = "HYBRID"


class TierMetric(str, enum.Enum):
    REVENUE = "REVENUE"
    CONVERSIONS = "CONVERSIONS"
    BOTH = "BOTH"  # both thresholds must be met


class AppliesTo(str, enum.Enum):
    ALL_PAYMENTS = "ALL_PAYMENTS"
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"


class CommissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    REVERSED = "REVERSED"


class PayoutStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AttributionModel(str, enum.Enum):
    FIRST_CLICK = "FIRST_CLICK"
    LAST_CLICK = "LAST_CLICK"
    LINEAR = "LINEAR"
    TIME_DECAY = "TIME_DECAY"
    POSITION = "POSITION"
