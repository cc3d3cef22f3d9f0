# Import models here so Alembic can discover metadata.
from affiliate_ledger.models.clinic import Clinic  # noqa: F401

# Affiliates, ref codes, program settings
from affiliate_ledger.models.affiliate import Affiliate, AffiliateRefCode  # noqa: F401
from affiliate_ledger.models.affiliate_program import AffiliateProgram, AttributionConfig  # noqa: F401
from affiliate_ledger.models.patient import Patient  # noqa: F401
from affiliate_ledger.models.touch import AffiliateTouch  # noqa: F401

# Plans and the commission ledger
from affiliate_ledger.models.commission_plan import (  # noqa: F401
    CommissionPlan,
    CommissionTier,
    PlanAssignment,
    ProductRate,
)
from affiliate_ledger.models.commission_event import CommissionEvent  # noqa: F401
from affiliate_ledger.models.payout import Payout  # noqa: F401
from affiliate_ledger.models.audit_log import AuditLog  # noqa: F401
