"""create affiliate ledger tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7e40"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False)


def _fk(name: str, target: str, ondelete: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # -----------------------------------------------------
    # 1) Tenants
    # -----------------------------------------------------
    op.create_table(
        "clinics",
        _id(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    # -----------------------------------------------------
    # 2) Commission plans, tiers, product rates
    # -----------------------------------------------------
    op.create_table(
        "commission_plans",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("plan_type", sa.String(length=20), nullable=False, server_default="PERCENT"),
        sa.Column("initial_percent_bps", sa.Integer(), nullable=True),
        sa.Column("initial_flat_amount_cents", sa.Integer(), nullable=True),
        sa.Column("recurring_percent_bps", sa.Integer(), nullable=True),
        sa.Column("recurring_flat_amount_cents", sa.Integer(), nullable=True),
        sa.Column("applies_to", sa.String(length=30), nullable=False, server_default="ALL_PAYMENTS"),
        sa.Column("recurring_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("recurring_months", sa.Integer(), nullable=True),
        sa.Column("recurring_decay_pct", sa.Integer(), nullable=True),
        sa.Column("hold_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("clawback_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("tier_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("tier_metric", sa.String(length=20), nullable=False, server_default="REVENUE"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_commission_plans_clinic_id", "commission_plans", ["clinic_id"])

    op.create_table(
        "commission_tiers",
        _id(),
        _fk("plan_id", "commission_plans.id", "CASCADE"),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("min_revenue_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("min_conversions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("percent_bps", sa.Integer(), nullable=True),
        sa.Column("flat_amount_cents", sa.Integer(), nullable=True),
        sa.Column("bonus_cents", sa.Integer(), nullable=True),
        sa.UniqueConstraint("plan_id", "level", name="uq_commission_tiers_plan_level"),
    )
    op.create_index("ix_commission_tiers_plan_id", "commission_tiers", ["plan_id"])

    op.create_table(
        "commission_product_rates",
        _id(),
        _fk("plan_id", "commission_plans.id", "CASCADE"),
        sa.Column("product_sku", sa.String(length=80), nullable=True),
        sa.Column("product_category", sa.String(length=80), nullable=True),
        sa.Column("min_price_cents", sa.Integer(), nullable=True),
        sa.Column("max_price_cents", sa.Integer(), nullable=True),
        sa.Column("percent_bps", sa.Integer(), nullable=True),
        sa.Column("flat_amount_cents", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )
    op.create_index("ix_commission_product_rates_plan_id", "commission_product_rates", ["plan_id"])

    # -----------------------------------------------------
    # 3) Affiliates, ref codes, per-clinic settings
    # -----------------------------------------------------
    op.create_table(
        "affiliates",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("lifetime_revenue_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_conversions", sa.Integer(), nullable=False, server_default="0"),
        _fk("current_tier_id", "commission_tiers.id", "SET NULL", nullable=True),
        sa.Column("tier_qualified_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_affiliates_clinic_id", "affiliates", ["clinic_id"])
    op.create_index("ix_affiliates_clinic_status", "affiliates", ["clinic_id", "status"])

    op.create_table(
        "affiliate_ref_codes",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        _fk("affiliate_id", "affiliates.id", "RESTRICT"),
        sa.Column("ref_code", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.UniqueConstraint("clinic_id", "ref_code", name="uq_affiliate_ref_codes_clinic_code"),
    )
    op.create_index("ix_affiliate_ref_codes_affiliate_id", "affiliate_ref_codes", ["affiliate_id"])

    op.create_table(
        "affiliate_programs",
        _id(),
        sa.Column(
            "clinic_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("clinics.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("minimum_payout_cents", sa.Integer(), nullable=False, server_default="5000"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "attribution_configs",
        _id(),
        sa.Column(
            "clinic_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("clinics.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("new_patient_model", sa.String(length=20), nullable=False, server_default="FIRST_CLICK"),
        sa.Column("returning_patient_model", sa.String(length=20), nullable=False, server_default="LAST_CLICK"),
        sa.Column("cookie_window_days", sa.Integer(), nullable=False, server_default="30"),
        _created_at(),
    )

    # -----------------------------------------------------
    # 4) Patients + touches
    # -----------------------------------------------------
    op.create_table(
        "patients",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        sa.Column("tags", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        _fk("attribution_affiliate_id", "affiliates.id", "SET NULL", nullable=True),
        sa.Column("attribution_ref_code", sa.String(length=64), nullable=True),
        sa.Column("attribution_first_touch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attribution_source", sa.String(length=64), nullable=True),
        _created_at(),
    )
    op.create_index("ix_patients_clinic_id", "patients", ["clinic_id"])
    op.create_index(
        "ix_patients_attribution_affiliate",
        "patients",
        ["attribution_affiliate_id", "attribution_first_touch_at"],
    )

    op.create_table(
        "affiliate_touches",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        _fk("affiliate_id", "affiliates.id", "RESTRICT"),
        sa.Column("ref_code", sa.String(length=64), nullable=False),
        sa.Column("touch_type", sa.String(length=20), nullable=False, server_default="CLICK"),
        sa.Column("visitor_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("cookie_id", sa.String(length=128), nullable=True),
        sa.Column("landing_page", sa.String(length=500), nullable=True),
        sa.Column("utm_source", sa.String(length=120), nullable=True),
        sa.Column("utm_medium", sa.String(length=120), nullable=True),
        sa.Column("utm_campaign", sa.String(length=120), nullable=True),
        _created_at(),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        _fk("converted_patient_id", "patients.id", "SET NULL", nullable=True),
    )
    op.create_index("ix_affiliate_touches_cookie_id", "affiliate_touches", ["cookie_id"])
    op.create_index("ix_affiliate_touches_clinic_created", "affiliate_touches", ["clinic_id", "created_at"])
    op.create_index("ix_affiliate_touches_affiliate_created", "affiliate_touches", ["affiliate_id", "created_at"])
    op.create_index("ix_affiliate_touches_fingerprint", "affiliate_touches", ["clinic_id", "visitor_fingerprint"])

    # -----------------------------------------------------
    # 5) Plan assignments
    # -----------------------------------------------------
    op.create_table(
        "commission_plan_assignments",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        _fk("affiliate_id", "affiliates.id", "RESTRICT"),
        _fk("plan_id", "commission_plans.id", "RESTRICT"),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_plan_assignments_affiliate_from",
        "commission_plan_assignments",
        ["affiliate_id", "effective_from"],
    )

    # -----------------------------------------------------
    # 6) Payouts + commission ledger
    # -----------------------------------------------------
    op.create_table(
        "affiliate_payouts",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        _fk("affiliate_id", "affiliates.id", "RESTRICT"),
        sa.Column("net_amount_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PROCESSING"),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_affiliate_payouts_affiliate_id", "affiliate_payouts", ["affiliate_id"])

    op.create_table(
        "commission_events",
        _id(),
        _fk("clinic_id", "clinics.id", "RESTRICT"),
        _fk("affiliate_id", "affiliates.id", "RESTRICT"),
        _fk("patient_id", "patients.id", "RESTRICT"),
        _fk("plan_id", "commission_plans.id", "SET NULL", nullable=True),
        sa.Column("ref_code", sa.String(length=64), nullable=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_object_id", sa.String(length=255), nullable=False),
        sa.Column("event_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("commission_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("recurring_month", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hold_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversal_reason", sa.String(length=255), nullable=True),
        _fk("payout_id", "affiliate_payouts.id", "SET NULL", nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        _created_at(),
        sa.UniqueConstraint("clinic_id", "stripe_event_id", name="uq_commission_events_clinic_stripe_event"),
    )
    op.create_index("ix_commission_events_patient_id", "commission_events", ["patient_id"])
    op.create_index("ix_commission_events_stripe_object_id", "commission_events", ["stripe_object_id"])
    op.create_index("ix_commission_events_affiliate_occurred", "commission_events", ["affiliate_id", "occurred_at"])
    op.create_index("ix_commission_events_clinic_occurred", "commission_events", ["clinic_id", "occurred_at"])
    op.create_index(
        "ix_commission_events_affiliate_status_payout",
        "commission_events",
        ["affiliate_id", "status", "payout_id"],
    )

    # -----------------------------------------------------
    # 7) Audit trail
    # -----------------------------------------------------
    op.create_table(
        "ledger_audit_logs",
        _id(),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=120), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_ledger_audit_logs_clinic_id", "ledger_audit_logs", ["clinic_id"])
    op.create_index("ix_ledger_audit_entity", "ledger_audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_ledger_audit_entity", table_name="ledger_audit_logs")
    op.drop_index("ix_ledger_audit_logs_clinic_id", table_name="ledger_audit_logs")
    op.drop_table("ledger_audit_logs")

    op.drop_index("ix_commission_events_affiliate_status_payout", table_name="commission_events")
    op.drop_index("ix_commission_events_clinic_occurred", table_name="commission_events")
    op.drop_index("ix_commission_events_affiliate_occurred", table_name="commission_events")
    op.drop_index("ix_commission_events_stripe_object_id", table_name="commission_events")
    op.drop_index("ix_commission_events_patient_id", table_name="commission_events")
    op.drop_table("commission_events")

    op.drop_index("ix_affiliate_payouts_affiliate_id", table_name="affiliate_payouts")
    op.drop_table("affiliate_payouts")

    op.drop_index("ix_plan_assignments_affiliate_from", table_name="commission_plan_assignments")
    op.drop_table("commission_plan_assignments")

    op.drop_index("ix_affiliate_touches_fingerprint", table_name="affiliate_touches")
    op.drop_index("ix_affiliate_touches_affiliate_created", table_name="affiliate_touches")
    op.drop_index("ix_affiliate_touches_clinic_created", table_name="affiliate_touches")
    op.drop_index("ix_affiliate_touches_cookie_id", table_name="affiliate_touches")
    op.drop_table("affiliate_touches")

    op.drop_index("ix_patients_attribution_affiliate", table_name="patients")
    op.drop_index("ix_patients_clinic_id", table_name="patients")
    op.drop_table("patients")

    op.drop_table("attribution_configs")
    op.drop_table("affiliate_programs")

    op.drop_index("ix_affiliate_ref_codes_affiliate_id", table_name="affiliate_ref_codes")
    op.drop_table("affiliate_ref_codes")

    op.drop_index("ix_affiliates_clinic_status", table_name="affiliates")
    op.drop_index("ix_affiliates_clinic_id", table_name="affiliates")
    op.drop_table("affiliates")

    op.drop_index("ix_commission_product_rates_plan_id", table_name="commission_product_rates")
    op.drop_table("commission_product_rates")
    op.drop_index("ix_commission_tiers_plan_id", table_name="commission_tiers")
    op.drop_table("commission_tiers")
    op.drop_index("ix_commission_plans_clinic_id", table_name="commission_plans")
    op.drop_table("commission_plans")

    op.drop_table("clinics")
