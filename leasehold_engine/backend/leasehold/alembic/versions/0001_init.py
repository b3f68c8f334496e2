"""init schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "app_users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=200), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=30), nullable=False, server_default="tenant"),
        sa.Column("phone_number", sa.String(length=40), nullable=True),
        sa.Column("sms_opt_in", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("email_opt_in", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("push_token", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_app_users_email", "app_users", ["email"], unique=True)

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("landlord_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("manager_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="available"),
        sa.Column("is_listed", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("monthly_rent", sa.Float(), nullable=False, server_default="0"),
        sa.Column("security_deposit", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_fee_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_fee_grace_period_days", sa.Integer(), nullable=True),
        sa.Column("default_duration_months", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_properties_landlord_id", "properties", ["landlord_id"])
    op.create_index("ix_properties_manager_id", "properties", ["manager_id"])

    op.create_table(
        "agreements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("landlord_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("application_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("rent_amount", sa.Float(), nullable=False),
        sa.Column("deposit_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_fee_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("late_fee_grace_period_days", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("renewal_notify_days_before", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("landlord_signed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("landlord_signed_at", sa.DateTime(), nullable=True),
        sa.Column("landlord_signed_address", sa.String(length=64), nullable=True),
        sa.Column("tenant_signed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("tenant_signed_at", sa.DateTime(), nullable=True),
        sa.Column("tenant_signed_address", sa.String(length=64), nullable=True),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("payment_session_id", sa.String(length=128), nullable=True),
        sa.Column("renewal_proposed_by_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=True),
        sa.Column("renewal_new_end_date", sa.Date(), nullable=True),
        sa.Column("renewal_new_rent_amount", sa.Float(), nullable=True),
        sa.Column("renewal_notes", sa.Text(), nullable=True),
        sa.Column("renewal_status", sa.String(length=20), nullable=True),
        sa.Column("renewal_proposed_at", sa.DateTime(), nullable=True),
        sa.Column("renewal_responded_at", sa.DateTime(), nullable=True),
        sa.Column("terminated_at", sa.DateTime(), nullable=True),
        sa.Column("termination_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("payment_session_id", name="uq_agreements_payment_session_id"),
    )
    op.create_index("ix_agreements_landlord_id", "agreements", ["landlord_id"])
    op.create_index("ix_agreements_tenant_id", "agreements", ["tenant_id"])
    op.create_index("ix_agreements_property_id", "agreements", ["property_id"])
    op.create_index("ix_agreements_status", "agreements", ["status"])
    op.create_index("ix_agreements_end_date", "agreements", ["end_date"])

    op.create_table(
        "applications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("landlord_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("agreement_id", sa.Integer(), sa.ForeignKey("agreements.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_applications_property_id", "applications", ["property_id"])
    op.create_index("ix_applications_tenant_id", "applications", ["tenant_id"])
    op.create_index("ix_applications_landlord_id", "applications", ["landlord_id"])

    op.create_table(
        "rent_schedule_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("agreement_id", sa.Integer(), sa.ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("paid_date", sa.DateTime(), nullable=True),
        sa.Column("paid_amount", sa.Float(), nullable=True),
        sa.Column("late_fee_applied", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("late_fee_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("external_payment_ref", sa.String(length=128), nullable=True),
        sa.UniqueConstraint("agreement_id", "seq", name="uq_rent_schedule_agreement_seq"),
    )
    op.create_index("ix_rent_schedule_entries_agreement_id", "rent_schedule_entries", ["agreement_id"])
    op.create_index("ix_rent_schedule_entries_due_date", "rent_schedule_entries", ["due_date"])

    op.create_table(
        "agreement_audit_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("agreement_id", sa.Integer(), sa.ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", sa.String(length=60), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=True),
        sa.Column("source_address", sa.String(length=64), nullable=True),
        sa.Column("detail", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_agreement_audit_entries_agreement_id", "agreement_audit_entries", ["agreement_id"])
    op.create_index("ix_agreement_audit_entries_action", "agreement_audit_entries", ["action"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("agreement_id", sa.Integer(), sa.ForeignKey("agreements.id"), nullable=False),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("landlord_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("payment_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="paid"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("late_fee_included", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("late_fee_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("external_session_id", sa.String(length=128), nullable=True),
        sa.Column("external_payment_intent", sa.String(length=128), nullable=True),
        sa.Column("receipt_number", sa.String(length=40), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("external_session_id", name="uq_payments_external_session_id"),
        sa.UniqueConstraint("receipt_number", name="uq_payments_receipt_number"),
    )
    op.create_index("ix_payments_agreement_id", "payments", ["agreement_id"])
    op.create_index("ix_payments_tenant_id", "payments", ["tenant_id"])
    op.create_index("ix_payments_landlord_id", "payments", ["landlord_id"])
    op.create_index("ix_payments_property_id", "payments", ["property_id"])

    op.create_table(
        "receipt_counters",
        sa.Column("year", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("job_type", sa.String(length=60), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_notification_jobs_idempotency_key"),
    )
    op.create_index("ix_notification_jobs_job_type", "notification_jobs", ["job_type"])
    op.create_index("ix_notification_jobs_status_next_attempt", "notification_jobs", ["status", "next_attempt_at"])

    op.create_table(
        "batch_locks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lock_key", sa.String(length=80), nullable=False),
        sa.Column("owner", sa.String(length=120), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("lock_key", name="uq_batch_locks_lock_key"),
    )


def downgrade():
    op.drop_table("batch_locks")
    op.drop_index("ix_notification_jobs_status_next_attempt", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_job_type", table_name="notification_jobs")
    op.drop_table("notification_jobs")
    op.drop_table("receipt_counters")
    op.drop_table("payments")
    op.drop_table("agreement_audit_entries")
    op.drop_table("rent_schedule_entries")
    op.drop_table("applications")
    op.drop_table("agreements")
    op.drop_table("properties")
    op.drop_index("ix_app_users_email", table_name="app_users")
    op.drop_table("app_users")
