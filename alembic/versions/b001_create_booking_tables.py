"""Create session booking tables

Revision ID: b001_booking_tables
Revises:
Create Date: 2026-09-28 10:00:00.000000

Creates organizations, users, session templates and schedules, session
instances with their held-spot counter, bookings, membership tiers, user
memberships and the payment webhook event log.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "b001_booking_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # Create organizations table
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("member_price_type", sa.String(20), nullable=True),
        sa.Column("member_discount_percent", sa.Integer(), nullable=True),
        sa.Column("member_fixed_price", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug", name="uq_organizations_slug"),
        sa.CheckConstraint(
            "member_price_type IS NULL OR member_price_type IN ('discount', 'fixed')",
            name="ck_org_member_price_type",
        ),
        sa.CheckConstraint(
            "member_discount_percent IS NULL OR "
            "(member_discount_percent >= 0 AND member_discount_percent <= 100)",
            name="ck_org_discount_percent_range",
        ),
        sa.CheckConstraint(
            "member_fixed_price IS NULL OR member_fixed_price >= 0",
            name="ck_org_fixed_price_non_negative",
        ),
    )
    op.create_index("ix_organizations_slug", "organizations", ["slug"])

    # Create users table
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("is_guest", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("role", sa.String(20), server_default="user", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.UniqueConstraint("external_id", name="uq_users_external_id"),
        sa.UniqueConstraint("organization_id", "email", name="uq_user_org_email"),
        sa.CheckConstraint("role IN ('guest', 'user', 'admin')", name="ck_user_role"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    # Create session_templates table
    op.create_table(
        "session_templates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("visibility", sa.String(20), server_default="open", nullable=False),
        sa.Column("pricing_type", sa.String(20), server_default="free", nullable=False),
        sa.Column("drop_in_price", sa.Integer(), nullable=True),
        sa.Column("member_price", sa.Integer(), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("recurrence_start_date", sa.Date(), nullable=True),
        sa.Column("recurrence_end_date", sa.Date(), nullable=True),
        sa.Column("timezone", sa.String(64), server_default="Europe/London", nullable=False),
        sa.Column("one_off_date", sa.Date(), nullable=True),
        sa.Column("one_off_start_time", sa.Time(), nullable=True),
        sa.Column("created_by_id", sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
        sa.CheckConstraint("capacity > 0", name="ck_template_capacity_positive"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_template_duration_positive"),
        sa.CheckConstraint("visibility IN ('open', 'hidden', 'closed')", name="ck_template_visibility"),
        sa.CheckConstraint("pricing_type IN ('free', 'paid')", name="ck_template_pricing_type"),
        sa.CheckConstraint(
            "pricing_type = 'free' OR drop_in_price IS NOT NULL",
            name="ck_template_paid_has_price",
        ),
        sa.CheckConstraint(
            "drop_in_price IS NULL OR drop_in_price >= 0",
            name="ck_template_drop_in_non_negative",
        ),
        sa.CheckConstraint(
            "member_price IS NULL OR member_price >= 0",
            name="ck_template_member_price_non_negative",
        ),
    )
    op.create_index("ix_session_templates_organization_id", "session_templates", ["organization_id"])

    # Create session_schedules table
    op.create_table(
        "session_schedules",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["template_id"], ["session_templates.id"], ondelete="CASCADE"),
        sa.CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedule_day_of_week"),
        sa.CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes > 0",
            name="ck_schedule_duration_positive",
        ),
    )
    op.create_index("ix_session_schedules_template_id", "session_schedules", ["template_id"])

    # Create session_instances table
    op.create_table(
        "session_instances",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="scheduled", nullable=False),
        sa.Column("spots_held", sa.Integer(), server_default="0", nullable=False),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["template_id"], ["session_templates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.UniqueConstraint("template_id", "start_time", name="uq_instance_template_start"),
        sa.CheckConstraint("spots_held >= 0", name="ck_instance_spots_held_non_negative"),
        sa.CheckConstraint("status IN ('scheduled', 'cancelled')", name="ck_instance_status"),
        sa.CheckConstraint("end_time > start_time", name="ck_instance_time_order"),
    )
    op.create_index("ix_session_instances_template_id", "session_instances", ["template_id"])
    op.create_index("ix_session_instances_organization_id", "session_instances", ["organization_id"])
    op.create_index("ix_session_instances_start_time", "session_instances", ["start_time"])

    # Create bookings table
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("session_instance_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("number_of_spots", sa.Integer(), server_default="1", nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_status", sa.String(20), server_default="unpaid", nullable=False),
        sa.Column("currency", sa.String(3), server_default="gbp", nullable=False),
        sa.Column("total_amount", sa.Integer(), server_default="0", nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=True),
        sa.Column("unit_price", sa.Integer(), nullable=True),
        sa.Column("discount_amount", sa.Integer(), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("booked_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("refund_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["session_instance_id"], ["session_instances.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("stripe_checkout_session_id", name="uq_bookings_checkout_session"),
        sa.CheckConstraint("number_of_spots >= 1", name="ck_booking_spots_positive"),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'confirmed', 'cancelled', 'completed')",
            name="ck_booking_status",
        ),
        sa.CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'completed', 'failed')",
            name="ck_booking_payment_status",
        ),
        sa.CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
    )
    op.create_index("ix_bookings_organization_id", "bookings", ["organization_id"])
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_stripe_payment_intent_id", "bookings", ["stripe_payment_intent_id"])
    op.create_index("idx_booking_instance_status", "bookings", ["session_instance_id", "status"])
    op.create_index("idx_booking_status_booked_at", "bookings", ["status", "booked_at"])

    # Create memberships table
    op.create_table(
        "memberships",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("billing_period", sa.String(20), server_default="monthly", nullable=False),
        sa.Column("member_price_type", sa.String(20), nullable=True),
        sa.Column("member_discount_percent", sa.Integer(), nullable=True),
        sa.Column("member_fixed_price", sa.Integer(), nullable=True),
        sa.Column("stripe_product_id", sa.String(255), nullable=True),
        sa.Column("stripe_price_id", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.CheckConstraint("price >= 0", name="ck_membership_price_non_negative"),
        sa.CheckConstraint(
            "billing_period IN ('monthly', 'yearly', 'one_time')",
            name="ck_membership_billing_period",
        ),
        sa.CheckConstraint(
            "member_price_type IS NULL OR member_price_type IN ('discount', 'fixed')",
            name="ck_membership_member_price_type",
        ),
        sa.CheckConstraint(
            "member_discount_percent IS NULL OR "
            "(member_discount_percent >= 0 AND member_discount_percent <= 100)",
            name="ck_membership_discount_percent_range",
        ),
    )
    op.create_index("ix_memberships_organization_id", "memberships", ["organization_id"])

    # Create user_memberships table
    op.create_table(
        "user_memberships",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("membership_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(20), server_default="none", nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"]),
        sa.UniqueConstraint("user_id", "organization_id", name="uq_user_membership_user_org"),
        sa.CheckConstraint(
            "status IN ('none', 'active', 'cancelled', 'expired')",
            name="ck_user_membership_status",
        ),
    )
    op.create_index(
        "ix_user_memberships_stripe_subscription_id", "user_memberships", ["stripe_subscription_id"]
    )

    # Create payment_webhook_events table
    op.create_table(
        "payment_webhook_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider_code", sa.String(50), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("provider_event_type", sa.String(100), nullable=False),
        sa.Column("provider_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(50), server_default="pending", nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("related_booking_id", sa.String(), nullable=True),
        sa.Column("related_user_membership_id", sa.String(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_code", "provider_event_id", name="uq_webhook_provider_event"),
    )
    op.create_index(
        "ix_payment_webhook_events_related_booking_id", "payment_webhook_events", ["related_booking_id"]
    )
    op.create_index(
        "idx_webhook_events_retry",
        "payment_webhook_events",
        ["next_retry_at"],
        postgresql_where=sa.text("status = 'failed'"),
    )


def downgrade() -> None:
    op.drop_index("idx_webhook_events_retry", table_name="payment_webhook_events")
    op.drop_index("ix_payment_webhook_events_related_booking_id", table_name="payment_webhook_events")
    op.drop_table("payment_webhook_events")

    op.drop_index("ix_user_memberships_stripe_subscription_id", table_name="user_memberships")
    op.drop_table("user_memberships")

    op.drop_index("ix_memberships_organization_id", table_name="memberships")
    op.drop_table("memberships")

    op.drop_index("idx_booking_status_booked_at", table_name="bookings")
    op.drop_index("idx_booking_instance_status", table_name="bookings")
    op.drop_index("ix_bookings_stripe_payment_intent_id", table_name="bookings")
    op.drop_index("ix_bookings_user_id", table_name="bookings")
    op.drop_index("ix_bookings_organization_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_index("ix_session_instances_start_time", table_name="session_instances")
    op.drop_index("ix_session_instances_organization_id", table_name="session_instances")
    op.drop_index("ix_session_instances_template_id", table_name="session_instances")
    op.drop_table("session_instances")

    op.drop_index("ix_session_schedules_template_id", table_name="session_schedules")
    op.drop_table("session_schedules")

    op.drop_index("ix_session_templates_organization_id", table_name="session_templates")
    op.drop_table("session_templates")

    op.drop_index("ix_users_organization_id", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_organizations_slug", table_name="organizations")
    op.drop_table("organizations")
