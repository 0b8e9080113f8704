"""Add per-session membership tier prices

Revision ID: b002_session_membership_prices
Revises: b001_booking_tables
Create Date: 2026-10-19 09:00:00.000000

One row per (session template, membership tier): an optional override price
and a flag that withdraws the tier's member rate on that session.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "b002_session_membership_prices"
down_revision: Union[str, None] = "b001_booking_tables"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "session_membership_prices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_template_id", sa.String(), nullable=False),
        sa.Column("membership_id", sa.String(), nullable=False),
        sa.Column("override_price", sa.Integer(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["session_template_id"], ["session_templates.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["membership_id"], ["memberships.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "session_template_id", "membership_id", name="uq_session_membership_price"
        ),
        sa.CheckConstraint(
            "override_price IS NULL OR override_price >= 0",
            name="ck_session_membership_price_non_negative",
        ),
    )
    op.create_index(
        "ix_session_membership_prices_session_template_id",
        "session_membership_prices",
        ["session_template_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_session_membership_prices_session_template_id",
        table_name="session_membership_prices",
    )
    op.drop_table("session_membership_prices")
