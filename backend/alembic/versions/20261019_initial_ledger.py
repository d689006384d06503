"""Create referral ledger tables

Revision ID: 001_ledger
Revises:
Create Date: 2026-10-19

Adds tables for:
- vendors: Referral programs and their commission terms
- referral_sessions: Clicks through affiliate tracking links
- conversions: Paid sales, unique per (transaction, vendor)
- commissions: Affiliate earnings, at most one per conversion
- outbox_tasks: Durable attribution/commission/refund work
- signup_referrals: Zero-commission signups from legacy tracking events
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create referral ledger tables."""

    # Vendors table (program terms)
    op.create_table(
        "vendors",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("commission_type", sa.String(20), nullable=False),
        sa.Column("commission_value", sa.Numeric(12, 4), nullable=False),
        sa.Column("cookie_duration", sa.Integer(), nullable=False),
        sa.Column("destination_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Referral sessions table (clicks)
    op.create_table(
        "referral_sessions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("affiliate_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(36), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("landing_url", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_referral_sessions_vendor_expires", "referral_sessions", ["vendor_id", "expires_at"], unique=False
    )
    op.create_index(
        "ix_referral_sessions_affiliate_created", "referral_sessions", ["affiliate_id", "created_at"], unique=False
    )

    # Conversions table (one row per transaction and vendor)
    op.create_table(
        "conversions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("external_transaction_id", sa.String(255), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(36), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("referral_session_id", sa.String(36), nullable=True),
        sa.Column("affiliate_id", sa.String(64), nullable=True),
        sa.Column("converted_at", sa.DateTime(), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.ForeignKeyConstraint(["referral_session_id"], ["referral_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_transaction_id", "vendor_id", name="uq_conversions_transaction_vendor"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "ix_conversions_external_transaction_id", "conversions", ["external_transaction_id"], unique=False
    )
    op.create_index("ix_conversions_status", "conversions", ["status"], unique=False)
    op.create_index("ix_conversions_affiliate_id", "conversions", ["affiliate_id"], unique=False)

    # Commissions table (at most one per conversion)
    op.create_table(
        "commissions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("conversion_id", sa.String(36), nullable=False),
        sa.Column("affiliate_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(36), nullable=False),
        sa.Column("sale_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_type", sa.String(20), nullable=False),
        sa.Column("commission_rate", sa.Numeric(12, 4), nullable=False),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("reversed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["conversion_id"], ["conversions.id"]),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("conversion_id"),
    )
    op.create_index("ix_commissions_affiliate_id", "commissions", ["affiliate_id"], unique=False)
    op.create_index("ix_commissions_status", "commissions", ["status"], unique=False)

    # Outbox tasks table (pending ledger work)
    op.create_table(
        "outbox_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("conversion_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["conversion_id"], ["conversions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "conversion_id", name="uq_outbox_tasks_kind_conversion"),
    )
    op.create_index("ix_outbox_tasks_conversion_id", "outbox_tasks", ["conversion_id"], unique=False)
    op.create_index(
        "ix_outbox_tasks_status_available", "outbox_tasks", ["status", "available_at"], unique=False
    )

    # Signup referrals table (legacy tracking events)
    op.create_table(
        "signup_referrals",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("affiliate_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(36), nullable=False),
        sa.Column("referral_session_id", sa.String(36), nullable=True),
        sa.Column("event_name", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.ForeignKeyConstraint(["referral_session_id"], ["referral_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("affiliate_id", "vendor_id", name="uq_signup_referrals_affiliate_vendor"),
    )


def downgrade() -> None:
    """Drop referral ledger tables."""
    op.drop_table("signup_referrals")
    op.drop_index("ix_outbox_tasks_status_available", table_name="outbox_tasks")
    op.drop_index("ix_outbox_tasks_conversion_id", table_name="outbox_tasks")
    op.drop_table("outbox_tasks")
    op.drop_index("ix_commissions_status", table_name="commissions")
    op.drop_index("ix_commissions_affiliate_id", table_name="commissions")
    op.drop_table("commissions")
    op.drop_index("ix_conversions_affiliate_id", table_name="conversions")
    op.drop_index("ix_conversions_status", table_name="conversions")
    op.drop_index("ix_conversions_external_transaction_id", table_name="conversions")
    op.drop_table("conversions")
    op.drop_index("ix_referral_sessions_affiliate_created", table_name="referral_sessions")
    op.drop_index("ix_referral_sessions_vendor_expires", table_name="referral_sessions")
    op.drop_table("referral_sessions")
    op.drop_table("vendors")
