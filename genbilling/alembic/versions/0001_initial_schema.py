"""Initial schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_value = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
    money = sa.Numeric(12, 2)

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("cash_balance", money, nullable=False, server_default="0"),
        sa.Column("promo_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("cash_balance >= 0", name="chk_accounts_cash_balance_nonnegative"),
        sa.CheckConstraint("promo_credits >= 0", name="chk_accounts_promo_credits_nonnegative"),
    )
    op.create_index("ix_accounts_external_id", "accounts", ["external_id"], unique=True)

    op.create_table(
        "sessions",
        sa.Column("token_hash", sa.String(length=128), primary_key=True),
        sa.Column("account_id", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.Integer(), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_sessions_account_id", "sessions", ["account_id"])
    op.create_index("ix_sessions_expires_at", "sessions", ["expires_at"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("account_id", sa.String(length=32), nullable=False),
        sa.Column("model_id", sa.String(length=64), nullable=False),
        sa.Column("job_type", sa.String(length=16), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("params", json_value, nullable=False),
        sa.Column("inputs", json_value, nullable=False),
        sa.Column("unit_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("cost", money, nullable=False),
        sa.Column("promo_credits_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_url", sa.Text(), nullable=True),
        sa.Column("error_detail", json_value, nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.Column("finished_at", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "status IN ('queued','processing','succeeded','failed')",
            name="chk_jobs_status",
        ),
        sa.CheckConstraint("cost >= 0", name="chk_jobs_cost_nonnegative"),
        sa.CheckConstraint("promo_credits_consumed >= 0", name="chk_jobs_promo_nonnegative"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_jobs_account_id", "jobs", ["account_id"])
    op.create_index("idx_jobs_account_created_at", "jobs", ["account_id", "created_at"])
    op.create_index("idx_jobs_status", "jobs", ["status"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("account_id", sa.String(length=32), nullable=False),
        sa.Column("job_id", sa.String(length=32), nullable=True),
        sa.Column("amount", money, nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("meta", json_value, nullable=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("type IN ('debit','refund','topup')", name="chk_transactions_type"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_transactions_account_id", "transactions", ["account_id"])
    op.create_index("ix_transactions_job_id", "transactions", ["job_id"])
    op.create_index("ix_transactions_idempotency_key", "transactions", ["idempotency_key"], unique=True)
    op.create_index("idx_transactions_account_created_at", "transactions", ["account_id", "created_at"])
    op.create_index("idx_transactions_job_type", "transactions", ["job_id", "type"])


def downgrade() -> None:
    op.drop_table("transactions")
    op.drop_table("jobs")
    op.drop_table("sessions")
    op.drop_table("accounts")
