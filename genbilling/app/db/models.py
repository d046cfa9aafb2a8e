"""SQLAlchemy ORM models for the application's relational database."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base

JSON_VALUE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(12, 2, asdecimal=True)

JOB_STATUSES = ("queued", "processing", "succeeded", "failed")
TRANSACTION_TYPES = ("debit", "refund", "topup")


class DbAccount(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    cash_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), server_default="0")
    promo_credits: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("cash_balance >= 0", name="chk_accounts_cash_balance_nonnegative"),
        CheckConstraint("promo_credits >= 0", name="chk_accounts_promo_credits_nonnegative"),
    )


class DbSession(Base):
    __tablename__ = "sessions"

    token_hash: Mapped[str] = mapped_column(String(128), primary_key=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[int] = mapped_column(Integer)
    expires_at: Mapped[int] = mapped_column(Integer, index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)


class DbJob(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    model_id: Mapped[str] = mapped_column(String(64))
    job_type: Mapped[str] = mapped_column(String(16))
    prompt: Mapped[str] = mapped_column(Text)
    params: Mapped[dict[str, Any]] = mapped_column(JSON_VALUE)
    inputs: Mapped[list[dict[str, Any]]] = mapped_column(JSON_VALUE)
    unit_count: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(32))
    cost: Mapped[Decimal] = mapped_column(MONEY)
    promo_credits_consumed: Mapped[int] = mapped_column(Integer, default=0)
    output_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)
    finished_at: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued','processing','succeeded','failed')",
            name="chk_jobs_status",
        ),
        CheckConstraint("cost >= 0", name="chk_jobs_cost_nonnegative"),
        CheckConstraint("promo_credits_consumed >= 0", name="chk_jobs_promo_nonnegative"),
        Index("idx_jobs_account_created_at", "account_id", "created_at"),
        Index("idx_jobs_status", "status"),
    )


class DbTransaction(Base):
    """Append-only ledger entry; amount is negative for debits."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    job_id: Mapped[str | None] = mapped_column(
        ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY)
    type: Mapped[str] = mapped_column(String(16))
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True, index=True, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("type IN ('debit','refund','topup')", name="chk_transactions_type"),
        Index("idx_transactions_account_created_at", "account_id", "created_at"),
        Index("idx_transactions_job_type", "job_id", "type"),
    )
