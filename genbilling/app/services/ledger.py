"""Atomic, auditable credit ledger for metered generation jobs.

Every balance mutation goes through this module. Each public operation runs in a
single database transaction that first locks the owning account row
(``SELECT ... FOR UPDATE``), so concurrent debits and refunds for one account
serialise while unrelated accounts proceed in parallel.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from ..core.config import settings
from ..core.database import Database
from ..core.errors import FundingError, LedgerError, RequestError
from ..db.models import DbAccount, DbJob, DbTransaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class InvalidCostError(RequestError):
    code = "invalid_cost"
    default_message = "Unable to calculate cost"


class InvalidCountError(RequestError):
    code = "invalid_count"
    default_message = "Unit count must be positive"


class AccountNotFoundError(FundingError):
    code = "account_not_found"
    status_code = 404
    default_message = "Account not found"


class InsufficientBalanceError(FundingError):
    code = "insufficient_balance"
    default_message = "Insufficient balance"


class JobNotFoundError(LedgerError):
    code = "job_not_found"
    status_code = 404
    default_message = "Job not found"


class JobNotFailedError(LedgerError):
    code = "job_not_failed"
    default_message = "Only failed jobs can be refunded"


def refund_idempotency_key(job_id: str) -> str:
    return f"refund:{job_id}"


@dataclass(frozen=True)
class Account:
    id: str
    external_id: int
    cash_balance: Decimal
    promo_credits: int


@dataclass(frozen=True)
class Balances:
    cash_balance: Decimal
    promo_credits: int


@dataclass(frozen=True)
class DebitResult:
    job_id: str
    new_cash_balance: Decimal
    new_promo_credits: int
    charged_cost: Decimal
    free_units_used: int

    @property
    def balances(self) -> Balances:
        return Balances(cash_balance=self.new_cash_balance, promo_credits=self.new_promo_credits)


def _account_from_db(row: DbAccount) -> Account:
    return Account(
        id=row.id,
        external_id=int(row.external_id),
        cash_balance=Decimal(row.cash_balance),
        promo_credits=int(row.promo_credits),
    )


def _balances(row: DbAccount) -> Balances:
    return Balances(cash_balance=Decimal(row.cash_balance), promo_credits=int(row.promo_credits))


class LedgerStore:
    """Service layer that owns all account and transaction mutations."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # --- accounts ------------------------------------------------------------

    def ensure_account(self, external_id: int) -> tuple[Account, bool]:
        """Fetch the account for ``external_id``, creating it on first sight."""
        with self.db.session() as session:
            row = session.scalar(select(DbAccount).where(DbAccount.external_id == external_id).limit(1))
            if row:
                return _account_from_db(row), False

        now = int(time.time())
        starting_balance = Decimal(settings.starting_balance)
        account_id = uuid.uuid4().hex
        try:
            with self.db.session() as session:
                row = DbAccount(
                    id=account_id,
                    external_id=external_id,
                    cash_balance=starting_balance,
                    promo_credits=settings.starting_promo_credits,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                if starting_balance > 0:
                    session.add(
                        DbTransaction(
                            id=uuid.uuid4().hex,
                            account_id=account_id,
                            job_id=None,
                            amount=starting_balance,
                            type="topup",
                            meta={"source": "initial_balance"},
                            created_at=now,
                        )
                    )
                account = _account_from_db(row)
        except IntegrityError:
            # Lost a race against a concurrent first sign-in
            with self.db.session() as session:
                row = session.scalar(select(DbAccount).where(DbAccount.external_id == external_id).limit(1))
                if not row:
                    raise
                return _account_from_db(row), False

        logger.info("Account created", extra={"data": {"account_id": account_id, "external_id": external_id}})
        return account, True

    def get_account(self, account_id: str) -> Account | None:
        with self.db.session() as session:
            row = session.get(DbAccount, account_id)
            return _account_from_db(row) if row else None

    def get_account_by_external_id(self, external_id: int) -> Account | None:
        with self.db.session() as session:
            row = session.scalar(select(DbAccount).where(DbAccount.external_id == external_id).limit(1))
            return _account_from_db(row) if row else None

    def get_balances(self, account_id: str) -> Balances:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError()
        return Balances(cash_balance=account.cash_balance, promo_credits=account.promo_credits)

    # --- atomic compound operations -------------------------------------------

    def debit_and_create_job(
        self,
        *,
        external_id: int,
        model_id: str,
        job_type: str,
        prompt: str,
        params: dict[str, Any],
        inputs: list[dict[str, Any]],
        unit_cost: int,
        unit_count: int,
    ) -> DebitResult:
        """Charge the account and create its ``processing`` job in one transaction.

        Promo credits cover whole units first; the remaining units are charged
        against the cash balance at ``unit_cost`` each.
        """
        if unit_cost <= 0:
            raise InvalidCostError()
        if unit_count <= 0:
            raise InvalidCountError()

        now = int(time.time())
        job_id = uuid.uuid4().hex
        with self.db.session() as session:
            account = self._lock_account(session, DbAccount.external_id == external_id)
            if account is None:
                raise AccountNotFoundError()

            free_units = max(0, min(int(account.promo_credits), unit_count))
            charge = Decimal(max(unit_cost * unit_count - free_units * unit_cost, 0))
            if Decimal(account.cash_balance) < charge:
                raise InsufficientBalanceError()

            account.cash_balance = Decimal(account.cash_balance) - charge
            account.promo_credits = int(account.promo_credits) - free_units
            account.updated_at = now

            session.add(
                DbJob(
                    id=job_id,
                    account_id=account.id,
                    model_id=model_id,
                    job_type=job_type,
                    prompt=prompt,
                    params=params,
                    inputs=inputs,
                    unit_count=unit_count,
                    status="processing",
                    cost=charge,
                    promo_credits_consumed=free_units,
                    created_at=now,
                    updated_at=now,
                )
            )
            session.flush()
            session.add(
                DbTransaction(
                    id=uuid.uuid4().hex,
                    account_id=account.id,
                    job_id=job_id,
                    amount=ZERO - charge,
                    type="debit",
                    meta={
                        "model": model_id,
                        "unit_cost": unit_cost,
                        "unit_count": unit_count,
                        "free_units_used": free_units,
                    },
                    created_at=now,
                )
            )
            session.flush()
            result = DebitResult(
                job_id=job_id,
                new_cash_balance=Decimal(account.cash_balance),
                new_promo_credits=int(account.promo_credits),
                charged_cost=charge,
                free_units_used=free_units,
            )

        logger.info(
            "Debited account and created job",
            extra={
                "job_id": job_id,
                "data": {"model": model_id, "charge": str(charge), "free_units_used": free_units},
            },
        )
        return result

    def refund_job(self, job_id: str) -> Balances:
        """Return a failed job's charge and promo credits exactly once.

        Repeated calls after the first refund are no-ops that report the
        account's current balances.
        """
        now = int(time.time())
        with self.db.session() as session:
            job = session.scalar(select(DbJob).where(DbJob.id == job_id).with_for_update().limit(1))
            if job is None:
                raise JobNotFoundError()
            account = self._lock_account(session, DbAccount.id == job.account_id)
            if account is None:
                raise AccountNotFoundError()
            if job.status != "failed":
                raise JobNotFailedError()

            already_refunded = session.scalar(
                select(DbTransaction.id)
                .where(DbTransaction.job_id == job_id, DbTransaction.type == "refund")
                .limit(1)
            )
            if already_refunded:
                return _balances(account)

            cost = Decimal(job.cost)
            account.cash_balance = Decimal(account.cash_balance) + cost
            account.promo_credits = int(account.promo_credits) + int(job.promo_credits_consumed)
            account.updated_at = now
            session.add(
                DbTransaction(
                    id=uuid.uuid4().hex,
                    account_id=account.id,
                    job_id=job_id,
                    amount=cost,
                    type="refund",
                    meta={"promo_credits_restored": int(job.promo_credits_consumed)},
                    idempotency_key=refund_idempotency_key(job_id),
                    created_at=now,
                )
            )
            session.flush()
            balances = _balances(account)

        logger.info("Refunded job", extra={"job_id": job_id, "data": {"amount": str(cost)}})
        return balances

    def topup(self, external_id: int, amount: Decimal | int, meta: dict[str, Any] | None = None) -> Balances:
        value = Decimal(amount)
        if value <= 0:
            raise InvalidCostError("Top-up amount must be positive")
        if meta is not None and not isinstance(meta, dict):
            raise RequestError("Invalid meta")

        now = int(time.time())
        with self.db.session() as session:
            account = self._lock_account(session, DbAccount.external_id == external_id)
            if account is None:
                raise AccountNotFoundError()
            account.cash_balance = Decimal(account.cash_balance) + value
            account.updated_at = now
            session.add(
                DbTransaction(
                    id=uuid.uuid4().hex,
                    account_id=account.id,
                    job_id=None,
                    amount=value,
                    type="topup",
                    meta=meta,
                    created_at=now,
                )
            )
            session.flush()
            return _balances(account)

    # --- reconciliation --------------------------------------------------------

    def list_unrefunded_failed_jobs(self, limit: int = 500) -> list[str]:
        refund = aliased(DbTransaction)
        with self.db.session() as session:
            stmt = (
                select(DbJob.id)
                .where(
                    DbJob.status == "failed",
                    ~exists().where(and_(refund.job_id == DbJob.id, refund.type == "refund")),
                )
                .order_by(DbJob.created_at.asc())
                .limit(limit)
            )
            return list(session.scalars(stmt).all())

    def _lock_account(self, session: Session, criterion) -> DbAccount | None:
        return session.scalar(select(DbAccount).where(criterion).with_for_update().limit(1))
