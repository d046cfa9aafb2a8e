import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from ..core.database import Database
from ..core.errors import LedgerError
from ..db.models import DbJob

TERMINAL_STATUSES = ("succeeded", "failed")


class JobStateError(LedgerError):
    code = "job_state_conflict"
    default_message = "Job already reached a different terminal state"


@dataclass
class Job:
    id: str
    account_id: str
    model_id: str
    job_type: str
    prompt: str
    params: Dict[str, Any]
    inputs: List[Dict[str, Any]]
    unit_count: int
    status: str
    cost: Decimal
    promo_credits_consumed: int
    output_url: str | None
    error_detail: Dict[str, Any] | None
    created_at: int
    updated_at: int
    finished_at: int | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _job_from_db(row: DbJob) -> Job:
    return Job(
        id=row.id,
        account_id=row.account_id,
        model_id=row.model_id,
        job_type=row.job_type,
        prompt=row.prompt,
        params=row.params or {},
        inputs=row.inputs or [],
        unit_count=row.unit_count,
        status=row.status,
        cost=Decimal(row.cost),
        promo_credits_consumed=row.promo_credits_consumed,
        output_url=row.output_url,
        error_detail=row.error_detail,
        created_at=row.created_at,
        updated_at=row.updated_at,
        finished_at=row.finished_at,
    )


class JobStore:
    """Reads jobs and applies their single terminal transition.

    Jobs are created by ``LedgerStore.debit_and_create_job``; this store never
    inserts rows.
    """

    def __init__(self, db: Database):
        self.db = db

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.db.session() as session:
            row = session.get(DbJob, job_id)
            if not row:
                return None
            return _job_from_db(row)

    def get_job_for_account(self, job_id: str, account_id: str) -> Optional[Job]:
        job = self.get_job(job_id)
        if job is None or job.account_id != account_id:
            return None
        return job

    def list_jobs_for_account(self, account_id: str, limit: int = 50) -> List[Job]:
        with self.db.session() as session:
            stmt = (
                select(DbJob)
                .where(DbJob.account_id == account_id)
                .order_by(DbJob.created_at.desc(), DbJob.id.desc())
                .limit(limit)
            )
            rows = list(session.scalars(stmt).all())
        return [_job_from_db(row) for row in rows]

    def mark_succeeded(self, job_id: str, output_url: str | None) -> None:
        self._finish(job_id, "succeeded", output_url=output_url, error_detail=None)

    def mark_failed(self, job_id: str, error_detail: Dict[str, Any]) -> None:
        self._finish(job_id, "failed", output_url=None, error_detail=error_detail)

    def _finish(
        self,
        job_id: str,
        status: str,
        *,
        output_url: str | None,
        error_detail: Dict[str, Any] | None,
    ) -> None:
        # Only a non-terminal job may move; re-applying the same terminal state is a no-op
        # so a retried settlement whose first commit landed stays harmless.
        now = int(time.time())
        with self.db.session() as session:
            result = session.execute(
                update(DbJob)
                .where(DbJob.id == job_id, DbJob.status.not_in(TERMINAL_STATUSES))
                .values(
                    status=status,
                    output_url=output_url,
                    error_detail=error_detail,
                    updated_at=now,
                    finished_at=now,
                )
            )
            if result.rowcount:
                return
            current = session.scalar(select(DbJob.status).where(DbJob.id == job_id))
        if current is None:
            raise LookupError(f"Job {job_id} not found")
        if current != status:
            raise JobStateError()

    def list_stale_processing(self, older_than: int, limit: int = 500) -> List[Job]:
        """Jobs still ``processing`` that were created before ``older_than``."""
        with self.db.session() as session:
            stmt = (
                select(DbJob)
                .where(DbJob.status == "processing", DbJob.created_at < older_than)
                .order_by(DbJob.created_at.asc())
                .limit(limit)
            )
            rows = list(session.scalars(stmt).all())
        return [_job_from_db(row) for row in rows]
