from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from ...schemas.base import JobEnvelope, JobsResponse
from ...services.jobs import JobStore
from ...services.ledger import Account
from ..deps import get_current_account, get_job_store
from .serializers import job_payload

router = APIRouter()

JOBS_PAGE_SIZE = 50


@router.get("/jobs", response_model=JobsResponse)
def list_jobs(
    current_account: Account = Depends(get_current_account),
    job_store: JobStore = Depends(get_job_store),
) -> Any:
    """Latest jobs of the current account, newest first."""
    jobs = job_store.list_jobs_for_account(current_account.id, limit=JOBS_PAGE_SIZE)
    return {"items": [job_payload(job) for job in jobs]}


@router.get("/jobs/{job_id}", response_model=JobEnvelope)
def get_job(
    job_id: str,
    current_account: Account = Depends(get_current_account),
    job_store: JobStore = Depends(get_job_store),
) -> Any:
    job = job_store.get_job_for_account(job_id, current_account.id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return {"job": job_payload(job)}
