"""Synchronous generation endpoint driving the job saga."""

from __future__ import annotations

import posixpath
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ...core.ratelimit import limiter_generate
from ...schemas.base import GenerateFailureResponse, GenerateRequest, GenerateSuccessResponse
from ...services.catalog import InputItem, InvalidInputsError
from ...services.ledger import Account
from ...services.saga import GenerationRequest, GenerationSaga
from ..deps import get_current_account, get_saga
from .serializers import balances_payload, error_detail_payload, job_payload

router = APIRouter()


def _owned_input_path(account_id: str, path: str) -> bool:
    normalized = posixpath.normpath(path)
    return normalized == path and path.startswith(f"{account_id}/") and ".." not in path.split("/")


# Plain ``def`` so the saga runs in the threadpool: a client disconnect does not
# cancel it once the account has been debited.
@router.post(
    "/generate",
    response_model=GenerateSuccessResponse,
    responses={500: {"model": GenerateFailureResponse}},
    dependencies=[Depends(limiter_generate)],
)
def generate(
    payload: GenerateRequest,
    current_account: Account = Depends(get_current_account),
    saga: GenerationSaga = Depends(get_saga),
) -> Any:
    for item in payload.inputs:
        if not _owned_input_path(current_account.id, item.path):
            raise InvalidInputsError("Input path does not belong to this account")

    outcome = saga.run(
        current_account.external_id,
        GenerationRequest(
            model=payload.model,
            prompt=payload.prompt,
            params=payload.params,
            inputs=tuple(InputItem(kind=item.kind, path=item.path) for item in payload.inputs),
            style=payload.style,
            counter=payload.counter,
            prompt_ai=bool(payload.prompt_ai),
        ),
    )

    if outcome.succeeded and outcome.job is not None:
        return {"job": job_payload(outcome.job), "user": balances_payload(outcome.balances)}

    body = GenerateFailureResponse(
        job={"id": outcome.job_id, "status": "failed"},
        error=error_detail_payload(outcome.error or {}),
        user=balances_payload(outcome.balances),
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())
