"""Job saga: admit, debit, stage inputs, execute once, then settle.

The saga runs to completion once the debit has happened. Failures after the
debit never propagate as exceptions to the caller (except a settlement write
that keeps failing); they settle the job as ``failed`` and trigger the
compensating refund.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError

from ..core.config import settings
from ..core.errors import ServiceError, SettlementError
from ..core.metrics import SagaMetric, log_saga_metrics
from .catalog import InputItem, ModelCatalog, ValidatedRequest
from .executor import (
    ExecutorEnvelope,
    ExecutorFailure,
    ExecutorResult,
    ExecutorSuccess,
    StagedInput,
)
from .jobs import Job, JobStore
from .ledger import Balances, DebitResult, InvalidCostError, InvalidCountError, LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_STYLE = "custom"


class SagaState(StrEnum):
    ADMITTED = "admitted"
    DEBITED = "debited"
    EXECUTING = "executing"
    SETTLED_SUCCESS = "settled_success"
    SETTLED_FAILURE = "settled_failure"


class BlobStager(Protocol):
    def create_read_url(self, path: str) -> str: ...


class Executor(Protocol):
    def invoke(self, envelope: ExecutorEnvelope) -> ExecutorResult: ...


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    prompt: str
    params: dict[str, Any] = field(default_factory=dict)
    inputs: tuple[InputItem, ...] = ()
    style: str | None = None
    counter: int | None = None
    prompt_ai: bool = False


@dataclass(frozen=True)
class Admission:
    request: ValidatedRequest
    unit_cost: int
    unit_count: int


@dataclass
class SagaOutcome:
    job_id: str
    state: SagaState
    balances: Balances
    job: Job | None = None
    error: dict[str, str] | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == SagaState.SETTLED_SUCCESS


class GenerationSaga:
    def __init__(
        self,
        catalog: ModelCatalog,
        ledger: LedgerStore,
        jobs: JobStore,
        stager: BlobStager,
        executor: Executor,
        *,
        settlement_attempts: int | None = None,
        settlement_delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.jobs = jobs
        self.stager = stager
        self.executor = executor
        self.settlement_attempts = max(
            1, settlement_attempts if settlement_attempts is not None else settings.settlement_retry_attempts
        )
        self.settlement_delay_seconds = (
            settlement_delay_seconds
            if settlement_delay_seconds is not None
            else settings.settlement_retry_delay_seconds
        )
        self._sleep = sleep

    def admit(self, request: GenerationRequest) -> Admission:
        """Validate and price a request. Raises before anything is written."""
        validated = self.catalog.validate(request.model, request.params, request.inputs, request.prompt)
        model = validated.model

        unit_cost = self.catalog.price(model.id, validated.params)
        if unit_cost <= 0:
            raise InvalidCostError()

        unit_count = 1
        if model.allows_batch and request.counter is not None:
            unit_count = request.counter
            if not 1 <= unit_count <= model.max_units:
                raise InvalidCountError(f"Counter must be between 1 and {model.max_units}")

        return Admission(request=validated, unit_cost=unit_cost, unit_count=unit_count)

    def run(self, external_id: int, request: GenerationRequest) -> SagaOutcome:
        metric = SagaMetric(model=request.model)

        with metric.phase("admit"):
            admission = self.admit(request)
        validated = admission.request
        metric.units = admission.unit_count
        metric.unit_cost = admission.unit_cost

        with metric.phase("debit"):
            debit = self.ledger.debit_and_create_job(
                external_id=external_id,
                model_id=validated.model.id,
                job_type=validated.model.type,
                prompt=validated.prompt,
                params=validated.params,
                inputs=[item.as_dict() for item in validated.inputs],
                unit_cost=admission.unit_cost,
                unit_count=admission.unit_count,
            )
        job_id = metric.job_id = debit.job_id
        logger.info(
            "Saga state %s",
            SagaState.DEBITED,
            extra={
                "job_id": job_id,
                "data": {"model": validated.model.id, "units": admission.unit_count, "cost": str(debit.charged_cost)},
            },
        )

        try:
            with metric.phase("stage"):
                staged = self._stage_inputs(validated.inputs)
        except Exception as exc:
            logger.warning("Input staging failed: %s", exc, extra={"job_id": job_id})
            error = exc.as_dict() if isinstance(exc, ServiceError) else {
                "code": "signed_url_failed",
                "message": "Failed to sign input",
            }
            return self._settle_failure(debit, error, metric)

        envelope = ExecutorEnvelope(
            job_id=job_id,
            telegram_id=external_id,
            model=validated.model.id,
            prompt=validated.prompt,
            params=validated.params,
            inputs=staged,
            style=request.style or DEFAULT_STYLE,
            counter=admission.unit_count,
            prompt_ai=bool(request.prompt_ai),
        )

        logger.info("Saga state %s", SagaState.EXECUTING, extra={"job_id": job_id})
        with metric.phase("execute"):
            result = self._invoke(envelope)

        if isinstance(result, ExecutorSuccess):
            return self._settle_success(debit, result, metric)
        return self._settle_failure(debit, result.as_dict(), metric)

    def _stage_inputs(self, inputs: Iterable[InputItem]) -> list[StagedInput]:
        return [StagedInput(kind=item.kind, signed_url=self.stager.create_read_url(item.path)) for item in inputs]

    def _invoke(self, envelope: ExecutorEnvelope) -> ExecutorResult:
        try:
            return self.executor.invoke(envelope)
        except Exception as exc:
            logger.exception("Executor adapter raised", extra={"job_id": envelope.job_id})
            return ExecutorFailure("transport_error", str(exc) or exc.__class__.__name__)

    def _settle_success(self, debit: DebitResult, result: ExecutorSuccess, metric: SagaMetric) -> SagaOutcome:
        job_id = debit.job_id
        with metric.phase("settle"):
            self._write_settlement(
                job_id,
                lambda: self.jobs.mark_succeeded(job_id, result.output_url),
                {"status": "succeeded", "output_url": result.output_url},
            )

        logger.info("Saga state %s", SagaState.SETTLED_SUCCESS, extra={"job_id": job_id})
        outcome = SagaOutcome(
            job_id=job_id,
            state=SagaState.SETTLED_SUCCESS,
            balances=debit.balances,
            job=self.jobs.get_job(job_id),
        )
        self._record(outcome, metric)
        return outcome

    def _settle_failure(self, debit: DebitResult, error: dict[str, str], metric: SagaMetric) -> SagaOutcome:
        job_id = debit.job_id
        with metric.phase("settle"):
            self._write_settlement(
                job_id,
                lambda: self.jobs.mark_failed(job_id, error),
                {"status": "failed", "error": error},
            )
            balances = self._refund_best_effort(debit)

        logger.info(
            "Saga state %s",
            SagaState.SETTLED_FAILURE,
            extra={"job_id": job_id, "data": {"error_code": error.get("code")}},
        )
        outcome = SagaOutcome(
            job_id=job_id,
            state=SagaState.SETTLED_FAILURE,
            balances=balances,
            job=self.jobs.get_job(job_id),
            error=error,
        )
        self._record(outcome, metric)
        return outcome

    def _write_settlement(self, job_id: str, write: Callable[[], None], intended: dict[str, Any]) -> None:
        """Apply the terminal write, retrying database errors.

        ``intended`` is the outcome the write would have recorded; when every
        attempt fails it is logged and carried on the ``SettlementError`` so the
        job can be settled later with ``genbilling settle``.
        """
        for attempt in range(1, self.settlement_attempts + 1):
            try:
                write()
                return
            except SQLAlchemyError:
                if attempt == self.settlement_attempts:
                    logger.exception(
                        "Settlement write failed; job left for reconciliation",
                        extra={"job_id": job_id, "data": {"attempts": attempt, "outcome": intended}},
                    )
                    raise SettlementError(job_id=job_id, outcome=intended)
                logger.warning(
                    "Settlement write failed, retrying",
                    extra={"job_id": job_id, "data": {"attempt": attempt}},
                )
                self._sleep(self.settlement_delay_seconds * attempt)

    def _refund_best_effort(self, debit: DebitResult) -> Balances:
        try:
            return self.ledger.refund_job(debit.job_id)
        except Exception:
            logger.exception("Refund failed; job left for reconciliation", extra={"job_id": debit.job_id})
            return debit.balances

    def _record(self, outcome: SagaOutcome, metric: SagaMetric) -> None:
        metric.state = outcome.state.value
        metric.error_code = outcome.error.get("code") if outcome.error else None
        log_saga_metrics(metric)
