"""Per-job saga timing rows, appended as JSON lines for local analysis."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .config import settings

logger = logging.getLogger(__name__)


@dataclass
class SagaMetric:
    """Timings and final state of one saga run.

    Phases are timed with :meth:`phase`; the identifying fields are filled in
    as the saga learns them (the job id only exists after the debit).
    """

    job_id: str | None = None
    model: str | None = None
    units: int = 1
    unit_cost: int = 0
    state: str | None = None
    error_code: str | None = None
    timings: dict[str, float] = field(default_factory=dict)

    @contextmanager
    def phase(self, name: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timings[f"{name}_s"] = time.perf_counter() - started


def metrics_enabled() -> bool:
    """``GEN_SAGA_METRICS`` wins; otherwise only dev writes rows, and never under pytest."""
    if settings.saga_metrics is not None:
        return settings.saga_metrics
    if "PYTEST_CURRENT_TEST" in os.environ:
        return False
    return settings.is_dev


def metrics_path() -> Path:
    if settings.saga_metrics_path:
        return Path(settings.saga_metrics_path).resolve()
    return (settings.project_root / "logs" / "saga_metrics.jsonl").resolve()


def log_saga_metrics(metric: SagaMetric) -> None:
    """Append one row for ``metric``. A write failure is logged, never raised."""
    if not metrics_enabled():
        return

    row = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "host": socket.gethostname(),
        "app_env": settings.app_env.value,
        **asdict(metric),
    }

    path = metrics_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
    except OSError:
        logger.warning("Could not append saga metrics", extra={"job_id": metric.job_id, "data": {"path": str(path)}})
