"""Shape domain records into the JSON the mini app consumes."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from ...core.errors import sanitize_message
from ...services.catalog import ModelCatalog, ModelDefinition, field_kind
from ...services.jobs import Job
from ...services.ledger import Account, Balances


def iso_timestamp(ts: int | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def user_payload(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "telegram_id": account.external_id,
        "balance": float(account.cash_balance),
        "promo_gen": account.promo_credits,
    }


def balances_payload(balances: Balances) -> dict[str, Any]:
    return {"balance": float(balances.cash_balance), "promo_gen": balances.promo_credits}


def job_payload(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "model": job.model_id,
        "type": job.job_type,
        "prompt": job.prompt,
        "params": job.params,
        "inputs": job.inputs,
        "status": job.status,
        "cost": float(job.cost),
        "promo_credits_consumed": job.promo_credits_consumed,
        "unit_count": job.unit_count,
        "output_url": job.output_url,
        "error": job.error_detail,
        "created_at": iso_timestamp(job.created_at),
        "finished_at": iso_timestamp(job.finished_at),
    }


def error_detail_payload(error: dict[str, str]) -> dict[str, str]:
    return {
        "code": str(error.get("code") or "generation_failed"),
        "message": sanitize_message(str(error.get("message") or "Generation failed")),
    }


def model_payload(catalog: ModelCatalog, model: ModelDefinition) -> dict[str, Any]:
    params = [{"kind": field_kind(param), **asdict(param)} for param in model.params]
    return {
        "id": model.id,
        "name": model.name,
        "type": model.type,
        "description": model.description,
        "prompt_required": model.prompt_required,
        "inputs": asdict(model.inputs) if model.inputs else None,
        "params": params,
        "defaults": catalog.default_params(model),
        "max_units": model.max_units,
    }
