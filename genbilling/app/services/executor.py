"""Signed HTTP client for the external generation executor."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Union

import requests

from ..core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedInput:
    kind: str
    signed_url: str


@dataclass(frozen=True)
class ExecutorEnvelope:
    job_id: str
    telegram_id: int
    model: str
    prompt: str
    params: dict[str, Any]
    inputs: list[StagedInput]
    style: str = "custom"
    counter: int = 1
    prompt_ai: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "telegram_id": self.telegram_id,
            "model": self.model,
            "prompt": self.prompt,
            "params": self.params,
            "inputs": [{"kind": item.kind, "signed_url": item.signed_url} for item in self.inputs],
            "style": self.style,
            "counter": self.counter,
            "prompt_ai": self.prompt_ai,
        }


@dataclass(frozen=True)
class ExecutorSuccess:
    output_url: str
    meta: dict[str, Any] = field(default_factory=dict)
    ok: bool = True


@dataclass(frozen=True)
class ExecutorFailure:
    code: str
    message: str
    ok: bool = False

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


ExecutorResult = Union[ExecutorSuccess, ExecutorFailure]

# Small reads return as soon as any bytes arrive, so the deadline is checked
# between them even when the executor trickles its response.
_READ_CHUNK_BYTES = 1
_MAX_RESPONSE_BYTES = 1024 * 1024


class _DeadlineExceeded(Exception):
    pass


def serialize_envelope(envelope: ExecutorEnvelope) -> bytes:
    """Deterministic JSON body; the signature covers exactly these bytes."""
    return json.dumps(
        envelope.as_dict(),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def sign_body(body: bytes, shared_secret: str) -> str:
    return hmac.new(shared_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def parse_executor_response(payload: Any) -> ExecutorResult:
    if not isinstance(payload, dict) or not isinstance(payload.get("ok"), bool):
        return ExecutorFailure("invalid_response", "Executor response format invalid")

    if payload["ok"]:
        output_url = payload.get("output_url")
        if not isinstance(output_url, str) or not output_url:
            return ExecutorFailure("invalid_response", "Executor success response missing output_url")
        meta = payload.get("meta")
        return ExecutorSuccess(output_url=output_url, meta=meta if isinstance(meta, dict) else {})

    error = payload.get("error")
    if not isinstance(error, dict):
        return ExecutorFailure("invalid_response", "Executor failure response missing error")
    code = error.get("code")
    message = error.get("message")
    if not isinstance(code, str) or not isinstance(message, str):
        return ExecutorFailure("invalid_response", "Executor failure response missing error code")
    return ExecutorFailure(code=code, message=message)


class GenerationExecutor:
    """Invokes the executor webhook exactly once per call.

    Never raises for remote or transport problems; every outcome is returned as
    an ``ExecutorResult`` so the caller can settle the job deterministically.
    """

    def __init__(
        self,
        url: str | None = None,
        shared_secret: str | None = None,
        *,
        timeout_seconds: float | None = None,
        connect_timeout_seconds: float | None = None,
        signature_header: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url if url is not None else settings.executor_url
        self.shared_secret = shared_secret if shared_secret is not None else settings.executor_shared_secret
        self.timeout_seconds = timeout_seconds or settings.executor_timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds or settings.executor_connect_timeout_seconds
        self.signature_header = signature_header or settings.executor_signature_header
        self.session = session or requests.Session()

    def invoke(self, envelope: ExecutorEnvelope) -> ExecutorResult:
        if not self.url or not self.shared_secret:
            return ExecutorFailure("transport_error", "Generation executor is not configured")

        body = serialize_envelope(envelope)
        headers = {
            "Content-Type": "application/json",
            self.signature_header: sign_body(body, self.shared_secret),
        }
        timeout = (min(self.connect_timeout_seconds, self.timeout_seconds), self.timeout_seconds)
        deadline = time.monotonic() + self.timeout_seconds

        try:
            response = self.session.post(self.url, data=body, headers=headers, timeout=timeout, stream=True)
        except requests.Timeout:
            return self._timed_out(envelope)
        except requests.RequestException as exc:
            logger.warning("Executor call failed: %s", exc, extra={"job_id": envelope.job_id})
            return ExecutorFailure("transport_error", str(exc) or exc.__class__.__name__)

        try:
            if not response.ok:
                logger.warning(
                    "Executor responded with HTTP %s",
                    response.status_code,
                    extra={"job_id": envelope.job_id},
                )
                return ExecutorFailure("http_error", f"Executor responded with {response.status_code}")
            content = self._read_body(response, deadline)
        except _DeadlineExceeded:
            return self._timed_out(envelope)
        except requests.RequestException as exc:
            # requests reports a read timeout mid-body as a ConnectionError
            if time.monotonic() >= deadline:
                return self._timed_out(envelope)
            logger.warning("Executor response interrupted: %s", exc, extra={"job_id": envelope.job_id})
            return ExecutorFailure("transport_error", str(exc) or exc.__class__.__name__)
        finally:
            response.close()

        if content is None:
            return ExecutorFailure("invalid_response", "Executor response is too large")
        try:
            payload = json.loads(content)
        except ValueError:
            return ExecutorFailure("invalid_response", "Executor response is not valid JSON")

        return parse_executor_response(payload)

    def _read_body(self, response: requests.Response, deadline: float) -> bytes | None:
        """Read the whole body before ``deadline``; ``None`` when it is oversized."""
        buffer = bytearray()
        for chunk in response.iter_content(chunk_size=_READ_CHUNK_BYTES):
            if time.monotonic() >= deadline:
                raise _DeadlineExceeded()
            buffer.extend(chunk)
            if len(buffer) > _MAX_RESPONSE_BYTES:
                return None
        if time.monotonic() >= deadline:
            raise _DeadlineExceeded()
        return bytes(buffer)

    def _timed_out(self, envelope: ExecutorEnvelope) -> ExecutorFailure:
        logger.warning("Executor call timed out", extra={"job_id": envelope.job_id})
        return ExecutorFailure("timeout", f"Executor did not respond within {self.timeout_seconds:g}s")
