import hashlib
import hmac
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock

import pytest
import requests

from genbilling.app.services.executor import (
    ExecutorEnvelope,
    ExecutorFailure,
    ExecutorSuccess,
    GenerationExecutor,
    StagedInput,
    parse_executor_response,
    serialize_envelope,
)

SECRET = "shared-secret"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        if text is not None:
            self.content = text.encode("utf-8")
        else:
            self.content = json.dumps(payload).encode("utf-8")
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None, stream=False):
        self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout, "stream": stream})
        if self.error is not None:
            raise self.error
        return self.response


def _envelope():
    return ExecutorEnvelope(
        job_id="job-1",
        telegram_id=42,
        model="nano-banana-pro",
        prompt="Ünïcode prompt",
        params={"resolution": "2K", "aspect_ratio": "1:1"},
        inputs=[StagedInput(kind="image", signed_url="https://storage.test/read/a.png?sig=1")],
        counter=2,
    )


def _executor(session, **kwargs):
    return GenerationExecutor(
        kwargs.pop("url", "https://executor.test/hook"),
        SECRET,
        timeout_seconds=kwargs.pop("timeout_seconds", 5),
        connect_timeout_seconds=kwargs.pop("connect_timeout_seconds", 2),
        signature_header="X-Signature",
        session=session,
    )


def test_request_is_signed_over_exact_body():
    session = FakeSession(FakeResponse(payload={"ok": True, "output_url": "https://cdn.test/o.png"}))
    result = _executor(session).invoke(_envelope())

    assert result == ExecutorSuccess(output_url="https://cdn.test/o.png")
    call = session.calls[0]
    body = call["data"]
    expected = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    assert call["headers"]["X-Signature"] == expected
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["timeout"] == (2, 5)
    assert call["stream"] is True
    assert session.response.closed

    sent = json.loads(body)
    assert sent["job_id"] == "job-1"
    assert sent["telegram_id"] == 42
    assert sent["counter"] == 2
    assert sent["style"] == "custom"
    assert sent["inputs"] == [{"kind": "image", "signed_url": "https://storage.test/read/a.png?sig=1"}]


def test_serialization_is_deterministic():
    first = serialize_envelope(_envelope())
    assert first == serialize_envelope(_envelope())
    assert "Ünïcode".encode("utf-8") in first
    assert b", " not in first


def test_timeout_maps_to_timeout_code():
    session = FakeSession(error=requests.ReadTimeout("read timed out"))
    result = _executor(session).invoke(_envelope())

    assert isinstance(result, ExecutorFailure)
    assert result.code == "timeout"
    assert len(session.calls) == 1


def test_connection_error_maps_to_transport_error():
    session = FakeSession(error=requests.ConnectionError("refused"))
    result = _executor(session).invoke(_envelope())
    assert result.code == "transport_error"
    assert "refused" in result.message


def test_non_2xx_maps_to_http_error():
    session = FakeSession(FakeResponse(status_code=502, payload={"ok": True, "output_url": "x"}))
    result = _executor(session).invoke(_envelope())
    assert result.code == "http_error"
    assert "502" in result.message


def test_non_json_body_is_invalid_response():
    session = FakeSession(FakeResponse(text="<html>oops</html>"))
    assert _executor(session).invoke(_envelope()).code == "invalid_response"


def test_executor_failure_passes_through_verbatim():
    payload = {"ok": False, "error": {"code": "nsfw_blocked", "message": "Prompt rejected by filter"}}
    session = FakeSession(FakeResponse(payload=payload))
    result = _executor(session).invoke(_envelope())
    assert result == ExecutorFailure(code="nsfw_blocked", message="Prompt rejected by filter")


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"output_url": "https://cdn.test/o.png"},
        {"ok": "true", "output_url": "https://cdn.test/o.png"},
        {"ok": True},
        {"ok": True, "output_url": ""},
        {"ok": False},
        {"ok": False, "error": {"code": 5, "message": "x"}},
    ],
)
def test_malformed_payloads(payload):
    result = parse_executor_response(payload)
    assert isinstance(result, ExecutorFailure)
    assert result.code == "invalid_response"


def test_success_meta_is_kept():
    result = parse_executor_response({"ok": True, "output_url": "https://cdn.test/o.png", "meta": {"seed": 3}})
    assert result.meta == {"seed": 3}


def test_unconfigured_executor_does_not_call_out():
    session = FakeSession(error=AssertionError("must not be called"))
    executor = GenerationExecutor("", "", session=session)
    result = executor.invoke(_envelope())

    assert result.code == "transport_error"
    assert session.calls == []


def test_executor_posts_exactly_once():
    session = MagicMock(spec=requests.Session)
    session.post.return_value = FakeResponse(status_code=500)

    result = _executor(session).invoke(_envelope())

    assert result.code == "http_error"
    session.post.assert_called_once()
    assert session.post.call_args.args[0] == "https://executor.test/hook"


def test_oversized_body_is_invalid_response(monkeypatch):
    from genbilling.app.services import executor as executor_module

    monkeypatch.setattr(executor_module, "_MAX_RESPONSE_BYTES", 16)
    session = FakeSession(FakeResponse(payload={"ok": True, "output_url": "https://cdn.test/" + "x" * 64}))

    result = _executor(session).invoke(_envelope())

    assert result.code == "invalid_response"
    assert session.response.closed


class _ExecutorHandler(BaseHTTPRequestHandler):
    """Answers with a fixed success body, optionally one byte at a time."""

    body = b'{"ok":true,"output_url":"https://cdn.test/o.png"}'
    byte_delay = 0.0
    received = []

    def do_POST(self):
        length = int(self.headers["Content-Length"])
        self.received.append((self.headers.get("X-Signature"), self.rfile.read(length)))
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(self.body)))
        self.end_headers()
        try:
            if not self.byte_delay:
                self.wfile.write(self.body)
                return
            for index in range(len(self.body)):
                self.wfile.write(self.body[index : index + 1])
                self.wfile.flush()
                time.sleep(self.byte_delay)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def executor_server():
    servers = []

    def _start(byte_delay=0.0):
        handler = type("Handler", (_ExecutorHandler,), {"byte_delay": byte_delay, "received": []})
        server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
        server.daemon_threads = True
        server.block_on_close = False
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f"http://127.0.0.1:{server.server_address[1]}/hook", handler

    yield _start

    for server in servers:
        server.shutdown()
        server.server_close()


def _direct_session():
    session = requests.Session()
    session.trust_env = False  # keep proxy settings away from 127.0.0.1
    return session


def test_invoke_against_live_server(executor_server):
    url, handler = executor_server()
    executor = GenerationExecutor(url, SECRET, timeout_seconds=5, connect_timeout_seconds=2, session=_direct_session())

    result = executor.invoke(_envelope())

    assert result == ExecutorSuccess(output_url="https://cdn.test/o.png")
    signature, body = handler.received[0]
    assert signature == hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()


def test_trickled_response_hits_total_deadline(executor_server):
    # Every byte arrives well within the read timeout; the whole body does not.
    url, _ = executor_server(byte_delay=0.1)
    executor = GenerationExecutor(
        url, SECRET, timeout_seconds=0.5, connect_timeout_seconds=0.5, session=_direct_session()
    )

    started = time.monotonic()
    result = executor.invoke(_envelope())
    elapsed = time.monotonic() - started

    assert isinstance(result, ExecutorFailure)
    assert result.code == "timeout"
    assert elapsed < 2.5
