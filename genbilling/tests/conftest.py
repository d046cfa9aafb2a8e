import hashlib
import hmac
import json
import os
import time
from decimal import Decimal
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

# Environment must be in place BEFORE any app import
os.environ.setdefault("GEN_TRUSTED_HOSTS", "localhost,testserver")
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("GEN_DATABASE_URL", "sqlite:///./genbilling-test.db")
os.environ.setdefault("GEN_TELEGRAM_BOT_TOKEN", "123456:test-bot-token")
# Shared client IP across tests would otherwise trip the limiters
os.environ["GEN_DISABLE_RATELIMIT"] = "1"

from genbilling.app.core.auth import TelegramIdentityVerifier
from genbilling.app.core.database import Database
from genbilling.app.db.models import DbAccount
from genbilling.app.services.catalog import ModelCatalog, load_catalog
from genbilling.app.services.executor import ExecutorEnvelope, ExecutorFailure, ExecutorResult, ExecutorSuccess
from genbilling.app.services.jobs import JobStore
from genbilling.app.services.ledger import LedgerStore

BOT_TOKEN = "123456:test-bot-token"


class FakeStager:
    """In-memory blob stager that can be told to fail for specific paths."""

    bucket = "test-bucket"

    def __init__(self) -> None:
        self.failing_paths: set[str] = set()
        self.read_requests: list[str] = []

    def create_upload_url(self, path: str, content_type: str, size_bytes: int) -> str:
        return f"https://storage.test/upload/{path}?ct={content_type}"

    def create_read_url(self, path: str) -> str:
        self.read_requests.append(path)
        if path in self.failing_paths:
            from genbilling.app.core.gcs import StagingError

            raise StagingError()
        return f"https://storage.test/read/{path}?sig=abc"


class FakeExecutor:
    """Records envelopes and returns scripted results (success by default)."""

    def __init__(self) -> None:
        self.calls: list[ExecutorEnvelope] = []
        self.result: ExecutorResult = ExecutorSuccess(output_url="https://cdn.test/out.png")

    def succeed(self, output_url: str = "https://cdn.test/out.png") -> None:
        self.result = ExecutorSuccess(output_url=output_url)

    def fail(self, code: str = "render_failed", message: str = "Renderer crashed") -> None:
        self.result = ExecutorFailure(code=code, message=message)

    def invoke(self, envelope: ExecutorEnvelope) -> ExecutorResult:
        self.calls.append(envelope)
        return self.result


def make_init_data(user_id: int, bot_token: str = BOT_TOKEN, auth_date: int | None = None) -> str:
    fields = {
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps({"id": user_id, "first_name": "Test", "language_code": "en"}),
    }
    check = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret_key, check.encode(), hashlib.sha256).hexdigest()
    return urlencode(fields)


def set_balances(db: Database, external_id: int, cash: int | str | Decimal, promo: int = 0) -> None:
    with db.session() as session:
        account = session.scalars(select(DbAccount).where(DbAccount.external_id == external_id)).one()
        account.cash_balance = Decimal(cash)
        account.promo_credits = promo


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(url=f"sqlite:///{tmp_path / 'ledger.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger(db: Database) -> LedgerStore:
    return LedgerStore(db=db)


@pytest.fixture
def job_store(db: Database) -> JobStore:
    return JobStore(db=db)


@pytest.fixture(scope="session")
def catalog() -> ModelCatalog:
    return load_catalog()


@pytest.fixture
def stager() -> FakeStager:
    return FakeStager()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def funded_account(ledger: LedgerStore, db: Database):
    """Factory creating an account with the given balances; returns the Account."""

    def _make(external_id: int = 5001, cash: int | str = 100, promo: int = 0):
        ledger.ensure_account(external_id)
        set_balances(db, external_id, cash, promo)
        return ledger.get_account_by_external_id(external_id)

    return _make


@pytest.fixture
def client(db: Database, stager: FakeStager, executor: FakeExecutor) -> TestClient:
    from genbilling.app.api import deps
    from genbilling.main import app

    app.dependency_overrides[deps.get_db] = lambda: db
    app.dependency_overrides[deps.get_blob_stager] = lambda: stager
    app.dependency_overrides[deps.get_executor] = lambda: executor
    app.dependency_overrides[deps.get_identity_verifier] = lambda: TelegramIdentityVerifier(bot_token=BOT_TOKEN)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def sign_in(client: TestClient):
    """Sign in as a Telegram user; returns ``(auth_headers, user_json)``."""

    def _sign_in(telegram_id: int = 777001):
        response = client.post("/auth/telegram", json={"initData": make_init_data(telegram_id)})
        assert response.status_code == 200, response.text
        body = response.json()
        return {"Authorization": f"Bearer {body['accessToken']}"}, body["user"]

    return _sign_in


@pytest.fixture
def init_data_for():
    return make_init_data


@pytest.fixture
def set_account_balances(db: Database):
    def _set(external_id: int, cash: int | str | Decimal, promo: int = 0) -> None:
        set_balances(db, external_id, cash, promo)

    return _set
