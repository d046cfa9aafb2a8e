from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from genbilling.app.core.errors import (
    FundingError,
    SettlementError,
    register_exception_handlers,
    sanitize_message,
)
from genbilling.app.services.ledger import InsufficientBalanceError

# Setup a dummy app for testing handlers
dummy_app = FastAPI()
register_exception_handlers(dummy_app)


class MockModel(BaseModel):
    name: str = Field(..., max_length=5)


@dummy_app.get("/error/http")
async def trigger_http_error():
    raise HTTPException(status_code=403, detail="Access to /app/secret denied")


@dummy_app.post("/error/validation")
async def trigger_validation_error(model: MockModel):
    return model


@dummy_app.get("/error/db")
async def trigger_db_error():
    raise SQLAlchemyError("Duplicate entry for /home/db/data")


@dummy_app.get("/error/unhandled")
async def trigger_unhandled_error():
    raise Exception("Something went wrong at /var/log/crash")


@dummy_app.get("/error/funding")
async def trigger_funding_error():
    raise InsufficientBalanceError()


@dummy_app.get("/error/settlement")
async def trigger_settlement_error():
    raise SettlementError()


client = TestClient(dummy_app, raise_server_exceptions=False)


def test_sanitize_message_strips_internal_paths():
    """Test that internal paths are replaced with [INTERNAL_PATH]."""
    msg = "Error opening file /app/genbilling/config/models.toml"
    sanitized = sanitize_message(msg)
    assert "[INTERNAL_PATH]" in sanitized
    assert "/app/genbilling" not in sanitized

    assert sanitize_message("Executor responded with 502") == "Executor responded with 502"


def test_http_exception_handler_sanitizes():
    response = client.get("/error/http")
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "forbidden"
    assert "[INTERNAL_PATH]" in error["message"]
    assert "/app/secret" not in error["message"]


def test_validation_errors_are_bad_requests():
    response = client.post("/error/validation", json={"name": "too_long_name"})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "invalid_body"
    assert "body.name" in error["message"]


def test_service_errors_keep_their_code_and_status():
    funding = client.get("/error/funding")
    assert funding.status_code == 402
    assert funding.json() == {"error": {"code": "insufficient_balance", "message": "Insufficient balance"}}

    settlement = client.get("/error/settlement")
    assert settlement.status_code == 503
    assert settlement.json()["error"]["code"] == "settlement_failed"


def test_service_error_code_override():
    error = FundingError("Debit failed upstream", code="debit_failed")
    assert error.as_dict() == {"code": "debit_failed", "message": "Debit failed upstream"}


def test_database_exception_handler():
    response = client.get("/error/db")
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "db_error"
    assert "Please try again later" in error["message"]
    assert "/home/db/data" not in error["message"]


def test_global_exception_handler():
    response = client.get("/error/unhandled")
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "internal_error"
    assert "/var/log/crash" not in error["message"]
