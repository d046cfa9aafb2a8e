"""Telegram Mini App identity verification and persistent bearer sessions."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Optional
from urllib.parse import parse_qsl

from sqlalchemy import delete, select

from ..db.models import DbAccount, DbSession
from ..services.ledger import Account
from .config import settings
from .database import Database

logger = logging.getLogger(__name__)


class InvalidInitDataError(ValueError):
    """initData is malformed, unsigned, tampered with or stale."""


class TelegramIdentityVerifier:
    """Validates Telegram WebApp ``initData`` and yields the stable user id.

    See https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
    """

    def __init__(self, bot_token: str | None = None, max_age_seconds: int | None = None) -> None:
        self.bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.telegram_init_data_max_age_seconds
        )

    def verify(self, init_data: str, now: int | None = None) -> int:
        if not self.bot_token:
            raise InvalidInitDataError("Telegram bot token is not configured")
        if not init_data:
            raise InvalidInitDataError("Missing initData")

        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        received_hash = fields.pop("hash", None)
        if not received_hash:
            raise InvalidInitDataError("initData is not signed")

        expected_hash = sign_init_data_fields(fields, self.bot_token)
        if not hmac.compare_digest(expected_hash, received_hash):
            raise InvalidInitDataError("initData signature mismatch")

        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError:
            raise InvalidInitDataError("initData has no auth_date")
        current = int(time.time()) if now is None else now
        if self.max_age_seconds > 0 and current - auth_date > self.max_age_seconds:
            raise InvalidInitDataError("initData expired")

        try:
            user = json.loads(fields.get("user", ""))
            user_id = int(user["id"])
        except (ValueError, TypeError, KeyError):
            raise InvalidInitDataError("Missing telegram user id")
        return user_id


def data_check_string(fields: dict[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def sign_init_data_fields(fields: dict[str, str], bot_token: str) -> str:
    secret_key = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(secret_key, data_check_string(fields).encode("utf-8"), hashlib.sha256).hexdigest()


class SessionStore:
    """Persistent session tokens; only a hash of each token is stored."""

    def __init__(self, db: Database | None = None, ttl_seconds: int | None = None) -> None:
        self.db = db or Database()
        self.ttl_seconds = ttl_seconds or settings.session_ttl_seconds

    def issue_session(self, account: Account, user_agent: str | None = None) -> str:
        token = secrets.token_urlsafe(32)
        now = int(time.time())
        with self.db.session() as session:
            session.add(
                DbSession(
                    token_hash=_hash_token(token),
                    account_id=account.id,
                    created_at=now,
                    expires_at=now + self.ttl_seconds,
                    user_agent=user_agent,
                )
            )
        return token

    def authenticate(self, token: str) -> Optional[Account]:
        if not token:
            return None
        now = int(time.time())
        with self.db.session() as session:
            stmt = (
                select(DbAccount)
                .join(DbSession, DbSession.account_id == DbAccount.id)
                .where(DbSession.token_hash == _hash_token(token), DbSession.expires_at > now)
                .limit(1)
            )
            row = session.scalar(stmt)
            if not row:
                return None
            return Account(
                id=row.id,
                external_id=int(row.external_id),
                cash_balance=row.cash_balance,
                promo_credits=int(row.promo_credits),
            )

    def revoke(self, token: str) -> None:
        with self.db.session() as session:
            session.execute(delete(DbSession).where(DbSession.token_hash == _hash_token(token)))

    def purge_expired(self) -> int:
        with self.db.session() as session:
            result = session.execute(delete(DbSession).where(DbSession.expires_at <= int(time.time())))
            return int(result.rowcount or 0)


def _hash_token(token: str) -> str:
    return hashlib.sha256(f"session:{token}".encode("utf-8")).hexdigest()
