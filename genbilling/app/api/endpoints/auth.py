import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...core.auth import InvalidInitDataError, SessionStore, TelegramIdentityVerifier
from ...core.ratelimit import limiter_login
from ...schemas.base import AuthTelegramRequest, AuthTelegramResponse, MeResponse
from ...services.ledger import Account, LedgerStore
from ..deps import (
    get_current_account,
    get_identity_verifier,
    get_ledger_store,
    get_session_store,
    oauth2_scheme,
)
from .serializers import user_payload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/auth/telegram", response_model=AuthTelegramResponse, dependencies=[Depends(limiter_login)])
def auth_telegram(
    payload: AuthTelegramRequest,
    request: Request,
    verifier: TelegramIdentityVerifier = Depends(get_identity_verifier),
    ledger: LedgerStore = Depends(get_ledger_store),
    session_store: SessionStore = Depends(get_session_store),
) -> Any:
    """Exchange signed Telegram initData for a session token, creating the account on first use."""
    try:
        external_id = verifier.verify(payload.initData)
    except InvalidInitDataError as exc:
        logger.info("Telegram initData rejected: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="initData invalid")

    account, created = ledger.ensure_account(external_id)
    token = session_store.issue_session(account, user_agent=request.headers.get("user-agent"))
    if created:
        logger.info("New account signed in", extra={"account_id": account.id})
    return {"accessToken": token, "user": user_payload(account)}


@router.get("/me", response_model=MeResponse)
def read_me(
    current_account: Account = Depends(get_current_account),
    ledger: LedgerStore = Depends(get_ledger_store),
) -> Any:
    """Current account with fresh balances."""
    account = ledger.get_account(current_account.id) or current_account
    return {"user": user_payload(account)}


@router.post("/auth/logout")
def logout(
    token: Annotated[str, Depends(oauth2_scheme)],
    current_account: Account = Depends(get_current_account),
    session_store: SessionStore = Depends(get_session_store),
) -> Any:
    """Revoke the session token used for this request."""
    session_store.revoke(token)
    logger.info("Session revoked", extra={"account_id": current_account.id})
    return {"ok": True}
