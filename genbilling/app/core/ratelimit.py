"""In-memory sliding-window rate limiting (per client IP or per account)."""

from __future__ import annotations

import ipaddress
import os
import time

from fastapi import Depends, HTTPException, Request, status

from ..api.deps import get_current_account
from ..services.ledger import Account
from .config import settings


def get_client_ip(request: Request) -> str:
    """
    Best-effort client IP extraction safe for proxy environments.

    Cloud Run (and most reverse proxies) append the connecting client's IP to the
    right side of ``X-Forwarded-For``. We therefore take the *last* hop to reduce
    spoofing risk from client-supplied leading values.
    """
    if request.client and request.client.host:
        return request.client.host

    x_forwarded_for = request.headers.get("x-forwarded-for")
    if x_forwarded_for:
        parts = [part.strip() for part in x_forwarded_for.split(",") if part.strip()]
        if parts:
            candidate = parts[-1]
            try:
                return str(ipaddress.ip_address(candidate))
            except ValueError:
                pass

    return "unknown"


class RateLimiter:
    """Per-process limiter keyed by client IP."""

    def __init__(self, limit: int, window: int):
        self.limit = limit
        self.window = window
        self.clients: dict[str, list[float]] = {}

    def check(self, key: str) -> None:
        if os.environ.get("GEN_DISABLE_RATELIMIT") == "1":
            return

        # Basic protection against memory exhaustion
        if len(self.clients) > 10000:
            self.clients.clear()

        now = time.time()
        history = [t for t in self.clients.get(key, []) if now - t < self.window]

        if len(history) >= self.limit:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(self.window)},
            )

        history.append(now)
        self.clients[key] = history

    def __call__(self, request: Request):
        self.check(get_client_ip(request))

    def reset(self):
        self.clients.clear()


class AuthenticatedRateLimiter(RateLimiter):
    """Rate limiter that keys on the account instead of the IP."""

    def __call__(self, account: Account = Depends(get_current_account)):
        self.check(account.id)


# 10 sign-in attempts per minute per IP
limiter_login = RateLimiter(limit=10, window=60)

# Generation requests per account
limiter_generate = AuthenticatedRateLimiter(
    limit=settings.generate_rate_limit,
    window=settings.generate_rate_window_seconds,
)

# Signed upload URL requests per account
limiter_uploads = AuthenticatedRateLimiter(limit=30, window=60)
