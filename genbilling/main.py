from contextlib import asynccontextmanager

from genbilling.app.core.errors import register_exception_handlers
from genbilling.app.core.logging import setup_logging

# Configure logging (JSON structured)
logger = setup_logging()

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from secure import (
    ContentSecurityPolicy,
    ReferrerPolicy,
    Secure,
    StrictTransportSecurity,
    XContentTypeOptions,
    XFrameOptions,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from genbilling.app.api.endpoints import auth, generate, jobs, models, uploads
from genbilling.app.core.config import settings
from genbilling.app.services.catalog import get_catalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: fail fast on a malformed catalog
    catalog = get_catalog()
    logger.info("Model catalog loaded", extra={"data": {"models": len(catalog.list_models())}})
    yield


app = FastAPI(
    title="Generation Billing API",
    description="Metered-credit generation jobs with automatic refunds",
    version="1.0.0",
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)

# Register Global Exception Handlers
register_exception_handlers(app)


def _env_list(key: str, default: list[str]) -> list[str]:
    if "PYTEST_CURRENT_TEST" in os.environ:
        return default
    value = os.getenv(key)
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


# Configure CORS (secure-by-default in production)
default_origins = (
    [
        "http://localhost:5173",  # Vite mini app
        "http://127.0.0.1:5173",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]
    if settings.is_dev
    else list(settings.allowed_origins)
)
origins = _env_list("GEN_ALLOWED_ORIGINS", default_origins)
if not settings.is_dev and not origins:
    raise RuntimeError("GEN_ALLOWED_ORIGINS must be set in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Enable GZip compression for responses > 1000 bytes
app.add_middleware(GZipMiddleware, minimum_size=1000)

default_trusted_hosts = (
    ["localhost", "127.0.0.1", "0.0.0.0", "[::1]", "testserver"]
    if settings.is_dev
    else list(settings.trusted_hosts)
)
trusted_hosts = _env_list("GEN_TRUSTED_HOSTS", default_trusted_hosts)
if not settings.is_dev and "*" in trusted_hosts:
    raise RuntimeError("GEN_TRUSTED_HOSTS cannot include '*' in production")
app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

# API-only responses; the mini app is served elsewhere
SECURE_HEADERS = Secure(
    hsts=StrictTransportSecurity().max_age(63072000).include_subdomains().preload(),
    xfo=XFrameOptions().deny(),
    referrer=ReferrerPolicy().strict_origin_when_cross_origin(),
    csp=ContentSecurityPolicy().default_src("'none'").frame_ancestors("'none'"),
    xcto=XContentTypeOptions().nosniff(),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, secure_headers: Secure) -> None:
        super().__init__(app)
        self.secure_headers = secure_headers

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        await self.secure_headers.set_headers_async(response)
        # Avoid sending HSTS on cleartext requests to keep local dev/proxy setups flexible.
        if settings.is_dev and request.url.scheme not in ("https", "wss"):
            if "Strict-Transport-Security" in response.headers:
                del response.headers["Strict-Transport-Security"]

        # Balances and job results are per-account; keep them out of shared caches
        if request.url.path.startswith(("/auth/", "/me", "/jobs", "/generate", "/uploads/")):
            response.headers["Cache-Control"] = "no-store"

        return response


app.add_middleware(
    SecurityHeadersMiddleware,
    secure_headers=SECURE_HEADERS,
)

if os.getenv("GEN_FORCE_HTTPS", "0") == "1":
    app.add_middleware(HTTPSRedirectMiddleware)

# Trust proxy headers only from known proxy networks (Cloud Run / local dev).
# Added last (executed first) so request.client.host & scheme are correct.
proxy_trusted_hosts: list[str] | str = (
    "*"
    if settings.is_dev
    else _env_list(
        "GEN_PROXY_TRUSTED_HOSTS",
        [
            "127.0.0.1",
            "::1",
            "10.0.0.0/8",
            "172.16.0.0/12",
            "192.168.0.0/16",
        ],
    )
)
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=proxy_trusted_hosts)

# Include Routers
app.include_router(auth.router, tags=["auth"])
app.include_router(models.router, tags=["models"])
app.include_router(uploads.router, tags=["uploads"])
app.include_router(generate.router, tags=["generate"])
app.include_router(jobs.router, tags=["jobs"])


@app.get("/health")
async def health_check():
    return {"ok": True, "service": "genbilling-api", "app_env": settings.app_env.value}
