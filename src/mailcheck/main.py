"""FastAPI application for the metered email validation API.

Provides:
- Email validation (syntax, MX, disposable domain, role account) metered
  per call against API key credits
- Key listing and deactivation for the caller's account
- Partner marketplace webhooks that provision and top up keys

Flow:
1. POST /webhooks/partner - Subscription created, key issued
2. POST /api/v1/validate - Validate an address (one credit per call)
3. GET /api/v1/keys - List keys owned by the caller
4. DELETE /api/v1/keys/{key_id} - Deactivate one of the caller's keys
5. GET /health - Service and disposable cache status
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import UUID, uuid4

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mailcheck.billing.ledger import CreditLedger
from mailcheck.billing.provisioner import AccountProvisioner
from mailcheck.billing.routes import router as webhook_router
from mailcheck.config import Settings
from mailcheck.db.database import create_engine, create_session_factory, init_db
from mailcheck.db.models import ApiKey
from mailcheck.keys.auth import get_credit_ledger, require_api_key, require_key_owner
from mailcheck.validation.disposable import DisposableDomainCache
from mailcheck.validation.engine import DnsChecker, ValidationEngine

_project_root = os.path.dirname(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
)
load_dotenv(os.path.join(_project_root, ".env.local"))
load_dotenv()  # Also try default .env

logger = logging.getLogger("mailcheck-api")


# =============================================================================
# Application Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared services on startup, release the engine on shutdown."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db_engine = create_engine(settings.database_url)
    await init_db(db_engine)
    sessions = create_session_factory(db_engine)

    disposable_cache = DisposableDomainCache(
        cache_path=settings.disposable_cache_path,
        ttl_seconds=settings.disposable_cache_ttl_seconds,
        override=settings.disposable_domains_override,
        fetch_timeout=settings.disposable_fetch_timeout_seconds,
    )
    ledger = CreditLedger(sessions)

    app.state.settings = settings
    app.state.disposable_cache = disposable_cache
    app.state.validation_engine = ValidationEngine(
        disposable_cache,
        dns_checker=DnsChecker(timeout=settings.dns_timeout_seconds),
        role_based_scoring=settings.role_based_scoring,
    )
    app.state.ledger = ledger
    app.state.provisioner = AccountProvisioner(sessions, ledger, settings.plan_credits)

    logger.info("Email validation API started")
    yield

    await db_engine.dispose()
    logger.info("Email validation API stopped")


app = FastAPI(
    title="Email Validation API",
    description="Metered email validation with partner marketplace provisioning",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with an id and its duration."""
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    started = time.perf_counter()
    logger.info(f"[{request_id}] {request.method} {request.url.path} started")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"[{request_id}] {request.method} {request.url.path} "
        f"completed {response.status_code} in {duration_ms:.1f}ms"
    )
    response.headers["X-Request-ID"] = request_id
    return response


# =============================================================================
# Dependencies
# =============================================================================


def get_validation_engine(request: Request) -> ValidationEngine:
    """FastAPI dependency returning the engine built at startup."""
    return request.app.state.validation_engine


def get_disposable_cache(request: Request) -> DisposableDomainCache:
    """FastAPI dependency returning the process-wide disposable cache."""
    return request.app.state.disposable_cache


# =============================================================================
# Request/Response Models
# =============================================================================


class ValidateRequest(BaseModel):
    """Request body for email validation."""

    email: str | None = None


class KeyInfo(BaseModel):
    """API key as shown to its owner (token masked)."""

    id: str
    key: str
    plan: str
    credits_remaining: int
    is_active: bool
    provenance: str
    created_at: datetime


class KeysResponse(BaseModel):
    """Keys owned by the caller."""

    keys: list[KeyInfo]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    disposable_cache: str


# =============================================================================
# Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check(
    disposable_cache: DisposableDomainCache = Depends(get_disposable_cache),
):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        disposable_cache=disposable_cache.state.value,
    )


@app.post("/api/v1/validate")
async def validate_email(
    body: ValidateRequest | None = None,
    api_key: ApiKey = Depends(require_api_key),
    engine: ValidationEngine = Depends(get_validation_engine),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Validate one address and charge one credit.

    A request without an email is rejected before anything is charged.
    The credit is debited and the usage recorded only after validation
    completes, so an unexpected failure costs the caller nothing.
    """
    email = body.email.strip() if body and body.email else ""
    if not email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email is required",
        )

    result = await engine.validate(email)
    payload = result.to_payload()

    debited, _ = await asyncio.gather(
        ledger.debit(api_key.id),
        ledger.record_usage(api_key.id, email, payload),
    )
    if not debited:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Insufficient credits",
        )

    return {"success": True, "data": payload}


@app.get("/api/v1/keys", response_model=KeysResponse)
async def list_api_keys(
    api_key: ApiKey = Depends(require_key_owner),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """List the caller's keys. Not metered."""
    keys = await ledger.list_keys(api_key.user_id)
    return KeysResponse(
        keys=[
            KeyInfo(
                id=str(key.id),
                key=key.masked_token,
                plan=key.plan_type,
                credits_remaining=key.credits_remaining,
                is_active=key.is_active,
                provenance=key.provenance,
                created_at=key.created_at,
            )
            for key in keys
        ]
    )


@app.delete("/api/v1/keys/{key_id}")
async def deactivate_api_key(
    key_id: UUID,
    api_key: ApiKey = Depends(require_key_owner),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Deactivate one of the caller's keys. Not metered.

    Keys belonging to another account are reported as not found.
    """
    if not await ledger.deactivate_key(key_id, api_key.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found.",
        )

    return {"success": True, "data": {"id": str(key_id), "is_active": False}}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
