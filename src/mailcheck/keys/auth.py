"""API key authentication for metered endpoints.

Accepts the key as a Bearer token, an ``x-api-key`` header, or an
``api_key`` query parameter (in that order of precedence).
"""

from fastapi import Depends, Header, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mailcheck.billing.ledger import (
    REJECTION_MESSAGES,
    ApiKeyRejected,
    CreditLedger,
    KeyRejection,
)
from mailcheck.db.models import ApiKey

security = HTTPBearer(auto_error=False)

REJECTION_STATUS = {
    KeyRejection.MALFORMED: status.HTTP_401_UNAUTHORIZED,
    KeyRejection.NOT_FOUND: status.HTTP_401_UNAUTHORIZED,
    KeyRejection.INACTIVE: status.HTTP_403_FORBIDDEN,
    KeyRejection.EXHAUSTED: status.HTTP_402_PAYMENT_REQUIRED,
}


def get_credit_ledger(request: Request) -> CreditLedger:
    """FastAPI dependency returning the ledger built at startup."""
    return request.app.state.ledger


def extract_api_key(
    credentials: HTTPAuthorizationCredentials | None,
    header_key: str | None,
    query_key: str | None,
) -> str | None:
    """Pick the presented key from the supported locations."""
    if credentials is not None and credentials.credentials:
        return credentials.credentials.strip()
    if header_key:
        return header_key.strip()
    if query_key:
        return query_key.strip()
    return None


async def _resolve_key(
    ledger: CreditLedger, token: str | None, require_credits: bool
) -> ApiKey:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=(
                "API key required. Provide via Authorization header, "
                "x-api-key header, or api_key query param."
            ),
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await ledger.authenticate(token, require_credits=require_credits)
    except ApiKeyRejected as e:
        status_code = REJECTION_STATUS[e.reason]
        raise HTTPException(
            status_code=status_code,
            detail=REJECTION_MESSAGES[e.reason],
            headers=(
                {"WWW-Authenticate": "Bearer"}
                if status_code == status.HTTP_401_UNAUTHORIZED
                else None
            ),
        ) from e


async def require_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
    api_key: str | None = Query(default=None),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> ApiKey:
    """FastAPI dependency resolving the caller's key for a metered call.

    Usage:
        @app.post("/api/v1/validate")
        async def validate(key: ApiKey = Depends(require_api_key)):
            ...

    Raises:
        HTTPException: 401 for a missing, malformed or unknown key, 403 for a
            deactivated key, 402 when the key has no credits left.
    """
    token = extract_api_key(credentials, x_api_key, api_key)
    return await _resolve_key(ledger, token, require_credits=True)


async def require_key_owner(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
    api_key: str | None = Query(default=None),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> ApiKey:
    """Like require_api_key, but an exhausted key is accepted.

    Used by unmetered account endpoints.
    """
    token = extract_api_key(credentials, x_api_key, api_key)
    return await _resolve_key(ledger, token, require_credits=False)
