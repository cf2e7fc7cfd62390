import uuid
from functools import lru_cache
from typing import Annotated
from urllib.parse import urlsplit

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from videobatch.core.config import settings
from videobatch.core.security import hash_api_key, verify_session_token
from videobatch.models import EnterpriseApiKey, get_db
from videobatch.services.credits import CreditLedger, RpcCreditLedger
from videobatch.services.dispatch import Dispatcher, build_dispatcher
from videobatch.services.exceptions import (
    INVALID_API_KEY,
    INVALID_ORIGIN,
    MISSING_API_KEY,
    UNAUTHORIZED,
    BatchError,
)

DatabaseSession = Annotated[Session, Depends(get_db)]


def get_ledger(db: DatabaseSession) -> CreditLedger:
    return RpcCreditLedger(db)


@lru_cache
def get_dispatcher() -> Dispatcher:
    return build_dispatcher(settings)


def get_request_id(request: Request) -> str:
    raw = request.headers.get("idempotency-key") or request.headers.get("x-request-id") or ""
    raw = raw.strip()[: settings.request_id_max_length]
    return raw or str(uuid.uuid4())


Ledger = Annotated[CreditLedger, Depends(get_ledger)]
BatchDispatcher = Annotated[Dispatcher, Depends(get_dispatcher)]
RequestId = Annotated[str, Depends(get_request_id)]


def extract_api_key(request: Request) -> str | None:
    """API key from ``X-API-Key`` or ``Authorization: ApiKey <key>``."""
    key = request.headers.get("x-api-key")
    if key and key.strip():
        return key.strip()
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "apikey" and credentials.strip():
        return credentials.strip()
    return None


def extract_session_token(request: Request) -> str | None:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(settings.session_cookie_name) or None


def authenticate_api_key(db: Session, raw_key: str | None) -> EnterpriseApiKey:
    if not raw_key:
        raise BatchError(MISSING_API_KEY, 401)
    api_key = db.scalar(
        select(EnterpriseApiKey).where(EnterpriseApiKey.key_hash == hash_api_key(raw_key))
    )
    if api_key is None or not api_key.is_active:
        raise BatchError(INVALID_API_KEY, 403)
    return api_key


def authenticate_session(request: Request) -> uuid.UUID:
    token = extract_session_token(request)
    if token is None:
        raise BatchError(UNAUTHORIZED, 401)

    payload = verify_session_token(token)
    if payload is None or payload.get("sub") is None:
        raise BatchError(UNAUTHORIZED, 401)

    try:
        return uuid.UUID(str(payload["sub"]))
    except ValueError:
        raise BatchError(UNAUTHORIZED, 401)


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def validate_origin(request: Request) -> None:
    """Reject browser requests coming from an origin outside the allow-list.

    Requests without ``Origin`` and ``Referer`` are not browser form posts
    and pass through.
    """
    origin = request.headers.get("origin")
    if not origin:
        referer = request.headers.get("referer")
        if not referer:
            return
        origin = _origin_of(referer)
    allowed = {o.rstrip("/") for o in settings.cors_origins}
    if origin.rstrip("/") not in allowed:
        raise BatchError(INVALID_ORIGIN, 403)


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
