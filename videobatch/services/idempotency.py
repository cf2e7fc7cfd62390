"""Per-API-key rate limiting and request-id idempotency for enterprise batches.

Both rely on ``enterprise_api_usage``: one row per accepted request, unique
on ``(api_key_id, request_id)``. The unique constraint decides which of two
racing requests with the same id wins; the loser replays the winner's batch.
"""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from videobatch.core.config import settings
from videobatch.models import EnterpriseApiKey, EnterpriseApiUsage
from videobatch.services.exceptions import (
    RATE_LIMIT_EXCEEDED,
    RATE_LIMIT_QUERY_FAILED,
    USAGE_INSERT_FAILED,
    BatchError,
)

logger = structlog.get_logger()


def minute_bucket(now: datetime | None = None) -> str:
    """UTC minute containing ``now``, formatted like ``2026-01-01T12:34:00.000Z``."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:00.000Z")


def effective_rate_limit(api_key: EnterpriseApiKey) -> int:
    if api_key.rate_limit_per_min is not None:
        return api_key.rate_limit_per_min
    return settings.enterprise_default_rate_limit_per_min


def enforce_rate_limit(db: Session, api_key: EnterpriseApiKey, bucket: str) -> int:
    """Reject with 429 once the key used up its quota for this minute.

    Returns the number of requests already counted in the bucket.
    """
    limit = effective_rate_limit(api_key)
    try:
        used = db.scalar(
            select(func.count(EnterpriseApiUsage.id)).where(
                EnterpriseApiUsage.api_key_id == api_key.id,
                EnterpriseApiUsage.minute_bucket == bucket,
            )
        ) or 0
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("rate_limit_query_failed", api_key_id=str(api_key.id), error=str(e))
        raise BatchError(RATE_LIMIT_QUERY_FAILED, 500)

    if used >= limit:
        logger.info("rate_limit_exceeded", api_key_id=str(api_key.id), used=used, limit=limit)
        seconds_left = 60 - datetime.now(timezone.utc).second
        raise BatchError(RATE_LIMIT_EXCEEDED, 429, limit=limit, retry_after=seconds_left)
    return used


def find_request(db: Session, api_key_id: uuid.UUID, request_id: str) -> EnterpriseApiUsage | None:
    return db.scalar(
        select(EnterpriseApiUsage)
        .where(
            EnterpriseApiUsage.api_key_id == api_key_id,
            EnterpriseApiUsage.request_id == request_id,
        )
        .order_by(EnterpriseApiUsage.created_at.desc())
        .limit(1)
    )


def reserve_request(
    db: Session,
    *,
    api_key_id: uuid.UUID,
    request_id: str,
    bucket: str,
    endpoint: str,
    ip: str | None = None,
    user_agent: str | None = None,
) -> EnterpriseApiUsage | None:
    """Insert the usage row that gates batch creation.

    Returns None when another request with the same id got there first.
    """
    usage = EnterpriseApiUsage(
        api_key_id=api_key_id,
        endpoint=endpoint,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
        minute_bucket=bucket,
    )
    try:
        db.add(usage)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("idempotent_request_detected", api_key_id=str(api_key_id), request_id=request_id)
        return None
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("usage_insert_failed", api_key_id=str(api_key_id), error=str(e))
        raise BatchError(USAGE_INSERT_FAILED, 500)
    return usage


def release_request(db: Session, usage_id: uuid.UUID) -> None:
    """Drop a usage row whose batch was rolled back, so the caller may retry the same id."""
    try:
        usage = db.get(EnterpriseApiUsage, usage_id)
        if usage is not None:
            db.delete(usage)
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("usage_release_failed", usage_id=str(usage_id), error=str(e))
