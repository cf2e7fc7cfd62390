from uuid import UUID

import structlog
from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from videobatch.api.dependencies import (
    BatchDispatcher,
    DatabaseSession,
    Ledger,
    RequestId,
    authenticate_api_key,
    client_ip,
    extract_api_key,
)
from videobatch.api.responses import ENTERPRISE_MODE, envelope, error_envelope
from videobatch.api.schemas import batch_detail, parse_enterprise_request
from videobatch.models import BatchJob
from videobatch.services import idempotency
from videobatch.services.batch_intake import check_balance, submit_enterprise_batch
from videobatch.services.credits import CreditLedger
from videobatch.services.dispatch import Dispatcher
from videobatch.services.exceptions import BATCH_NOT_FOUND, INTERNAL_ERROR, INVALID_PAYLOAD, BatchError

logger = structlog.get_logger()
router = APIRouter(prefix="/enterprise", tags=["Enterprise"])


async def read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise BatchError(INVALID_PAYLOAD, 400, message="Body must be valid JSON")


async def handle_enterprise_submission(
    request: Request,
    db: Session,
    ledger: CreditLedger,
    dispatcher: Dispatcher,
    request_id: str,
) -> JSONResponse:
    """Authenticate, rate limit, validate and submit an enterprise batch."""
    try:
        api_key = authenticate_api_key(db, extract_api_key(request))
        bucket = idempotency.minute_bucket()
        idempotency.enforce_rate_limit(db, api_key, bucket)

        payload = parse_enterprise_request(await read_json(request))
        result = await run_in_threadpool(
            submit_enterprise_batch,
            db,
            ledger,
            dispatcher,
            api_key=api_key,
            items=[item.to_item() for item in payload.items],
            request_id=request_id,
            bucket=bucket,
            endpoint=request.url.path,
            webhook_url=payload.webhook_url,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return envelope(result, request_id, ENTERPRISE_MODE)
    except BatchError as e:
        return error_envelope(e, request_id, ENTERPRISE_MODE)
    except Exception as e:
        logger.error("enterprise_batch_unhandled_error", request_id=request_id, error=str(e))
        return error_envelope(BatchError(INTERNAL_ERROR, 500), request_id, ENTERPRISE_MODE)


@router.post("/video-batch", summary="Submit an enterprise batch")
async def submit_enterprise(
    request: Request,
    db: DatabaseSession,
    ledger: Ledger,
    dispatcher: BatchDispatcher,
    request_id: RequestId,
):
    """
    Body: ``{"items": [{"prompt", "model"?, "reference_url"?, "aspect_ratio"?,
    "duration"?, "meta"?}], "webhook_url"?}`` with 1-500 items.

    Send the same ``Idempotency-Key`` (or ``x-request-id``) header when
    retrying: the original batch is returned with ``idempotent_replay: true``.
    """
    return await handle_enterprise_submission(request, db, ledger, dispatcher, request_id)


@router.get("/video-batch/{batch_id}", summary="Enterprise batch status")
async def get_enterprise_batch(batch_id: str, request: Request, db: DatabaseSession, request_id: RequestId):
    try:
        api_key = authenticate_api_key(db, extract_api_key(request))
        try:
            batch_uuid = UUID(batch_id)
        except ValueError:
            raise BatchError(BATCH_NOT_FOUND, 404)

        batch = db.scalar(
            select(BatchJob).where(BatchJob.id == batch_uuid, BatchJob.user_id == api_key.user_id)
        )
        if batch is None:
            raise BatchError(BATCH_NOT_FOUND, 404)
        return envelope(batch_detail(batch), request_id, ENTERPRISE_MODE)
    except BatchError as e:
        return error_envelope(e, request_id, ENTERPRISE_MODE)
    except Exception as e:
        logger.error("enterprise_batch_read_failed", request_id=request_id, error=str(e))
        return error_envelope(BatchError(INTERNAL_ERROR, 500), request_id, ENTERPRISE_MODE)


@router.get("/credits", summary="Available credits for the API key owner")
async def get_enterprise_credits(request: Request, db: DatabaseSession, ledger: Ledger, request_id: RequestId):
    try:
        api_key = authenticate_api_key(db, extract_api_key(request))
        available = check_balance(ledger, api_key.user_id)
        return envelope({"ok": True, "available_credits": available}, request_id, ENTERPRISE_MODE)
    except BatchError as e:
        return error_envelope(e, request_id, ENTERPRISE_MODE)
    except Exception as e:
        logger.error("enterprise_credits_read_failed", request_id=request_id, error=str(e))
        return error_envelope(BatchError(INTERNAL_ERROR, 500), request_id, ENTERPRISE_MODE)
