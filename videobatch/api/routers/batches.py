from uuid import UUID

import structlog
from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select

from videobatch.api.dependencies import (
    BatchDispatcher,
    DatabaseSession,
    Ledger,
    RequestId,
    authenticate_session,
    extract_api_key,
    validate_origin,
)
from videobatch.api.responses import CONSUMER_MODE, envelope, error_envelope
from videobatch.api.routers.enterprise import handle_enterprise_submission, read_json
from videobatch.api.schemas import batch_detail, batch_list, parse_consumer_request
from videobatch.models import BatchJob
from videobatch.services.batch_intake import submit_consumer_batch
from videobatch.services.exceptions import BATCH_NOT_FOUND, INTERNAL_ERROR, BatchError

logger = structlog.get_logger()
router = APIRouter(prefix="/video/batch", tags=["Batches"])

RECENT_BATCH_LIMIT = 20


@router.post("", summary="Submit a batch of video prompts")
async def submit_batch(
    request: Request,
    db: DatabaseSession,
    ledger: Ledger,
    dispatcher: BatchDispatcher,
    request_id: RequestId,
):
    """
    Session users send ``{"prompts": [...], "model", "aspectRatio", "duration"}``.

    Requests carrying an API key (``X-API-Key`` or ``Authorization: ApiKey``)
    are handled as enterprise submissions.
    """
    if extract_api_key(request) is not None:
        return await handle_enterprise_submission(request, db, ledger, dispatcher, request_id)

    try:
        validate_origin(request)
        user_id = authenticate_session(request)
        payload = parse_consumer_request(await read_json(request))
        result = await run_in_threadpool(
            submit_consumer_batch,
            db,
            ledger,
            dispatcher,
            user_id=user_id,
            prompts=payload.prompts,
            model=payload.model.value,
            aspect_ratio=payload.aspect_ratio,
            duration=int(payload.duration),
            request_id=request_id,
        )
        return envelope(result, request_id, CONSUMER_MODE)
    except BatchError as e:
        return error_envelope(e, request_id, CONSUMER_MODE)
    except Exception as e:
        logger.error("consumer_batch_unhandled_error", request_id=request_id, error=str(e))
        return error_envelope(BatchError(INTERNAL_ERROR, 500), request_id, CONSUMER_MODE)


@router.get("", summary="Batch detail or recent batches")
async def get_batches(
    request: Request,
    db: DatabaseSession,
    request_id: RequestId,
    batch_id: str | None = None,
):
    """With ``batch_id``: the batch and its tasks in submission order. Without: the 20 most recent batches."""
    try:
        user_id = authenticate_session(request)

        if batch_id is None:
            batches = db.scalars(
                select(BatchJob)
                .where(BatchJob.user_id == user_id)
                .order_by(BatchJob.created_at.desc())
                .limit(RECENT_BATCH_LIMIT)
            ).all()
            return envelope(batch_list(list(batches)), request_id, CONSUMER_MODE)

        try:
            batch_uuid = UUID(batch_id)
        except ValueError:
            raise BatchError(BATCH_NOT_FOUND, 404)

        batch = db.scalar(
            select(BatchJob).where(BatchJob.id == batch_uuid, BatchJob.user_id == user_id)
        )
        if batch is None:
            raise BatchError(BATCH_NOT_FOUND, 404)
        return envelope(batch_detail(batch), request_id, CONSUMER_MODE)
    except BatchError as e:
        return error_envelope(e, request_id, CONSUMER_MODE)
    except Exception as e:
        logger.error("consumer_batch_read_failed", request_id=request_id, error=str(e))
        return error_envelope(BatchError(INTERNAL_ERROR, 500), request_id, CONSUMER_MODE)
