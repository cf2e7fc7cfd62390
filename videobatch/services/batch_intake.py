"""Batch intake pipeline: price, reserve, persist and dispatch a batch.

Order of operations for a new batch:

1. advisory balance check (402 before anything is written)
2. insert the ``batch_jobs`` row (status queued, frozen 0)
3. bulk insert the ``video_tasks`` rows, ``batch_index`` = input position
4. freeze ``required_credits`` through the ledger, keyed by batch id
5. dispatch (never fails the request)

Steps 2-4 are not one database transaction: a failure in 3 or 4 deletes
whatever was inserted before it. Cleanup is best effort; anything left
behind is still ``queued`` with no frozen credits and is picked up by the
worker's reconciliation sweep.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from videobatch.core.config import settings
from videobatch.models import BatchJob, BatchSource, BatchStatus, EnterpriseApiKey, VideoTask
from videobatch.services import idempotency
from videobatch.services.credits import CreditLedger, InsufficientCreditsError, LedgerError
from videobatch.services.dispatch import Dispatcher, QUEUE_MODE, PULL_WORKER_MODE, dispatch_batch
from videobatch.services.exceptions import (
    BALANCE_CHECK_FAILED,
    BATCH_INSERT_FAILED,
    CREDIT_FREEZE_FAILED,
    IDEMPOTENCY_CONFLICT_NO_BATCH,
    INSUFFICIENT_CREDITS,
    TASKS_INSERT_FAILED,
    BatchError,
)
from videobatch.services.pricing import get_credits_for_model, required_credits

logger = structlog.get_logger()


@dataclass
class BatchItem:
    prompt: str
    model: str | None = None
    reference_url: str | None = None
    aspect_ratio: str | None = None
    duration: int | None = None
    meta: dict[str, Any] | None = field(default=None)


def check_balance(ledger: CreditLedger, user_id: uuid.UUID) -> int:
    try:
        return ledger.check_available(user_id)
    except LedgerError as e:
        logger.error("balance_check_failed", user_id=str(user_id), error=str(e))
        raise BatchError(BALANCE_CHECK_FAILED, 500)


def discard_batch(db: Session, batch_id: uuid.UUID) -> None:
    """Delete a batch and its tasks after a failed intake. Logs and returns on failure."""
    try:
        db.execute(delete(VideoTask).where(VideoTask.batch_job_id == batch_id))
        db.execute(delete(BatchJob).where(BatchJob.id == batch_id))
        db.commit()
        logger.info("batch_discarded", batch_id=str(batch_id))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("batch_cleanup_failed", batch_id=str(batch_id), error=str(e))


def _build_tasks(batch: BatchJob, items: list[BatchItem]) -> list[VideoTask]:
    return [
        VideoTask(
            id=uuid.uuid4(),
            user_id=batch.user_id,
            batch_job_id=batch.id,
            batch_index=index,
            prompt=item.prompt,
            model=item.model,
            aspect_ratio=item.aspect_ratio,
            duration=item.duration,
            reference_url=item.reference_url,
            meta=item.meta,
        )
        for index, item in enumerate(items)
    ]


def create_batch(
    db: Session,
    ledger: CreditLedger,
    *,
    user_id: uuid.UUID,
    items: list[BatchItem],
    cost_per_video: int,
    source: BatchSource,
    available: int,
    request_id: str | None = None,
    webhook_url: str | None = None,
    on_discard=None,
) -> BatchJob:
    """Persist the batch and its tasks, then freeze credits for it.

    ``on_discard`` runs after a compensating cleanup, before the error is
    raised (the enterprise path releases its usage row there).
    """
    required = required_credits(len(items), cost_per_video)
    batch_id = uuid.uuid4()
    batch = BatchJob(
        id=batch_id,
        user_id=user_id,
        request_id=request_id,
        source=source,
        status=BatchStatus.QUEUED,
        total_count=len(items),
        success_count=0,
        failed_count=0,
        cost_per_video=cost_per_video,
        frozen_credits=0,
        credits_spent=0,
        webhook_url=webhook_url,
    )

    def _abort(code: str, status_code: int, **extra) -> BatchError:
        discard_batch(db, batch_id)
        if on_discard is not None:
            on_discard()
        return BatchError(code, status_code, **extra)

    try:
        db.add(batch)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("batch_insert_failed", user_id=str(user_id), error=str(e))
        if on_discard is not None:
            on_discard()
        raise BatchError(BATCH_INSERT_FAILED, 500)

    try:
        db.add_all(_build_tasks(batch, items))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("tasks_insert_failed", batch_id=str(batch_id), error=str(e))
        raise _abort(TASKS_INSERT_FAILED, 500)

    try:
        ledger.freeze(user_id, batch_id, required)
    except InsufficientCreditsError as e:
        logger.info(
            "batch_freeze_rejected",
            batch_id=str(batch_id),
            required=required,
            available=e.available,
        )
        raise _abort(
            INSUFFICIENT_CREDITS,
            402,
            required=required,
            available=e.available if e.available is not None else available,
        )
    except LedgerError as e:
        logger.error("batch_freeze_failed", batch_id=str(batch_id), error=str(e))
        raise _abort(CREDIT_FREEZE_FAILED, 500)

    try:
        batch.frozen_credits = required
        db.commit()
    except SQLAlchemyError as e:
        # Credits are held by the ledger under this batch id; the row still
        # exists, so settlement can release them later.
        db.rollback()
        logger.error("batch_frozen_credits_update_failed", batch_id=str(batch_id), error=str(e))

    logger.info(
        "batch_created",
        batch_id=str(batch_id),
        user_id=str(user_id),
        source=source.value,
        total_count=len(items),
        frozen_credits=required,
    )
    return batch


def _record_usage(ledger: CreditLedger, user_id: uuid.UUID, items: list[BatchItem], default_model: str) -> None:
    counts: dict[str, int] = {}
    for item in items:
        model = item.model or default_model
        counts[model] = counts.get(model, 0) + 1
    for model, count in counts.items():
        try:
            ledger.record_usage(user_id, model, count)
        except LedgerError as e:
            logger.warning("usage_record_failed", user_id=str(user_id), model=model, error=str(e))


def submit_consumer_batch(
    db: Session,
    ledger: CreditLedger,
    dispatcher: Dispatcher,
    *,
    user_id: uuid.UUID,
    prompts: list[str],
    model: str,
    aspect_ratio: str,
    duration: int,
    request_id: str | None = None,
) -> dict[str, Any]:
    cost_per_video = get_credits_for_model(model)
    required = required_credits(len(prompts), cost_per_video)

    available = check_balance(ledger, user_id)
    if available < required:
        logger.info("insufficient_credits", user_id=str(user_id), required=required, available=available)
        raise BatchError(INSUFFICIENT_CREDITS, 402, required=required, available=available)

    items = [
        BatchItem(prompt=prompt, model=model, aspect_ratio=aspect_ratio, duration=duration)
        for prompt in prompts
    ]
    batch = create_batch(
        db,
        ledger,
        user_id=user_id,
        items=items,
        cost_per_video=cost_per_video,
        source=BatchSource.CONSUMER,
        available=available,
        request_id=request_id,
    )
    _record_usage(ledger, user_id, items, model)
    dispatch_batch(db, batch, dispatcher)

    return {
        "ok": True,
        "batch_id": str(batch.id),
        "total_count": len(items),
        "cost_per_video": cost_per_video,
        "credits_frozen": required,
        "credits_remaining": available - required,
        "message": f"Batch of {len(items)} videos queued",
    }


def enterprise_cost_per_video(api_key: EnterpriseApiKey) -> int:
    if api_key.cost_per_video is not None:
        return api_key.cost_per_video
    return settings.enterprise_cost_per_video


def _replay(
    db: Session,
    ledger: CreditLedger,
    api_key: EnterpriseApiKey,
    batch_job_id: uuid.UUID | None,
    request_id: str,
) -> dict[str, Any]:
    batch = db.get(BatchJob, batch_job_id) if batch_job_id is not None else None
    if batch is None:
        logger.warning("idempotency_conflict_no_batch", api_key_id=str(api_key.id), request_id=request_id)
        raise BatchError(
            IDEMPOTENCY_CONFLICT_NO_BATCH,
            409,
            message="A request with this id is still being processed, retry shortly",
        )

    available = check_balance(ledger, api_key.user_id)
    logger.info("idempotent_replay", batch_id=str(batch.id), request_id=request_id)
    return {
        "ok": True,
        "idempotent_replay": True,
        "batch_id": str(batch.id),
        "total_count": batch.total_count,
        "cost_per_video": batch.cost_per_video,
        "required_credits": batch.required_credits,
        "available_credits": available,
        "balance_snapshot": True,
        "status": batch.status.value,
        "enqueue": "skipped_idempotent",
        "enqueue_mode": QUEUE_MODE if batch.enqueued_at is not None else PULL_WORKER_MODE,
    }


def submit_enterprise_batch(
    db: Session,
    ledger: CreditLedger,
    dispatcher: Dispatcher,
    *,
    api_key: EnterpriseApiKey,
    items: list[BatchItem],
    request_id: str,
    bucket: str,
    endpoint: str,
    webhook_url: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> dict[str, Any]:
    """Enterprise intake. The caller has already applied the rate limit."""
    existing = idempotency.find_request(db, api_key.id, request_id)
    if existing is not None:
        return _replay(db, ledger, api_key, existing.batch_job_id, request_id)

    user_id = api_key.user_id
    cost_per_video = enterprise_cost_per_video(api_key)
    required = required_credits(len(items), cost_per_video)

    available = check_balance(ledger, user_id)
    if available < required:
        logger.info("insufficient_credits", user_id=str(user_id), required=required, available=available)
        raise BatchError(INSUFFICIENT_CREDITS, 402, required=required, available=available)

    usage = idempotency.reserve_request(
        db,
        api_key_id=api_key.id,
        request_id=request_id,
        bucket=bucket,
        endpoint=endpoint,
        ip=ip,
        user_agent=user_agent,
    )
    if usage is None:
        winner = idempotency.find_request(db, api_key.id, request_id)
        return _replay(db, ledger, api_key, winner.batch_job_id if winner else None, request_id)

    usage_id = usage.id
    batch = create_batch(
        db,
        ledger,
        user_id=user_id,
        items=items,
        cost_per_video=cost_per_video,
        source=BatchSource.ENTERPRISE,
        available=available,
        request_id=request_id,
        webhook_url=webhook_url or api_key.webhook_url,
        on_discard=lambda: idempotency.release_request(db, usage_id),
    )

    try:
        usage.batch_job_id = batch.id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("usage_link_failed", usage_id=str(usage_id), batch_id=str(batch.id), error=str(e))

    _record_usage(ledger, user_id, items, "enterprise")
    result = dispatch_batch(db, batch, dispatcher)

    return {
        "ok": True,
        "batch_id": str(batch.id),
        "total_count": len(items),
        "cost_per_video": cost_per_video,
        "required_credits": required,
        "available_credits": available,
        "balance_snapshot": True,
        "status": BatchStatus.QUEUED.value,
        "enqueue": result.enqueue_label,
        "enqueue_mode": result.mode,
    }
