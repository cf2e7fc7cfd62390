"""Batch execution: claim, generate, settle, notify.

A batch is claimed by flipping ``queued`` to ``processing`` in a single
conditional UPDATE, so two workers (or a queue message racing the poller)
never run the same batch. Task rows are written only from the claiming
thread; generator calls run in a thread pool.
"""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from videobatch.core.config import settings
from videobatch.models import (
    BatchJob,
    BatchSource,
    BatchStatus,
    EnterpriseApiKey,
    SettlementStatus,
    TaskStatus,
    VideoTask,
)
from videobatch.services.credits import CreditLedger, LedgerError
from videobatch.services.generator import GenerationRequest, GeneratorClient, GeneratorError
from videobatch.services.webhook import build_completed_payload, send_webhook

logger = structlog.get_logger()

ORPHANED_BATCH_ERROR = "ORPHANED_BATCH: credits were never reserved"


def claim_batch(db: Session, batch_id: uuid.UUID) -> BatchJob | None:
    """Move a queued batch to processing. None if it was not queued."""
    result = db.execute(
        update(BatchJob)
        .where(BatchJob.id == batch_id, BatchJob.status == BatchStatus.QUEUED)
        .values(status=BatchStatus.PROCESSING)
    )
    db.commit()
    if result.rowcount != 1:
        return None
    return db.get(BatchJob, batch_id)


def claim_pending_batch_ids(db: Session, limit: int | None = None, now: datetime | None = None) -> list[uuid.UUID]:
    """Queued batches with frozen credits that no queue message is known to cover.

    That is batches never enqueued (pull-worker mode or a failed publish) and
    batches enqueued longer than ``enqueue_stale_after_seconds`` ago.
    """
    now = now or datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=settings.enqueue_stale_after_seconds)
    return list(
        db.scalars(
            select(BatchJob.id)
            .where(
                BatchJob.status == BatchStatus.QUEUED,
                BatchJob.frozen_credits > 0,
                or_(BatchJob.enqueued_at.is_(None), BatchJob.enqueued_at < stale_before),
            )
            .order_by(BatchJob.created_at)
            .limit(limit or settings.batch_claim_limit)
        ).all()
    )


def run_task(generator: GeneratorClient, request: GenerationRequest, max_retries: int, sleep=time.sleep) -> tuple[bool, str]:
    """Generate one video, retrying retryable failures.

    Returns ``(True, video_url)`` or ``(False, last_error)``.
    """
    last_error = "UNKNOWN_ERROR"
    for attempt in range(max_retries + 1):
        try:
            return True, generator.generate(request)
        except GeneratorError as e:
            last_error = str(e)
            if not e.retryable or attempt == max_retries:
                break
            sleep(0.8 * (attempt + 1))
        except Exception as e:
            logger.error("task_generation_crashed", task_id=str(request.task_id), error=str(e))
            return False, f"UNEXPECTED_ERROR: {e}"
    return False, last_error


def _generation_request(task: VideoTask) -> GenerationRequest:
    return GenerationRequest(
        task_id=task.id,
        prompt=task.prompt,
        model=task.model,
        aspect_ratio=task.aspect_ratio,
        duration=task.duration,
        reference_url=task.reference_url,
        meta=task.meta,
    )


def run_batch_tasks(
    db: Session,
    batch: BatchJob,
    generator: GeneratorClient,
    concurrency: int | None = None,
    max_retries: int | None = None,
    sleep=time.sleep,
) -> int:
    """Run every pending task of ``batch``; returns how many were run."""
    concurrency = max(1, concurrency or settings.batch_task_concurrency)
    max_retries = settings.max_task_retries if max_retries is None else max_retries

    pending = db.scalars(
        select(VideoTask)
        .where(VideoTask.batch_job_id == batch.id, VideoTask.status == TaskStatus.PENDING)
        .order_by(VideoTask.batch_index)
    ).all()
    if not pending:
        return 0

    for task in pending:
        task.mark_processing()
    db.commit()

    requests = {task.id: _generation_request(task) for task in pending}
    by_id = {task.id: task for task in pending}

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        futures = {
            pool.submit(run_task, generator, request, max_retries, sleep): task_id
            for task_id, request in requests.items()
        }
        for future in as_completed(futures):
            task = by_id[futures[future]]
            ok, value = future.result()
            if ok:
                task.mark_succeeded(value)
            else:
                task.mark_failed(value)
                logger.warning("task_failed", task_id=str(task.id), batch_id=str(batch.id), error=value[:200])
            db.commit()

    return len(pending)


def settle_batch(db: Session, ledger: CreditLedger, batch: BatchJob) -> bool:
    """Finalize credits once every task is terminal. Returns True when settled."""
    statuses = db.scalars(select(VideoTask.status).where(VideoTask.batch_job_id == batch.id)).all()
    succeeded = sum(1 for s in statuses if s == TaskStatus.SUCCEEDED)
    failed = sum(1 for s in statuses if s == TaskStatus.FAILED)

    if succeeded + failed != batch.total_count:
        logger.info(
            "batch_settlement_deferred",
            batch_id=str(batch.id),
            succeeded=succeeded,
            failed=failed,
            total=batch.total_count,
        )
        return False

    spent = succeeded * batch.cost_per_video
    try:
        result = ledger.finalize(batch.user_id, batch.id, spent)
    except LedgerError as e:
        logger.error("batch_settlement_failed", batch_id=str(batch.id), error=str(e))
        return False

    if not result.already_finalized and spent < batch.frozen_credits:
        settlement = SettlementStatus.REFUNDED
    else:
        settlement = SettlementStatus.FINALIZED

    batch.success_count = succeeded
    batch.failed_count = failed
    batch.credits_spent = spent
    batch.settlement_status = settlement
    batch.status = BatchStatus.COMPLETED if succeeded > 0 else BatchStatus.FAILED
    batch.completed_at = datetime.now(timezone.utc)
    db.commit()

    logger.info(
        "batch_settled",
        batch_id=str(batch.id),
        status=batch.status.value,
        succeeded=succeeded,
        failed=failed,
        credits_spent=spent,
        refunded=result.refunded,
    )
    return True


def notify_batch_completed(db: Session, batch: BatchJob) -> bool:
    """Send the completion webhook if the batch or its owner's key has one."""
    api_key = None
    if batch.source == BatchSource.ENTERPRISE:
        api_key = db.scalar(
            select(EnterpriseApiKey)
            .where(EnterpriseApiKey.user_id == batch.user_id, EnterpriseApiKey.is_active.is_(True))
            .order_by(EnterpriseApiKey.created_at)
            .limit(1)
        )

    url = batch.webhook_url or (api_key.webhook_url if api_key else None)
    if not url:
        return False
    secret = api_key.webhook_secret if api_key else None
    return send_webhook(url, build_completed_payload(batch), secret=secret)


def process_batch(
    db: Session,
    ledger: CreditLedger,
    generator: GeneratorClient,
    batch_id: uuid.UUID,
    sleep=time.sleep,
) -> BatchJob | None:
    batch = claim_batch(db, batch_id)
    if batch is None:
        logger.info("batch_claim_skipped", batch_id=str(batch_id))
        return None

    logger.info("batch_processing_started", batch_id=str(batch_id), total=batch.total_count)
    run_batch_tasks(db, batch, generator, sleep=sleep)

    if settle_batch(db, ledger, batch):
        notify_batch_completed(db, batch)
    return batch


def reconcile_orphaned_batches(db: Session, ledger: CreditLedger, now: datetime | None = None) -> int:
    """Fail queued batches that never got credits reserved.

    These are left behind when an intake request dies between inserting the
    batch and freezing credits. Any hold the ledger might still have under the
    batch id is released with a zero-spend finalize.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.orphan_batch_after_seconds)
    orphans = db.scalars(
        select(BatchJob).where(
            BatchJob.status == BatchStatus.QUEUED,
            BatchJob.frozen_credits == 0,
            BatchJob.created_at < cutoff,
        )
    ).all()

    for batch in orphans:
        try:
            ledger.finalize(batch.user_id, batch.id, 0)
        except LedgerError as e:
            logger.warning("orphan_release_failed", batch_id=str(batch.id), error=str(e))

        db.execute(
            update(VideoTask)
            .where(
                VideoTask.batch_job_id == batch.id,
                VideoTask.status.in_([TaskStatus.PENDING, TaskStatus.PROCESSING]),
            )
            .values(status=TaskStatus.FAILED, error_message=ORPHANED_BATCH_ERROR)
        )
        batch.status = BatchStatus.FAILED
        batch.success_count = 0
        batch.failed_count = batch.total_count
        batch.credits_spent = 0
        batch.settlement_status = SettlementStatus.FINALIZED
        batch.completed_at = now
        db.commit()
        logger.warning("orphaned_batch_failed", batch_id=str(batch.id), user_id=str(batch.user_id))

    return len(orphans)
