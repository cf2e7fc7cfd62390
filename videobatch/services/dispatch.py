"""Hand newly queued batches to the asynchronous execution path.

Two dispatchers exist and one is chosen at startup: ``QueueDispatcher``
pushes ``{"batch_id": ...}`` onto RabbitMQ, ``PullWorkerDispatcher`` does
nothing and leaves the batch for the polling worker. A failed push falls
back to the pull worker; the batch row stays the source of truth either way.
"""

import abc
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from videobatch.core.config import Settings
from videobatch.core.messaging import MessagePublisher
from videobatch.models import BatchJob

logger = structlog.get_logger()

PULL_WORKER_MODE = "pull-worker"
QUEUE_MODE = "rabbitmq"


@dataclass
class DispatchResult:
    enqueued: bool
    mode: str

    @property
    def enqueue_label(self) -> str:
        return "queued" if self.enqueued else PULL_WORKER_MODE


class Dispatcher(abc.ABC):
    mode: str

    @abc.abstractmethod
    def enqueue(self, batch_id: str) -> bool:
        """Push the batch; return False when this dispatcher does not push."""


class QueueDispatcher(Dispatcher):
    mode = QUEUE_MODE

    def __init__(self, publisher: MessagePublisher) -> None:
        self.publisher = publisher

    def enqueue(self, batch_id: str) -> bool:
        self.publisher.publish_batch_job(batch_id)
        return True


class PullWorkerDispatcher(Dispatcher):
    mode = PULL_WORKER_MODE

    def enqueue(self, batch_id: str) -> bool:
        return False


def build_dispatcher(settings: Settings) -> Dispatcher:
    if settings.rabbitmq_url:
        return QueueDispatcher(MessagePublisher(settings.rabbitmq_url, settings.batch_queue_name))
    return PullWorkerDispatcher()


def dispatch_batch(db: Session, batch: BatchJob, dispatcher: Dispatcher) -> DispatchResult:
    """Best-effort enqueue of ``batch``. Never raises."""
    if batch.enqueued_at is not None:
        logger.info("batch_already_enqueued", batch_id=str(batch.id))
        return DispatchResult(enqueued=True, mode=QUEUE_MODE)

    try:
        pushed = dispatcher.enqueue(str(batch.id))
    except Exception as e:
        logger.error(
            "batch_enqueue_failed",
            batch_id=str(batch.id),
            mode=dispatcher.mode,
            error=str(e),
            fallback=PULL_WORKER_MODE,
        )
        return DispatchResult(enqueued=False, mode=PULL_WORKER_MODE)

    if not pushed:
        return DispatchResult(enqueued=False, mode=PULL_WORKER_MODE)

    try:
        batch.enqueued_at = datetime.now(timezone.utc)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("batch_enqueued_at_update_failed", batch_id=str(batch.id), error=str(e))

    return DispatchResult(enqueued=True, mode=dispatcher.mode)
