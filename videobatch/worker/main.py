"""
Batch worker - consumes batch ids from RabbitMQ, or polls the database when no queue is configured.
"""

import json
import signal
import time
import uuid

import pika
import structlog

from videobatch.core.config import settings
from videobatch.models import SessionLocal
from videobatch.services.credits import RpcCreditLedger
from videobatch.services.generator import GeneratorClient
from videobatch.worker.tasks import claim_pending_batch_ids, process_batch, reconcile_orphaned_batches

logger = structlog.get_logger()

shutdown_requested = False


def signal_handler(signum, frame):
    global shutdown_requested
    logger.info("shutdown_requested", signal=signum)
    shutdown_requested = True


def handle_batch(batch_id: uuid.UUID, generator: GeneratorClient) -> None:
    db = SessionLocal()
    try:
        process_batch(db, RpcCreditLedger(db), generator, batch_id)
    finally:
        db.close()


def sweep(generator: GeneratorClient) -> int:
    """Fail orphaned batches, then run queued batches no queue message covers."""
    db = SessionLocal()
    try:
        reconcile_orphaned_batches(db, RpcCreditLedger(db))
        batch_ids = claim_pending_batch_ids(db)
    finally:
        db.close()

    for batch_id in batch_ids:
        if shutdown_requested:
            break
        handle_batch(batch_id, generator)
    return len(batch_ids)


def on_message(channel, method, properties, body, generator: GeneratorClient):
    """Handle one ``{"batch_id": ...}`` message."""
    try:
        message = json.loads(body)
        batch_id = uuid.UUID(str(message["batch_id"]))

        logger.info("batch_received", batch_id=str(batch_id))
        handle_batch(batch_id, generator)
        channel.basic_ack(delivery_tag=method.delivery_tag)

    except (json.JSONDecodeError, KeyError, ValueError) as e:
        logger.error("invalid_message", error=str(e))
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

    except Exception as e:
        logger.error("processing_error", error=str(e))
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=True)


def run_consumer(generator: GeneratorClient) -> None:
    while not shutdown_requested:
        try:
            params = pika.URLParameters(settings.rabbitmq_url)
            connection = pika.BlockingConnection(params)
            channel = connection.channel()

            channel.queue_declare(queue=settings.batch_queue_name, durable=True)
            channel.basic_qos(prefetch_count=1)
            channel.basic_consume(
                queue=settings.batch_queue_name,
                on_message_callback=lambda ch, m, p, b: on_message(ch, m, p, b, generator),
            )

            logger.info("worker_ready", mode="rabbitmq", queue=settings.batch_queue_name)

            next_sweep = time.monotonic()
            while not shutdown_requested:
                connection.process_data_events(time_limit=1)
                if time.monotonic() >= next_sweep:
                    sweep(generator)
                    next_sweep = time.monotonic() + settings.worker_poll_interval_seconds

            connection.close()

        except pika.exceptions.AMQPConnectionError as e:
            logger.error("rabbitmq_connection_error", error=str(e))
            if not shutdown_requested:
                time.sleep(5)

        except Exception as e:
            logger.error("worker_error", error=str(e))
            if not shutdown_requested:
                time.sleep(5)


def run_poller(generator: GeneratorClient) -> None:
    logger.info("worker_ready", mode="pull-worker", interval=settings.worker_poll_interval_seconds)
    while not shutdown_requested:
        try:
            processed = sweep(generator)
        except Exception as e:
            logger.error("worker_error", error=str(e))
            processed = 0
        if processed == 0 and not shutdown_requested:
            time.sleep(settings.worker_poll_interval_seconds)


def main():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(
        "worker_starting",
        concurrency=settings.batch_task_concurrency,
        claim_limit=settings.batch_claim_limit,
    )

    generator = GeneratorClient()
    if settings.rabbitmq_url:
        run_consumer(generator)
    else:
        run_poller(generator)

    logger.info("worker_stopped")


if __name__ == "__main__":
    main()
