import json
import threading
import time

import pika
import structlog

from .config import settings

logger = structlog.get_logger()


class DispatchError(Exception):
    """Publishing to the batch queue failed after all attempts."""


class MessagePublisher:
    """RabbitMQ publisher for the batch queue."""

    def __init__(self, url: str | None = None, queue_name: str | None = None) -> None:
        self.url = url or settings.rabbitmq_url
        self.queue_name = queue_name or settings.batch_queue_name
        self._connection: pika.BlockingConnection | None = None
        self._channel: pika.channel.Channel | None = None
        # BlockingConnection is not thread-safe; request threads share this publisher.
        self._lock = threading.Lock()

    def _connect(self) -> None:
        if self._connection is None or self._connection.is_closed:
            params = pika.URLParameters(self.url)
            self._connection = pika.BlockingConnection(params)
            self._channel = self._connection.channel()
            self._channel.queue_declare(queue=self.queue_name, durable=True)

    def _reset(self) -> None:
        try:
            self.close()
        except pika.exceptions.AMQPError:
            pass
        self._connection = None
        self._channel = None

    def publish_batch_job(
        self,
        batch_id: str,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        """Publish a batch for processing, retrying with exponential backoff.

        Raises:
            DispatchError: if every attempt failed
        """
        attempts = max_attempts or settings.enqueue_max_attempts
        delay = settings.enqueue_backoff_seconds if backoff_seconds is None else backoff_seconds
        body = json.dumps({"batch_id": batch_id})
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                with self._lock:
                    self._publish(body)
                logger.info("batch_published", batch_id=batch_id, queue=self.queue_name, attempt=attempt)
                return
            except pika.exceptions.AMQPError as e:
                last_error = e
                logger.warning("batch_publish_retry", batch_id=batch_id, attempt=attempt, error=str(e))
                with self._lock:
                    self._reset()
                if attempt < attempts:
                    time.sleep(delay * (2 ** (attempt - 1)))

        raise DispatchError(str(last_error))

    def _publish(self, body: str) -> None:
        self._connect()
        self._channel.basic_publish(
            exchange="",
            routing_key=self.queue_name,
            body=body,
            properties=pika.BasicProperties(
                delivery_mode=2,  # persistent
                content_type="application/json",
            ),
        )

    def close(self) -> None:
        if self._connection and not self._connection.is_closed:
            self._connection.close()

