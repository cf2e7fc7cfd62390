"""Signed ``batch.completed`` callbacks for enterprise batches."""

import json
import time
from typing import Any

import httpx
import structlog

from videobatch.core.config import settings
from videobatch.core.security import sign_payload
from videobatch.models import BatchJob

logger = structlog.get_logger()


def build_completed_payload(batch: BatchJob) -> dict[str, Any]:
    return {
        "type": "batch.completed",
        "batch_id": str(batch.id),
        "status": batch.status.value,
        "total_count": batch.total_count,
        "success_count": batch.success_count,
        "failed_count": batch.failed_count,
        "cost_per_video": batch.cost_per_video,
        "frozen_credits": batch.frozen_credits,
        "credits_spent": batch.credits_spent,
        "settlement_status": batch.settlement_status.value,
        "ts": int(time.time() * 1000),
    }


def send_webhook(
    url: str,
    payload: dict[str, Any],
    secret: str | None = None,
    retries: int | None = None,
    timeout: float | None = None,
    sleep=time.sleep,
    client: httpx.Client | None = None,
) -> bool:
    """POST ``payload`` to ``url``; True once a 2xx is received.

    Delivery failures are logged and reported as False, never raised.
    """
    retries = retries or settings.webhook_retries
    timeout = timeout or settings.webhook_timeout_seconds
    secret = secret or settings.webhook_secret or None

    body = json.dumps(payload, separators=(",", ":")).encode()
    headers = {
        "content-type": "application/json",
        "x-batch-id": str(payload.get("batch_id", "")),
        "x-webhook-timestamp": str(int(time.time() * 1000)),
    }
    if secret:
        headers["x-webhook-signature"] = sign_payload(body, secret)

    http = client or httpx.Client(timeout=timeout)
    try:
        for attempt in range(retries):
            try:
                response = http.post(url, content=body, headers=headers)
                if response.is_success:
                    logger.info("webhook_delivered", batch_id=headers["x-batch-id"], status=response.status_code)
                    return True
                logger.warning(
                    "webhook_non_2xx",
                    batch_id=headers["x-batch-id"],
                    status=response.status_code,
                    attempt=attempt + 1,
                )
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.warning(
                    "webhook_delivery_error",
                    batch_id=headers["x-batch-id"],
                    error=str(e),
                    attempt=attempt + 1,
                )
            if attempt + 1 < retries:
                sleep(0.5 + attempt * attempt)
    finally:
        if client is None:
            http.close()

    logger.error("webhook_failed", batch_id=headers["x-batch-id"], retries=retries)
    return False
