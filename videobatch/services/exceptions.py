"""Error codes returned by the batch endpoints."""

from typing import Any


class BatchError(Exception):
    """A request-level failure with a stable error code.

    ``extra`` is merged into the JSON body (e.g. ``required``/``available``
    for credit errors). Internal causes belong in the logs, not here.
    """

    def __init__(self, code: str, status_code: int, message: str | None = None, **extra: Any) -> None:
        super().__init__(message or code)
        self.code = code
        self.status_code = status_code
        self.message = message
        self.extra = extra

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": False, "error": self.code}
        if self.message:
            body["message"] = self.message
        body.update(self.extra)
        return body


INVALID_PAYLOAD = "INVALID_PAYLOAD"
TOO_MANY_ITEMS = "TOO_MANY_ITEMS"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
BATCH_INSERT_FAILED = "BATCH_INSERT_FAILED"
TASKS_INSERT_FAILED = "TASKS_INSERT_FAILED"
CREDIT_FREEZE_FAILED = "CREDIT_FREEZE_FAILED"
BALANCE_CHECK_FAILED = "BALANCE_CHECK_FAILED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
RATE_LIMIT_QUERY_FAILED = "RATE_LIMIT_QUERY_FAILED"
USAGE_INSERT_FAILED = "USAGE_INSERT_FAILED"
IDEMPOTENCY_CONFLICT_NO_BATCH = "IDEMPOTENCY_CONFLICT_NO_BATCH"
MISSING_API_KEY = "MISSING_API_KEY"
INVALID_API_KEY = "INVALID_API_KEY"
UNAUTHORIZED = "UNAUTHORIZED"
INVALID_ORIGIN = "INVALID_ORIGIN"
BATCH_NOT_FOUND = "BATCH_NOT_FOUND"
INTERNAL_ERROR = "INTERNAL_ERROR"
