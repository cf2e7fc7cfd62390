from typing import Any

from fastapi.responses import JSONResponse

from videobatch.services.exceptions import BatchError

CONSUMER_MODE = "consumer"
ENTERPRISE_MODE = "enterprise"


def envelope(body: dict[str, Any], request_id: str, mode: str, status_code: int = 200) -> JSONResponse:
    headers = {"x-request-id": request_id}
    retry_after = body.get("retry_after")
    if status_code == 429 and retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=status_code,
        content={**body, "mode": mode, "request_id": request_id},
        headers=headers,
    )


def error_envelope(error: BatchError, request_id: str, mode: str) -> JSONResponse:
    return envelope(error.to_body(), request_id, mode, error.status_code)
