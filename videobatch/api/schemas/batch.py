from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from videobatch.core.config import settings
from videobatch.models import BatchJob, BatchSource, BatchStatus, SettlementStatus, TaskStatus
from videobatch.services.batch_intake import BatchItem
from videobatch.services.exceptions import INVALID_PAYLOAD, TOO_MANY_ITEMS, BatchError
from videobatch.services.pricing import VideoModel


class ConsumerBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompts: list[str]
    model: VideoModel = VideoModel.SORA_2
    aspect_ratio: Literal["16:9", "9:16"] = Field(default="16:9", alias="aspectRatio")
    duration: Literal["5", "10"] = "5"

    @field_validator("prompts")
    @classmethod
    def validate_prompts(cls, v: list[str]) -> list[str]:
        cleaned = [p.strip() for p in v]
        min_length = settings.consumer_min_prompt_length
        for index, prompt in enumerate(cleaned):
            if len(prompt) < min_length:
                raise ValueError(f"prompts[{index}] must be at least {min_length} characters")
        return cleaned


class EnterpriseItem(BaseModel):
    prompt: str
    model: str | None = Field(default=None, max_length=32)
    reference_url: str | None = None
    aspect_ratio: str | None = Field(default=None, max_length=8)
    duration: int | None = Field(default=None, gt=0)
    meta: dict[str, Any] | None = None

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be empty")
        return v

    def to_item(self) -> BatchItem:
        return BatchItem(
            prompt=self.prompt,
            model=self.model,
            reference_url=self.reference_url,
            aspect_ratio=self.aspect_ratio,
            duration=self.duration,
            meta=self.meta,
        )


class EnterpriseBatchRequest(BaseModel):
    items: list[EnterpriseItem]
    webhook_url: str | None = None

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return v


def _validation_details(error: ValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]


def _check_item_count(items: Any, field: str, maximum: int) -> None:
    if not isinstance(items, list) or not items:
        raise BatchError(INVALID_PAYLOAD, 400, message=f"{field}[] is required")
    if len(items) > maximum:
        raise BatchError(TOO_MANY_ITEMS, 400, message=f"Too many {field} in one batch (max {maximum}).")


def parse_consumer_request(body: Any) -> ConsumerBatchRequest:
    if not isinstance(body, dict):
        raise BatchError(INVALID_PAYLOAD, 400, message="Body must be a JSON object")
    _check_item_count(body.get("prompts"), "prompts", settings.consumer_max_prompts)
    try:
        return ConsumerBatchRequest.model_validate(body)
    except ValidationError as e:
        raise BatchError(INVALID_PAYLOAD, 400, details=_validation_details(e))


def parse_enterprise_request(body: Any) -> EnterpriseBatchRequest:
    if not isinstance(body, dict):
        raise BatchError(INVALID_PAYLOAD, 400, message="Body must be a JSON object")
    _check_item_count(body.get("items"), "items", settings.enterprise_max_items)
    try:
        return EnterpriseBatchRequest.model_validate(body)
    except ValidationError as e:
        raise BatchError(INVALID_PAYLOAD, 400, details=_validation_details(e))


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_index: int
    prompt: str
    model: str | None = None
    status: TaskStatus
    video_url: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class BatchSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: BatchSource
    status: BatchStatus
    request_id: str | None = None
    total_count: int
    success_count: int
    failed_count: int
    cost_per_video: int
    frozen_credits: int
    credits_spent: int
    settlement_status: SettlementStatus
    created_at: datetime
    enqueued_at: datetime | None = None
    completed_at: datetime | None = None


def batch_detail(batch: BatchJob) -> dict[str, Any]:
    return {
        "ok": True,
        "batch": BatchSummary.model_validate(batch).model_dump(mode="json"),
        "tasks": [TaskResponse.model_validate(t).model_dump(mode="json") for t in batch.tasks],
    }


def batch_list(batches: list[BatchJob]) -> dict[str, Any]:
    return {
        "ok": True,
        "batches": [BatchSummary.model_validate(b).model_dump(mode="json") for b in batches],
    }
