import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .types import GUID, JSONType


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


class InvalidStateTransition(Exception):
    """Raised when a task that already reached a terminal status is changed again."""


class VideoTask(Base):
    __tablename__ = "video_tasks"
    __table_args__ = (
        UniqueConstraint("batch_job_id", "batch_index", name="uq_video_tasks_batch_index"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    batch_job_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False)

    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str | None] = mapped_column(String(32), nullable=True)
    aspect_ratio: Mapped[str | None] = mapped_column(String(8), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reference_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSONType(), nullable=True)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="task_status", values_callable=lambda e: [m.value for m in e]),
        default=TaskStatus.PENDING,
        nullable=False,
        index=True,
    )
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    batch: Mapped["BatchJob"] = relationship("BatchJob", back_populates="tasks")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def mark_processing(self) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(f"Task {self.id} already {self.status.value}")
        self.status = TaskStatus.PROCESSING

    def mark_succeeded(self, video_url: str) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(f"Task {self.id} already {self.status.value}")
        if not video_url:
            raise ValueError("video_url is required")
        self.status = TaskStatus.SUCCEEDED
        self.video_url = video_url
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        if self.is_terminal:
            raise InvalidStateTransition(f"Task {self.id} already {self.status.value}")
        self.status = TaskStatus.FAILED
        self.error_message = error_message[:800]


from .batch import BatchJob  # noqa: E402
