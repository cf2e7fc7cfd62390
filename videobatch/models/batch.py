import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .types import GUID


def _values(enum_cls):
    return [member.value for member in enum_cls]


class BatchStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    FINALIZED = "finalized"
    REFUNDED = "refunded"


class BatchSource(str, enum.Enum):
    CONSUMER = "consumer"
    ENTERPRISE = "enterprise"


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source: Mapped[BatchSource] = mapped_column(
        Enum(BatchSource, name="batch_source", values_callable=_values),
        default=BatchSource.CONSUMER,
        nullable=False,
    )
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, name="batch_status", values_callable=_values),
        default=BatchStatus.QUEUED,
        nullable=False,
        index=True,
    )

    total_count: Mapped[int] = mapped_column(Integer, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    cost_per_video: Mapped[int] = mapped_column(Integer, nullable=False)
    frozen_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_spent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    settlement_status: Mapped[SettlementStatus] = mapped_column(
        Enum(SettlementStatus, name="settlement_status", values_callable=_values),
        default=SettlementStatus.PENDING,
        nullable=False,
    )

    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    enqueued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tasks: Mapped[list["VideoTask"]] = relationship(
        "VideoTask", back_populates="batch", order_by="VideoTask.batch_index"
    )

    @property
    def required_credits(self) -> int:
        return self.total_count * self.cost_per_video

    def __repr__(self) -> str:
        return f"<BatchJob {self.id} {self.status.value}>"


from .task import VideoTask  # noqa: E402
