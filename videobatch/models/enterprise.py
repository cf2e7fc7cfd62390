import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .types import GUID


class EnterpriseApiKey(Base):
    __tablename__ = "enterprise_api_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="default")
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    rate_limit_per_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Flat per-video price for this key; falls back to the configured enterprise rate
    cost_per_video: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    usage: Mapped[list["EnterpriseApiUsage"]] = relationship(
        "EnterpriseApiUsage", back_populates="api_key"
    )

    def __repr__(self) -> str:
        return f"<EnterpriseApiKey {self.name}>"


class EnterpriseApiUsage(Base):
    __tablename__ = "enterprise_api_usage"
    __table_args__ = (
        UniqueConstraint("api_key_id", "request_id", name="uq_enterprise_usage_request"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), primary_key=True, default=uuid.uuid4
    )
    api_key_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("enterprise_api_keys.id", ondelete="CASCADE"), nullable=False
    )
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False)
    # UTC minute, ISO formatted, e.g. 2026-01-01T12:34:00.000Z
    minute_bucket: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    batch_job_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    api_key: Mapped["EnterpriseApiKey"] = relationship("EnterpriseApiKey", back_populates="usage")
