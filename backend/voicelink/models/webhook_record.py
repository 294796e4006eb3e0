import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from voicelink.core.database import Base


class WebhookRecord(Base):
    """Audit row for one inbound webhook delivery.

    ``request_id`` is the idempotency key; the unique constraint is what
    makes concurrent deliveries of the same id safe across server instances.
    ``claimed_at`` marks when a worker took ownership of dispatching it.
    """

    __tablename__ = "webhook_records"
    __table_args__ = (
        Index("ix_webhook_records_provider", "provider"),
        Index("ix_webhook_records_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    request_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(100))
    payload: Mapped[dict | None] = mapped_column(JSONB)
    auth_method: Mapped[str] = mapped_column(String(20), nullable=False)
    verified: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    processed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    response_status: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<WebhookRecord {self.request_id} ({self.provider}, processed={self.processed})>"
