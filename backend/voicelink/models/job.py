import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from voicelink.core.database import Base

JOB_TYPES = ("transcribe", "tts", "process_media", "webhook_callback")
JOB_STATUSES = ("pending", "processing", "completed", "failed")


class Job(Base):
    """Asynchronous work item with bounded retries.

    A job is terminal once ``completed``, or ``failed`` with
    ``retry_count == max_retries``. Failed attempts below the bound go back
    to ``pending`` with ``next_attempt_at`` pushed out.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_jobs_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    job_type: Mapped[str] = mapped_column(
        Enum(*JOB_TYPES, name="job_type"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        Enum(*JOB_STATUSES, name="job_status"),
        default="pending",
        server_default="pending",
        nullable=False,
    )
    session_id: Mapped[str | None] = mapped_column(String(255))
    input_data: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    output_data: Mapped[dict | None] = mapped_column(JSONB)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, default=3, server_default="3", nullable=False
    )
    callback_url: Mapped[str | None] = mapped_column(String(2048))
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<Job {self.job_id} ({self.job_type}, {self.status})>"
