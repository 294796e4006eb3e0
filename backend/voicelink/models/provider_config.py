import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from voicelink.core.database import Base


class ProviderConfig(Base):
    """Admin settings for one voice provider.

    ``options`` holds non-secret fields. ``credentials_encrypted`` maps each
    secret field name to vault ciphertext (``v<version>:<token>``).
    """

    __tablename__ = "provider_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    agent_id: Mapped[str | None] = mapped_column(String(255))
    options: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    credentials_encrypted: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ProviderConfig {self.provider} (enabled={self.is_enabled})>"
