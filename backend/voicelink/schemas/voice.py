from pydantic import BaseModel, ConfigDict, Field

from voicelink.providers.models import ProviderMetadata


class TokenRequest(BaseModel):
    """Call options sent by the widget when requesting a token."""

    model_config = ConfigDict(extra="ignore")

    metadata: dict | None = None
    user_name: str | None = Field(None, max_length=255)
    user_email: str | None = Field(None, max_length=255)
    page_url: str | None = Field(None, max_length=2048)
    connection_type: str | None = Field(None, max_length=20)


class ChatMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    session_id: str = Field(..., min_length=1, max_length=255)
    provider: str = "voice"
    history: list[dict] = []
    page_url: str | None = None


class ChatMessageResponse(BaseModel):
    success: bool = True
    response: str
    provider: str
    session_id: str


class ProviderSettingsUpdate(BaseModel):
    """Admin update of a provider's settings. Secrets are encrypted before storage."""

    is_enabled: bool | None = None
    agent_id: str | None = Field(None, max_length=255)
    options: dict = {}
    secrets: dict[str, str] = {}


class ProviderStatusResponse(BaseModel):
    provider: str
    metadata: ProviderMetadata
    missing_settings: list[str]


class ProviderListResponse(BaseModel):
    providers: list[ProviderMetadata]
    active_provider: str | None


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    code: str | None = None


class JobStatusResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    retry_count: int
    max_retries: int
    output_data: dict | None = None
    error_message: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
