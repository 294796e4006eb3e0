import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    USER_SPEAKING = "user_speaking"
    AGENT_SPEAKING = "agent_speaking"
    TRANSCRIPT = "transcript"
    AGENT_RESPONSE = "agent_response"
    ERROR = "error"


class Capability(str, Enum):
    VOICE_INPUT = "voice_input"
    VOICE_OUTPUT = "voice_output"
    TRANSCRIPTION = "transcription"
    TEXT_CHAT = "text_chat"
    TELEPHONY = "telephony"
    POST_CALL_ANALYSIS = "post_call_analysis"
    WEBHOOK_EVENTS = "webhook_events"


class WebhookAuthMethod(str, Enum):
    HMAC = "hmac"
    API_KEY = "api_key"
    BASIC = "basic"
    NONE = "none"


# ---------------------------------------------------------------------------
# Standard events
# ---------------------------------------------------------------------------


class _BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    call_id: str | None = None


class ConnectedEvent(_BaseEvent):
    type: Literal["connected"] = "connected"


class DisconnectedEvent(_BaseEvent):
    type: Literal["disconnected"] = "disconnected"
    reason: str | None = None
    duration_ms: int | None = None


class UserSpeakingEvent(_BaseEvent):
    type: Literal["user_speaking"] = "user_speaking"
    is_speaking: bool


class AgentSpeakingEvent(_BaseEvent):
    type: Literal["agent_speaking"] = "agent_speaking"
    is_speaking: bool


class TranscriptEvent(_BaseEvent):
    type: Literal["transcript"] = "transcript"
    text: str
    is_final: bool = True
    speaker: str


class AgentResponseEvent(_BaseEvent):
    type: Literal["agent_response"] = "agent_response"
    text: str


class ErrorEvent(_BaseEvent):
    type: Literal["error"] = "error"
    code: str
    message: str


StandardEvent = Annotated[
    Union[
        ConnectedEvent,
        DisconnectedEvent,
        UserSpeakingEvent,
        AgentSpeakingEvent,
        TranscriptEvent,
        AgentResponseEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Tokens, webhooks, metadata
# ---------------------------------------------------------------------------


class AccessToken(BaseModel):
    """Short-lived bearer token scoped to a single call attempt. Never persisted."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(..., min_length=1)
    expires_in: int = Field(..., gt=0)
    agent_id: str
    call_id: str | None = None
    provider: str
    sample_rate: int | None = None
    connection_type: str | None = None


class RawWebhookRequest(BaseModel):
    """An inbound webhook as received: headers plus the untouched body bytes."""

    headers: dict[str, str] = {}
    body: bytes = b""

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json_body(self) -> Any:
        """Parse the body as JSON, returning None when it is not valid JSON."""
        try:
            return json.loads(self.body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None


class TextReply(BaseModel):
    response: str
    provider: str
    session_id: str
    chat_id: str | None = None


class ConnectionTestResult(BaseModel):
    success: bool
    message: str


class ProviderMetadata(BaseModel):
    name: str
    label: str
    capabilities: list[Capability]
    required_settings: list[str]
    webhook_auth_method: WebhookAuthMethod
    enabled: bool
    configured: bool
