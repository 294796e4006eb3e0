import logging
import time
import uuid

from voicelink.providers.base import BaseVoiceProvider, UnrecognizedEventError
from voicelink.providers.exceptions import InvalidResponseError, ProviderNotConfiguredError
from voicelink.providers.models import (
    AccessToken,
    Capability,
    ConnectionTestResult,
    ErrorEvent,
    RawWebhookRequest,
    StandardEvent,
    TranscriptEvent,
    WebhookAuthMethod,
)
from voicelink.providers.webhook_auth import hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

_ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"

# Conversation tokens and signed URLs are valid for 15 minutes.
_TOKEN_TTL_SECONDS = 900
_SAMPLE_RATE = 16000

_CONNECTION_WEBRTC = "webrtc"
_CONNECTION_WEBSOCKET = "websocket"


def _parse_signature_header(header: str) -> tuple[str, str] | None:
    """Split ``t=<timestamp>,v0=<hex>`` into (timestamp, signature)."""
    parts = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    if "t" not in parts or "v0" not in parts:
        return None
    return parts["t"], parts["v0"]


def _format_transcript(turns: list) -> str:
    lines = []
    for turn in turns:
        message = turn.get("message")
        if message:
            lines.append(f"{turn.get('role', 'unknown')}: {message}")
    return "\n".join(lines)


class ElevenLabsProvider(BaseVoiceProvider):
    """Voice provider backed by ElevenLabs Conversational AI agents.

    Tokens come from the conversation token endpoint (WebRTC) or the
    signed URL endpoint (WebSocket). Post-call webhooks carry an
    ``ElevenLabs-Signature: t=<ts>,v0=<hex>`` header, HMAC-SHA256 over
    ``"<ts>.<body>"`` with the workspace webhook secret.
    """

    label = "ElevenLabs Conversational AI"
    secret_settings = ("api_key", "webhook_secret")
    sample_rate = _SAMPLE_RATE

    @property
    def name(self) -> str:
        return "elevenlabs"

    def required_settings(self) -> list[str]:
        return ["api_key", "agent_id"]

    def capabilities(self) -> set[Capability]:
        return super().capabilities() | {Capability.WEBHOOK_EVENTS}

    @property
    def webhook_auth_method(self) -> WebhookAuthMethod:
        return WebhookAuthMethod.HMAC

    def _auth_headers(self) -> dict:
        return {"xi-api-key": self._get_secret("api_key")}

    async def issue_token(self, options: dict) -> AccessToken:
        if not self.agent_id:
            raise ProviderNotConfiguredError(self.name, "Agent ID is not configured")

        connection_type = options.get("connection_type") or self._option("connection_type", _CONNECTION_WEBRTC)
        if connection_type == _CONNECTION_WEBSOCKET:
            path, field = "/convai/conversation/get-signed-url", "signed_url"
        else:
            connection_type = _CONNECTION_WEBRTC
            path, field = "/convai/conversation/token", "token"

        data = await self._request(
            "GET",
            f"{_ELEVENLABS_BASE_URL}{path}",
            headers=self._auth_headers(),
            params={"agent_id": self.agent_id},
        )
        if not isinstance(data, dict) or not data.get(field):
            raise InvalidResponseError(self.name, f"No {field} in response")

        return AccessToken(
            access_token=data[field],
            expires_in=_TOKEN_TTL_SECONDS,
            agent_id=self.agent_id,
            provider=self.name,
            sample_rate=self.sample_rate,
            connection_type=connection_type,
        )

    def verify_webhook_signature(self, request: RawWebhookRequest) -> bool:
        header = request.header("ElevenLabs-Signature")
        if not header:
            return False
        parsed = _parse_signature_header(header)
        if parsed is None:
            return False
        timestamp, signature = parsed

        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - sent_at) > self._context.webhook_tolerance_seconds:
            logger.warning("Rejecting %s webhook outside the replay window", self.name)
            return False

        try:
            secret = self._get_secret("webhook_secret")
        except ProviderNotConfiguredError:
            logger.warning("Cannot verify %s webhook: webhook secret not configured", self.name)
            return False

        signed = timestamp.encode("utf-8") + b"." + request.body
        return signatures_match(hmac_sha256_hex(secret, signed), signature)

    def _normalize_event(self, payload: dict) -> StandardEvent:
        event = payload.get("type")
        data = payload.get("data") or {}

        if event == "post_call_transcription":
            turns = data["transcript"]
            if not isinstance(turns, list):
                raise UnrecognizedEventError("transcript is not a list")
            return TranscriptEvent(
                call_id=data.get("conversation_id"),
                text=_format_transcript(turns),
                is_final=True,
                speaker="conversation",
            )
        if event == "call_initiation_failure":
            return ErrorEvent(
                call_id=data.get("conversation_id"),
                code="call_initiation_failure",
                message=data.get("failure_reason") or "Call initiation failed",
            )
        raise UnrecognizedEventError(f"unknown ElevenLabs event {event!r}")

    def generate_test_payload(self) -> dict:
        return {
            "type": "post_call_transcription",
            "event_timestamp": int(time.time()),
            "data": {
                "agent_id": self.agent_id,
                "conversation_id": f"test_conv_{uuid.uuid4().hex[:12]}",
                "transcript": [
                    {"role": "agent", "message": "Hello, how can I help you today?"},
                    {"role": "user", "message": "This is a test."},
                ],
            },
        }

    async def test_connection(self) -> ConnectionTestResult:
        if not self.agent_id:
            raise ProviderNotConfiguredError(self.name, "Agent ID is not configured")
        await self._request(
            "GET",
            f"{_ELEVENLABS_BASE_URL}/convai/agents/{self.agent_id}",
            headers=self._auth_headers(),
        )
        return ConnectionTestResult(success=True, message="Connected to ElevenLabs")
