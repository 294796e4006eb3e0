import logging
import uuid

from voicelink.providers.base import BaseVoiceProvider, UnrecognizedEventError
from voicelink.providers.exceptions import InvalidResponseError, ProviderNotConfiguredError
from voicelink.providers.models import (
    AccessToken,
    Capability,
    ConnectedEvent,
    ConnectionTestResult,
    DisconnectedEvent,
    RawWebhookRequest,
    StandardEvent,
    TextReply,
    TranscriptEvent,
    WebhookAuthMethod,
)
from voicelink.providers.webhook_auth import hmac_sha256_hex, signatures_match

logger = logging.getLogger(__name__)

_RETELL_BASE_URL = "https://api.retellai.com"

# Retell web call access tokens must be used to join within 30 seconds.
_TOKEN_TTL_SECONDS = 30
_SAMPLE_RATE = 24000


def _duration_ms(call: dict) -> int | None:
    if call.get("duration_ms") is not None:
        return int(call["duration_ms"])
    start, end = call.get("start_timestamp"), call.get("end_timestamp")
    if start is not None and end is not None:
        return int(end) - int(start)
    if call.get("call_duration") is not None:
        return int(float(call["call_duration"]) * 1000)
    return None


class RetellProvider(BaseVoiceProvider):
    """Voice provider backed by Retell AI web calls.

    Tokens come from ``POST /v2/create-web-call``. Webhooks are signed with
    ``x-retell-signature``: hex HMAC-SHA256 of the raw body keyed with the
    API key. Text chat goes through Retell's chat API, with one vendor chat
    per widget session.
    """

    label = "Retell AI"
    secret_settings = ("api_key",)
    sample_rate = _SAMPLE_RATE

    @property
    def name(self) -> str:
        return "retell"

    def required_settings(self) -> list[str]:
        return ["api_key", "agent_id"]

    def capabilities(self) -> set[Capability]:
        return super().capabilities() | {
            Capability.TEXT_CHAT,
            Capability.TELEPHONY,
            Capability.POST_CALL_ANALYSIS,
            Capability.WEBHOOK_EVENTS,
        }

    @property
    def webhook_auth_method(self) -> WebhookAuthMethod:
        return WebhookAuthMethod.HMAC

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self._get_secret('api_key')}"}

    async def issue_token(self, options: dict) -> AccessToken:
        if not self.agent_id:
            raise ProviderNotConfiguredError(self.name, "Agent ID is not configured")

        body: dict = {"agent_id": self.agent_id}
        if options.get("metadata"):
            body["metadata"] = options["metadata"]

        data = await self._request(
            "POST",
            f"{_RETELL_BASE_URL}/v2/create-web-call",
            headers=self._auth_headers(),
            json=body,
        )
        return self._token_from_response(data)

    def _token_from_response(self, data) -> AccessToken:
        if not isinstance(data, dict) or not data.get("access_token"):
            raise InvalidResponseError(self.name, "No access token in response")
        if not data.get("call_id"):
            raise InvalidResponseError(self.name, "No call ID in response")
        return AccessToken(
            access_token=data["access_token"],
            expires_in=_TOKEN_TTL_SECONDS,
            agent_id=self.agent_id,
            call_id=data["call_id"],
            provider=self.name,
            sample_rate=self.sample_rate,
        )

    def verify_webhook_signature(self, request: RawWebhookRequest) -> bool:
        signature = request.header("x-retell-signature")
        if not signature:
            return False
        try:
            api_key = self._get_secret("api_key")
        except ProviderNotConfiguredError:
            logger.warning("Cannot verify %s webhook: API key not configured", self.name)
            return False
        return signatures_match(hmac_sha256_hex(api_key, request.body), signature)

    def _normalize_event(self, payload: dict) -> StandardEvent:
        event = payload.get("event")
        # Retell nests call fields under "call"; older payloads are flat.
        call = payload.get("call") if isinstance(payload.get("call"), dict) else payload
        call_id = call.get("call_id")

        if event == "call_started":
            return ConnectedEvent(call_id=call_id)
        if event == "call_ended":
            return DisconnectedEvent(
                call_id=call_id,
                reason=call.get("disconnection_reason") or call.get("end_reason"),
                duration_ms=_duration_ms(call),
            )
        if event == "call_analyzed":
            analysis = call.get("call_analysis") or {}
            text = call.get("transcript") or analysis.get("call_summary") or ""
            return TranscriptEvent(call_id=call_id, text=text, is_final=True, speaker="conversation")
        raise UnrecognizedEventError(f"unknown Retell event {event!r}")

    def generate_test_payload(self) -> dict:
        return {
            "event": "call_started",
            "call": {
                "call_id": f"test_call_{uuid.uuid4().hex[:12]}",
                "agent_id": self.agent_id,
                "call_status": "ongoing",
            },
        }

    async def test_connection(self) -> ConnectionTestResult:
        await self._request("GET", f"{_RETELL_BASE_URL}/list-agents", headers=self._auth_headers())
        return ConnectionTestResult(success=True, message="Connected to Retell AI")

    # -- text chat ---------------------------------------------------------

    async def send_text_message(self, message: str, context: dict) -> TextReply:
        session_id = context.get("session_id") or ""
        if not session_id:
            raise ValueError("session_id is required for text chat")
        chat_id = await self._ensure_chat(session_id)

        data = await self._request(
            "POST",
            f"{_RETELL_BASE_URL}/create-chat-completion",
            headers=self._auth_headers(),
            json={"chat_id": chat_id, "content": message},
        )
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            raise InvalidResponseError(self.name, "Chat completion returned no messages")

        reply = None
        for item in reversed(messages):
            if isinstance(item, dict) and item.get("role") == "agent" and item.get("content"):
                reply = item["content"]
                break
        if reply is None:
            raise InvalidResponseError(self.name, "No agent reply in chat completion")

        return TextReply(response=reply, provider=self.name, session_id=session_id, chat_id=chat_id)

    async def _ensure_chat(self, session_id: str) -> str:
        key = f"{self.name}:{session_id}"
        chat_id = self._context.chat_sessions.get(key)
        if chat_id:
            return chat_id

        chat_agent_id = self._option("chat_agent_id", self.agent_id)
        if not chat_agent_id:
            raise ProviderNotConfiguredError(self.name, "Chat agent ID is not configured")

        data = await self._request(
            "POST",
            f"{_RETELL_BASE_URL}/create-chat",
            headers=self._auth_headers(),
            json={"agent_id": chat_agent_id},
        )
        chat_id = data.get("chat_id") if isinstance(data, dict) else None
        if not chat_id:
            raise InvalidResponseError(self.name, "No chat ID in create-chat response")

        self._context.chat_sessions.put(key, chat_id)
        logger.info("Created %s chat %s for session %s", self.name, chat_id, session_id)
        return chat_id
