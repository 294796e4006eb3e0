import logging
from datetime import datetime, timezone

from voicelink.providers.adapters.retell import RetellProvider
from voicelink.providers.exceptions import (
    InvalidResponseError,
    ProviderNotConfiguredError,
    UpstreamFailureError,
)
from voicelink.providers.models import (
    AccessToken,
    Capability,
    ConnectionTestResult,
    RawWebhookRequest,
    TextReply,
    WebhookAuthMethod,
)
from voicelink.providers.webhook_auth import WebhookAuthenticator

logger = logging.getLogger(__name__)

_DEFAULT_VOICE_ENDPOINT = "/webhook/wordpress-retell-create-call"
_DEFAULT_SESSION_ENDPOINT = "/webhook/retell-create-chat-session"
_DEFAULT_MESSAGE_ENDPOINT = "/webhook/retell-send-message"


def _join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class N8nRetellProvider(RetellProvider):
    """Retell AI proxied through n8n workflows.

    The browser still joins calls with the Retell web SDK and webhook
    payloads are Retell-shaped, so normalization is inherited. Token
    issuance and text chat go through n8n instead, and webhook auth is
    whatever the admin configured (api_key, hmac, basic or none).
    """

    label = "Retell AI via n8n"
    secret_settings = ("webhook_api_key", "webhook_secret", "webhook_basic_password")

    @property
    def name(self) -> str:
        return "n8n-retell"

    def required_settings(self) -> list[str]:
        return ["n8n_base_url", "agent_id"]

    def capabilities(self) -> set[Capability]:
        return {
            Capability.VOICE_INPUT,
            Capability.VOICE_OUTPUT,
            Capability.TRANSCRIPTION,
            Capability.TEXT_CHAT,
            Capability.WEBHOOK_EVENTS,
        }

    @property
    def webhook_auth_method(self) -> WebhookAuthMethod:
        return WebhookAuthMethod(self._option("webhook_auth_method", WebhookAuthMethod.API_KEY.value))

    def _url(self, setting: str, default: str) -> str:
        base_url = self._option("n8n_base_url")
        if not base_url:
            raise ProviderNotConfiguredError(self.name, "n8n base URL is not configured")
        return _join_url(base_url, self._option(setting, default))

    def _require_success(self, data, what: str) -> dict:
        if not isinstance(data, dict) or data.get("success") is not True:
            logger.error("n8n %s response missing success flag", what)
            raise InvalidResponseError(self.name, f"n8n {what} failed: success field missing or false")
        return data

    async def issue_token(self, options: dict) -> AccessToken:
        if not self.agent_id:
            raise ProviderNotConfiguredError(self.name, "Retell agent ID is not configured")

        body = {
            "user_name": options.get("user_name") or "Guest",
            "user_email": options.get("user_email") or "",
            "agent_id": self.agent_id,
            "page_url": options.get("page_url") or "",
        }
        data = await self._request(
            "POST", self._url("n8n_voice_endpoint", _DEFAULT_VOICE_ENDPOINT), json=body
        )
        return self._token_from_response(self._require_success(data, "create-call"))

    def verify_webhook_signature(self, request: RawWebhookRequest) -> bool:
        authenticator = WebhookAuthenticator(
            self.webhook_auth_method,
            self._get_secret,
            basic_username=self._option("webhook_basic_username", ""),
        )
        return authenticator.verify(request)

    async def test_connection(self) -> ConnectionTestResult:
        url = self._url("n8n_test_path", "/")
        response = await self._send("GET", url)
        # n8n's root usually answers 404; only a server error counts as down.
        if response.status_code >= 500:
            raise UpstreamFailureError(
                self.name,
                f"n8n server error (HTTP {response.status_code})",
                upstream_status=response.status_code,
            )
        return ConnectionTestResult(success=True, message="n8n is reachable")

    # -- text chat ---------------------------------------------------------

    async def send_text_message(self, message: str, context: dict) -> TextReply:
        session_id = context.get("session_id") or ""
        if not session_id:
            raise ValueError("session_id is required for text chat")
        if self._option("n8n_text_mode", "simple") == "session":
            return await self._send_session_message(message, session_id)
        return await self._send_simple_message(message, session_id, context)

    async def _send_simple_message(self, message: str, session_id: str, context: dict) -> TextReply:
        webhook_url = self._option("n8n_text_webhook_url")
        if not webhook_url:
            raise ProviderNotConfiguredError(self.name, "Text chat webhook URL is not configured")

        body = {
            "message": message,
            "session_id": session_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": {
                "history": context.get("history") or [],
                "page_url": context.get("page_url") or "",
            },
        }
        data = await self._request("POST", webhook_url, json=body)
        reply = (data.get("response") or data.get("message")) if isinstance(data, dict) else None
        if not reply:
            raise InvalidResponseError(self.name, "n8n text webhook returned no response")
        return TextReply(response=reply, provider=self.name, session_id=session_id)

    async def _send_session_message(self, message: str, session_id: str) -> TextReply:
        chat_id = await self._ensure_chat(session_id)
        data = await self._request(
            "POST",
            self._url("n8n_text_message_endpoint", _DEFAULT_MESSAGE_ENDPOINT),
            json={"chat_id": chat_id, "message": message},
        )
        data = self._require_success(data, "send-message")
        reply = data.get("response")
        if not reply:
            raise InvalidResponseError(self.name, "n8n send-message returned no response")
        return TextReply(response=reply, provider=self.name, session_id=session_id, chat_id=chat_id)

    async def _ensure_chat(self, session_id: str) -> str:
        key = f"{self.name}:{session_id}"
        chat_id = self._context.chat_sessions.get(key)
        if chat_id:
            return chat_id

        chat_agent_id = self._option("chat_agent_id", self.agent_id)
        data = await self._request(
            "POST",
            self._url("n8n_text_session_endpoint", _DEFAULT_SESSION_ENDPOINT),
            json={"agent_id": chat_agent_id, "user_name": "Guest", "user_email": ""},
        )
        data = self._require_success(data, "create-chat-session")
        chat_id = data.get("chat_id")
        if not chat_id:
            raise InvalidResponseError(self.name, "n8n create-chat-session returned no chat_id")

        self._context.chat_sessions.put(key, chat_id)
        logger.info("Created n8n chat session %s for session %s", chat_id, session_id)
        return chat_id
