import abc
import hashlib
import logging
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from voicelink.providers.exceptions import (
    DecryptionFailedError,
    InvalidResponseError,
    NotSupportedError,
    ProviderNotConfiguredError,
    UpstreamFailureError,
)
from voicelink.providers.models import (
    AccessToken,
    Capability,
    ConnectionTestResult,
    ErrorEvent,
    ProviderMetadata,
    RawWebhookRequest,
    StandardEvent,
    TextReply,
    WebhookAuthMethod,
)

if TYPE_CHECKING:
    from voicelink.providers.context import ProviderContext

logger = logging.getLogger(__name__)

# Request ids are stored in a 64-char column; longer header values are hashed.
_MAX_REQUEST_ID_LENGTH = 64

# Keys that must never appear in anything handed to a client.
SECRET_KEY_MARKERS = ("api_key", "secret", "password", "credential")


class UnrecognizedEventError(ValueError):
    """Raised by adapters when a webhook payload has no standard mapping."""


class BaseVoiceProvider(abc.ABC):
    """Abstract base class for voice provider adapters.

    An adapter is bound to one provider identity and one settings dict.
    Secret settings (listed in ``secret_settings``) are held as vault
    ciphertext and decrypted on demand inside the operation that needs them.

    Optional operations have documented defaults:

    - ``send_text_message`` raises NotSupportedError.
    - ``capabilities`` returns voice input, voice output and transcription.
    - ``validate_token`` accepts any non-empty token.
    - ``webhook_auth_method`` is ``none``.
    """

    label: str = ""
    secret_settings: tuple[str, ...] = ()
    sample_rate: int | None = None

    def __init__(self, config: dict, context: "ProviderContext") -> None:
        self._config = dict(config)
        self._context = context

    # -- identity / configuration ------------------------------------------

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identity string (registry key)."""

    @abc.abstractmethod
    def required_settings(self) -> list[str]:
        """Ordered list of settings that must be present for is_configured()."""

    @property
    def agent_id(self) -> str:
        return self._config.get("agent_id") or ""

    def is_enabled(self) -> bool:
        return bool(self._config.get("enabled", False))

    def missing_settings(self) -> list[str]:
        return [field for field in self.required_settings() if not self._config.get(field)]

    def is_configured(self) -> bool:
        return not self.missing_settings()

    def capabilities(self) -> set[Capability]:
        return {Capability.VOICE_INPUT, Capability.VOICE_OUTPUT, Capability.TRANSCRIPTION}

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities()

    @property
    def webhook_auth_method(self) -> WebhookAuthMethod:
        return WebhookAuthMethod.NONE

    # -- tokens ------------------------------------------------------------

    @abc.abstractmethod
    async def issue_token(self, options: dict) -> AccessToken:
        """Mint a short-lived access token for one call attempt.

        Raises:
            ProviderNotConfiguredError: Required settings are missing.
            UpstreamFailureError: The vendor API failed or timed out.
            InvalidResponseError: The vendor response lacked required fields.
        """

    def validate_token(self, token: str) -> bool:
        return bool(token)

    # -- webhooks ----------------------------------------------------------

    @abc.abstractmethod
    def verify_webhook_signature(self, request: RawWebhookRequest) -> bool:
        """Return True if the request carries a valid signature for this provider."""

    @abc.abstractmethod
    def _normalize_event(self, payload: dict) -> StandardEvent:
        """Map a vendor payload to a standard event.

        Raise UnrecognizedEventError (or let KeyError/TypeError escape) for
        payloads with no mapping; normalize_webhook_event turns those into
        an ``unrecognized_event`` error event.
        """

    def normalize_webhook_event(self, payload: Any) -> StandardEvent:
        """Normalize a webhook payload. Never raises."""
        if not isinstance(payload, dict):
            reason = f"payload is {type(payload).__name__}, expected object"
            logger.warning("Dropping %s webhook: %s", self.name, reason)
            return ErrorEvent(code="unrecognized_event", message=reason)
        try:
            return self._normalize_event(payload)
        except (UnrecognizedEventError, KeyError, TypeError, ValueError, AttributeError, ValidationError) as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning(
                "Dropping %s webhook event %r: %s",
                self.name,
                self.webhook_event_type(payload),
                reason,
            )
            return ErrorEvent(code="unrecognized_event", message=reason)

    def webhook_event_type(self, payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event") or payload.get("type")
        return str(event) if event is not None else None

    def extract_request_id(self, request: RawWebhookRequest) -> str:
        """Idempotency key: X-Request-ID, then X-Webhook-ID, else a body hash."""
        request_id = request.header("X-Request-ID") or request.header("X-Webhook-ID")
        if request_id:
            request_id = request_id.strip()
        if not request_id:
            return hashlib.sha256(request.body).hexdigest()
        if len(request_id) > _MAX_REQUEST_ID_LENGTH:
            return hashlib.sha256(request_id.encode("utf-8")).hexdigest()
        return request_id

    def generate_test_payload(self) -> dict:
        return {"event": "test", "agent_id": self.agent_id}

    # -- text chat ---------------------------------------------------------

    async def send_text_message(self, message: str, context: dict) -> TextReply:
        raise NotSupportedError(self.name, Capability.TEXT_CHAT.value)

    # -- diagnostics -------------------------------------------------------

    @abc.abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Make an authenticated call to the vendor to confirm credentials."""

    def get_client_config(self) -> dict:
        """Public, secret-free configuration handed to the browser widget."""
        return {
            "provider": self.name,
            "agentId": self.agent_id,
            "isPublic": True,
            "sampleRate": self.sample_rate,
            "enabled": self.is_enabled(),
        }

    def metadata(self) -> ProviderMetadata:
        return ProviderMetadata(
            name=self.name,
            label=self.label or self.name,
            capabilities=sorted(self.capabilities(), key=lambda c: c.value),
            required_settings=self.required_settings(),
            webhook_auth_method=self.webhook_auth_method,
            enabled=self.is_enabled(),
            configured=self.is_configured(),
        )

    # -- helpers -----------------------------------------------------------

    def _option(self, key: str, default: Any = None) -> Any:
        value = self._config.get(key)
        return default if value in (None, "") else value

    def _get_secret(self, field: str) -> str:
        """Decrypt a secret setting. The plaintext must not be stored on self."""
        ciphertext = self._config.get(field)
        if not ciphertext:
            raise ProviderNotConfiguredError(self.name, f"Setting '{field}' is not configured")
        try:
            return self._context.vault.decrypt(ciphertext)
        except DecryptionFailedError as exc:
            raise DecryptionFailedError(self.name, f"Could not decrypt '{field}': {exc.message}") from exc

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict | None = None,
        json: Any = None,
        params: dict | None = None,
    ) -> httpx.Response:
        try:
            async with self._context.http_client() as client:
                return await client.request(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as exc:
            logger.error("%s request to %s timed out", self.name, url)
            raise UpstreamFailureError(self.name, f"Request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            logger.error("%s request to %s failed: %s", self.name, url, exc)
            raise UpstreamFailureError(self.name, f"Request failed: {exc}") from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict | None = None,
        json: Any = None,
        params: dict | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            UpstreamFailureError: Transport error or non-2xx status. Retryable
                for 429 and 5xx only.
            InvalidResponseError: The body is not JSON.
        """
        response = await self._send(method, url, headers=headers, json=json, params=params)
        if not response.is_success:
            status = response.status_code
            logger.error("%s API returned %d: %s", self.name, status, response.text[:500])
            raise UpstreamFailureError(
                self.name,
                f"API request failed with status {status}",
                upstream_status=status,
                retryable=status == 429 or status >= 500,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidResponseError(self.name, "Response body is not valid JSON") from exc
