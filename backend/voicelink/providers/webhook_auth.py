import base64
import binascii
import hashlib
import hmac
import logging
from typing import Callable

from voicelink.providers.exceptions import ProviderNotConfiguredError
from voicelink.providers.models import RawWebhookRequest, WebhookAuthMethod

logger = logging.getLogger(__name__)


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str) -> bool:
    """Constant-time comparison of two hex signatures."""
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("ascii", "replace"))


class WebhookAuthenticator:
    """Verifies webhooks for providers with an admin-selected auth method.

    Supported methods:

    - ``api_key``: ``X-API-Key`` header equals the stored key.
    - ``hmac``: ``X-Webhook-Signature`` is hex HMAC-SHA256 of the raw body,
      or ``X-Hub-Signature-256`` in ``sha256=<hex>`` form.
    - ``basic``: ``Authorization: Basic`` with the stored username/password.
    - ``none``: every request is accepted.

    ``get_secret`` resolves a secret setting name to plaintext. A secret that
    is not configured makes verification fail rather than pass.
    """

    def __init__(
        self,
        method: WebhookAuthMethod,
        get_secret: Callable[[str], str],
        basic_username: str = "",
    ) -> None:
        self.method = method
        self._get_secret = get_secret
        self._basic_username = basic_username

    def verify(self, request: RawWebhookRequest) -> bool:
        if self.method == WebhookAuthMethod.NONE:
            return True
        try:
            if self.method == WebhookAuthMethod.API_KEY:
                return self._verify_api_key(request)
            if self.method == WebhookAuthMethod.HMAC:
                return self._verify_hmac(request)
            if self.method == WebhookAuthMethod.BASIC:
                return self._verify_basic(request)
        except ProviderNotConfiguredError as exc:
            logger.warning("Webhook auth method %s cannot verify: %s", self.method.value, exc)
            return False
        return False

    def _verify_api_key(self, request: RawWebhookRequest) -> bool:
        provided = request.header("X-API-Key")
        if not provided:
            return False
        expected = self._get_secret("webhook_api_key")
        return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))

    def _verify_hmac(self, request: RawWebhookRequest) -> bool:
        provided = request.header("X-Webhook-Signature")
        if not provided:
            provided = request.header("X-Hub-Signature-256")
            if provided and provided.startswith("sha256="):
                provided = provided[len("sha256="):]
        if not provided:
            return False
        expected = hmac_sha256_hex(self._get_secret("webhook_secret"), request.body)
        return signatures_match(expected, provided)

    def _verify_basic(self, request: RawWebhookRequest) -> bool:
        header = request.header("Authorization")
        if not header or not header.startswith("Basic "):
            return False
        try:
            decoded = base64.b64decode(header[len("Basic "):], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return False
        username, _, password = decoded.partition(":")
        if not username or not password:
            return False
        if not self._basic_username:
            raise ProviderNotConfiguredError("webhook", "Basic auth username is not configured")
        stored_password = self._get_secret("webhook_basic_password")
        username_ok = hmac.compare_digest(self._basic_username.encode("utf-8"), username.encode("utf-8"))
        password_ok = hmac.compare_digest(stored_password.encode("utf-8"), password.encode("utf-8"))
        return username_ok and password_ok
