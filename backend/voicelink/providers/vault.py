"""Credential vault for provider secrets at rest.

Secrets are encrypted with Fernet (AES-128-CBC + HMAC-SHA256). Key material
is versioned: every ciphertext is stored as ``v<version>:<fernet token>`` so
that adding a new key and switching ``current_version`` never invalidates
secrets written under an older key. Decryption always uses the key matching
the stored version and never falls back to another key or to an empty value.

Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from voicelink.providers.exceptions import DecryptionFailedError, ProviderNotConfiguredError

logger = logging.getLogger(__name__)

_VAULT = "vault"


class CredentialVault:
    """Encrypts and decrypts provider credentials with versioned Fernet keys."""

    def __init__(self, keys: dict[int, str], current_version: int) -> None:
        self._fernets: dict[int, Fernet] = {}
        for version, key in keys.items():
            try:
                self._fernets[int(version)] = Fernet(key.encode() if isinstance(key, str) else key)
            except (ValueError, TypeError) as exc:
                raise ValueError(f"Vault key version {version} is not a valid Fernet key") from exc
        if self._fernets and current_version not in self._fernets:
            raise ValueError(f"Current vault key version {current_version} has no key configured")
        self._current_version = current_version

    @classmethod
    def from_settings(cls) -> "CredentialVault":
        from voicelink.core.config import settings

        return cls(settings.VAULT_KEYS, settings.VAULT_CURRENT_KEY_VERSION)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    @property
    def current_version(self) -> int:
        return self._current_version

    @property
    def versions(self) -> list[int]:
        return sorted(self._fernets)

    def encrypt(self, plaintext: str) -> str:
        fernet = self._fernets.get(self._current_version)
        if fernet is None:
            raise ProviderNotConfiguredError(
                _VAULT, "No encryption key configured. Set VAULT_KEYS and VAULT_CURRENT_KEY_VERSION."
            )
        token = fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        return f"v{self._current_version}:{token}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored credential.

        Raises:
            DecryptionFailedError: If the ciphertext is malformed, names an
                unknown key version, or fails authentication.
        """
        version, token = self._split(ciphertext)
        fernet = self._fernets.get(version)
        if fernet is None:
            raise DecryptionFailedError(_VAULT, f"No key available for version {version}")
        try:
            return fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.error("Credential decryption failed for key version %d", version)
            raise DecryptionFailedError(_VAULT, "Stored credential could not be decrypted") from exc

    def key_version(self, ciphertext: str) -> int:
        version, _ = self._split(ciphertext)
        return version

    def needs_rotation(self, ciphertext: str) -> bool:
        return self.key_version(ciphertext) != self._current_version

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a credential under the current key version."""
        if not self.needs_rotation(ciphertext):
            return ciphertext
        return self.encrypt(self.decrypt(ciphertext))

    @staticmethod
    def _split(ciphertext: str) -> tuple[int, str]:
        if not ciphertext or not isinstance(ciphertext, str):
            raise DecryptionFailedError(_VAULT, "Empty credential")
        prefix, sep, token = ciphertext.partition(":")
        if not sep or not prefix.startswith("v") or not token:
            raise DecryptionFailedError(_VAULT, "Credential is missing its key version tag")
        try:
            version = int(prefix[1:])
        except ValueError as exc:
            raise DecryptionFailedError(_VAULT, "Credential has a malformed key version tag") from exc
        return version, token
