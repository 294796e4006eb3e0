class ProviderError(Exception):
    """Base exception for all voice provider errors.

    Every subclass carries a stable ``code`` for API responses, the HTTP
    ``status_code`` it maps to, and whether the caller may retry.
    """

    code = "provider_error"
    status_code = 502
    retryable = False

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


class ProviderNotConfiguredError(ProviderError):
    """Raised when a provider is disabled or missing required settings."""

    code = "not_configured"
    status_code = 400


class UpstreamFailureError(ProviderError):
    """Raised when the vendor API errors out or cannot be reached."""

    code = "upstream_failure"
    status_code = 502

    def __init__(
        self,
        provider: str,
        message: str,
        upstream_status: int | None = None,
        retryable: bool = True,
    ) -> None:
        self.upstream_status = upstream_status
        self.retryable = retryable
        super().__init__(provider, message)


class InvalidResponseError(ProviderError):
    """Raised when the vendor returns unparseable or unexpected data."""

    code = "invalid_response"
    status_code = 502


class WebhookUnverifiedError(ProviderError):
    """Raised when an inbound webhook fails signature verification."""

    code = "unverified"
    status_code = 401


class UnknownProviderError(ProviderError):
    """Raised when a provider identity is not registered."""

    code = "unknown_provider"
    status_code = 404

    def __init__(self, provider: str) -> None:
        super().__init__(provider, f"Voice provider '{provider}' is not registered")


class NotSupportedError(ProviderError):
    """Raised when a provider does not implement a capability."""

    code = "not_supported"
    status_code = 501

    def __init__(self, provider: str, capability: str) -> None:
        self.capability = capability
        super().__init__(provider, f"Capability '{capability}' is not supported")


class DecryptionFailedError(ProviderError):
    """Raised when a stored credential cannot be decrypted."""

    code = "decryption_failed"
    status_code = 500
