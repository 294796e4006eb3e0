from voicelink.providers.models import ErrorEvent


class ClientError(Exception):
    """Base exception for client-side voice errors."""


class AlreadyActiveError(ClientError):
    """Raised by start_call() when a call is already connecting or active."""


class SDKNotReadyError(ClientError):
    """Raised when the vendor SDK does not signal readiness in time."""


class ProviderLookupError(ClientError):
    """Raised when the enabled-provider response fails validation."""


class TokenRequestError(ClientError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class VoiceSDKError(ClientError):
    """Error raised by (or wrapped from) a vendor voice SDK."""

    def __init__(self, message: str, name: str = "SDKError") -> None:
        self.name = name
        super().__init__(message)


# Browser media error names -> (standard code, user-facing message)
_MEDIA_ERRORS: dict[str, tuple[str, str]] = {
    "NotAllowedError": (
        "microphone_permission_denied",
        "Microphone access was denied. Allow microphone access in your browser settings and try again.",
    ),
    "PermissionDeniedError": (
        "microphone_permission_denied",
        "Microphone access was denied. Allow microphone access in your browser settings and try again.",
    ),
    "NotFoundError": (
        "microphone_not_found",
        "No microphone was found. Connect a microphone and try again.",
    ),
    "DevicesNotFoundError": (
        "microphone_not_found",
        "No microphone was found. Connect a microphone and try again.",
    ),
    "NotReadableError": (
        "microphone_busy",
        "Your microphone is being used by another application. Close it and try again.",
    ),
    "TrackStartError": (
        "microphone_busy",
        "Your microphone is being used by another application. Close it and try again.",
    ),
}

_SDK_ERROR = ("sdk_error", "The voice service ran into a problem. Please try again in a moment.")


def _error_name(error) -> str:
    if isinstance(error, dict):
        return str(error.get("name") or "")
    return getattr(error, "name", None) or type(error).__name__


def _error_message(error) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return str(error)


def classify_error(error, call_id: str | None = None, default_code: str = "call_error") -> ErrorEvent:
    """Map a vendor SDK or media error to a user-actionable standard error.

    Unclassified errors keep their raw message under ``default_code``.
    """
    name = _error_name(error)
    if name in _MEDIA_ERRORS:
        code, message = _MEDIA_ERRORS[name]
    elif isinstance(error, VoiceSDKError) or name == "SDKError":
        code, message = _SDK_ERROR
    else:
        code, message = default_code, _error_message(error) or "Unknown error"
    return ErrorEvent(call_id=call_id, code=code, message=message)
