import asyncio
from typing import Any, Callable, Protocol

from voicelink.client.errors import SDKNotReadyError


class VoiceSDK(Protocol):
    """What a call session needs from a vendor voice SDK client."""

    def on(self, event: str, handler: Callable[[Any], None]) -> None: ...

    async def start_call(self, access_token: str, **options: Any) -> None: ...

    async def stop_call(self) -> None: ...


class SDKReadiness:
    """One-shot readiness signal for a late-loading vendor SDK.

    The host resolves it once with the SDK client; callers await ``wait``
    with a bounded timeout instead of polling.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future | None = None
        self._value: VoiceSDK | None = None
        self._error: BaseException | None = None

    @property
    def is_ready(self) -> bool:
        return self._value is not None

    def _get_future(self) -> asyncio.Future:
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            if self._value is not None:
                self._future.set_result(self._value)
            elif self._error is not None:
                self._future.set_exception(self._error)
        return self._future

    def set_ready(self, sdk: VoiceSDK) -> None:
        if self._value is not None or self._error is not None:
            return
        self._value = sdk
        if self._future is not None and not self._future.done():
            self._future.set_result(sdk)

    def set_failed(self, error: BaseException) -> None:
        if self._value is not None or self._error is not None:
            return
        self._error = error
        if self._future is not None and not self._future.done():
            self._future.set_exception(error)

    async def wait(self, timeout: float | None = None) -> VoiceSDK:
        if self._value is not None:
            return self._value
        if timeout is None:
            from voicelink.core.config import settings

            timeout = settings.CLIENT_SDK_READY_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(asyncio.shield(self._get_future()), timeout)
        except asyncio.TimeoutError as exc:
            raise SDKNotReadyError(f"Voice SDK was not ready after {timeout:g}s") from exc
