import asyncio
import functools
import logging
import uuid
from enum import Enum
from typing import Any

from voicelink.client.errors import AlreadyActiveError, classify_error
from voicelink.client.events import EventEmitter, Listener
from voicelink.client.sdk import SDKReadiness, VoiceSDK
from voicelink.client.tokens import TokenClient
from voicelink.providers.models import (
    AgentResponseEvent,
    AgentSpeakingEvent,
    ConnectedEvent,
    DisconnectedEvent,
    ErrorEvent,
    EventType,
    StandardEvent,
    TranscriptEvent,
    UserSpeakingEvent,
)

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"
    ERROR = "error"


_LIVE_STATES = (ConnectionState.CONNECTING, ConnectionState.ACTIVE)


class CallSession:
    """Drives one live call through idle -> connecting -> active -> ending -> ended.

    Vendor SDK events are translated by subclasses into standard events and
    re-emitted to UI listeners. Each ``start_call`` gets an attempt id; a
    token or SDK that resolves after the attempt was ended is ignored.
    After ``ended`` or ``error`` the UI calls ``acknowledge()`` to return
    the session to ``idle``.
    """

    sdk_name: str = ""
    sdk_events: tuple[str, ...] = ()

    def __init__(
        self,
        config: dict,
        token_client: TokenClient,
        sdk_ready: SDKReadiness,
        emitter: EventEmitter | None = None,
        sdk_timeout: float | None = None,
    ) -> None:
        self.config = dict(config)
        self._token_client = token_client
        self._sdk_ready = sdk_ready
        self._emitter = emitter or EventEmitter()
        self._sdk_timeout = sdk_timeout
        self._state = ConnectionState.IDLE
        self._attempt: str | None = None
        self._call_id: str | None = None
        self._sdk: VoiceSDK | None = None
        self._bound_sdk: VoiceSDK | None = None
        self._teardown: asyncio.Task | None = None

    @property
    def provider(self) -> str:
        return self.config.get("provider", "")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def call_id(self) -> str | None:
        return self._call_id

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.ACTIVE

    def on(self, event_type: EventType | str, listener: Listener) -> None:
        self._emitter.on(event_type, listener)

    def off(self, event_type: EventType | str, listener: Listener) -> None:
        self._emitter.off(event_type, listener)

    # -- lifecycle -----------------------------------------------------------

    async def start_call(self, options: dict | None = None) -> str | None:
        """Fetch a token, wait for the SDK and open the vendor session.

        Returns the call id, or None if the attempt was ended while it was
        still resolving.

        Raises:
            AlreadyActiveError: If the session is not idle.
        """
        if self._state != ConnectionState.IDLE:
            raise AlreadyActiveError(f"Call already active (state: {self._state.value})")

        attempt = uuid.uuid4().hex
        self._attempt = attempt
        self._call_id = None
        self._teardown = None
        self._state = ConnectionState.CONNECTING

        try:
            token = await self._token_client.fetch_token(self.provider, self._token_options(options or {}))
            if not self._is_current(attempt):
                logger.debug("Ignoring stale token for %s attempt %s", self.provider, attempt)
                return None

            sdk = await self._sdk_ready.wait(self._sdk_timeout)
            if not self._is_current(attempt):
                logger.debug("Ignoring stale SDK readiness for %s attempt %s", self.provider, attempt)
                return None

            self._bind(sdk)
            self._sdk = sdk
            self._call_id = token.get("call_id")
            await self._start_sdk(sdk, token)
        except Exception as exc:
            if self._attempt != attempt:
                return None
            self._fail(classify_error(exc, call_id=self._call_id, default_code="call_start_failed"))
            if self._sdk is not None:
                await self._stop_sdk(self._sdk)
            raise
        return self._call_id

    async def end_call(self) -> None:
        """Hang up. A no-op unless a call is connecting or active.

        After an SDK error this waits for the vendor session to be stopped.
        """
        if self._state == ConnectionState.ERROR and self._teardown is not None:
            await self._teardown
            return
        if self._state not in _LIVE_STATES:
            return

        self._attempt = None
        self._state = ConnectionState.ENDING
        if self._sdk is not None:
            await self._stop_sdk(self._sdk)
        self._finish(DisconnectedEvent(call_id=self._call_id, reason="user_ended"))

    async def _stop_sdk(self, sdk: VoiceSDK) -> None:
        try:
            await sdk.stop_call()
        except Exception:
            logger.warning("SDK stop_call raised while ending %s call", self.provider, exc_info=True)

    def acknowledge(self) -> None:
        """Return an ended or failed session to idle so it can start again."""
        if self._state in (ConnectionState.ENDED, ConnectionState.ERROR):
            self._state = ConnectionState.IDLE
            self._sdk = None
            self._call_id = None

    # -- SDK events ----------------------------------------------------------

    def handle_sdk_event(self, name: str, data: Any = None) -> None:
        for event in self._translate(name, data):
            self._apply(event)

    def _translate(self, name: str, data: Any) -> list[StandardEvent]:
        raise NotImplementedError

    def _token_options(self, options: dict) -> dict:
        return options

    async def _start_sdk(self, sdk: VoiceSDK, token: dict) -> None:
        await sdk.start_call(token["access_token"])

    def _bind(self, sdk: VoiceSDK) -> None:
        if self._bound_sdk is sdk:
            return
        for name in self.sdk_events:
            sdk.on(name, functools.partial(self.handle_sdk_event, name))
        self._bound_sdk = sdk

    def _is_current(self, attempt: str) -> bool:
        return self._attempt == attempt and self._state == ConnectionState.CONNECTING

    def _apply(self, event: StandardEvent) -> None:
        if isinstance(event, ConnectedEvent):
            if self._state != ConnectionState.CONNECTING:
                logger.debug("Dropping connected event in state %s", self._state.value)
                return
            self._state = ConnectionState.ACTIVE
            self._emitter.emit(event)
        elif isinstance(event, DisconnectedEvent):
            self._finish(event)
        elif isinstance(event, ErrorEvent):
            if self._state not in _LIVE_STATES:
                logger.debug("Dropping error event in state %s", self._state.value)
                return
            self._fail(event)
            if self._sdk is not None:
                # SDK callbacks run on the event loop
                self._teardown = asyncio.get_running_loop().create_task(self._stop_sdk(self._sdk))
        elif self._state == ConnectionState.ACTIVE:
            self._emitter.emit(event)
        else:
            logger.debug("Dropping %s event in state %s", event.type, self._state.value)

    def _finish(self, event: DisconnectedEvent) -> None:
        if self._state not in (*_LIVE_STATES, ConnectionState.ENDING):
            return
        self._attempt = None
        self._state = ConnectionState.ENDED
        self._emitter.emit(event)

    def _fail(self, event: ErrorEvent) -> None:
        self._attempt = None
        self._state = ConnectionState.ERROR
        self._emitter.emit(event)


class RetellCallSession(CallSession):
    """Call session over the Retell web client SDK (also used by n8n-retell)."""

    sdk_name = "retell"
    sdk_events = (
        "call_started",
        "call_ended",
        "agent_start_talking",
        "agent_stop_talking",
        "user_start_talking",
        "user_stop_talking",
        "update",
        "error",
    )

    async def _start_sdk(self, sdk: VoiceSDK, token: dict) -> None:
        await sdk.start_call(token["access_token"], sample_rate=token.get("sample_rate") or 24000)

    def _translate(self, name: str, data: Any) -> list[StandardEvent]:
        call_id = self._call_id
        if name == "call_started":
            return [ConnectedEvent(call_id=call_id)]
        if name == "call_ended":
            return [DisconnectedEvent(call_id=call_id)]
        if name in ("agent_start_talking", "agent_stop_talking"):
            return [AgentSpeakingEvent(call_id=call_id, is_speaking=name == "agent_start_talking")]
        if name in ("user_start_talking", "user_stop_talking"):
            return [UserSpeakingEvent(call_id=call_id, is_speaking=name == "user_start_talking")]
        if name == "update":
            events: list[StandardEvent] = []
            transcript = data.get("transcript") if isinstance(data, dict) else None
            for item in transcript or []:
                if not isinstance(item, dict):
                    continue
                role, content = item.get("role"), item.get("content")
                if not content:
                    continue
                if role == "user":
                    events.append(TranscriptEvent(call_id=call_id, text=content, is_final=True, speaker="user"))
                elif role == "agent":
                    events.append(AgentResponseEvent(call_id=call_id, text=content))
            return events
        if name == "error":
            return [classify_error(data, call_id=call_id, default_code="retell_error")]
        logger.debug("Unhandled Retell SDK event %s", name)
        return []


class ElevenLabsCallSession(CallSession):
    """Call session over the ElevenLabs conversation SDK callbacks."""

    sdk_name = "elevenlabs"
    sdk_events = ("connect", "disconnect", "mode", "message", "error")

    async def _start_sdk(self, sdk: VoiceSDK, token: dict) -> None:
        await sdk.start_call(token["access_token"], connection_type=token.get("connection_type") or "webrtc")

    def _translate(self, name: str, raw: Any) -> list[StandardEvent]:
        if name == "error":
            error = raw or {"message": "Unknown error"}
            return [classify_error(error, call_id=self._call_id, default_code="elevenlabs_error")]
        data = raw if isinstance(raw, dict) else {}
        if name == "connect":
            self._call_id = data.get("conversation_id") or self._call_id
            return [ConnectedEvent(call_id=self._call_id)]
        if name == "disconnect":
            return [DisconnectedEvent(call_id=self._call_id, reason=data.get("reason"))]
        if name == "mode":
            return [AgentSpeakingEvent(call_id=self._call_id, is_speaking=data.get("mode") == "speaking")]
        if name == "message":
            text = data.get("message")
            if not text:
                return []
            if data.get("source") == "user":
                return [TranscriptEvent(call_id=self._call_id, text=text, is_final=True, speaker="user")]
            return [AgentResponseEvent(call_id=self._call_id, text=text)]
        logger.debug("Unhandled ElevenLabs SDK event %s", name)
        return []
