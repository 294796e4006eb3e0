"""Tests for the client-side call sessions, provider factory and event plumbing."""

import asyncio
import re

import httpx
import pytest

from voicelink.client import (
    AlreadyActiveError,
    ConnectionState,
    ElevenLabsCallSession,
    EventEmitter,
    ProviderLookupError,
    RetellCallSession,
    SDKNotReadyError,
    SDKReadiness,
    TokenRequestError,
    VoiceSDKError,
    classify_error,
    create_client_factory,
)
from voicelink.providers.models import (
    AgentResponseEvent,
    AgentSpeakingEvent,
    ConnectedEvent,
    DisconnectedEvent,
    ErrorEvent,
    EventType,
    TranscriptEvent,
)

REST_URL = "https://site.example/api/v1/voice"


class FakeSDK:
    """Stands in for a vendor web SDK: records calls, fires events on demand."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.handlers: dict[str, list] = {}
        self.started: list[tuple[str, dict]] = []
        self.stopped = 0
        self.fail_with = fail_with

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def start_call(self, access_token, **options):
        if self.fail_with is not None:
            raise self.fail_with
        self.started.append((access_token, options))

    async def stop_call(self):
        self.stopped += 1

    def fire(self, event, data=None):
        for handler in self.handlers.get(event, []):
            handler(data)


class NotAllowedError(Exception):
    """Shaped like the browser's getUserMedia permission error."""


def _token_transport(payload: dict | None = None, status: int = 200):
    body = payload or {"access_token": "tok_1", "call_id": "call_1", "provider": "retell", "sample_rate": 24000}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


def _record(session) -> list:
    events = []
    for event_type in EventType:
        session.on(event_type, events.append)
    return events


async def _ready_session(provider="retell", transport=None, sdk=None, **config):
    factory = create_client_factory(REST_URL, transport=transport or _token_transport(), sdk_timeout=0.5)
    session = factory.create(provider, {"provider": provider, "agentId": "agent_1", **config})
    sdk = sdk or FakeSDK()
    factory.sdk_readiness(session.sdk_name).set_ready(sdk)
    return session, sdk


# ---------------------------------------------------------------------------
# EventEmitter
# ---------------------------------------------------------------------------


class TestEventEmitter:
    def test_listeners_called_in_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("connected", lambda e: calls.append("first"))
        emitter.on(EventType.CONNECTED, lambda e: calls.append("second"))
        emitter.emit(ConnectedEvent(call_id="c1"))
        assert calls == ["first", "second"]

    def test_raising_listener_does_not_stop_delivery(self):
        emitter = EventEmitter()
        calls = []

        def broken(event):
            raise RuntimeError("ui bug")

        emitter.on("connected", broken)
        emitter.on("connected", calls.append)
        emitter.emit(ConnectedEvent())
        assert len(calls) == 1

    def test_off_and_count(self):
        emitter = EventEmitter()
        listener = lambda e: None  # noqa: E731
        emitter.on("transcript", listener)
        assert emitter.listener_count("transcript") == 1
        emitter.off("transcript", listener)
        emitter.off("transcript", listener)
        assert emitter.listener_count("transcript") == 0

    def test_only_matching_type_is_delivered(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("error", calls.append)
        emitter.emit(ConnectedEvent())
        assert calls == []

    def test_unknown_event_name(self):
        with pytest.raises(ValueError):
            EventEmitter().on("call_started", lambda e: None)

    def test_clear(self):
        emitter = EventEmitter()
        emitter.on("connected", lambda e: None)
        emitter.clear()
        assert emitter.listener_count("connected") == 0


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    @pytest.mark.parametrize(
        "error, code",
        [
            (NotAllowedError("denied"), "microphone_permission_denied"),
            ({"name": "PermissionDeniedError"}, "microphone_permission_denied"),
            ({"name": "NotFoundError", "message": "no device"}, "microphone_not_found"),
            ({"name": "DevicesNotFoundError"}, "microphone_not_found"),
            ({"name": "NotReadableError"}, "microphone_busy"),
            ({"name": "TrackStartError"}, "microphone_busy"),
            (VoiceSDKError("socket closed"), "sdk_error"),
            ({"name": "SDKError", "message": "x"}, "sdk_error"),
        ],
    )
    def test_known_errors(self, error, code):
        event = classify_error(error, call_id="c1")
        assert event.code == code
        assert event.call_id == "c1"
        assert event.message

    def test_unclassified_keeps_raw_message(self):
        event = classify_error(RuntimeError("weird failure"), default_code="retell_error")
        assert event.code == "retell_error"
        assert event.message == "weird failure"

    def test_empty_message(self):
        assert classify_error({}).message == "Unknown error"


# ---------------------------------------------------------------------------
# SDKReadiness
# ---------------------------------------------------------------------------


class TestSDKReadiness:
    @pytest.mark.asyncio
    async def test_already_ready(self):
        readiness = SDKReadiness()
        sdk = FakeSDK()
        readiness.set_ready(sdk)
        assert readiness.is_ready
        assert await readiness.wait(0.1) is sdk

    @pytest.mark.asyncio
    async def test_ready_later(self):
        readiness = SDKReadiness()
        sdk = FakeSDK()
        waiter = asyncio.create_task(readiness.wait(1.0))
        await asyncio.sleep(0)
        readiness.set_ready(sdk)
        assert await waiter is sdk

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(SDKNotReadyError):
            await SDKReadiness().wait(0.01)

    @pytest.mark.asyncio
    async def test_failed_load(self):
        readiness = SDKReadiness()
        readiness.set_failed(VoiceSDKError("script blocked"))
        with pytest.raises(VoiceSDKError, match="script blocked"):
            await readiness.wait(0.1)


# ---------------------------------------------------------------------------
# ClientProviderFactory
# ---------------------------------------------------------------------------


class TestClientProviderFactory:
    def test_builtin_providers(self):
        factory = create_client_factory(REST_URL)
        assert factory.get_available_providers() == ["retell", "n8n-retell", "elevenlabs"]

    def test_cache_by_config_value(self):
        factory = create_client_factory(REST_URL)
        first = factory.create("retell", {"provider": "retell", "agentId": "a"})
        second = factory.create("retell", {"agentId": "a", "provider": "retell"})
        third = factory.create("retell", {"provider": "retell", "agentId": "b"})
        assert first is second
        assert first is not third
        factory.clear_cache()
        assert factory.create("retell", {"provider": "retell", "agentId": "a"}) is not first

    def test_unknown_provider(self):
        with pytest.raises(ProviderLookupError, match="Unknown voice provider: vapi"):
            create_client_factory(REST_URL).create("vapi", {})

    def test_retell_variants_share_sdk(self):
        factory = create_client_factory(REST_URL)
        retell = factory.create("retell", {"provider": "retell", "agentId": "a"})
        n8n = factory.create("n8n-retell", {"provider": "n8n-retell", "agentId": "a"})
        eleven = factory.create("elevenlabs", {"provider": "elevenlabs", "agentId": "a"})
        assert retell._sdk_ready is n8n._sdk_ready
        assert eleven._sdk_ready is not retell._sdk_ready

    @pytest.mark.asyncio
    async def test_get_enabled_provider(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "provider": "elevenlabs",
                    "config": {"provider": "elevenlabs", "agentId": "agent_el", "isPublic": True, "sampleRate": 16000},
                },
            )

        factory = create_client_factory(REST_URL, transport=httpx.MockTransport(handler))
        session = await factory.get_enabled_provider()

        assert seen["url"] == f"{REST_URL}/providers"
        assert isinstance(session, ElevenLabsCallSession)
        assert session.config == {
            "provider": "elevenlabs",
            "agentId": "agent_el",
            "isPublic": True,
            "restUrl": REST_URL,
            "sampleRate": 16000,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body, message",
        [
            ({"success": False, "error": "No voice provider is enabled"}, "No voice provider is enabled"),
            ({"success": False}, "Failed to get enabled provider"),
            ({"success": True}, "Provider name not specified in response"),
            ({"success": True, "provider": "retell"}, "Provider configuration object is missing"),
            ({"success": True, "provider": "retell", "config": {}}, "Agent ID not configured for provider: retell"),
            (
                {"success": True, "provider": "vapi", "config": {"agentId": "a"}},
                "Voice provider not available: vapi",
            ),
        ],
    )
    async def test_get_enabled_provider_validation(self, body, message):
        factory = create_client_factory(
            REST_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body))
        )
        with pytest.raises(ProviderLookupError, match=re.escape(message)):
            await factory.get_enabled_provider()

    @pytest.mark.asyncio
    async def test_get_enabled_provider_non_json(self):
        factory = create_client_factory(
            REST_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))
        )
        with pytest.raises(ProviderLookupError, match="No data received from server"):
            await factory.get_enabled_provider()

    @pytest.mark.asyncio
    async def test_get_enabled_provider_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        factory = create_client_factory(REST_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderLookupError, match="Could not reach"):
            await factory.get_enabled_provider()


# ---------------------------------------------------------------------------
# CallSession state machine (Retell)
# ---------------------------------------------------------------------------


class TestRetellCallSession:
    @pytest.mark.asyncio
    async def test_full_call(self):
        session, sdk = await _ready_session()
        events = _record(session)

        call_id = await session.start_call()
        assert call_id == "call_1"
        assert session.state == ConnectionState.CONNECTING
        assert sdk.started == [("tok_1", {"sample_rate": 24000})]

        sdk.fire("call_started")
        assert session.state == ConnectionState.ACTIVE
        assert session.is_connected

        sdk.fire("agent_start_talking")
        sdk.fire(
            "update",
            {
                "transcript": [
                    {"role": "agent", "content": "Hi, how can I help?"},
                    {"role": "user", "content": "Pricing please"},
                ]
            },
        )
        await session.end_call()

        assert sdk.stopped == 1
        assert session.state == ConnectionState.ENDED
        assert events == [
            ConnectedEvent(call_id="call_1"),
            AgentSpeakingEvent(call_id="call_1", is_speaking=True),
            AgentResponseEvent(call_id="call_1", text="Hi, how can I help?"),
            TranscriptEvent(call_id="call_1", text="Pricing please", is_final=True, speaker="user"),
            DisconnectedEvent(call_id="call_1", reason="user_ended"),
        ]

    @pytest.mark.asyncio
    async def test_second_start_while_active(self):
        session, sdk = await _ready_session()
        await session.start_call()
        with pytest.raises(AlreadyActiveError):
            await session.start_call()

    @pytest.mark.asyncio
    async def test_restart_requires_acknowledge(self):
        session, sdk = await _ready_session()
        await session.start_call()
        sdk.fire("call_started")
        sdk.fire("call_ended")
        assert session.state == ConnectionState.ENDED

        with pytest.raises(AlreadyActiveError):
            await session.start_call()

        session.acknowledge()
        assert session.state == ConnectionState.IDLE
        assert await session.start_call() == "call_1"
        assert len(sdk.handlers["call_started"]) == 1

    @pytest.mark.asyncio
    async def test_end_call_when_idle_is_noop(self):
        session, sdk = await _ready_session()
        events = _record(session)
        await session.end_call()
        assert session.state == ConnectionState.IDLE
        assert events == []
        assert sdk.stopped == 0

    @pytest.mark.asyncio
    async def test_events_before_connect_are_dropped(self):
        session, sdk = await _ready_session()
        events = _record(session)
        await session.start_call()
        sdk.fire("user_start_talking")
        assert events == []

    @pytest.mark.asyncio
    async def test_token_resolving_after_end_is_ignored(self):
        requested = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            requested.set()
            await release.wait()
            return httpx.Response(200, json={"access_token": "late", "call_id": "call_late"})

        session, sdk = await _ready_session(transport=httpx.MockTransport(handler))
        events = _record(session)

        attempt = asyncio.create_task(session.start_call())
        await requested.wait()
        await session.end_call()
        release.set()

        assert await attempt is None
        assert sdk.started == []
        assert session.state == ConnectionState.ENDED
        assert [e.type for e in events] == ["disconnected"]

    @pytest.mark.asyncio
    async def test_token_failure_moves_to_error(self):
        transport = _token_transport(
            {"success": False, "code": "not_configured", "message": "Provider is not enabled"}, status=400
        )
        session, sdk = await _ready_session(transport=transport)
        events = _record(session)

        with pytest.raises(TokenRequestError) as exc_info:
            await session.start_call()

        assert exc_info.value.status_code == 400
        assert session.state == ConnectionState.ERROR
        assert events == [ErrorEvent(code="call_start_failed", message="Provider is not enabled")]

    @pytest.mark.asyncio
    async def test_sdk_not_ready(self):
        factory = create_client_factory(REST_URL, transport=_token_transport(), sdk_timeout=0.01)
        session = factory.create("retell", {"provider": "retell", "agentId": "a"})
        events = _record(session)

        with pytest.raises(SDKNotReadyError):
            await session.start_call()
        assert session.state == ConnectionState.ERROR
        assert events[0].code == "call_start_failed"

    @pytest.mark.asyncio
    async def test_microphone_denied(self):
        session, sdk = await _ready_session(sdk=FakeSDK(fail_with=NotAllowedError("Permission denied")))
        events = _record(session)

        with pytest.raises(NotAllowedError):
            await session.start_call()
        assert session.state == ConnectionState.ERROR
        assert events[0].code == "microphone_permission_denied"
        assert events[0].call_id == "call_1"

    @pytest.mark.asyncio
    async def test_sdk_error_event_during_call(self):
        session, sdk = await _ready_session()
        events = _record(session)
        await session.start_call()
        sdk.fire("call_started")
        sdk.fire("error", {"message": "socket dropped"})

        assert session.state == ConnectionState.ERROR
        assert events[-1] == ErrorEvent(call_id="call_1", code="retell_error", message="socket dropped")

    @pytest.mark.asyncio
    async def test_sdk_error_stops_vendor_call(self):
        session, sdk = await _ready_session()
        await session.start_call()
        sdk.fire("call_started")
        sdk.fire("error", {"message": "socket dropped"})

        await session.end_call()
        assert sdk.stopped == 1
        assert session.state == ConnectionState.ERROR

        session.acknowledge()
        await session.start_call()
        assert len(sdk.started) == 2
        assert sdk.stopped == 1

    @pytest.mark.asyncio
    async def test_failed_sdk_start_is_stopped(self):
        session, sdk = await _ready_session(sdk=FakeSDK(fail_with=RuntimeError("boom")))
        with pytest.raises(RuntimeError):
            await session.start_call()
        assert sdk.stopped == 1

    @pytest.mark.asyncio
    async def test_malformed_transcript_items_are_skipped(self):
        session, sdk = await _ready_session()
        events = _record(session)
        await session.start_call()
        sdk.fire("call_started")
        sdk.fire("update", {"transcript": ["hello", None, {"role": "user", "content": "Hi"}]})

        assert events[-1] == TranscriptEvent(call_id="call_1", text="Hi", is_final=True, speaker="user")


# ---------------------------------------------------------------------------
# CallSession (ElevenLabs)
# ---------------------------------------------------------------------------


class TestElevenLabsCallSession:
    @pytest.mark.asyncio
    async def test_event_mapping(self):
        transport = _token_transport(
            {"access_token": "conv_tok", "provider": "elevenlabs", "connection_type": "webrtc"}
        )
        session, sdk = await _ready_session(provider="elevenlabs", transport=transport)
        events = _record(session)

        assert await session.start_call() is None
        assert sdk.started == [("conv_tok", {"connection_type": "webrtc"})]

        sdk.fire("connect", {"conversation_id": "conv_1"})
        sdk.fire("mode", {"mode": "speaking"})
        sdk.fire("message", {"source": "ai", "message": "Hello!"})
        sdk.fire("message", {"source": "user", "message": "Hi"})
        sdk.fire("disconnect", {"reason": "agent"})

        assert session.call_id == "conv_1"
        assert session.state == ConnectionState.ENDED
        assert events == [
            ConnectedEvent(call_id="conv_1"),
            AgentSpeakingEvent(call_id="conv_1", is_speaking=True),
            AgentResponseEvent(call_id="conv_1", text="Hello!"),
            TranscriptEvent(call_id="conv_1", text="Hi", is_final=True, speaker="user"),
            DisconnectedEvent(call_id="conv_1", reason="agent"),
        ]

    @pytest.mark.asyncio
    async def test_string_error(self):
        session, sdk = await _ready_session(provider="elevenlabs", transport=_token_transport({"access_token": "t"}))
        events = _record(session)
        await session.start_call()
        sdk.fire("connect", {"conversation_id": "conv_2"})
        sdk.fire("error", "quota exceeded")

        assert session.state == ConnectionState.ERROR
        assert events[-1].code == "elevenlabs_error"
        assert events[-1].message == "quota exceeded"

    def test_session_types(self):
        factory = create_client_factory(REST_URL)
        assert isinstance(factory.create("n8n-retell", {"provider": "n8n-retell"}), RetellCallSession)
