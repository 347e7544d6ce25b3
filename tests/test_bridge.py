"""Tests for the per-call SessionBridge."""

import asyncio
import base64

import pytest

from conftest import FakeConnector, b64, twilio_media, twilio_start, wait_until

from agentrelay.bridge import SessionBridge
from agentrelay.config import EarlyAudioPolicy, SessionConfig
from agentrelay.core.events import SessionEventKind
from agentrelay.errors import ConnectTimeout, ErrorKind, TransportError, UpstreamAuthFailure
from agentrelay.session import SessionState


def user_audio(transport):
    """Caller audio the agent leg received, decoded, in send order."""
    return [
        base64.b64decode(m["user_audio_chunk"])
        for m in transport.sent_json
        if "user_audio_chunk" in m
    ]


def agent_ready(conversation_id="conv_1"):
    return {
        "type": "conversation_initiation_metadata",
        "conversation_initiation_metadata_event": {"conversation_id": conversation_id},
    }


class CloseOnConnect(FakeConnector):
    """Starts tearing the bridge down in the same step the agent leg opens."""

    bridge = None
    closing = None

    async def connect(self):
        leg = await super().connect()
        self.closing = asyncio.ensure_future(self.bridge.close())
        return leg


class BridgeHarness:
    """Runs a SessionBridge over fake legs and records its events."""

    def __init__(self, call_leg, connector, **session_options):
        session_options.setdefault("heartbeat_interval", 0)
        self.events = []
        self.bridge = SessionBridge(
            call_leg,
            connector,
            config=SessionConfig(**session_options),
            on_event=self._record,
        )
        self.task = None

    async def _record(self, event):
        self.events.append(event)

    def start(self):
        self.task = asyncio.create_task(self.bridge.run())
        return self

    async def finish(self, timeout=2.0):
        await asyncio.wait_for(self.task, timeout)

    @property
    def kinds(self):
        return [e.kind for e in self.events]


# ==========================================================================
# Core relay scenarios
# ==========================================================================


class TestRelayScenarios:

    @pytest.mark.asyncio
    async def test_caller_audio_reaches_agent_unchanged(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed(twilio_start("SID1"))
        call_leg.feed({"event": "media", "streamSid": "SID1", "media": {"payload": "QUJD"}})
        await wait_until(lambda: user_audio(agent_leg))

        assert user_audio(agent_leg) == [b"ABC"]
        assert h.bridge.session.stream_sid == "SID1"

        call_leg.feed({"event": "stop", "streamSid": "SID1"})
        await h.finish()
        assert h.bridge.session.frames_to_agent == 1

    @pytest.mark.asyncio
    async def test_interruption_clears_call_playback(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed(twilio_start("SID1"))
        await wait_until(lambda: h.bridge.session.stream_sid == "SID1")
        agent_leg.feed({"type": "interruption", "interruption_event": {"event_id": 1}})
        await wait_until(lambda: call_leg.sent)

        assert call_leg.sent_json == [{"event": "clear", "streamSid": "SID1"}]

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_stop_closes_both_legs_and_forwards_nothing_after(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed(twilio_start("SID1"))
        await wait_until(lambda: h.bridge.state == SessionState.AWAITING_AGENT_READY)
        call_leg.feed({"event": "stop", "streamSid": "SID1"})
        await h.finish()

        assert h.bridge.state == SessionState.CLOSED
        assert call_leg.disconnect_calls == 1
        assert agent_leg.disconnect_calls == 1
        assert h.bridge.session.close_reason == ErrorKind.PEER_CLOSED

        agent_leg.feed({"type": "audio", "audio_event": {"audio_base_64": b64(b"late"), "event_id": 9}})
        await asyncio.sleep(0.05)
        assert call_leg.sent == []
        assert h.kinds[-1] == SessionEventKind.SESSION_CLOSED

    @pytest.mark.asyncio
    async def test_auth_failure_never_opens_agent_leg(self, call_leg, agent_leg):
        connector = FakeConnector(agent_leg, error=UpstreamAuthFailure("Signed URL request rejected (401)"))
        h = BridgeHarness(call_leg, connector)
        call_leg.feed(twilio_start("SID1"))
        call_leg.feed(twilio_media(b"hello"))
        h.start()

        await h.finish()

        assert h.bridge.session.agent_leg is None
        assert agent_leg.sent == []
        assert agent_leg.disconnect_calls == 0
        assert call_leg.disconnect_calls == 1
        assert call_leg.sent == []
        assert h.bridge.session.close_reason == ErrorKind.UPSTREAM_AUTH_FAILURE
        assert SessionEventKind.UPSTREAM_AUTH_FAILURE in h.kinds


# ==========================================================================
# Agent leg -> call leg
# ==========================================================================


class TestAgentToCall:

    @pytest.mark.asyncio
    async def test_agent_audio_is_wrapped_with_stream_sid(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed(twilio_start("SID1"))
        await wait_until(lambda: h.bridge.session.has_stream)
        agent_leg.feed({"type": "audio", "audio_event": {"audio_base_64": b64(b"\x7f\x00"), "event_id": 3}})
        await wait_until(lambda: call_leg.sent)

        msg = call_leg.sent_json[0]
        assert msg["event"] == "media"
        assert msg["streamSid"] == "SID1"
        assert base64.b64decode(msg["media"]["payload"]) == b"\x7f\x00"
        assert h.bridge.session.frames_to_call == 1

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_agent_audio_before_stream_start_is_dropped(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        await wait_until(lambda: h.bridge.state == SessionState.AWAITING_AGENT_READY)
        agent_leg.feed({"type": "audio", "audio": {"chunk": b64(b"early")}})
        await wait_until(lambda: h.bridge.session.frames_dropped == 1)
        assert call_leg.sent == []

        call_leg.feed(twilio_start("SID1"))
        await wait_until(lambda: h.bridge.session.has_stream)
        agent_leg.feed({"type": "audio", "audio": b64(b"later")})
        await wait_until(lambda: call_leg.sent)

        assert [m["streamSid"] for m in call_leg.sent_json] == ["SID1"]

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_ping_is_answered_with_matching_pong(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        agent_leg.feed({"type": "ping", "ping_event": {}})
        agent_leg.feed({"type": "ping", "ping_event": {"event_id": 42, "ping_ms": 12}})
        await wait_until(lambda: any(m.get("type") == "pong" for m in agent_leg.sent_json))

        pongs = [m for m in agent_leg.sent_json if m.get("type") == "pong"]
        assert pongs == [{"type": "pong", "event_id": 42}]
        assert call_leg.sent == []

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_conversation_metadata_makes_agent_ready(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        agent_leg.feed(agent_ready("conv_9"))
        await wait_until(lambda: h.bridge.state == SessionState.BRIDGING)

        assert h.bridge.session.conversation_id == "conv_9"
        assert SessionEventKind.AGENT_READY in h.kinds

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_agent_close_tears_down_call_leg(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        await wait_until(lambda: h.bridge.state == SessionState.AWAITING_AGENT_READY)
        agent_leg.hang_up()
        await h.finish()

        assert call_leg.disconnect_calls == 1
        assert h.bridge.session.close_reason == ErrorKind.PEER_CLOSED
        closed = [e for e in h.events if e.kind == SessionEventKind.PEER_CLOSED]
        assert closed[0].leg == "agent"


# ==========================================================================
# Early audio policies
# ==========================================================================


class TestEarlyAudio:

    @pytest.mark.asyncio
    async def test_buffer_policy_holds_audio_until_agent_ready(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg), early_audio=EarlyAudioPolicy.BUFFER).start()

        call_leg.feed(twilio_start())
        call_leg.feed(twilio_media(b"one"))
        call_leg.feed(twilio_media(b"two"))
        await wait_until(lambda: h.bridge.session.held_frames == 2)
        await wait_until(lambda: h.bridge.state == SessionState.AWAITING_AGENT_READY)
        assert user_audio(agent_leg) == []

        agent_leg.feed(agent_ready())
        await wait_until(lambda: len(user_audio(agent_leg)) == 2)
        call_leg.feed(twilio_media(b"three"))
        await wait_until(lambda: len(user_audio(agent_leg)) == 3)

        assert user_audio(agent_leg) == [b"one", b"two", b"three"]

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_forward_policy_flushes_audio_held_during_attach(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg, delay=0.05))
        call_leg.feed(twilio_start())
        call_leg.feed(twilio_media(b"a"))
        call_leg.feed(twilio_media(b"b"))
        h.start()

        await wait_until(lambda: len(user_audio(agent_leg)) == 2)
        assert user_audio(agent_leg) == [b"a", b"b"]
        # the initial config goes out before any audio
        assert agent_leg.sent_json[0]["type"] == "conversation_initiation_client_data"

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_buffer_overflow_drops_oldest(self, call_leg, agent_leg):
        h = BridgeHarness(
            call_leg,
            FakeConnector(agent_leg),
            early_audio=EarlyAudioPolicy.BUFFER,
            early_audio_max_frames=2,
        ).start()

        call_leg.feed(twilio_start())
        for data in (b"1", b"2", b"3"):
            call_leg.feed(twilio_media(data))
        await wait_until(lambda: h.bridge.session.frames_dropped == 1)

        agent_leg.feed(agent_ready())
        await wait_until(lambda: len(user_audio(agent_leg)) == 2)
        assert user_audio(agent_leg) == [b"2", b"3"]

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_direct_mode_sends_no_initial_config(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg, send_initial_config=False)).start()

        call_leg.feed(twilio_start())
        call_leg.feed(twilio_media(b"x"))
        await wait_until(lambda: agent_leg.sent)

        assert agent_leg.sent_json == [{"user_audio_chunk": b64(b"x")}]

        call_leg.hang_up()
        await h.finish()


# ==========================================================================
# Failures and teardown
# ==========================================================================


class TestTeardown:

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()
        await wait_until(lambda: h.bridge.state == SessionState.AWAITING_AGENT_READY)

        await asyncio.gather(h.bridge.close(), h.bridge.close())
        await h.bridge.close()
        await h.finish()

        assert h.bridge.state == SessionState.CLOSED
        assert agent_leg.disconnect_calls == 1
        assert call_leg.disconnect_calls == 1
        assert h.kinds.count(SessionEventKind.SESSION_CLOSED) == 1

    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_end_session(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed("this is not json")
        call_leg.feed(twilio_start())
        call_leg.feed(twilio_media(b"ok"))
        await wait_until(lambda: user_audio(agent_leg))

        assert h.bridge.session.malformed_frames == 1
        assert SessionEventKind.MALFORMED_FRAME in h.kinds
        assert h.bridge.session.is_active

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_connect_timeout_is_classified(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg, error=ConnectTimeout("too slow"))).start()
        await h.finish()

        failures = [e for e in h.events if e.is_failure]
        assert [e.kind for e in failures] == [SessionEventKind.CONNECT_TIMEOUT]
        assert failures[0].leg == "agent"
        assert call_leg.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_call_hangup_before_attach_finishes(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg, delay=0.5)).start()
        call_leg.hang_up()
        await h.finish()

        assert h.bridge.state == SessionState.CLOSED
        assert agent_leg.sent == []
        assert call_leg.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_heartbeat_pings_both_legs(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg), heartbeat_interval=0.02).start()

        await wait_until(lambda: call_leg.pings >= 1 and agent_leg.pings >= 1)

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_events_carry_session_and_stream_ids(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()
        call_leg.feed(twilio_start("SID7"))
        call_leg.feed({"event": "stop", "streamSid": "SID7"})
        await h.finish()

        assert h.kinds[0] == SessionEventKind.SESSION_STARTED
        assert {e.session_id for e in h.events} == {h.bridge.session.session_id}
        closed = h.events[-1]
        assert closed.kind == SessionEventKind.SESSION_CLOSED
        assert closed.stream_sid == "SID7"
        assert closed.detail == "peer_closed"

    @pytest.mark.asyncio
    async def test_agent_leg_opened_during_close_is_shut(self, call_leg, agent_leg):
        connector = CloseOnConnect(agent_leg)
        h = BridgeHarness(call_leg, connector)
        connector.bridge = h.bridge
        h.start()
        await h.finish()
        await connector.closing

        assert h.bridge.state == SessionState.CLOSED
        assert h.bridge.session.agent_leg is None
        assert agent_leg.disconnect_calls == 1
        assert agent_leg.sent == []
        assert call_leg.disconnect_calls == 1


# ==========================================================================
# Frame shape and transport failures
# ==========================================================================


class TestFailures:

    @pytest.mark.asyncio
    async def test_wrongly_typed_call_frame_is_dropped(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed({"event": "media", "media": "not-an-object"})
        call_leg.feed({"event": "start", "start": {"streamSid": 123}})
        call_leg.feed(twilio_start("SID1"))
        call_leg.feed(twilio_media(b"ok"))
        await wait_until(lambda: user_audio(agent_leg))

        assert user_audio(agent_leg) == [b"ok"]
        assert h.bridge.session.malformed_frames == 2
        assert h.bridge.session.is_active
        assert SessionEventKind.TRANSPORT_ERROR not in h.kinds

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    async def test_malformed_agent_frames_are_dropped(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        agent_leg.feed("this is not json")
        agent_leg.feed({"type": "ping", "ping_event": 5})
        agent_leg.feed({"type": "ping", "ping_event": {"event_id": [1]}})
        agent_leg.feed({"type": "ping", "ping_event": {"event_id": 8}})
        await wait_until(lambda: any(m.get("type") == "pong" for m in agent_leg.sent_json))

        assert [m for m in agent_leg.sent_json if m.get("type") == "pong"] == [{"type": "pong", "event_id": 8}]
        assert h.bridge.session.malformed_frames == 3
        malformed = [e for e in h.events if e.kind == SessionEventKind.MALFORMED_FRAME]
        assert {e.leg for e in malformed} == {"agent"}
        assert h.bridge.session.is_active

        call_leg.hang_up()
        await h.finish()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("broken", ["call", "agent"])
    async def test_recv_error_closes_both_legs(self, call_leg, agent_leg, broken):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()
        await wait_until(lambda: h.bridge.state == SessionState.AWAITING_AGENT_READY)

        {"call": call_leg, "agent": agent_leg}[broken].break_with(TransportError("connection reset"))
        await h.finish()

        assert h.bridge.state == SessionState.CLOSED
        assert h.bridge.session.close_reason == ErrorKind.TRANSPORT_ERROR
        failures = [e for e in h.events if e.kind == SessionEventKind.TRANSPORT_ERROR]
        assert [e.leg for e in failures] == [broken]
        assert call_leg.disconnect_calls == 1
        assert agent_leg.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_agent_send_error_closes_both_legs(self, call_leg, agent_leg):
        agent_leg.send_error = TransportError("broken pipe")
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()
        await h.finish()

        assert h.bridge.session.close_reason == ErrorKind.TRANSPORT_ERROR
        failures = [e for e in h.events if e.kind == SessionEventKind.TRANSPORT_ERROR]
        assert failures[0].leg == "agent"
        assert call_leg.disconnect_calls == 1
        assert agent_leg.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_call_send_error_closes_both_legs(self, call_leg, agent_leg):
        h = BridgeHarness(call_leg, FakeConnector(agent_leg)).start()

        call_leg.feed(twilio_start("SID1"))
        await wait_until(lambda: h.bridge.session.has_stream)
        call_leg.send_error = TransportError("broken pipe")
        agent_leg.feed({"type": "audio", "audio_event": {"audio_base_64": b64(b"hi"), "event_id": 1}})
        await h.finish()

        assert h.bridge.session.close_reason == ErrorKind.TRANSPORT_ERROR
        failures = [e for e in h.events if e.kind == SessionEventKind.TRANSPORT_ERROR]
        assert failures[0].leg == "call"
        assert h.bridge.session.frames_to_call == 0
        assert call_leg.disconnect_calls == 1
        assert agent_leg.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_failed_heartbeat_keeps_session_alive(self, call_leg, agent_leg):
        call_leg.ping_error = TransportError("ping failed")
        agent_leg.ping_error = TransportError("ping failed")
        h = BridgeHarness(call_leg, FakeConnector(agent_leg), heartbeat_interval=0.02).start()

        await wait_until(lambda: call_leg.pings >= 2 and agent_leg.pings >= 2)

        assert h.bridge.session.is_active
        assert not [e for e in h.events if e.is_failure]

        call_leg.feed(twilio_start("SID1"))
        call_leg.feed(twilio_media(b"still here"))
        await wait_until(lambda: user_audio(agent_leg))

        call_leg.hang_up()
        await h.finish()
