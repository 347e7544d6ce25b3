"""Session bridge - the per-call state machine at the heart of agentrelay.

A SessionBridge owns exactly one call leg and one agent leg for the
lifetime of a call. It runs up to four tasks:

1. call-leg reader: Twilio frames -> typed events -> agent leg
2. agent attach:    fetch/derive the agent endpoint and open it
3. agent-leg reader: agent frames -> typed events -> call leg
4. heartbeat:       transport pings on both legs

Any terminal condition on either leg (stop, close, transport error, failed
attach) only *requests* termination. The supervisor in :meth:`run` then
runs :meth:`close`, the single teardown path that cancels the tasks and
closes both legs exactly once.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Coroutine

from loguru import logger

from agentrelay.agent.connector import AgentConnector
from agentrelay.config import EarlyAudioPolicy, SessionConfig
from agentrelay.core.events import (
    AgentAudio,
    AgentLegEvent,
    AgentPing,
    AgentResponse,
    CallConnected,
    CallLegEvent,
    ConversationInitiated,
    DtmfPressed,
    Interruption,
    MarkReached,
    MediaChunk,
    SessionEvent,
    SessionEventKind,
    StreamStart,
    StreamStop,
    UserTranscript,
)
from agentrelay.errors import ErrorKind, MalformedFrame, PeerClosed, RelayError, TransportError
from agentrelay.serializers.elevenlabs import ElevenLabsSerializer
from agentrelay.serializers.twilio import TwilioSerializer
from agentrelay.session import RelaySession, SessionState
from agentrelay.transports.base import BaseTransport

EventSink = Callable[[SessionEvent], Awaitable[None]]


class SessionBridge:
    """Relays one call between the telephony leg and the agent leg.

    Args:
        call_leg: The accepted call-leg transport.
        connector: Opens the agent leg for this session.
        config: Timeouts, heartbeat and early-audio policy.
        on_event: Optional sink for every :class:`SessionEvent`.
    """

    def __init__(
        self,
        call_leg: BaseTransport,
        connector: AgentConnector,
        config: SessionConfig | None = None,
        on_event: EventSink | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        self.session = RelaySession(
            call_leg=call_leg,
            early_audio_max_frames=self.config.early_audio_max_frames,
        )
        self.connector = connector
        self._on_event = on_event

        self._call = TwilioSerializer()
        self._agent = ElevenLabsSerializer()

        self._tasks: list[asyncio.Task] = []
        self._terminated = asyncio.Event()
        self._closed = asyncio.Event()
        self._flushing = False

    @property
    def state(self) -> SessionState:
        return self.session.state

    # ------------------------------------------------------------------
    # Supervision and teardown
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Relay until either leg ends, then tear both down."""
        await self._emit(SessionEventKind.SESSION_STARTED)
        self._spawn(self._call_leg_loop(), "call-leg")
        self._spawn(self._attach_agent(), "attach-agent")
        try:
            await self._terminated.wait()
        finally:
            await self.close()

    async def close(self, reason: ErrorKind | None = None) -> None:
        """Tear the session down. Safe to call any number of times."""
        if self.session.state in (SessionState.CLOSING, SessionState.CLOSED):
            await self._closed.wait()
            return

        if reason is not None and self.session.close_reason is None:
            self.session.close_reason = reason
        self.session.transition(SessionState.CLOSING)
        self._terminated.set()

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        for leg, transport in (("agent", self.session.agent_leg), ("call", self.session.call_leg)):
            if transport is None:
                continue
            try:
                await transport.disconnect()
            except Exception as e:
                logger.warning(f"Session {self.session.session_id}: closing {leg} leg failed: {e}")

        self.session.transition(SessionState.CLOSED)
        self._closed.set()
        reason_text = self.session.close_reason.value if self.session.close_reason else "closed"
        await self._emit(SessionEventKind.SESSION_CLOSED, detail=reason_text)
        logger.info(
            f"Session {self.session.session_id} closed ({reason_text}): "
            f"{self.session.frames_to_agent} frames to agent, "
            f"{self.session.frames_to_call} frames to call, "
            f"{self.session.frames_dropped} dropped, "
            f"{self.session.duration_ms}ms"
        )

    def _terminate(self, reason: ErrorKind) -> None:
        """Request teardown; the first reason given wins."""
        if self.session.close_reason is None:
            self.session.close_reason = reason
        self._terminated.set()

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}-{self.session.session_id[:8]}")
        self._tasks.append(task)
        return task

    # ------------------------------------------------------------------
    # Agent attach
    # ------------------------------------------------------------------

    async def _attach_agent(self) -> None:
        # A leg opened while teardown cancels this task must still be closed.
        connecting = asyncio.ensure_future(self.connector.connect())
        try:
            leg = await asyncio.shield(connecting)
        except asyncio.CancelledError:
            await self._discard_agent_leg(connecting)
            raise
        except RelayError as e:
            await self._emit(SessionEventKind(e.kind.value), leg="agent", detail=str(e))
            self._terminate(e.kind)
            return
        except Exception as e:
            logger.exception(f"Session {self.session.session_id}: unexpected agent attach error")
            await self._emit(SessionEventKind.AGENT_CONNECT_FAILURE, leg="agent", detail=str(e))
            self._terminate(ErrorKind.AGENT_CONNECT_FAILURE)
            return

        self.session.agent_leg = leg.transport
        if self._terminated.is_set():
            return
        await self._emit(SessionEventKind.AGENT_CONNECTED, leg="agent", detail=leg.mode.value)

        if leg.send_initial_config and leg.initial_config:
            if not await self._send_to_agent(leg.initial_config):
                return
            logger.info(f"Session {self.session.session_id}: sent initial config to agent")

        self.session.transition(SessionState.AWAITING_AGENT_READY)
        self._spawn(self._agent_leg_loop(), "agent-leg")
        if self.config.heartbeat_interval > 0:
            self._spawn(self._heartbeat_loop(), "heartbeat")

        if self.config.early_audio == EarlyAudioPolicy.FORWARD:
            await self._flush_early_audio()

    async def _discard_agent_leg(self, connecting: asyncio.Future) -> None:
        """Stop an in-flight agent connect, closing the leg if it already opened."""
        if not connecting.done():
            connecting.cancel()
            await asyncio.gather(connecting, return_exceptions=True)
        if connecting.cancelled() or connecting.exception() is not None:
            return
        transport = connecting.result().transport
        logger.info(f"Session {self.session.session_id}: closing agent leg opened during teardown")
        try:
            await transport.disconnect()
        except Exception as e:
            logger.warning(f"Session {self.session.session_id}: closing agent leg failed: {e}")

    # ------------------------------------------------------------------
    # Call leg -> agent leg
    # ------------------------------------------------------------------

    async def _call_leg_loop(self) -> None:
        transport = self.session.call_leg
        try:
            while not self._terminated.is_set():
                raw = await transport.recv()
                try:
                    event = self._call.deserialize(raw)
                except MalformedFrame as e:
                    self.session.malformed_frames += 1
                    await self._emit(SessionEventKind.MALFORMED_FRAME, leg="call", detail=str(e))
                    continue
                if not await self._handle_call_event(event):
                    self._terminate(ErrorKind.PEER_CLOSED)
                    return
        except PeerClosed as e:
            await self._emit(SessionEventKind.PEER_CLOSED, leg="call", detail=str(e))
            self._terminate(ErrorKind.PEER_CLOSED)
        except TransportError as e:
            await self._emit(SessionEventKind.TRANSPORT_ERROR, leg="call", detail=str(e))
            self._terminate(ErrorKind.TRANSPORT_ERROR)
        except Exception as e:
            logger.exception(f"Session {self.session.session_id}: call-leg loop error")
            await self._emit(SessionEventKind.TRANSPORT_ERROR, leg="call", detail=str(e))
            self._terminate(ErrorKind.TRANSPORT_ERROR)

    async def _handle_call_event(self, event: CallLegEvent) -> bool:
        """Handle one call-leg event. Returns False when the stream stopped."""
        if isinstance(event, MediaChunk):
            if event.data:
                await self._forward_caller_audio(event.data)

        elif isinstance(event, StreamStart):
            self.session.stream_sid = event.stream_sid
            self.session.call_sid = event.call_sid
            self.session.custom_parameters = event.custom_parameters
            logger.info(f"Session {self.session.session_id}: stream started {event.stream_sid} (call {event.call_sid})")
            await self._emit(SessionEventKind.STREAM_STARTED, leg="call", detail=event.call_sid)

        elif isinstance(event, StreamStop):
            logger.info(f"Session {self.session.session_id}: stream stopped")
            return False

        elif isinstance(event, CallConnected):
            logger.debug(f"Session {self.session.session_id}: call leg handshake (protocol {event.protocol})")

        elif isinstance(event, DtmfPressed):
            logger.info(f"Session {self.session.session_id}: DTMF {event.digit}")

        elif isinstance(event, MarkReached):
            logger.debug(f"Session {self.session.session_id}: mark {event.name} played")

        else:
            logger.debug(f"Session {self.session.session_id}: ignoring call event {event.raw_type!r}")

        return True

    async def _forward_caller_audio(self, data: bytes) -> None:
        if self._flushing or not self._agent_accepts_audio():
            self.session.hold_audio(data)
            return
        await self._send_audio(data)

    def _agent_accepts_audio(self) -> bool:
        if self.session.state == SessionState.BRIDGING:
            return True
        return (
            self.session.state == SessionState.AWAITING_AGENT_READY
            and self.config.early_audio == EarlyAudioPolicy.FORWARD
        )

    async def _flush_early_audio(self) -> None:
        """Send held caller audio in arrival order.

        Audio arriving while the flush is in progress is held too, so the
        agent sees frames in the order the caller sent them.
        """
        if self._flushing:
            # the running flush loops until the buffer is empty
            return
        self._flushing = True
        try:
            while self.session.held_frames and not self._terminated.is_set():
                for data in self.session.drain_audio():
                    if not await self._send_audio(data):
                        return
        finally:
            self._flushing = False

    async def _send_audio(self, data: bytes) -> bool:
        sent = await self._send_to_agent(self._agent.build_user_audio(data))
        if sent:
            self.session.frames_to_agent += 1
        return sent

    # ------------------------------------------------------------------
    # Agent leg -> call leg
    # ------------------------------------------------------------------

    async def _agent_leg_loop(self) -> None:
        transport = self.session.agent_leg
        try:
            while not self._terminated.is_set():
                raw = await transport.recv()
                try:
                    event = self._agent.deserialize(raw)
                except MalformedFrame as e:
                    self.session.malformed_frames += 1
                    await self._emit(SessionEventKind.MALFORMED_FRAME, leg="agent", detail=str(e))
                    continue
                await self._handle_agent_event(event)
        except PeerClosed as e:
            await self._emit(SessionEventKind.PEER_CLOSED, leg="agent", detail=str(e))
            self._terminate(ErrorKind.PEER_CLOSED)
        except TransportError as e:
            await self._emit(SessionEventKind.TRANSPORT_ERROR, leg="agent", detail=str(e))
            self._terminate(ErrorKind.TRANSPORT_ERROR)
        except Exception as e:
            logger.exception(f"Session {self.session.session_id}: agent-leg loop error")
            await self._emit(SessionEventKind.TRANSPORT_ERROR, leg="agent", detail=str(e))
            self._terminate(ErrorKind.TRANSPORT_ERROR)

    async def _handle_agent_event(self, event: AgentLegEvent) -> None:
        if isinstance(event, AgentAudio):
            if not event.data:
                return
            if not self.session.has_stream:
                # Twilio needs the streamSid on every media message
                self.session.frames_dropped += 1
                logger.debug(f"Session {self.session.session_id}: dropped agent audio before stream start")
                return
            if await self._send_to_call(self._call.build_media(self.session.stream_sid, event.data)):
                self.session.frames_to_call += 1

        elif isinstance(event, AgentPing):
            if event.event_id is not None:
                await self._send_to_agent(self._agent.build_pong(event.event_id))

        elif isinstance(event, Interruption):
            if self.session.has_stream:
                logger.debug(f"Session {self.session.session_id}: agent interrupted, clearing playback")
                await self._send_to_call(self._call.build_clear(self.session.stream_sid))

        elif isinstance(event, ConversationInitiated):
            self.session.conversation_id = event.conversation_id
            if self.session.state == SessionState.AWAITING_AGENT_READY:
                self.session.transition(SessionState.BRIDGING)
                logger.info(f"Session {self.session.session_id}: agent ready (conversation {event.conversation_id})")
                await self._emit(SessionEventKind.AGENT_READY, leg="agent", detail=event.conversation_id)
                await self._flush_early_audio()

        elif isinstance(event, AgentResponse):
            logger.info(f"Session {self.session.session_id}: agent said: {event.text}")

        elif isinstance(event, UserTranscript):
            logger.info(f"Session {self.session.session_id}: caller said: {event.text}")

        else:
            logger.debug(f"Session {self.session.session_id}: ignoring agent event {event.raw_type!r}")

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        """Ping both legs on a fixed interval. Failed pings are not fatal."""
        while not self._terminated.is_set():
            await asyncio.sleep(self.config.heartbeat_interval)
            for leg, transport in (("call", self.session.call_leg), ("agent", self.session.agent_leg)):
                if transport is None or not transport.is_connected():
                    continue
                try:
                    await transport.ping()
                except (PeerClosed, TransportError) as e:
                    logger.warning(f"Session {self.session.session_id}: heartbeat on {leg} leg failed: {e}")

    # ------------------------------------------------------------------
    # Guarded sends
    # ------------------------------------------------------------------

    async def _send_to_agent(self, message: str) -> bool:
        return await self._send("agent", self.session.agent_leg, message)

    async def _send_to_call(self, message: str) -> bool:
        return await self._send("call", self.session.call_leg, message)

    async def _send(self, leg: str, transport: BaseTransport | None, message: str) -> bool:
        """Send on one leg. A failed send ends the session."""
        if transport is None or self._terminated.is_set():
            return False
        try:
            await transport.send(message)
        except PeerClosed as e:
            await self._emit(SessionEventKind.PEER_CLOSED, leg=leg, detail=str(e))
            self._terminate(ErrorKind.PEER_CLOSED)
            return False
        except TransportError as e:
            await self._emit(SessionEventKind.TRANSPORT_ERROR, leg=leg, detail=str(e))
            self._terminate(ErrorKind.TRANSPORT_ERROR)
            return False
        return True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(self, kind: SessionEventKind, leg: str = "", detail: str = "") -> None:
        event = SessionEvent(
            kind=kind,
            session_id=self.session.session_id,
            stream_sid=self.session.stream_sid,
            leg=leg,
            detail=detail,
        )
        log = logger.bind(session_id=event.session_id, kind=kind.value)
        if event.is_failure:
            log.warning(f"Session {event.session_id}: {kind.value} on {leg or 'session'}: {detail}")
        else:
            log.debug(f"Session {event.session_id}: {kind.value}")
        if self._on_event:
            await self._on_event(event)
