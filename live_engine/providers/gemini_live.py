"""
LiveSessionEngine - realtime duplex session with the Gemini Live API.

Everything that happens on a connection (inbound frames, the socket closing,
lifetime ticks) is posted to one queue and handled by one dispatcher task,
in order, one event at a time. Each event carries the generation of the
connection that produced it; events from a superseded connection, or any
event after ``disconnect()``, are dropped.

Work that has to wait on the network is never done on the dispatcher:
session renewal and the reduced-capability reconnect run as their own tasks,
and the agentic tool loop runs in the caller's task, which waits on a future
that the dispatcher resolves when the model's reply is complete.

Events delivered to ``on_event`` (sync or async callable):

    {"type": "Ready", "soft_ready": bool}
    {"type": "Text", "text": str}
    {"type": "Audio", "data": bytes, "sample_rate": int}
    {"type": "Interrupted"}
    {"type": "TurnComplete", "sources": [Source] | None}
    {"type": "ToolCall", "tool_call": dict}
    {"type": "SessionRenewed"}
    {"type": "Error", "message": str}
    {"type": "Closed", "code": int | None, "reason": str}
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from prometheus_client import Counter, Gauge
from structlog import get_logger

from ..audio.capture import AudioIngestPipeline
from ..audio.devices import CaptureFactory, PlaybackFactory
from ..audio.playback import AudioEgressScheduler
from ..audio.resampler import decode_pcm_base64, encode_pcm_base64, pad_to_sample_boundary
from ..config import LiveEngineConfig
from ..core.callbacks import maybe_await
from ..core.errors import EngineConnectionError, FatalTransportError, HandshakeRejected, ProtocolViolation, SessionExpired
from ..core.models import FunctionCall, ModelResponse, SessionState, ToolCall, TurnResult
from ..core.session_lifecycle import SessionLifecycleManager
from ..tools.base import ConfirmationProvider, ToolExecutor
from ..tools.grounding import extract_sources
from ..tools.manifest import build_tools
from ..tools.orchestrator import TextCallback, ToolCallOrchestrator, TurnChannel
from .base import RealtimeProviderInterface, TransportFactory, TransportInterface
from .frames import (
    AudioPart,
    BinaryAudio,
    ClientTurn,
    CloseFrame,
    ErrorFrame,
    GoAway,
    OutboundFrame,
    RealtimeAudioIn,
    ServerContent,
    SetupAck,
    TextPart,
    ToolCallFrame,
    ToolResponse,
    encode_frame,
    parse_frame,
)
from .handshake import CapabilityNegotiator, HandshakeController
from .transport import websocket_transport_factory

logger = get_logger(__name__)

EventCallback = Callable[[Dict[str, Any]], Any]

# Full manifest, then at most one reduced retry
_MAX_SETUP_ATTEMPTS = 2

CLOSE_CODE_MESSAGES: Dict[int, str] = {
    1006: "Connection closed unexpectedly.",
    1008: "API key lacks access to the Live API.",
}
RECONNECT_FAILED_MESSAGE = "Automatic reconnection failed"

_ACTIVE_SESSIONS = Gauge(
    "live_engine_active_sessions",
    "Live sessions currently ready",
)
_AUDIO_BYTES_SENT_TOTAL = Counter(
    "live_engine_audio_bytes_sent_total",
    "PCM16 bytes of microphone audio sent",
)
_AUDIO_BYTES_RECEIVED_TOTAL = Counter(
    "live_engine_audio_bytes_received_total",
    "PCM16 bytes of model audio received",
)
_SESSION_RENEWALS_TOTAL = Counter(
    "live_engine_session_renewals_total",
    "Silent session renewals before the server-side lifetime limit",
)
_CAPABILITY_FALLBACKS_TOTAL = Counter(
    "live_engine_capability_fallbacks_total",
    "Setups retried with the reduced tool manifest",
)


def close_message(code: Optional[int], reason: str = "") -> str:
    """User-facing message for a close; empty when there is nothing to report."""
    return CLOSE_CODE_MESSAGES.get(code, reason or "") if code is not None else (reason or "")


@dataclass
class _FrameEvent:
    generation: int
    raw: Union[str, bytes]


@dataclass
class _CloseEvent:
    generation: int
    frame: CloseFrame


@dataclass
class _TickEvent:
    generation: int


class _PendingTurn:
    """Reply being collected for the caller task waiting in ``_round_trip``."""

    def __init__(self, on_text: Optional[TextCallback]):
        self.on_text = on_text
        self.text: List[str] = []
        self.function_calls: List[FunctionCall] = []
        self.grounding_metadata: Optional[Dict[str, Any]] = None
        self.future: "asyncio.Future[ModelResponse]" = asyncio.get_running_loop().create_future()

    def resolve(self) -> None:
        if self.future.done():
            return
        self.future.set_result(
            ModelResponse(
                text="".join(self.text),
                function_calls=list(self.function_calls),
                grounding_metadata=self.grounding_metadata,
            )
        )

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


class LiveTurnChannel(TurnChannel):
    """Agentic round trips over the engine's live session."""

    def __init__(self, engine: "LiveSessionEngine"):
        self._engine = engine

    async def send_turn(self, turns: List[Dict[str, Any]], *, on_text: Optional[TextCallback] = None) -> ModelResponse:
        return await self._engine._round_trip(ClientTurn(turns=turns), on_text)

    async def send_tool_responses(
        self,
        responses: List[Dict[str, Any]],
        *,
        on_text: Optional[TextCallback] = None,
        expect_reply: bool = True,
    ) -> Optional[ModelResponse]:
        return await self._engine._round_trip(ToolResponse(responses=responses), on_text, expect_reply=expect_reply)


class LiveSessionEngine(RealtimeProviderInterface):
    def __init__(
        self,
        config: Optional[LiveEngineConfig] = None,
        on_event: Optional[EventCallback] = None,
        *,
        tool_executor: Optional[ToolExecutor] = None,
        confirmer: Optional[ConfirmationProvider] = None,
        transport_factory: Optional[TransportFactory] = None,
        playback_factory: Optional[PlaybackFactory] = None,
        capture_factory: Optional[CaptureFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(on_event)
        self.config = config or LiveEngineConfig()
        self.session_id = uuid.uuid4().hex[:12]
        self._log = logger.bind(session_id=self.session_id)
        timing = self.config.session
        audio = self.config.audio
        agent = self.config.agent

        self.lifecycle = SessionLifecycleManager(
            max_session_duration_sec=timing.max_session_duration_sec,
            renewal_margin_sec=timing.renewal_margin_sec,
            check_interval_sec=timing.lifetime_check_interval_sec,
            clock=clock,
        )
        self.handshake = HandshakeController(
            model=self.config.model,
            response_modalities=self.config.response_modalities,
            voice_name=self.config.voice_name,
            system_instruction=self.config.system_instruction,
            ack_grace_sec=timing.setup_ack_grace_sec,
        )
        self.negotiator = CapabilityNegotiator(
            self.lifecycle.session,
            search_enabled=self.config.enable_google_search,
        )
        self.egress = AudioEgressScheduler(
            sample_rate=audio.output_sample_rate_hz,
            lookahead_sec=audio.playback_lookahead_sec,
            silence_reset_sec=audio.silence_reset_sec,
            min_payload_bytes=audio.min_audio_payload_bytes,
            device_factory=playback_factory,
            clock=clock,
        )
        self.tool_executor = tool_executor
        self.orchestrator = ToolCallOrchestrator(
            tool_executor,
            confirmer,
            dangerous_tools=agent.dangerous_tools,
            max_rounds=agent.max_rounds,
            max_history_messages=agent.max_history_messages,
            fallback_message=agent.fallback_message,
            observer=self._on_tool_call,
        )

        self._transport_factory: TransportFactory = transport_factory or websocket_transport_factory
        self._capture_factory = capture_factory
        self._transport: Optional[TransportInterface] = None
        self._generation = 0
        self._events: Optional[asyncio.Queue] = None
        self._dispatcher_task: Optional[asyncio.Task] = None
        self._ack_future: Optional[asyncio.Future] = None
        self._pending_turn: Optional[_PendingTurn] = None
        self._voice_grounding: Optional[Dict[str, Any]] = None
        self._ingest: Optional[AudioIngestPipeline] = None
        self._renewing = False
        self._background: Set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()
        self._turn_lock = asyncio.Lock()
        self._channel = LiveTurnChannel(self)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.lifecycle.state

    def is_ready(self) -> bool:
        transport = self._transport
        return self.lifecycle.is_ready and transport is not None and not transport.closed

    async def connect(self):
        """
        Open the socket, send setup and wait for the acknowledgement (or the
        soft-ready grace window). A setup rejected for an invalid argument is
        retried once without the built-in search tool.
        """
        async with self._connect_lock:
            if self.is_ready():
                self._log.debug("connect() ignored; session already ready")
                return
            self.lifecycle.disposed = False
            self._ensure_dispatcher()
            if self.lifecycle.state in (SessionState.HANDSHAKING, SessionState.READY, SessionState.CLOSING):
                # Socket already gone but its close event not handled yet
                self._log.info("Clearing stale session before reconnect", state=self.lifecycle.state.value)
                await self._soft_disconnect()

            attempts = 0
            while attempts < _MAX_SETUP_ATTEMPTS:
                attempts += 1
                try:
                    await self._open_session()
                    return
                except HandshakeRejected as exc:
                    self._transport = None
                    if attempts < _MAX_SETUP_ATTEMPTS and self.negotiator.should_retry(exc.reason):
                        _CAPABILITY_FALLBACKS_TOTAL.inc()
                        continue
                    self._log.error("Live session setup rejected", code=exc.code, reason=exc.reason, attempts=attempts)
                    await self._report_failure(close_message(exc.code, exc.reason) or str(exc), exc.code, exc.reason)
                    raise
                except EngineConnectionError as exc:
                    self._transport = None
                    if self.lifecycle.disposed:
                        raise
                    self._log.error("Live session connect failed", error=str(exc))
                    await self._report_failure(str(exc), None, "")
                    raise

    async def disconnect(self):
        """Permanent, idempotent close. Nothing reconnects afterwards."""
        if self.lifecycle.disposed:
            return
        self.lifecycle.disposed = True
        self._generation += 1
        was_open = self.lifecycle.state not in (SessionState.IDLE, SessionState.CLOSED)
        self._log.info("Disconnecting live session", state=self.lifecycle.state.value)

        await self.stop_microphone()
        await self.lifecycle.wait_watchdog_stopped()
        self._abort_setup(EngineConnectionError("Session disconnected during setup"))
        self._fail_pending(FatalTransportError("Session disconnected"))
        await self._close_transport()
        self.egress.close()
        _ACTIVE_SESSIONS.set(0)

        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()
        dispatcher, self._dispatcher_task = self._dispatcher_task, None
        self._events = None
        if dispatcher is not None:
            if dispatcher is current:
                asyncio.get_running_loop().call_soon(dispatcher.cancel)
            else:
                dispatcher.cancel()

        if was_open:
            await self._emit({"type": "Closed", "code": 1000, "reason": "disconnected"})

    async def send_text(self, text: str) -> bool:
        """Send one user text turn. No-op (returns False) unless the session is ready."""
        if not text or not self.is_ready():
            return False
        return await self._send_frame(ClientTurn.from_text(text))

    async def send_audio_chunk(self, pcm16: bytes) -> bool:
        """Send PCM16 @ 16 kHz as realtime input. No-op unless the session is ready."""
        if not pcm16 or not self.is_ready():
            return False
        sent = await self._send_frame(RealtimeAudioIn(data=encode_pcm_base64(pcm16)))
        if sent:
            _AUDIO_BYTES_SENT_TOTAL.inc(len(pcm16))
            self.lifecycle.mark_audio_activity()
        return sent

    async def send_message(
        self,
        message: str,
        history: Optional[Sequence[Any]] = None,
        on_text: Optional[TextCallback] = None,
    ) -> TurnResult:
        """
        Send a text message with conversation history and run the tool loop.

        Without a tool executor the reply streams through ``on_text``; with
        one, ``on_text`` receives the final text once. Raises
        FatalTransportError if the session closes mid-turn.
        """
        async with self._turn_lock:
            return await self.orchestrator.run(self._channel, message, history, on_text)

    async def start_microphone(self):
        if self._ingest is not None and self._ingest.running:
            return
        audio = self.config.audio
        self._ingest = AudioIngestPipeline(
            self.send_audio_chunk,
            self.is_ready,
            capture_sample_rate=audio.capture_sample_rate_hz,
            wire_sample_rate=audio.input_sample_rate_hz,
            block_size=audio.capture_block_size,
            device_factory=self._capture_factory,
        )
        await self._ingest.start()

    async def stop_microphone(self):
        ingest, self._ingest = self._ingest, None
        if ingest is not None:
            await ingest.stop()

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    def _declarations(self) -> List[Dict[str, Any]]:
        declarations = list(self.config.function_declarations)
        if self.tool_executor is not None:
            declarations.extend(self.tool_executor.declarations())
        return declarations

    async def _open_session(self):
        url = self.config.live_url()
        self._generation += 1
        generation = self._generation
        log = self._log.bind(generation=generation)

        self.lifecycle.transition(SessionState.CONNECTING)
        self._ack_future = asyncio.get_running_loop().create_future()
        transport = self._transport_factory(
            on_frame=partial(self._post_frame, generation),
            on_close=partial(self._post_close, generation),
        )
        self._transport = transport
        try:
            await transport.connect(url, timeout=self.config.session.connect_timeout_sec)
        except EngineConnectionError:
            if self.lifecycle.state is SessionState.CONNECTING:
                self.lifecycle.transition(SessionState.CLOSED)
            raise
        if generation != self._generation:
            await transport.close()
            raise EngineConnectionError("Session disconnected during connect")

        self.lifecycle.transition(SessionState.HANDSHAKING)
        include_search = self.negotiator.include_search
        tools = build_tools(self._declarations(), include_search=include_search)
        log.info(
            "Sending live session setup",
            model=self.config.model,
            google_search=include_search,
            tool_entries=len(tools),
        )
        await transport.send(encode_frame(self.handshake.build_setup(tools)))

        acknowledged = await self.handshake.wait_for_ack(self._ack_future)
        session = self.lifecycle.session
        session.setup_acknowledged = acknowledged
        session.soft_ready = not acknowledged
        self.lifecycle.transition(SessionState.READY)
        self.lifecycle.start_watchdog(partial(self._post_tick, generation))
        _ACTIVE_SESSIONS.set(1)
        log.info("Live session ready", soft_ready=session.soft_ready)
        await self._emit({"type": "Ready", "soft_ready": session.soft_ready})

    def _abort_setup(self, exc: BaseException) -> None:
        fut, self._ack_future = self._ack_future, None
        if fut is None or fut.done():
            return
        if self.lifecycle.state is SessionState.HANDSHAKING:
            # connect() is awaiting this future and will see the exception
            fut.set_exception(exc)
        else:
            fut.cancel()

    async def _report_failure(self, message: str, code: Optional[int], reason: str):
        if message:
            await self._emit({"type": "Error", "message": message})
        await self._emit({"type": "Closed", "code": code, "reason": reason})

    # ------------------------------------------------------------------
    # Event queue and dispatcher
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self):
        if self._events is None:
            self._events = asyncio.Queue()
        if self._dispatcher_task is None or self._dispatcher_task.done():
            self._dispatcher_task = asyncio.create_task(self._dispatch_loop(self._events), name="live-session-dispatch")

    def _post(self, event: Union[_FrameEvent, _CloseEvent, _TickEvent]):
        if self._events is not None:
            self._events.put_nowait(event)

    def _post_frame(self, generation: int, raw: Union[str, bytes]):
        self._post(_FrameEvent(generation, raw))

    def _post_close(self, generation: int, code: Optional[int], reason: str):
        self._post(_CloseEvent(generation, CloseFrame(code=code, reason=reason or "")))

    async def _post_tick(self, generation: int):
        self._post(_TickEvent(generation))

    async def _dispatch_loop(self, queue: asyncio.Queue):
        while True:
            event = await queue.get()
            if event.generation != self._generation or self.lifecycle.disposed:
                self._log.debug(
                    "Dropping stale session event",
                    event=type(event).__name__,
                    generation=event.generation,
                    current_generation=self._generation,
                )
                continue
            try:
                if isinstance(event, _FrameEvent):
                    await self._handle_frame(event.raw)
                elif isinstance(event, _CloseEvent):
                    await self._handle_close(event.frame)
                else:
                    await self._handle_tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.error("Error handling live session event", event=type(event).__name__, exc_info=True)

    async def _handle_frame(self, raw: Union[str, bytes]):
        try:
            frame = parse_frame(raw)
        except ProtocolViolation as exc:
            self._log.warning("Dropping malformed frame", error=str(exc))
            return

        if isinstance(frame, SetupAck):
            self._on_setup_ack()
        elif isinstance(frame, BinaryAudio):
            await self._on_audio(frame.data)
        elif isinstance(frame, ServerContent):
            await self._on_server_content(frame)
        elif isinstance(frame, ToolCallFrame):
            self._on_tool_call_frame(frame.calls)
        elif isinstance(frame, ErrorFrame):
            self._log.warning("Live API reported an error", message=frame.message, code=frame.code)
            await self._emit({"type": "Error", "message": frame.message})
        elif isinstance(frame, GoAway):
            self._log.warning("Live API announced session end", time_left=frame.time_left)
        else:
            self._log.debug("Ignoring unrecognised frame", keys=sorted(frame.payload)[:5])

    def _on_setup_ack(self):
        fut = self._ack_future
        if fut is not None and not fut.done():
            fut.set_result(True)
        session = self.lifecycle.session
        if self.lifecycle.state is SessionState.READY and not session.setup_acknowledged:
            session.setup_acknowledged = True
            self._log.info("Setup acknowledged after soft-ready")

    async def _on_audio(self, pcm: bytes):
        if len(pcm) < self.config.audio.min_audio_payload_bytes:
            self._log.debug("Dropping short audio payload", size=len(pcm))
            return
        pcm = pad_to_sample_boundary(pcm)
        _AUDIO_BYTES_RECEIVED_TOTAL.inc(len(pcm))
        self.lifecycle.mark_audio_activity()
        if self.config.audio.playback_enabled:
            self.egress.submit_pcm(pcm)
        await self._emit({"type": "Audio", "data": pcm, "sample_rate": self.config.audio.output_sample_rate_hz})

    async def _on_server_content(self, content: ServerContent):
        pending = self._pending_turn
        if content.interrupted:
            self._log.info("Model turn interrupted")
            await self._emit({"type": "Interrupted"})

        unsolicited: List[FunctionCall] = []
        for part in content.parts:
            if isinstance(part, TextPart):
                if pending is None:
                    await self._emit({"type": "Text", "text": part.text})
                else:
                    pending.text.append(part.text)
                    if pending.on_text is not None:
                        try:
                            await maybe_await(pending.on_text(part.text))
                        except Exception:
                            self._log.error("Text callback failed", exc_info=True)
            elif isinstance(part, AudioPart):
                try:
                    pcm = decode_pcm_base64(part.data)
                except ValueError:
                    continue
                await self._on_audio(pcm)
            elif pending is not None:
                pending.function_calls.append(part)
            else:
                unsolicited.append(part)

        if content.grounding_metadata is not None:
            if pending is not None:
                pending.grounding_metadata = content.grounding_metadata
            else:
                self._voice_grounding = content.grounding_metadata

        if unsolicited:
            self._on_tool_call_frame(unsolicited)

        if content.turn_complete:
            if pending is not None:
                sources = extract_sources(pending.grounding_metadata)
                pending.resolve()
            else:
                sources = extract_sources(self._voice_grounding)
                self._voice_grounding = None
            await self._emit({"type": "TurnComplete", "sources": sources})

    def _on_tool_call_frame(self, calls: List[FunctionCall]):
        pending = self._pending_turn
        if pending is not None:
            # The model stops and waits for our tool response: the round is over.
            pending.function_calls.extend(calls)
            pending.resolve()
            return
        self._spawn(self._answer_tool_calls(calls, self._generation), name="live-tool-calls")

    async def _answer_tool_calls(self, calls: List[FunctionCall], generation: int):
        """Resolve tool calls that arrived outside a caller turn (voice conversation)."""
        _, responses = await self.orchestrator.resolve_round(calls)
        if generation != self._generation:
            self._log.info("Dropping tool responses for a superseded connection", count=len(responses))
            return
        await self._send_frame(ToolResponse(responses=responses))

    async def _handle_close(self, frame: CloseFrame):
        code, reason = frame.code, frame.reason
        state = self.lifecycle.state
        log = self._log.bind(code=code, reason=reason, state=state.value)
        self._transport = None

        if state is SessionState.HANDSHAKING:
            log.warning("Socket closed before setup was acknowledged")
            self.lifecycle.transition(SessionState.CLOSED)
            fut = self._ack_future
            if fut is not None and not fut.done():
                fut.set_exception(HandshakeRejected(code, reason))
            return
        if state is not SessionState.READY:
            return

        self.lifecycle.stop_watchdog()
        self.lifecycle.transition(SessionState.CLOSED)
        _ACTIVE_SESSIONS.set(0)

        session = self.lifecycle.session
        if session.soft_ready and not session.setup_acknowledged and self.negotiator.should_retry(reason):
            # Rejection that arrived after the grace window: same one-shot fallback.
            _CAPABILITY_FALLBACKS_TOTAL.inc()
            self._fail_pending(FatalTransportError("Setup rejected; reconnecting", code=code, reason=reason))
            self._spawn(self._reconnect_reduced(), name="live-reduced-reconnect")
            return

        message = close_message(code, reason)
        log.warning("Live session closed by remote")
        self._fail_pending(FatalTransportError(message or "Connection closed", code=code, reason=reason))
        await self.stop_microphone()
        self.egress.close()
        if message:
            await self._emit({"type": "Error", "message": message})
        await self._emit({"type": "Closed", "code": code, "reason": reason})

    async def _handle_tick(self):
        self.egress.check_health()
        try:
            self.lifecycle.check_lifetime()
        except SessionExpired as exc:
            if not self._renewing:
                self._renewing = True
                self._log.info("Session lifetime budget reached", detail=str(exc))
                self._spawn(self._renew(), name="live-session-renewal")

    # ------------------------------------------------------------------
    # Renewal and reconnects
    # ------------------------------------------------------------------

    async def _renew(self):
        """Soft disconnect and reconnect before the server's session ceiling."""
        self._log.info("Renewing live session", elapsed_sec=round(self.lifecycle.elapsed(), 1))
        _SESSION_RENEWALS_TOTAL.inc()
        try:
            await self._soft_disconnect()
            await asyncio.sleep(self.config.session.reconnect_pause_sec)
            if self.lifecycle.disposed:
                return
            await self.connect()
        except Exception as exc:
            if self.lifecycle.disposed:
                return
            self._log.error("Automatic reconnection failed", error=str(exc))
            await self._emit({"type": "Error", "message": RECONNECT_FAILED_MESSAGE})
            return
        finally:
            self._renewing = False
        await self._emit({"type": "SessionRenewed"})

    async def _soft_disconnect(self):
        # Supersede the old connection first so its close event is dropped.
        self._generation += 1
        self.lifecycle.stop_watchdog()
        self._fail_pending(FatalTransportError("Live session renewed while a turn was in flight"))
        await self._close_transport()
        if self.egress.device is not None:
            self.egress.reset()
        _ACTIVE_SESSIONS.set(0)

    async def _reconnect_reduced(self):
        try:
            await self.connect()
        except Exception as exc:
            # connect() has already reported the failure as events
            self._log.error("Reduced-capability reconnect failed", error=str(exc))

    async def _close_transport(self):
        transport, self._transport = self._transport, None
        state = self.lifecycle.state
        if state in (SessionState.HANDSHAKING, SessionState.READY):
            self.lifecycle.transition(SessionState.CLOSING)
        if transport is not None:
            try:
                await transport.close()
            except Exception:
                self._log.debug("Transport close failed", exc_info=True)
        if self.lifecycle.state in (SessionState.CONNECTING, SessionState.CLOSING):
            self.lifecycle.transition(SessionState.CLOSED)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _send_frame(self, frame: OutboundFrame) -> bool:
        transport = self._transport
        if transport is None or self.lifecycle.disposed:
            return False
        return await transport.send(encode_frame(frame))

    async def _round_trip(
        self,
        frame: OutboundFrame,
        on_text: Optional[TextCallback],
        *,
        expect_reply: bool = True,
    ) -> Optional[ModelResponse]:
        if not self.is_ready():
            raise FatalTransportError("Live session is not ready")
        pending = _PendingTurn(on_text) if expect_reply else None
        if pending is not None:
            self._pending_turn = pending
        try:
            if not await self._send_frame(frame):
                raise FatalTransportError("Live session closed before the request was sent")
            if pending is None:
                return None
            return await pending.future
        finally:
            if pending is not None:
                if self._pending_turn is pending:
                    self._pending_turn = None
                if pending.future.done() and not pending.future.cancelled():
                    # Mark a failure as retrieved even when the send itself failed
                    pending.future.exception()

    def _fail_pending(self, exc: FatalTransportError):
        pending, self._pending_turn = self._pending_turn, None
        if pending is not None:
            pending.fail(exc)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def _on_tool_call(self, tool_call: ToolCall):
        await self._emit({"type": "ToolCall", "tool_call": tool_call.to_dict()})

    async def _emit(self, event: Dict[str, Any]):
        if self.on_event is None:
            return
        try:
            await maybe_await(self.on_event(event))
        except Exception:
            self._log.error("Event handler failed", event_type=event.get("type"), exc_info=True)

    def _spawn(self, coro, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("Background task failed", task=task.get_name(), error=str(exc))


__all__ = [
    "CLOSE_CODE_MESSAGES",
    "RECONNECT_FAILED_MESSAGE",
    "LiveSessionEngine",
    "LiveTurnChannel",
    "close_message",
]
