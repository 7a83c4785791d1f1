"""
LiveSessionEngine against a scripted in-memory transport.

The fake network answers the setup frame according to a per-connection
script ("ack", "silent", or a remote close) and lets tests push inbound
frames or react to outbound ones.
"""

import asyncio
import base64
import json

import numpy as np
import pytest

from live_engine.audio import CaptureDevice, PlaybackDevice
from live_engine.config import AudioConfig, LiveEngineConfig, SessionTimingConfig
from live_engine.core import EngineConnectionError, FatalTransportError, HandshakeRejected, SessionState
from live_engine.providers.base import TransportInterface
from live_engine.providers.gemini_live import LiveSessionEngine, close_message
from live_engine.tools import ToolExecutor

INVALID_ARGUMENT = "Request contains an invalid argument."


class _FakeTransport(TransportInterface):
    def __init__(self, network, *, on_frame, on_close):
        super().__init__(on_frame=on_frame, on_close=on_close)
        self.network = network
        self.url = None
        self.sent = []
        self._open = False
        self._notified = False

    @property
    def closed(self):
        return not self._open

    async def connect(self, url, timeout):
        if self.network.connect_error is not None:
            raise self.network.connect_error
        self.url = url
        self._open = True

    async def send(self, message):
        if not self._open:
            return False
        payload = json.loads(message)
        self.sent.append(payload)
        self.network.sent.append(payload)
        if "setup" in payload:
            self.network.answer_setup(self)
        elif self.network.on_send is not None:
            self.network.on_send(self, payload)
        return True

    async def close(self):
        self._finish(1000, "")

    def deliver(self, raw):
        asyncio.get_running_loop().call_soon(self.on_frame, raw)

    def remote_close(self, code, reason=""):
        asyncio.get_running_loop().call_soon(self._finish, code, reason)

    def _finish(self, code, reason):
        was_open, self._open = self._open, False
        if was_open and not self._notified:
            self._notified = True
            self.on_close(code, reason)


class _FakeNetwork:
    def __init__(self, setup_script=("ack",)):
        self.setup_script = list(setup_script)
        self.transports = []
        self.sent = []
        self.connect_error = None
        self.on_send = None

    def __call__(self, *, on_frame, on_close):
        transport = _FakeTransport(self, on_frame=on_frame, on_close=on_close)
        self.transports.append(transport)
        return transport

    def answer_setup(self, transport):
        action = self.setup_script.pop(0) if self.setup_script else "ack"
        if action == "ack":
            transport.deliver('{"setupComplete": {}}')
        elif action == "silent":
            pass
        else:
            code, reason = action
            transport.remote_close(code, reason)

    def setups(self):
        return [m["setup"] for m in self.sent if "setup" in m]


class _FakePlayback(PlaybackDevice):
    def __init__(self, sample_rate):
        self.sample_rate = sample_rate
        self.played = []
        self.closed = False

    @property
    def current_time(self):
        return 0.0

    def play(self, samples, start_time):
        self.played.append(samples)

    def close(self):
        self.closed = True


class _FakeCapture(CaptureDevice):
    def __init__(self, sample_rate, block_size, on_block):
        self.on_block = on_block
        self.closed = False

    def start(self):
        pass

    def close(self):
        self.closed = True


class _Executor(ToolExecutor):
    def __init__(self, tools):
        self.tools = tools
        self.executed = []

    async def execute(self, name, args):
        self.executed.append((name, args))
        return self.tools[name]

    def has_tool(self, name):
        return name in self.tools

    def declarations(self):
        return [{"name": name, "description": f"{name} tool"} for name in self.tools]


def _config(**session):
    timing = {"setup_ack_grace_sec": 0.05, "reconnect_pause_sec": 0.01}
    timing.update(session)
    return LiveEngineConfig(
        api_key="test-key",
        endpoint="wss://live.example.test/ws",
        session=SessionTimingConfig(**timing),
        audio=AudioConfig(playback_enabled=True),
    )


def _engine(network, events, config=None, **kwargs):
    players = []

    def playback_factory(sample_rate):
        device = _FakePlayback(sample_rate)
        players.append(device)
        return device

    engine = LiveSessionEngine(
        config or _config(),
        events.append,
        transport_factory=network,
        playback_factory=playback_factory,
        **kwargs,
    )
    engine.test_players = players
    return engine


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _types(events):
    return [e["type"] for e in events]


@pytest.mark.unit
def test_close_messages():
    assert close_message(1006, "whatever") == "Connection closed unexpectedly."
    assert close_message(1008, "") == "API key lacks access to the Live API."
    assert close_message(4003, "quota exceeded") == "quota exceeded"
    assert close_message(1000, "") == ""
    assert close_message(None, "") == ""


@pytest.mark.asyncio
@pytest.mark.unit
async def test_acknowledged_setup_makes_session_ready():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)

    await engine.connect()

    assert engine.is_ready()
    assert engine.state is SessionState.READY
    assert events == [{"type": "Ready", "soft_ready": False}]
    assert network.transports[0].url == "wss://live.example.test/ws?key=test-key"
    setup = network.setups()[0]
    assert setup["model"].startswith("models/")
    assert setup["tools"][0] == {"googleSearch": {}}
    assert engine.lifecycle.session.setup_acknowledged is True
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_missing_ack_becomes_soft_ready_and_late_ack_is_recorded():
    network, events = _FakeNetwork(["silent"]), []
    engine = _engine(network, events)

    await engine.connect()

    assert engine.is_ready()
    assert events == [{"type": "Ready", "soft_ready": True}]
    assert engine.lifecycle.session.soft_ready is True

    network.transports[0].deliver('{"setupComplete": {}}')
    await _wait_until(lambda: engine.lifecycle.session.setup_acknowledged)
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_invalid_argument_rejection_retries_once_without_search():
    network, events = _FakeNetwork([(1007, INVALID_ARGUMENT), "ack"]), []
    engine = _engine(network, events, tool_executor=_Executor({"read_file": {}}))

    await engine.connect()

    assert engine.is_ready()
    assert len(network.transports) == 2
    first, second = network.setups()
    assert first["tools"] == [
        {"googleSearch": {}},
        {"functionDeclarations": [{"name": "read_file", "description": "read_file tool"}]},
    ]
    assert second["tools"] == [{"functionDeclarations": [{"name": "read_file", "description": "read_file tool"}]}]
    assert _types(events) == ["Ready"]
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_rejection_is_fatal():
    network, events = _FakeNetwork([(1007, INVALID_ARGUMENT), (1007, INVALID_ARGUMENT)]), []
    engine = _engine(network, events)

    with pytest.raises(HandshakeRejected):
        await engine.connect()

    assert len(network.transports) == 2
    assert events == [
        {"type": "Error", "message": INVALID_ARGUMENT},
        {"type": "Closed", "code": 1007, "reason": INVALID_ARGUMENT},
    ]
    assert not engine.is_ready()
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_policy_rejection_is_not_retried():
    network, events = _FakeNetwork([(1008, "")]), []
    engine = _engine(network, events)

    with pytest.raises(HandshakeRejected):
        await engine.connect()

    assert len(network.transports) == 1
    assert events[0] == {"type": "Error", "message": "API key lacks access to the Live API."}
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_connect_failure_is_reported():
    network, events = _FakeNetwork(), []
    network.connect_error = EngineConnectionError("Connection timed out after 15s")
    engine = _engine(network, events)

    with pytest.raises(EngineConnectionError):
        await engine.connect()

    assert engine.state is SessionState.CLOSED
    assert events == [
        {"type": "Error", "message": "Connection timed out after 15s"},
        {"type": "Closed", "code": None, "reason": ""},
    ]
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_missing_api_key_fails_before_connecting():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events, config=LiveEngineConfig(api_key=None))

    with pytest.raises(ValueError):
        await engine.connect()

    assert network.transports == []
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_abnormal_close_after_ready_is_surfaced():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)
    await engine.connect()

    network.transports[0].remote_close(1006)
    await _wait_until(lambda: "Closed" in _types(events))

    assert not engine.is_ready()
    assert events[-2:] == [
        {"type": "Error", "message": "Connection closed unexpectedly."},
        {"type": "Closed", "code": 1006, "reason": ""},
    ]
    assert await engine.send_text("hello") is False
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_late_rejection_after_soft_ready_reconnects_reduced():
    network, events = _FakeNetwork(["silent", "ack"]), []
    engine = _engine(network, events)
    await engine.connect()

    network.transports[0].remote_close(1007, INVALID_ARGUMENT)
    await _wait_until(lambda: len(network.transports) == 2 and engine.is_ready())

    assert "googleSearch" not in json.dumps(network.setups()[1])
    assert "Closed" not in _types(events)
    assert _types(events) == ["Ready", "Ready"]
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_session_is_renewed_before_lifetime_ceiling():
    network, events = _FakeNetwork(), []
    config = _config(max_session_duration_sec=0.3, renewal_margin_sec=0.2, lifetime_check_interval_sec=0.02)
    engine = _engine(network, events, config=config)
    await engine.connect()

    await _wait_until(lambda: "SessionRenewed" in _types(events))

    assert engine.lifecycle.disposed is False
    assert engine.is_ready()
    assert len(network.transports) >= 2
    assert network.transports[0].closed
    assert "Closed" not in _types(events)
    assert "Error" not in _types(events)
    assert await engine.send_text("still there?") is True
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_disconnect_is_idempotent_and_silences_sends():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)
    await engine.connect()

    await engine.disconnect()
    await engine.disconnect()

    assert network.transports[0].closed
    assert _types(events).count("Closed") == 1
    assert events[-1] == {"type": "Closed", "code": 1000, "reason": "disconnected"}
    assert await engine.send_text("hello") is False
    assert await engine.send_audio_chunk(b"\x00\x01" * 10) is False
    assert engine.lifecycle.renewal_due() is False


@pytest.mark.asyncio
@pytest.mark.unit
async def test_outbound_text_and_audio_frames():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)
    await engine.connect()

    assert await engine.send_text("hi there") is True
    assert await engine.send_audio_chunk(b"\x01\x02\x03\x04") is True

    assert network.sent[-2] == {
        "clientContent": {"turns": [{"role": "user", "parts": [{"text": "hi there"}]}], "turnComplete": True}
    }
    audio = network.sent[-1]["realtimeInput"]["audio"]
    assert audio["mimeType"] == "audio/pcm;rate=16000"
    assert base64.b64decode(audio["data"]) == b"\x01\x02\x03\x04"
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_binary_audio_is_padded_or_dropped_before_playback():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)
    await engine.connect()

    transport = network.transports[0]
    transport.deliver(b"\xff" * 50)
    transport.deliver(b"\xff" * 201)
    await _wait_until(lambda: "Audio" in _types(events))
    await asyncio.sleep(0.02)

    audio_events = [e for e in events if e["type"] == "Audio"]
    assert [len(e["data"]) for e in audio_events] == [202]
    assert audio_events[0]["data"] == b"\xff" * 201 + b"\x00"
    assert audio_events[0]["sample_rate"] == 24000
    assert [len(samples) for samples in engine.test_players[0].played] == [101]
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_voice_text_and_grounded_turn_complete():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)
    await engine.connect()

    network.transports[0].deliver(
        json.dumps(
            {
                "serverContent": {
                    "modelTurn": {"parts": [{"text": "It is sunny."}]},
                    "groundingMetadata": {"groundingChunks": [{"web": {"uri": "https://w.example", "title": "W"}}]},
                    "turnComplete": True,
                }
            }
        )
    )
    network.transports[0].deliver('{"serverContent": {"interrupted": true}}')
    await _wait_until(lambda: "Interrupted" in _types(events))

    assert {"type": "Text", "text": "It is sunny."} in events
    complete = next(e for e in events if e["type"] == "TurnComplete")
    assert [s.uri for s in complete["sources"]] == ["https://w.example"]
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_tool_call_during_voice_gets_tool_response():
    network, events = _FakeNetwork(), []
    executor = _Executor({"get_time": {"time": "noon"}})
    engine = _engine(network, events, tool_executor=executor)
    await engine.connect()

    network.transports[0].deliver(
        json.dumps({"toolCall": {"functionCalls": [{"id": "c1", "name": "get_time", "args": {}}]}})
    )
    await _wait_until(lambda: any("toolResponse" in m for m in network.sent))

    response = next(m for m in network.sent if "toolResponse" in m)
    assert response["toolResponse"]["functionResponses"] == [
        {"id": "c1", "name": "get_time", "response": {"time": "noon"}}
    ]
    tool_events = [e for e in events if e["type"] == "ToolCall"]
    assert tool_events[0]["tool_call"]["status"] == "completed"
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_send_message_runs_agentic_round():
    network, events = _FakeNetwork(), []
    executor = _Executor({"read_file": {"content": "hi"}})
    engine = _engine(network, events, tool_executor=executor)

    def respond(transport, payload):
        if "clientContent" in payload:
            transport.deliver(
                json.dumps(
                    {"toolCall": {"functionCalls": [{"id": "r1", "name": "read_file", "args": {"path": "a.txt"}}]}}
                )
            )
        elif "toolResponse" in payload:
            transport.deliver(
                json.dumps(
                    {"serverContent": {"modelTurn": {"parts": [{"text": "The file says hi"}]}, "turnComplete": True}}
                )
            )

    network.on_send = respond
    await engine.connect()
    seen = []

    result = await asyncio.wait_for(
        engine.send_message("read a.txt", [{"role": "user", "text": "hello"}, {"role": "model", "text": "hey"}], seen.append),
        timeout=2.0,
    )

    assert result.text == "The file says hi"
    assert result.rounds == 1
    assert executor.executed == [("read_file", {"path": "a.txt"})]
    assert seen == ["The file says hi"]
    turn = next(m for m in network.sent if "clientContent" in m)["clientContent"]
    assert [t["role"] for t in turn["turns"]] == ["user", "model", "user"]
    assert turn["turnComplete"] is True
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_send_message_fails_when_session_closes_mid_turn():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)

    def drop(transport, payload):
        if "clientContent" in payload:
            transport.remote_close(1006)

    network.on_send = drop
    await engine.connect()

    with pytest.raises(FatalTransportError):
        await asyncio.wait_for(engine.send_message("hello"), timeout=2.0)
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_send_message_requires_ready_session():
    engine = _engine(_FakeNetwork(), [])
    with pytest.raises(FatalTransportError):
        await engine.send_message("hello")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_microphone_audio_flows_to_realtime_input():
    network, events = _FakeNetwork(), []
    captures = []

    def capture_factory(sample_rate, block_size, on_block):
        device = _FakeCapture(sample_rate, block_size, on_block)
        captures.append(device)
        return device

    engine = _engine(network, events, capture_factory=capture_factory)
    await engine.connect()
    await engine.start_microphone()

    captures[0].on_block(np.zeros(64, dtype=np.float32))
    await _wait_until(lambda: any("realtimeInput" in m for m in network.sent))

    chunk = next(m for m in network.sent if "realtimeInput" in m)["realtimeInput"]["audio"]["data"]
    assert base64.b64decode(chunk) == b"\x00\x00" * 64
    await engine.disconnect()
    assert engine._ingest is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconnect_while_close_event_is_still_queued():
    network, events = _FakeNetwork(), []
    engine = _engine(network, events)
    await engine.connect()

    # Socket drops; its close notification is queued but not yet handled
    stale = network.transports[0]
    stale._open = False
    stale.on_close(1006, "")
    assert not engine.is_ready()
    assert engine.state is SessionState.READY

    await engine.connect()
    await asyncio.sleep(0.02)

    assert engine.is_ready()
    assert len(network.transports) == 2
    assert _types(events) == ["Ready", "Ready"]
    assert await engine.send_text("back again") is True
    await engine.disconnect()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_fatal_close_stops_capture_and_playback():
    network, events = _FakeNetwork(), []
    captures = []

    def capture_factory(sample_rate, block_size, on_block):
        device = _FakeCapture(sample_rate, block_size, on_block)
        captures.append(device)
        return device

    engine = _engine(network, events, capture_factory=capture_factory)
    await engine.connect()
    await engine.start_microphone()
    network.transports[0].deliver(b"\xff" * 400)
    await _wait_until(lambda: "Audio" in _types(events))

    network.transports[0].remote_close(1006)
    await _wait_until(lambda: "Closed" in _types(events))

    assert captures[0].closed is True
    assert engine._ingest is None
    assert engine.test_players[0].closed is True
    assert engine.egress.device is None
    await engine.disconnect()
