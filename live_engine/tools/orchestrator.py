"""
ToolCallOrchestrator - the agentic tool loop.

A caller message goes out as one client turn (bounded history followed by
the user text). Without a tool executor the reply text is streamed to the
caller as it arrives. With one, the loop runs until the model stops asking
for tools or the round limit is reached:

    reply = send_turn(history + message)
    while reply has function calls and rounds < max_rounds:
        resolve every call in order (confirm dangerous ones, execute)
        reply = send_tool_responses(all results of the round)

Each round's results go back as a single tool response in call order, one
entry per call, whatever happened to the individual calls. Tool failures and
declined confirmations are reported to the model as structured failures.
Only transport failures escape the loop.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from prometheus_client import Counter, Histogram
from structlog import get_logger

from ..core.callbacks import maybe_await
from ..core.errors import ToolExecutionError, UserDeclinedConfirmation
from ..core.history import MAX_HISTORY_MESSAGES, build_history
from ..core.models import FunctionCall, ModelResponse, ToolCall, ToolCallStatus, TurnResult
from .base import DEFAULT_DANGEROUS_TOOLS, ConfirmationProvider, ToolExecutor, describe_action
from .grounding import extract_sources

logger = get_logger(__name__)

DEFAULT_MAX_ROUNDS = 10
DEFAULT_FALLBACK_MESSAGE = "I've carried out the requested actions. Let me know if you need anything else."
DECLINED_ERROR = "Action cancelled by the user."
ROUND_LIMIT_ERROR = "Tool round limit reached; call not executed."

_TOOL_CALLS_TOTAL = Counter(
    "live_engine_tool_calls_total",
    "Tool calls resolved by the orchestrator",
    labelnames=("tool", "outcome"),
)
_AGENTIC_ROUNDS = Histogram(
    "live_engine_agentic_rounds",
    "Tool rounds needed to complete one caller message",
    buckets=(0, 1, 2, 3, 5, 8, 10),
)

TextCallback = Callable[[str], Any]
ToolCallObserver = Callable[[ToolCall], Any]


class TurnChannel(ABC):
    """Round-trip access to the model used by the agentic loop."""

    @abstractmethod
    async def send_turn(self, turns: List[Dict[str, Any]], *, on_text: Optional[TextCallback] = None) -> ModelResponse:
        """Send a client turn and collect the reply until turn completion or a tool call."""
        pass

    @abstractmethod
    async def send_tool_responses(
        self,
        responses: List[Dict[str, Any]],
        *,
        on_text: Optional[TextCallback] = None,
        expect_reply: bool = True,
    ) -> Optional[ModelResponse]:
        """Send one batch of tool results; collect the reply unless ``expect_reply`` is False."""
        pass


class ToolCallOrchestrator:
    def __init__(
        self,
        executor: Optional[ToolExecutor] = None,
        confirmer: Optional[ConfirmationProvider] = None,
        *,
        dangerous_tools: Iterable[str] = DEFAULT_DANGEROUS_TOOLS,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        max_history_messages: int = MAX_HISTORY_MESSAGES,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
        observer: Optional[ToolCallObserver] = None,
    ):
        self.executor = executor
        self.confirmer = confirmer
        self.dangerous_tools: FrozenSet[str] = frozenset(dangerous_tools)
        self.max_rounds = max(1, int(max_rounds))
        self.max_history_messages = int(max_history_messages)
        self.fallback_message = fallback_message
        self.observer = observer
        # Session-scoped call ids, in order of arrival
        self._ids = itertools.count(1)

    @property
    def agentic(self) -> bool:
        return self.executor is not None

    async def run(
        self,
        channel: TurnChannel,
        message: str,
        history: Optional[Sequence[Any]] = None,
        on_text: Optional[TextCallback] = None,
    ) -> TurnResult:
        turns = build_history(history or [], self.max_history_messages)
        turns.append({"role": "user", "parts": [{"text": message}]})

        if not self.agentic:
            reply = await channel.send_turn(turns, on_text=on_text)
            if reply.function_calls:
                # Nothing can execute them; report failures so the model is not left waiting.
                _, responses = await self.resolve_round(reply.function_calls)
                await channel.send_tool_responses(responses, expect_reply=False)
            return TurnResult(text=reply.text, sources=extract_sources(reply.grounding_metadata))

        reply = await channel.send_turn(turns)
        executed: List[ToolCall] = []
        rounds = 0
        hit_limit = False
        while reply.function_calls:
            if rounds >= self.max_rounds:
                hit_limit = True
                logger.warning(
                    "Agentic loop reached round limit",
                    max_rounds=self.max_rounds,
                    unanswered_calls=len(reply.function_calls),
                )
                # The model is still waiting on these; answer without executing.
                await channel.send_tool_responses(self._limit_responses(reply.function_calls), expect_reply=False)
                break
            round_calls, responses = await self.resolve_round(reply.function_calls)
            executed.extend(round_calls)
            rounds += 1
            reply = await channel.send_tool_responses(responses)

        _AGENTIC_ROUNDS.observe(rounds)
        if hit_limit:
            text, sources = self.fallback_message, None
        else:
            text, sources = reply.text, extract_sources(reply.grounding_metadata)
        if on_text is not None and text:
            await maybe_await(on_text(text))
        return TurnResult(text=text, sources=sources, tool_calls=executed, rounds=rounds, hit_round_limit=hit_limit)

    async def resolve_round(self, calls: Sequence[FunctionCall]) -> Tuple[List[ToolCall], List[Dict[str, Any]]]:
        """Resolve calls sequentially; returns the calls and their wire responses in order."""
        resolved: List[ToolCall] = []
        responses: List[Dict[str, Any]] = []
        for call in calls:
            tool_call = await self.resolve_call(call)
            resolved.append(tool_call)
            responses.append(self._response_entry(tool_call))
        return resolved, responses

    async def resolve_call(self, call: FunctionCall) -> ToolCall:
        tool_call = ToolCall(id=next(self._ids), name=call.name, args=dict(call.args or {}), remote_id=call.id)
        log = logger.bind(tool=tool_call.name, tool_call_id=tool_call.id)

        if self.executor is None or not self.executor.has_tool(tool_call.name):
            log.warning("Model requested an unknown tool")
            self._finish(tool_call, ToolCallStatus.FAILED, {"success": False, "error": f"Unknown tool: {tool_call.name}"}, "unknown")
            await self._notify(tool_call)
            return tool_call

        try:
            if tool_call.name in self.dangerous_tools:
                await self._confirm(tool_call)
            result = await self._execute(tool_call)
        except UserDeclinedConfirmation:
            log.info("Dangerous tool declined", confirmer=self.confirmer is not None)
            self._finish(tool_call, ToolCallStatus.FAILED, {"success": False, "error": DECLINED_ERROR}, "declined")
        except ToolExecutionError as exc:
            log.warning("Tool execution failed", error=str(exc))
            self._finish(tool_call, ToolCallStatus.FAILED, {"success": False, "error": str(exc)}, "error")
        else:
            payload = result if isinstance(result, dict) else {"result": result}
            log.info("Tool executed")
            self._finish(tool_call, ToolCallStatus.COMPLETED, payload, "success")
        await self._notify(tool_call)
        return tool_call

    async def _confirm(self, tool_call: ToolCall) -> None:
        """Raises UserDeclinedConfirmation unless the user approves. No confirmer declines."""
        tool_call.status = ToolCallStatus.AWAITING_CONFIRMATION
        if self.confirmer is None:
            raise UserDeclinedConfirmation(tool_call.name)
        description = describe_action(tool_call.name, tool_call.args)
        if not await self.confirmer.confirm(description, tool_name=tool_call.name):
            raise UserDeclinedConfirmation(tool_call.name)

    async def _execute(self, tool_call: ToolCall) -> Any:
        tool_call.status = ToolCallStatus.EXECUTING
        try:
            return await self.executor.execute(tool_call.name, tool_call.args)
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(str(exc)) from exc

    def _finish(self, tool_call: ToolCall, status: ToolCallStatus, result: Dict[str, Any], outcome: str) -> None:
        tool_call.status = status
        tool_call.result = result
        _TOOL_CALLS_TOTAL.labels(tool_call.name, outcome).inc()

    async def _notify(self, tool_call: ToolCall) -> None:
        if self.observer is None:
            return
        try:
            await maybe_await(self.observer(tool_call))
        except Exception:
            logger.error("Tool call observer failed", tool=tool_call.name, exc_info=True)

    @staticmethod
    def _response_entry(tool_call: ToolCall) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"name": tool_call.name, "response": tool_call.result or {}}
        if tool_call.remote_id:
            entry["id"] = tool_call.remote_id
        return entry

    @staticmethod
    def _limit_responses(calls: Sequence[FunctionCall]) -> List[Dict[str, Any]]:
        entries = []
        for call in calls:
            entry: Dict[str, Any] = {"name": call.name, "response": {"success": False, "error": ROUND_LIMIT_ERROR}}
            if call.id:
                entry["id"] = call.id
            entries.append(entry)
        return entries


__all__ = [
    "DEFAULT_MAX_ROUNDS",
    "DEFAULT_FALLBACK_MESSAGE",
    "DECLINED_ERROR",
    "ROUND_LIMIT_ERROR",
    "TurnChannel",
    "ToolCallOrchestrator",
]
