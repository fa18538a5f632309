"""Conversation loop controller."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Protocol

from loguru import logger

from sanctuary.core.aggregator import RoundResult, StreamAggregator, TextSink
from sanctuary.core.dispatcher import ToolDispatcher
from sanctuary.core.turn import ConversationTurn
from sanctuary.core.types import ClientAction, StreamDelta, ToolOutcome
from sanctuary.errors import TransportError
from sanctuary.telemetry.pricing import UsageRecord
from sanctuary.tools.context import ToolContext

TurnStatus = Literal["completed", "aborted"]

STOP_COMPLETE = "complete"
STOP_FOLLOW_UP_LIMIT = "follow_up_limit"
STOP_ROUND_BUDGET = "round_budget"
STOP_TERMINAL_TOOL = "terminal_tool"
STOP_TRANSPORT_ERROR = "transport_error"
STOP_INTERNAL_ERROR = "internal_error"


class ModelClient(Protocol):
    """Streaming model provider."""

    def stream(self, *, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> AsyncIterator[StreamDelta]: ...


class LoopPhase(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    FINAL = "final"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class LoopPolicy:
    """When a turn may issue another model round-trip.

    Bounded turns get exactly one follow-up, and only when the first round
    asked for tools without saying anything. Unbounded turns continue while
    the model keeps calling tools, up to ``max_rounds``.
    """

    single_follow_up: bool
    max_rounds: int | None = None

    @classmethod
    def bounded(cls) -> LoopPolicy:
        return cls(single_follow_up=True, max_rounds=2)

    @classmethod
    def unbounded(cls, max_rounds: int | None = None) -> LoopPolicy:
        return cls(single_follow_up=False, max_rounds=max_rounds)

    def stop_after_tools(self, rounds: int, round_text: str) -> str | None:
        """Stop reason once a round's tools ran, or None to go around again."""
        if self.single_follow_up:
            if rounds == 1 and not round_text.strip():
                return None
            return STOP_FOLLOW_UP_LIMIT
        if self.max_rounds is not None and rounds >= self.max_rounds:
            return STOP_ROUND_BUDGET
        return None


@dataclass(frozen=True)
class TurnOutcome:
    """Everything the caller needs once a turn reached its terminal state."""

    status: TurnStatus
    stop_reason: str
    text: str
    actions: tuple[ClientAction, ...] = ()
    outcomes: tuple[ToolOutcome, ...] = ()
    usage: UsageRecord = field(default_factory=UsageRecord)
    rounds: int = 0
    elapsed_ms: int = 0
    error: str | None = None

    @property
    def aborted(self) -> bool:
        return self.status == "aborted"

    def domains(self) -> list[str]:
        found: set[str] = set()
        for action in self.actions:
            found.update(action.tags())
        return sorted(found)

    def tool_names(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes]


@dataclass
class LoopState:
    turn: ConversationTurn
    context: ToolContext
    on_text: TextSink | None = None
    phase: LoopPhase = LoopPhase.AWAITING_MODEL
    rounds: int = 0
    last_round: RoundResult | None = None
    text_parts: list[str] = field(default_factory=list)
    outcomes: list[ToolOutcome] = field(default_factory=list)
    actions: list[ClientAction] = field(default_factory=list)
    usage: UsageRecord = field(default_factory=UsageRecord)
    streaming: StreamAggregator | None = None
    status: TurnStatus = "completed"
    stop_reason: str = STOP_COMPLETE
    error: str | None = None


PhaseStep = Callable[[LoopState], Awaitable[LoopPhase]]


class ConversationLoop:
    """Drives one turn through model round-trips and tool batches.

    Each phase handler returns the next phase; ``run`` trampolines until the
    state reaches ``TERMINAL``.
    """

    def __init__(
        self,
        *,
        model: ModelClient,
        dispatcher: ToolDispatcher,
        policy: LoopPolicy,
        tools: list[dict[str, Any]],
        model_timeout_seconds: float | None = None,
    ) -> None:
        self._model = model
        self._dispatcher = dispatcher
        self._policy = policy
        self._tools = tools
        self._model_timeout_seconds = model_timeout_seconds
        self._steps: dict[LoopPhase, PhaseStep] = {
            LoopPhase.AWAITING_MODEL: self._await_model,
            LoopPhase.STREAMING: self._stream,
            LoopPhase.TOOLS_PENDING: self._run_tools,
            LoopPhase.FINAL: self._finalize,
        }

    @property
    def policy(self) -> LoopPolicy:
        return self._policy

    async def run(
        self, turn: ConversationTurn, context: ToolContext, on_text: TextSink | None = None
    ) -> TurnOutcome:
        state = LoopState(turn=turn, context=context, on_text=on_text)
        try:
            while state.phase is not LoopPhase.TERMINAL:
                state.phase = await self._steps[state.phase](state)
        except Exception as exc:
            logger.exception("loop.turn.error turn={} phase={}", turn.id, state.phase)
            if state.streaming is not None:
                state.text_parts.append(state.streaming.text)
            state.status = "aborted"
            state.stop_reason = STOP_INTERNAL_ERROR
            state.error = f"{type(exc).__name__}: {exc}"
        logger.info(
            "loop.turn.end turn={} status={} stop_reason={} rounds={}",
            turn.id,
            state.status,
            state.stop_reason,
            state.rounds,
        )
        return TurnOutcome(
            status=state.status,
            stop_reason=state.stop_reason,
            text="".join(state.text_parts),
            actions=tuple(state.actions),
            outcomes=tuple(state.outcomes),
            usage=state.usage,
            rounds=state.rounds,
            elapsed_ms=turn.elapsed_ms(),
            error=state.error,
        )

    async def _await_model(self, state: LoopState) -> LoopPhase:
        state.rounds += 1
        logger.info("loop.round.start turn={} round={}", state.turn.id, state.rounds)
        return LoopPhase.STREAMING

    async def _stream(self, state: LoopState) -> LoopPhase:
        aggregator = StreamAggregator(on_text=state.on_text)
        state.streaming = aggregator
        start = time.monotonic()
        try:
            async with asyncio.timeout(self._model_timeout_seconds):
                async for delta in self._model.stream(messages=state.turn.provider_messages(), tools=self._tools):
                    await aggregator.feed(delta)
        except (TransportError, TimeoutError) as exc:
            error = str(exc) or f"no response within {self._model_timeout_seconds}s"
            logger.error("loop.round.aborted turn={} round={} error={}", state.turn.id, state.rounds, error)
            state.text_parts.append(aggregator.text)
            state.status = "aborted"
            state.stop_reason = STOP_TRANSPORT_ERROR
            state.error = error
            return LoopPhase.TERMINAL

        state.streaming = None
        result = aggregator.finish()
        state.usage.add(result.usage)
        state.text_parts.append(result.text)
        state.last_round = result
        state.turn.append_assistant(result.text, result.assistant_tool_calls())
        logger.info(
            "loop.round.end turn={} round={} tool_calls={} duration={:.3f}ms",
            state.turn.id,
            state.rounds,
            len(result.fragments),
            (time.monotonic() - start) * 1000,
        )
        return LoopPhase.TOOLS_PENDING if result.has_tool_calls else LoopPhase.FINAL

    async def _run_tools(self, state: LoopState) -> LoopPhase:
        assert state.last_round is not None
        outcomes = await self._dispatcher.dispatch(state.last_round.fragments, state.context)
        state.turn.append_tool_results(outcomes)
        state.outcomes.extend(outcomes)
        state.actions.extend(outcome.action for outcome in outcomes if outcome.action is not None)

        if any(outcome.terminal for outcome in outcomes):
            state.stop_reason = STOP_TERMINAL_TOOL
            return LoopPhase.FINAL
        stop_reason = self._policy.stop_after_tools(state.rounds, state.last_round.text)
        if stop_reason is not None:
            state.stop_reason = stop_reason
            return LoopPhase.FINAL
        return LoopPhase.AWAITING_MODEL

    async def _finalize(self, state: LoopState) -> LoopPhase:
        state.turn.seal()
        return LoopPhase.TERMINAL
