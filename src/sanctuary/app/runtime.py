"""Application runtime and session management."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import suppress
from typing import Any, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from loguru import logger

from sanctuary.config.settings import Settings
from sanctuary.core.dispatcher import ToolDispatcher
from sanctuary.core.gate import SafetyGate
from sanctuary.core.loop import ConversationLoop, LoopPolicy, ModelClient, TurnOutcome
from sanctuary.core.prompt import PromptComposer
from sanctuary.core.turn import ConversationTurn
from sanctuary.core.types import ClientAction
from sanctuary.errors import PlanDecisionError
from sanctuary.integrations.openai_client import build_model_client
from sanctuary.logging_utils import bind_session
from sanctuary.ratelimit import RateLimiter
from sanctuary.store.crypto import ContentCipher
from sanctuary.store.journey import JourneyStore
from sanctuary.store.log import SessionLog
from sanctuary.store.plans import PlanBook, PlanDecision, PlanProposal, PlanStatus
from sanctuary.store.prompts import PromptStore
from sanctuary.telemetry.recorder import TurnRecorder
from sanctuary.telemetry.review import ReviewQueue, SessionReviewer
from sanctuary.tools.context import ToolContext
from sanctuary.tools.mentor import build_mentor_registry
from sanctuary.tools.operator import build_operator_registry
from sanctuary.tools.registry import ToolRegistry

APOLOGY = "I'm sorry, something went wrong on my side. Please try again in a moment."

ModelFactory = Callable[[str], ModelClient]


class TurnSink(Protocol):
    """Presentation side of a turn: text while streaming, actions once at the end."""

    async def text(self, chunk: str) -> None: ...

    async def close(self, actions: list[ClientAction]) -> None: ...


class CollectingSink:
    """Sink that keeps everything in memory."""

    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.actions: list[ClientAction] = []
        self.closed = 0

    @property
    def content(self) -> str:
        return "".join(self.chunks)

    async def text(self, chunk: str) -> None:
        self.chunks.append(chunk)

    async def close(self, actions: list[ClientAction]) -> None:
        self.closed += 1
        self.actions = list(actions)


class AppRuntime:
    """Owns the stores, model clients and background work shared by all sessions."""

    def __init__(
        self,
        settings: Settings,
        *,
        cipher: ContentCipher | None = None,
        model_factory: ModelFactory | None = None,
        scheduler: BaseScheduler | None = None,
    ) -> None:
        self.settings = settings
        home = settings.resolve_home()
        self.cipher = cipher or ContentCipher.from_base64(settings.encryption_key)
        self.log = SessionLog(home, self.cipher)
        self.journeys = JourneyStore(home)
        self.plans = PlanBook(home)
        self.prompts = PromptStore(home)
        self.composer = PromptComposer(
            prompts=self.prompts,
            journeys=self.journeys,
            cipher=self.cipher,
            domains=settings.domains,
        )
        self.rate_limiter = RateLimiter(
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.mentor_tools = build_mentor_registry()
        self.operator_tools = build_operator_registry()
        self.scheduler = scheduler or AsyncIOScheduler()
        self._model_factory = model_factory or (lambda name: build_model_client(settings, name))
        self._models: dict[str, ModelClient] = {}
        self.review_queue = ReviewQueue(
            self.scheduler,
            SessionReviewer(self.model(settings.review_model), self.log),
            every_messages=settings.review_every_messages,
            max_attempts=settings.review_max_attempts,
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    async def __aenter__(self) -> AppRuntime:
        if not self.scheduler.running:
            self.scheduler.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.drain()
        if self.scheduler.running:
            with suppress(Exception):
                self.scheduler.shutdown(wait=False)

    def model(self, name: str) -> ModelClient:
        client = self._models.get(name)
        if client is None:
            client = self._model_factory(name)
            self._models[name] = client
        return client

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Run ``coro`` in the background; failures are logged, never raised."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def drain(self) -> None:
        """Wait until every background task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("runtime.task.failed name={}", task.get_name())

    def tool_context(self, *, session_id: str, user_id: str, run_id: str) -> ToolContext:
        return ToolContext(
            session_id=session_id,
            user_id=user_id,
            run_id=run_id,
            cipher=self.cipher,
            log=self.log,
            journeys=self.journeys,
            plans=self.plans,
            prompts=self.prompts,
            workspace=self.settings.workspace.resolve(),
            database_path=self.settings.database_path,
            domains=tuple(self.settings.domains),
            shell_timeout_seconds=self.settings.shell_timeout_seconds,
        )

    def mentor(self, session_id: str, user_id: str) -> MentorSession:
        return MentorSession(self, session_id=session_id, user_id=user_id)

    def operator(self, user_id: str) -> OperatorSession:
        return OperatorSession(self, session_id=f"operator:{user_id}", user_id=user_id)


class ConversationSession:
    """One conversation in one mode; each message runs as a turn."""

    def __init__(
        self,
        runtime: AppRuntime,
        *,
        session_id: str,
        user_id: str,
        registry: ToolRegistry[Any],
        policy: LoopPolicy,
        model_name: str,
        gate: SafetyGate | None = None,
    ) -> None:
        self.runtime = runtime
        self.session_id = session_id
        self.user_id = user_id
        self.model_name = model_name
        self._registry = registry
        self._loop = ConversationLoop(
            model=runtime.model(model_name),
            dispatcher=ToolDispatcher(registry, gate),
            policy=policy,
            tools=registry.model_tools(),
            model_timeout_seconds=runtime.settings.model_timeout_seconds,
        )

    def system_prompt(self) -> str:
        raise NotImplementedError

    async def handle_message(self, text: str, sink: TurnSink) -> TurnOutcome:
        text = text.strip()
        if not text:
            raise ValueError("message is empty")
        if len(text) > self.runtime.settings.max_message_length:
            raise ValueError(f"message is longer than {self.runtime.settings.max_message_length} characters")
        self.runtime.rate_limiter.check(self.user_id)
        return await self._run_turn(text, sink)

    async def _run_turn(self, text: str, sink: TurnSink) -> TurnOutcome:
        bind_session(self.session_id)
        settings = self.runtime.settings
        log = self.runtime.log
        history = await asyncio.to_thread(log.history, self.session_id, limit=settings.chat_history_limit)
        system_prompt = await asyncio.to_thread(self.system_prompt)
        turn = ConversationTurn(self.session_id, text, system_prompt=system_prompt, history=history)
        await asyncio.to_thread(log.append_message, self.session_id, "user", text, meta={"turn_id": turn.id})
        context = self.runtime.tool_context(session_id=self.session_id, user_id=self.user_id, run_id=turn.id)
        recorder = TurnRecorder(log, model=self.model_name)
        logger.info("session.turn.start turn={} user={}", turn.id, self.user_id)

        outcome = await self._loop.run(turn, context, on_text=sink.text)

        if outcome.aborted:
            await sink.text(APOLOGY)
        await sink.close(list(outcome.actions))
        self.runtime.spawn(self._persist(recorder, turn, outcome), name=f"persist:{turn.id}")
        return outcome

    async def _persist(self, recorder: TurnRecorder, turn: ConversationTurn, outcome: TurnOutcome) -> None:
        await asyncio.to_thread(recorder.flush, turn, outcome)


class MentorSession(ConversationSession):
    """Bounded conversational mode with the mentor toolset."""

    def __init__(self, runtime: AppRuntime, *, session_id: str, user_id: str) -> None:
        super().__init__(
            runtime,
            session_id=session_id,
            user_id=user_id,
            registry=runtime.mentor_tools,
            policy=LoopPolicy.bounded(),
            model_name=runtime.settings.model,
        )

    def system_prompt(self) -> str:
        return self.runtime.composer.mentor(self.user_id)

    async def _persist(self, recorder: TurnRecorder, turn: ConversationTurn, outcome: TurnOutcome) -> None:
        await super()._persist(recorder, turn, outcome)
        if outcome.aborted:
            return
        count = await asyncio.to_thread(self.runtime.log.count_messages, self.session_id, "assistant")
        self.runtime.review_queue.maybe_enqueue(self.session_id, count)


class OperatorSession(ConversationSession):
    """Unbounded privileged mode; mutating tools pass the safety gate."""

    def __init__(self, runtime: AppRuntime, *, session_id: str, user_id: str) -> None:
        super().__init__(
            runtime,
            session_id=session_id,
            user_id=user_id,
            registry=runtime.operator_tools,
            policy=LoopPolicy.unbounded(runtime.settings.operator_max_rounds),
            model_name=runtime.settings.operator_model,
            gate=SafetyGate(runtime.plans),
        )

    def system_prompt(self) -> str:
        return self.runtime.composer.operator(self.runtime.settings.workspace)

    def pending(self) -> list[PlanProposal]:
        return self.runtime.plans.proposals(self.user_id, PlanStatus.PENDING)

    async def handle_message(self, text: str, sink: TurnSink) -> TurnOutcome:
        try:
            decision = await asyncio.to_thread(self.runtime.plans.decision_from_text, self.user_id, text)
        except PlanDecisionError as exc:
            logger.warning("operator.plan.ambiguous_decision error={}", exc)
            decision = None
        if decision is not None:
            return await self.decide(decision.proposal_id, approved=decision.approved, sink=sink, note=decision.note)
        return await super().handle_message(text, sink)

    async def decide(self, proposal_id: str, *, approved: bool, sink: TurnSink, note: str | None = None) -> TurnOutcome:
        """Record a decision for one proposal and let the agent continue from it."""
        self.runtime.rate_limiter.check(self.user_id)
        decision = PlanDecision(proposal_id=proposal_id, approved=approved, note=note)
        proposal = await asyncio.to_thread(self.runtime.plans.decide, decision)
        logger.info("operator.plan.decided id={} status={}", proposal.id, proposal.status.value)
        return await self._run_turn(decision_message(proposal), sink)


def decision_message(proposal: PlanProposal) -> str:
    verdict = "APPROVED" if proposal.status is PlanStatus.APPROVED else "DENIED"
    lines = [f"Plan {proposal.id} ({proposal.title}) was {verdict} by the operator."]
    if proposal.note:
        lines.append(f"Note: {proposal.note}")
    if verdict == "APPROVED":
        lines.append(f"You may now act on: {', '.join(proposal.affected_resources)}.")
    else:
        lines.append("Do not perform it. Propose a different plan if something else is needed.")
    return "\n".join(lines)
