"""Conversational mentor toolset."""

from __future__ import annotations

import asyncio
from enum import StrEnum

from loguru import logger
from pydantic import BaseModel, Field

from sanctuary.core.types import ClientAction, Effect, ToolReply, ToolResult
from sanctuary.store.journey import Habit, Insight, Journey, JourneyStore, Thought
from sanctuary.tools.context import ToolContext
from sanctuary.tools.registry import ToolRegistry

GENESIS_STAGES = 4


class MentorTool(StrEnum):
    GET_USER_STATUS = "get_user_status"
    ILLUMINATE_DOMAINS = "illuminate_domains"
    RECORD_BREAKTHROUGH = "record_breakthrough"
    INCREMENT_RESONANCE = "increment_resonance"
    SAVE_THOUGHT = "save_thought"
    SET_HABIT = "set_habit"
    ADVANCE_GENESIS = "advance_genesis"
    COMPLETE_ONBOARDING = "complete_onboarding"
    RESET_JOURNEY = "reset_journey"


class EmptyInput(BaseModel):
    pass


class IlluminateInput(BaseModel):
    domains: list[str] = Field(..., min_length=1, description="The domains to illuminate")


class BreakthroughInput(BaseModel):
    domain: str = Field(..., description="The domain this breakthrough relates to")
    insight: str = Field(..., min_length=1, description="A brief summary of the breakthrough or insight")


class DomainInput(BaseModel):
    domain: str = Field(..., description="The domain to increment resonance for")


class ThoughtInput(BaseModel):
    content: str = Field(..., min_length=1, description="The thought, in the seeker's words")


class HabitInput(BaseModel):
    domain: str = Field(..., description="The domain the habit serves")
    title: str = Field(..., min_length=1, description="Short name of the habit")
    active: bool = Field(default=True, description="False retires the habit")
    checked_in: bool = Field(
        default=False, description="True when the seeker reports doing the habit; extends its streak"
    )


class GenesisInput(BaseModel):
    stage: int = Field(..., ge=1, le=GENESIS_STAGES, description="The stage number to advance to (1-4)")


class ResetInput(BaseModel):
    confirm: bool = Field(..., description="Must be true; only when the seeker explicitly asked to start over")


def _journeys(context: ToolContext) -> JourneyStore:
    if context.journeys is None:
        raise RuntimeError("journey store is not available")
    return context.journeys


def _unknown_domains(context: ToolContext, domains: list[str]) -> list[str]:
    allowed = {domain.casefold() for domain in context.domains}
    return [domain for domain in domains if domain.casefold() not in allowed]


def _canonical(context: ToolContext, domain: str) -> str:
    for known in context.domains:
        if known.casefold() == domain.casefold():
            return known
    return domain


def _domain_error(context: ToolContext, domains: list[str]) -> ToolReply:
    return ToolReply(
        ToolResult.failure(
            f"unknown domain: {', '.join(domains)}",
            data={"allowed": list(context.domains)},
        )
    )


def _status(journey: Journey) -> dict[str, object]:
    return {
        "name": journey.name,
        "current_domain": journey.current_domain,
        "onboarding_stage": journey.onboarding_stage,
        "has_completed_onboarding": journey.has_completed_onboarding,
        "resonance": dict(journey.resonance),
        "insights": len(journey.insights),
        "thoughts": len(journey.thoughts),
        "habits": [habit.model_dump() for habit in journey.habits if habit.active],
    }


def build_mentor_registry() -> ToolRegistry[MentorTool]:
    """Register every mentor tool; fails fast when one is missing."""

    registry: ToolRegistry[MentorTool] = ToolRegistry(MentorTool)
    register = registry.register

    @register(
        MentorTool.GET_USER_STATUS,
        description="Read the seeker's journey: onboarding stage, resonance per domain, habits",
        model=EmptyInput,
        effect=Effect.READ_ONLY,
    )
    async def get_user_status(_params: EmptyInput, context: ToolContext) -> ToolReply:
        journey = await asyncio.to_thread(_journeys(context).load, context.user_id)
        return ToolReply(ToolResult.success(_status(journey)))

    @register(
        MentorTool.ILLUMINATE_DOMAINS,
        description="Light up domain stars in the interface when revealing truths or celebrating growth in a domain",
        model=IlluminateInput,
        effect=Effect.ADDITIVE,
    )
    async def illuminate_domains(params: IlluminateInput, context: ToolContext) -> ToolReply:
        unknown = _unknown_domains(context, params.domains)
        if unknown:
            return _domain_error(context, unknown)
        domains = [_canonical(context, domain) for domain in params.domains]
        return ToolReply(
            ToolResult.success({"illuminated": domains}),
            ClientAction("illuminate", {"domains": domains}),
        )

    @register(
        MentorTool.RECORD_BREAKTHROUGH,
        description="Record a breakthrough when the seeker has a significant realization or commits to change",
        model=BreakthroughInput,
        effect=Effect.ADDITIVE,
    )
    async def record_breakthrough(params: BreakthroughInput, context: ToolContext) -> ToolReply:
        if _unknown_domains(context, [params.domain]):
            return _domain_error(context, [params.domain])
        domain = _canonical(context, params.domain)
        sealed = context.cipher.encrypt(params.insight)

        def _record(journey: Journey) -> None:
            journey.insights.append(Insight(domain=domain, content=sealed))
            journey.resonance[domain] = journey.resonance.get(domain, 0) + 1
            journey.current_domain = domain

        journey = await asyncio.to_thread(_journeys(context).update, context.user_id, _record)
        logger.info("mentor.breakthrough user={} domain={}", context.user_id, domain)
        return ToolReply(
            ToolResult.success({"recorded": True, "domain": domain, "resonance": journey.resonance[domain]}),
            ClientAction("breakthrough", {"domain": domain, "insight": params.insight}),
        )

    @register(
        MentorTool.INCREMENT_RESONANCE,
        description="Increment the resonance score of a domain when the seeker shows growth or understanding",
        model=DomainInput,
        effect=Effect.ADDITIVE,
    )
    async def increment_resonance(params: DomainInput, context: ToolContext) -> ToolReply:
        if _unknown_domains(context, [params.domain]):
            return _domain_error(context, [params.domain])
        domain = _canonical(context, params.domain)
        score = await asyncio.to_thread(_journeys(context).increment_resonance, context.user_id, domain)
        return ToolReply(
            ToolResult.success({"domain": domain, "resonance": score}),
            ClientAction("illuminate", {"domains": [domain]}),
        )

    @register(
        MentorTool.SAVE_THOUGHT,
        description="Keep a thought the seeker wants to come back to",
        model=ThoughtInput,
        effect=Effect.ADDITIVE,
    )
    async def save_thought(params: ThoughtInput, context: ToolContext) -> ToolReply:
        sealed = context.cipher.encrypt(params.content)
        journey = await asyncio.to_thread(
            _journeys(context).update,
            context.user_id,
            lambda journey: journey.thoughts.append(Thought(content=sealed)),
        )
        return ToolReply(ToolResult.success({"saved": True, "thoughts": len(journey.thoughts)}))

    @register(
        MentorTool.SET_HABIT,
        description="Start or retire a habit the seeker commits to, or check in on it to extend its streak",
        model=HabitInput,
        effect=Effect.ADDITIVE,
    )
    async def set_habit(params: HabitInput, context: ToolContext) -> ToolReply:
        if _unknown_domains(context, [params.domain]):
            return _domain_error(context, [params.domain])
        domain = _canonical(context, params.domain)

        def _set(journey: Journey) -> None:
            habit = next((item for item in journey.habits if item.title.casefold() == params.title.casefold()), None)
            if habit is None:
                habit = Habit(domain=domain, title=params.title)
                journey.habits.append(habit)
            habit.domain = domain
            habit.active = params.active
            if params.checked_in:
                habit.streak += 1

        journey = await asyncio.to_thread(_journeys(context).update, context.user_id, _set)
        habit = next(item for item in journey.habits if item.title.casefold() == params.title.casefold())
        return ToolReply(
            ToolResult.success({"habit": habit.title, "domain": domain, "active": habit.active, "streak": habit.streak})
        )

    @register(
        MentorTool.ADVANCE_GENESIS,
        description="Advance the seeker to the next onboarding stage; only during initial onboarding",
        model=GenesisInput,
        effect=Effect.ADDITIVE,
    )
    async def advance_genesis(params: GenesisInput, context: ToolContext) -> ToolReply:
        def _advance(journey: Journey) -> None:
            journey.onboarding_stage = max(journey.onboarding_stage, params.stage)

        journey = await asyncio.to_thread(_journeys(context).update, context.user_id, _advance)
        return ToolReply(ToolResult.success({"onboarding_stage": journey.onboarding_stage}))

    @register(
        MentorTool.COMPLETE_ONBOARDING,
        description="Mark onboarding as complete once the last stage is done",
        model=EmptyInput,
        effect=Effect.ADDITIVE,
    )
    async def complete_onboarding(_params: EmptyInput, context: ToolContext) -> ToolReply:
        def _complete(journey: Journey) -> None:
            journey.has_completed_onboarding = True
            journey.onboarding_stage = GENESIS_STAGES

        await asyncio.to_thread(_journeys(context).update, context.user_id, _complete)
        return ToolReply(
            ToolResult.success({"has_completed_onboarding": True}),
            ClientAction("switch_view", {"view": "sanctuary"}),
        )

    @register(
        MentorTool.RESET_JOURNEY,
        description="Archive this conversation and start the journey over; only on an explicit request",
        model=ResetInput,
        effect=Effect.MUTATING,
        terminal=True,
        resources=lambda _params, context: [f"journey:{context.user_id}"],
    )
    async def reset_journey(params: ResetInput, context: ToolContext) -> ToolReply:
        if not params.confirm:
            return ToolReply(ToolResult.failure("reset requires confirm=true"))
        archived = await asyncio.to_thread(context.log.archive, context.session_id)
        await asyncio.to_thread(_journeys(context).reset, context.user_id)
        logger.info("mentor.journey.reset user={} archive={}", context.user_id, archived)
        return ToolReply(
            ToolResult.success({"reset": True, "archived": archived is not None}),
            ClientAction("switch_view", {"view": "genesis"}),
        )

    registry.verify()
    return registry
