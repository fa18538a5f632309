"""System prompt composition for both modes."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from sanctuary.errors import DecryptionError
from sanctuary.store.crypto import ContentCipher
from sanctuary.store.journey import Journey, JourneyStore
from sanctuary.store.prompts import PromptStore

MENTOR_PROMPT_NAME = "mentor"

DEFAULT_MENTOR_PROMPT = """You are the Sanctuary mentor, a calm and attentive guide for personal growth.

Listen first. Ask one question at a time. Keep replies short and warm.
Use the tools to read the seeker's journey and to record what matters:
breakthroughs, thoughts, habits and the domains a conversation touches.
Never mention the tools or their names to the seeker."""

DEFAULT_OPERATOR_PROMPT = """You are the Sanctuary operator agent.
You have access to the workspace, the shell and the database.

Read freely. Every change to files, prompts or the system needs an approved plan:
call propose_plan with a title, a summary, ordered steps and the exact resources
you will touch, then wait for the human decision. Denied plans are final; propose
a new plan instead of retrying. Queries must be single read-only SELECT statements."""


class PromptComposer:
    """Builds system instructions from stored overrides and user state."""

    def __init__(
        self,
        *,
        prompts: PromptStore,
        journeys: JourneyStore,
        cipher: ContentCipher,
        domains: tuple[str, ...],
        insight_depth: int = 5,
    ) -> None:
        self._prompts = prompts
        self._journeys = journeys
        self._cipher = cipher
        self._domains = domains
        self._insight_depth = insight_depth

    def mentor(self, user_id: str) -> str:
        override = self._prompts.current(MENTOR_PROMPT_NAME)
        base = override.content if override is not None else DEFAULT_MENTOR_PROMPT
        journey = self._journeys.load(user_id)
        return f"{base.strip()}\n\n{self._render_journey(journey)}"

    def operator(self, workspace: Path) -> str:
        return f"{DEFAULT_OPERATOR_PROMPT}\n\n<workspace>{workspace.resolve()}</workspace>"

    def _render_journey(self, journey: Journey) -> str:
        lines = ["<journey>"]
        if journey.name:
            lines.append(f"name: {journey.name}")
        lines.append(f"onboarding_stage: {journey.onboarding_stage}")
        lines.append(f"onboarding_complete: {str(journey.has_completed_onboarding).lower()}")
        if journey.current_domain:
            lines.append(f"current_domain: {journey.current_domain}")
        scores = ", ".join(f"{domain}={journey.resonance.get(domain, 0)}" for domain in self._domains)
        lines.append(f"resonance: {scores}")
        insights = self._recent_insights(journey)
        if insights:
            lines.append("recent_insights:")
            lines.extend(f"- [{domain}] {content}" for domain, content in insights)
        active = [habit for habit in journey.habits if habit.active]
        if active:
            lines.append("habits:")
            lines.extend(f"- [{habit.domain}] {habit.title} (streak {habit.streak})" for habit in active)
        lines.append("</journey>")
        return "\n".join(lines)

    def _recent_insights(self, journey: Journey) -> list[tuple[str, str]]:
        rendered: list[tuple[str, str]] = []
        for insight in journey.insights[-self._insight_depth :]:
            try:
                rendered.append((insight.domain, self._cipher.decrypt(insight.content)))
            except DecryptionError:
                logger.warning("prompt.insight.undecryptable user={} insight={}", journey.user_id, insight.id)
        return rendered
