"""Session self-review jobs."""

from __future__ import annotations

import json
import re
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import ClassVar

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from sanctuary.core.aggregator import StreamAggregator
from sanctuary.core.loop import ModelClient
from sanctuary.store.log import KIND_MESSAGE, SessionLog

REVIEW_JOB_PREFIX = "review:"
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

REVIEW_SYSTEM_PROMPT = """You review a mentoring conversation between an AI mentor and a seeker.
Judge the mentor's technique only. Observations must not contain any personal detail
about the seeker: no names, places, jobs, relationships, dates or quotes.

Rate each category from 1 to 5:
- curriculum_adherence: stayed with the seeker's current domain and stage
- empathy: tone matched the seeker without being patronizing
- breakthrough_detection: real realizations were noticed and recorded
- domain_accuracy: the right domains were referenced and tagged
- response_structure: brief replies, one question at a time
- guidance_soundness: no harmful or careless advice

Answer with one JSON object with those keys plus "observations" (2-3 sentences)."""


class ReviewError(ValueError):
    """Raised when the review model does not return usable scores."""


class SessionReview(BaseModel):
    WEIGHTS: ClassVar[dict[str, float]] = {
        "curriculum_adherence": 0.20,
        "empathy": 0.20,
        "breakthrough_detection": 0.15,
        "domain_accuracy": 0.15,
        "response_structure": 0.15,
        "guidance_soundness": 0.15,
    }

    curriculum_adherence: int = Field(..., ge=1, le=5)
    empathy: int = Field(..., ge=1, le=5)
    breakthrough_detection: int = Field(..., ge=1, le=5)
    domain_accuracy: int = Field(..., ge=1, le=5)
    response_structure: int = Field(..., ge=1, le=5)
    guidance_soundness: int = Field(..., ge=1, le=5)
    observations: str = ""

    @property
    def overall_score(self) -> int:
        """Weighted mean of the 1-5 ratings scaled to 0-100."""
        weighted = sum(getattr(self, name) * weight for name, weight in self.WEIGHTS.items())
        return round(weighted * 20)


def parse_review(text: str) -> SessionReview:
    match = JSON_OBJECT_RE.search(text)
    if match is None:
        raise ReviewError("review response contains no JSON object")
    try:
        return SessionReview.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ReviewError(f"review response is not valid: {exc}") from exc


class SessionReviewer:
    """Scores the recent part of a session with a separate model."""

    def __init__(self, model: ModelClient, log: SessionLog, *, window: int = 20) -> None:
        self._model = model
        self._log = log
        self._window = window

    async def review(self, session_id: str) -> SessionReview:
        history = self._log.history(session_id, limit=self._window)
        tool_usage = Counter(
            str(entry.payload.get("name"))
            for entry in self._log.read(session_id)
            if entry.kind == KIND_MESSAGE and entry.payload.get("role") == "tool"
        )
        conversation = "\n\n".join(
            f"{'Seeker' if message.role == 'user' else 'Mentor'}: {message.content}" for message in history
        )
        prompt = (
            f"Tool calls made: {json.dumps(dict(tool_usage))}\n\n"
            f"=== CONVERSATION (last {len(history)} messages) ===\n{conversation}\n=== END CONVERSATION ==="
        )
        aggregator = StreamAggregator()
        messages = [{"role": "system", "content": REVIEW_SYSTEM_PROMPT}, {"role": "user", "content": prompt}]
        async for delta in self._model.stream(messages=messages, tools=[]):
            await aggregator.feed(delta)
        review = parse_review(aggregator.finish().text)
        self._log.append_event(
            session_id,
            "session.review",
            {**review.model_dump(), "overall_score": review.overall_score, "tool_usage": dict(tool_usage)},
        )
        logger.info("review.session.done session={} score={}", session_id, review.overall_score)
        return review


class ReviewQueue:
    """Review jobs on an APScheduler scheduler, one pending job per session."""

    def __init__(
        self,
        scheduler: BaseScheduler,
        reviewer: SessionReviewer,
        *,
        every_messages: int,
        max_attempts: int,
        backoff_seconds: float = 30.0,
    ) -> None:
        self._scheduler = scheduler
        self._reviewer = reviewer
        self._every_messages = every_messages
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @staticmethod
    def job_id(session_id: str) -> str:
        return f"{REVIEW_JOB_PREFIX}{session_id}"

    def due(self, assistant_messages: int) -> bool:
        return assistant_messages > 0 and assistant_messages % self._every_messages == 0

    def maybe_enqueue(self, session_id: str, assistant_messages: int) -> bool:
        if not self.due(assistant_messages):
            return False
        return self.enqueue(session_id)

    def enqueue(self, session_id: str, *, attempt: int = 1, delay_seconds: float = 0.0) -> bool:
        try:
            self._scheduler.add_job(
                self.run,
                trigger=DateTrigger(run_date=datetime.now(UTC) + timedelta(seconds=delay_seconds)),
                id=self.job_id(session_id),
                kwargs={"session_id": session_id, "attempt": attempt},
                coalesce=True,
                max_instances=1,
                misfire_grace_time=None,
            )
        except ConflictingIdError:
            logger.info("review.job.duplicate session={}", session_id)
            return False
        logger.info("review.job.enqueued session={} attempt={}", session_id, attempt)
        return True

    async def run(self, session_id: str, attempt: int) -> None:
        try:
            await self._reviewer.review(session_id)
        except Exception as exc:
            if attempt >= self._max_attempts:
                raise
            delay = self._backoff_seconds * attempt
            logger.warning(
                "review.job.retry session={} attempt={} delay={}s error={}", session_id, attempt, delay, exc
            )
            self.enqueue(session_id, attempt=attempt + 1, delay_seconds=delay)

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        if not str(event.job_id).startswith(REVIEW_JOB_PREFIX):
            return
        logger.error("review.job.failed job={} error={}", event.job_id, event.exception)
