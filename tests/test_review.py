import json

import pytest
from fakes import ScriptedModel, StubScheduler, text

from sanctuary.store.crypto import ContentCipher
from sanctuary.store.log import SessionLog
from sanctuary.telemetry.review import ReviewError, ReviewQueue, SessionReview, SessionReviewer, parse_review

SCORES = {
    "curriculum_adherence": 5,
    "empathy": 4,
    "breakthrough_detection": 3,
    "domain_accuracy": 3,
    "response_structure": 4,
    "guidance_soundness": 5,
    "observations": "Asked two questions at once.",
}


def test_overall_score_is_the_weighted_mean_scaled_to_100() -> None:
    review = SessionReview.model_validate(SCORES)
    # (5*.2 + 4*.2 + 3*.15 + 3*.15 + 4*.15 + 5*.15) * 20
    assert review.overall_score == 81
    assert SessionReview.model_validate({**SCORES, **dict.fromkeys(SessionReview.WEIGHTS, 5)}).overall_score == 100


def test_parse_review_accepts_fenced_json_and_rejects_garbage() -> None:
    review = parse_review(f"```json\n{json.dumps(SCORES)}\n```")
    assert review.empathy == 4

    with pytest.raises(ReviewError):
        parse_review("no scores today")
    with pytest.raises(ReviewError):
        parse_review(json.dumps({**SCORES, "empathy": 9}))


@pytest.mark.asyncio
async def test_reviewer_appends_a_review_event(home, cipher: ContentCipher) -> None:
    log = SessionLog(home, cipher)
    log.append_message("s1", "user", "I feel stuck")
    log.append_message("s1", "assistant", "What would unstick you?")
    model = ScriptedModel([[text(json.dumps(SCORES))]])

    review = await SessionReviewer(model, log).review("s1")

    [event] = log.events("s1", "session.review")
    assert event.payload["data"]["overall_score"] == review.overall_score
    prompt = model.calls[0][1]["content"]
    assert "Seeker: I feel stuck" in prompt
    assert "Mentor: What would unstick you?" in prompt


class FlakyReviewer:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def review(self, session_id: str) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("model unavailable")


def test_queue_enqueues_on_cadence_and_deduplicates() -> None:
    scheduler = StubScheduler()
    queue = ReviewQueue(scheduler, FlakyReviewer(0), every_messages=10, max_attempts=3)

    assert not queue.maybe_enqueue("s1", 9)
    assert queue.maybe_enqueue("s1", 10)
    assert not queue.enqueue("s1")
    assert list(scheduler.jobs) == ["review:s1"]
    assert scheduler.jobs["review:s1"]["kwargs"] == {"session_id": "s1", "attempt": 1}
    assert scheduler.listeners


@pytest.mark.asyncio
async def test_failed_review_is_retried_until_the_attempt_limit() -> None:
    scheduler = StubScheduler()
    reviewer = FlakyReviewer(failures=5)
    queue = ReviewQueue(scheduler, reviewer, every_messages=1, max_attempts=2, backoff_seconds=1)

    assert queue.enqueue("s1")
    scheduler.pop("review:s1")
    await queue.run("s1", attempt=1)
    retry = scheduler.pop("review:s1")
    assert retry["kwargs"] == {"session_id": "s1", "attempt": 2}

    with pytest.raises(RuntimeError):
        await queue.run("s1", attempt=2)
    assert scheduler.jobs == {}
    assert reviewer.calls == 2
