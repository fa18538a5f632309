from pathlib import Path
from typing import Any

import pytest
from fakes import RecordingSink, ScriptedModel, StubScheduler, call, text, usage

from sanctuary.app.runtime import APOLOGY, AppRuntime
from sanctuary.config.settings import Settings
from sanctuary.errors import RateLimitExceededError, TransportError
from sanctuary.store.crypto import ContentCipher
from sanctuary.store.plans import PlanStatus


class Models:
    """Model factory handing out one scripted model per configured name."""

    def __init__(self) -> None:
        self.scripts: dict[str, list[list[Any]]] = {}
        self.built: dict[str, ScriptedModel] = {}

    def __call__(self, name: str) -> ScriptedModel:
        self.built[name] = ScriptedModel(self.scripts.get(name, []))
        return self.built[name]


def make_runtime(home: Path, workspace: Path, cipher: ContentCipher, models: Models, **overrides: Any) -> AppRuntime:
    settings = Settings(home=home, workspace=workspace, **overrides)
    return AppRuntime(settings, cipher=cipher, model_factory=models, scheduler=StubScheduler())


@pytest.fixture
def models() -> Models:
    return Models()


@pytest.mark.asyncio
async def test_silent_tool_round_then_answer(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    models.scripts["x-ai/grok-3"] = [
        [text(""), call(0, "illuminate_domains", {"domains": ["Purpose"]}, call_id="c1"), usage(40, 5)],
        [text("Welcome "), text("back."), usage(60, 4)],
    ]
    runtime = make_runtime(home, workspace, cipher, models)
    sink = RecordingSink()

    async with runtime:
        outcome = await runtime.mentor("s1", "u1").handle_message("  hello  ", sink)

    assert outcome.stop_reason == "follow_up_limit"
    assert sink.text_content == "Welcome back."
    closes = [value for kind, value in sink.events if kind == "close"]
    assert len(closes) == 1
    assert sink.events[-1][0] == "close"
    assert [action.to_dict() for action in closes[0]] == [{"type": "illuminate", "domains": ["Purpose"]}]

    entries = runtime.log.read("s1")
    assert [entry.payload["role"] for entry in entries] == ["user", "tool", "assistant"]
    assert runtime.log.decrypt(entries[0]) == "hello"
    meta = entries[-1].meta
    assert meta["turn_id"] == entries[0].meta["turn_id"]
    assert meta["prompt_tokens"] == 100
    assert meta["completion_tokens"] == 9
    assert meta["domains"] == ["Purpose"]
    assert meta["tools"] == ["illuminate_domains"]
    assert meta["rounds"] == 2


@pytest.mark.asyncio
async def test_next_turn_sees_history(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    models.scripts["x-ai/grok-3"] = [[text("First answer")], [text("Second answer")]]
    runtime = make_runtime(home, workspace, cipher, models)
    session = runtime.mentor("s1", "u1")

    async with runtime:
        await session.handle_message("one", RecordingSink())
        await runtime.drain()
        await session.handle_message("two", RecordingSink())

    second = models.built["x-ai/grok-3"].calls[1]
    assert second[0]["role"] == "system"
    assert [(message["role"], message["content"]) for message in second[1:]] == [
        ("user", "one"),
        ("assistant", "First answer"),
        ("user", "two"),
    ]


@pytest.mark.asyncio
async def test_transport_failure_apologizes_and_records_abort(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    models.scripts["x-ai/grok-3"] = [[text("Hel"), TransportError("connection reset")]]
    runtime = make_runtime(home, workspace, cipher, models)
    sink = RecordingSink()

    async with runtime:
        outcome = await runtime.mentor("s1", "u1").handle_message("hi", sink)

    assert outcome.aborted
    assert sink.text_content == "Hel" + APOLOGY
    assert [kind for kind, _ in sink.events].count("close") == 1
    aborted = runtime.log.events("s1", "turn.aborted")
    assert len(aborted) == 1
    assert aborted[0].payload["data"]["partial_chars"] == 3
    assert runtime.log.count_messages("s1", "assistant") == 0


@pytest.mark.asyncio
async def test_message_validation_and_rate_limit(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    runtime = make_runtime(home, workspace, cipher, models, rate_limit_requests=1, max_message_length=10)
    session = runtime.mentor("s1", "u1")

    async with runtime:
        with pytest.raises(ValueError, match="empty"):
            await session.handle_message("   ", RecordingSink())
        with pytest.raises(ValueError, match="longer"):
            await session.handle_message("x" * 11, RecordingSink())
        await session.handle_message("hi", RecordingSink())
        with pytest.raises(RateLimitExceededError):
            await session.handle_message("again", RecordingSink())


@pytest.mark.asyncio
async def test_review_is_enqueued_on_cadence(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    models.scripts["x-ai/grok-3"] = [[text("a")], [text("b")], [text("c")]]
    runtime = make_runtime(home, workspace, cipher, models, review_every_messages=2)
    session = runtime.mentor("s1", "u1")

    async with runtime:
        await session.handle_message("one", RecordingSink())
        await runtime.drain()
        assert runtime.scheduler.jobs == {}
        await session.handle_message("two", RecordingSink())

    assert list(runtime.scheduler.jobs) == ["review:s1"]


@pytest.mark.asyncio
async def test_operator_needs_an_approved_plan(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    plan = {
        "title": "Add notes",
        "summary": "Create a notes file",
        "steps": ["write notes.txt"],
        "affected_resources": ["notes.txt"],
    }
    write = {"path": "notes.txt", "content": "hello"}
    models.scripts["x-ai/grok-4-1-fast-reasoning"] = [
        [call(0, "write_file", write, call_id="w1")],
        [call(0, "propose_plan", plan, call_id="p1")],
        [text("Waiting for your approval.")],
        [call(0, "write_file", write, call_id="w2")],
        [text("Done.")],
    ]
    runtime = make_runtime(home, workspace, cipher, models)
    operator = runtime.operator("op")
    sink = RecordingSink()

    async with runtime:
        first = await operator.handle_message("please add a notes file", sink)
        denied = first.outcomes[0]
        assert denied.skipped
        assert denied.result.data["denied"] is True
        assert not (workspace / "notes.txt").exists()
        assert [proposal.title for proposal in operator.pending()] == ["Add notes"]
        assert [action.kind for action in first.actions] == ["plan_proposal"]

        second = await operator.handle_message("APPROVED: add notes", RecordingSink())

    assert second.text == "Done."
    assert (workspace / "notes.txt").read_text(encoding="utf-8") == "hello"
    assert runtime.plans.proposals("op")[0].status is PlanStatus.APPROVED
    decision_prompt = models.built["x-ai/grok-4-1-fast-reasoning"].calls[3][-1]
    assert decision_prompt["role"] == "user"
    assert "APPROVED" in decision_prompt["content"]


@pytest.mark.asyncio
async def test_unexpected_failure_records_tokens_already_spent(
    home: Path, workspace: Path, cipher: ContentCipher, models: Models
) -> None:
    models.scripts["x-ai/grok-3"] = [
        [call(0, "illuminate_domains", {"domains": ["Vision"]}, call_id="c1"), usage(40, 5)],
        [RuntimeError("bad chunk")],
    ]
    runtime = make_runtime(home, workspace, cipher, models)
    sink = RecordingSink()

    async with runtime:
        outcome = await runtime.mentor("s1", "u1").handle_message("hi", sink)

    assert outcome.stop_reason == "internal_error"
    assert sink.text_content == APOLOGY
    [aborted] = runtime.log.events("s1", "turn.aborted")
    data = aborted.payload["data"]
    assert (data["prompt_tokens"], data["completion_tokens"], data["stop_reason"]) == (40, 5, "internal_error")
    assert data["error"] == "RuntimeError: bad chunk"
