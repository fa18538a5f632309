from enum import StrEnum

import pytest
from fakes import ScriptedModel, call, text, usage
from pydantic import BaseModel

from sanctuary.core.dispatcher import ToolDispatcher
from sanctuary.core.loop import ConversationLoop, LoopPolicy
from sanctuary.core.turn import ConversationTurn
from sanctuary.core.types import ClientAction, Effect, ToolReply, ToolResult
from sanctuary.errors import TransportError, TurnSealedError
from sanctuary.tools.context import ToolContext
from sanctuary.tools.registry import ToolRegistry


class LoopTool(StrEnum):
    LOOK = "look"
    LEAVE = "leave"


class EmptyInput(BaseModel):
    pass


def build_loop(model: ScriptedModel, policy: LoopPolicy) -> tuple[ConversationLoop, list[str]]:
    registry: ToolRegistry[LoopTool] = ToolRegistry(LoopTool)
    ran: list[str] = []

    @registry.register(LoopTool.LOOK, description="look", model=EmptyInput, effect=Effect.READ_ONLY)
    async def look(_params: EmptyInput, _context: ToolContext) -> ToolReply:
        ran.append("look")
        return ToolReply(ToolResult.success({"seen": len(ran)}), ClientAction("illuminate", {"domains": ["Purpose"]}))

    @registry.register(LoopTool.LEAVE, description="leave", model=EmptyInput, effect=Effect.MUTATING, terminal=True)
    async def leave(_params: EmptyInput, _context: ToolContext) -> ToolReply:
        ran.append("leave")
        return ToolReply(ToolResult.success())

    registry.verify()
    loop = ConversationLoop(
        model=model,
        dispatcher=ToolDispatcher(registry),
        policy=policy,
        tools=registry.model_tools(),
    )
    return loop, ran


def look(index: int = 0, call_id: str | None = None):
    return call(index, "look", "{}", call_id=call_id or f"look-{index}")


@pytest.mark.asyncio
async def test_bounded_plain_answer_is_one_round(tool_context: ToolContext) -> None:
    model = ScriptedModel([[text("Hello "), text("there"), usage(5, 2)]])
    loop, _ = build_loop(model, LoopPolicy.bounded())
    turn = ConversationTurn("s1", "hi")

    outcome = await loop.run(turn, tool_context)

    assert outcome.status == "completed"
    assert outcome.stop_reason == "complete"
    assert outcome.text == "Hello there"
    assert outcome.rounds == 1
    assert len(model.calls) == 1
    assert turn.sealed
    with pytest.raises(TurnSealedError):
        turn.append_assistant("more")


@pytest.mark.asyncio
async def test_bounded_silent_tool_round_gets_exactly_one_follow_up(tool_context: ToolContext) -> None:
    model = ScriptedModel(
        [
            [text("  \n"), look(0, "a")],
            [text("Here you go."), look(0, "b")],
            [text("never requested")],
        ]
    )
    loop, ran = build_loop(model, LoopPolicy.bounded())

    outcome = await loop.run(ConversationTurn("s1", "what now?"), tool_context)

    assert len(model.calls) == 2
    assert ran == ["look", "look"]
    assert outcome.stop_reason == "follow_up_limit"
    assert outcome.text == "  \nHere you go."
    assert [o.call_id for o in outcome.outcomes] == ["a", "b"]
    assert len(outcome.actions) == 2


@pytest.mark.asyncio
async def test_bounded_tool_round_with_text_does_not_follow_up(tool_context: ToolContext) -> None:
    model = ScriptedModel([[text("Let me light that up."), look()], [text("unused")]])
    loop, ran = build_loop(model, LoopPolicy.bounded())

    outcome = await loop.run(ConversationTurn("s1", "hi"), tool_context)

    assert len(model.calls) == 1
    assert ran == ["look"]
    assert outcome.text == "Let me light that up."
    assert outcome.actions == (ClientAction("illuminate", {"domains": ["Purpose"]}),)


@pytest.mark.asyncio
async def test_follow_up_request_carries_tool_calls_and_results(tool_context: ToolContext) -> None:
    model = ScriptedModel([[look(0, "first"), usage(10, 1)], [text("done"), usage(20, 4)]])
    loop, _ = build_loop(model, LoopPolicy.bounded())
    turn = ConversationTurn("s1", "go", system_prompt="be kind")

    outcome = await loop.run(turn, tool_context)

    second = model.calls[1]
    assert second[0] == {"role": "system", "content": "be kind"}
    assert second[1] == {"role": "user", "content": "go"}
    assert second[2]["tool_calls"][0]["id"] == "first"
    assert second[3] == {"role": "tool", "tool_call_id": "first", "content": '{"seen": 1}'}
    assert outcome.usage.prompt_tokens == 30
    assert outcome.usage.completion_tokens == 5
    assert outcome.usage.rounds == 2


@pytest.mark.asyncio
async def test_unbounded_runs_until_no_tool_calls(tool_context: ToolContext) -> None:
    model = ScriptedModel([[look(0, "1")], [text("checking"), look(0, "2")], [text(" done")]])
    loop, ran = build_loop(model, LoopPolicy.unbounded(max_rounds=10))

    outcome = await loop.run(ConversationTurn("s1", "audit"), tool_context)

    assert outcome.rounds == 3
    assert ran == ["look", "look"]
    assert outcome.stop_reason == "complete"
    assert outcome.text == "checking done"


@pytest.mark.asyncio
async def test_unbounded_stops_at_round_budget(tool_context: ToolContext) -> None:
    model = ScriptedModel([[look(0, str(i))] for i in range(10)])
    loop, ran = build_loop(model, LoopPolicy.unbounded(max_rounds=3))

    outcome = await loop.run(ConversationTurn("s1", "loop forever"), tool_context)

    assert len(model.calls) == 3
    assert len(ran) == 3
    assert outcome.status == "completed"
    assert outcome.stop_reason == "round_budget"


@pytest.mark.asyncio
async def test_terminal_tool_ends_the_turn_after_its_batch(tool_context: ToolContext) -> None:
    model = ScriptedModel([[call(0, "leave", "{}", call_id="x"), look(1, "y")], [text("unused")]])
    loop, ran = build_loop(model, LoopPolicy.unbounded(max_rounds=10))

    outcome = await loop.run(ConversationTurn("s1", "reset"), tool_context)

    assert sorted(ran) == ["leave", "look"]
    assert len(model.calls) == 1
    assert outcome.stop_reason == "terminal_tool"


@pytest.mark.asyncio
async def test_transport_error_aborts_and_keeps_partial_text(tool_context: ToolContext) -> None:
    streamed: list[str] = []

    async def on_text(chunk: str) -> None:
        streamed.append(chunk)

    model = ScriptedModel([[text("I was say"), TransportError("connection reset")]])
    loop, _ = build_loop(model, LoopPolicy.bounded())
    turn = ConversationTurn("s1", "hi")

    outcome = await loop.run(turn, tool_context, on_text=on_text)

    assert outcome.aborted
    assert outcome.stop_reason == "transport_error"
    assert outcome.text == "I was say"
    assert outcome.error == "connection reset"
    assert streamed == ["I was say"]
    assert not turn.sealed
    assert [message.role for message in turn] == ["user"]


@pytest.mark.asyncio
async def test_transport_error_in_a_later_round_keeps_earlier_work(tool_context: ToolContext) -> None:
    model = ScriptedModel([[look(0, "a")], [TransportError("gone")]])
    loop, ran = build_loop(model, LoopPolicy.unbounded(max_rounds=5))

    outcome = await loop.run(ConversationTurn("s1", "hi"), tool_context)

    assert outcome.aborted
    assert ran == ["look"]
    assert len(outcome.actions) == 1
    assert outcome.rounds == 2


@pytest.mark.asyncio
async def test_unexpected_failure_keeps_usage_and_partial_text(tool_context: ToolContext) -> None:
    model = ScriptedModel(
        [
            [look(0, "a"), usage(10, 3)],
            [text("par"), RuntimeError("decoder bug")],
        ]
    )
    loop, ran = build_loop(model, LoopPolicy.unbounded(max_rounds=5))

    outcome = await loop.run(ConversationTurn("s1", "hi"), tool_context)

    assert outcome.aborted
    assert outcome.stop_reason == "internal_error"
    assert outcome.error == "RuntimeError: decoder bug"
    assert outcome.text == "par"
    assert (outcome.usage.prompt_tokens, outcome.usage.completion_tokens) == (10, 3)
    assert outcome.rounds == 2
    assert ran == ["look"]
