from pathlib import Path

import pytest

from sanctuary.core.dispatcher import ToolDispatcher
from sanctuary.core.gate import SafetyGate, scan_query
from sanctuary.core.types import ToolCallFragment
from sanctuary.errors import PlanDecisionError
from sanctuary.store.plans import PlanBook, PlanDecision, PlanStatus
from sanctuary.tools.context import ToolContext
from sanctuary.tools.operator import QueryInput, WriteInput, build_operator_registry


@pytest.mark.parametrize(
    "query",
    [
        "SELECT id, updated_at, created_by FROM users",
        "  with recent as (select * from sessions) select count(*) from recent;",
    ],
)
def test_plain_reads_pass_the_keyword_scan(query: str) -> None:
    assert scan_query(query) is None


@pytest.mark.parametrize(
    ("query", "reason"),
    [
        ("DELETE FROM users", "only SELECT or WITH"),
        ("select * from users; drop table users", "multiple statements"),
        ("SELECT * FROM users -- harmless?", "comments"),
        ("SELECT * FROM a UNION SELECT * FROM b", "UNION"),
        ("select 1 into outfile '/tmp/x'", "INTO"),
        ("SELECT * FROM t WHERE x = 1 /* c */", "comments"),
    ],
)
def test_keyword_scan_rejects_writes_and_tricks(query: str, reason: str) -> None:
    rejected = scan_query(query)
    assert rejected is not None
    assert reason in rejected


def approve(book: PlanBook, owner: str, resources: list[str], title: str = "Plan") -> str:
    proposal = book.propose(owner, title=title, summary="s", steps=["do it"], affected_resources=resources)
    book.decide(PlanDecision(proposal_id=proposal.id, approved=True))
    return proposal.id


def test_query_scan_applies_even_with_an_approved_plan(tool_context: ToolContext) -> None:
    assert tool_context.plans is not None
    approve(tool_context.plans, "u1", ["*"])
    registry = build_operator_registry()
    gate = SafetyGate(tool_context.plans)

    denied = gate.check(registry.resolve("query_database"), QueryInput(query="DROP TABLE users"), tool_context)
    assert denied is not None
    assert denied.data["denied"] is True


def test_mutating_call_needs_an_approved_covering_plan(tool_context: ToolContext) -> None:
    book = tool_context.plans
    assert book is not None
    registry = build_operator_registry()
    gate = SafetyGate(book)
    spec = registry.resolve("write_file")
    params = WriteInput(path="src/app.py", content="x")

    denied = gate.check(spec, params, tool_context)
    assert denied is not None
    assert denied.data == {
        "denied": True,
        "reason": denied.error,
        "hint": "propose_plan",
        "resources": ["src/app.py"],
    }

    pending = book.propose("u1", title="Edit", summary="s", steps=["edit"], affected_resources=["src/app.py"])
    assert gate.check(spec, params, tool_context) is not None

    book.decide(PlanDecision(proposal_id=pending.id, approved=False))
    assert gate.check(spec, params, tool_context) is not None

    approve(book, "u1", ["src/*.py"])
    assert gate.check(spec, params, tool_context) is None
    assert gate.check(spec, WriteInput(path="docs/readme.md", content="x"), tool_context) is not None


def test_plans_of_other_operators_do_not_cover(tool_context: ToolContext) -> None:
    assert tool_context.plans is not None
    approve(tool_context.plans, "someone-else", ["shell"])
    registry = build_operator_registry()
    spec = registry.resolve("run_bash")
    params = spec.model.model_validate({"cmd": "ls"})
    assert SafetyGate(tool_context.plans).check(spec, params, tool_context) is not None


@pytest.mark.asyncio
async def test_gated_write_only_happens_after_approval(tool_context: ToolContext, workspace: Path) -> None:
    assert tool_context.plans is not None
    dispatcher = ToolDispatcher(build_operator_registry(), SafetyGate(tool_context.plans))
    write = ToolCallFragment(
        index=0, call_id="w", name="write_file", arguments='{"path": "notes.txt", "content": "hi"}'
    )

    [denied] = await dispatcher.dispatch([write], tool_context)
    assert denied.skipped
    assert not (workspace / "notes.txt").exists()

    approve(tool_context.plans, "u1", ["notes.txt"])
    [allowed] = await dispatcher.dispatch([write], tool_context)
    assert allowed.result.ok
    assert (workspace / "notes.txt").read_text(encoding="utf-8") == "hi"


def test_decisions_bind_to_one_pending_proposal(home: Path) -> None:
    book = PlanBook(home)
    proposal = book.propose("u1", title="Cleanup", summary="s", steps=["a"], affected_resources=["x"])

    decided = book.decide(PlanDecision(proposal_id=proposal.id, approved=True, note="go"))
    assert decided.status is PlanStatus.APPROVED
    assert PlanBook(home).get(proposal.id).note == "go"

    with pytest.raises(PlanDecisionError):
        book.decide(PlanDecision(proposal_id=proposal.id, approved=False))
    with pytest.raises(PlanDecisionError):
        book.decide(PlanDecision(proposal_id="missing", approved=True))


def test_textual_decision_needs_an_unambiguous_title(home: Path) -> None:
    book = PlanBook(home)
    first = book.propose("u1", title="Deploy", summary="s", steps=["a"], affected_resources=["shell"])

    decision = book.decision_from_text("u1", "approved: deploy")
    assert decision == PlanDecision(proposal_id=first.id, approved=True)
    assert book.decision_from_text("u1", "sounds good") is None

    book.propose("u1", title="Deploy", summary="again", steps=["b"], affected_resources=["shell"])
    with pytest.raises(PlanDecisionError):
        book.decision_from_text("u1", "DENIED: Deploy")


@pytest.mark.asyncio
async def test_later_denial_withdraws_an_earlier_approval(tool_context: ToolContext, workspace: Path) -> None:
    book = tool_context.plans
    assert book is not None
    dispatcher = ToolDispatcher(build_operator_registry(), SafetyGate(book))
    write = ToolCallFragment(index=0, call_id="w", name="write_file", arguments='{"path": "notes.txt", "content": "x"}')
    approve(book, "u1", ["notes.txt"], title="Old")
    overwrite = book.propose(
        "u1", title="Overwrite notes", summary="s", steps=["write"], affected_resources=["notes.txt"]
    )
    book.decide(PlanDecision(proposal_id=overwrite.id, approved=False))

    [outcome] = await dispatcher.dispatch([write], tool_context)

    assert not outcome.result.ok
    assert outcome.result.data["denied_plan"] == overwrite.id
    assert not (workspace / "notes.txt").exists()

    approve(book, "u1", ["notes.txt"], title="Overwrite notes, smaller")
    [retried] = await dispatcher.dispatch([write], tool_context)
    assert retried.result.ok


def test_denial_only_withdraws_the_resources_it_names(tool_context: ToolContext) -> None:
    book = tool_context.plans
    assert book is not None
    approve(book, "u1", ["src/*"])
    denied = book.propose("u1", title="Touch main", summary="s", steps=["edit"], affected_resources=["src/main.py"])
    book.decide(PlanDecision(proposal_id=denied.id, approved=False))
    spec = build_operator_registry().resolve("write_file")
    gate = SafetyGate(book)

    assert gate.check(spec, WriteInput(path="src/main.py", content="x"), tool_context) is not None
    assert gate.check(spec, WriteInput(path="src/util.py", content="x"), tool_context) is None
