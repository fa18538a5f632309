"""Privileged operator toolset."""

from __future__ import annotations

import asyncio
import sqlite3
from enum import StrEnum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from sanctuary.core.prompt import MENTOR_PROMPT_NAME
from sanctuary.core.types import ClientAction, Effect, ToolReply, ToolResult
from sanctuary.store.plans import PlanStatus
from sanctuary.tools.context import ToolContext
from sanctuary.tools.registry import ToolRegistry

READ_LINE_LIMIT = 500
LIST_LIMIT = 100
SEARCH_LIMIT = 50
QUERY_ROW_LIMIT = 200
OUTPUT_LIMIT = 20_000
SKIPPED_DIRS = frozenset({".git", ".venv", "node_modules", "__pycache__", ".mypy_cache", ".pytest_cache"})
BLOCKED_COMMANDS = ("rm -rf /", "mkfs", "dd if=", ":(){", "chmod -R 777 /", "shutdown", "reboot")


class OperatorTool(StrEnum):
    QUERY_DATABASE = "query_database"
    GET_SYSTEM_HEALTH = "get_system_health"
    UPDATE_SYSTEM_PROMPT = "update_system_prompt"
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    LIST_FILES = "list_files"
    SEARCH_CODE = "search_code"
    RUN_BASH = "run_bash"
    PROPOSE_PLAN = "propose_plan"


class QueryInput(BaseModel):
    query: str = Field(..., description="A single read-only SELECT statement")


class EmptyInput(BaseModel):
    pass


class PromptInput(BaseModel):
    content: str = Field(..., min_length=1, description="The complete new mentor system prompt")
    reason: str = Field(..., description="Why the prompt changes")


class ReadInput(BaseModel):
    path: str = Field(..., description="Path relative to the workspace")
    start_line: int | None = Field(default=None, ge=1, description="First line, 1-based")
    end_line: int | None = Field(default=None, ge=1, description="Last line, inclusive")


class WriteInput(BaseModel):
    path: str = Field(..., description="Path relative to the workspace")
    content: str = Field(..., description="File content")


class EditInput(BaseModel):
    path: str = Field(..., description="Path relative to the workspace")
    old: str = Field(..., min_length=1, description="Exact text to replace, whitespace included")
    new: str = Field(..., description="Replacement text")


class ListInput(BaseModel):
    pattern: str = Field(default="**/*", description="Glob pattern")
    path: str = Field(default=".", description="Base directory relative to the workspace")


class SearchInput(BaseModel):
    pattern: str = Field(..., min_length=1, description="Substring to look for")
    path: str = Field(default=".", description="Base directory relative to the workspace")
    ignore_case: bool = Field(default=False)


class BashInput(BaseModel):
    cmd: str = Field(..., description="Shell command, run in the workspace")
    timeout_seconds: int | None = Field(default=None, ge=1, le=600, description="Override the default timeout")


class ProposePlanInput(BaseModel):
    title: str = Field(..., min_length=1, description="Short plan title")
    summary: str = Field(..., description="What the plan achieves")
    steps: list[str] = Field(..., min_length=1, description="Ordered steps")
    affected_resources: list[str] = Field(
        ...,
        min_length=1,
        description="Workspace-relative paths (globs allowed), 'shell' or 'prompt:mentor' this plan will touch",
    )


def confine(workspace: Path, raw: str) -> Path:
    """Resolve ``raw`` inside ``workspace``; escaping paths raise ValueError."""
    root = workspace.resolve()
    candidate = (root / Path(raw).expanduser()).resolve()
    if candidate != root and root not in candidate.parents:
        raise ValueError(f"path escapes the workspace: {raw}")
    return candidate


def workspace_resource(workspace: Path, raw: str) -> str:
    try:
        return confine(workspace, raw).relative_to(workspace.resolve()).as_posix()
    except ValueError:
        return raw


def blocked_command(cmd: str) -> str | None:
    normalized = " ".join(cmd.split())
    for pattern in BLOCKED_COMMANDS:
        if pattern in normalized:
            return pattern
    return None


def _truncate(text: str, limit: int = OUTPUT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[truncated: {len(text) - limit} more characters]"


def _run_query(database: Path, query: str) -> dict[str, Any]:
    connection = sqlite3.connect(f"{database.resolve().as_uri()}?mode=ro", uri=True)
    try:
        connection.row_factory = sqlite3.Row
        cursor = connection.execute(query)
        rows = cursor.fetchmany(QUERY_ROW_LIMIT + 1)
    finally:
        connection.close()
    return {
        "rows": [dict(row) for row in rows[:QUERY_ROW_LIMIT]],
        "truncated": len(rows) > QUERY_ROW_LIMIT,
    }


def _read_lines(path: Path, start: int | None, end: int | None) -> str:
    lines = path.read_text(encoding="utf-8").splitlines()
    first = (start or 1) - 1
    last = min(len(lines), end) if end is not None else min(len(lines), first + READ_LINE_LIMIT)
    body = "\n".join(f"{index + 1}: {line}" for index, line in enumerate(lines[first:last], start=first))
    if end is None and last < len(lines):
        body += f"\n\n[showing lines {first + 1}-{last} of {len(lines)}; pass start_line/end_line for more]"
    return body


def _search(base: Path, root: Path, pattern: str, ignore_case: bool) -> list[str]:
    needle = pattern.casefold() if ignore_case else pattern
    rows: list[str] = []
    for path in sorted(base.rglob("*")):
        if not path.is_file() or SKIPPED_DIRS.intersection(path.relative_to(root).parts):
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for index, line in enumerate(content.splitlines(), start=1):
            haystack = line.casefold() if ignore_case else line
            if needle in haystack:
                rows.append(f"{path.relative_to(root).as_posix()}:{index}:{line.strip()}")
                if len(rows) >= SEARCH_LIMIT:
                    return rows
    return rows


def _edit(path: Path, old: str, new: str) -> bool:
    text = path.read_text(encoding="utf-8")
    if old not in text:
        return False
    path.write_text(text.replace(old, new, 1), encoding="utf-8")
    return True


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def build_operator_registry() -> ToolRegistry[OperatorTool]:
    """Register every operator tool; fails fast when one is missing."""

    registry: ToolRegistry[OperatorTool] = ToolRegistry(OperatorTool)
    register = registry.register

    @register(
        OperatorTool.QUERY_DATABASE,
        description="Run one read-only SELECT statement against the application database",
        model=QueryInput,
        effect=Effect.READ_ONLY,
        query_field="query",
    )
    async def query_database(params: QueryInput, context: ToolContext) -> ToolReply:
        if context.database_path is None or not context.database_path.exists():
            return ToolReply(ToolResult.failure("no database is configured"))
        try:
            data = await asyncio.to_thread(_run_query, context.database_path, params.query)
        except sqlite3.Error as exc:
            return ToolReply(ToolResult.failure(f"query failed: {exc}"))
        return ToolReply(ToolResult.success(data))

    @register(
        OperatorTool.GET_SYSTEM_HEALTH,
        description="Summarize users, sessions and pending plans",
        model=EmptyInput,
        effect=Effect.READ_ONLY,
    )
    async def get_system_health(_params: EmptyInput, context: ToolContext) -> ToolReply:
        sessions = await asyncio.to_thread(context.log.list_sessions)
        journeys = await asyncio.to_thread(context.journeys.count) if context.journeys is not None else 0
        pending = await asyncio.to_thread(context.plans.proposals, None, PlanStatus.PENDING) if context.plans else []
        return ToolReply(
            ToolResult.success(
                {
                    "users": journeys,
                    "sessions": len(sessions),
                    "pending_plans": len(pending),
                    "database": context.database_path is not None and context.database_path.exists(),
                    "status": "healthy",
                }
            )
        )

    @register(
        OperatorTool.UPDATE_SYSTEM_PROMPT,
        description="Replace the mentor system prompt; the previous version is kept",
        model=PromptInput,
        effect=Effect.MUTATING,
        resources=lambda _params, _context: [f"prompt:{MENTOR_PROMPT_NAME}"],
    )
    async def update_system_prompt(params: PromptInput, context: ToolContext) -> ToolReply:
        if context.prompts is None:
            return ToolReply(ToolResult.failure("prompt store is not available"))
        version = await asyncio.to_thread(
            context.prompts.update, MENTOR_PROMPT_NAME, params.content, reason=params.reason, author=context.user_id
        )
        logger.info("operator.prompt.updated version={} author={}", version.version, context.user_id)
        return ToolReply(ToolResult.success({"version": version.version}))

    @register(
        OperatorTool.READ_FILE,
        description="Read a workspace file with line numbers; at most 500 lines unless a range is given",
        model=ReadInput,
        effect=Effect.READ_ONLY,
    )
    async def read_file(params: ReadInput, context: ToolContext) -> ToolReply:
        path = confine(context.workspace, params.path)
        text = await asyncio.to_thread(_read_lines, path, params.start_line, params.end_line)
        return ToolReply(ToolResult.success({"path": params.path, "content": text}))

    @register(
        OperatorTool.WRITE_FILE,
        description="Write a workspace file, creating parent directories",
        model=WriteInput,
        effect=Effect.MUTATING,
        resources=lambda params, context: [workspace_resource(context.workspace, params.path)],
    )
    async def write_file(params: WriteInput, context: ToolContext) -> ToolReply:
        path = confine(context.workspace, params.path)
        await asyncio.to_thread(_write, path, params.content)
        return ToolReply(ToolResult.success({"written": len(params.content), "path": params.path}))

    @register(
        OperatorTool.EDIT_FILE,
        description="Replace the first exact occurrence of a text in a workspace file",
        model=EditInput,
        effect=Effect.MUTATING,
        resources=lambda params, context: [workspace_resource(context.workspace, params.path)],
    )
    async def edit_file(params: EditInput, context: ToolContext) -> ToolReply:
        path = confine(context.workspace, params.path)
        if not await asyncio.to_thread(_edit, path, params.old, params.new):
            return ToolReply(ToolResult.failure("old text not found; it must match exactly, whitespace included"))
        return ToolReply(ToolResult.success({"edited": params.path}))

    @register(
        OperatorTool.LIST_FILES,
        description="List workspace files matching a glob pattern",
        model=ListInput,
        effect=Effect.READ_ONLY,
    )
    async def list_files(params: ListInput, context: ToolContext) -> ToolReply:
        root = context.workspace.resolve()
        base = confine(context.workspace, params.path)

        def _list() -> list[str]:
            return sorted(
                path.relative_to(root).as_posix()
                for path in base.glob(params.pattern)
                if path.is_file() and not SKIPPED_DIRS.intersection(path.relative_to(root).parts)
            )

        files = await asyncio.to_thread(_list)
        return ToolReply(ToolResult.success({"files": files[:LIST_LIMIT], "total": len(files)}))

    @register(
        OperatorTool.SEARCH_CODE,
        description="Search workspace files for a substring",
        model=SearchInput,
        effect=Effect.READ_ONLY,
    )
    async def search_code(params: SearchInput, context: ToolContext) -> ToolReply:
        base = confine(context.workspace, params.path)
        rows = await asyncio.to_thread(_search, base, context.workspace.resolve(), params.pattern, params.ignore_case)
        return ToolReply(ToolResult.success({"matches": rows}))

    @register(
        OperatorTool.RUN_BASH,
        description="Run a shell command in the workspace",
        model=BashInput,
        effect=Effect.MUTATING,
        resources=lambda _params, _context: ["shell"],
    )
    async def run_bash(params: BashInput, context: ToolContext) -> ToolReply:
        blocked = blocked_command(params.cmd)
        if blocked is not None:
            logger.warning("operator.bash.blocked pattern={}", blocked)
            return ToolReply(ToolResult.failure(f"command blocked: contains {blocked!r}"))
        timeout = params.timeout_seconds or context.shell_timeout_seconds
        process = await asyncio.create_subprocess_shell(
            params.cmd,
            cwd=str(context.workspace.resolve()),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await process.communicate()
        except TimeoutError:
            process.kill()
            await process.wait()
            return ToolReply(ToolResult.failure(f"command timed out after {timeout}s"))
        data = {
            "exit_code": process.returncode,
            "stdout": _truncate(stdout.decode("utf-8", errors="replace")),
            "stderr": _truncate(stderr.decode("utf-8", errors="replace")),
        }
        if process.returncode != 0:
            return ToolReply(ToolResult.failure(f"exit={process.returncode}", data=data))
        return ToolReply(ToolResult.success(data))

    @register(
        OperatorTool.PROPOSE_PLAN,
        description="Propose a plan for human approval before any change; list every resource it will touch",
        model=ProposePlanInput,
        effect=Effect.ADDITIVE,
    )
    async def propose_plan(params: ProposePlanInput, context: ToolContext) -> ToolReply:
        if context.plans is None:
            return ToolReply(ToolResult.failure("plan book is not available"))
        resources = [
            resource if resource == "shell" or ":" in resource else workspace_resource(context.workspace, resource)
            for resource in params.affected_resources
        ]
        proposal = await asyncio.to_thread(
            context.plans.propose,
            context.user_id,
            title=params.title,
            summary=params.summary,
            steps=params.steps,
            affected_resources=resources,
        )
        logger.info("operator.plan.proposed id={} title={}", proposal.id, proposal.title)
        return ToolReply(
            ToolResult.success({"proposal_id": proposal.id, "status": "pending", "needs_approval": True}),
            ClientAction("plan_proposal", proposal.to_payload()),
        )

    registry.verify()
    return registry
