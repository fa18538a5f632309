"""Value types shared by the agent engine."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

Role = Literal["user", "assistant", "tool"]


class Effect(StrEnum):
    """Side-effect class a tool handler declares."""

    READ_ONLY = "read_only"
    ADDITIVE = "additive"
    MUTATING = "mutating"


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class ToolCallDelta:
    """One partial tool call as delivered by the provider."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class StreamDelta:
    """One incremental fragment of a streamed model response."""

    text: str | None = None
    tool_calls: tuple[ToolCallDelta, ...] = ()
    usage: Usage | None = None


@dataclass(frozen=True)
class ToolInvocation:
    """A finalized tool call whose arguments parsed into an object."""

    call_id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class MalformedCall:
    """A finalized tool call whose arguments could not be parsed."""

    call_id: str
    name: str
    raw_arguments: str
    error: str


@dataclass
class ToolCallFragment:
    """Accumulates the name and arguments of one tool call across deltas."""

    index: int
    call_id: str | None = None
    name: str = ""
    arguments: str = ""

    def resolved_id(self) -> str:
        return self.call_id or f"call_{self.index}"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.resolved_id(),
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def finalize(self) -> ToolInvocation | MalformedCall:
        raw = self.arguments.strip()
        if not raw:
            return ToolInvocation(call_id=self.resolved_id(), name=self.name, arguments={})
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            return MalformedCall(self.resolved_id(), self.name, self.arguments, f"invalid JSON arguments: {exc.msg}")
        if not isinstance(parsed, dict):
            return MalformedCall(self.resolved_id(), self.name, self.arguments, "arguments must be a JSON object")
        return ToolInvocation(call_id=self.resolved_id(), name=self.name, arguments=parsed)


@dataclass(frozen=True)
class ToolResult:
    """Model-visible outcome of one tool call."""

    ok: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def success(cls, data: Any = None) -> ToolResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, data: Any = None) -> ToolResult:
        return cls(ok=False, data=data, error=error)

    def to_content(self) -> str:
        if self.ok:
            return json.dumps(self.data if self.data is not None else {"status": "ok"}, ensure_ascii=False, default=str)
        body: dict[str, Any] = {"error": self.error}
        if isinstance(self.data, dict):
            body.update(self.data)
        return json.dumps(body, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class ClientAction:
    """Declarative signal for the presentation layer, delivered once per turn."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)

    def tags(self) -> set[str]:
        found: set[str] = set()
        domains = self.payload.get("domains")
        if isinstance(domains, list | tuple):
            found.update(str(item) for item in domains)
        domain = self.payload.get("domain")
        if isinstance(domain, str):
            found.add(domain)
        return found

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, **self.payload}


@dataclass(frozen=True)
class ToolReply:
    """What a handler returns: a result for the model and an optional client action."""

    result: ToolResult
    action: ClientAction | None = None


@dataclass(frozen=True)
class ToolOutcome:
    """Dispatch outcome of one call, correlated to its call id."""

    call_id: str
    name: str
    result: ToolResult
    action: ClientAction | None = None
    terminal: bool = False
    skipped: bool = False

    def to_message(self) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.call_id, "content": self.result.to_content()}


@dataclass(frozen=True)
class TurnMessage:
    role: Role
    content: str
    tool_calls: tuple[dict[str, Any], ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def to_provider(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [dict(call) for call in self.tool_calls]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message
