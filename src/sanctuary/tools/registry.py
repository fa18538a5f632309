"""Closed tool registry."""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

from loguru import logger
from pydantic import BaseModel
from republic import Tool

from sanctuary.core.types import Effect, ToolReply
from sanctuary.errors import ConfigurationError, RequiredToolMissingError
from sanctuary.tools.context import ToolContext

K = TypeVar("K", bound=StrEnum)
Handler = Callable[[Any, ToolContext], Awaitable[ToolReply]]
ResourceResolver = Callable[[Any, ToolContext], list[str]]


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text
    available = width - len(placeholder)
    if available <= 0:
        return placeholder
    return text[:available] + placeholder


@dataclass(frozen=True)
class ToolSpec:
    """Tool metadata and runtime handle."""

    name: str
    description: str
    model: type[BaseModel]
    handler: Handler
    effect: Effect
    terminal: bool = False
    query_field: str | None = None
    resources: ResourceResolver | None = None

    def schema(self) -> dict[str, Any]:
        tool = Tool(
            name=self.name,
            description=self.description,
            parameters=self.model.model_json_schema(),
            handler=None,
        )
        return tool.schema()

    def resources_for(self, params: BaseModel, context: ToolContext) -> list[str]:
        if self.resources is None:
            return []
        return self.resources(params, context)


class ToolRegistry(Generic[K]):
    """Registry bound to a closed enumeration of tool kinds.

    Every member of ``kinds`` must receive exactly one handler before the
    registry is used; ``verify`` enforces it.
    """

    def __init__(self, kinds: type[K]) -> None:
        self._kinds = kinds
        self._tools: dict[str, ToolSpec] = {}

    @property
    def kinds(self) -> type[K]:
        return self._kinds

    def register(
        self,
        kind: K,
        *,
        description: str,
        model: type[BaseModel],
        effect: Effect,
        terminal: bool = False,
        query_field: str | None = None,
        resources: ResourceResolver | None = None,
    ) -> Callable[[Handler], Handler]:
        if not isinstance(kind, self._kinds):
            raise ConfigurationError(f"{kind!r} is not a {self._kinds.__name__} member")
        if kind.value in self._tools:
            raise ConfigurationError(f"duplicate handler for tool {kind.value}")
        if query_field is not None and query_field not in model.model_fields:
            raise ConfigurationError(f"tool {kind.value} declares unknown query field {query_field}")

        def decorator(handler: Handler) -> Handler:
            self._tools[kind.value] = ToolSpec(
                name=kind.value,
                description=description,
                model=model,
                handler=handler,
                effect=effect,
                terminal=terminal,
                query_field=query_field,
                resources=resources,
            )
            return handler

        return decorator

    def verify(self) -> None:
        missing = [kind.value for kind in self._kinds if kind.value not in self._tools]
        if missing:
            raise RequiredToolMissingError(f"no handler registered for: {', '.join(sorted(missing))}")

    def resolve(self, name: str) -> ToolSpec | None:
        try:
            kind = self._kinds(name)
        except ValueError:
            return None
        return self._tools.get(kind.value)

    def specs(self) -> list[ToolSpec]:
        return [self._tools[kind.value] for kind in self._kinds if kind.value in self._tools]

    def model_tools(self) -> list[dict[str, Any]]:
        return [spec.schema() for spec in self.specs()]

    async def execute(self, spec: ToolSpec, params: BaseModel, context: ToolContext, *, call_id: str) -> ToolReply:
        self._log_tool_call(spec.name, call_id, params.model_dump(mode="json"))
        start = time.monotonic()
        try:
            return await spec.handler(params, context)
        except Exception:
            logger.exception("tool.call.error name={} call_id={}", spec.name, call_id)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} call_id={} duration={:.3f}ms", spec.name, call_id, duration * 1000)

    def _log_tool_call(self, name: str, call_id: str, kwargs: dict[str, Any]) -> None:
        params: list[str] = []
        for key, value in kwargs.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            params.append(f"{key}={_shorten_text(rendered)}")
        logger.info("tool.call.start name={} call_id={} {{ {} }}", name, call_id, ", ".join(params))
