"""Tool call dispatch."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from loguru import logger
from pydantic import ValidationError

from sanctuary.core.gate import SafetyGate
from sanctuary.core.types import MalformedCall, ToolCallFragment, ToolOutcome, ToolResult
from sanctuary.tools.context import ToolContext
from sanctuary.tools.registry import ToolRegistry


class ToolDispatcher:
    """Turns finalized fragments into tool outcomes.

    Problems with a single call (bad arguments, unknown name, gate denial,
    handler failure) become an error result for that call only. Sibling calls
    run concurrently and outcomes come back in call order.
    """

    def __init__(self, registry: ToolRegistry, gate: SafetyGate | None = None) -> None:
        self._registry = registry
        self._gate = gate

    async def dispatch(self, fragments: Sequence[ToolCallFragment], context: ToolContext) -> list[ToolOutcome]:
        if not fragments:
            return []
        outcomes = await asyncio.gather(*(self._dispatch_one(fragment, context) for fragment in fragments))
        return list(outcomes)

    async def _dispatch_one(self, fragment: ToolCallFragment, context: ToolContext) -> ToolOutcome:
        call = fragment.finalize()
        if isinstance(call, MalformedCall):
            logger.warning("tool.call.malformed name={} call_id={} error={}", call.name, call.call_id, call.error)
            return ToolOutcome(call.call_id, call.name, ToolResult.failure(call.error), skipped=True)

        spec = self._registry.resolve(call.name)
        if spec is None:
            logger.warning("tool.call.unknown name={} call_id={}", call.name, call.call_id)
            return ToolOutcome(call.call_id, call.name, ToolResult.failure(f"unknown tool: {call.name}"), skipped=True)

        try:
            params = spec.model.model_validate(call.arguments)
        except ValidationError as exc:
            logger.warning("tool.call.invalid name={} call_id={} errors={}", call.name, call.call_id, exc.error_count())
            error = f"invalid arguments: {exc.errors(include_url=False)}"
            return ToolOutcome(call.call_id, call.name, ToolResult.failure(error), skipped=True)

        if self._gate is not None:
            denied = await asyncio.to_thread(self._gate.check, spec, params, context)
            if denied is not None:
                return ToolOutcome(call.call_id, call.name, denied, skipped=True)

        try:
            reply = await self._registry.execute(spec, params, context, call_id=call.call_id)
        except Exception as exc:
            return ToolOutcome(call.call_id, call.name, ToolResult.failure(f"{type(exc).__name__}: {exc}"))
        return ToolOutcome(call.call_id, call.name, reply.result, action=reply.action, terminal=spec.terminal)
