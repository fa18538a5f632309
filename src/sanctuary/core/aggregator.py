"""Stream delta aggregation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sanctuary.core.types import StreamDelta, ToolCallDelta, ToolCallFragment, Usage
from sanctuary.errors import StreamProtocolError

TextSink = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class RoundResult:
    """Everything one model round-trip produced once its stream ended."""

    text: str
    fragments: tuple[ToolCallFragment, ...] = ()
    usage: Usage | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.fragments)

    def assistant_tool_calls(self) -> list[dict]:
        return [fragment.to_message() for fragment in self.fragments]


@dataclass
class StreamAggregator:
    """Rebuilds text and keyed tool-call fragments from ordered deltas.

    Text is forwarded to ``on_text`` as soon as it arrives. Tool-call fragments
    stay internal until ``finish`` is called at the end of the round.
    """

    on_text: TextSink | None = None
    _text_parts: list[str] = field(default_factory=list)
    _fragments: dict[int, ToolCallFragment] = field(default_factory=dict)
    _usage: Usage | None = None
    _finished: bool = False

    async def feed(self, delta: StreamDelta) -> None:
        if self._finished:
            raise StreamProtocolError("delta received after the round finished")
        if delta.text:
            self._text_parts.append(delta.text)
            if self.on_text is not None:
                await self.on_text(delta.text)
        for call_delta in delta.tool_calls:
            self._merge(call_delta)
        if delta.usage is not None:
            self._usage = delta.usage

    @property
    def text(self) -> str:
        """Text received so far, available even when the stream broke."""
        return "".join(self._text_parts)

    def finish(self) -> RoundResult:
        self._finished = True
        ordered = tuple(self._fragments[index] for index in sorted(self._fragments))
        return RoundResult(text="".join(self._text_parts), fragments=ordered, usage=self._usage)

    def _merge(self, call_delta: ToolCallDelta) -> None:
        fragment = self._fragments.get(call_delta.index)
        if fragment is None:
            fragment = ToolCallFragment(index=call_delta.index)
            self._fragments[call_delta.index] = fragment
        if call_delta.id:
            if fragment.call_id is None:
                fragment.call_id = call_delta.id
            elif fragment.call_id != call_delta.id:
                raise StreamProtocolError(
                    f"tool call index {call_delta.index} reused: {fragment.call_id} then {call_delta.id}"
                )
        if call_delta.name:
            fragment.name += call_delta.name
        if call_delta.arguments:
            fragment.arguments += call_delta.arguments
