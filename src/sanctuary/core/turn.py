"""Append-only conversation turn."""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterator

from sanctuary.core.types import ToolOutcome, TurnMessage
from sanctuary.errors import TurnSealedError


class ConversationTurn:
    """Ordered messages of one user-message-to-final-answer cycle."""

    def __init__(
        self,
        session_id: str,
        user_text: str,
        *,
        system_prompt: str = "",
        history: list[TurnMessage] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.session_id = session_id
        self.system_prompt = system_prompt
        self.history = list(history or [])
        self.started_at = time.monotonic()
        self._messages: list[TurnMessage] = [TurnMessage(role="user", content=user_text)]
        self._sealed = False

    @property
    def user_text(self) -> str:
        return self._messages[0].content

    @property
    def sealed(self) -> bool:
        return self._sealed

    def messages(self) -> tuple[TurnMessage, ...]:
        return tuple(self._messages)

    def __iter__(self) -> Iterator[TurnMessage]:
        return iter(tuple(self._messages))

    def append(self, message: TurnMessage) -> None:
        if self._sealed:
            raise TurnSealedError(f"turn {self.id} is sealed")
        self._messages.append(message)

    def append_assistant(self, text: str, tool_calls: list[dict] | None = None) -> None:
        self.append(TurnMessage(role="assistant", content=text, tool_calls=tuple(tool_calls or ())))

    def append_tool_results(self, outcomes: list[ToolOutcome]) -> None:
        for outcome in outcomes:
            self.append(
                TurnMessage(
                    role="tool",
                    content=outcome.result.to_content(),
                    tool_call_id=outcome.call_id,
                    name=outcome.name,
                )
            )

    def seal(self) -> None:
        self._sealed = True

    def provider_messages(self) -> list[dict]:
        """Render system prompt, prior history and this turn for the provider."""
        rendered: list[dict] = []
        if self.system_prompt:
            rendered.append({"role": "system", "content": self.system_prompt})
        rendered.extend(message.to_provider() for message in self.history)
        rendered.extend(message.to_provider() for message in self._messages)
        return rendered

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
