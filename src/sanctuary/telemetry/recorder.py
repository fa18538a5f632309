"""Turn telemetry persistence."""

from __future__ import annotations

import threading

from loguru import logger
from republic import TapeEntry

from sanctuary.core.loop import TurnOutcome
from sanctuary.core.turn import ConversationTurn
from sanctuary.errors import TelemetryError
from sanctuary.store.log import SessionLog


class TurnRecorder:
    """Persists one turn exactly once, whether it completed or aborted."""

    def __init__(self, log: SessionLog, *, model: str) -> None:
        self._log = log
        self._model = model
        self._lock = threading.Lock()
        self._flushed = False

    @property
    def flushed(self) -> bool:
        return self._flushed

    def flush(self, turn: ConversationTurn, outcome: TurnOutcome) -> list[TapeEntry]:
        with self._lock:
            if self._flushed:
                raise TelemetryError(f"turn {turn.id} was already recorded")
            self._flushed = True

        if outcome.aborted:
            entries = [self._log.event_entry("turn.aborted", self._aborted_data(turn, outcome))]
        else:
            entries = [
                self._log.message_entry(
                    "tool",
                    tool.result.to_content(),
                    extra={"tool_call_id": tool.call_id, "name": tool.name},
                )
                for tool in outcome.outcomes
            ]
            entries.append(self._log.message_entry("assistant", outcome.text, meta=self.meta(turn, outcome)))

        stored = self._log.append(turn.session_id, entries)
        logger.info(
            "telemetry.turn.recorded turn={} status={} entries={} cost_usd={:.6f}",
            turn.id,
            outcome.status,
            len(stored),
            outcome.usage.cost(self._model),
        )
        return stored

    def meta(self, turn: ConversationTurn, outcome: TurnOutcome) -> dict[str, object]:
        return {
            "turn_id": turn.id,
            "prompt_tokens": outcome.usage.prompt_tokens,
            "completion_tokens": outcome.usage.completion_tokens,
            "cost_usd": round(outcome.usage.cost(self._model), 8),
            "processing_ms": outcome.elapsed_ms,
            "domains": outcome.domains(),
            "tools": outcome.tool_names(),
            "model": self._model,
            "rounds": outcome.rounds,
            "stop_reason": outcome.stop_reason,
        }

    def _aborted_data(self, turn: ConversationTurn, outcome: TurnOutcome) -> dict[str, object]:
        return {
            **self.meta(turn, outcome),
            "error": outcome.error,
            "partial_chars": len(outcome.text),
        }
