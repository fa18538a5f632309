"""Explicit context handed to every tool handler."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sanctuary.store.crypto import ContentCipher
    from sanctuary.store.journey import JourneyStore
    from sanctuary.store.log import SessionLog
    from sanctuary.store.plans import PlanBook
    from sanctuary.store.prompts import PromptStore


@dataclass(frozen=True)
class ToolContext:
    """Acting identity plus the storage handles a handler may use."""

    session_id: str
    user_id: str
    run_id: str
    cipher: ContentCipher
    log: SessionLog
    journeys: JourneyStore | None = None
    plans: PlanBook | None = None
    prompts: PromptStore | None = None
    workspace: Path = Path(".")
    database_path: Path | None = None
    domains: tuple[str, ...] = ()
    shell_timeout_seconds: int = 30
