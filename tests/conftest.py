from __future__ import annotations

from pathlib import Path

import pytest

from sanctuary.config.settings import DEFAULT_DOMAINS
from sanctuary.store.crypto import ContentCipher
from sanctuary.store.journey import JourneyStore
from sanctuary.store.log import SessionLog
from sanctuary.store.plans import PlanBook
from sanctuary.store.prompts import PromptStore
from sanctuary.tools.context import ToolContext


@pytest.fixture
def cipher() -> ContentCipher:
    return ContentCipher(bytes(range(32)))


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def tool_context(home: Path, workspace: Path, cipher: ContentCipher) -> ToolContext:
    return ToolContext(
        session_id="s1",
        user_id="u1",
        run_id="run-1",
        cipher=cipher,
        log=SessionLog(home, cipher),
        journeys=JourneyStore(home),
        plans=PlanBook(home),
        prompts=PromptStore(home),
        workspace=workspace,
        domains=DEFAULT_DOMAINS,
        shell_timeout_seconds=5,
    )
