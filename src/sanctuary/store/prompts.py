"""Versioned system prompt overrides."""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from urllib.parse import quote

from pydantic import BaseModel, Field


class PromptVersion(BaseModel):
    version: int
    content: str
    reason: str = ""
    author: str = ""
    created_at: float = Field(default_factory=time.time)


class PromptStore:
    """Keeps every revision of a named prompt; the newest one is active."""

    def __init__(self, home: Path) -> None:
        self._root = (home / "prompts").resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def current(self, name: str) -> PromptVersion | None:
        versions = self.history(name)
        return versions[-1] if versions else None

    def history(self, name: str) -> list[PromptVersion]:
        with self._lock:
            return self._load_locked(name)

    def update(self, name: str, content: str, *, reason: str = "", author: str = "") -> PromptVersion:
        with self._lock:
            versions = self._load_locked(name)
            version = PromptVersion(version=len(versions) + 1, content=content, reason=reason, author=author)
            versions.append(version)
            path = self._path(name)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps([item.model_dump(mode="json") for item in versions]), encoding="utf-8")
            os.replace(tmp, path)
            return version

    def _load_locked(self, name: str) -> list[PromptVersion]:
        path = self._path(name)
        if not path.exists():
            return []
        return [PromptVersion.model_validate(item) for item in json.loads(path.read_text(encoding="utf-8"))]

    def _path(self, name: str) -> Path:
        return self._root / f"{quote(name, safe='')}.json"
