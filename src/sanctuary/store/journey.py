"""Per-user journey state."""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import quote

from pydantic import BaseModel, Field


class Insight(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    domain: str
    content: str
    created_at: float = Field(default_factory=time.time)


class Thought(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: str
    created_at: float = Field(default_factory=time.time)


class Habit(BaseModel):
    domain: str
    title: str
    streak: int = 0
    active: bool = True


class Journey(BaseModel):
    """Durable mentoring state of one user. Insight and thought content is ciphertext."""

    user_id: str
    name: str | None = None
    current_domain: str | None = None
    onboarding_stage: int = 0
    has_completed_onboarding: bool = False
    resonance: dict[str, int] = Field(default_factory=dict)
    insights: list[Insight] = Field(default_factory=list)
    thoughts: list[Thought] = Field(default_factory=list)
    habits: list[Habit] = Field(default_factory=list)
    started_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class JourneyStore:
    """JSON document per user with read-modify-write under one lock."""

    def __init__(self, home: Path) -> None:
        self._root = (home / "journeys").resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def load(self, user_id: str) -> Journey:
        with self._lock:
            return self._load_locked(user_id)

    def update(self, user_id: str, mutate: Callable[[Journey], Any]) -> Journey:
        with self._lock:
            journey = self._load_locked(user_id)
            mutate(journey)
            journey.updated_at = time.time()
            self._write_locked(journey)
            return journey

    def increment_resonance(self, user_id: str, domain: str, amount: int = 1) -> int:
        def _bump(journey: Journey) -> None:
            journey.resonance[domain] = journey.resonance.get(domain, 0) + amount

        return self.update(user_id, _bump).resonance[domain]

    def reset(self, user_id: str) -> None:
        with self._lock:
            self._path(user_id).unlink(missing_ok=True)

    def count(self) -> int:
        return sum(1 for _ in self._root.glob("*.json"))

    def _load_locked(self, user_id: str) -> Journey:
        path = self._path(user_id)
        if not path.exists():
            return Journey(user_id=user_id)
        return Journey.model_validate(json.loads(path.read_text(encoding="utf-8")))

    def _write_locked(self, journey: Journey) -> None:
        path = self._path(journey.user_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(journey.model_dump_json(), encoding="utf-8")
        os.replace(tmp, path)

    def _path(self, user_id: str) -> Path:
        return self._root / f"{quote(user_id, safe='')}.json"
