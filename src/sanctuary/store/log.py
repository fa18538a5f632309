"""Append-only per-session message log."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast
from urllib.parse import quote, unquote

from loguru import logger
from republic import TapeEntry

from sanctuary.core.types import TurnMessage
from sanctuary.errors import DecryptionError
from sanctuary.store.crypto import ContentCipher

LOG_FILE_SUFFIX = ".jsonl"
KIND_MESSAGE = "message"
KIND_EVENT = "event"


class LogFile:
    """Helper for one session's JSONL file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._read_entries: list[TapeEntry] = []
        self._read_offset = 0

    def _next_id(self) -> int:
        if self._read_entries:
            return cast(int, self._read_entries[-1].id + 1)
        return 1

    def _reset(self) -> None:
        self._read_entries = []
        self._read_offset = 0

    def read(self) -> list[TapeEntry]:
        with self._lock:
            return self._read_locked()

    def _read_locked(self) -> list[TapeEntry]:
        if not self.path.exists():
            self._reset()
            return []

        if self.path.stat().st_size < self._read_offset:
            # The file was truncated or replaced, so cached entries are stale.
            self._reset()

        with self.path.open("r", encoding="utf-8") as handle:
            handle.seek(self._read_offset)
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                entry = self.entry_from_payload(payload)
                if entry is not None:
                    self._read_entries.append(entry)
            self._read_offset = handle.tell()

        return list(self._read_entries)

    @staticmethod
    def entry_to_payload(entry: TapeEntry) -> dict[str, object]:
        return {
            "id": entry.id,
            "kind": entry.kind,
            "payload": dict(entry.payload),
            "meta": dict(entry.meta),
            "timestamp": entry.timestamp,
        }

    @staticmethod
    def entry_from_payload(payload: object) -> TapeEntry | None:
        if not isinstance(payload, dict):
            return None
        entry_id = payload.get("id")
        kind = payload.get("kind")
        entry_payload = payload.get("payload")
        meta = payload.get("meta")
        if not isinstance(entry_id, int) or not isinstance(kind, str) or not isinstance(entry_payload, dict):
            return None
        if not isinstance(meta, dict):
            meta = {}
        timestamp = payload.get("timestamp", 0.0)
        return TapeEntry(entry_id, kind, dict(entry_payload), dict(meta), timestamp)

    def append_many(self, entries: Iterable[TapeEntry]) -> list[TapeEntry]:
        pending = list(entries)
        if not pending:
            return []

        stored_entries: list[TapeEntry] = []
        with self._lock:
            # Keep cache and offset in sync before allocating new IDs.
            self._read_locked()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                next_id = self._next_id()
                for entry in pending:
                    stored = TapeEntry(next_id, entry.kind, dict(entry.payload), dict(entry.meta))
                    handle.write(json.dumps(self.entry_to_payload(stored), ensure_ascii=False) + "\n")
                    self._read_entries.append(stored)
                    stored_entries.append(stored)
                    next_id += 1
                self._read_offset = handle.tell()
        return stored_entries

    def archive(self) -> Path | None:
        with self._lock:
            if not self.path.exists():
                return None
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
            archive_file = self.path.with_suffix(f"{LOG_FILE_SUFFIX}.{stamp}.bak")
            self.path.replace(archive_file)
            self._reset()
            return archive_file


class SessionLog:
    """Append-only JSONL log per session; message content is stored encrypted."""

    def __init__(self, home: Path, cipher: ContentCipher) -> None:
        self._root = (home / "sessions").resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._cipher = cipher
        self._files: dict[str, LogFile] = {}
        self._lock = threading.Lock()

    def list_sessions(self) -> list[str]:
        names = (path.name.removesuffix(LOG_FILE_SUFFIX) for path in self._root.glob(f"*{LOG_FILE_SUFFIX}"))
        return sorted(unquote(name) for name in names if name)

    def read(self, session_id: str) -> list[TapeEntry]:
        return self._file(session_id).read()

    def message_entry(
        self, role: str, content: str, *, meta: dict[str, Any] | None = None, extra: dict[str, Any] | None = None
    ) -> TapeEntry:
        payload: dict[str, Any] = {"role": role, "content": self._cipher.encrypt(content)}
        if extra:
            payload.update(extra)
        return TapeEntry(0, KIND_MESSAGE, payload, dict(meta or {}))

    @staticmethod
    def event_entry(name: str, data: dict[str, Any]) -> TapeEntry:
        return TapeEntry(0, KIND_EVENT, {"name": name, "data": data}, {})

    def append(self, session_id: str, entries: Iterable[TapeEntry]) -> list[TapeEntry]:
        return self._file(session_id).append_many(entries)

    def append_message(
        self, session_id: str, role: str, content: str, *, meta: dict[str, Any] | None = None
    ) -> TapeEntry:
        return self.append(session_id, [self.message_entry(role, content, meta=meta)])[0]

    def append_event(self, session_id: str, name: str, data: dict[str, Any]) -> TapeEntry:
        return self.append(session_id, [self.event_entry(name, data)])[0]

    def decrypt(self, entry: TapeEntry) -> str:
        return self._cipher.decrypt(str(entry.payload.get("content", "")))

    def history(self, session_id: str, *, limit: int) -> list[TurnMessage]:
        """Decrypted user and assistant messages, oldest first, at most ``limit``."""
        if limit <= 0:
            return []
        messages: list[TurnMessage] = []
        for entry in self.read(session_id):
            if entry.kind != KIND_MESSAGE or entry.payload.get("role") not in {"user", "assistant"}:
                continue
            try:
                content = self.decrypt(entry)
            except DecryptionError:
                logger.warning("session.log.undecryptable session={} entry={}", session_id, entry.id)
                continue
            messages.append(TurnMessage(role=entry.payload["role"], content=content))
        return messages[-limit:]

    def count_messages(self, session_id: str, role: str) -> int:
        return sum(
            1 for entry in self.read(session_id) if entry.kind == KIND_MESSAGE and entry.payload.get("role") == role
        )

    def events(self, session_id: str, name: str) -> list[TapeEntry]:
        return [
            entry for entry in self.read(session_id) if entry.kind == KIND_EVENT and entry.payload.get("name") == name
        ]

    def archive(self, session_id: str) -> Path | None:
        return self._file(session_id).archive()

    def _file(self, session_id: str) -> LogFile:
        with self._lock:
            if session_id not in self._files:
                encoded = quote(session_id, safe="")
                self._files[session_id] = LogFile(self._root / f"{encoded}{LOG_FILE_SUFFIX}")
            return self._files[session_id]
