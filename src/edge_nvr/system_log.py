"""Persistent operational event log shared by the recorder components."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SystemLogEntry:
    """A single operator-facing event."""

    timestamp: float
    category: str
    event: str
    message: str
    camera_id: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.camera_id is not None:
            payload["camera_id"] = self.camera_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class SystemLog:
    """Append-only JSONL event log with a bounded in-memory window.

    Persistence is best effort: a failing disk only disables the file backing,
    it never interrupts the caller.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data/system_log.jsonl"),
        *,
        max_entries: int = 500,
        compact_after: int = 5000,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._compact_after = max(max_entries, int(compact_after))
        self._lines_on_disk = 0
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare system log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        camera_id: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append an event and return the stored entry."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=cleaned_category or "general",
            event=event,
            message=message,
            camera_id=camera_id,
            metadata=_drop_empty(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        camera_id: str | None = None,
    ) -> list[SystemLogEntry]:
        """Return the most recent entries, oldest first."""

        with self._lock:
            entries: Iterable[SystemLogEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if camera_id:
            entries = [entry for entry in entries if entry.camera_id == camera_id]
        entries = list(entries)
        if limit is not None:
            entries = entries[-max(1, int(limit)):]
        return entries

    # ------------------------------------------------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
            return
        self._lines_on_disk = len(lines)
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = _deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    def _append_persistent(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            if self._lines_on_disk >= self._compact_after:
                # The window already holds ``entry``.
                self._compact()
                return
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
            self._lines_on_disk += 1
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)

    def _compact(self) -> None:
        # Rewrite the file with only the in-memory window; called with the lock held.
        assert self._path is not None
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for entry in self._entries:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        tmp_path.replace(self._path)
        self._lines_on_disk = len(self._entries)


def _drop_empty(metadata: dict[str, object | None] | None) -> dict[str, object] | None:
    if not metadata:
        return None
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    return cleaned or None


def _deserialize(payload: object) -> SystemLogEntry | None:
    if not isinstance(payload, dict):
        return None
    event = payload.get("event")
    message = payload.get("message")
    if not isinstance(event, str) or not isinstance(message, str):
        return None
    category = payload.get("category")
    try:
        timestamp = float(payload.get("timestamp", time.time()))
    except (TypeError, ValueError):
        timestamp = time.time()
    camera_id = payload.get("camera_id")
    metadata = payload.get("metadata")
    return SystemLogEntry(
        timestamp=timestamp,
        category=category.strip() if isinstance(category, str) and category.strip() else "general",
        event=event,
        message=message,
        camera_id=camera_id if isinstance(camera_id, str) else None,
        metadata=metadata if isinstance(metadata, dict) else None,
    )


__all__ = ["SystemLog", "SystemLogEntry"]
