"""Camera registry backed by the durable feed list."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock

from .errors import DuplicateIdError, NotFoundError
from .feeds import (
    FeedLine,
    atomic_write_text,
    read_feed_file,
    redact_uri,
    render_feed_list,
    validate_camera_id,
    validate_stream_uri,
)

logger = logging.getLogger(__name__)


class DesiredState(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class CameraEntry:
    """Immutable view of one registered camera."""

    camera_id: str
    uri: str
    desired_state: DesiredState = DesiredState.ENABLED
    created_at: datetime = datetime.fromtimestamp(0, timezone.utc)

    @property
    def enabled(self) -> bool:
        return self.desired_state is DesiredState.ENABLED

    @property
    def redacted_uri(self) -> str:
        return redact_uri(self.uri)

    def to_dict(self) -> dict[str, object]:
        # The raw URI carries credentials and is intentionally omitted.
        return {
            "camera_id": self.camera_id,
            "uri": self.redacted_uri,
            "desired_state": self.desired_state.value,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"CameraEntry(camera_id={self.camera_id!r}, uri={self.redacted_uri!r}, "
            f"desired_state={self.desired_state.value!r})"
        )


class CameraRegistry:
    """In-memory camera map persisted to the feed list on every mutation.

    Mutations are serialised by a lock and publish a fresh immutable snapshot;
    readers only ever see complete snapshots.
    """

    def __init__(self, feed_file: Path | str) -> None:
        self._path = Path(feed_file)
        self._lock = Lock()
        self._snapshot: tuple[CameraEntry, ...] = ()
        self.reload()

    @property
    def path(self) -> Path:
        return self._path

    def reload(self) -> tuple[CameraEntry, ...]:
        """Re-read the feed list from disk."""

        with self._lock:
            loaded_at = datetime.now(timezone.utc)
            # The feed list has no timestamps; keep the known creation time of unchanged cameras.
            known = {entry.camera_id: entry for entry in self._snapshot}
            entries = tuple(
                CameraEntry(
                    camera_id=feed.camera_id,
                    uri=feed.uri,
                    desired_state=DesiredState.ENABLED if feed.enabled else DesiredState.DISABLED,
                    created_at=_created_at(known.get(feed.camera_id), feed.uri, loaded_at),
                )
                for feed in read_feed_file(self._path)
            )
            self._snapshot = entries
        logger.info("Loaded %d camera(s) from %s", len(entries), self._path)
        return entries

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list(self) -> tuple[CameraEntry, ...]:
        """Return the current snapshot in insertion order."""

        return self._snapshot

    def get(self, camera_id: str) -> CameraEntry:
        for entry in self._snapshot:
            if entry.camera_id == camera_id:
                return entry
        raise NotFoundError(f"Camera {camera_id!r} not found")

    def __contains__(self, camera_id: object) -> bool:
        return any(entry.camera_id == camera_id for entry in self._snapshot)

    def __len__(self) -> int:
        return len(self._snapshot)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(self, camera_id: str, uri: str, *, enabled: bool = True) -> CameraEntry:
        cleaned_id = validate_camera_id(camera_id)
        cleaned_uri = validate_stream_uri(uri)
        with self._lock:
            if any(entry.camera_id == cleaned_id for entry in self._snapshot):
                raise DuplicateIdError(f"Camera {cleaned_id!r} already exists")
            entry = CameraEntry(
                camera_id=cleaned_id,
                uri=cleaned_uri,
                desired_state=DesiredState.ENABLED if enabled else DesiredState.DISABLED,
                created_at=datetime.now(timezone.utc),
            )
            self._commit(self._snapshot + (entry,))
        logger.info("Camera %s added (%s)", cleaned_id, entry.redacted_uri)
        return entry

    def remove(self, camera_id: str) -> CameraEntry:
        with self._lock:
            removed = self._find_locked(camera_id)
            self._commit(tuple(entry for entry in self._snapshot if entry.camera_id != camera_id))
        logger.info("Camera %s removed", camera_id)
        return removed

    def set_enabled(self, camera_id: str, enabled: bool) -> CameraEntry:
        desired = DesiredState.ENABLED if enabled else DesiredState.DISABLED
        with self._lock:
            current = self._find_locked(camera_id)
            if current.desired_state is desired:
                return current
            updated = replace(current, desired_state=desired)
            self._commit(
                tuple(updated if entry.camera_id == camera_id else entry for entry in self._snapshot)
            )
        logger.info("Camera %s %s", camera_id, desired.value)
        return updated

    # ------------------------------------------------------------------
    def _find_locked(self, camera_id: str) -> CameraEntry:
        for entry in self._snapshot:
            if entry.camera_id == camera_id:
                return entry
        raise NotFoundError(f"Camera {camera_id!r} not found")

    def _commit(self, entries: tuple[CameraEntry, ...]) -> None:
        # Persist first; the in-memory snapshot only changes once the file is durable.
        feeds = [
            FeedLine(camera_id=entry.camera_id, uri=entry.uri, enabled=entry.enabled)
            for entry in entries
        ]
        atomic_write_text(self._path, render_feed_list(feeds))
        self._snapshot = entries


def _created_at(previous: CameraEntry | None, uri: str, default: datetime) -> datetime:
    if previous is not None and previous.uri == uri:
        return previous.created_at
    return default


__all__ = ["CameraEntry", "CameraRegistry", "DesiredState"]
