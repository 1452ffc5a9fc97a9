"""Segment model, on-disk naming and finalization helpers.

A segment's lifecycle state is encoded in its file name so that any scan of
the recordings tree can classify files without extra metadata::

    <root>/<camera>/<YYYY-MM-DD>/<HH-MM-SS-mmm>.<ext>.part        open
    <root>/<camera>/<YYYY-MM-DD>/<HH-MM-SS-mmm>.<ext>.unverified  closed-unverified
    <root>/<camera>/<YYYY-MM-DD>/<HH-MM-SS-mmm>.<ext>             closed-verified
    <root>/<camera>/<YYYY-MM-DD>/<...>.pending-delete             being deleted
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from .config import SUPPORTED_CONTAINERS
from .errors import ValidationError
from .feeds import fsync_directory, validate_camera_id

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .media import SessionControl

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"
UNVERIFIED_SUFFIX = ".unverified"
PENDING_DELETE_SUFFIX = ".pending-delete"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_STEM_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{2})-(\d{3})$")
_ONE_MS = timedelta(milliseconds=1)


class SegmentState(str, Enum):
    OPEN = "open"
    CLOSED_UNVERIFIED = "closed-unverified"
    CLOSED_VERIFIED = "closed-verified"
    EXPIRED = "expired"


@dataclass(slots=True)
class Segment:
    """A recorded media file and its finalize state."""

    path: Path
    camera_id: str
    start: datetime
    state: SegmentState
    size_bytes: int = 0
    duration_s: float | None = None
    closed_at: datetime | None = None

    def age_s(self, now: datetime) -> float:
        return (now - self.start).total_seconds()

    def relative_name(self) -> str:
        return f"{self.path.parent.name}/{self.path.name}"

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "file": self.relative_name(),
            "start": self.start.isoformat(),
            "state": self.state.value,
            "size_bytes": self.size_bytes,
            "duration_s": self.duration_s,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


# ----------------------------------------------------------------------
# Naming
# ----------------------------------------------------------------------
def camera_directory(root: Path, camera_id: str) -> Path:
    return Path(root) / validate_camera_id(camera_id)


def segment_path(root: Path, camera_id: str, start: datetime, container: str) -> Path:
    """Return the final (verified) path for a segment starting at ``start``."""

    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    start = start.astimezone(timezone.utc)
    stem = start.strftime("%H-%M-%S") + f"-{start.microsecond // 1000:03d}"
    return camera_directory(root, camera_id) / start.strftime("%Y-%m-%d") / f"{stem}.{container}"


def claim_segment_start(
    root: Path,
    camera_id: str,
    start: datetime,
    container: str,
    *,
    after: datetime | None = None,
) -> tuple[datetime, Path]:
    """Return a start time and final path no other segment of the camera uses.

    Names have millisecond resolution, so ``start`` is truncated to the
    millisecond and moved forward until it is later than ``after`` and none
    of the final, ``.part`` or ``.unverified`` names exist.
    """

    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    start = start.astimezone(timezone.utc)
    start = start.replace(microsecond=start.microsecond // 1000 * 1000)
    if after is not None and start <= after:
        after = after.astimezone(timezone.utc)
        start = after.replace(microsecond=after.microsecond // 1000 * 1000) + _ONE_MS
    while True:
        path = segment_path(root, camera_id, start, container)
        taken = (
            path.exists()
            or path.with_name(path.name + PART_SUFFIX).exists()
            or path.with_name(path.name + UNVERIFIED_SUFFIX).exists()
        )
        if not taken:
            return start, path
        start += _ONE_MS


def parse_segment_start(path: Path) -> datetime | None:
    """Recover the start timestamp encoded in ``path``; ``None`` if foreign."""

    name = path.name
    for suffix in (PENDING_DELETE_SUFFIX, PART_SUFFIX, UNVERIFIED_SUFFIX):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    stem, _, ext = name.rpartition(".")
    if ext not in SUPPORTED_CONTAINERS or not _DATE_RE.match(path.parent.name):
        return None
    match = _STEM_RE.match(stem)
    if match is None:
        return None
    hour, minute, second, millis = (int(group) for group in match.groups())
    try:
        day = datetime.strptime(path.parent.name, "%Y-%m-%d")
        return day.replace(
            hour=hour,
            minute=minute,
            second=second,
            microsecond=millis * 1000,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def classify(path: Path) -> SegmentState | None:
    name = path.name
    if name.endswith(PENDING_DELETE_SUFFIX):
        return None
    if name.endswith(PART_SUFFIX):
        return SegmentState.OPEN
    if name.endswith(UNVERIFIED_SUFFIX):
        return SegmentState.CLOSED_UNVERIFIED
    if path.suffix.lstrip(".") in SUPPORTED_CONTAINERS:
        return SegmentState.CLOSED_VERIFIED
    return None


def verified_path_for(path: Path) -> Path:
    name = path.name
    for suffix in (PART_SUFFIX, UNVERIFIED_SUFFIX):
        if name.endswith(suffix):
            return path.with_name(name[: -len(suffix)])
    return path


# ----------------------------------------------------------------------
# Scanning
# ----------------------------------------------------------------------
def iter_camera_ids(root: Path) -> list[str]:
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(child.name for child in root.iterdir() if child.is_dir())


def scan_segments(
    root: Path,
    camera_id: str,
    *,
    now: datetime | None = None,
    unverified_timeout_s: float | None = None,
) -> list[Segment]:
    """Return the camera's segments ordered oldest-first by start time.

    Closed-unverified files whose close time is older than
    ``unverified_timeout_s`` are reported as expired.
    """

    directory = camera_directory(root, camera_id)
    if not directory.is_dir():
        return []
    now = now or datetime.now(timezone.utc)
    segments: list[Segment] = []
    for day_dir in directory.iterdir():
        if not day_dir.is_dir() or not _DATE_RE.match(day_dir.name):
            continue
        for path in day_dir.iterdir():
            state = classify(path)
            if state is None:
                continue
            start = parse_segment_start(path)
            if start is None:
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            closed_at = (
                None
                if state is SegmentState.OPEN
                else datetime.fromtimestamp(stat.st_mtime, timezone.utc)
            )
            if (
                state is SegmentState.CLOSED_UNVERIFIED
                and unverified_timeout_s is not None
                and closed_at is not None
                and (now - closed_at).total_seconds() > unverified_timeout_s
            ):
                state = SegmentState.EXPIRED
            segments.append(
                Segment(
                    path=path,
                    camera_id=camera_id,
                    start=start,
                    state=state,
                    size_bytes=int(stat.st_size),
                    closed_at=closed_at,
                )
            )
    segments.sort(key=lambda segment: (segment.start, segment.path.name))
    return segments


def find_pending_deletes(root: Path) -> list[Path]:
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(root.glob(f"*/*/*{PENDING_DELETE_SUFFIX}"))


def summarize_segments(segments: Iterable[Segment]) -> dict[str, object]:
    """Summarise closed-verified segments for the recordings query."""

    verified = [segment for segment in segments if segment.state is SegmentState.CLOSED_VERIFIED]
    return {
        "segment_count": len(verified),
        "total_bytes": sum(segment.size_bytes for segment in verified),
        "oldest": verified[0].start.isoformat() if verified else None,
        "newest": verified[-1].start.isoformat() if verified else None,
    }


def resolve_verified_segment(root: Path, camera_id: str, day: str, name: str) -> Path:
    """Return the path of a closed-verified segment addressed by date/name."""

    if not _DATE_RE.match(day) or "/" in name or name != Path(name).name:
        raise ValidationError("Invalid segment reference")
    path = camera_directory(root, camera_id) / day / name
    if classify(path) is not SegmentState.CLOSED_VERIFIED or parse_segment_start(path) is None:
        raise ValidationError("Only finalized segments can be served")
    return path


# ----------------------------------------------------------------------
# Writer-side finalization
# ----------------------------------------------------------------------
class SegmentFile:
    """The file backing one open segment.

    Media is written to ``<final>.part``; :meth:`seal` flushes it and renames it
    to ``<final>.unverified`` atomically, unless the session was aborted.
    """

    def __init__(self, final_path: Path, start: datetime) -> None:
        self.final_path = Path(final_path)
        self.start = start
        self.part_path = self.final_path.with_name(self.final_path.name + PART_SUFFIX)
        self.unverified_path = self.final_path.with_name(self.final_path.name + UNVERIFIED_SUFFIX)
        self.part_path.parent.mkdir(parents=True, exist_ok=True)

    def size(self) -> int:
        try:
            return self.part_path.stat().st_size
        except FileNotFoundError:
            return 0

    def seal(self, control: "SessionControl | None" = None) -> Path | None:
        """Make the segment durable under its unverified name.

        Returns ``None`` when the session has been force-terminated; the
        ``.part`` file is then left for the startup scan to discard.
        """

        if not self.part_path.exists():
            return None
        with self.part_path.open("rb+") as handle:
            os.fsync(handle.fileno())
        if control is not None:
            with control.finalize_lock:
                if control.aborted:
                    logger.warning("Not sealing %s: session was force-terminated", self.part_path)
                    return None
                os.replace(self.part_path, self.unverified_path)
        else:
            os.replace(self.part_path, self.unverified_path)
        fsync_directory(self.part_path.parent)
        return self.unverified_path


def promote_verified(unverified_path: Path) -> Path:
    """Rename a closed-unverified file to its final, playable name."""

    final_path = verified_path_for(unverified_path)
    os.replace(unverified_path, final_path)
    fsync_directory(final_path.parent)
    return final_path


__all__ = [
    "PART_SUFFIX",
    "PENDING_DELETE_SUFFIX",
    "Segment",
    "SegmentFile",
    "SegmentState",
    "UNVERIFIED_SUFFIX",
    "camera_directory",
    "claim_segment_start",
    "classify",
    "find_pending_deletes",
    "iter_camera_ids",
    "parse_segment_start",
    "promote_verified",
    "resolve_verified_segment",
    "scan_segments",
    "segment_path",
    "summarize_segments",
    "verified_path_for",
]
