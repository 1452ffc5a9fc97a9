"""Rolling retention of recorded segments."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .config import RetentionPolicy
from .errors import RetentionIOError, StorageExhausted, ValidationError
from .segments import (
    PENDING_DELETE_SUFFIX,
    Segment,
    SegmentState,
    camera_directory,
    find_pending_deletes,
    iter_camera_ids,
    scan_segments,
)
from .system_log import SystemLog

logger = logging.getLogger(__name__)

FreeSpaceProbe = Callable[[Path], int]

_DELETABLE = (SegmentState.CLOSED_VERIFIED, SegmentState.EXPIRED)


def disk_free_bytes(path: Path) -> int:
    return int(shutil.disk_usage(path).free)


@dataclass(slots=True)
class RetentionReport:
    """Outcome of a retention pass."""

    started_at: float
    deleted: list[Path] = field(default_factory=list)
    expired: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    bytes_reclaimed: int = 0
    free_bytes: int | None = None
    alert: StorageExhausted | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "started_at": datetime.fromtimestamp(self.started_at, timezone.utc).isoformat(),
            "deleted": [str(path) for path in self.deleted],
            "deleted_count": len(self.deleted),
            "expired": [str(path) for path in self.expired],
            "errors": list(self.errors),
            "bytes_reclaimed": self.bytes_reclaimed,
            "free_bytes": self.free_bytes,
            "alert": self.alert.to_dict() if self.alert else None,
        }


class RetentionManager:
    """Delete old segments under age, byte budget and free-space limits.

    Only closed-verified and expired segments are ever deleted; open and
    closed-unverified files belong to the writer. Deletion is two-phase
    (rename to ``.pending-delete`` then unlink) so a crash never leaves a
    half-deleted segment that still looks playable.
    """

    def __init__(
        self,
        root: Path,
        policy: RetentionPolicy | None = None,
        *,
        free_space_probe: FreeSpaceProbe | None = None,
        system_log: SystemLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(root)
        self._policy = policy or RetentionPolicy()
        self._probe = free_space_probe or disk_free_bytes
        self._system_log = system_log
        self._clock = clock
        self._alert: StorageExhausted | None = None
        self._reported_expired: set[Path] = set()
        self._last_report: RetentionReport | None = None
        self._lock: asyncio.Lock | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._pending: dict[str, asyncio.Task[RetentionReport]] = {}

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def alert(self) -> StorageExhausted | None:
        """Standing ``StorageExhausted`` alert, if the floor is unmet."""

        return self._alert

    @property
    def last_report(self) -> RetentionReport | None:
        return self._last_report

    def free_bytes(self) -> int | None:
        try:
            return int(self._probe(self._root))
        except OSError as exc:
            logger.warning("Unable to read free space for %s: %s", self._root, exc)
            return None

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the periodic retention task."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(), name="retention")

    async def aclose(self) -> None:
        """Stop the periodic task and any reactive passes."""

        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        task = self._task
        if task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        try:
            await task
        finally:
            self._task = None
            self._stop_event = None

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("Retention pass raised an unexpected exception")
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._policy.scan_interval_s
                )
            except asyncio.TimeoutError:
                continue

    async def run_once(self, camera_id: str | None = None) -> RetentionReport:
        """Run one pass over ``camera_id`` or every camera and return its report."""

        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            return await asyncio.to_thread(self.collect, camera_id)

    def on_segment_closed(self, segment: Segment) -> None:
        """Schedule a reactive pass for the segment's camera."""

        existing = self._pending.get(segment.camera_id)
        if existing is not None and not existing.done():
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._reactive_pass(segment.camera_id))
        self._pending[segment.camera_id] = task

    async def _reactive_pass(self, camera_id: str) -> RetentionReport | None:
        try:
            return await self.run_once(camera_id)
        except Exception:
            logger.exception("Retention pass for %s failed", camera_id)
            return None
        finally:
            self._pending.pop(camera_id, None)

    # ------------------------------------------------------------------
    # Synchronous core
    # ------------------------------------------------------------------
    def sweep_pending_deletes(self) -> list[Path]:
        """Finish deletions interrupted by a crash."""

        removed: list[Path] = []
        for path in find_pending_deletes(self._root):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Unable to remove %s: %s", path, exc)
                continue
            removed.append(path)
        if removed:
            logger.info("Removed %d interrupted deletion(s)", len(removed))
        return removed

    def collect(self, camera_id: str | None = None) -> RetentionReport:
        """Apply the policy once, synchronously."""

        report = RetentionReport(started_at=self._clock())
        now = datetime.fromtimestamp(report.started_at, timezone.utc)
        if camera_id is None:
            self.sweep_pending_deletes()
            camera_ids = iter_camera_ids(self._root)
        else:
            camera_ids = [camera_id]

        free = self.free_bytes()
        for current in camera_ids:
            try:
                free = self._collect_camera(current, now, free, report)
            except ValidationError:
                logger.warning("Skipping unexpected directory %r in recordings root", current)
        report.free_bytes = free
        self._update_alert(free, full_pass=camera_id is None)
        report.alert = self._alert
        self._last_report = report
        if report.deleted:
            logger.info(
                "Retention removed %d segment(s), reclaimed %d bytes",
                len(report.deleted),
                report.bytes_reclaimed,
            )
        return report

    def _collect_camera(
        self, camera_id: str, now: datetime, free: int | None, report: RetentionReport
    ) -> int | None:
        policy = self._policy
        segments = scan_segments(
            self._root,
            camera_id,
            now=now,
            unverified_timeout_s=policy.unverified_timeout_s,
        )
        self._report_expired(segments, report)
        camera_bytes = sum(segment.size_bytes for segment in segments)
        budget = policy.max_camera_bytes

        for segment in segments:
            if segment.state not in _DELETABLE:
                continue
            too_old = segment.age_s(now) > policy.max_age_s
            low_space = (
                free is not None
                and free < policy.min_free_bytes
                and (budget is None or camera_bytes > budget)
            )
            if not (too_old or low_space):
                break
            try:
                self._delete(segment.path)
            except RetentionIOError as exc:
                logger.warning("%s", exc)
                report.errors.append(str(exc))
                continue
            self._reported_expired.discard(segment.path)
            report.deleted.append(segment.path)
            report.bytes_reclaimed += segment.size_bytes
            camera_bytes -= segment.size_bytes
            if free is not None:
                probed = self.free_bytes()
                free = probed if probed is not None else free + segment.size_bytes

        self._prune_empty_days(camera_id)
        return free

    def _report_expired(self, segments: list[Segment], report: RetentionReport) -> None:
        for segment in segments:
            if segment.state is not SegmentState.EXPIRED:
                continue
            report.expired.append(segment.path)
            if segment.path in self._reported_expired:
                continue
            self._reported_expired.add(segment.path)
            logger.warning(
                "Segment %s of %s was never verified and has expired",
                segment.relative_name(),
                segment.camera_id,
            )
            if self._system_log is not None:
                self._system_log.record(
                    "retention",
                    "segment_expired",
                    f"Segment {segment.relative_name()} from {segment.camera_id} expired unverified.",
                    camera_id=segment.camera_id,
                    metadata={"size_bytes": segment.size_bytes},
                )

    def _delete(self, path: Path) -> None:
        pending = path.with_name(path.name + PENDING_DELETE_SUFFIX)
        try:
            os.replace(path, pending)
        except OSError as exc:
            raise RetentionIOError(f"Unable to mark {path} for deletion: {exc}") from exc
        try:
            pending.unlink()
        except OSError as exc:
            raise RetentionIOError(f"Unable to delete {pending}: {exc}") from exc

    def _prune_empty_days(self, camera_id: str) -> None:
        directory = camera_directory(self._root, camera_id)
        if not directory.is_dir():
            return
        for day_dir in directory.iterdir():
            if not day_dir.is_dir():
                continue
            try:
                day_dir.rmdir()
            except OSError:
                continue

    def _update_alert(self, free: int | None, *, full_pass: bool) -> None:
        floor = self._policy.min_free_bytes
        if free is None:
            return
        if free >= floor:
            if self._alert is not None:
                logger.info("Free space recovered to %d bytes; storage alert cleared", free)
                self._record_event("storage_alert_cleared", "Storage floor satisfied again.", free)
            self._alert = None
            return
        if not full_pass:
            return
        if self._alert is None:
            logger.error(
                "Free space %d bytes is below the %d byte floor after retention", free, floor
            )
            self._record_event(
                "storage_alert_raised",
                "Free space remains below the floor after deleting all eligible segments.",
                free,
            )
        self._alert = StorageExhausted(free, floor)

    def _record_event(self, event: str, message: str, free: int) -> None:
        if self._system_log is None:
            return
        self._system_log.record(
            "retention",
            event,
            message,
            metadata={"free_bytes": free, "floor_bytes": self._policy.min_free_bytes},
        )


__all__ = ["FreeSpaceProbe", "RetentionManager", "RetentionReport", "disk_free_bytes"]
