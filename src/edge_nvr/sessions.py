"""Recording sessions: one supervised ingestion task per enabled camera."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from .config import NvrConfig
from .errors import IngestionFailure
from .feeds import redact_uri
from .health import HealthMonitor, HealthState
from .media import MediaEngine, RecordRequest, SessionControl
from .registry import CameraEntry
from .segments import (
    Segment,
    SegmentState,
    iter_camera_ids,
    promote_verified,
    scan_segments,
)
from .system_log import SystemLog

logger = logging.getLogger(__name__)

SegmentListener = Callable[[Segment], Awaitable[None] | None]

# Extra time granted to a force-terminated task to unwind.
_ABORT_SETTLE_S = 0.5


class SessionStatus(str, Enum):
    RUNNING = "running"
    BACKOFF = "backoff"
    STOPPING = "stopping"
    STOPPED = "stopped"
    OFFLINE = "offline"


@dataclass(slots=True)
class RecordingSession:
    """Runtime state of one camera's ingestion loop."""

    camera_id: str
    request: RecordRequest
    control: SessionControl = field(default_factory=SessionControl)
    status: SessionStatus = SessionStatus.RUNNING
    started_at: float = field(default_factory=time.time)
    segments_closed: int = 0
    last_segment_start: datetime | None = None
    task: asyncio.Task[None] | None = None
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "started_at": datetime.fromtimestamp(self.started_at, timezone.utc).isoformat(),
            "segments_closed": self.segments_closed,
            "last_segment_start": (
                self.last_segment_start.isoformat() if self.last_segment_start else None
            ),
        }


@dataclass(slots=True)
class RecoveryReport:
    discarded: list[Path] = field(default_factory=list)
    verified: list[Path] = field(default_factory=list)
    unverified: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {
            "discarded": len(self.discarded),
            "verified": len(self.verified),
            "unverified": len(self.unverified),
        }


class SessionManager:
    """Start, stop and supervise recording sessions.

    Blocking media I/O runs on a worker thread per session. Closed segments
    are verified on that thread, then handed to the event loop in order and
    announced to subscribers via ``on_segment_closed``.
    """

    def __init__(
        self,
        config: NvrConfig,
        engine: MediaEngine,
        health: HealthMonitor,
        *,
        system_log: SystemLog | None = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._health = health
        self._system_log = system_log
        self._sessions: dict[str, RecordingSession] = {}
        self._listeners: list[SegmentListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, camera_id: str) -> RecordingSession | None:
        return self._sessions.get(camera_id)

    def is_active(self, camera_id: str) -> bool:
        session = self._sessions.get(camera_id)
        return session is not None and session.task is not None and not session.task.done()

    def active_ids(self) -> list[str]:
        return [camera_id for camera_id in self._sessions if self.is_active(camera_id)]

    def subscribe(self, listener: SegmentListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start_session(self, entry: CameraEntry) -> RecordingSession:
        """Launch ingestion for ``entry`` and return without waiting."""

        existing = self._sessions.get(entry.camera_id)
        if existing is not None and existing.task is not None and not existing.task.done():
            return existing
        request = RecordRequest(
            camera_id=entry.camera_id,
            uri=entry.uri,
            root=self._config.recordings_dir,
            segment=self._config.segment,
            media=self._config.media,
        )
        session = RecordingSession(camera_id=entry.camera_id, request=request)
        loop = asyncio.get_running_loop()
        session.task = loop.create_task(self._run(session), name=f"record-{entry.camera_id}")
        self._sessions[entry.camera_id] = session
        logger.info("Started session for %s (%s)", entry.camera_id, entry.redacted_uri)
        return session

    async def stop_session(self, camera_id: str, grace: float | None = None) -> bool:
        """Stop the camera's session, waiting at most ``grace`` seconds.

        Returns ``True`` when the session finalized cleanly. On expiry the
        session is force-terminated: its in-flight segment is never promoted
        and ``False`` is returned.
        """

        session = self._sessions.get(camera_id)
        if session is None or session.task is None:
            self._sessions.pop(camera_id, None)
            return True
        grace = self._config.segment.grace_period_s if grace is None else max(0.0, grace)
        session.status = SessionStatus.STOPPING
        session.control.request_stop()
        session.wakeup.set()
        task = session.task
        done, _ = await asyncio.wait({task}, timeout=grace)
        if self._sessions.get(camera_id) is session:
            self._sessions.pop(camera_id, None)
        if done:
            session.status = SessionStatus.STOPPED
            return True

        logger.warning("Session %s did not stop within %.1fs; terminating", camera_id, grace)
        session.control.abort()
        task.cancel()
        await asyncio.wait({task}, timeout=_ABORT_SETTLE_S)
        session.status = SessionStatus.STOPPED
        return False

    async def aclose(self, grace: float | None = None) -> None:
        camera_ids = list(self._sessions)
        if camera_ids:
            await asyncio.gather(*(self.stop_session(camera_id, grace) for camera_id in camera_ids))

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------
    async def recover(self) -> RecoveryReport:
        """Discard orphaned ``.part`` files and re-verify unverified segments."""

        return await asyncio.to_thread(self.recover_sync)

    def recover_sync(self) -> RecoveryReport:
        report = RecoveryReport()
        root = self._config.recordings_dir
        container = self._config.segment.container
        for camera_id in iter_camera_ids(root):
            try:
                segments = scan_segments(root, camera_id)
            except ValueError:
                logger.warning("Ignoring unexpected directory %s in recordings root", camera_id)
                continue
            for segment in segments:
                if segment.state is SegmentState.OPEN:
                    segment.path.unlink(missing_ok=True)
                    report.discarded.append(segment.path)
                elif segment.state is SegmentState.CLOSED_UNVERIFIED:
                    if self._engine.verify(segment.path, container):
                        report.verified.append(promote_verified(segment.path))
                    else:
                        report.unverified.append(segment.path)
        if report.discarded or report.verified or report.unverified:
            logger.info(
                "Recovery: discarded %d partial, promoted %d, left %d unverified",
                len(report.discarded),
                len(report.verified),
                len(report.unverified),
            )
        return report

    # ------------------------------------------------------------------
    # Supervision loop
    # ------------------------------------------------------------------
    async def _run(self, session: RecordingSession) -> None:
        loop = asyncio.get_running_loop()
        camera_id = session.camera_id
        control = session.control

        def on_closed(path: Path, start: datetime, closed_at: datetime, size: int) -> None:
            # Worker thread: verify, promote, then hand off to the loop in order.
            segment = self._finalize(session, path, start, closed_at, size)
            if segment is not None:
                loop.call_soon_threadsafe(self._dispatch, session, segment)

        try:
            while not control.stop_requested:
                if self._health.is_offline(camera_id):
                    session.status = SessionStatus.OFFLINE
                    logger.warning("Camera %s is offline; waiting for manual enable", camera_id)
                    return
                session.status = SessionStatus.RUNNING
                attempt_started = time.monotonic()
                try:
                    await asyncio.to_thread(self._engine.record, session.request, on_closed, control)
                    if control.stop_requested:
                        break
                    raise IngestionFailure(f"Stream for {camera_id} ended unexpectedly")
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if control.stop_requested:
                        break
                    if not isinstance(exc, IngestionFailure):
                        logger.exception("Unexpected error recording %s", camera_id)
                    uptime = time.monotonic() - attempt_started
                    record = self._health.record_failure(camera_id, str(exc), uptime_s=uptime)
                    if record.state is HealthState.OFFLINE:
                        session.status = SessionStatus.OFFLINE
                        return
                    delay = self._health.backoff.delay_for(record.consecutive_failures)
                    logger.info(
                        "Camera %s failed (%s); retrying in %.1fs",
                        camera_id,
                        redact_uri(str(exc)),
                        delay,
                    )
                    session.status = SessionStatus.BACKOFF
                    await self._sleep(session, delay)
            session.status = SessionStatus.STOPPED
        finally:
            logger.info("Session for %s finished (%s)", camera_id, session.status.value)

    async def _sleep(self, session: RecordingSession, delay: float) -> None:
        if delay <= 0:
            return
        session.wakeup.clear()
        if session.control.stop_requested:
            return
        try:
            await asyncio.wait_for(session.wakeup.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _finalize(
        self,
        session: RecordingSession,
        path: Path,
        start: datetime,
        closed_at: datetime,
        size: int,
    ) -> Segment | None:
        control = session.control
        if control.aborted:
            return None
        container = session.request.segment.container
        if not self._engine.verify(path, container):
            logger.warning("Segment %s failed verification; left unverified", path.name)
            if self._system_log is not None:
                self._system_log.record(
                    "camera",
                    "segment_unverified",
                    f"Segment {path.name} from {session.camera_id} failed verification.",
                    camera_id=session.camera_id,
                )
            return None
        with control.finalize_lock:
            if control.aborted:
                return None
            final_path = promote_verified(path)
        return Segment(
            path=final_path,
            camera_id=session.camera_id,
            start=start,
            state=SegmentState.CLOSED_VERIFIED,
            size_bytes=size,
            duration_s=(closed_at - start).total_seconds(),
            closed_at=closed_at,
        )

    def _dispatch(self, session: RecordingSession, segment: Segment) -> None:
        session.segments_closed += 1
        session.last_segment_start = segment.start
        if segment.closed_at is not None:
            self._health.record_success(segment.camera_id, segment.closed_at.timestamp())
        else:
            self._health.record_success(segment.camera_id)
        for listener in list(self._listeners):
            try:
                result = listener(segment)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("Segment listener failed for %s", segment.camera_id)


__all__ = [
    "RecordingSession",
    "RecoveryReport",
    "SegmentListener",
    "SessionManager",
    "SessionStatus",
]
