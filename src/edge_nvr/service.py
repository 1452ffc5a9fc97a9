"""Top-level orchestrator wiring registry, sessions, health and retention."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from .config import NvrConfig
from .errors import NotFoundError, SessionTimeoutError, StorageUnavailableError
from .health import HealthMonitor, HealthState
from .media import MediaEngine, PyAVEngine
from .registry import CameraEntry, CameraRegistry
from .relay import render_relay_config, viewer_urls
from .retention import FreeSpaceProbe, RetentionManager, RetentionReport
from .segments import (
    SegmentState,
    iter_camera_ids,
    resolve_verified_segment,
    scan_segments,
    summarize_segments,
)
from .sessions import SessionManager, SessionStatus
from .system_log import SystemLog
from .version import APP_VERSION

logger = logging.getLogger(__name__)


class NvrService:
    """Keep live recording sessions in line with the camera registry."""

    def __init__(
        self,
        config: NvrConfig | None = None,
        *,
        engine: MediaEngine | None = None,
        system_log: SystemLog | None = None,
        free_space_probe: FreeSpaceProbe | None = None,
    ) -> None:
        self.config = config or NvrConfig()
        self.system_log = system_log or SystemLog(self.config.system_log_path)
        self.registry = CameraRegistry(self.config.feed_file)
        self.health = HealthMonitor(
            self.config.health, self.config.backoff, system_log=self.system_log
        )
        self.sessions = SessionManager(
            self.config,
            engine or PyAVEngine(),
            self.health,
            system_log=self.system_log,
        )
        self.retention = RetentionManager(
            self.config.recordings_dir,
            self.config.retention,
            free_space_probe=free_space_probe,
            system_log=self.system_log,
        )
        self.sessions.subscribe(self.retention.on_segment_closed)
        self._started = False
        # Cameras removed while their session had to be force-terminated.
        self._terminated: set[str] = set()

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._started:
            return
        self._prepare_storage()
        await asyncio.to_thread(self.retention.sweep_pending_deletes)
        recovery = await self.sessions.recover()
        self._started = True
        started = await self.reconcile()
        self.retention.start()
        self.system_log.record(
            "system",
            "startup",
            f"Recorder {APP_VERSION} started with {len(self.registry)} camera(s).",
            metadata={"sessions": len(started["started"]), **recovery.to_dict()},
        )

    async def aclose(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.retention.aclose()
        await self.sessions.aclose(self.config.segment.grace_period_s)
        self.system_log.record("system", "shutdown", "Recorder stopped.")

    def _prepare_storage(self) -> None:
        root = self.config.recordings_dir
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailableError(f"Recordings directory {root} is unusable: {exc}") from exc
        if not os.access(root, os.W_OK | os.X_OK):
            raise StorageUnavailableError(f"Recordings directory {root} is not writable")

    async def reconcile(self) -> dict[str, list[str]]:
        """Start missing sessions and stop sessions without an enabled entry."""

        desired = {entry.camera_id: entry for entry in self.registry.list() if entry.enabled}
        started: list[str] = []
        stopped: list[str] = []
        for camera_id in self.sessions.active_ids():
            if camera_id not in desired:
                if not await self.sessions.stop_session(camera_id):
                    logger.warning("Session %s was force-terminated during reconcile", camera_id)
                stopped.append(camera_id)
        for camera_id, entry in desired.items():
            if self.sessions.is_active(camera_id) or self.health.is_offline(camera_id):
                continue
            self.sessions.start_session(entry)
            started.append(camera_id)
        return {"started": started, "stopped": stopped}

    # ------------------------------------------------------------------
    # Camera operations
    # ------------------------------------------------------------------
    async def add_camera(self, camera_id: str, uri: str, *, enabled: bool = True) -> dict[str, object]:
        entry = await asyncio.to_thread(self.registry.add, camera_id, uri, enabled=enabled)
        self._terminated.discard(entry.camera_id)
        self.health.reset(entry.camera_id)
        if entry.enabled and self._started:
            self.sessions.start_session(entry)
        self.system_log.record(
            "camera",
            "camera_added",
            f"Camera {entry.camera_id} added.",
            camera_id=entry.camera_id,
            metadata={"uri": entry.redacted_uri, "enabled": entry.enabled},
        )
        return self.camera_status(entry)

    async def remove_camera(self, camera_id: str, *, grace: float | None = None) -> None:
        """Remove the camera and wait for its session to stop.

        The registry change is persisted before waiting, so a
        :class:`SessionTimeoutError` leaves nothing to undo and a retry
        succeeds.
        """

        try:
            await asyncio.to_thread(self.registry.remove, camera_id)
        except NotFoundError:
            if camera_id in self._terminated:
                self._terminated.discard(camera_id)
                return
            raise
        self.health.forget(camera_id)
        self.system_log.record(
            "camera", "camera_removed", f"Camera {camera_id} removed.", camera_id=camera_id
        )
        if not await self.sessions.stop_session(camera_id, grace):
            self._terminated.add(camera_id)
            raise SessionTimeoutError(
                f"Session for {camera_id} did not stop within the grace period; it was terminated"
            )

    async def set_enabled(
        self, camera_id: str, enabled: bool, *, grace: float | None = None
    ) -> dict[str, object]:
        entry = await asyncio.to_thread(self.registry.set_enabled, camera_id, enabled)
        if enabled:
            self.health.reset(camera_id)
            if self._started:
                self.sessions.start_session(entry)
            self.system_log.record(
                "camera", "camera_enabled", f"Camera {camera_id} enabled.", camera_id=camera_id
            )
            return self.camera_status(entry)

        self.system_log.record(
            "camera", "camera_disabled", f"Camera {camera_id} disabled.", camera_id=camera_id
        )
        if not await self.sessions.stop_session(camera_id, grace):
            raise SessionTimeoutError(
                f"Session for {camera_id} did not stop within the grace period; it was terminated"
            )
        return self.camera_status(entry)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def camera_status(self, entry: CameraEntry) -> dict[str, object]:
        health = self.health.get(entry.camera_id)
        session = self.sessions.get(entry.camera_id)
        payload = entry.to_dict()
        payload["health"] = health.to_dict()
        payload["session"] = session.to_dict() if session is not None else None
        payload["state"] = self._summarize_state(entry, health.state, session)
        payload["at_risk"] = self.retention.alert is not None
        payload["viewer_url"] = viewer_urls([entry], self.config.relay).get(entry.camera_id)
        return payload

    def status(self, camera_id: str | None = None) -> dict[str, object] | list[dict[str, object]]:
        if camera_id is not None:
            return self.camera_status(self.registry.get(camera_id))
        return [self.camera_status(entry) for entry in self.registry.list()]

    def _summarize_state(self, entry: CameraEntry, health: HealthState, session) -> str:
        if not entry.enabled:
            return "disabled"
        if health is HealthState.OFFLINE:
            return "offline"
        if session is None or session.status in (SessionStatus.STOPPED, SessionStatus.STOPPING):
            return "stopped"
        if session.status is SessionStatus.BACKOFF:
            return "retrying"
        return "recording"

    def recordings_summary(self, camera_id: str | None = None) -> dict[str, dict[str, object]]:
        """Per-camera segment count, bytes and oldest/newest start times."""

        root = self.config.recordings_dir
        if camera_id is not None:
            self._require_known(camera_id)
            camera_ids = [camera_id]
        else:
            known = {entry.camera_id for entry in self.registry.list()}
            camera_ids = sorted(known.union(iter_camera_ids(root)))
        summary: dict[str, dict[str, object]] = {}
        for current in camera_ids:
            try:
                summary[current] = summarize_segments(scan_segments(root, current))
            except ValueError:
                continue
        return summary

    def list_segments(self, camera_id: str) -> list[dict[str, object]]:
        """Closed-verified segments available for playback, oldest first."""

        self._require_known(camera_id)
        return [
            segment.to_dict()
            for segment in scan_segments(self.config.recordings_dir, camera_id)
            if segment.state is SegmentState.CLOSED_VERIFIED
        ]

    def segment_file(self, camera_id: str, day: str, name: str) -> Path:
        self._require_known(camera_id)
        path = resolve_verified_segment(self.config.recordings_dir, camera_id, day, name)
        if not path.is_file():
            raise NotFoundError(f"Segment {day}/{name} not found for {camera_id}")
        return path

    def _require_known(self, camera_id: str) -> None:
        if camera_id in self.registry:
            return
        if camera_id in iter_camera_ids(self.config.recordings_dir):
            return
        raise NotFoundError(f"Camera {camera_id!r} not found")

    async def run_retention_now(self) -> RetentionReport:
        return await self.retention.run_once()

    def storage_status(self) -> dict[str, object]:
        alert = self.retention.alert
        return {
            "recordings_dir": str(self.config.recordings_dir),
            "free_bytes": self.retention.free_bytes(),
            "min_free_bytes": self.config.retention.min_free_bytes,
            "max_camera_bytes": self.config.retention.max_camera_bytes,
            "max_age_s": self.config.retention.max_age_s,
            "alert": alert.to_dict() if alert else None,
        }

    def relay_config(self) -> str:
        return render_relay_config(self.registry.list(), self.config.relay)

    def viewer_urls(self) -> dict[str, str]:
        return viewer_urls(self.registry.list(), self.config.relay)


__all__ = ["NvrService"]
