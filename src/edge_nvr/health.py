"""Per-camera health tracking and restart backoff."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from .config import BackoffPolicy, HealthThresholds
from .feeds import redact_uri
from .system_log import SystemLog

logger = logging.getLogger(__name__)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


_SEVERITY = {HealthState.HEALTHY: 0, HealthState.DEGRADED: 1, HealthState.OFFLINE: 2}


def _iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


@dataclass(slots=True)
class HealthRecord:
    camera_id: str
    state: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0
    last_segment_at: float | None = None
    next_retry_at: float | None = None
    last_error: str | None = None
    first_failure_at: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_segment_at": _iso(self.last_segment_at),
            "next_retry_at": _iso(self.next_retry_at),
            "last_error": self.last_error,
            "first_failure_at": _iso(self.first_failure_at),
        }


class HealthMonitor:
    """State machine turning ingestion outcomes into camera health.

    ``healthy`` becomes ``degraded`` after ``degraded_after`` consecutive
    failures and ``offline`` after ``offline_after`` failures or once failures
    have persisted for ``offline_after_s``. Offline cameras are not restarted
    until :meth:`reset` is called by a manual enable.
    """

    def __init__(
        self,
        thresholds: HealthThresholds | None = None,
        backoff: BackoffPolicy | None = None,
        *,
        system_log: SystemLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._thresholds = thresholds or HealthThresholds()
        self._backoff = backoff or BackoffPolicy()
        self._system_log = system_log
        self._clock = clock
        self._records: dict[str, HealthRecord] = {}

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def get(self, camera_id: str) -> HealthRecord:
        """Return a copy of the camera's record, creating a healthy one if needed."""

        return replace(self._record(camera_id))

    def is_offline(self, camera_id: str) -> bool:
        record = self._records.get(camera_id)
        return record is not None and record.state is HealthState.OFFLINE

    def record_failure(
        self, camera_id: str, error: str | None = None, *, uptime_s: float = 0.0
    ) -> HealthRecord:
        """Register a failed ingestion attempt and schedule the next retry.

        ``uptime_s`` is how long the failed attempt had been running; an
        attempt that stayed up for the backoff reset window clears the
        previous failure streak first.
        """

        record = self._record(camera_id)
        now = self._clock()
        if record.consecutive_failures and uptime_s >= self._backoff.reset_after_s:
            record.consecutive_failures = 0
            record.first_failure_at = None
        record.consecutive_failures += 1
        if record.first_failure_at is None:
            record.first_failure_at = now
        record.last_error = redact_uri(error) if error else None

        target = self._classify(record, now)
        if _SEVERITY[target] < _SEVERITY[record.state]:
            target = record.state
        if target is HealthState.OFFLINE:
            record.next_retry_at = None
        else:
            record.next_retry_at = now + self._backoff.delay_for(record.consecutive_failures)
        self._transition(record, target)
        return replace(record)

    def record_success(self, camera_id: str, at: float | None = None) -> HealthRecord:
        """Register a successfully closed segment."""

        record = self._record(camera_id)
        record.last_segment_at = self._clock() if at is None else at
        record.consecutive_failures = 0
        record.first_failure_at = None
        record.next_retry_at = None
        record.last_error = None
        self._transition(record, HealthState.HEALTHY)
        return replace(record)

    def reset(self, camera_id: str) -> HealthRecord:
        """Clear failure history, e.g. after an operator re-enables a camera."""

        previous = self._records.get(camera_id)
        record = HealthRecord(
            camera_id=camera_id,
            last_segment_at=previous.last_segment_at if previous else None,
        )
        self._records[camera_id] = record
        if previous is not None and previous.state is not HealthState.HEALTHY:
            self._log_transition(camera_id, previous.state, HealthState.HEALTHY, reason="reset")
        return replace(record)

    def forget(self, camera_id: str) -> None:
        self._records.pop(camera_id, None)

    # ------------------------------------------------------------------
    def _record(self, camera_id: str) -> HealthRecord:
        record = self._records.get(camera_id)
        if record is None:
            record = HealthRecord(camera_id=camera_id)
            self._records[camera_id] = record
        return record

    def _classify(self, record: HealthRecord, now: float) -> HealthState:
        thresholds = self._thresholds
        if record.consecutive_failures >= thresholds.offline_after:
            return HealthState.OFFLINE
        if (
            thresholds.offline_after_s is not None
            and record.first_failure_at is not None
            and now - record.first_failure_at >= thresholds.offline_after_s
        ):
            return HealthState.OFFLINE
        if record.consecutive_failures >= thresholds.degraded_after:
            return HealthState.DEGRADED
        return HealthState.HEALTHY

    def _transition(self, record: HealthRecord, target: HealthState) -> None:
        if record.state is target:
            return
        previous = record.state
        record.state = target
        self._log_transition(record.camera_id, previous, target, reason=record.last_error)

    def _log_transition(
        self,
        camera_id: str,
        previous: HealthState,
        target: HealthState,
        *,
        reason: str | None,
    ) -> None:
        level = logging.WARNING if _SEVERITY[target] > _SEVERITY[previous] else logging.INFO
        logger.log(level, "Camera %s health %s -> %s", camera_id, previous.value, target.value)
        if self._system_log is not None:
            self._system_log.record(
                "health",
                f"camera_{target.value}",
                f"Camera {camera_id} is now {target.value}.",
                camera_id=camera_id,
                metadata={"previous": previous.value, "reason": reason},
            )


__all__ = ["HealthMonitor", "HealthRecord", "HealthState"]
