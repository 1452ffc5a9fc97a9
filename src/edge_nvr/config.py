"""Configuration structures for the recorder service."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ValidationError

GIB = 1024**3

SUPPORTED_CONTAINERS: dict[str, str] = {
    "mp4": "mp4",
    "mkv": "matroska",
    "ts": "mpegts",
}


def _positive(name: str, value: float, *, allow_zero: bool = False) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be numeric") from exc
    if not math.isfinite(numeric):
        raise ValidationError(f"{name} must be finite")
    if numeric < 0 or (numeric == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValidationError(f"{name} must be {qualifier}")
    return numeric


@dataclass(frozen=True, slots=True)
class SegmentSettings:
    """Rotation and shutdown parameters for recording sessions."""

    duration_s: float = 3600.0
    max_bytes: int = 2 * GIB
    container: str = "mp4"
    grace_period_s: float = 10.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "duration_s", _positive("segment duration", self.duration_s))
        object.__setattr__(self, "max_bytes", int(_positive("segment size cap", self.max_bytes)))
        object.__setattr__(
            self, "grace_period_s", _positive("grace period", self.grace_period_s, allow_zero=True)
        )
        container = str(self.container).strip().lower().lstrip(".")
        if container not in SUPPORTED_CONTAINERS:
            raise ValidationError(
                f"Unsupported container {self.container!r}; expected one of "
                + ", ".join(sorted(SUPPORTED_CONTAINERS))
            )
        object.__setattr__(self, "container", container)

    @property
    def container_format(self) -> str:
        return SUPPORTED_CONTAINERS[self.container]


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Rolling retention limits applied by the retention manager."""

    max_age_s: float = 24 * 3600.0
    max_camera_bytes: int | None = None
    min_free_bytes: int = 1 * GIB
    unverified_timeout_s: float = 3600.0
    scan_interval_s: float = 1800.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_age_s", _positive("retention max age", self.max_age_s))
        if self.max_camera_bytes is not None:
            object.__setattr__(
                self,
                "max_camera_bytes",
                int(_positive("per-camera byte budget", self.max_camera_bytes)),
            )
        object.__setattr__(
            self,
            "min_free_bytes",
            int(_positive("free-space floor", self.min_free_bytes, allow_zero=True)),
        )
        object.__setattr__(
            self, "unverified_timeout_s", _positive("unverified timeout", self.unverified_timeout_s)
        )
        object.__setattr__(
            self, "scan_interval_s", _positive("retention scan interval", self.scan_interval_s)
        )


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Restart delays applied after ingestion failures."""

    initial_s: float = 2.0
    factor: float = 2.0
    max_s: float = 300.0
    reset_after_s: float = 120.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "initial_s", _positive("backoff initial delay", self.initial_s, allow_zero=True))
        factor = _positive("backoff factor", self.factor)
        if factor < 1.0:
            raise ValidationError("backoff factor must be at least 1")
        object.__setattr__(self, "factor", factor)
        object.__setattr__(self, "max_s", _positive("backoff maximum delay", self.max_s, allow_zero=True))
        if self.max_s < self.initial_s:
            raise ValidationError("backoff maximum delay must not be below the initial delay")
        object.__setattr__(
            self, "reset_after_s", _positive("backoff reset window", self.reset_after_s, allow_zero=True)
        )

    def delay_for(self, failures: int) -> float:
        """Return the delay to wait after ``failures`` consecutive failures."""

        if failures <= 0:
            return 0.0
        delay = self.initial_s * (self.factor ** (failures - 1))
        return float(min(delay, self.max_s))


@dataclass(frozen=True, slots=True)
class HealthThresholds:
    """Failure counts and durations driving the health state machine."""

    degraded_after: int = 3
    offline_after: int = 5
    offline_after_s: float | None = 3600.0

    def __post_init__(self) -> None:
        degraded = int(self.degraded_after)
        offline = int(self.offline_after)
        if degraded < 1:
            raise ValidationError("degraded threshold must be at least 1")
        if offline < degraded:
            raise ValidationError("offline threshold must not be below the degraded threshold")
        object.__setattr__(self, "degraded_after", degraded)
        object.__setattr__(self, "offline_after", offline)
        if self.offline_after_s is not None:
            object.__setattr__(
                self, "offline_after_s", _positive("offline duration", self.offline_after_s)
            )


@dataclass(frozen=True, slots=True)
class MediaSettings:
    """Options handed to the media engine when opening sources."""

    rtsp_transport: str = "tcp"
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 15.0

    def __post_init__(self) -> None:
        transport = str(self.rtsp_transport).strip().lower()
        if transport not in {"tcp", "udp", "http"}:
            raise ValidationError("rtsp transport must be tcp, udp or http")
        object.__setattr__(self, "rtsp_transport", transport)
        object.__setattr__(self, "connect_timeout_s", _positive("connect timeout", self.connect_timeout_s))
        object.__setattr__(self, "read_timeout_s", _positive("read timeout", self.read_timeout_s))


@dataclass(frozen=True, slots=True)
class ApiSettings:
    host: str = "127.0.0.1"
    port: int = 8780

    def __post_init__(self) -> None:
        port = int(self.port)
        if not (0 < port < 65536):
            raise ValidationError("API port must be between 1 and 65535")
        object.__setattr__(self, "port", port)


@dataclass(frozen=True, slots=True)
class RelaySettings:
    """Parameters used when rendering the live-view relay configuration."""

    rtsp_port: int = 8554
    host: str = "localhost"

    def __post_init__(self) -> None:
        port = int(self.rtsp_port)
        if not (0 < port < 65536):
            raise ValidationError("relay RTSP port must be between 1 and 65535")
        object.__setattr__(self, "rtsp_port", port)


_SECTIONS: dict[str, type] = {
    "segment": SegmentSettings,
    "retention": RetentionPolicy,
    "backoff": BackoffPolicy,
    "health": HealthThresholds,
    "media": MediaSettings,
    "api": ApiSettings,
    "relay": RelaySettings,
}


@dataclass(frozen=True, slots=True)
class NvrConfig:
    """Top level configuration passed to every component constructor."""

    recordings_dir: Path = Path("data/recordings")
    feed_file: Path = Path("data/rtsp_feeds.txt")
    system_log_path: Path | None = Path("data/system_log.jsonl")
    segment: SegmentSettings = field(default_factory=SegmentSettings)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    health: HealthThresholds = field(default_factory=HealthThresholds)
    media: MediaSettings = field(default_factory=MediaSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    relay: RelaySettings = field(default_factory=RelaySettings)

    def __post_init__(self) -> None:
        object.__setattr__(self, "recordings_dir", Path(self.recordings_dir))
        object.__setattr__(self, "feed_file", Path(self.feed_file))
        if self.system_log_path is not None:
            object.__setattr__(self, "system_log_path", Path(self.system_log_path))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["recordings_dir"] = str(self.recordings_dir)
        payload["feed_file"] = str(self.feed_file)
        payload["system_log_path"] = (
            str(self.system_log_path) if self.system_log_path is not None else None
        )
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "NvrConfig":
        if not isinstance(payload, Mapping):
            raise ValidationError("Configuration must be a JSON object")
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {', '.join(unknown)}")
        data: dict[str, Any] = {}
        for key, value in payload.items():
            section_type = _SECTIONS.get(key)
            if section_type is None:
                data[key] = value
                continue
            if isinstance(value, section_type):
                data[key] = value
                continue
            if not isinstance(value, Mapping):
                raise ValidationError(f"Configuration section {key!r} must be an object")
            allowed = {item.name for item in fields(section_type)}
            extra = sorted(set(value) - allowed)
            if extra:
                raise ValidationError(f"Unknown keys in {key!r}: {', '.join(extra)}")
            try:
                data[key] = section_type(**dict(value))
            except TypeError as exc:
                raise ValidationError(f"Invalid {key!r} section: {exc}") from exc
        return cls(**data)


# Environment variable -> (section, key, converter)
_ENV_OVERRIDES: dict[str, tuple[str | None, str, Any]] = {
    "NVR_RECORDINGS_DIR": (None, "recordings_dir", Path),
    "NVR_FEED_FILE": (None, "feed_file", Path),
    "NVR_SYSTEM_LOG": (None, "system_log_path", Path),
    "NVR_SEGMENT_SECONDS": ("segment", "duration_s", float),
    "NVR_SEGMENT_MAX_MB": ("segment", "max_bytes", lambda raw: int(float(raw) * 1024**2)),
    "NVR_GRACE_SECONDS": ("segment", "grace_period_s", float),
    "NVR_RETENTION_HOURS": ("retention", "max_age_s", lambda raw: float(raw) * 3600.0),
    "NVR_CAMERA_BUDGET_GB": ("retention", "max_camera_bytes", lambda raw: int(float(raw) * GIB)),
    "NVR_MIN_FREE_GB": ("retention", "min_free_bytes", lambda raw: int(float(raw) * GIB)),
    "NVR_API_PORT": ("api", "port", int),
}


def apply_env_overrides(config: NvrConfig, environ: Mapping[str, str] | None = None) -> NvrConfig:
    """Return ``config`` with any ``NVR_*`` environment overrides applied."""

    env = os.environ if environ is None else environ
    top: dict[str, Any] = {}
    sections: dict[str, dict[str, Any]] = {}
    for name, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or not raw.strip():
            continue
        try:
            value = convert(raw.strip())
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid value for {name}: {raw!r}") from exc
        if section is None:
            top[key] = value
        else:
            sections.setdefault(section, {})[key] = value
    for section, values in sections.items():
        top[section] = replace(getattr(config, section), **values)
    return replace(config, **top) if top else config


def load_config(
    path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> NvrConfig:
    """Load configuration from ``path`` (JSON) and the environment."""

    config = NvrConfig()
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                payload = json.loads(config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Invalid configuration JSON in {config_path}") from exc
            config = NvrConfig.from_dict(payload)
    return apply_env_overrides(config, environ)


__all__ = [
    "ApiSettings",
    "BackoffPolicy",
    "GIB",
    "HealthThresholds",
    "MediaSettings",
    "NvrConfig",
    "RelaySettings",
    "RetentionPolicy",
    "SegmentSettings",
    "SUPPORTED_CONTAINERS",
    "apply_env_overrides",
    "load_config",
]
