"""Tests for recorder configuration loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from edge_nvr.config import (
    GIB,
    BackoffPolicy,
    HealthThresholds,
    NvrConfig,
    RetentionPolicy,
    SegmentSettings,
    apply_env_overrides,
    load_config,
)
from edge_nvr.errors import ValidationError


def test_defaults_match_documented_values() -> None:
    config = NvrConfig()

    assert config.segment.duration_s == 3600
    assert config.segment.container == "mp4"
    assert config.segment.container_format == "mp4"
    assert config.retention.max_age_s == 24 * 3600
    assert config.retention.max_camera_bytes is None
    assert config.retention.min_free_bytes == GIB
    assert config.health.degraded_after == 3
    assert config.health.offline_after == 5
    assert config.api.port == 8780
    assert config.feed_file == Path("data/rtsp_feeds.txt")


def test_load_config_reads_json_sections(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "recordings_dir": str(tmp_path / "rec"),
                "segment": {"duration_s": 600, "container": "MKV"},
                "retention": {"max_age_s": 7200, "max_camera_bytes": 5 * GIB},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(path, environ={})

    assert config.recordings_dir == tmp_path / "rec"
    assert config.segment.duration_s == 600
    assert config.segment.container == "mkv"
    assert config.segment.container_format == "matroska"
    assert config.retention.max_camera_bytes == 5 * GIB
    assert config.backoff == BackoffPolicy()


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "absent.json", environ={}) == NvrConfig()


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    config = apply_env_overrides(
        NvrConfig(),
        {
            "NVR_RECORDINGS_DIR": str(tmp_path / "env-rec"),
            "NVR_RETENTION_HOURS": "48",
            "NVR_SEGMENT_SECONDS": "900",
            "NVR_MIN_FREE_GB": "2.5",
            "NVR_API_PORT": "9000",
            "NVR_CAMERA_BUDGET_GB": " ",
        },
    )

    assert config.recordings_dir == tmp_path / "env-rec"
    assert config.retention.max_age_s == 48 * 3600
    assert config.segment.duration_s == 900
    assert config.retention.min_free_bytes == int(2.5 * GIB)
    assert config.retention.max_camera_bytes is None
    assert config.api.port == 9000


def test_invalid_env_override_is_rejected() -> None:
    with pytest.raises(ValidationError):
        apply_env_overrides(NvrConfig(), {"NVR_SEGMENT_SECONDS": "soon"})
    with pytest.raises(ValidationError):
        apply_env_overrides(NvrConfig(), {"NVR_RETENTION_HOURS": "-1"})


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        NvrConfig.from_dict({"retention_hours": 24})
    with pytest.raises(ValidationError):
        NvrConfig.from_dict({"segment": {"length": 10}})
    with pytest.raises(ValidationError):
        NvrConfig.from_dict({"segment": 10})


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(path, environ={})


@pytest.mark.parametrize(
    "factory",
    [
        lambda: SegmentSettings(duration_s=0),
        lambda: SegmentSettings(container="avi"),
        lambda: SegmentSettings(grace_period_s=-1),
        lambda: RetentionPolicy(max_age_s=float("nan")),
        lambda: RetentionPolicy(max_camera_bytes=0),
        lambda: BackoffPolicy(factor=0.5),
        lambda: BackoffPolicy(initial_s=10, max_s=5),
        lambda: HealthThresholds(degraded_after=4, offline_after=2),
    ],
)
def test_policy_validation(factory) -> None:
    with pytest.raises(ValidationError):
        factory()


def test_backoff_delay_grows_and_caps() -> None:
    policy = BackoffPolicy(initial_s=2, factor=2, max_s=10)

    assert [policy.delay_for(n) for n in range(0, 6)] == [0.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_config_round_trips_through_dict(tmp_path: Path) -> None:
    config = NvrConfig(recordings_dir=tmp_path, retention=RetentionPolicy(max_camera_bytes=GIB))

    assert NvrConfig.from_dict(config.to_dict()) == config
