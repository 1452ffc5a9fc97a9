"""Render a MediaMTX relay configuration for live viewing.

The recorder pulls every camera itself; the relay only re-publishes the
enabled streams on demand so local viewers do not open extra upstream
connections.
"""
from __future__ import annotations

from typing import Iterable

import yaml

from .config import RelaySettings
from .registry import CameraEntry


def build_relay_config(
    entries: Iterable[CameraEntry], settings: RelaySettings | None = None
) -> dict[str, object]:
    settings = settings or RelaySettings()
    paths: dict[str, dict[str, object]] = {}
    for entry in entries:
        if not entry.enabled:
            continue
        paths[entry.camera_id] = {
            "source": entry.uri,
            "sourceOnDemand": True,
            "rtspTransport": "tcp",
        }
    return {
        "logLevel": "info",
        "api": True,
        "metrics": True,
        "rtmp": False,
        "hls": False,
        "webrtc": False,
        "srt": False,
        "rtspAddress": f":{settings.rtsp_port}",
        "pathDefaults": {"record": False},
        "paths": paths,
    }


def render_relay_config(
    entries: Iterable[CameraEntry], settings: RelaySettings | None = None
) -> str:
    """Return the relay configuration as YAML text.

    The output contains stream credentials and must only be written to a
    file readable by the relay.
    """

    return yaml.safe_dump(build_relay_config(entries, settings), sort_keys=False)


def viewer_urls(
    entries: Iterable[CameraEntry], settings: RelaySettings | None = None
) -> dict[str, str]:
    settings = settings or RelaySettings()
    return {
        entry.camera_id: f"rtsp://{settings.host}:{settings.rtsp_port}/{entry.camera_id}"
        for entry in entries
        if entry.enabled
    }


__all__ = ["build_relay_config", "render_relay_config", "viewer_urls"]
