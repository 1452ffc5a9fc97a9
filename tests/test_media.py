"""Tests for the PyAV media engine and segment verification."""

from __future__ import annotations

from datetime import datetime
from fractions import Fraction
from pathlib import Path

import pytest

av = pytest.importorskip("av")

from edge_nvr.config import SegmentSettings
from edge_nvr.errors import IngestionFailure
from edge_nvr.media import PyAVEngine, RecordRequest, SessionControl, verify_segment


def _encode_clip(path: Path, frames: int = 24) -> Path:
    time_base = Fraction(1, 24)
    with av.open(str(path), mode="w", format="mp4") as container:
        stream = container.add_stream("mpeg4", rate=24)
        stream.width = 64
        stream.height = 64
        stream.pix_fmt = "yuv420p"
        stream.codec_context.gop_size = 12
        for index in range(frames):
            frame = av.VideoFrame(64, 64, "yuv420p")
            for plane in frame.planes:
                plane.update(bytes([index * 8 % 256]) * plane.buffer_size)
            frame.pts = index
            frame.time_base = time_base
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)
    return path


def test_verify_accepts_playable_segment(tmp_path: Path) -> None:
    clip = _encode_clip(tmp_path / "clip.mp4")

    assert verify_segment(clip, "mp4") is True


def test_verify_rejects_garbage_and_empty_files(tmp_path: Path) -> None:
    garbage = tmp_path / "garbage.mp4.unverified"
    garbage.write_bytes(b"\x00not a movie" * 32)
    empty = tmp_path / "empty.mp4.unverified"
    empty.write_bytes(b"")

    assert verify_segment(garbage, "mp4") is False
    assert verify_segment(empty, "mp4") is False
    assert verify_segment(tmp_path / "missing.mp4", "mp4") is False


def test_engine_stream_copies_until_source_ends(tmp_path: Path) -> None:
    clip = _encode_clip(tmp_path / "source.mp4", frames=48)
    request = RecordRequest(
        camera_id="porch",
        uri=str(clip),
        root=tmp_path / "recordings",
        segment=SegmentSettings(duration_s=3600),
    )
    closed: list[tuple[Path, datetime, datetime, int]] = []
    engine = PyAVEngine()

    with pytest.raises(IngestionFailure, match="ended"):
        engine.record(request, lambda *args: closed.append(args), SessionControl())

    assert len(closed) == 1
    path, start, closed_at, size = closed[0]
    assert path.name.endswith(".mp4.unverified")
    assert path.stat().st_size == size > 0
    assert start <= closed_at
    assert engine.verify(path, "mp4") is True


def _video_packets(clip: Path) -> list[bool]:
    """Key frame flags of the clip's video packets, in demux order."""

    with av.open(str(clip)) as container:
        return [
            packet.is_keyframe
            for packet in container.demux(video=0)
            if packet.dts is not None and packet.size
        ]


def _record_clip(tmp_path: Path, clip: Path, settings: SegmentSettings) -> list[Path]:
    request = RecordRequest(
        camera_id="porch", uri=str(clip), root=tmp_path / "recordings", segment=settings
    )
    closed: list[tuple[Path, datetime, datetime, int]] = []
    with pytest.raises(IngestionFailure, match="ended"):
        PyAVEngine().record(request, lambda *args: closed.append(args), SessionControl())
    starts = [start for _, start, _, _ in closed]
    assert starts == sorted(set(starts))
    return [path for path, _, _, _ in closed]


def test_engine_rotates_on_key_frame_once_duration_elapsed(tmp_path: Path) -> None:
    clip = _encode_clip(tmp_path / "source.mp4", frames=96)
    keyframes = sum(_video_packets(clip))
    assert keyframes > 1

    paths = _record_clip(tmp_path, clip, SegmentSettings(duration_s=1e-6))

    assert len(paths) == keyframes
    assert len(set(paths)) == len(paths)
    assert all(path.exists() for path in paths)
    assert all(verify_segment(path, "mp4") for path in paths)


def test_engine_rotates_before_exceeding_size_cap(tmp_path: Path) -> None:
    clip = _encode_clip(tmp_path / "source.mp4", frames=96)
    packets = _video_packets(clip)
    # Recording starts at the first key frame.
    expected = len(packets) - packets.index(True)

    paths = _record_clip(tmp_path, clip, SegmentSettings(max_bytes=1))

    assert len(paths) == expected
    assert len(set(paths)) == len(paths)
    assert all(path.exists() for path in paths)


def test_new_segment_start_is_later_than_previous(tmp_path: Path) -> None:
    request = RecordRequest(camera_id="porch", uri="rtsp://porch.local/live", root=tmp_path)
    first = request.new_segment()
    first.part_path.write_bytes(b"media")

    second = request.new_segment(first.start, after=first.start)

    assert second.start > first.start
    assert second.final_path != first.final_path


def test_engine_reports_unreachable_source_without_credentials(tmp_path: Path) -> None:
    request = RecordRequest(
        camera_id="porch",
        uri=str(tmp_path / "missing.mp4"),
        root=tmp_path / "recordings",
    )

    with pytest.raises(IngestionFailure) as excinfo:
        PyAVEngine().record(request, lambda *args: None, SessionControl())

    assert "Unable to open" in str(excinfo.value)


def test_request_repr_hides_credentials(tmp_path: Path) -> None:
    request = RecordRequest(camera_id="porch", uri="rtsp://admin:pw@10.0.0.5/live", root=tmp_path)

    assert "pw" not in repr(request)
    assert request.redacted_uri == "rtsp://***@10.0.0.5/live"
    segment = request.new_segment()
    assert segment.part_path.name.endswith(".mp4.part")
    assert segment.part_path.parent.parent.name == "porch"


def test_session_control_abort_sets_stop() -> None:
    control = SessionControl()
    assert control.wait(0) is False

    control.abort()

    assert control.stop_requested
    assert control.aborted
    assert control.wait(0) is True
