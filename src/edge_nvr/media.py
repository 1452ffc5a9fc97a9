"""Media engine boundary and the PyAV stream-copy implementation."""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import av

from .config import SUPPORTED_CONTAINERS, MediaSettings, SegmentSettings
from .errors import IngestionFailure
from .feeds import redact_uri
from .segments import SegmentFile, claim_segment_start

logger = logging.getLogger(__name__)

# (unverified path, start, closed_at, size_bytes)
ClosedCallback = Callable[[Path, datetime, datetime, int], None]


class SessionControl:
    """Thread-safe stop/abort signals shared between a session and its engine."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._aborted = False
        self.finalize_lock = threading.Lock()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def request_stop(self) -> None:
        self._stop.set()

    def abort(self) -> None:
        """Forbid any further segment finalization for this session."""

        self._stop.set()
        with self.finalize_lock:
            self._aborted = True

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return ``True`` if stop was requested."""

        return self._stop.wait(timeout)


@dataclass(frozen=True, slots=True)
class RecordRequest:
    """Everything an engine needs to record one camera."""

    camera_id: str
    uri: str
    root: Path
    segment: SegmentSettings = field(default_factory=SegmentSettings)
    media: MediaSettings = field(default_factory=MediaSettings)

    @property
    def redacted_uri(self) -> str:
        return redact_uri(self.uri)

    def new_segment(
        self, start: datetime | None = None, *, after: datetime | None = None
    ) -> SegmentFile:
        """Open a segment file whose start is unique and later than ``after``."""

        start, path = claim_segment_start(
            self.root,
            self.camera_id,
            start or datetime.now(timezone.utc),
            self.segment.container,
            after=after,
        )
        return SegmentFile(path, start)

    def __repr__(self) -> str:
        return f"RecordRequest(camera_id={self.camera_id!r}, uri={self.redacted_uri!r})"


class MediaEngine(ABC):
    """Narrow interface to the component that pulls and writes media."""

    @abstractmethod
    def record(
        self, request: RecordRequest, on_closed: ClosedCallback, control: SessionControl
    ) -> None:
        """Record ``request`` until ``control`` asks to stop.

        Runs on a worker thread. Returns normally after a requested stop and
        raises :class:`IngestionFailure` when the source fails. Every segment
        must be sealed with :meth:`SegmentFile.seal` before ``on_closed`` is
        invoked with its closed-unverified path.
        """

    def verify(self, path: Path, container: str) -> bool:
        return verify_segment(path, container)


def verify_segment(path: Path, container: str) -> bool:
    """Return ``True`` when ``path`` opens and yields at least one packet."""

    container_format = SUPPORTED_CONTAINERS.get(container, container)
    try:
        with av.open(str(path), mode="r", format=container_format) as handle:
            for packet in handle.demux():
                if packet.size:
                    return True
    except (av.FFmpegError, OSError) as exc:
        logger.warning("Segment %s failed verification: %s", path, exc)
        return False
    logger.warning("Segment %s contains no media packets", path)
    return False


class _OpenSegment:
    """Output container for one segment plus its timestamp rebasing."""

    def __init__(
        self,
        request: RecordRequest,
        streams: list,
        base_seconds: float,
        previous: datetime | None = None,
    ) -> None:
        self.file = request.new_segment(after=previous)
        self.container = av.open(
            str(self.file.part_path), mode="w", format=request.segment.container_format
        )
        self.mapping = {}
        self.offsets = {}
        for stream in streams:
            self.mapping[stream.index] = self.container.add_stream_from_template(stream)
            self.offsets[stream.index] = (
                int(base_seconds / stream.time_base) if stream.time_base else 0
            )
        self.opened_at = time.monotonic()
        self.bytes_written = 0

    def mux(self, packet) -> None:
        offset = self.offsets.get(packet.stream.index, 0)
        if packet.pts is not None:
            packet.pts -= offset
        if packet.dts is not None:
            packet.dts -= offset
        size = packet.size
        packet.stream = self.mapping[packet.stream.index]
        self.container.mux(packet)
        self.bytes_written += size

    def close(self, control: SessionControl, on_closed: ClosedCallback) -> None:
        try:
            self.container.close()
        except av.FFmpegError as exc:
            logger.warning("Error closing segment %s: %s", self.file.part_path, exc)
        if control.aborted:
            return
        sealed = self.file.seal(control)
        if sealed is None:
            return
        closed_at = datetime.now(timezone.utc)
        on_closed(sealed, self.file.start, closed_at, sealed.stat().st_size)


def _seconds(packet) -> float:
    timestamp = packet.pts if packet.pts is not None else packet.dts
    return float(timestamp * packet.stream.time_base)


class PyAVEngine(MediaEngine):
    """Stream-copy recorder built on PyAV.

    Packets are remuxed without decoding. A new segment starts at the first
    video key frame after the configured duration, or before a packet that
    would push the file past the size cap.
    """

    def record(
        self, request: RecordRequest, on_closed: ClosedCallback, control: SessionControl
    ) -> None:
        options = {
            "rtsp_transport": request.media.rtsp_transport,
            "rw_timeout": str(int(request.media.read_timeout_s * 1_000_000)),
        }
        try:
            source = av.open(
                request.uri,
                mode="r",
                options=options,
                timeout=(request.media.connect_timeout_s, request.media.read_timeout_s),
            )
        except av.FFmpegError as exc:
            raise IngestionFailure(
                f"Unable to open {request.redacted_uri}: {exc.__class__.__name__}"
            ) from exc

        with source:
            video = next(iter(source.streams.video), None)
            if video is None:
                raise IngestionFailure(f"{request.redacted_uri} has no video stream")
            streams = [video, *source.streams.audio]
            logger.info(
                "Recording %s from %s (%s)",
                request.camera_id,
                request.redacted_uri,
                video.codec_context.name,
            )
            current: _OpenSegment | None = None
            try:
                for packet in source.demux(streams):
                    if control.stop_requested:
                        break
                    if packet.dts is None:
                        continue
                    is_video = packet.stream.index == video.index
                    if current is None:
                        if not (is_video and packet.is_keyframe):
                            continue
                        current = _OpenSegment(request, streams, _seconds(packet))
                    elif self._should_rotate(request, current, packet, is_video):
                        current.close(control, on_closed)
                        current = _OpenSegment(
                            request, streams, _seconds(packet), current.file.start
                        )
                    current.mux(packet)
            except av.FFmpegError as exc:
                raise IngestionFailure(
                    f"Stream {request.redacted_uri} failed: {exc.__class__.__name__}"
                ) from exc
            finally:
                if current is not None:
                    current.close(control, on_closed)
        if not control.stop_requested:
            raise IngestionFailure(f"Stream {request.redacted_uri} ended")

    @staticmethod
    def _should_rotate(request: RecordRequest, current: _OpenSegment, packet, is_video: bool) -> bool:
        if current.bytes_written + packet.size > request.segment.max_bytes:
            return True
        elapsed = time.monotonic() - current.opened_at
        return is_video and packet.is_keyframe and elapsed >= request.segment.duration_s


__all__ = [
    "ClosedCallback",
    "MediaEngine",
    "PyAVEngine",
    "RecordRequest",
    "SessionControl",
    "verify_segment",
]
