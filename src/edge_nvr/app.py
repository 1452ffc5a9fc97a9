"""FastAPI control surface for the recorder."""
from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .config import SUPPORTED_CONTAINERS, NvrConfig, load_config
from .errors import DuplicateIdError, NotFoundError, SessionTimeoutError, ValidationError
from .media import MediaEngine
from .retention import FreeSpaceProbe
from .service import NvrService
from .system_log import SystemLog
from .version import APP_VERSION

_MEDIA_TYPES = {"mp4": "video/mp4", "mkv": "video/x-matroska", "ts": "video/mp2t"}


class CameraPayload(BaseModel):
    camera_id: str = Field(..., min_length=1, max_length=64)
    uri: str = Field(..., min_length=1)
    enabled: bool = True


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, ValidationError):
        status = 409 if isinstance(exc, DuplicateIdError) else 400
        return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")


def create_app(
    config: NvrConfig | Path | str | None = None,
    *,
    engine: MediaEngine | None = None,
    system_log: SystemLog | None = None,
    free_space_probe: FreeSpaceProbe | None = None,
) -> FastAPI:
    app = FastAPI(title="Edge NVR", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if not isinstance(config, NvrConfig):
        config = load_config(config)
    service = NvrService(
        config,
        engine=engine,
        system_log=system_log,
        free_space_probe=free_space_probe,
    )
    app.state.service = service

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        await service.start()
        logger.info("Edge NVR %s listening for control requests", APP_VERSION)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await service.aclose()

    # ------------------------------------------------------------------
    # Cameras
    # ------------------------------------------------------------------
    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        return {"cameras": service.status()}

    @app.get("/api/cameras/{camera_id}")
    async def get_camera(camera_id: str) -> dict[str, object]:
        try:
            return service.status(camera_id)
        except NotFoundError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/cameras", status_code=201)
    async def add_camera(payload: CameraPayload) -> dict[str, object]:
        try:
            return await service.add_camera(payload.camera_id, payload.uri, enabled=payload.enabled)
        except ValidationError as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/cameras/{camera_id}", status_code=204)
    async def remove_camera(camera_id: str) -> Response:
        try:
            await service.remove_camera(camera_id)
        except (NotFoundError, SessionTimeoutError) as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.post("/api/cameras/{camera_id}/enable")
    async def enable_camera(camera_id: str) -> dict[str, object]:
        try:
            return await service.set_enabled(camera_id, True)
        except NotFoundError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/cameras/{camera_id}/disable")
    async def disable_camera(camera_id: str) -> dict[str, object]:
        try:
            return await service.set_enabled(camera_id, False)
        except (NotFoundError, SessionTimeoutError) as exc:
            raise _http_error(exc) from exc

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------
    @app.get("/api/recordings")
    async def recordings_summary() -> dict[str, object]:
        return {"recordings": await run_in_threadpool(service.recordings_summary)}

    @app.get("/api/recordings/{camera_id}")
    async def list_recordings(camera_id: str) -> dict[str, object]:
        try:
            segments = await run_in_threadpool(service.list_segments, camera_id)
            summary = (await run_in_threadpool(service.recordings_summary, camera_id))[camera_id]
        except (NotFoundError, ValidationError) as exc:
            raise _http_error(exc) from exc
        return {"camera_id": camera_id, "summary": summary, "segments": segments}

    @app.get("/api/recordings/{camera_id}/{day}/{name}")
    async def get_recording(camera_id: str, day: str, name: str):
        try:
            path = await run_in_threadpool(service.segment_file, camera_id, day, name)
        except NotFoundError as exc:
            raise _http_error(exc) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        extension = path.suffix.lstrip(".")
        media_type = _MEDIA_TYPES.get(extension) if extension in SUPPORTED_CONTAINERS else None
        return FileResponse(path, media_type=media_type, filename=f"{camera_id}-{day}-{name}")

    # ------------------------------------------------------------------
    # Retention and storage
    # ------------------------------------------------------------------
    @app.post("/api/retention/run")
    async def run_retention() -> dict[str, object]:
        report = await service.run_retention_now()
        return report.to_dict()

    @app.get("/api/storage")
    async def storage_status() -> dict[str, object]:
        return await run_in_threadpool(service.storage_status)

    # ------------------------------------------------------------------
    # Operational helpers
    # ------------------------------------------------------------------
    @app.get("/api/log")
    async def get_system_log(
        limit: int = 100,
        category: str | None = None,
        camera_id: str | None = None,
    ) -> dict[str, object]:
        limit = max(1, min(int(limit), 500))
        entries = service.system_log.tail(limit, category=category, camera_id=camera_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.get("/api/viewers")
    async def viewers() -> dict[str, object]:
        return {"viewers": service.viewer_urls()}

    @app.get("/api/relay-config", response_class=PlainTextResponse)
    async def relay_config() -> str:
        return service.relay_config()

    @app.get("/api/version")
    async def version() -> dict[str, str]:
        return {"version": APP_VERSION}

    return app


__all__ = ["CameraPayload", "create_app"]
