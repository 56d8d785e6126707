from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, get_args

from fastapi import Body, FastAPI, File, Form, HTTPException, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from reelsmith.cache_admin import CacheBusyError
from reelsmith.composition import BgmMode
from reelsmith.config import resolve_config
from reelsmith.hashing import sanitize_name
from reelsmith.jobs import BgmSpec, CancelRejectedError, Job, JobNotFoundError, MediaRef
from reelsmith.models import ExportQuality, RenderServerConfig
from reelsmith.services import RenderServices, build_services

logger = logging.getLogger(__name__)

MISSING_MEDIA_MESSAGE = "Uploaded media missing on disk. Please re-upload and try again."


# --- Pydantic Models for Requests ---
class MediaInput(BaseModel):
    path: Optional[str] = None
    duration: float = 0.0
    assetId: Optional[str] = None  # noqa: N815


class BgmInput(BaseModel):
    path: Optional[str] = None
    assetId: Optional[str] = None  # noqa: N815
    playLength: float = Field(default=0.0, ge=0.0)  # noqa: N815
    volumeDb: Optional[float] = None  # noqa: N815
    volume: Optional[float] = Field(default=None, ge=0.0)
    mode: BgmMode = BgmMode.FULL
    startTime: float = Field(default=0.0, ge=0.0)  # noqa: N815
    loop: bool = False

    @field_validator("mode", mode="before")
    @classmethod
    def default_unknown_mode(cls, v):
        try:
            return BgmMode(v)
        except ValueError:
            return BgmMode.FULL


class RenderRequest(BaseModel):
    name: Optional[str] = None
    exportQuality: Optional[ExportQuality] = None  # noqa: N815
    video1: Optional[MediaInput] = None
    video2: Optional[MediaInput] = None
    bgm: Optional[BgmInput] = None

    @field_validator("exportQuality", mode="before")
    @classmethod
    def drop_unknown_quality(cls, v):
        # Unknown resolutions fall back to the configured default
        return v if v in get_args(ExportQuality) else None


class CacheClearRequest(BaseModel):
    force: bool = False


def build_job(data: RenderRequest, output_dir: Path, default_quality: str) -> Job:
    """Turn a validated request into a queued Job record."""
    job_id = str(uuid.uuid4())
    output_name = sanitize_name(data.name or f"render-{job_id}")

    video2 = None
    if data.video2 is not None and data.video2.path:
        video2 = MediaRef(
            path=data.video2.path, duration=data.video2.duration, asset_id=data.video2.assetId
        )

    bgm = None
    if data.bgm is not None and data.bgm.path:
        bgm = BgmSpec(
            path=data.bgm.path,
            asset_id=data.bgm.assetId,
            start_time=data.bgm.startTime,
            play_length=data.bgm.playLength,
            volume_db=data.bgm.volumeDb,
            volume=data.bgm.volume,
            mode=data.bgm.mode,
            loop=data.bgm.loop,
        )

    return Job(
        job_id=job_id,
        name=output_name,
        output_path=str(output_dir / f"{output_name}.mp4"),
        export_quality=data.exportQuality or default_quality,
        video1=MediaRef(
            path=data.video1.path, duration=data.video1.duration, asset_id=data.video1.assetId
        ),
        video2=video2,
        bgm=bgm,
    )


def create_app(
    config: Optional[RenderServerConfig] = None,
    services: Optional[RenderServices] = None,
) -> FastAPI:
    """Build the HTTP app. Pass ``services`` to inject a prepared object graph."""
    if services is None:
        services = build_services(config or resolve_config())
    config = services.config
    paths = config.paths

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        yield
        await services.stop()

    app = FastAPI(title="reelsmith", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Read-only views for engines that fetch inputs over HTTP
    app.mount("/media", StaticFiles(directory=paths.uploads_dir, check_dir=False), name="media")
    app.mount("/cache", StaticFiles(directory=paths.cache_dir, check_dir=False), name="cache")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unexpected_error(request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc) or "Internal error."})

    @app.get("/api/health")
    async def health_check():
        return {"ok": True}

    @app.post("/api/upload")
    async def upload_file(
        file: Optional[UploadFile] = File(None),
        assetId: Optional[str] = Form(None),  # noqa: N803
    ):
        if file is None:
            raise HTTPException(status_code=400, detail="No file provided.")

        asset_id = sanitize_name(assetId or str(uuid.uuid4()))
        original = sanitize_name(file.filename or "upload")
        paths.uploads_dir.mkdir(parents=True, exist_ok=True)
        file_path = paths.uploads_dir / f"{asset_id}-{original}"

        def save() -> None:
            with open(file_path, "wb") as buffer:
                shutil.copyfileobj(file.file, buffer)

        await asyncio.to_thread(save)
        logger.info("Stored upload %s", file_path.name)
        return {"path": str(file_path), "assetId": asset_id}

    @app.post("/api/render")
    async def create_render(data: RenderRequest):
        if data.video1 is None or not data.video1.path:
            raise HTTPException(status_code=400, detail="Missing video asset.")

        referenced = [data.video1.path]
        if data.video2 is not None and data.video2.path:
            referenced.append(data.video2.path)
        if data.bgm is not None and data.bgm.path:
            referenced.append(data.bgm.path)
        for path in referenced:
            if not os.path.isfile(path):
                raise HTTPException(status_code=400, detail=MISSING_MEDIA_MESSAGE)

        job = build_job(data, paths.output_dir, config.engine.default_quality)
        services.scheduler.submit(job)
        return {"jobId": job.job_id}

    @app.get("/api/render")
    async def list_renders():
        return [job.to_record() for job in services.store.list()]

    @app.get("/api/render/{job_id}")
    async def get_render(job_id: str):
        job = services.store.get(job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"status": "missing"})
        return job.to_record()

    @app.post("/api/render/{job_id}/cancel")
    async def cancel_render(job_id: str):
        try:
            message = services.scheduler.cancel(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=400, detail="Job not found.")
        except CancelRejectedError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"ok": True, "message": message}

    @app.get("/api/download/{job_id}")
    async def download_render(job_id: str):
        job = services.store.get(job_id)
        if job is None or not job.output_url or not os.path.isfile(job.output_path):
            raise HTTPException(status_code=404, detail="Output not ready.")
        return FileResponse(
            job.output_path, media_type="video/mp4", filename=os.path.basename(job.output_path)
        )

    @app.get("/api/cache/stats")
    async def cache_stats():
        return await asyncio.to_thread(services.cache_admin.get_stats)

    @app.post("/api/cache/clear")
    async def clear_cache(data: Optional[CacheClearRequest] = Body(None)):
        force = bool(data and data.force)
        try:
            result = await services.cache_admin.clear_cache(force=force)
        except CacheBusyError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return {"ok": True, **result}

    @app.post("/api/asset/{asset_id}/purge")
    async def purge_asset(asset_id: str):
        await asyncio.to_thread(services.cache_admin.purge_asset, asset_id)
        return {"ok": True}

    return app
