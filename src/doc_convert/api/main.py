from __future__ import annotations

import asyncio
import json
import logging
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from doc_convert.config import resolve_config
from doc_convert.dispatcher import Dispatcher
from doc_convert.errors import (
    DocConvertError,
    InfrastructureError,
    ServiceUnavailableError,
    ValidationError,
)
from doc_convert.logging_setup import configure_logging
from doc_convert.models import DocConvertConfig
from doc_convert.runtime import build_runtime
from doc_convert.service import JobService

logger = logging.getLogger(__name__)


# --- Pydantic Models for Requests ---
class PayloadIn(BaseModel):
    inputRef: str = Field(..., min_length=1)  # noqa: N815
    filename: Optional[str] = None


class JobCreate(BaseModel):
    type: str
    payload: PayloadIn
    options: dict = Field(default_factory=dict)
    maxAttempts: Optional[int] = None  # noqa: N815


# --- Dependencies ---
def get_service(request: Request) -> JobService:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ServiceUnavailableError(
            "Job queue not available: asynchronous processing requires the queue store"
        )
    return runtime.service


def _save_upload(source: BinaryIO, target: Path) -> None:
    with open(target, "wb") as buffer:
        shutil.copyfileobj(source, buffer)


def create_app(
    config: Optional[DocConvertConfig] = None,
    dispatcher: Optional[Dispatcher] = None,
    start_workers: Optional[bool] = None,
) -> FastAPI:
    """Build the HTTP app.

    Args:
        config: Resolved configuration (default: resolve_config() at startup)
        dispatcher: Converter registry (default: tools found on this host)
        start_workers: Run the worker pool in-process (default: api.start_workers)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = config or resolve_config()
        configure_logging(resolved.logging)
        try:
            runtime = build_runtime(resolved, dispatcher=dispatcher)
        except InfrastructureError as e:
            # Serve 503s rather than refusing to start
            logger.error("Queue store unavailable at startup: %s", e)
            runtime = None
        app.state.runtime = runtime

        run_workers = resolved.api.start_workers if start_workers is None else start_workers
        if runtime is not None and run_workers:
            runtime.pool.start()
        yield
        if runtime is not None:
            runtime.close()
        app.state.runtime = None

    app = FastAPI(title="doc-convert", lifespan=lifespan)
    app.state.runtime = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- ERROR HANDLERS ---

    @app.exception_handler(DocConvertError)
    async def doc_convert_error_handler(request: Request, exc: DocConvertError):
        if exc.http_status >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(
            "Invalid request",
            details={"errors": json.loads(json.dumps(exc.errors(), default=str))},
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = DocConvertError("Something went wrong")
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    # --- API ENDPOINTS ---

    @app.get("/")
    async def root():
        return {
            "message": "Document conversion job API",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "create": "POST /api/jobs",
                "upload": "POST /api/jobs/upload",
                "status": "GET /api/jobs/{jobId}/status",
                "download": "GET /api/jobs/{jobId}/download",
                "cancel": "DELETE /api/jobs/{jobId}",
                "list": "GET /api/jobs",
            },
        }

    @app.get("/health")
    async def health_check(request: Request):
        runtime = request.app.state.runtime
        body = {"status": "ok", "queue": "ok"}
        if runtime is None:
            body.update(status="degraded", queue="unavailable")
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
        try:
            await asyncio.to_thread(runtime.service.health)
        except ServiceUnavailableError:
            body.update(status="degraded", queue="unavailable")
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
        body["workers"] = "running" if runtime.pool.running else "stopped"
        body["converters"] = runtime.dispatcher.supported_types()
        return body

    # --- JOB ENDPOINTS ---

    @app.post("/api/jobs", status_code=201)
    async def create_job(job_data: JobCreate, service: JobService = Depends(get_service)):
        job_id = await asyncio.to_thread(
            service.enqueue,
            job_data.type,
            {"input_ref": job_data.payload.inputRef, "filename": job_data.payload.filename},
            job_data.options,
            job_data.maxAttempts,
        )
        return {"jobId": job_id}

    @app.post("/api/jobs/upload", status_code=201)
    async def upload_job(
        request: Request,
        type: str = Form(...),
        file: UploadFile = File(...),
        options: Optional[str] = Form(default=None),
        service: JobService = Depends(get_service),
    ):
        try:
            parsed_options = json.loads(options) if options else {}
        except json.JSONDecodeError as e:
            raise ValidationError(f"options must be a JSON object: {e.msg}")
        if not isinstance(parsed_options, dict):
            raise ValidationError("options must be a JSON object")

        uploads_dir = Path(request.app.state.runtime.config.storage.uploads_dir)
        ext = Path(file.filename or "").suffix
        file_path = uploads_dir / f"{uuid.uuid4()}{ext}"

        await asyncio.to_thread(_save_upload, file.file, file_path)

        try:
            job_id = await asyncio.to_thread(
                service.enqueue,
                type,
                {"input_ref": str(file_path), "filename": file.filename},
                parsed_options,
            )
        except DocConvertError:
            file_path.unlink(missing_ok=True)
            raise
        return {"jobId": job_id, "filename": file.filename}

    @app.get("/api/jobs")
    async def list_jobs(
        state: str = Query(default="all"),
        limit: Optional[int] = Query(default=None),
        offset: int = Query(default=0),
        service: JobService = Depends(get_service),
    ):
        view = await asyncio.to_thread(service.list, state, limit, offset)
        return view.model_dump(mode="json")

    @app.get("/api/jobs/{job_id}/status")
    async def job_status(job_id: str, service: JobService = Depends(get_service)):
        view = await asyncio.to_thread(service.status, job_id)
        return view.to_response()

    @app.get("/api/jobs/{job_id}/download")
    async def download_job(job_id: str, service: JobService = Depends(get_service)):
        view = await asyncio.to_thread(service.download, job_id)
        return Response(
            content=view.content,
            media_type=view.content_type,
            headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(view.filename)}"},
        )

    @app.delete("/api/jobs/{job_id}")
    async def cancel_job(job_id: str, service: JobService = Depends(get_service)):
        view = await asyncio.to_thread(service.cancel, job_id)
        return view.model_dump()

    return app


app = create_app()


def run(host: Optional[str] = None, port: Optional[int] = None, config: Optional[DocConvertConfig] = None):
    """Serve the API with uvicorn."""
    import uvicorn

    config = config or resolve_config()
    uvicorn.run(
        create_app(config=config),
        host=host or config.api.host,
        port=port or config.api.port,
        log_level=config.logging.level.lower(),
    )
