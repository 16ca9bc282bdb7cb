import asyncio
import hmac
import logging
import shlex
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from job_errors import ArtifactNotFound, JobNotCancelable, JobServiceError, RENDER_ERROR_TITLES, Unauthorized, UnknownJob
from job_models import (
    DESIGN_FILE,
    OUTPUT_FILES,
    CanceledOutcome,
    DoneOutcome,
    ErrorOutcome,
    JobRecord,
    JobStatus,
    output_urls,
)
from job_registry import JobRegistry
from job_store import JobStore
from render_invoker import RenderInvoker
from render_queue import RenderQueue
from retention import RetentionSweeper
from settings import TRUTHY, Settings
from upload_intake import UploadIntake

LOGGER_NAME = "pembroider_service"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CANCEL_WAIT_SECONDS = 5.0
MEDIA_TYPES = {DESIGN_FILE: "application/octet-stream"}

logger = logging.getLogger(LOGGER_NAME)
request_logger = logging.getLogger(f"{LOGGER_NAME}.request")


def configure_logging(service_log: Path) -> None:
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    try:
        service_log.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(service_log)
    except OSError as exc:
        file_handler = None
        print(f"Cannot open service log {service_log}: {exc}", file=sys.stderr)
    if file_handler is not None:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    logger.propagate = False


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        client = request.client.host if request.client else "-"
        try:
            response = await call_next(request)
        except Exception:
            request_logger.exception(
                "client=%s method=%s path=%s status=500 duration_ms=%.2f UNHANDLED",
                client,
                request.method,
                request.url.path,
                (time.perf_counter() - start) * 1000.0,
            )
            raise
        request_logger.info(
            "client=%s method=%s path=%s status=%s duration_ms=%.2f",
            client,
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000.0,
        )
        return response


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(JobServiceError)
    async def job_error_handler(request: Request, exc: JobServiceError):
        logger.warning(
            "%s %s -> %s %s: %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.kind,
            exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()]
        logger.warning("%s %s -> 422 invalid request: %s", request.method, request.url.path, details)
        return JSONResponse(
            status_code=422,
            content={
                "error": "Invalid request",
                "kind": "ValidationError",
                "message": "Request fields are missing or malformed.",
                "details": details,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error at %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Server error", "kind": "InternalError", "message": str(exc)},
        )


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _job_links(job_id: str) -> Dict[str, Any]:
    files = output_urls(job_id)
    return {
        "statusUrl": f"/api/jobs/{job_id}",
        "cancelUrl": f"/api/jobs/{job_id}/cancel",
        "files": files,
        "pesUrl": files["pes"],
        "previewUrl": files["preview"],
    }


def status_payload(record: JobRecord) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ok": record.status is not JobStatus.error,
        "jobId": record.id,
        "status": record.status.value,
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
        "startedAt": _iso(record.started_at),
        "finishedAt": _iso(record.finished_at),
        "layers": record.layers,
        "reconstructed": record.reconstructed,
        "statusUrl": f"/api/jobs/{record.id}",
    }
    if record.status is JobStatus.queued:
        payload["queuePosition"] = record.queue_position
    if record.status is JobStatus.running and record.command:
        payload["cmd"] = shlex.join(record.command)

    outcome = record.outcome
    if isinstance(outcome, DoneOutcome):
        payload.update(_job_links(record.id))
        payload["durationSeconds"] = outcome.duration_seconds
    elif isinstance(outcome, ErrorOutcome):
        payload.update(
            {
                "error": RENDER_ERROR_TITLES.get(outcome.error_kind, "Renderer failed"),
                "kind": outcome.error_kind,
                "message": outcome.message,
                "exitCode": outcome.exit_code,
                "cmd": shlex.join(outcome.command),
                "stdout": outcome.stdout,
                "stderr": outcome.stderr,
                "durationSeconds": outcome.duration_seconds,
            }
        )
    elif isinstance(outcome, CanceledOutcome):
        payload["wasRunning"] = outcome.was_running
    return payload


def accepted_payload(record: JobRecord) -> Dict[str, Any]:
    payload = {
        "ok": True,
        "jobId": record.id,
        "status": record.status.value,
        "queuePosition": record.queue_position,
    }
    payload.update(_job_links(record.id))
    return payload


def _sync_response(record: JobRecord) -> JSONResponse:
    if record.status is JobStatus.done:
        status_code = 200
    elif record.status is JobStatus.canceled:
        status_code = 409
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=status_payload(record))


def require_class_key(request: Request, x_class_key: Optional[str] = Header(default=None)) -> None:
    expected = request.app.state.settings.class_key
    if not expected:
        raise Unauthorized("CLASS_KEY is not configured on the server.")
    if not x_class_key or not hmac.compare_digest(x_class_key.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized("Missing or incorrect X-Class-Key header.")


router = APIRouter()


@router.get("/")
async def root():
    return {
        "message": "PEmbroider render job API",
        "submit_endpoint": "/api/jobs",
        "docs": "/docs",
        "example_submit": 'curl -H "X-Class-Key: $CLASS_KEY" -F "files=@layer.png" -F "spec=<spec.json" http://localhost:3000/api/jobs',
        "example_submit_and_wait": 'curl -H "X-Class-Key: $CLASS_KEY" -F "files=@layer.png" "http://localhost:3000/api/jobs?wait=1"',
        "example_status": "curl http://localhost:3000/api/jobs/<jobId>",
        "example_download": "curl http://localhost:3000/api/jobs/<jobId>/design.pes --output design.pes",
        "example_cancel": 'curl -X POST -H "X-Class-Key: $CLASS_KEY" http://localhost:3000/api/jobs/<jobId>/cancel',
    }


@router.get("/api/health")
async def health(request: Request):
    state = request.app.state
    settings: Settings = state.settings
    return {
        "ok": True,
        "processingBin": settings.processing_bin,
        "rendererSketch": str(settings.renderer_sketch),
        "jobsRoot": str(settings.jobs_root),
        "wrapper": settings.processing_wrapper,
        "wrapperArgs": settings.processing_wrapper_args,
        "maxConcurrentRenders": settings.max_concurrent_renders,
        "running": state.queue.running_count,
        "waiting": state.queue.waiting_count,
    }


@router.post("/api/jobs", dependencies=[Depends(require_class_key)])
async def create_job(
    request: Request,
    files: Optional[List[UploadFile]] = File(default=None),
    spec: Optional[str] = Form(default=None),
    wait: Optional[str] = Query(default=None),
):
    state = request.app.state
    uploads = [upload for upload in files or [] if getattr(upload, "filename", None)]
    result = await state.intake.intake(uploads, spec)
    record = state.registry.register(result.paths, result.layers)
    future = state.queue.submit(record.id)
    logger.info("job %s: accepted with %s layer(s)", record.id, len(result.layers))

    if wait is not None and wait.strip().lower() in TRUTHY:
        # Shielded so a disconnecting client does not abort the render.
        final = await asyncio.shield(future)
        return _sync_response(final)
    return JSONResponse(status_code=202, content=accepted_payload(state.registry.get(record.id)))


@router.get("/api/jobs/{job_id}")
async def job_status(job_id: str, request: Request):
    record = request.app.state.registry.get(job_id)
    return status_payload(record)


@router.post("/api/jobs/{job_id}/cancel", dependencies=[Depends(require_class_key)])
async def cancel_job(job_id: str, request: Request):
    state = request.app.state
    record = state.registry.get(job_id)
    if record.status.terminal:
        raise JobNotCancelable(f"Job '{job_id}' is already {record.status.value}.", status=record.status.value)

    future = state.queue.pending(job_id)
    if not state.queue.cancel(job_id):
        raise JobNotCancelable(f"Job '{job_id}' is not queued or running.", status=record.status.value)
    if future is not None and not future.done():
        try:
            await asyncio.wait_for(asyncio.shield(future), timeout=CANCEL_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("job %s: renderer still exiting %.0fs after cancel", job_id, CANCEL_WAIT_SECONDS)
    return status_payload(state.registry.get(job_id))


@router.get("/api/jobs/{job_id}/{filename}")
async def download_output(job_id: str, filename: str, request: Request):
    if filename not in OUTPUT_FILES:
        raise ArtifactNotFound(f"Unknown output '{filename}'; expected one of {', '.join(OUTPUT_FILES)}.")
    store: JobStore = request.app.state.store
    paths = store.paths(job_id)
    if not paths.root.is_dir():
        raise UnknownJob(f"Job '{job_id}' does not exist.")
    target = paths.output(filename)
    if not target.is_file():
        raise ArtifactNotFound(f"'{filename}' is not available for job '{job_id}'.")
    return FileResponse(target, media_type=MEDIA_TYPES.get(filename), filename=filename)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    store = JobStore(settings.jobs_root)
    registry = JobRegistry(store, keep_finished=settings.keep_finished_jobs)
    invoker = RenderInvoker(
        renderer_bin=settings.processing_bin,
        sketch=settings.renderer_sketch,
        wrapper=settings.processing_wrapper,
        wrapper_args=settings.processing_wrapper_args,
        args_template=settings.processing_args,
        timeout_seconds=settings.render_timeout_seconds,
        output_limit_chars=settings.render_output_limit_kb * 1024,
        log_output=settings.log_renderer_output,
    )
    queue = RenderQueue(invoker, registry, store, max_concurrent=settings.max_concurrent_renders)
    sweeper = RetentionSweeper(
        store,
        retention_seconds=settings.retention_seconds,
        interval_seconds=settings.cleanup_interval_minutes * 60,
        registry=registry,
        is_active=queue.is_active,
    )
    intake = UploadIntake(
        store,
        max_files=settings.max_files,
        max_file_bytes=settings.max_file_bytes,
        max_request_bytes=settings.max_request_bytes,
        verify_images=settings.verify_layer_images,
    )

    def on_finished(record: JobRecord) -> None:
        if settings.job_delete_after_seconds > 0:
            sweeper.schedule_deletion(record.id, settings.job_delete_after_seconds)

    queue.on_finished = on_finished

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.service_log_path)
        store.ensure_root()
        if not settings.class_key:
            logger.warning("CLASS_KEY is not set; job creation and cancellation will be rejected.")
        logger.info("Processing binary: %s", settings.processing_bin)
        logger.info("Renderer sketch: %s", settings.renderer_sketch)
        logger.info("Jobs root: %s", settings.jobs_root)
        logger.info(
            "Max concurrent renders: %s, render timeout: %.0fs",
            settings.max_concurrent_renders,
            settings.render_timeout_seconds,
        )
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await queue.shutdown()
            logger.info("Shutdown complete.")

    app = FastAPI(title="PEmbroider Render Job Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.invoker = invoker
    app.state.queue = queue
    app.state.sweeper = sweeper
    app.state.intake = intake
    app.add_middleware(RequestLogMiddleware)
    register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    settings = Settings.from_env()
    if not settings.class_key:
        print("Missing required env var: CLASS_KEY", file=sys.stderr)
        raise SystemExit(1)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
