"""
FlowScale Render Worker - FastAPI Service

Accepts render jobs over HTTP, runs them through the render scheduler and
exposes their status, logs and progress to polling clients.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import WorkerSettings, configure_logging, init_directories, settings
from errors import (
    EncoderUnavailableError,
    JobNotFoundError,
    QueueOverflowError,
    RenderError,
    ValidationError,
)
from jobs import Job, JobView
from scheduler import QueueStats, RenderScheduler
from inputs import JobKind, parse_kind

logger = logging.getLogger("render-worker")

VERSION = "1.0.0"


# ============================================================================
# Request/Response Models
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmitRequest(CamelModel):
    """Request to enqueue a render job."""
    kind: str = Field(description="simple_edit, timed_plan or multi_source_concat")
    input: dict = Field(default_factory=dict, description="Kind-specific input payload")
    priority: Optional[str] = Field(default=None, description="high, normal or low")
    job_id: Optional[str] = Field(default=None, description="Caller-chosen job id")


class SubmitResponse(CamelModel):
    ok: bool = True
    job_id: str
    status: str
    queue_position: int
    status_url: str


class ArtifactModel(CamelModel):
    type: str
    mime: str
    path: str
    url: str
    size_bytes: int
    duration_ms: int


class ErrorModel(CamelModel):
    code: str
    message: str


class JobStatusResponse(CamelModel):
    """Status of a render job."""
    ok: bool = True
    job_id: str
    kind: str
    priority: str
    status: str  # queued, running, done, error
    progress_percent: int = 0
    eta_seconds: Optional[float] = None
    logs_tail: list[str] = Field(default_factory=list)
    command: Optional[list[str]] = None
    encoder_used: Optional[str] = None
    attempts: int = 0
    artifacts: list[ArtifactModel] = Field(default_factory=list)
    output_url: Optional[str] = None
    error: Optional[ErrorModel] = None
    project_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: JobView) -> "JobStatusResponse":
        artifacts = [
            ArtifactModel(
                type=a.type, mime=a.mime, path=a.path, url=a.url,
                size_bytes=a.size_bytes, duration_ms=a.duration_ms,
            )
            for a in view.artifacts
        ]
        return cls(
            job_id=view.job_id,
            kind=view.kind.value,
            priority=view.priority.value,
            status=view.status.value,
            progress_percent=view.progress_percent,
            eta_seconds=view.eta_seconds,
            logs_tail=list(view.logs_tail),
            command=list(view.command_line) if view.command_line else None,
            encoder_used=view.encoder_used,
            attempts=view.attempts,
            artifacts=artifacts,
            output_url=artifacts[0].url if artifacts else None,
            error=ErrorModel(code=view.error.code, message=view.error.message) if view.error else None,
            project_id=view.project_id,
            created_at=view.created_at,
            started_at=view.started_at,
            completed_at=view.completed_at,
        )


class JobSummary(CamelModel):
    job_id: str
    kind: str
    status: str
    progress_percent: int
    project_id: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[ErrorModel] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class JobListResponse(CamelModel):
    ok: bool = True
    count: int
    jobs: list[JobSummary]


class JobLogsResponse(CamelModel):
    ok: bool = True
    job_id: str
    status: str
    logs: list[str]
    log_count: int
    command: Optional[list[str]] = None
    encoder_used: Optional[str] = None
    attempts: int = 0
    output_path: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobStateResponse(CamelModel):
    ok: bool = True
    job_id: str
    status: str
    progress_percent: int
    eta_seconds: Optional[float] = None
    last_log_line: Optional[str] = None
    log_count: int
    is_complete: bool


class QueueStatsResponse(CamelModel):
    ok: bool = True
    active: int
    waiting: int
    capacity: int
    max_queue_depth: int
    total: int
    completed: int
    failed: int
    failed_24h: int = Field(alias="failed24h")
    overloaded: bool
    estimated_wait_seconds: int

    @classmethod
    def from_stats(cls, stats: QueueStats) -> "QueueStatsResponse":
        return cls(
            active=stats.active,
            waiting=stats.waiting,
            capacity=stats.capacity,
            max_queue_depth=stats.max_queue_depth,
            total=stats.total,
            completed=stats.completed,
            failed=stats.failed,
            failed_24h=stats.failed_24h,
            overloaded=stats.overloaded,
            estimated_wait_seconds=stats.estimated_wait_seconds,
        )


class HealthResponse(CamelModel):
    """Health check response."""
    status: str
    version: str
    ffmpeg_path: str
    ffmpeg_version: Optional[str] = None
    encoder: str
    gpu_available: bool
    gpu_count: int
    concurrency: int
    queue: QueueStatsResponse


# ============================================================================
# Progress broadcasting
# ============================================================================

class ProgressBroadcaster:
    """Pushes job snapshots to WebSocket clients subscribed to a job id."""

    def __init__(self):
        self.connections: dict[str, list[WebSocket]] = {}
        self._tasks: set[asyncio.Task] = set()

    def add(self, job_id: str, ws: WebSocket):
        self.connections.setdefault(job_id, []).append(ws)

    def remove(self, job_id: str, ws: WebSocket):
        sockets = self.connections.get(job_id)
        if not sockets:
            return
        try:
            sockets.remove(ws)
        except ValueError:
            pass
        if not sockets:
            del self.connections[job_id]

    def publish(self, view: JobView):
        """Scheduler listener; schedules the send so the job pipeline never waits on a socket."""
        if not self.connections.get(view.job_id):
            return
        task = asyncio.create_task(self._broadcast(view))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _broadcast(self, view: JobView):
        payload = JobStatusResponse.from_view(view).model_dump(mode="json", by_alias=True)
        for ws in list(self.connections.get(view.job_id, [])):
            try:
                await ws.send_json(payload)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.debug(f"[{view.job_id}] Dropping progress socket: {e}")
                self.remove(view.job_id, ws)


# ============================================================================
# Error handling
# ============================================================================

_STATUS_CODES = [
    (ValidationError, 400),
    (JobNotFoundError, 404),
    (QueueOverflowError, 503),
    (EncoderUnavailableError, 503),
]


def status_code_for(exc: RenderError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": {"code": code, "message": message}},
    )


async def render_error_handler(request: Request, exc: RenderError) -> JSONResponse:
    return _error_response(status_code_for(exc), exc.code, exc.message)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{loc}: {first.get('msg')}" if loc else first.get("msg", "Invalid request")
    return _error_response(400, ValidationError.code, message)


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


def get_scheduler(request: Request) -> RenderScheduler:
    return request.app.state.scheduler


def _submit_response(scheduler: RenderScheduler, job: Job) -> SubmitResponse:
    return SubmitResponse(
        job_id=job.job_id,
        status=job.status.value,
        queue_position=scheduler.queue_position(job.job_id),
        status_url=f"/jobs/{job.job_id}",
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(scheduler: RenderScheduler = Depends(get_scheduler)):
    """Health check endpoint."""
    caps = scheduler.capabilities
    return HealthResponse(
        status="healthy",
        version=VERSION,
        ffmpeg_path=scheduler.settings.ffmpeg_path,
        ffmpeg_version=caps.ffmpeg_version if caps else None,
        encoder=scheduler.preferred_encoder,
        gpu_available=caps.gpu_available if caps else False,
        gpu_count=caps.gpu_count if caps else 0,
        concurrency=scheduler.concurrency,
        queue=QueueStatsResponse.from_stats(scheduler.stats()),
    )


@router.post("/jobs", status_code=202, response_model=SubmitResponse)
async def submit_job(request: SubmitRequest, scheduler: RenderScheduler = Depends(get_scheduler)):
    """Create a new render job."""
    job = await scheduler.submit(request.kind, request.input, request.priority, request.job_id)
    return _submit_response(scheduler, job)


@router.post("/execute", status_code=202, response_model=SubmitResponse)
async def execute(payload: dict = Body(...), scheduler: RenderScheduler = Depends(get_scheduler)):
    """Flat single-clip or multi-source payload; a source list selects concatenation."""
    if payload.get("sources") or payload.get("sourceUrls"):
        kind = JobKind.MULTI_SOURCE_CONCAT
    else:
        kind = JobKind.SIMPLE_EDIT
    job = await scheduler.submit(kind, payload, payload.get("priority"), payload.get("jobId"))
    return _submit_response(scheduler, job)


@router.post("/execute-plan", status_code=202, response_model=SubmitResponse)
async def execute_plan(payload: dict = Body(...), scheduler: RenderScheduler = Depends(get_scheduler)):
    """ExecutionPlan payload; ``outputName`` doubles as the job id and output file stem."""
    job_id = payload.get("jobId")
    if not job_id and isinstance(payload.get("outputName"), str):
        job_id = Path(payload["outputName"]).stem
    job = await scheduler.submit(JobKind.TIMED_PLAN, payload, payload.get("priority"), job_id)
    return _submit_response(scheduler, job)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    kind: Optional[str] = Query(default=None),
    scheduler: RenderScheduler = Depends(get_scheduler),
):
    """List retained jobs, newest first."""
    job_kind = parse_kind(kind) if kind else None
    jobs = []
    for view in scheduler.list_jobs(project_id=project_id, kind=job_kind):
        jobs.append(JobSummary(
            job_id=view.job_id,
            kind=view.kind.value,
            status=view.status.value,
            progress_percent=view.progress_percent,
            project_id=view.project_id,
            output_url=view.artifacts[0].url if view.artifacts else None,
            error=ErrorModel(code=view.error.code, message=view.error.message) if view.error else None,
            created_at=view.created_at,
            completed_at=view.completed_at,
        ))
    return JobListResponse(count=len(jobs), jobs=jobs)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, scheduler: RenderScheduler = Depends(get_scheduler)):
    """Get the status of a render job."""
    return JobStatusResponse.from_view(scheduler.get(job_id))


@router.get("/jobs/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(job_id: str, scheduler: RenderScheduler = Depends(get_scheduler)):
    """Full job log plus execution metadata."""
    job = scheduler.get_job(job_id)
    return JobLogsResponse(
        job_id=job.job_id,
        status=job.status.value,
        logs=list(job.full_logs),
        log_count=len(job.full_logs),
        command=list(job.command_line) if job.command_line else None,
        encoder_used=job.encoder_used,
        attempts=job.attempts,
        output_path=str(job.output_path) if job.output_path else None,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.get("/jobs/{job_id}/state", response_model=JobStateResponse)
async def get_job_state(job_id: str, scheduler: RenderScheduler = Depends(get_scheduler)):
    view = scheduler.get(job_id)
    return JobStateResponse(
        job_id=view.job_id,
        status=view.status.value,
        progress_percent=view.progress_percent,
        eta_seconds=view.eta_seconds,
        last_log_line=view.last_log_line,
        log_count=view.log_count,
        is_complete=view.is_complete,
    )


@router.get("/queue", response_model=QueueStatsResponse)
async def queue_stats(scheduler: RenderScheduler = Depends(get_scheduler)):
    return QueueStatsResponse.from_stats(scheduler.stats())


@router.websocket("/ws/progress/{job_id}")
async def websocket_progress(websocket: WebSocket, job_id: str):
    """WebSocket endpoint for real-time job progress."""
    scheduler: RenderScheduler = websocket.app.state.scheduler
    broadcaster: ProgressBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    broadcaster.add(job_id, websocket)

    try:
        # Send initial status
        try:
            view = scheduler.get(job_id)
        except JobNotFoundError as e:
            await websocket.send_json({"ok": False, "error": e.to_dict()})
        else:
            await websocket.send_json(JobStatusResponse.from_view(view).model_dump(mode="json", by_alias=True))

        # Keep connection alive and receive pings
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                await websocket.send_text("keepalive")

    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.remove(job_id, websocket)


# ============================================================================
# FastAPI App
# ============================================================================

def create_app(
    scheduler: Optional[RenderScheduler] = None,
    worker_settings: Optional[WorkerSettings] = None,
) -> FastAPI:
    """Build the HTTP app; a scheduler is detected from settings at startup unless injected."""
    worker_settings = worker_settings or (scheduler.settings if scheduler else settings)
    broadcaster = ProgressBroadcaster()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        configure_logging(worker_settings)
        init_directories(worker_settings)
        active = scheduler or RenderScheduler.from_settings(worker_settings)
        app.state.scheduler = active
        active.add_listener(broadcaster.publish)
        await active.start()
        logger.info(f"FlowScale render worker started on {worker_settings.host}:{worker_settings.port}")
        logger.info(f"Encoder: {active.preferred_encoder}, concurrency: {active.concurrency}")

        yield

        # Shutdown
        await active.stop()
        active.remove_listener(broadcaster.publish)
        logger.info("Worker shutdown complete")

    app = FastAPI(
        title="FlowScale Render Worker",
        description="Queues render jobs and executes them with FFmpeg, preferring hardware encoders",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.broadcaster = broadcaster
    app.add_exception_handler(RenderError, render_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Run the worker service."""
    import uvicorn

    uvicorn.run(
        "worker:app",
        host=settings.host,
        port=settings.port,
        workers=settings.workers,
        log_level=settings.log_level.lower(),
        http="httptools",
        reload=False
    )


if __name__ == "__main__":
    main()
