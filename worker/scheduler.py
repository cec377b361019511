"""
FlowScale Render Worker - Job queue and scheduler

A fixed pool of worker tasks (one per concurrency slot) pulls jobs from a
priority-ordered pending list and drives each one through:

    resolve sources -> probe -> build command -> run with encoder fallback

Every job ends in ``done`` or ``error``; exceptions never escape a worker
task, and a job's scratch files are removed before its terminal state is set.
"""
import asyncio
import heapq
import itertools
import logging
import math
import re
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from config import WorkerSettings, settings
from capabilities import EngineCapabilities, detect_capabilities
from commands import SOFTWARE_ENCODER, build_command
from errors import QueueOverflowError, RenderError, ValidationError
from jobs import Artifact, Job, JobStatus, JobStore, JobView, utcnow
from paths import sanitize_path
from sources import SourceResolver
from inputs import JobKind, TimedPlanInput, parse_job_input, parse_priority
from transcoder import EncoderFallbackPolicy, FFmpegTranscoder, RenderResult

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

# Rough per-job duration used for the queue wait estimate.
AVERAGE_JOB_SECONDS = 45
OVERLOAD_THRESHOLD = 0.9

JobListener = Callable[[JobView], None]


def generate_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class QueueStats:
    active: int
    waiting: int
    capacity: int
    max_queue_depth: int
    total: int
    completed: int
    failed: int
    failed_24h: int
    overloaded: bool
    estimated_wait_seconds: int


class RenderScheduler:
    """Owns the job store, the pending list and the worker tasks."""

    def __init__(
        self,
        worker_settings: Optional[WorkerSettings] = None,
        *,
        preferred_encoder: str = SOFTWARE_ENCODER,
        concurrency: int = 1,
        transcoder: Optional[FFmpegTranscoder] = None,
        resolver: Optional[SourceResolver] = None,
        capabilities: Optional[EngineCapabilities] = None,
    ):
        self.settings = worker_settings or settings
        self.preferred_encoder = preferred_encoder
        self.concurrency = max(1, concurrency)
        self.capabilities = capabilities
        self.transcoder = transcoder or FFmpegTranscoder(self.settings)
        self.resolver = resolver or SourceResolver(self.settings)
        self.fallback = EncoderFallbackPolicy(self.transcoder)
        self.store = JobStore(self.settings.max_jobs_retained)

        # (-priority weight, enqueue sequence, job id)
        self._pending: list[tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._condition = asyncio.Condition()
        self._active: set[str] = set()
        self._workers: list[asyncio.Task] = []
        self._sweeper_task: Optional[asyncio.Task] = None
        self._listeners: list[JobListener] = []
        self._unfinished = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @classmethod
    def from_settings(cls, worker_settings: Optional[WorkerSettings] = None) -> "RenderScheduler":
        """Detect encoder capabilities and size the slot pool from them.

        Raises EncoderUnavailableError when the ffmpeg binary is unusable.
        """
        worker_settings = worker_settings or settings
        caps = detect_capabilities(worker_settings)
        return cls(
            worker_settings,
            preferred_encoder=caps.preferred_encoder,
            concurrency=caps.concurrency(worker_settings.max_concurrent_jobs),
            capabilities=caps,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start background worker tasks."""
        if self._workers:
            return
        for slot in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(slot)))
        if self.settings.cleanup_interval_seconds > 0:
            self._sweeper_task = asyncio.create_task(self._temp_sweeper())
        logger.info(f"Started {self.concurrency} worker(s) (encoder: {self.preferred_encoder})")

    async def stop(self):
        """Stop all worker tasks."""
        tasks = list(self._workers)
        if self._sweeper_task:
            tasks.append(self._sweeper_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._sweeper_task = None

    async def join(self):
        """Wait until every submitted job has reached a terminal state."""
        await self._idle.wait()

    def add_listener(self, listener: JobListener):
        """Register a callback that receives a JobView on every job change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener):
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------

    async def submit(
        self,
        kind,
        input_spec: Optional[dict],
        priority=None,
        job_id: Optional[str] = None,
    ) -> Job:
        """Validate and enqueue a job.

        Raises ValidationError for bad input and QueueOverflowError when the
        pending list is full; neither creates a job record.
        """
        job_kind, spec = parse_job_input(kind, input_spec)
        job_priority = parse_priority(priority)
        if spec.source_path:
            spec.source_path = str(sanitize_path(spec.source_path, self.settings.allowed_dirs()))
        if isinstance(spec, TimedPlanInput):
            for overlay in spec.plan.text_overlays:
                if overlay.font_file:
                    overlay.font_file = str(sanitize_path(overlay.font_file, self.settings.allowed_dirs()))
        if job_id is not None and (not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id)):
            raise ValidationError(f"Invalid jobId '{job_id}'")

        async with self._condition:
            if len(self._pending) >= self.settings.max_queue_depth:
                logger.warning(f"Queue overflow: rejecting {job_kind.value} job ({len(self._pending)} pending)")
                raise QueueOverflowError(len(self._pending))
            if job_id is None:
                job_id = generate_job_id()
                while job_id in self.store:
                    job_id = generate_job_id()
            elif job_id in self.store:
                raise ValidationError(f"Job {job_id} already exists", "DUPLICATE_JOB_ID")

            job = Job(
                job_id=job_id,
                kind=job_kind,
                spec=spec,
                priority=job_priority,
                logs_tail_lines=self.settings.logs_tail_lines,
            )
            job.log_event(f"Job queued ({job_kind.value}, priority {job_priority.value})")
            self.store.add(job)
            heapq.heappush(self._pending, (-job_priority.weight, next(self._sequence), job_id))
            self._unfinished += 1
            self._idle.clear()
            self._condition.notify()

        logger.info(
            f"[{job_id}] Queued {job_kind.value} job "
            f"(priority: {job_priority.value}, pending: {len(self._pending)})"
        )
        self._notify(job)
        return job

    def get(self, job_id: str) -> JobView:
        """Snapshot of a job; raises JobNotFoundError for unknown or evicted ids."""
        return self.store.get(job_id).view()

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def queue_position(self, job_id: str) -> int:
        """1-based position in the pending list, 0 when the job is not pending."""
        for position, (_, _, pending_id) in enumerate(sorted(self._pending), start=1):
            if pending_id == job_id:
                return position
        return 0

    def pending_ids(self) -> list[str]:
        """Pending job ids in dequeue order."""
        return [job_id for _, _, job_id in sorted(self._pending)]

    def list_jobs(self, project_id: Optional[str] = None, kind: Optional[JobKind] = None) -> list[JobView]:
        """Retained jobs, newest first."""
        views = []
        for job in reversed(self.store.values()):
            if project_id is not None and job.project_id != project_id:
                continue
            if kind is not None and job.kind != kind:
                continue
            views.append(job.view())
        return views

    def stats(self) -> QueueStats:
        jobs = self.store.values()
        day_ago = utcnow() - timedelta(hours=24)
        failed = [job for job in jobs if job.status == JobStatus.ERROR]
        waiting = len(self._pending)
        depth = self.settings.max_queue_depth
        return QueueStats(
            active=len(self._active),
            waiting=waiting,
            capacity=self.concurrency,
            max_queue_depth=depth,
            total=len(jobs),
            completed=sum(1 for job in jobs if job.status == JobStatus.DONE),
            failed=len(failed),
            failed_24h=sum(1 for job in failed if job.completed_at and job.completed_at >= day_ago),
            overloaded=waiting >= depth * OVERLOAD_THRESHOLD,
            estimated_wait_seconds=math.ceil(waiting * AVERAGE_JOB_SECONDS / self.concurrency),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _worker(self, slot: int):
        """Background worker that processes jobs from the pending list."""
        logger.info(f"Worker {slot} started")
        while True:
            async with self._condition:
                while not self._pending:
                    await self._condition.wait()
                _, _, job_id = heapq.heappop(self._pending)
                job = self.store.get(job_id)
                job.mark_running()
                self._active.add(job_id)

            logger.info(f"Worker {slot} processing job {job_id}")
            self._notify(job)
            try:
                await self._run_job(job)
            finally:
                self._active.discard(job_id)
                self._unfinished -= 1
                if self._unfinished == 0:
                    self._idle.set()

    async def _run_job(self, job: Job):
        result: Optional[RenderResult] = None
        error: Optional[RenderError] = None
        try:
            result = await self._execute(job)
        except RenderError as e:
            error = e
        except Exception as e:
            logger.exception(f"[{job.job_id}] Unexpected error while rendering")
            error = RenderError(f"Unexpected error: {e}")
        finally:
            self._cleanup_temp_files(job)

        if error is not None:
            self._discard_output(job)
            job.mark_failed(error)
            logger.error(f"[{job.job_id}] Render failed [{error.code}]: {error.message}")
        else:
            artifact = self._artifact(job, result)
            job.mark_done(artifact, result.encoder)
            logger.info(
                f"[{job.job_id}] Artifact ready: {artifact.url} "
                f"({artifact.size_bytes} bytes, {artifact.duration_ms} ms, {result.encoder})"
            )

        self.store.evict()
        self._notify(job)

    async def _execute(self, job: Job) -> RenderResult:
        paths = await self.resolver.resolve(job)
        sources = [await self.transcoder.probe_source(path) for path in paths]
        for info in sources:
            if info.duration is None:
                job.append_log(f"Probe: duration unknown for {info.path.name}")
            else:
                job.append_log(
                    f"Probe: {info.path.name} duration={info.duration:.2f}s audio={info.has_audio}"
                )

        output_path, _ = self._output_location(job)
        job.output_path = output_path

        def build(encoder: str):
            return build_command(job.spec, sources, encoder, output_path, self.settings)

        return await self.fallback.execute(job, self.preferred_encoder, build, self._notify)

    def _output_location(self, job: Job) -> tuple[Path, str]:
        """Output file path and its public URL path."""
        filename = f"{job.job_id}{job.spec.output_format.extension}"
        if job.project_id:
            path = self.settings.projects_dir / job.project_id / "outputs" / filename
            return path, f"/projects/{job.project_id}/outputs/{filename}"
        return self.settings.output_dir / filename, f"/outputs/{filename}"

    def _artifact(self, job: Job, result: RenderResult) -> Artifact:
        _, url = self._output_location(job)
        elapsed = utcnow() - job.started_at if job.started_at else timedelta(0)
        return Artifact(
            type="video",
            mime=job.spec.output_format.mime,
            path=str(result.output_path),
            url=url,
            size_bytes=result.size_bytes,
            duration_ms=int(elapsed.total_seconds() * 1000),
        )

    def _cleanup_temp_files(self, job: Job):
        removed = 0
        for path in job.temp_files:
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning(f"[{job.job_id}] Failed to remove temp file {path}: {e}")
        if removed:
            job.log_event(f"Cleaned up {removed} temp file(s)")

    def _discard_output(self, job: Job):
        if job.output_path is None:
            return
        try:
            job.output_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"[{job.job_id}] Failed to remove partial output {job.output_path}: {e}")

    # ------------------------------------------------------------------
    # Notifications and housekeeping
    # ------------------------------------------------------------------

    def _notify(self, job: Job):
        if not self._listeners:
            return
        view = job.view()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception(f"[{job.job_id}] Job listener failed")

    def sweep_temp(self, now: Optional[float] = None) -> list[Path]:
        """Delete scratch files older than the TTL that no live job owns."""
        temp_dir = self.settings.temp_dir
        if not temp_dir.exists():
            return []
        now = now if now is not None else time.time()
        max_age = self.settings.cleanup_temp_after_hours * 3600
        owned = {
            path
            for job in self.store.values()
            if not job.status.is_terminal
            for path in job.temp_files
        }
        removed = []
        for entry in temp_dir.iterdir():
            if not entry.is_file() or entry in owned:
                continue
            age = now - entry.stat().st_mtime
            if age > max_age:
                entry.unlink(missing_ok=True)
                removed.append(entry)
                logger.info(f"Temp sweeper: removed stale file {entry.name} (age: {age / 3600:.1f}h)")
        return removed

    async def _temp_sweeper(self):
        """Periodically remove stray scratch files."""
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            try:
                self.sweep_temp()
            except OSError as e:
                logger.error(f"Temp sweeper error: {e}")
