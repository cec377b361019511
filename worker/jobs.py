"""
Render job records and the bounded in-memory job store.
"""
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from errors import RenderError, JobNotFoundError
from inputs import JobKind, JobSpec, Priority

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.DONE, JobStatus.ERROR},
    JobStatus.DONE: set(),
    JobStatus.ERROR: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Artifact:
    """A produced output file."""
    type: str
    mime: str
    path: str
    url: str
    size_bytes: int
    duration_ms: int


@dataclass(frozen=True)
class JobError:
    code: str
    message: str


@dataclass(frozen=True)
class JobView:
    """Point-in-time copy of a job, safe to hand to polling clients."""
    job_id: str
    kind: JobKind
    priority: Priority
    status: JobStatus
    progress_percent: int
    eta_seconds: Optional[float]
    logs_tail: tuple[str, ...]
    log_count: int
    command_line: Optional[tuple[str, ...]]
    encoder_used: Optional[str]
    attempts: int
    artifacts: tuple[Artifact, ...]
    error: Optional[JobError]
    project_id: Optional[str]
    output_path: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    @property
    def is_complete(self) -> bool:
        return self.status.is_terminal

    @property
    def last_log_line(self) -> Optional[str]:
        return self.logs_tail[-1] if self.logs_tail else None


@dataclass
class Job:
    """Represents a render job."""
    job_id: str
    kind: JobKind
    spec: JobSpec
    priority: Priority = Priority.NORMAL
    logs_tail_lines: int = 50

    # Runtime state
    status: JobStatus = JobStatus.QUEUED
    progress_percent: int = 0
    eta_seconds: Optional[float] = None
    command_line: Optional[list[str]] = None
    encoder_used: Optional[str] = None
    attempts: int = 0
    artifacts: list[Artifact] = field(default_factory=list)
    error: Optional[JobError] = None
    temp_files: list[Path] = field(default_factory=list)
    output_path: Optional[Path] = None
    full_logs: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        self.logs_tail: deque[str] = deque(maxlen=self.logs_tail_lines)

    @property
    def project_id(self) -> Optional[str]:
        return self.spec.project_id

    def append_log(self, message: str) -> None:
        self.full_logs.append(message)
        self.logs_tail.append(message)

    def log_event(self, message: str) -> None:
        """Append a lifecycle line stamped with the current time."""
        self.append_log(f"[{utcnow().isoformat()}] {message}")

    def update_progress(self, percent: int, eta_seconds: Optional[float] = None) -> bool:
        """Raise progress (never lower it, never to 100 while running).

        Returns True when the visible progress changed.
        """
        percent = max(0, min(99, int(percent)))
        changed = False
        if percent > self.progress_percent:
            self.progress_percent = percent
            changed = True
        if eta_seconds is not None and eta_seconds != self.eta_seconds:
            self.eta_seconds = eta_seconds
            changed = True
        return changed

    def _transition(self, target: JobStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise RuntimeError(f"Invalid job state transition: {self.status.value} -> {target.value}")
        self.status = target

    def mark_running(self) -> None:
        self._transition(JobStatus.RUNNING)
        self.started_at = utcnow()
        self.log_event("Job started")

    def mark_done(self, artifact: Artifact, encoder: str) -> None:
        self._transition(JobStatus.DONE)
        self.completed_at = utcnow()
        self.progress_percent = 100
        self.eta_seconds = 0
        self.encoder_used = encoder
        self.artifacts.append(artifact)
        self.log_event(f"Job completed successfully (Encoder: {encoder})")

    def mark_failed(self, error: RenderError) -> None:
        self._transition(JobStatus.ERROR)
        self.completed_at = utcnow()
        self.eta_seconds = None
        self.error = JobError(code=error.code, message=error.message)
        self.log_event(f"Job failed: {error.message}")

    def view(self) -> JobView:
        return JobView(
            job_id=self.job_id,
            kind=self.kind,
            priority=self.priority,
            status=self.status,
            progress_percent=self.progress_percent,
            eta_seconds=self.eta_seconds,
            logs_tail=tuple(self.logs_tail),
            log_count=len(self.full_logs),
            command_line=tuple(self.command_line) if self.command_line else None,
            encoder_used=self.encoder_used,
            attempts=self.attempts,
            artifacts=tuple(self.artifacts),
            error=self.error,
            project_id=self.project_id,
            output_path=str(self.output_path) if self.output_path else None,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class JobStore:
    """Job id -> Job map, bounded to the most recently created jobs.

    Only terminal jobs are evicted; queued and running jobs are always kept.
    """

    def __init__(self, max_retained: int = 100):
        self.max_retained = max_retained
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def add(self, job: Job) -> None:
        self._jobs[job.job_id] = job
        self.evict()

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def values(self) -> list[Job]:
        return list(self._jobs.values())

    def evict(self) -> list[str]:
        """Drop the oldest terminal jobs until the store fits its bound."""
        evicted = []
        if len(self._jobs) <= self.max_retained:
            return evicted
        for job_id, job in list(self._jobs.items()):
            if len(self._jobs) <= self.max_retained:
                break
            if job.status.is_terminal:
                del self._jobs[job_id]
                evicted.append(job_id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} old job(s) from the store")
        return evicted
