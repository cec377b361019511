"""
Render job kinds and their input payloads.

Each job kind has exactly one input model; the set is closed, so the
argument builder can dispatch on the model type without a fallback branch.
"""
import re
from enum import Enum
from typing import Optional, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
POSITION_PATTERN = re.compile(r"^[A-Za-z0-9_+\-*/(). ]+$")
FILTER_COLOR_PATTERN = r"^[A-Za-z0-9#@.]+$"


class JobKind(str, Enum):
    SIMPLE_EDIT = "simple_edit"
    TIMED_PLAN = "timed_plan"
    MULTI_SOURCE_CONCAT = "multi_source_concat"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        return {"high": 100, "normal": 50, "low": 10}[self.value]


def is_url(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.lower().startswith(("http://", "https://"))


# ============================================================================
# Shared option models
# ============================================================================

class Trim(BaseModel):
    start: float = 0.0
    end: Optional[float] = None


class Resize(BaseModel):
    width: int
    height: int


class AudioOptions(BaseModel):
    mute: bool = False
    volume: Optional[float] = None


class OutputFormat(BaseModel):
    format: Literal["mp4", "mov"] = "mp4"
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def extension(self) -> str:
        return f".{self.format}"

    @property
    def mime(self) -> str:
        return "video/quicktime" if self.format == "mov" else "video/mp4"


class JobInput(BaseModel):
    """Fields every job kind accepts."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source_path: Optional[str] = Field(default=None, alias="sourcePath")
    source_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sourceUrl", "source_url", "inputFileUrl", "sourceVideoUrl"),
    )
    audio: AudioOptions = Field(default_factory=AudioOptions)
    output_format: OutputFormat = Field(default_factory=OutputFormat, alias="outputFormat")
    project_id: Optional[str] = Field(default=None, alias="projectId")

    @model_validator(mode="after")
    def _move_url_out_of_path(self):
        # A URL placed in the local-path field is a remote source.
        if is_url(self.source_path):
            if not self.source_url:
                self.source_url = self.source_path
            self.source_path = None
        return self

    def has_source(self) -> bool:
        return bool(self.source_path or self.source_url)


# ============================================================================
# Per-kind payloads
# ============================================================================

class SimpleEditInput(JobInput):
    trim: Optional[Trim] = None
    speed: Optional[float] = None
    resize: Optional[Resize] = None


class PlanSegment(BaseModel):
    trim_start_ms: Optional[float] = None
    trim_end_ms: Optional[float] = None
    speed_multiplier: Optional[float] = None
    asset_url: Optional[str] = None


class AudioTrack(BaseModel):
    """A music / voiceover / sfx track laid onto the plan timeline."""
    asset_url: Optional[str] = None
    trim_start_ms: float = 0.0
    timeline_start_ms: float = 0.0
    timeline_end_ms: Optional[float] = None
    volume: float = 1.0


class TextOverlay(BaseModel):
    content: str
    timeline_start_ms: float = 0.0
    timeline_end_ms: Optional[float] = None
    font_size: int = Field(default=48, ge=1, le=512)
    color: str = Field(default="white", pattern=FILTER_COLOR_PATTERN)
    x: Union[float, str] = "(w-text_w)/2"
    y: Union[float, str] = "h-text_h-40"
    font_file: Optional[str] = None
    box: bool = False
    box_color: Optional[str] = Field(default=None, pattern=FILTER_COLOR_PATTERN)

    @field_validator("x", "y")
    @classmethod
    def _position_expression(cls, value):
        if isinstance(value, str) and not POSITION_PATTERN.match(value):
            raise ValueError("position must be a number or an arithmetic expression")
        return value


class PlanOutputFormat(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None


class PlanValidation(BaseModel):
    total_duration_ms: Optional[float] = None


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timeline: list[PlanSegment] = Field(default_factory=list)
    audio_tracks: list[AudioTrack] = Field(default_factory=list)
    text_overlays: list[TextOverlay] = Field(default_factory=list)
    output_format: Optional[PlanOutputFormat] = None
    validation: Optional[PlanValidation] = None


class TimedPlanInput(JobInput):
    plan: ExecutionPlan

    def has_source(self) -> bool:
        return super().has_source() or any(segment.asset_url for segment in self.plan.timeline)

    def asset_refs(self) -> list[tuple[Optional[str], str]]:
        """Unique plan inputs in first-use order, each with a label naming where it is used.

        ``None`` stands for the job's own source and serves segments without
        an ``asset_url``. Audio tracks without an ``asset_url`` are skipped.
        """
        refs: list[tuple[Optional[str], str]] = []
        seen = set()
        for i, segment in enumerate(self.plan.timeline):
            if segment.asset_url not in seen:
                seen.add(segment.asset_url)
                refs.append((segment.asset_url, f"segment {i}"))
        for i, track in enumerate(self.plan.audio_tracks):
            if track.asset_url and track.asset_url not in seen:
                seen.add(track.asset_url)
                refs.append((track.asset_url, f"audio track {i}"))
        return refs


class ConcatInput(JobInput):
    source_urls: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("sourceUrls", "source_urls", "sources"),
    )
    transitions: list[str] = Field(default_factory=list)
    clip_duration: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("clipDuration", "clip_duration")
    )
    max_duration: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("maxDuration", "max_duration")
    )

    def has_source(self) -> bool:
        return bool(self.source_urls)


JobSpec = Union[SimpleEditInput, TimedPlanInput, ConcatInput]

INPUT_MODELS: dict[JobKind, type] = {
    JobKind.SIMPLE_EDIT: SimpleEditInput,
    JobKind.TIMED_PLAN: TimedPlanInput,
    JobKind.MULTI_SOURCE_CONCAT: ConcatInput,
}


def parse_kind(kind) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        known = ", ".join(k.value for k in JobKind)
        raise ValidationError(f"Unknown job kind '{kind}' (expected one of: {known})", "UNKNOWN_JOB_KIND")


def parse_priority(priority) -> Priority:
    if priority is None:
        return Priority.NORMAL
    try:
        return Priority(priority)
    except ValueError:
        raise ValidationError(f"Unknown priority '{priority}' (expected high, normal or low)")


def _check_plan_assets(spec: TimedPlanInput):
    job_source = JobInput.has_source(spec)
    for index, segment in enumerate(spec.plan.timeline):
        if segment.asset_url is None:
            if not job_source:
                raise ValidationError(
                    f"plan.timeline[{index}] has no asset_url and the job has no source",
                    "MISSING_SOURCE",
                )
        elif not is_url(segment.asset_url):
            raise ValidationError(f"plan.timeline[{index}].asset_url must be an http(s) URL")
    for index, track in enumerate(spec.plan.audio_tracks):
        if track.asset_url is not None and not is_url(track.asset_url):
            raise ValidationError(f"plan.audio_tracks[{index}].asset_url must be an http(s) URL")


def parse_job_input(kind, payload: Optional[dict]) -> tuple[JobKind, JobSpec]:
    """Validate a submission payload into the input model for its kind."""
    job_kind = parse_kind(kind)
    if not isinstance(payload, dict):
        raise ValidationError("input must be an object")

    try:
        spec = INPUT_MODELS[job_kind].model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{loc}: {first.get('msg')}" if loc else first.get("msg", "invalid input")
        raise ValidationError(f"Invalid {job_kind.value} input: {message}")

    if not spec.has_source():
        raise ValidationError(
            "Input must reference a source (sourcePath, sourceUrl or sourceUrls)",
            "MISSING_SOURCE",
        )
    if isinstance(spec, ConcatInput):
        for index, url in enumerate(spec.source_urls):
            if not is_url(url):
                raise ValidationError(f"sourceUrls[{index}] must be an http(s) URL")
    if isinstance(spec, TimedPlanInput):
        _check_plan_assets(spec)
    if spec.project_id is not None and not PROJECT_ID_PATTERN.match(spec.project_id):
        raise ValidationError(f"Invalid projectId '{spec.project_id}'")

    return job_kind, spec
