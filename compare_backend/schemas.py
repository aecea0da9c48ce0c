"""
Pydantic models for request/response validation and for the raw model output.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from compare_backend.models import CamelModel, ComparisonResult, FabVersion, Job, Source


class FabContext(CamelModel):
    """Product grounding passed to the model alongside the two videos."""
    product_name: Optional[str] = None
    summary: Optional[str] = None
    features: List[str] = []
    advantages: List[str] = []
    benefits: List[str] = []
    note: Optional[str] = None


# --- Model output (snake_case, as the prompt asks for it) ---

class _OutputModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class VideoScoreOutput(_OutputModel):
    score: StrictInt = Field(ge=0, le=100)
    grade: Optional[Literal["S", "A", "B", "C", "D"]] = None
    highlights: List[StrictStr]
    issues: List[StrictStr]


class PerVideoOutput(_OutputModel):
    A: VideoScoreOutput
    B: VideoScoreOutput


class SegmentOutput(_OutputModel):
    t: StrictStr
    phase: StrictStr
    score: StrictInt = Field(ge=0, le=100)
    spoken_excerpt: StrictStr
    screen_text: StrictStr
    visual_cue: StrictStr
    severity: StrictStr
    pillar_contrib: StrictStr
    issue: StrictStr
    fix_hint: StrictStr


class GapOutput(_OutputModel):
    aspect: StrictStr
    severity: StrictStr
    hint: StrictStr


class TimelineItemOutput(_OutputModel):
    A: SegmentOutput
    B: SegmentOutput
    gap: GapOutput


class DiffItemOutput(_OutputModel):
    aspect: StrictStr
    note: StrictStr


class CompareOutput(_OutputModel):
    """The snake_case object the compare prompt asks the model to return."""
    summary: StrictStr
    per_video: PerVideoOutput
    diff: List[DiffItemOutput]
    actions: List[StrictStr] = Field(min_length=3, max_length=3)
    timeline: List[TimelineItemOutput]
    improvement_summary: StrictStr


# --- Requests ---

class CreateJobRequest(CamelModel):
    """Request model for creating a compare job."""
    collection_id: str = Field(min_length=1)
    fab_version_id: str = Field(min_length=1)
    A: Source = Field(alias="A")
    B: Source = Field(alias="B")
    # shared notes, applied to a side that has none of its own
    notes: Optional[str] = None


class CompareRequest(CamelModel):
    """Request model for the synchronous compare endpoints."""
    A: Source = Field(alias="A")
    B: Source = Field(alias="B")
    fab: Optional[FabContext] = None


class FabConfirmRequest(CamelModel):
    """Request model for confirming a FAB summary."""
    collection_id: Optional[str] = None
    product_name: str = Field(min_length=1)
    description: Optional[str] = None
    image_ref: Optional[str] = None
    summary: Optional[str] = None
    features: List[str] = Field(min_length=2)
    advantages: List[str] = Field(min_length=2)
    benefits: List[str] = Field(min_length=2)
    note: Optional[str] = None


# --- Responses ---

class JobCreated(CamelModel):
    job_id: str


class JobCreatedResponse(CamelModel):
    """Response when submitting a background compare job."""
    success: bool = True
    data: JobCreated


class JobResponse(CamelModel):
    """Response for polling a job."""
    success: bool = True
    data: Job


class CompareResponse(CamelModel):
    """Response for a synchronous compare."""
    success: bool = True
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    duration_ms: Optional[int] = None
    result: ComparisonResult
    metrics: Dict[str, int] = {}


class FabConfirmed(CamelModel):
    collection_id: str
    fab_version_id: str
    version: int


class FabConfirmResponse(CamelModel):
    success: bool = True
    data: FabConfirmed


class FabVersionsResponse(CamelModel):
    success: bool = True
    data: List[FabVersion]


class UploadResult(CamelModel):
    file_key: str
    size_mb: float
    mime: Optional[str] = None


class UploadResponse(CamelModel):
    """Response model for an uploaded video."""
    success: bool = True
    data: UploadResult


class ErrorResponse(CamelModel):
    success: bool = False
    error_code: str
    message: Optional[str] = None
    violations: Optional[List[str]] = None
    result: Optional[Any] = None
