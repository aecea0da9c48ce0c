"""
Records owned by the job store: compare jobs, their results, collections
and FAB versions.

All records are frozen pydantic models. The store never mutates a record in
place; it swaps in a ``model_copy`` so pollers always read a whole snapshot.
"""

import re
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from compare_backend.config import MAX_NOTES_CHARS


JobStatus = Literal["queued", "processing", "done", "error"]

# Keys name a file directly inside the upload directory.
FILE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def is_safe_file_key(key: str) -> bool:
    """True when the key has no path separators, no ``..`` and no leading dot."""
    return bool(FILE_KEY_PATTERN.match(key or "")) and ".." not in key


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for records that are dumped to clients with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# --- Sources ---

class _SourceBase(CamelModel):
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def cap_notes(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value[:MAX_NOTES_CHARS]


class UrlSource(_SourceBase):
    """A video fetched from a remote page URL."""
    type: Literal["tiktok", "url"]
    url: str = Field(min_length=1)


class UploadSource(_SourceBase):
    """A video previously stored through the upload endpoint."""
    type: Literal["upload"]
    file_key: str = Field(min_length=1)

    @field_validator("file_key")
    @classmethod
    def check_file_key(cls, value: str) -> str:
        if not is_safe_file_key(value):
            raise ValueError("fileKey must be a bare upload key")
        return value


Source = Annotated[Union[UrlSource, UploadSource], Field(discriminator="type")]


# --- Comparison result (UI contract) ---

class VideoScore(CamelModel):
    score: int = Field(ge=0, le=100)
    grade: Optional[Literal["S", "A", "B", "C", "D"]] = None
    highlights: List[str] = []
    issues: List[str] = []


class PerVideo(CamelModel):
    A: VideoScore = Field(alias="A")
    B: VideoScore = Field(alias="B")


class DiffEntry(CamelModel):
    aspect: str
    note: str


class TimelineEntry(CamelModel):
    """One paired segment. ``A``/``B`` are free-form per-segment records."""
    A: Dict[str, Any] = Field(default_factory=dict, alias="A")
    B: Dict[str, Any] = Field(default_factory=dict, alias="B")
    gap: Dict[str, Any] = Field(default_factory=dict)
    label_a: Optional[str] = None
    label_b: Optional[str] = None
    description: str = ""
    severity: Optional[str] = None
    tip: str = ""


class KeyClip(CamelModel):
    at: str = ""
    shot: str
    sub: str = ""


class Transcripts(CamelModel):
    A: str = Field(default="", alias="A")
    B: str = Field(default="", alias="B")


class ComparisonResult(CamelModel):
    summary: str
    per_video: PerVideo
    diff: List[DiffEntry] = []
    actions: List[str] = Field(min_length=3, max_length=3)
    timeline: List[TimelineEntry] = []
    improvement_summary: str = ""
    transcripts: Optional[Transcripts] = None
    key_clips: Optional[Dict[str, List[KeyClip]]] = Field(default=None, alias="_key_clips")


# --- Jobs ---

class JobMetrics(CamelModel):
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class Job(CamelModel):
    """A two-video compare job. Source fields never change after creation."""
    id: str
    collection_id: str
    fab_version_id: str
    source_a: Source
    source_b: Source
    status: JobStatus = "queued"
    error_code: Optional[str] = None
    stage: Optional[str] = None
    model: Optional[str] = None
    metrics: JobMetrics = JobMetrics()
    result: Optional[ComparisonResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


# --- FAB registry ---

class Collection(CamelModel):
    """A product the user compares videos for."""
    id: str
    product_name: str
    description: Optional[str] = None
    image_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class FabVersion(CamelModel):
    """One confirmed Features/Advantages/Benefits summary for a collection."""
    id: str
    collection_id: str
    version: int
    summary: str = ""
    features: List[str] = []
    advantages: List[str] = []
    benefits: List[str] = []
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
