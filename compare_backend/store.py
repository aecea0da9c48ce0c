"""
In-memory job store and state machine.

The store is the single writer of job records. Every update builds a new
frozen snapshot under the lock and swaps it in, so HTTP pollers reading
concurrently always see either the old record or the new one.
Data resets on server restart.
"""

import abc
import logging
import threading
import uuid
from typing import Dict, List, Optional

from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.models import (
    Collection, ComparisonResult, FabVersion, Job, JobMetrics, Source, utcnow,
)
from compare_backend.schemas import FabContext


ALLOWED_TRANSITIONS = {
    "queued": {"processing"},
    "processing": {"done", "error"},
    "done": {"queued"},
    "error": {"queued"},
}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _duration_ms(metrics: JobMetrics, completed_at) -> Optional[int]:
    if metrics.started_at is None:
        return None
    return int((completed_at - metrics.started_at).total_seconds() * 1000)


class JobRepository(abc.ABC):
    """Storage interface the pipeline and routers depend on."""

    @abc.abstractmethod
    def create_job(self, collection_id: str, fab_version_id: str, source_a: Source, source_b: Source) -> Job: ...

    @abc.abstractmethod
    def get_job(self, job_id: str) -> Job: ...

    @abc.abstractmethod
    def start_processing(self, job_id: str, model: str) -> Job: ...

    @abc.abstractmethod
    def set_stage(self, job_id: str, stage: str) -> Job: ...

    @abc.abstractmethod
    def complete_job(self, job_id: str, result: ComparisonResult) -> Job: ...

    @abc.abstractmethod
    def fail_job(self, job_id: str, error_code: str, stage: Optional[str] = None) -> Job: ...

    @abc.abstractmethod
    def reset_for_retry(self, job_id: str) -> Job: ...

    @abc.abstractmethod
    def create_collection(self, product_name: str, description: Optional[str] = None,
                          image_ref: Optional[str] = None) -> Collection: ...

    @abc.abstractmethod
    def get_collection(self, collection_id: str) -> Optional[Collection]: ...

    @abc.abstractmethod
    def create_fab_version(self, collection_id: str, summary: str, features: List[str],
                           advantages: List[str], benefits: List[str],
                           note: Optional[str] = None) -> FabVersion: ...

    @abc.abstractmethod
    def list_fab_versions(self, collection_id: str) -> List[FabVersion]: ...

    def get_fab_context(self, collection_id: str, fab_version_id: str) -> Optional[FabContext]:
        """Product grounding for a job, or None when either record is missing."""
        collection = self.get_collection(collection_id)
        fab = next((f for f in self.list_fab_versions(collection_id) if f.id == fab_version_id), None)
        if collection is None or fab is None:
            return None
        return FabContext(
            product_name=collection.product_name,
            summary=fab.summary,
            features=fab.features,
            advantages=fab.advantages,
            benefits=fab.benefits,
            note=fab.note,
        )


class InMemoryJobRepository(JobRepository):

    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._collections: Dict[str, Collection] = {}
        self._fab_versions: List[FabVersion] = []

    # --- Jobs ---

    def create_job(self, collection_id, fab_version_id, source_a, source_b) -> Job:
        job = Job(
            id=_new_id("job"),
            collection_id=collection_id,
            fab_version_id=fab_version_id,
            source_a=source_a,
            source_b=source_b,
        )
        with self._lock:
            self._jobs[job.id] = job
        logging.info(f"📝 Job {job.id} created")
        return job

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise PipelineError(ErrorCode.NOT_FOUND, f"Job {job_id} not found.")
        return job

    def _replace(self, job: Job, status: Optional[str] = None, **changes) -> Job:
        if status is not None and status != job.status:
            if status not in ALLOWED_TRANSITIONS[job.status]:
                raise PipelineError(
                    ErrorCode.UNKNOWN,
                    f"Illegal transition {job.status} -> {status} for job {job.id}",
                    status_code=409,
                )
            changes["status"] = status
        updated = job.model_copy(update=changes)
        self._jobs[job.id] = updated
        return updated

    def start_processing(self, job_id: str, model: str) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            if job.status != "queued":
                raise PipelineError(ErrorCode.ALREADY_RUNNING, f"Job {job_id} is {job.status}.")
            return self._replace(
                job,
                status="processing",
                model=model,
                stage="preparing",
                metrics=JobMetrics(started_at=utcnow()),
            )

    def set_stage(self, job_id: str, stage: str) -> Job:
        with self._lock:
            return self._replace(self.get_job(job_id), stage=stage)

    def complete_job(self, job_id: str, result: ComparisonResult) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            completed_at = utcnow()
            metrics = JobMetrics(
                started_at=job.metrics.started_at,
                completed_at=completed_at,
                duration_ms=_duration_ms(job.metrics, completed_at),
            )
            return self._replace(
                job, status="done", result=result, stage="done",
                completed_at=completed_at, metrics=metrics,
            )

    def fail_job(self, job_id: str, error_code: str, stage: Optional[str] = None) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            completed_at = utcnow()
            metrics = JobMetrics(
                started_at=job.metrics.started_at,
                completed_at=completed_at,
                duration_ms=_duration_ms(job.metrics, completed_at),
            )
            return self._replace(
                job, status="error", error_code=error_code,
                stage=stage or f"error_{error_code.lower()}",
                completed_at=completed_at, metrics=metrics,
            )

    def reset_for_retry(self, job_id: str) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            if job.status == "processing":
                raise PipelineError(ErrorCode.ALREADY_RUNNING, f"Job {job_id} is already running.")
            if job.status == "queued":
                return job
            return self._replace(
                job, status="queued", error_code=None, result=None,
                completed_at=None, stage=None, metrics=JobMetrics(),
            )

    # --- FAB registry ---

    def create_collection(self, product_name, description=None, image_ref=None) -> Collection:
        collection = Collection(
            id=_new_id("col"), product_name=product_name,
            description=description, image_ref=image_ref,
        )
        with self._lock:
            self._collections[collection.id] = collection
        return collection

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        with self._lock:
            return self._collections.get(collection_id)

    def create_fab_version(self, collection_id, summary, features, advantages, benefits, note=None) -> FabVersion:
        with self._lock:
            latest = max((f.version for f in self._fab_versions if f.collection_id == collection_id), default=0)
            fab = FabVersion(
                id=_new_id("fab"),
                collection_id=collection_id,
                version=latest + 1,
                summary=summary,
                features=features,
                advantages=advantages,
                benefits=benefits,
                note=note,
            )
            self._fab_versions.append(fab)
        logging.info(f"📝 FAB v{fab.version} saved for collection {collection_id}")
        return fab

    def list_fab_versions(self, collection_id: str) -> List[FabVersion]:
        with self._lock:
            return sorted(
                (f for f in self._fab_versions if f.collection_id == collection_id),
                key=lambda f: f.version,
                reverse=True,
            )
