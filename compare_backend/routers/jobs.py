"""
Router for compare jobs.
Handles job submission, polling and retry.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from compare_backend.config import MAX_NOTES_CHARS
from compare_backend.models import Source
from compare_backend.schemas import CreateJobRequest, JobCreated, JobCreatedResponse, JobResponse
from compare_backend.tasks import ComparePipeline, get_pipeline


router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _with_shared_notes(source: Source, notes: Optional[str]) -> Source:
    if notes and not source.notes:
        return source.model_copy(update={"notes": notes[:MAX_NOTES_CHARS]})
    return source


@router.post("", response_model=JobCreatedResponse)
async def create_job(
    request: CreateJobRequest,
    background_tasks: BackgroundTasks,
    pipeline: ComparePipeline = Depends(get_pipeline),
):
    """
    Creates a queued job, schedules its run in the background and
    immediately returns the job ID for polling.
    """
    source_a = _with_shared_notes(request.A, request.notes)
    source_b = _with_shared_notes(request.B, request.notes)
    pipeline.validate_sources(source_a, source_b)

    job = pipeline.store.create_job(request.collection_id, request.fab_version_id, source_a, source_b)
    background_tasks.add_task(pipeline.run_job, job.id)
    logging.info(f"✨ Job {job.id} submitted ({source_a.type} vs {source_b.type})")
    return JobCreatedResponse(data=JobCreated(job_id=job.id))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, pipeline: ComparePipeline = Depends(get_pipeline)):
    """
    Returns the current job snapshot. Transcripts that finished after the
    job completed are attached to the response but not stored.
    """
    job = pipeline.store.get_job(job_id)
    if job.result is not None and job.result.transcripts is None:
        transcripts = pipeline.transcripts_for(job.source_a, job.source_b)
        if transcripts is not None:
            job = job.model_copy(update={"result": job.result.model_copy(update={"transcripts": transcripts})})
    return JobResponse(data=job)


@router.post("/{job_id}/retry")
async def retry_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    pipeline: ComparePipeline = Depends(get_pipeline),
):
    """Re-queues a finished or failed job and runs it again."""
    job = pipeline.store.reset_for_retry(job_id)
    background_tasks.add_task(pipeline.run_job, job.id)
    logging.info(f"🔁 Job {job.id} re-queued")
    return {"success": True}
