"""
Router for video uploads. Stored files are referenced by their file key in
``upload`` sources.
"""

import logging
import os
import re
import shutil
import time
import uuid

from fastapi import APIRouter, Depends, File, UploadFile

from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.schemas import UploadResponse, UploadResult
from compare_backend.tasks import ComparePipeline, get_pipeline


router = APIRouter(prefix="/api", tags=["upload"])

UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
DOT_RUNS = re.compile(r"\.{2,}")


def make_file_key(filename: str) -> str:
    name = DOT_RUNS.sub(".", UNSAFE_CHARS.sub("_", os.path.basename(filename or ""))) or "video.mp4"
    return f"up_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}_{name}"


@router.post("/upload", response_model=UploadResponse)
async def upload_video(file: UploadFile = File(...), pipeline: ComparePipeline = Depends(get_pipeline)):
    """Receives a video from the frontend and saves it in the upload directory."""
    upload_dir = pipeline.settings.upload_dir
    os.makedirs(upload_dir, exist_ok=True)
    file_key = make_file_key(file.filename)
    file_path = os.path.join(upload_dir, file_key)
    try:
        with open(file_path, "wb") as buffer:
            shutil.copyfileobj(file.file, buffer)
    except OSError as e:
        logging.error(f"❌ Failed to save upload {file_key}: {e}")
        raise PipelineError(ErrorCode.UNKNOWN, "Failed to save uploaded video.") from e

    size = os.path.getsize(file_path)
    if size > pipeline.settings.max_upload_bytes:
        os.remove(file_path)
        raise PipelineError(
            ErrorCode.TOO_LARGE,
            f"Upload is {size / 1024 / 1024:.1f}MB; the limit is {pipeline.settings.max_upload_bytes / 1024 / 1024:.0f}MB.",
        )

    logging.info(f"✅ Upload saved: {file_key} ({size} bytes)")
    return UploadResponse(
        data=UploadResult(file_key=file_key, size_mb=round(size / 1024 / 1024, 2), mime=file.content_type)
    )
