"""
Router for synchronous comparisons and the model diagnostic.
"""

import logging
import time
from typing import Dict

from fastapi import APIRouter, Depends

from compare_backend.config import PROMPT_VERSION
from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.retry import with_timeout
from compare_backend.schemas import CompareRequest, CompareResponse
from compare_backend.tasks import ComparePipeline, classify_error, get_pipeline


router = APIRouter(tags=["compare"])


async def _compare_now(pipeline: ComparePipeline, request: CompareRequest, mode: str, timeout: float) -> CompareResponse:
    start = time.monotonic()
    metrics: Dict[str, int] = {}
    try:
        result = await with_timeout(
            pipeline.compare(request.A, request.B, request.fab, metrics=metrics, mode=mode),
            timeout,
            f"{mode} compare",
        )
    except PipelineError:
        raise
    except Exception as e:
        code = classify_error(e)
        logging.error(f"❌ {mode} compare failed with {code}. Error: {e}")
        raise PipelineError(code, str(e)) from e

    transcripts = pipeline.transcripts_for(request.A, request.B)
    if transcripts is not None:
        result = result.model_copy(update={"transcripts": transcripts})
    duration_ms = int((time.monotonic() - start) * 1000)
    logging.info(f"✅ {mode} compare finished in {duration_ms}ms")
    return CompareResponse(
        model=pipeline.settings.model_id,
        prompt_version=PROMPT_VERSION,
        duration_ms=duration_ms,
        result=result,
        metrics=metrics,
    )


@router.post("/compare2", response_model=CompareResponse)
async def compare_direct(request: CompareRequest, pipeline: ComparePipeline = Depends(get_pipeline)):
    """Compares two videos with one direct model call and waits for the result."""
    logging.info(f"📝 Direct compare: {request.A.type} vs {request.B.type}")
    return await _compare_now(pipeline, request, "direct", pipeline.settings.compare_request_timeout)


@router.post("/api/videos/compare", response_model=CompareResponse)
async def compare_via_analyzer(request: CompareRequest, pipeline: ComparePipeline = Depends(get_pipeline)):
    """Compares two videos by fusing two single-video analyses."""
    logging.info(f"📝 Analyzer compare: {request.A.type} vs {request.B.type}")
    return await _compare_now(pipeline, request, "single_analyzer", pipeline.settings.compare_request_timeout)


@router.get("/api/diag/model")
async def diag_model(pipeline: ComparePipeline = Depends(get_pipeline)):
    """Round-trips a tiny prompt to the model and reports latency."""
    try:
        data = await pipeline.inference.ping()
    except Exception as e:
        logging.error(f"❌ Model diagnostic failed: {e}")
        raise PipelineError(ErrorCode.UNKNOWN, f"Model diagnostic failed: {e}") from e
    return {"ok": True, "model": data["model"], "latencyMs": data["latencyMs"], "data": data}
