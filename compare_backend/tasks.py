# tasks.py

"""
Background compare pipeline.

probe -> size guard -> download -> size guard -> sanitize -> (transcription,
not awaited) -> upload -> infer -> normalize, with the A and B sides run in
parallel at every stage. ``run_job`` drives one stored job through it and
records the outcome; ``compare`` is shared with the synchronous endpoints.
"""

import asyncio
import contextlib
import logging
import os
import re
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from compare_backend.analyzer import SingleAnalyzerClient
from compare_backend.config import PROMPT_VARIANTS, PromptVariant, Settings
from compare_backend.errors import ErrorCode, PipelineError, SchemaError
from compare_backend.inference import InferenceClient, MediaHandle, compose_prompt, video_meta
from compare_backend.models import (
    ComparisonResult, Source, Transcripts, UploadSource, UrlSource, is_safe_file_key,
)
from compare_backend.normalizer import normalize
from compare_backend.retry import EndpointRotator, with_retry, with_timeout
from compare_backend.schemas import FabContext
from compare_backend.store import InMemoryJobRepository, JobRepository
from compare_backend.toolchain import CachePaths, MediaToolchain, ProbeResult, is_allowed_host
from compare_backend.transcription import TranscriptionDisabled, TranscriptionPool, read_transcript_if_exists


StageCallback = Callable[[str], None]
T = TypeVar("T")

TIMEOUT_PATTERN = re.compile(r"timeout|timed out|abort", re.IGNORECASE)
SCHEMA_PATTERN = re.compile(r"schema|validation|parse", re.IGNORECASE)


def classify_error(exc: BaseException) -> str:
    """Map any failure to a job error code."""
    if isinstance(exc, PipelineError):
        return exc.code
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT
    message = str(exc)
    if TIMEOUT_PATTERN.search(message):
        return ErrorCode.TIMEOUT
    if SCHEMA_PATTERN.search(message):
        return ErrorCode.SCHEMA
    return ErrorCode.UNKNOWN


async def run_pair(first: Awaitable[T], second: Awaitable[T]) -> Tuple[T, T]:
    """
    Await the A and B sides together. The first failure cancels the other
    side, which kills any process it owns, and is re-raised unwrapped.
    """
    try:
        async with asyncio.TaskGroup() as group:
            task_a = group.create_task(first)
            task_b = group.create_task(second)
    except BaseExceptionGroup as failed:
        raise failed.exceptions[0]
    return task_a.result(), task_b.result()


@contextlib.contextmanager
def timed(metrics: Dict[str, int], key: str):
    start = time.monotonic()
    try:
        yield
    finally:
        metrics[key] = int((time.monotonic() - start) * 1000)
        logging.info(f"⏱️ {key}: {metrics[key]}ms")


class ComparePipeline:
    """Runs two-video comparisons and records job outcomes in the store."""

    def __init__(
        self,
        store: JobRepository,
        toolchain: MediaToolchain,
        inference: InferenceClient,
        transcriber: Optional[TranscriptionPool] = None,
        analyzer: Optional[SingleAnalyzerClient] = None,
        settings: Settings = Settings(),
    ):
        self.store = store
        self.toolchain = toolchain
        self.inference = inference
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.settings = settings
        self.rotator = EndpointRotator(settings.api_endpoints)

    # --- Jobs ---

    async def run_job(self, job_id: str) -> None:
        """Drive a queued job to done or error. Never raises."""
        try:
            job = self.store.start_processing(job_id, self.settings.model_id)
        except PipelineError as e:
            logging.warning(f"⚠️ Job {job_id} not started: {e}")
            return

        logging.info(f"📝 Worker received job {job_id}")
        try:
            fab = self.store.get_fab_context(job.collection_id, job.fab_version_id)
            if fab is None:
                raise PipelineError(ErrorCode.UNKNOWN, "Collection or FAB version not found.")
            result = await self.compare(
                job.source_a, job.source_b, fab,
                on_stage=lambda stage: self.store.set_stage(job_id, stage),
            )
            transcripts = self.transcripts_for(job.source_a, job.source_b)
            if transcripts is not None:
                result = result.model_copy(update={"transcripts": transcripts})
            self.store.complete_job(job_id, result)
            logging.info(f"✅ Worker finished job {job_id}")
        except Exception as e:
            code = classify_error(e)
            logging.error(f"❌ Worker failed job {job_id} with {code}. Error: {e}")
            try:
                self.store.fail_job(job_id, code)
            except Exception as store_error:
                logging.error(f"❌ Could not record failure of job {job_id}: {store_error}")

    def transcripts_for(self, source_a: Source, source_b: Source) -> Optional[Transcripts]:
        """Transcripts already on disk for the two sources, or None if neither exists."""
        text_a = read_transcript_if_exists(self.toolchain.paths_for(source_a).transcript)
        text_b = read_transcript_if_exists(self.toolchain.paths_for(source_b).transcript)
        if not text_a and not text_b:
            return None
        return Transcripts(A=text_a or "", B=text_b or "")

    # --- Comparison ---

    def validate_sources(self, *sources: Source) -> None:
        for source in sources:
            if isinstance(source, UrlSource) and not is_allowed_host(source.url, self.settings.allowed_hosts):
                raise PipelineError(ErrorCode.INVALID_URL, f"Host of {source.url} is not in the allow-list.")
            if isinstance(source, UploadSource) and not is_safe_file_key(source.file_key):
                raise PipelineError(ErrorCode.INVALID_REQUEST, f"{source.file_key!r} is not an upload key.")

    async def compare(
        self,
        source_a: Source,
        source_b: Source,
        fab: Optional[FabContext] = None,
        on_stage: Optional[StageCallback] = None,
        metrics: Optional[Dict[str, int]] = None,
        mode: Optional[str] = None,
    ) -> ComparisonResult:
        stage = on_stage or (lambda _: None)
        metrics = metrics if metrics is not None else {}
        stage("preparing")
        self.validate_sources(source_a, source_b)

        if (mode or self.settings.compare_mode) == "single_analyzer":
            return await self._compare_via_analyzer(source_a, source_b, fab, stage, metrics)

        os.makedirs(self.settings.cache_dir, exist_ok=True)
        paths_a = self.toolchain.paths_for(source_a)
        paths_b = self.toolchain.paths_for(source_b)

        with timed(metrics, "metadataMs"):
            probe_a, probe_b = await run_pair(
                self._probe(source_a, paths_a, "A"),
                self._probe(source_b, paths_b, "B"),
            )
        self.toolchain.check_estimated_size(probe_a, "A")
        self.toolchain.check_estimated_size(probe_b, "B")

        with timed(metrics, "downloadMs"):
            raw_a, raw_b = await run_pair(
                self._download(source_a, paths_a, "A"),
                self._download(source_b, paths_b, "B"),
            )
        self.toolchain.check_file_size(raw_a, "A", discard=not isinstance(source_a, UploadSource))
        self.toolchain.check_file_size(raw_b, "B", discard=not isinstance(source_b, UploadSource))

        with timed(metrics, "sanitizeMs"):
            san_a, san_b = await run_pair(
                self.toolchain.sanitize(raw_a, paths_a.sanitized),
                self.toolchain.sanitize(raw_b, paths_b.sanitized),
            )

        self._schedule_transcription(san_a, paths_a)
        self._schedule_transcription(san_b, paths_b)

        stage("calling_model")
        return await with_timeout(
            self._infer_and_normalize(
                (san_a, san_b),
                video_meta(source_a, probe_a),
                video_meta(source_b, probe_b),
                fab, stage, metrics,
            ),
            self.settings.request_timeout,
            "model analysis",
        )

    async def _compare_via_analyzer(self, source_a, source_b, fab, stage, metrics) -> ComparisonResult:
        if self.analyzer is None:
            raise PipelineError(ErrorCode.UNKNOWN, "Single analyzer is not configured.")
        for source in (source_a, source_b):
            paths = self.toolchain.paths_for(source)
            if isinstance(source, UploadSource):
                self._schedule_transcription(self.toolchain.upload_path(source), paths)
            elif os.path.exists(paths.sanitized):
                self._schedule_transcription(paths.sanitized, paths)

        stage("calling_model")
        with timed(metrics, "modelMs"):
            result = await with_timeout(
                self.analyzer.compare_via_single_analyzer(source_a, source_b, fab),
                self.settings.request_timeout,
                "single analyzer",
            )
        stage("parsing")
        return result

    async def _probe(self, source: Source, paths: CachePaths, label: str) -> ProbeResult:
        return await with_retry(
            lambda endpoint=None: self.toolchain.probe_metadata(source, paths.meta, endpoint),
            self.settings.probe_retry,
            f"metadata {label}",
            rotator=self.rotator if isinstance(source, UrlSource) else None,
        )

    async def _download(self, source: Source, paths: CachePaths, label: str) -> str:
        return await with_retry(
            lambda endpoint=None: self.toolchain.download(source, paths.raw, endpoint),
            self.settings.download_retry,
            f"download {label}",
            rotator=self.rotator if isinstance(source, UrlSource) else None,
        )

    def _schedule_transcription(self, video: str, paths: CachePaths) -> None:
        if self.transcriber is None or os.path.exists(paths.transcript):
            return
        try:
            self.transcriber.schedule(video, paths.wav, paths.transcript)
        except TranscriptionDisabled:
            return
        except Exception as e:
            logging.warning(f"⚠️ Could not schedule transcription for {video}: {e}")

    async def _upload(self, path: str, label: str) -> MediaHandle:
        return await with_retry(
            lambda: with_timeout(self.inference.upload_media(path), self.settings.upload_timeout, f"upload {label}"),
            self.settings.upload_retry,
            f"upload {label}",
        )

    async def _infer(self, variant: PromptVariant, handles, meta_a, meta_b, fab) -> str:
        prompt = compose_prompt(variant.text, fab, meta_a, meta_b)
        return await with_retry(
            lambda: self.inference.infer(prompt, handles),
            self.settings.model_retry,
            f"model call ({variant.name} prompt)",
        )

    async def _infer_and_normalize(
        self,
        videos: Tuple[str, str],
        meta_a: dict,
        meta_b: dict,
        fab: Optional[FabContext],
        stage: StageCallback,
        metrics: Dict[str, int],
    ) -> ComparisonResult:
        with timed(metrics, "uploadMs"):
            handles = await run_pair(self._upload(videos[0], "A"), self._upload(videos[1], "B"))

        variant = PROMPT_VARIANTS[self.settings.prompt_variant]
        with timed(metrics, "modelMs"):
            text = await self._infer(variant, handles, meta_a, meta_b, fab)
        stage("parsing")
        with timed(metrics, "parseMs"):
            outcome = normalize(text, variant, self.settings.embed_aspect_tags)
        if outcome.ok:
            return outcome.result

        # One retry with the abbreviated prompt, never more.
        fallback = PROMPT_VARIANTS[self.settings.fallback_variant]
        logging.warning(f"🔁 Output rejected ({outcome.error_code}); retrying once with the {fallback.name} prompt")
        stage("calling_model")
        with timed(metrics, "fallbackModelMs"):
            text = await self._infer(fallback, handles, meta_a, meta_b, fab)
        stage("parsing")
        outcome = normalize(text, fallback, self.settings.embed_aspect_tags)
        if outcome.ok:
            return outcome.result
        raise SchemaError(outcome.violations, outcome.fallback)


_pipeline: Optional[ComparePipeline] = None


def get_pipeline() -> ComparePipeline:
    """Process-wide pipeline used by the routers."""
    global _pipeline
    if _pipeline is None:
        settings = Settings()
        toolchain = MediaToolchain(settings.cache_dir, settings.upload_dir, max_bytes=settings.max_video_bytes)
        _pipeline = ComparePipeline(
            store=InMemoryJobRepository(),
            toolchain=toolchain,
            inference=InferenceClient(model_id=settings.model_id),
            transcriber=TranscriptionPool(toolchain),
            analyzer=SingleAnalyzerClient(upload_dir=settings.upload_dir),
            settings=settings,
        )
    return _pipeline
