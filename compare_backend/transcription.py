"""
Best-effort background transcription.

A fixed number of worker tasks drain a FIFO queue of
``(video, wav, transcript)`` jobs: extract mono 16 kHz audio, run the ASR
CLI, reformat its segments as ``[mm:ss–mm:ss] text`` lines and write the
transcript file. Callers never await the result; the pipeline only checks
later whether a transcript file exists for a cache token.
"""

import asyncio
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from typing import Any, List, Optional

from compare_backend.config import ASR_CLI, ASR_CONCURRENCY, ASR_ENABLED, ASR_MODEL, ASR_TIMEOUT
from compare_backend.toolchain import MediaToolchain, temp_path_for


class TranscriptionDisabled(RuntimeError):
    """Raised by ``schedule`` when transcription is switched off."""


@dataclass
class _TranscriptionJob:
    video: str
    wav: str
    transcript: str
    future: asyncio.Future


def _mmss(seconds: float) -> str:
    whole = int(seconds)
    return f"{whole // 60:02d}:{whole % 60:02d}"


def format_transcript(data: Any) -> str:
    """Turn ASR JSON (``{"segments": [...]}`` or a bare list) into timestamped lines."""
    segments = data.get("segments", []) if isinstance(data, dict) else data
    lines = []
    for seg in segments or []:
        start = seg.get("start", seg.get("start_time", 0))
        if not isinstance(start, (int, float)):
            start = 0
        end = seg.get("end", seg.get("end_time"))
        if not isinstance(end, (int, float)):
            end = start + 2
        text = str(seg.get("text") or seg.get("transcript") or "").strip()
        if not text:
            continue
        lines.append(f"[{_mmss(start)}–{_mmss(end)}] {text}")
    return "\n".join(lines)


def read_transcript_if_exists(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError:
        return None


def _swallow(future: asyncio.Future) -> None:
    # Marks the exception as retrieved; nobody is required to await a transcript.
    if not future.cancelled():
        future.exception()


class TranscriptionPool:
    """Bounded-concurrency transcription queue."""

    def __init__(
        self,
        toolchain: MediaToolchain,
        concurrency: int = ASR_CONCURRENCY,
        enabled: bool = ASR_ENABLED,
        asr_cli: str = ASR_CLI,
        asr_model: str = ASR_MODEL,
        timeout: float = ASR_TIMEOUT,
    ):
        self.toolchain = toolchain
        self.concurrency = max(1, concurrency)
        self.enabled = enabled
        self.asr_cli = asr_cli
        self.asr_model = asr_model
        self.timeout = timeout
        self.active = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    def _ensure_workers(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop:
            return
        # Workers are bound to the loop that first schedules work.
        self._loop = loop
        self._queue = asyncio.Queue()
        self.active = 0
        self._workers = [loop.create_task(self._worker(i)) for i in range(self.concurrency)]

    def schedule(self, video: str, wav: str, transcript: str) -> asyncio.Future:
        if not self.enabled:
            raise TranscriptionDisabled("transcription is disabled")
        self._ensure_workers()
        future = self._loop.create_future()
        future.add_done_callback(_swallow)
        self._queue.put_nowait(_TranscriptionJob(video, wav, transcript, future))
        logging.info(f"📝 Transcription scheduled for {video} ({self._queue.qsize()} queued)")
        return future

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self.active += 1
            try:
                text = await self._transcribe(job)
                if not job.future.done():
                    job.future.set_result(text)
            except asyncio.CancelledError:
                job.future.cancel()
                raise
            except Exception as e:
                logging.warning(f"⚠️ Transcription failed for {job.video}: {e}")
                if not job.future.done():
                    job.future.set_exception(e)
            finally:
                self.active -= 1
                self._queue.task_done()

    async def _transcribe(self, job: _TranscriptionJob) -> str:
        start = time.monotonic()
        await self.toolchain.extract_audio(job.video, job.wav, timeout=self.timeout)
        out_dir = os.path.join(os.path.dirname(job.wav), f".asr-{os.path.basename(job.wav)}.d")
        try:
            json_path = await self.transcribe_wav(job.wav, out_dir)
            with open(json_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        finally:
            shutil.rmtree(out_dir, ignore_errors=True)

        text = format_transcript(data)
        tmp = temp_path_for(job.transcript)
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, job.transcript)
        elapsed_ms = (time.monotonic() - start) * 1000
        logging.info(f"✅ Transcript written to {job.transcript} ({len(text.splitlines())} lines, {elapsed_ms:.0f}ms)")
        return text

    async def transcribe_wav(self, wav: str, out_dir: str) -> str:
        """Run the ASR CLI and return the path of the JSON file it wrote."""
        os.makedirs(out_dir, exist_ok=True)
        argv = [
            self.asr_cli, wav,
            "--model", self.asr_model,
            "--output_format", "json",
            "--output_dir", out_dir,
        ]
        await self.toolchain.runner(argv, self.timeout, "asr")
        for name in sorted(os.listdir(out_dir)):
            if name.endswith(".json"):
                return os.path.join(out_dir, name)
        raise RuntimeError(f"ASR wrote no JSON output into {out_dir}")

    async def join(self) -> None:
        """Wait until every scheduled job has finished or failed."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._loop = None
        self._queue = None
