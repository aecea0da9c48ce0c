"""
Adapter over the yt-dlp and ffmpeg binaries.

Exposes probe / download / sanitize / extract-audio as separate async
operations with uniform error codes. Every operation writes to a temp file
in the destination directory and renames it into place, and is skipped when
the destination already exists, so two jobs racing on the same cache token
never see a half-written artifact.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence
from urllib.parse import urlparse

import ffmpeg

from compare_backend.config import (
    ASR_TIMEOUT, FFMPEG_PATH, MAX_VIDEO_BYTES, SANITIZE_TIMEOUT, YT_DLP_DOWNLOAD_TIMEOUT,
    YT_DLP_PATH, YT_DLP_TIMEOUT, YT_DLP_USER_AGENT,
)
from compare_backend.errors import ErrorCode, PipelineError, ProcessFailed, ProcessTimeout
from compare_backend.models import Source, UploadSource


BLOCKED_PATTERN = re.compile(
    r"HTTP Error 403|HTTP Error 429|\b403\b|\b429\b|forbidden|blocked|rate.?limit|captcha",
    re.IGNORECASE,
)

ProcessRunner = Callable[[Sequence[str], float, str], Awaitable[str]]


async def run_process(argv: Sequence[str], timeout: float, label: str) -> str:
    """
    Run an external binary and return its stdout.

    The process is killed if the deadline passes or the awaiting task is
    cancelled. Raises ProcessTimeout or ProcessFailed.
    """
    logging.info(f"🎬 Running {label}: {' '.join(argv)}")
    proc = await asyncio.create_subprocess_exec(
        *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        logging.error(f"❌ {label} timed out after {timeout:.0f}s")
        raise ProcessTimeout(label, timeout) from None
    except asyncio.CancelledError:
        _kill(proc)
        raise

    if proc.returncode != 0:
        err = stderr.decode("utf-8", errors="replace")[-4000:]
        logging.error(f"❌ {label} failed with exit code {proc.returncode}")
        raise ProcessFailed(label, proc.returncode, err)
    return stdout.decode("utf-8", errors="replace")


def _kill(proc) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def token_for(source: Source) -> str:
    """Cache key for a source: the upload key, or the sha1 of the URL."""
    if isinstance(source, UploadSource):
        return source.file_key
    return hashlib.sha1(source.url.encode("utf-8")).hexdigest()


def is_allowed_host(url: str, allowed_hosts: Sequence[str]) -> bool:
    """True when the URL is http(s) and its host is allowed or a subdomain of one."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    return any(host == h or host.endswith(f".{h}") for h in allowed_hosts)


@dataclass(frozen=True)
class CachePaths:
    token: str
    meta: str
    raw: str
    sanitized: str
    wav: str
    transcript: str

    @classmethod
    def for_token(cls, cache_dir: str, token: str) -> "CachePaths":
        base = os.path.join(cache_dir, token)
        return cls(
            token=token,
            meta=f"{base}.meta.json",
            raw=f"{base}.raw.mp4",
            sanitized=f"{base}.san.mp4",
            wav=f"{base}.wav",
            transcript=f"{base}.transcript.txt",
        )


@dataclass(frozen=True)
class ProbeResult:
    estimated_size_bytes: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None


def temp_path_for(dest: str) -> str:
    """A unique sibling path of ``dest`` to write into before renaming."""
    directory, name = os.path.split(dest)
    return os.path.join(directory, f".{name}.{uuid.uuid4().hex[:8]}.tmp")


def _discard(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


def estimated_size_of(meta: dict) -> Optional[int]:
    size = meta.get("filesize")
    if size is None:
        size = meta.get("filesize_approx")
    try:
        return int(size) if size is not None else None
    except (TypeError, ValueError):
        return None


class MediaToolchain:
    """Probe, download, sanitize and audio extraction for one cache directory."""

    def __init__(
        self,
        cache_dir: str,
        upload_dir: str,
        runner: ProcessRunner = run_process,
        yt_dlp: str = YT_DLP_PATH,
        ffmpeg_bin: str = FFMPEG_PATH,
        max_bytes: int = MAX_VIDEO_BYTES,
    ):
        self.cache_dir = cache_dir
        self.upload_dir = upload_dir
        self.runner = runner
        self.yt_dlp = yt_dlp
        self.ffmpeg_bin = ffmpeg_bin
        self.max_bytes = max_bytes

    def paths_for(self, source: Source) -> CachePaths:
        return CachePaths.for_token(self.cache_dir, token_for(source))

    def upload_path(self, source: UploadSource) -> str:
        return os.path.join(self.upload_dir, source.file_key)

    def _yt_dlp_args(self, url: str, endpoint: Optional[str]) -> List[str]:
        args = [
            self.yt_dlp, "--no-warnings",
            "--referer", "https://www.tiktok.com/",
            "--user-agent", YT_DLP_USER_AGENT,
            "--socket-timeout", "30",
            "--retries", "3",
            "--retry-sleep", "2",
            "--no-check-certificate",
        ]
        if endpoint:
            args += ["--extractor-args", f"tiktok:api_hostname={endpoint}"]
        args.append(url)
        return args

    async def _run(self, argv: Sequence[str], timeout: float, label: str, failed_code: str) -> str:
        try:
            return await self.runner(argv, timeout, label)
        except ProcessTimeout as e:
            raise PipelineError(ErrorCode.UPSTREAM_TIMEOUT, str(e)) from e
        except ProcessFailed as e:
            if BLOCKED_PATTERN.search(e.stderr or ""):
                raise PipelineError(ErrorCode.UPSTREAM_BLOCKED, str(e)) from e
            raise PipelineError(failed_code, str(e)) from e
        except OSError as e:
            raise PipelineError(failed_code, f"{label} could not start: {e}") from e

    # --- Probe ---

    async def probe_metadata(self, source: Source, dest_json: str, endpoint: Optional[str] = None) -> ProbeResult:
        if isinstance(source, UploadSource):
            path = self.upload_path(source)
            if not os.path.exists(path):
                raise PipelineError(ErrorCode.INVALID_REQUEST, f"Uploaded file {source.file_key} not found.")
            return ProbeResult(estimated_size_bytes=os.path.getsize(path))

        if os.path.exists(dest_json):
            logging.info(f"✅ Metadata cache hit: {dest_json}")
            with open(dest_json, "r", encoding="utf-8") as f:
                meta = json.load(f)
        else:
            start = time.monotonic()
            argv = self._yt_dlp_args(source.url, endpoint)
            argv.insert(1, "--dump-single-json")
            stdout = await self._run(argv, YT_DLP_TIMEOUT, "yt-dlp probe", ErrorCode.DOWNLOAD_FAILED)
            try:
                meta = json.loads(stdout)
            except json.JSONDecodeError as e:
                raise PipelineError(ErrorCode.DOWNLOAD_FAILED, f"yt-dlp returned unreadable metadata: {e}") from e
            os.makedirs(os.path.dirname(dest_json), exist_ok=True)
            tmp = temp_path_for(dest_json)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(meta, f)
            os.replace(tmp, dest_json)
            logging.info(f"✅ Metadata fetched in {(time.monotonic() - start) * 1000:.0f}ms")

        return ProbeResult(
            estimated_size_bytes=estimated_size_of(meta),
            title=meta.get("title"),
            description=meta.get("description"),
        )

    # --- Download ---

    async def download(self, source: Source, dest: str, endpoint: Optional[str] = None) -> str:
        """Fetch the media to ``dest`` and return the path to use. Uploads are already local."""
        if isinstance(source, UploadSource):
            path = self.upload_path(source)
            if not os.path.exists(path):
                raise PipelineError(ErrorCode.INVALID_REQUEST, f"Uploaded file {source.file_key} not found.")
            return path

        if os.path.exists(dest):
            logging.info(f"✅ Download cache hit: {dest}")
            return dest

        start = time.monotonic()
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        tmp = temp_path_for(dest)
        argv = self._yt_dlp_args(source.url, endpoint)
        argv[1:1] = ["-f", "mp4/best[ext=mp4]/best", "-o", tmp]
        try:
            await self._run(argv, YT_DLP_DOWNLOAD_TIMEOUT, "yt-dlp download", ErrorCode.DOWNLOAD_FAILED)
            if not os.path.exists(tmp):
                raise PipelineError(ErrorCode.DOWNLOAD_FAILED, "yt-dlp finished without writing a file")
            os.replace(tmp, dest)
        finally:
            _discard(tmp)
        logging.info(f"✅ Downloaded {dest} in {(time.monotonic() - start) * 1000:.0f}ms")
        return dest

    # --- ffmpeg ---

    def sanitize_command(self, src: str, dst: str) -> List[str]:
        stream = ffmpeg.input(src)
        out = ffmpeg.output(
            stream["v:0"], stream["a:0?"], dst,
            c="copy", dn=None, sn=None,
            map_chapters=-1, map_metadata=-1,
            movflags="+faststart", f="mp4",
        )
        return out.overwrite_output().compile(cmd=self.ffmpeg_bin)

    def extract_audio_command(self, video: str, wav: str) -> List[str]:
        out = ffmpeg.input(video).output(
            wav, ac=1, ar=16000, vn=None, acodec="pcm_s16le", f="wav",
        )
        return out.overwrite_output().compile(cmd=self.ffmpeg_bin)

    async def sanitize(self, src: str, dst: str) -> str:
        """Stream-copy remux: strips metadata and moves the index to the front."""
        if os.path.exists(dst):
            logging.info(f"✅ Sanitize cache hit: {dst}")
            return dst
        start = time.monotonic()
        tmp = temp_path_for(dst)
        try:
            try:
                await self.runner(self.sanitize_command(src, tmp), SANITIZE_TIMEOUT, "ffmpeg sanitize")
            except ProcessTimeout as e:
                raise PipelineError(ErrorCode.TIMEOUT, str(e)) from e
            except (ProcessFailed, OSError) as e:
                raise PipelineError(ErrorCode.UNKNOWN, f"sanitize failed: {e}") from e
            os.replace(tmp, dst)
        finally:
            _discard(tmp)
        logging.info(f"✅ Sanitized {dst} in {(time.monotonic() - start) * 1000:.0f}ms")
        return dst

    async def extract_audio(self, video: str, wav: str, timeout: float = ASR_TIMEOUT) -> str:
        """Mono 16 kHz PCM for speech recognition."""
        if os.path.exists(wav):
            return wav
        tmp = temp_path_for(wav)
        try:
            await self.runner(self.extract_audio_command(video, tmp), timeout, "ffmpeg extract audio")
            os.replace(tmp, wav)
        finally:
            _discard(tmp)
        return wav

    # --- Size guard ---

    def check_estimated_size(self, probe: ProbeResult, label: str = "?") -> None:
        size = probe.estimated_size_bytes
        if size is not None and size > self.max_bytes:
            raise PipelineError(
                ErrorCode.TOO_LARGE,
                f"Estimated size of video {label} is {size} bytes, over the {self.max_bytes} byte limit.",
            )

    def check_file_size(self, path: str, label: str = "?", discard: bool = True) -> None:
        size = os.path.getsize(path)
        if size > self.max_bytes:
            if discard:
                _discard(path)
            raise PipelineError(
                ErrorCode.TOO_LARGE,
                f"Downloaded video {label} is {size} bytes, over the {self.max_bytes} byte limit.",
            )
