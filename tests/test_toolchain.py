# tests/test_toolchain.py

import asyncio
import os

import pytest

from compare_backend.errors import ErrorCode, PipelineError, ProcessFailed, ProcessTimeout
from compare_backend.models import UploadSource, UrlSource
from compare_backend.toolchain import MediaToolchain, ProbeResult, is_allowed_host, token_for

from fakes import FakeRunner

URL = "https://www.tiktok.com/@shop/video/7300000000000000001"
LIMIT = 50 * 1024 * 1024


@pytest.fixture
def toolchain(tmp_path):
    def build(runner=None, **kwargs):
        return MediaToolchain(str(tmp_path / "cache"), str(tmp_path / "uploads"), runner=runner or FakeRunner(), **kwargs)

    return build


def test_download_is_idempotent_per_token(toolchain):
    """
    Tests that a second download of the same source reuses the cached file
    without invoking yt-dlp again.
    """
    runner = FakeRunner()
    media = toolchain(runner)
    source = UrlSource(type="tiktok", url=URL)
    dest = media.paths_for(source).raw

    first = asyncio.run(media.download(source, dest))
    second = asyncio.run(media.download(source, dest))

    assert first == second == dest
    assert runner.labels() == ["yt-dlp download"]
    assert os.path.exists(dest)
    # the temp file was renamed into place, nothing left behind
    assert [name for name in os.listdir(os.path.dirname(dest)) if name.endswith(".tmp")] == []


def test_download_passes_endpoint_to_yt_dlp(toolchain):
    runner = FakeRunner()
    media = toolchain(runner)
    source = UrlSource(type="tiktok", url=URL)
    asyncio.run(media.download(source, media.paths_for(source).raw, endpoint="api16.example"))

    argv, _ = runner.calls[0]
    assert "tiktok:api_hostname=api16.example" in argv
    assert argv[-1] == URL


def test_estimated_size_boundary(toolchain):
    media = toolchain(max_bytes=LIMIT)
    media.check_estimated_size(ProbeResult(estimated_size_bytes=52_428_800), "A")
    media.check_estimated_size(ProbeResult(estimated_size_bytes=None), "A")

    with pytest.raises(PipelineError) as excinfo:
        media.check_estimated_size(ProbeResult(estimated_size_bytes=52_428_801), "A")
    assert excinfo.value.code == ErrorCode.TOO_LARGE
    assert excinfo.value.status_code == 413


def test_oversized_download_is_discarded(toolchain, tmp_path):
    media = toolchain(max_bytes=10)
    path = tmp_path / "big.mp4"
    path.write_bytes(b"\x00" * 11)

    with pytest.raises(PipelineError) as excinfo:
        media.check_file_size(str(path), "B")
    assert excinfo.value.code == ErrorCode.TOO_LARGE
    assert not path.exists()


def test_oversized_upload_is_kept(toolchain, tmp_path):
    media = toolchain(max_bytes=10)
    path = tmp_path / "upload.mp4"
    path.write_bytes(b"\x00" * 11)

    with pytest.raises(PipelineError):
        media.check_file_size(str(path), "A", discard=False)
    assert path.exists()


def test_probe_caches_metadata(toolchain):
    runner = FakeRunner(meta={"filesize_approx": 2048, "title": "Mop", "description": "Cleans"})
    media = toolchain(runner)
    source = UrlSource(type="tiktok", url=URL)
    meta_path = media.paths_for(source).meta

    first = asyncio.run(media.probe_metadata(source, meta_path))
    second = asyncio.run(media.probe_metadata(source, meta_path))

    assert first == second == ProbeResult(estimated_size_bytes=2048, title="Mop", description="Cleans")
    assert runner.labels() == ["yt-dlp probe"]


def test_probe_of_upload_reads_file_size(toolchain, tmp_path):
    media = toolchain()
    os.makedirs(media.upload_dir)
    with open(os.path.join(media.upload_dir, "up_1_abc_clip.mp4"), "wb") as f:
        f.write(b"\x00" * 300)
    source = UploadSource(type="upload", file_key="up_1_abc_clip.mp4")

    probe = asyncio.run(media.probe_metadata(source, "unused.json"))
    assert probe.estimated_size_bytes == 300


def test_missing_upload_is_invalid_request(toolchain):
    media = toolchain()
    source = UploadSource(type="upload", file_key="missing.mp4")
    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(media.download(source, "unused.mp4"))
    assert excinfo.value.code == ErrorCode.INVALID_REQUEST


@pytest.mark.parametrize("error, code", [
    (ProcessFailed("yt-dlp download", 1, "ERROR: HTTP Error 403: Forbidden"), ErrorCode.UPSTREAM_BLOCKED),
    (ProcessFailed("yt-dlp download", 1, "ERROR: Unsupported URL"), ErrorCode.DOWNLOAD_FAILED),
    (ProcessTimeout("yt-dlp download", 120), ErrorCode.UPSTREAM_TIMEOUT),
    (FileNotFoundError("yt-dlp"), ErrorCode.DOWNLOAD_FAILED),
])
def test_download_failures_map_to_codes(toolchain, error, code):
    media = toolchain(FakeRunner(errors={"yt-dlp download": error}))
    source = UrlSource(type="tiktok", url=URL)
    dest = media.paths_for(source).raw

    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(media.download(source, dest))
    assert excinfo.value.code == code
    assert not os.path.exists(dest)


def test_sanitize_timeout_is_timeout(toolchain, tmp_path):
    media = toolchain(FakeRunner(errors={"ffmpeg sanitize": ProcessTimeout("ffmpeg sanitize", 60)}))
    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(media.sanitize(str(tmp_path / "in.mp4"), str(tmp_path / "out.mp4")))
    assert excinfo.value.code == ErrorCode.TIMEOUT


def test_sanitize_writes_atomically(toolchain, tmp_path):
    runner = FakeRunner()
    media = toolchain(runner)
    dst = str(tmp_path / "out.san.mp4")

    assert asyncio.run(media.sanitize(str(tmp_path / "in.mp4"), dst)) == dst
    assert asyncio.run(media.sanitize(str(tmp_path / "in.mp4"), dst)) == dst
    assert os.path.exists(dst)
    assert runner.labels() == ["ffmpeg sanitize"]


def test_sanitize_command_is_a_stream_copy(toolchain):
    cmd = toolchain(ffmpeg_bin="/usr/bin/ffmpeg").sanitize_command("in.mp4", "out.mp4")

    assert cmd[0] == "/usr/bin/ffmpeg"
    assert cmd[cmd.index("-c") + 1] == "copy"
    assert cmd[cmd.index("-movflags") + 1] == "+faststart"
    assert cmd[cmd.index("-map_metadata") + 1] == "-1"
    assert "-dn" in cmd and "-sn" in cmd and "-y" in cmd


def test_extract_audio_command_is_mono_16k(toolchain):
    cmd = toolchain().extract_audio_command("in.mp4", "out.wav")
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert cmd[cmd.index("-acodec") + 1] == "pcm_s16le"


def test_token_for_sources():
    assert token_for(UploadSource(type="upload", file_key="up_1")) == "up_1"
    assert token_for(UrlSource(type="url", url=URL)) == token_for(UrlSource(type="tiktok", url=URL))
    assert len(token_for(UrlSource(type="url", url=URL))) == 40


def test_is_allowed_host():
    hosts = ("tiktok.com", "vm.tiktok.com")
    assert is_allowed_host(URL, hosts)
    assert is_allowed_host("https://vt.tiktok.com/ZS123/", hosts)
    assert not is_allowed_host("https://tiktok.com.evil.example/x", hosts)
    assert not is_allowed_host("ftp://tiktok.com/x", hosts)
    assert not is_allowed_host("not a url", hosts)
