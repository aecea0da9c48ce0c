import dataclasses
import os

import pytest

from compare_backend.config import Settings
from compare_backend.retry import RetryPolicy
from compare_backend.store import InMemoryJobRepository
from compare_backend.tasks import ComparePipeline
from compare_backend.toolchain import MediaToolchain

from fakes import FakeRunner


NO_WAIT = RetryPolicy(max_retries=1, base_delay_ms=0, jitter_ms=0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        cache_dir=str(tmp_path / "cache"),
        upload_dir=str(tmp_path / "uploads"),
        probe_retry=NO_WAIT,
        download_retry=NO_WAIT,
        upload_retry=NO_WAIT,
        model_retry=RetryPolicy(max_retries=2, base_delay_ms=0, jitter_ms=0),
    )


@pytest.fixture
def make_pipeline(settings):
    """Build a pipeline over fakes; keyword overrides replace Settings fields."""

    def build(inference, runner=None, analyzer=None, transcriber=None, **overrides):
        conf = dataclasses.replace(settings, **overrides)
        toolchain = MediaToolchain(conf.cache_dir, conf.upload_dir, runner=runner or FakeRunner(),
                                   max_bytes=conf.max_video_bytes)
        return ComparePipeline(
            store=InMemoryJobRepository(),
            toolchain=toolchain,
            inference=inference,
            transcriber=transcriber,
            analyzer=analyzer,
            settings=conf,
        )

    return build


@pytest.fixture
def write_upload(settings):
    def write(file_key, size=256):
        os.makedirs(settings.upload_dir, exist_ok=True)
        with open(os.path.join(settings.upload_dir, file_key), "wb") as f:
            f.write(b"\x00" * size)
        return file_key

    return write
