from pathlib import Path

import pytest

from towebp.settings import RunConfiguration

from .helpers import FakeCodec


@pytest.fixture
def fake_codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def config(tmp_path: Path) -> RunConfiguration:
    return RunConfiguration(max_concurrent=2, scratch_directory=tmp_path / "scratch")
