"""Shared pytest configuration and fixtures for the payload controller tests."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from arowss.pipeline_spec import PipelineSpec  # noqa: E402


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def base_spec() -> PipelineSpec:
    """The default downlink preset: 720p30 at 1.5 Mbit/s to the ground station."""
    return PipelineSpec(
        width=1280,
        height=720,
        framerate=30,
        bitrate=1_500_000,
        codec="h264",
        target_address="192.168.199.1:3900",
        ttl=1,
    )


@pytest.fixture
def pid_file(tmp_path: Path) -> Path:
    """File the stand-in tools append their pids to."""
    return tmp_path / "pids.txt"
