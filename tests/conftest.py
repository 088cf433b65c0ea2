"""Global pytest fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import THING, FakeRebooter, FakeTransport  # noqa: E402


@pytest.fixture
def thing_name():
    return THING


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def echo_transport():
    """Transport that echoes every status update like the jobs service."""
    return FakeTransport(auto_echo=True)


@pytest.fixture
def fake_rebooter():
    return FakeRebooter()


@pytest.fixture
def execution():
    """Execution section of a fresh install job notification."""
    return {
        "jobId": "j1",
        "status": "QUEUED",
        "statusDetails": {},
        "jobDocument": {"operation": "mender_install", "url": "https://x/fw.pkg"},
        "versionNumber": 1,
        "executionNumber": 1,
        "queuedAt": 1573560519,
        "lastUpdatedAt": 1573560519,
    }
