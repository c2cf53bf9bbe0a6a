"""Shared fixtures for featureflow tests."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from featureflow.blackboard import Blackboard
from featureflow.launcher import LauncherProvider
from featureflow.models import LaunchRequest, LaunchResult


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[Blackboard]:
    """A connected blackboard backed by a temporary database file."""
    async with Blackboard(tmp_path / "blackboard.db") as bb:
        yield bb


class FakeLauncher:
    """Records launch requests and replays canned results."""

    def __init__(self, *results: LaunchResult, on_launch=None) -> None:
        self.results = list(results) or [LaunchResult(0, "", "")]
        self.requests: list[LaunchRequest] = []
        self.on_launch = on_launch

    async def __call__(self, request: LaunchRequest) -> LaunchResult:
        self.requests.append(request)
        if self.on_launch is not None:
            self.on_launch(request)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def launchers(fake_launcher: FakeLauncher) -> LauncherProvider:
    """Launcher provider whose active launcher is the fake."""
    return LauncherProvider(fake_launcher)
