"""
Global pytest configuration for featureflow.
"""

import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio coroutine")
    config.addinivalue_line(
        "markers", "subprocess: marks tests that spawn real child processes"
    )


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test's featureflow state under its own temporary directory."""
    home = tmp_path / "featureflow-home"
    monkeypatch.setenv("FEATUREFLOW_HOME", str(home))
    monkeypatch.delenv("FEATUREFLOW_DB", raising=False)
    monkeypatch.delenv("FEATUREFLOW_LOG_DIR", raising=False)
    monkeypatch.delenv("FEATUREFLOW_WORKTREE_DIR", raising=False)
    monkeypatch.delenv("OTLP_ENABLED", raising=False)
    return home
