"""Tests for configuration module."""

import os
from pathlib import Path
from unittest.mock import patch

from featureflow.config import FlowConfig


class TestFlowConfigDefaults:
    """Test default configuration values."""

    def test_paths_live_under_featureflow_home(self, isolated_home: Path) -> None:
        """Storage paths default to the FEATUREFLOW_HOME directory."""
        config = FlowConfig()

        assert config.db_path == isolated_home / "blackboard.db"
        assert config.state_dir == isolated_home / "state"
        assert config.log_dir == isolated_home / "logs"
        assert config.worktree_root == isolated_home / "worktrees"

    def test_defaults(self) -> None:
        config = FlowConfig()

        assert config.agent_bin == "claude"
        assert config.kill_grace_seconds == 10.0
        assert config.max_concurrent == 1
        assert config.max_failures == 3
        assert config.reflect_mode == "inline"
        assert config.service_name == "featureflow"


class TestFlowConfigFromEnv:
    """Test loading configuration from environment."""

    def test_reads_overrides(self, tmp_path: Path) -> None:
        env = {
            "FEATUREFLOW_DB": str(tmp_path / "custom.db"),
            "FEATUREFLOW_LOG_DIR": str(tmp_path / "logs"),
            "FEATUREFLOW_WORKTREE_DIR": str(tmp_path / "wt"),
            "FEATUREFLOW_AGENT_BIN": "/opt/agent",
            "SPECFLOW_BIN": "/opt/specflow",
            "FEATUREFLOW_KILL_GRACE": "2.5",
            "FEATUREFLOW_MAX_CONCURRENT": "4",
            "FEATUREFLOW_PHASE_TIMEOUT": "45",
            "FEATUREFLOW_MAX_FAILURES": "5",
            "FEATUREFLOW_REFLECT_MODE": "file",
            "OTLP_ENDPOINT": "http://collector:4317",
        }
        with patch.dict(os.environ, env):
            config = FlowConfig.from_env()

        assert config.db_path == tmp_path / "custom.db"
        assert config.log_dir == tmp_path / "logs"
        assert config.worktree_root == tmp_path / "wt"
        assert config.agent_bin == "/opt/agent"
        assert config.specflow_bin == "/opt/specflow"
        assert config.kill_grace_seconds == 2.5
        assert config.max_concurrent == 4
        assert config.phase_timeout_min == 45
        assert config.max_failures == 5
        assert config.reflect_mode == "file"
        assert config.otlp_endpoint == "http://collector:4317"

    def test_specflow_bin_defaults_to_home_bin(self, monkeypatch) -> None:
        monkeypatch.delenv("SPECFLOW_BIN", raising=False)

        config = FlowConfig.from_env()

        assert config.specflow_bin == str(Path.home() / "bin" / "specflow")
