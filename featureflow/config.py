"""Configuration for featureflow.

Provides centralized configuration with sensible defaults and environment
variable overrides for storage locations, agent and spec-tool binaries,
timeouts, and telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _home_dir() -> Path:
    return Path(os.getenv("FEATUREFLOW_HOME", str(Path.home() / ".featureflow")))


@dataclass
class FlowConfig:
    """Configuration for pipeline execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Storage
    db_path: Path = field(default_factory=lambda: _home_dir() / "blackboard.db")
    state_dir: Path = field(default_factory=lambda: _home_dir() / "state")
    log_dir: Path = field(default_factory=lambda: _home_dir() / "logs")
    worktree_root: Path = field(default_factory=lambda: _home_dir() / "worktrees")

    # External binaries
    agent_bin: str = "claude"
    specflow_bin: str = field(
        default_factory=lambda: os.getenv(
            "SPECFLOW_BIN", str(Path.home() / "bin" / "specflow")
        )
    )

    # Agent process settings
    restricted_tools: list[str] = field(
        default_factory=lambda: ["Read", "Write", "Edit", "Glob", "Grep"]
    )
    kill_grace_seconds: float = 10.0
    stream_output: bool = True

    # Orchestration
    max_concurrent: int = 1
    phase_timeout_min: int = 30
    max_failures: int = 3
    reflect_mode: str = "inline"

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "featureflow"

    @classmethod
    def from_env(cls) -> "FlowConfig":
        """Load config with environment variable overrides.

        Environment variables:
            FEATUREFLOW_HOME: Base directory for defaults (default: ~/.featureflow)
            FEATUREFLOW_DB: Override db_path
            FEATUREFLOW_LOG_DIR: Override log_dir
            FEATUREFLOW_WORKTREE_DIR: Override worktree_root
            FEATUREFLOW_AGENT_BIN: Override agent_bin (default: claude)
            SPECFLOW_BIN: Override specflow_bin (default: ~/bin/specflow)
            FEATUREFLOW_KILL_GRACE: Override kill_grace_seconds (default: 10)
            FEATUREFLOW_MAX_CONCURRENT: Override max_concurrent (default: 1)
            FEATUREFLOW_PHASE_TIMEOUT: Override phase_timeout_min (default: 30)
            FEATUREFLOW_MAX_FAILURES: Override max_failures (default: 3)
            FEATUREFLOW_REFLECT_MODE: inline or file (default: inline)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        home = _home_dir()
        return cls(
            db_path=Path(os.getenv("FEATUREFLOW_DB", str(home / "blackboard.db"))),
            state_dir=home / "state",
            log_dir=Path(os.getenv("FEATUREFLOW_LOG_DIR", str(home / "logs"))),
            worktree_root=Path(
                os.getenv("FEATUREFLOW_WORKTREE_DIR", str(home / "worktrees"))
            ),
            agent_bin=os.getenv("FEATUREFLOW_AGENT_BIN", "claude"),
            specflow_bin=os.getenv(
                "SPECFLOW_BIN", str(Path.home() / "bin" / "specflow")
            ),
            kill_grace_seconds=float(os.getenv("FEATUREFLOW_KILL_GRACE", "10")),
            max_concurrent=int(os.getenv("FEATUREFLOW_MAX_CONCURRENT", "1")),
            phase_timeout_min=int(os.getenv("FEATUREFLOW_PHASE_TIMEOUT", "30")),
            max_failures=int(os.getenv("FEATUREFLOW_MAX_FAILURES", "3")),
            reflect_mode=os.getenv("FEATUREFLOW_REFLECT_MODE", "inline"),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
