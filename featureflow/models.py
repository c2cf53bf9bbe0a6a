"""Data models for featureflow.

Defines the feature lifecycle (phases and statuses), phase execution results,
and the request/result pair exchanged with the agent launcher.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

# Exit code reported when the agent was stopped by timeout or cancellation.
TIMEOUT_EXIT_CODE = -1


class Phase(str, Enum):
    """Lifecycle position of a feature.

    "-ing" members are in-progress states, "-ed" members are ready states
    waiting for the next phase. COMPLETED is the handed-off state.
    """

    QUEUED = "queued"
    SPECIFYING = "specifying"
    SPECIFIED = "specified"
    PLANNING = "planning"
    PLANNED = "planned"
    TASKING = "tasking"
    TASKED = "tasked"
    IMPLEMENTING = "implementing"
    IMPLEMENTED = "implemented"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"


class FeatureStatus(str, Enum):
    """Execution status of the feature's current phase."""

    PENDING = "pending"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"


ADVANCE_MAP: dict[Phase, Phase] = {
    Phase.QUEUED: Phase.SPECIFYING,
    Phase.SPECIFIED: Phase.PLANNING,
    Phase.PLANNED: Phase.TASKING,
    Phase.TASKED: Phase.IMPLEMENTING,
    Phase.IMPLEMENTED: Phase.COMPLETING,
}

COMPLETED_MAP: dict[Phase, Phase] = {
    Phase.SPECIFYING: Phase.SPECIFIED,
    Phase.PLANNING: Phase.PLANNED,
    Phase.TASKING: Phase.TASKED,
    Phase.IMPLEMENTING: Phase.IMPLEMENTED,
    Phase.COMPLETING: Phase.COMPLETED,
}

GateKind = Literal["quality", "artifact", "code", "pass"]

GATE_MAP: dict[Phase, GateKind] = {
    Phase.SPECIFYING: "quality",
    Phase.PLANNING: "quality",
    Phase.TASKING: "artifact",
    Phase.IMPLEMENTING: "code",
    Phase.COMPLETING: "pass",
}

TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})


def is_active_phase(phase: Phase) -> bool:
    """Whether the phase is an in-progress ("-ing") state."""
    return phase in COMPLETED_MAP


def to_completed_phase(phase: Phase) -> Phase:
    """Map an in-progress phase to the ready state it finishes into.

    Raises:
        ValueError: If the phase is not an in-progress state
    """
    try:
        return COMPLETED_MAP[phase]
    except KeyError:
        raise ValueError(f"{phase.value} is not an in-progress phase") from None


@dataclass
class Feature:
    """A unit of work progressing through the delivery pipeline."""

    feature_id: str
    title: str
    project_id: str
    phase: Phase = Phase.QUEUED
    status: FeatureStatus = FeatureStatus.PENDING
    description: str = ""
    github_repo: str | None = None
    main_branch: str = "main"
    worktree_path: str | None = None
    branch_name: str | None = None
    current_session: str | None = None
    phase_started_at: datetime | None = None
    failure_count: int = 0
    max_failures: int = 3
    last_error: str | None = None
    specify_score: int | None = None
    plan_score: int | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    commit_sha: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        # Coerce plain strings loaded from storage into enum members
        self.phase = Phase(self.phase)
        self.status = FeatureStatus(self.status)


@dataclass
class PhaseResult:
    """Outcome of a single phase execution.

    A failed result always carries an error message; a succeeded one never does.
    """

    status: Literal["succeeded", "failed"]
    error: str | None = None
    artifacts: list[str] = field(default_factory=list)
    eval_score: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source_changes: bool = False

    def __post_init__(self) -> None:
        if self.status == "failed" and not self.error:
            raise ValueError("failed PhaseResult requires an error message")
        if self.status == "succeeded" and self.error:
            raise ValueError("succeeded PhaseResult cannot carry an error")

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def success(
        cls,
        artifacts: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        eval_score: int | None = None,
        source_changes: bool = False,
    ) -> "PhaseResult":
        return cls(
            status="succeeded",
            artifacts=artifacts or [],
            metadata=metadata or {},
            eval_score=eval_score,
            source_changes=source_changes,
        )

    @classmethod
    def failure(
        cls, error: str, metadata: dict[str, Any] | None = None
    ) -> "PhaseResult":
        return cls(status="failed", error=error, metadata=metadata or {})


@dataclass
class LaunchRequest:
    """Everything needed to run the coding agent once."""

    session_id: str
    prompt: str
    work_dir: Path
    timeout_seconds: float
    phase: str = "agent"
    restrict_tools: bool = False
    cancel_event: asyncio.Event | None = None


@dataclass
class LaunchResult:
    """Outcome of one agent process run."""

    exit_code: int
    stdout: str
    stderr: str
    log_path: Path | None = None

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def result_text(self) -> str:
        """Final result message from structured output, else raw stdout."""
        result: str | None = None
        for line in self.stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if (
                isinstance(event, dict)
                and event.get("type") == "result"
                and isinstance(event.get("result"), str)
            ):
                result = event["result"]
        return result if result is not None else self.stdout


@dataclass
class CliResult:
    """Outcome of a spec-tool or source-control command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
