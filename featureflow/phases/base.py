"""Common contract shared by every phase executor."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from featureflow.blackboard import Blackboard
from featureflow.models import Feature, PhaseResult


@dataclass
class PhaseExecutorOptions:
    """Per-invocation settings handed to an executor.

    Attributes:
        worktree_path: Feature worktree the agent works in
        project_path: Project's main checkout
        session_id: Orchestrator session; launch sessions derive from it
        timeout_seconds: Overrides the executor's default agent timeout
        cancel_event: Set to stop the agent early
    """

    worktree_path: Path
    project_path: Path
    session_id: str
    timeout_seconds: float | None = None
    cancel_event: asyncio.Event | None = None


class PhaseExecutor(Protocol):
    """A pipeline phase.

    can_run() is true for exactly the executor's ready state and its own
    in-progress state. execute() never raises; every failure is reported
    as a failed PhaseResult.
    """

    phase_name: str

    def can_run(self, feature: Feature) -> bool: ...

    async def execute(
        self, feature: Feature, events: Blackboard, options: PhaseExecutorOptions
    ) -> PhaseResult: ...
