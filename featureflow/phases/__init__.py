"""Phase executors for the delivery pipeline."""

from featureflow.launcher import LauncherProvider
from featureflow.phases.base import PhaseExecutor, PhaseExecutorOptions
from featureflow.phases.complete import CompleteExecutor
from featureflow.phases.implement import ImplementExecutor
from featureflow.phases.standard import (
    PlanExecutor,
    SpecifyExecutor,
    TasksExecutor,
    run_standard_phase,
)
from featureflow.specflow_cli import SpecflowCli
from featureflow.worktree import GitClient


def build_executors(
    launchers: LauncherProvider, specflow: SpecflowCli, git: GitClient
) -> list[PhaseExecutor]:
    """The pipeline's executors in phase order."""
    return [
        SpecifyExecutor(launchers, specflow),
        PlanExecutor(launchers, specflow),
        TasksExecutor(launchers, specflow),
        ImplementExecutor(launchers, git),
        CompleteExecutor(launchers, specflow, git),
    ]


__all__ = [
    "CompleteExecutor",
    "ImplementExecutor",
    "PhaseExecutor",
    "PhaseExecutorOptions",
    "PlanExecutor",
    "SpecifyExecutor",
    "TasksExecutor",
    "build_executors",
    "run_standard_phase",
]
