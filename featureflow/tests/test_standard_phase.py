"""Tests for the specify, plan and tasks executors."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from featureflow.blackboard import Blackboard
from featureflow.errors import LaunchError
from featureflow.launcher import LauncherProvider
from featureflow.models import CliResult, Feature, LaunchResult, Phase
from featureflow.phases import (
    PhaseExecutorOptions,
    PlanExecutor,
    SpecifyExecutor,
    TasksExecutor,
    build_executors,
)
from featureflow.phases.standard import PROMPT_ENV_VAR, PROMPT_FILE_NAME, build_full_prompt


def make_specflow(
    worktree: Path, prompt: dict | None = None, exit_code: int = 0, stderr: str = ""
) -> MagicMock:
    """A specflow stand-in that exports a prompt file for phase commands."""

    async def run(args, cwd, timeout=30.0, extra_env=None):
        if extra_env and prompt is not None:
            Path(extra_env[PROMPT_ENV_VAR]).write_text(json.dumps(prompt))
        return CliResult(exit_code, "", stderr)

    specflow = MagicMock()
    specflow.run = AsyncMock(side_effect=run)
    return specflow


def write_artifact(worktree: Path, name: str, content: str = "# Artifact\n") -> Path:
    feature_dir = worktree / ".specify" / "specs" / "F-1-export"
    feature_dir.mkdir(parents=True, exist_ok=True)
    (feature_dir / name).write_text(content)
    return feature_dir / name


@pytest.fixture
def options(tmp_path: Path) -> PhaseExecutorOptions:
    return PhaseExecutorOptions(
        worktree_path=tmp_path, project_path=tmp_path, session_id="sess"
    )


@pytest.fixture
def feature() -> Feature:
    return Feature("F-1", "Export", "proj", phase=Phase.SPECIFYING)


class TestBuildFullPrompt:
    """Tests for prompt wrapping."""

    def test_includes_system_context(self) -> None:
        prompt = build_full_prompt("specify", "Write the spec", "Be brief")

        lines = prompt.splitlines()
        assert lines[0] == "[System Context] Be brief"
        assert "[PHASE COMPLETE: SPECIFY]" in prompt
        assert prompt.endswith("\n\nWrite the spec")

    def test_without_system_context(self) -> None:
        prompt = build_full_prompt("plan", "Write the plan")

        assert prompt.startswith("IMPORTANT:")
        assert prompt.endswith("\n\nWrite the plan")


class TestCanRun:
    """Tests for executor eligibility."""

    def test_each_executor_owns_ready_and_active_state(
        self, launchers: LauncherProvider
    ) -> None:
        specflow = MagicMock()
        executors = build_executors(launchers, specflow, MagicMock())
        expectations = {
            Phase.QUEUED: "specify",
            Phase.SPECIFYING: "specify",
            Phase.SPECIFIED: "plan",
            Phase.PLANNING: "plan",
            Phase.PLANNED: "tasks",
            Phase.TASKING: "tasks",
            Phase.TASKED: "implement",
            Phase.IMPLEMENTING: "implement",
            Phase.IMPLEMENTED: "complete",
            Phase.COMPLETING: "complete",
        }

        for phase, name in expectations.items():
            eligible = [
                e.phase_name for e in executors if e.can_run(Feature("F", "t", "p", phase=phase))
            ]
            assert eligible == [name], phase

        terminal = Feature("F", "t", "p", phase=Phase.COMPLETED)
        assert not any(e.can_run(terminal) for e in executors)


class TestRunStandardPhase:
    """Tests for the shared specflow + agent phase flow."""

    @pytest.mark.asyncio
    async def test_success_launches_agent_and_records_artifact(
        self,
        tmp_path: Path,
        store: Blackboard,
        launchers: LauncherProvider,
        fake_launcher,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        specflow = make_specflow(tmp_path, {"prompt": "Write spec", "systemPrompt": "ctx"})
        fake_launcher.on_launch = lambda request: write_artifact(tmp_path, "spec.md")

        result = await SpecifyExecutor(launchers, specflow).execute(
            feature, store, options
        )

        assert result.succeeded
        assert result.artifacts == ["spec.md"]
        assert not (tmp_path / PROMPT_FILE_NAME).exists()

        request = fake_launcher.requests[0]
        assert request.session_id == "sess-specify"
        assert request.phase == "specify"
        assert request.work_dir == tmp_path
        assert "Write spec" in request.prompt

        commands = [call.args[0] for call in specflow.run.call_args_list]
        assert commands == [["specify", "F-1"], ["phase", "F-1", "specify"]]

        launching = await store.query_events(event_type="phase.launching")
        artifacts = await store.query_events(event_type="artifact.created")
        assert len(launching) == 1
        assert artifacts[0].metadata["artifact_type"] == "spec"
        assert artifacts[0].metadata["content"] == "# Artifact\n"

    @pytest.mark.asyncio
    async def test_specflow_failure(
        self,
        tmp_path: Path,
        store: Blackboard,
        launchers: LauncherProvider,
        fake_launcher,
        options: PhaseExecutorOptions,
    ) -> None:
        specflow = make_specflow(tmp_path, exit_code=2, stderr="no such feature")
        feature = Feature("F-1", "Export", "proj", phase=Phase.PLANNING)

        result = await PlanExecutor(launchers, specflow).execute(feature, store, options)

        assert not result.succeeded
        assert result.error == "specflow plan exited 2: no such feature"
        assert fake_launcher.requests == []

    @pytest.mark.asyncio
    async def test_existing_artifact_skips_agent(
        self,
        tmp_path: Path,
        store: Blackboard,
        launchers: LauncherProvider,
        fake_launcher,
        options: PhaseExecutorOptions,
    ) -> None:
        write_artifact(tmp_path, "tasks.md")
        specflow = make_specflow(tmp_path, prompt=None)
        feature = Feature("F-1", "Export", "proj", phase=Phase.TASKING)

        result = await TasksExecutor(launchers, specflow).execute(feature, store, options)

        assert result.succeeded
        assert fake_launcher.requests == []
        assert specflow.run.call_args_list[-1].args[0] == ["phase", "F-1", "tasks"]

    @pytest.mark.asyncio
    async def test_agent_nonzero_exit(
        self,
        tmp_path: Path,
        store: Blackboard,
        launchers: LauncherProvider,
        fake_launcher,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        specflow = make_specflow(tmp_path, {"prompt": "Write spec"})
        fake_launcher.results = [LaunchResult(1, "", "rate limited\n")]

        result = await SpecifyExecutor(launchers, specflow).execute(
            feature, store, options
        )

        assert result.error == "Agent exited 1: rate limited"
        # No phase advance after a failed agent
        assert specflow.run.call_count == 1

    @pytest.mark.asyncio
    async def test_launch_error(
        self,
        tmp_path: Path,
        store: Blackboard,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        async def broken(request):
            raise LaunchError("claude: not found")

        specflow = make_specflow(tmp_path, {"prompt": "Write spec"})

        result = await SpecifyExecutor(LauncherProvider(broken), specflow).execute(
            feature, store, options
        )

        assert result.error == "Agent launch failed: claude: not found"

    @pytest.mark.asyncio
    async def test_bad_prompt_file(
        self,
        tmp_path: Path,
        store: Blackboard,
        launchers: LauncherProvider,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        specflow = make_specflow(tmp_path, {"no_prompt": True})

        result = await SpecifyExecutor(launchers, specflow).execute(
            feature, store, options
        )

        assert result.error is not None
        assert result.error.startswith("Failed to read prompt file")
        assert not (tmp_path / PROMPT_FILE_NAME).exists()

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failure(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        specflow = MagicMock()
        specflow.run = AsyncMock(side_effect=RuntimeError("boom"))

        result = await SpecifyExecutor(launchers, specflow).execute(
            feature, store, options
        )

        assert result.error == "specify phase error: boom"
