"""Specify, plan and tasks executors.

These phases follow the same pattern: specflow renders a prompt for the
phase into a JSON file, the agent writes the artifact, and specflow records
the phase as done. run_standard_phase() carries that pattern; each executor
only names its phase, artifact and eligible states.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

import structlog

from featureflow.blackboard import Blackboard
from featureflow.errors import LaunchError
from featureflow.launcher import LauncherProvider
from featureflow.models import Feature, LaunchRequest, Phase, PhaseResult
from featureflow.phases.base import PhaseExecutorOptions
from featureflow.spec_dirs import find_feature_dir
from featureflow.specflow_cli import SpecflowCli

logger = structlog.get_logger(__name__)

PROMPT_FILE_NAME = ".specflow-prompt.json"
PROMPT_ENV_VAR = "SPECFLOW_PROMPT_OUTPUT"
STANDARD_PHASE_TIMEOUT_SECONDS = 30 * 60
PHASE_ADVANCE_TIMEOUT_SECONDS = 10


def build_full_prompt(
    phase_name: str, prompt: str, system_prompt: str | None = None
) -> str:
    """Wrap a specflow phase prompt with artifact-writing instructions."""
    parts = [
        f"[System Context] {system_prompt}" if system_prompt else "",
        "IMPORTANT: You have full tool access. "
        "Write the artifact file directly to disk using the Write tool.",
        f"After creating the file, output [PHASE COMPLETE: {phase_name.upper()}] "
        "in your response.",
        "",
        prompt,
    ]
    # Drop the empty system line but keep the blank separator
    return "\n".join(part for i, part in enumerate(parts) if part or i == 3)


async def _record_artifact(
    events: Blackboard,
    feature: Feature,
    worktree_path: Path,
    artifact_name: str,
    session_id: str,
) -> None:
    """Publish the artifact content so later reflection can read it."""
    feature_dir = find_feature_dir(worktree_path, feature.feature_id)
    if feature_dir is None or not (feature_dir / artifact_name).is_file():
        return
    content = (feature_dir / artifact_name).read_text(encoding="utf-8", errors="replace")
    await events.append_event(
        "artifact.created",
        f"{artifact_name} written for {feature.feature_id}",
        actor_id=session_id,
        target_id=feature.feature_id,
        target_type="feature",
        metadata={
            "artifact_type": Path(artifact_name).stem,
            "feature_id": feature.feature_id,
            "path": str(feature_dir / artifact_name),
            "content": content,
        },
    )


async def run_standard_phase(
    *,
    phase_name: str,
    artifact_name: str,
    feature: Feature,
    events: Blackboard,
    options: PhaseExecutorOptions,
    launchers: LauncherProvider,
    specflow: SpecflowCli,
) -> PhaseResult:
    """Run one prompt-driven specflow phase.

    Args:
        phase_name: specflow phase ("specify", "plan", "tasks")
        artifact_name: File the phase produces ("spec.md", ...)
        feature: Feature being worked on
        events: Event log
        options: Worktree, session and timeout settings
        launchers: Source of the active agent launcher
        specflow: specflow CLI runner

    Returns:
        PhaseResult naming the artifact on success
    """
    feature_id = feature.feature_id
    worktree = Path(options.worktree_path)
    prompt_file = worktree / PROMPT_FILE_NAME
    timeout = options.timeout_seconds or STANDARD_PHASE_TIMEOUT_SECONDS
    log = logger.bind(feature_id=feature_id, phase=phase_name)

    try:
        sf_result = await specflow.run(
            [phase_name, feature_id],
            cwd=worktree,
            timeout=STANDARD_PHASE_TIMEOUT_SECONDS,
            extra_env={PROMPT_ENV_VAR: str(prompt_file)},
        )
        if not sf_result.ok:
            return PhaseResult.failure(
                f"specflow {phase_name} exited {sf_result.exit_code}: "
                f"{sf_result.stderr.strip()}"
            )

        if not prompt_file.exists():
            # Artifact already present; only record the phase
            log.info("No prompt exported, artifact already exists")
            await specflow.run(
                ["phase", feature_id, phase_name],
                cwd=worktree,
                timeout=PHASE_ADVANCE_TIMEOUT_SECONDS,
            )
            await _record_artifact(
                events, feature, worktree, artifact_name, options.session_id
            )
            return PhaseResult.success(artifacts=[artifact_name])

        try:
            prompt_data = json.loads(prompt_file.read_text(encoding="utf-8"))
            prompt = prompt_data["prompt"]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            return PhaseResult.failure(f"Failed to read prompt file: {e}")
        finally:
            try:
                prompt_file.unlink(missing_ok=True)
            except OSError as e:
                log.debug("Could not delete prompt file", error=str(e))

        full_prompt = build_full_prompt(
            phase_name, prompt, prompt_data.get("systemPrompt")
        )

        launch_session = f"{options.session_id}-{phase_name}"
        await events.append_event(
            "phase.launching",
            f"Launching agent for {phase_name} phase of {feature_id}",
            actor_id=options.session_id,
            target_id=feature_id,
            target_type="feature",
            metadata={
                "phase": feature.phase.value,
                "feature_id": feature_id,
                "session_id": launch_session,
            },
        )

        try:
            launch = await launchers.launch(
                LaunchRequest(
                    session_id=launch_session,
                    prompt=full_prompt,
                    work_dir=worktree,
                    timeout_seconds=timeout,
                    phase=phase_name,
                    cancel_event=options.cancel_event,
                )
            )
        except LaunchError as e:
            return PhaseResult.failure(f"Agent launch failed: {e}")

        if launch.exit_code != 0:
            return PhaseResult.failure(
                f"Agent exited {launch.exit_code}: {launch.stderr.strip()}",
                metadata={"log_path": str(launch.log_path or "")},
            )

        await specflow.run(
            ["phase", feature_id, phase_name],
            cwd=worktree,
            timeout=PHASE_ADVANCE_TIMEOUT_SECONDS,
        )
        await _record_artifact(
            events, feature, worktree, artifact_name, options.session_id
        )
        log.info("Phase artifact produced", artifact=artifact_name)
        return PhaseResult.success(artifacts=[artifact_name])

    except Exception as e:
        log.exception("Phase execution error")
        return PhaseResult.failure(f"{phase_name} phase error: {e}")


@dataclass
class SpecifyExecutor:
    """Writes spec.md for a queued feature."""

    launchers: LauncherProvider
    specflow: SpecflowCli

    phase_name: ClassVar[str] = "specify"
    artifact_name: ClassVar[str] = "spec.md"
    eligible_phases: ClassVar[tuple[Phase, ...]] = (Phase.QUEUED, Phase.SPECIFYING)

    def can_run(self, feature: Feature) -> bool:
        return feature.phase in self.eligible_phases

    async def execute(
        self, feature: Feature, events: Blackboard, options: PhaseExecutorOptions
    ) -> PhaseResult:
        return await run_standard_phase(
            phase_name=self.phase_name,
            artifact_name=self.artifact_name,
            feature=feature,
            events=events,
            options=options,
            launchers=self.launchers,
            specflow=self.specflow,
        )


@dataclass
class PlanExecutor:
    """Writes plan.md once the spec has passed its gate."""

    launchers: LauncherProvider
    specflow: SpecflowCli

    phase_name: ClassVar[str] = "plan"
    artifact_name: ClassVar[str] = "plan.md"
    eligible_phases: ClassVar[tuple[Phase, ...]] = (Phase.SPECIFIED, Phase.PLANNING)

    def can_run(self, feature: Feature) -> bool:
        return feature.phase in self.eligible_phases

    async def execute(
        self, feature: Feature, events: Blackboard, options: PhaseExecutorOptions
    ) -> PhaseResult:
        return await run_standard_phase(
            phase_name=self.phase_name,
            artifact_name=self.artifact_name,
            feature=feature,
            events=events,
            options=options,
            launchers=self.launchers,
            specflow=self.specflow,
        )


@dataclass
class TasksExecutor:
    """Breaks the plan into tasks.md."""

    launchers: LauncherProvider
    specflow: SpecflowCli

    phase_name: ClassVar[str] = "tasks"
    artifact_name: ClassVar[str] = "tasks.md"
    eligible_phases: ClassVar[tuple[Phase, ...]] = (Phase.PLANNED, Phase.TASKING)

    def can_run(self, feature: Feature) -> bool:
        return feature.phase in self.eligible_phases

    async def execute(
        self, feature: Feature, events: Blackboard, options: PhaseExecutorOptions
    ) -> PhaseResult:
        return await run_standard_phase(
            phase_name=self.phase_name,
            artifact_name=self.artifact_name,
            feature=feature,
            events=events,
            options=options,
            launchers=self.launchers,
            specflow=self.specflow,
        )
