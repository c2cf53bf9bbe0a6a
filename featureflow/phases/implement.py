"""Implement executor: the coding agent writes the feature.

The agent gets the spec, plan and task list, plus the project's known
constraints from earlier lessons. Whatever it produced is committed even
when it fails or times out, so partial work survives for the next attempt.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

import structlog

from featureflow.blackboard import Blackboard
from featureflow.errors import LaunchError
from featureflow.launcher import LauncherProvider
from featureflow.models import Feature, LaunchRequest, LaunchResult, Phase, PhaseResult
from featureflow.phases.base import PhaseExecutorOptions
from featureflow.reflect.store import LessonQuery, format_known_constraints, query_lessons
from featureflow.spec_dirs import resolve_feature_dir
from featureflow.worktree import GitClient

logger = structlog.get_logger(__name__)

IMPLEMENT_TIMEOUT_FLOOR_SECONDS = 30 * 60
IMPLEMENT_TIMEOUT_PER_TASK_SECONDS = 3 * 60

CODING_PREAMBLE = """EXECUTION MODE: Direct Implementation

You are in coding-only mode. Go directly to writing code.

Your ONLY job: implement the feature as specified in the tasks.md file. Write code, run tests, commit.
"""

_TASK_HEADING = re.compile(r"^### T-", re.MULTILINE)
_TASK_CHECKBOX = re.compile(r"^\s*- \[[ xX]\]", re.MULTILINE)


def count_tasks(feature_dir: Path) -> int:
    """Number of tasks in tasks.md.

    Counts `### T-` headings, falling back to checkbox items.
    """
    tasks_path = feature_dir / "tasks.md"
    try:
        content = tasks_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return 0
    headings = len(_TASK_HEADING.findall(content))
    return headings or len(_TASK_CHECKBOX.findall(content))


def implement_timeout_seconds(task_count: int) -> int:
    """Agent timeout: a fixed floor plus a per-task allowance."""
    return IMPLEMENT_TIMEOUT_FLOOR_SECONDS + IMPLEMENT_TIMEOUT_PER_TASK_SECONDS * task_count


def build_implement_prompt(
    feature_id: str, feature_dir: Path, known_constraints: str = ""
) -> str:
    parts = [CODING_PREAMBLE, f"Implement feature: {feature_id}\n"]
    for name in ("spec.md", "plan.md", "tasks.md"):
        path = feature_dir / name
        if path.is_file():
            parts.append(f"## {name}\n{path.read_text(encoding='utf-8', errors='replace')}\n")
    if known_constraints:
        parts.append(known_constraints + "\n")
    parts.append(
        "Implement ALL tasks from tasks.md. Run the project's tests when done. "
        "Do not ask for confirmation."
    )
    return "\n".join(parts)


@dataclass
class ImplementExecutor:
    """Runs the coding agent over the feature's task list."""

    launchers: LauncherProvider
    git: GitClient

    phase_name: ClassVar[str] = "implement"
    eligible_phases: ClassVar[tuple[Phase, ...]] = (Phase.TASKED, Phase.IMPLEMENTING)

    def can_run(self, feature: Feature) -> bool:
        return feature.phase in self.eligible_phases

    async def _known_constraints(self, events: Blackboard, project_id: str) -> str:
        try:
            lessons = await query_lessons(events, LessonQuery(project=project_id))
        except Exception as e:
            logger.warning("Could not load lessons", project_id=project_id, error=str(e))
            return ""
        return format_known_constraints(lessons)

    async def execute(
        self, feature: Feature, events: Blackboard, options: PhaseExecutorOptions
    ) -> PhaseResult:
        feature_id = feature.feature_id
        worktree = Path(options.worktree_path)
        log = logger.bind(feature_id=feature_id, phase=self.phase_name)

        try:
            feature_dir = resolve_feature_dir(worktree, feature_id)
            task_count = count_tasks(feature_dir)
            timeout = options.timeout_seconds or implement_timeout_seconds(task_count)
            constraints = await self._known_constraints(events, feature.project_id)
            prompt = build_implement_prompt(feature_id, feature_dir, constraints)
            launch_session = f"{options.session_id}-{self.phase_name}"

            await events.append_event(
                "phase.launching",
                f"Launching agent for implement phase of {feature_id} "
                f"({task_count} tasks, {round(timeout / 60)}min timeout)",
                actor_id=options.session_id,
                target_id=feature_id,
                target_type="feature",
                metadata={
                    "phase": Phase.IMPLEMENTING.value,
                    "feature_id": feature_id,
                    "task_count": task_count,
                    "timeout_seconds": timeout,
                    "session_id": launch_session,
                },
            )
        except Exception as e:
            log.exception("Implement setup failed")
            return PhaseResult.failure(f"implement phase error: {e}")

        launch: LaunchResult | None = None
        launch_error: str | None = None
        commit_sha: str | None = None
        commit_error: str | None = None
        try:
            launch = await self.launchers.launch(
                LaunchRequest(
                    session_id=launch_session,
                    prompt=prompt,
                    work_dir=worktree,
                    timeout_seconds=timeout,
                    phase=self.phase_name,
                    cancel_event=options.cancel_event,
                )
            )
        except LaunchError as e:
            launch_error = f"Agent launch failed: {e}"
        except Exception as e:
            log.exception("Implement launch error")
            launch_error = f"implement phase error: {e}"
        finally:
            # Partial work is kept regardless of how the agent ended
            try:
                commit_sha = await self.git.commit_all(
                    worktree, f"feat(specflow): {feature_id} implementation"
                )
            except Exception as e:
                commit_error = str(e)
                log.error("Implementation commit failed", error=commit_error)

        if commit_sha:
            try:
                await events.append_event(
                    "commit.created",
                    f"Committed implementation changes for {feature_id}",
                    actor_id=options.session_id,
                    target_id=feature_id,
                    target_type="feature",
                    metadata={"feature_id": feature_id, "commit_sha": commit_sha},
                )
            except Exception as e:
                log.exception("Failed to record implementation commit")
                return PhaseResult.failure(
                    f"implement phase error: {e}",
                    metadata={"task_count": task_count, "commit_sha": commit_sha},
                )

        metadata: dict[str, Any] = {"task_count": task_count}
        if commit_sha:
            metadata["commit_sha"] = commit_sha

        if launch_error:
            return PhaseResult.failure(launch_error, metadata=metadata)
        assert launch is not None
        if launch.exit_code != 0:
            return PhaseResult.failure(
                f"Implement agent exited {launch.exit_code}: {launch.stderr.strip()}",
                metadata=metadata,
            )
        if commit_error:
            return PhaseResult.failure(
                f"Implementation commit failed: {commit_error}", metadata=metadata
            )

        log.info("Implementation finished", commit_sha=commit_sha, task_count=task_count)
        return PhaseResult.success(metadata=metadata, source_changes=True)
