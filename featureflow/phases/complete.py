"""Complete executor: finalize the feature and open its pull request."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

import structlog

from featureflow.blackboard import Blackboard, WorkItem
from featureflow.errors import CommandError, LaunchError
from featureflow.launcher import LauncherProvider
from featureflow.models import Feature, LaunchRequest, Phase, PhaseResult
from featureflow.phases.base import PhaseExecutorOptions
from featureflow.pr_body import build_pr_body, parse_numstat
from featureflow.spec_dirs import resolve_feature_dir
from featureflow.specflow_cli import SpecflowCli
from featureflow.worktree import GitClient

logger = structlog.get_logger(__name__)

COMPLETE_TIMEOUT_SECONDS = 30 * 60
VERIFY_TIMEOUT_SECONDS = 10 * 60

# Only these files are committed by the complete phase
FEATURE_DIR_ARTIFACTS = ("spec.md", "plan.md", "tasks.md", "verify.md", "docs.md")
ROOT_ARTIFACTS = ("CHANGELOG.md",)


def build_verify_prompt(feature_id: str, feature_dir: Path) -> str:
    return f"""Write a verification report for feature {feature_id}.

Read {feature_dir / "spec.md"} and {feature_dir / "tasks.md"}, inspect the
implementation in this repository, and write {feature_dir / "verify.md"} with:

- ## Pre-Verification Checklist: each acceptance criterion with [x] or [ ]
- ## Smoke Test Results: the commands you ran and what they printed
- ## Browser Verification: "N/A" unless the feature has a UI

Do not modify any file other than verify.md."""


def completion_artifacts(worktree: Path, feature_dir: Path) -> list[str]:
    """Existing allow-listed artifact paths, relative to the worktree."""
    paths = []
    for name in FEATURE_DIR_ARTIFACTS:
        candidate = feature_dir / name
        if candidate.is_file():
            try:
                paths.append(str(candidate.relative_to(worktree)))
            except ValueError:
                continue
    for name in ROOT_ARTIFACTS:
        if (worktree / name).is_file():
            paths.append(name)
    return paths


@dataclass
class CompleteExecutor:
    """Finalizes the feature, pushes the branch and opens a pull request."""

    launchers: LauncherProvider
    specflow: SpecflowCli
    git: GitClient

    phase_name: ClassVar[str] = "complete"
    eligible_phases: ClassVar[tuple[Phase, ...]] = (Phase.IMPLEMENTED, Phase.COMPLETING)

    def can_run(self, feature: Feature) -> bool:
        return feature.phase in self.eligible_phases

    async def _ensure_verify_doc(
        self, feature: Feature, feature_dir: Path, options: PhaseExecutorOptions
    ) -> None:
        if (feature_dir / "verify.md").is_file():
            return
        logger.info("Generating verify.md", feature_id=feature.feature_id)
        try:
            result = await self.launchers.launch(
                LaunchRequest(
                    session_id=f"{options.session_id}-verify",
                    prompt=build_verify_prompt(feature.feature_id, feature_dir),
                    work_dir=Path(options.worktree_path),
                    timeout_seconds=VERIFY_TIMEOUT_SECONDS,
                    phase="verify",
                    restrict_tools=True,
                    cancel_event=options.cancel_event,
                )
            )
        except LaunchError as e:
            logger.warning("verify.md generation failed to start", error=str(e))
            return
        if result.exit_code != 0:
            logger.warning(
                "verify.md generation failed",
                feature_id=feature.feature_id,
                exit_code=result.exit_code,
            )

    async def _create_review_work_item(
        self,
        events: Blackboard,
        feature: Feature,
        pr_number: int,
        pr_url: str,
        branch: str,
    ) -> None:
        created = await events.create_work_item(
            WorkItem(
                item_id=f"review-{feature.project_id}-pr-{pr_number}",
                title=f"Code review: PR #{pr_number} - {feature.feature_id}",
                description=(
                    f"AI code review for feature PR #{pr_number}\n"
                    f"Feature: {feature.feature_id}"
                ),
                project_id=feature.project_id,
                source="code_review",
                source_ref=pr_url,
                priority="P1",
                metadata={
                    "pr_number": pr_number,
                    "pr_url": pr_url,
                    "repo": feature.github_repo,
                    "branch": branch,
                    "main_branch": feature.main_branch,
                    "feature_id": feature.feature_id,
                    "review_status": None,
                },
            )
        )
        if not created:
            logger.info("Review work item already exists", pr_number=pr_number)

    async def execute(
        self, feature: Feature, events: Blackboard, options: PhaseExecutorOptions
    ) -> PhaseResult:
        feature_id = feature.feature_id
        worktree = Path(options.worktree_path)
        main_branch = feature.main_branch or "main"
        log = logger.bind(feature_id=feature_id, phase=self.phase_name)

        try:
            feature_dir = resolve_feature_dir(worktree, feature_id)
            await self._ensure_verify_doc(feature, feature_dir, options)

            sf_result = await self.specflow.run(
                ["complete", feature_id],
                cwd=worktree,
                timeout=options.timeout_seconds or COMPLETE_TIMEOUT_SECONDS,
            )
            if not sf_result.ok:
                return PhaseResult.failure(
                    f"specflow complete exited {sf_result.exit_code}: "
                    f"{sf_result.stderr.strip()}"
                )

            sha = await self.git.commit_files(
                worktree,
                completion_artifacts(worktree, feature_dir),
                f"chore(specflow): {feature_id} completion artifacts",
            )
            if sha:
                await events.append_event(
                    "commit.created",
                    f"Committed completion artifacts for {feature_id}",
                    actor_id=options.session_id,
                    target_id=feature_id,
                    target_type="feature",
                    metadata={"feature_id": feature_id, "commit_sha": sha},
                )

            branch = await self.git.current_branch(worktree)
            if not await self.git.has_commits_ahead(worktree, main_branch):
                log.info("No commits ahead of main, skipping PR")
                return PhaseResult.success(
                    metadata={
                        "skipped_pr": True,
                        "reason": f"no commits ahead of {main_branch}",
                    }
                )

            await self.git.push_branch(worktree, branch)

            spec_path, plan_path = feature_dir / "spec.md", feature_dir / "plan.md"
            body = build_pr_body(
                feature_id,
                spec_path.read_text(encoding="utf-8") if spec_path.is_file() else "",
                plan_path.read_text(encoding="utf-8") if plan_path.is_file() else "",
                parse_numstat(await self.git.diff_numstat(worktree, main_branch)),
            )
            pr_number, pr_url = await self.git.create_pr(
                worktree,
                f"feat(specflow): {feature_id} {feature.title}",
                body,
                base=main_branch,
                head=branch,
                repo=feature.github_repo,
            )
            await events.append_event(
                "pr.created",
                f"Created PR #{pr_number} for {feature_id}",
                actor_id=options.session_id,
                target_id=feature_id,
                target_type="feature",
                metadata={"pr_number": pr_number, "pr_url": pr_url, "branch": branch},
            )

            if feature.github_repo:
                await self._create_review_work_item(
                    events, feature, pr_number, pr_url, branch
                )

        except (CommandError, OSError) as e:
            log.error("Complete phase failed", error=str(e))
            return PhaseResult.failure(f"complete phase error: {e}")
        except Exception as e:
            log.exception("Complete phase error")
            return PhaseResult.failure(f"complete phase error: {e}")

        try:
            await self.git.remove_worktree(Path(options.project_path), worktree)
        except (CommandError, OSError) as e:
            log.warning("Worktree cleanup failed", error=str(e))

        metadata: dict[str, Any] = {"pr_number": pr_number, "pr_url": pr_url}
        if sha:
            metadata["commit_sha"] = sha
        return PhaseResult.success(metadata=metadata)
