"""Tests for the complete executor."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from featureflow.blackboard import Blackboard
from featureflow.errors import CommandError
from featureflow.launcher import LauncherProvider
from featureflow.models import CliResult, Feature, LaunchResult, Phase
from featureflow.phases import CompleteExecutor, PhaseExecutorOptions
from featureflow.phases.complete import completion_artifacts


def make_feature_dir(worktree: Path, with_verify: bool = True) -> Path:
    feature_dir = worktree / ".specify" / "specs" / "F-1-export"
    feature_dir.mkdir(parents=True)
    (feature_dir / "spec.md").write_text(
        "## Problem Statement\n\nReports cannot be exported.\n"
    )
    (feature_dir / "plan.md").write_text("## Approach\n\n- Stream rows\n")
    if with_verify:
        (feature_dir / "verify.md").write_text("# Verify\n")
    return feature_dir


def make_git(ahead: bool = True) -> MagicMock:
    git = MagicMock()
    git.commit_files = AsyncMock(return_value="def456")
    git.current_branch = AsyncMock(return_value="specflow-f-1")
    git.has_commits_ahead = AsyncMock(return_value=ahead)
    git.push_branch = AsyncMock()
    git.diff_numstat = AsyncMock(return_value="12\t3\tsrc/export.py\n")
    git.create_pr = AsyncMock(return_value=(42, "https://github.com/o/r/pull/42"))
    git.remove_worktree = AsyncMock()
    return git


def make_specflow(exit_code: int = 0, stderr: str = "") -> MagicMock:
    specflow = MagicMock()
    specflow.run = AsyncMock(return_value=CliResult(exit_code, "", stderr))
    return specflow


@pytest.fixture
def options(tmp_path: Path) -> PhaseExecutorOptions:
    worktree = tmp_path / "wt"
    worktree.mkdir()
    return PhaseExecutorOptions(
        worktree_path=worktree, project_path=tmp_path / "project", session_id="sess"
    )


@pytest.fixture
def feature() -> Feature:
    return Feature(
        "F-1", "Export", "proj", phase=Phase.COMPLETING, github_repo="o/r"
    )


class TestCompletionArtifacts:
    """Tests for the commit allow-list."""

    def test_only_allow_listed_files(self, tmp_path: Path) -> None:
        feature_dir = make_feature_dir(tmp_path)
        (feature_dir / "notes.txt").write_text("scratch")
        (tmp_path / "CHANGELOG.md").write_text("## 0.1\n")

        paths = completion_artifacts(tmp_path, feature_dir)

        assert paths == [
            ".specify/specs/F-1-export/spec.md",
            ".specify/specs/F-1-export/plan.md",
            ".specify/specs/F-1-export/verify.md",
            "CHANGELOG.md",
        ]


class TestCompleteExecutor:
    """Tests for CompleteExecutor.execute()."""

    @pytest.mark.asyncio
    async def test_opens_pr_and_queues_review(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        fake_launcher,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path)
        git = make_git()

        result = await CompleteExecutor(launchers, make_specflow(), git).execute(
            feature, store, options
        )

        assert result.succeeded
        assert result.metadata == {
            "pr_number": 42,
            "pr_url": "https://github.com/o/r/pull/42",
            "commit_sha": "def456",
        }
        # verify.md already present, no agent run
        assert fake_launcher.requests == []
        git.push_branch.assert_awaited_once_with(options.worktree_path, "specflow-f-1")

        kwargs = git.create_pr.call_args.kwargs
        body = git.create_pr.call_args.args[2]
        assert kwargs == {"base": "main", "head": "specflow-f-1", "repo": "o/r"}
        assert "Reports cannot be exported." in body
        assert "| `src/export.py` | +12 -3 |" in body

        item = await store.get_work_item("review-proj-pr-42")
        assert item is not None
        assert item.metadata["pr_number"] == 42
        assert item.metadata["feature_id"] == "F-1"
        assert len(await store.query_events(event_type="pr.created")) == 1
        git.remove_worktree.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_commits_ahead_skips_pr(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path)
        git = make_git(ahead=False)

        result = await CompleteExecutor(launchers, make_specflow(), git).execute(
            feature, store, options
        )

        assert result.succeeded
        assert result.metadata == {"skipped_pr": True, "reason": "no commits ahead of main"}
        git.push_branch.assert_not_called()
        git.create_pr.assert_not_called()

    @pytest.mark.asyncio
    async def test_generates_missing_verify_doc(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        fake_launcher,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path, with_verify=False)
        fake_launcher.results = [LaunchResult(1, "", "gave up")]

        result = await CompleteExecutor(launchers, make_specflow(), make_git()).execute(
            feature, store, options
        )

        # A failed verification run does not fail the phase
        assert result.succeeded
        request = fake_launcher.requests[0]
        assert request.session_id == "sess-verify"
        assert request.phase == "verify"
        assert request.restrict_tools is True

    @pytest.mark.asyncio
    async def test_specflow_complete_failure(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path)
        git = make_git()

        result = await CompleteExecutor(
            launchers, make_specflow(1, "unchecked tasks"), git
        ).execute(feature, store, options)

        assert result.error == "specflow complete exited 1: unchecked tasks"
        git.commit_files.assert_not_called()

    @pytest.mark.asyncio
    async def test_pr_failure(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path)
        git = make_git()
        git.create_pr = AsyncMock(side_effect=CommandError("gh pr create exited 1"))

        result = await CompleteExecutor(launchers, make_specflow(), git).execute(
            feature, store, options
        )

        assert result.error == "complete phase error: gh pr create exited 1"
        git.remove_worktree.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_github_repo_no_review_item(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path)
        feature = Feature("F-1", "Export", "proj", phase=Phase.COMPLETING)

        result = await CompleteExecutor(launchers, make_specflow(), make_git()).execute(
            feature, store, options
        )

        assert result.succeeded
        assert await store.list_work_items() == []

    @pytest.mark.asyncio
    async def test_worktree_cleanup_failure_is_ignored(
        self,
        store: Blackboard,
        launchers: LauncherProvider,
        feature: Feature,
        options: PhaseExecutorOptions,
    ) -> None:
        make_feature_dir(options.worktree_path)
        git = make_git()
        git.remove_worktree = AsyncMock(side_effect=CommandError("busy"))

        result = await CompleteExecutor(launchers, make_specflow(), git).execute(
            feature, store, options
        )

        assert result.succeeded
