"""Tests for the git client against real temporary repositories."""

import shutil
import stat
import subprocess
from pathlib import Path

import pytest

from featureflow.errors import CommandError
from featureflow.worktree import GitClient

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def run_git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


@pytest.fixture
def git_identity(monkeypatch) -> None:
    for key in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(key, "Featureflow Test")
    for key in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(key, "test@example.com")


@pytest.fixture
def project_repo(tmp_path: Path, git_identity) -> Path:
    """A project repository with one commit on main."""
    repo = tmp_path / "project"
    repo.mkdir()
    run_git(repo, "init", "-q")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("# Project\n")
    run_git(repo, "add", "README.md")
    run_git(repo, "commit", "-q", "-m", "initial")
    return repo


class TestWorktrees:
    """Tests for worktree lifecycle."""

    @pytest.mark.asyncio
    async def test_create_and_reuse(self, tmp_path: Path, project_repo: Path) -> None:
        git = GitClient()
        worktree = tmp_path / "worktrees" / "proj" / "f-1"

        created = await git.create_worktree(project_repo, worktree, "specflow-f-1", "main")
        reused = await git.ensure_worktree(project_repo, worktree, "specflow-f-1", "main")

        assert created == reused == worktree
        assert (worktree / "README.md").exists()
        assert await git.current_branch(worktree) == "specflow-f-1"

    @pytest.mark.asyncio
    async def test_existing_branch_is_checked_out(
        self, tmp_path: Path, project_repo: Path
    ) -> None:
        run_git(project_repo, "branch", "specflow-f-2")
        git = GitClient()

        worktree = await git.ensure_worktree(
            project_repo, tmp_path / "wt", "specflow-f-2", "main"
        )

        assert await git.current_branch(worktree) == "specflow-f-2"

    @pytest.mark.asyncio
    async def test_remove_worktree(self, tmp_path: Path, project_repo: Path) -> None:
        git = GitClient()
        worktree = await git.create_worktree(project_repo, tmp_path / "wt", "b", "main")

        await git.remove_worktree(project_repo, worktree)

        assert not worktree.exists()


class TestCommits:
    """Tests for commit helpers and diff queries."""

    @pytest.mark.asyncio
    async def test_commit_all_returns_sha(self, tmp_path: Path, project_repo: Path) -> None:
        git = GitClient()
        worktree = await git.create_worktree(project_repo, tmp_path / "wt", "b", "main")
        (worktree / "app.py").write_text("print('hi')\n")

        sha = await git.commit_all(worktree, "feat: app")

        assert sha == run_git(worktree, "rev-parse", "HEAD").strip()
        assert await git.has_commits_ahead(worktree, "main")
        assert await git.changed_files(worktree, "main") == ["app.py"]
        assert "app.py" in await git.diff_numstat(worktree, "main")

    @pytest.mark.asyncio
    async def test_commit_all_without_changes(
        self, tmp_path: Path, project_repo: Path
    ) -> None:
        git = GitClient()
        worktree = await git.create_worktree(project_repo, tmp_path / "wt", "b", "main")

        assert await git.commit_all(worktree, "nothing") is None
        assert not await git.has_commits_ahead(worktree, "main")

    @pytest.mark.asyncio
    async def test_commit_files_only_stages_given_paths(
        self, tmp_path: Path, project_repo: Path
    ) -> None:
        git = GitClient()
        worktree = await git.create_worktree(project_repo, tmp_path / "wt", "b", "main")
        (worktree / "keep.md").write_text("keep\n")
        (worktree / "scratch.txt").write_text("scratch\n")

        sha = await git.commit_files(worktree, ["keep.md"], "docs")

        assert sha is not None
        assert run_git(worktree, "status", "--porcelain").strip() == "?? scratch.txt"
        assert await git.commit_files(worktree, [], "empty") is None

    @pytest.mark.asyncio
    async def test_failing_command_raises(self, tmp_path: Path, project_repo: Path) -> None:
        with pytest.raises(CommandError, match="git rev-parse exited"):
            await GitClient().git(["rev-parse", "no-such-ref"], project_repo)


class TestCreatePr:
    """Tests for pull request creation via a stand-in gh binary."""

    def make_gh(self, tmp_path: Path, body: str) -> str:
        script = tmp_path / "gh"
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR)
        return str(script)

    @pytest.mark.asyncio
    async def test_parses_pr_url(self, tmp_path: Path) -> None:
        gh = self.make_gh(
            tmp_path, "echo 'Creating pull request'\necho https://github.com/o/r/pull/42"
        )

        number, url = await GitClient(gh_bin=gh).create_pr(
            tmp_path, "title", "body", base="main", head="b", repo="o/r"
        )

        assert number == 42
        assert url == "https://github.com/o/r/pull/42"

    @pytest.mark.asyncio
    async def test_gh_failure_raises(self, tmp_path: Path) -> None:
        gh = self.make_gh(tmp_path, "echo 'no auth' >&2\nexit 1")

        with pytest.raises(CommandError, match="no auth"):
            await GitClient(gh_bin=gh).create_pr(
                tmp_path, "t", "b", base="main", head="b"
            )
