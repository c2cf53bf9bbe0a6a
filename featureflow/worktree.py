"""Source-control operations: worktrees, commits, pushes and pull requests.

Thin async wrappers around git and the GitHub CLI. Each feature works in its
own git worktree on a dedicated branch so phases never touch the project's
main checkout.
"""

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

import structlog

from featureflow.errors import CommandError
from featureflow.models import TIMEOUT_EXIT_CODE, CliResult

logger = structlog.get_logger(__name__)

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


@dataclass
class GitClient:
    """Runs git and gh commands with bounded timeouts.

    Attributes:
        git_bin: git executable
        gh_bin: GitHub CLI executable
        timeout_seconds: Default per-command timeout
    """

    git_bin: str = "git"
    gh_bin: str = "gh"
    timeout_seconds: float = 60.0

    async def _exec(
        self, cmd: list[str], cwd: Path | str, timeout: float | None = None
    ) -> CliResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(f"Failed to start {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout or self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CliResult(TIMEOUT_EXIT_CODE, "", f"{cmd[0]} timed out")

        return CliResult(
            exit_code=process.returncode if process.returncode is not None else 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def git(
        self,
        args: list[str],
        cwd: Path | str,
        check: bool = True,
        timeout: float | None = None,
    ) -> CliResult:
        """Run a git command.

        Raises:
            CommandError: If check is set and the command exits non-zero
        """
        result = await self._exec([self.git_bin, *args], cwd, timeout)
        if check and not result.ok:
            raise CommandError(
                f"git {args[0]} exited {result.exit_code}: {result.stderr.strip()}",
                details={"args": args, "cwd": str(cwd)},
            )
        return result

    async def create_worktree(
        self, project_path: Path, worktree_path: Path, branch: str, base: str
    ) -> Path:
        """Create a worktree on a new (or existing) branch."""
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        exists = await self.git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            project_path,
            check=False,
        )
        if exists.ok:
            await self.git(["worktree", "add", str(worktree_path), branch], project_path)
        else:
            await self.git(
                ["worktree", "add", "-b", branch, str(worktree_path), base],
                project_path,
            )
        logger.info("Created worktree", path=str(worktree_path), branch=branch)
        return worktree_path

    async def ensure_worktree(
        self, project_path: Path, worktree_path: Path, branch: str, base: str
    ) -> Path:
        """Reuse an existing worktree or create it."""
        if (worktree_path / ".git").exists():
            return worktree_path
        return await self.create_worktree(project_path, worktree_path, branch, base)

    async def remove_worktree(self, project_path: Path, worktree_path: Path) -> None:
        await self.git(
            ["worktree", "remove", "--force", str(worktree_path)], project_path
        )
        logger.info("Removed worktree", path=str(worktree_path))

    async def _commit_staged(self, worktree: Path, message: str) -> str | None:
        staged = await self.git(
            ["diff", "--cached", "--quiet"], worktree, check=False
        )
        if staged.ok:
            return None
        await self.git(["commit", "--no-verify", "-m", message], worktree)
        head = await self.git(["rev-parse", "HEAD"], worktree)
        return head.stdout.strip()

    async def commit_all(self, worktree: Path, message: str) -> str | None:
        """Stage and commit every change in the worktree.

        Returns:
            Commit SHA, or None when there was nothing to commit
        """
        await self.git(["add", "-A"], worktree)
        return await self._commit_staged(worktree, message)

    async def commit_files(
        self, worktree: Path, paths: list[str], message: str
    ) -> str | None:
        """Stage and commit only the given paths.

        Returns:
            Commit SHA, or None when there was nothing to commit
        """
        if not paths:
            return None
        await self.git(["add", "--", *paths], worktree)
        return await self._commit_staged(worktree, message)

    async def push_branch(self, worktree: Path, branch: str) -> None:
        await self.git(["push", "-u", "origin", branch], worktree, timeout=120)

    async def current_branch(self, worktree: Path) -> str:
        result = await self.git(["rev-parse", "--abbrev-ref", "HEAD"], worktree)
        return result.stdout.strip()

    async def has_commits_ahead(self, worktree: Path, base: str) -> bool:
        result = await self.git(["rev-list", "--count", f"{base}..HEAD"], worktree)
        try:
            return int(result.stdout.strip() or "0") > 0
        except ValueError:
            return False

    async def changed_files(self, worktree: Path, base: str) -> list[str]:
        """Files differing from the base branch, committed or not."""
        result = await self.git(["diff", "--name-only", base], worktree)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def diff_numstat(self, worktree: Path, base: str) -> str:
        """Per-file added/deleted line counts against the base branch."""
        result = await self.git(["diff", "--numstat", f"{base}...HEAD"], worktree)
        return result.stdout

    async def create_pr(
        self,
        worktree: Path,
        title: str,
        body: str,
        base: str,
        head: str,
        repo: str | None = None,
    ) -> tuple[int, str]:
        """Open a pull request with the GitHub CLI.

        Returns:
            Tuple of (pr_number, pr_url)

        Raises:
            CommandError: If gh fails or prints no PR URL
        """
        cmd = [
            self.gh_bin,
            "pr",
            "create",
            "--title",
            title,
            "--body",
            body,
            "--base",
            base,
            "--head",
            head,
        ]
        if repo:
            cmd.extend(["--repo", repo])
        result = await self._exec(cmd, worktree, timeout=120)
        if not result.ok:
            raise CommandError(
                f"gh pr create exited {result.exit_code}: {result.stderr.strip()}"
            )

        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        match = _PR_NUMBER_RE.search(url)
        if not match:
            raise CommandError(f"gh pr create returned no PR URL: {result.stdout!r}")
        return int(match.group(1)), url
