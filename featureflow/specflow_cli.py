"""Runner for the specflow spec-tooling CLI.

specflow generates phase prompts, records phase advancement, finalizes
features and scores artifacts against rubrics. All calls go through
SpecflowCli.run(), which always returns a CliResult.
"""

import asyncio
import json
import math
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from featureflow.models import TIMEOUT_EXIT_CODE, CliResult

logger = structlog.get_logger(__name__)

# Exit code reported when the binary could not be started
SPAWN_FAILED_EXIT_CODE = 127


def default_specflow_bin() -> str:
    return os.getenv("SPECFLOW_BIN", str(Path.home() / "bin" / "specflow"))


@dataclass
class SpecflowCli:
    """Async wrapper around the specflow binary.

    Attributes:
        binary: Path or name of the specflow executable
        grace_seconds: Wait between SIGTERM and SIGKILL on timeout
    """

    binary: str = field(default_factory=default_specflow_bin)
    grace_seconds: float = 5.0

    async def run(
        self,
        args: list[str],
        cwd: Path | str,
        timeout: float = 30.0,
        extra_env: dict[str, str] | None = None,
    ) -> CliResult:
        """Run specflow with the given arguments.

        Args:
            args: Arguments after the binary name
            cwd: Working directory (usually the feature worktree)
            timeout: Seconds before the process is terminated
            extra_env: Variables added to the inherited environment

        Returns:
            CliResult; exit code -1 on timeout, 127 if the binary is missing
        """
        env = {**os.environ, **(extra_env or {})}
        logger.debug("Running specflow", args=args, cwd=str(cwd))

        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("specflow spawn failed", binary=self.binary, error=str(e))
            return CliResult(
                exit_code=SPAWN_FAILED_EXIT_CODE,
                stdout="",
                stderr=f"failed to start specflow: {e}",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning("specflow timed out", args=args, timeout=timeout)
            process.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), self.grace_seconds)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
            return CliResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="",
                stderr="specflow timed out (SIGTERM)",
            )

        return CliResult(
            exit_code=process.returncode if process.returncode is not None else 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def parse_eval_score(output: str) -> int:
    """Extract a 0-100 score from `specflow eval run --json` output.

    Reads results[0].score, then score, then percentage. Values of 1 or
    less are treated as fractions and scaled to a percentage.

    Raises:
        ValueError: If the output is not JSON or carries no numeric score
    """
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ValueError(f"eval output is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("eval output is not a JSON object")

    raw = None
    results = data.get("results")
    if isinstance(results, list) and results and isinstance(results[0], dict):
        raw = results[0].get("score")
    if raw is None:
        raw = data.get("score")
    if raw is None:
        raw = data.get("percentage")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValueError("eval output carries no numeric score")

    if raw <= 1:
        raw = raw * 100
    # Round half up
    return int(math.floor(raw + 0.5))
