"""Coding agent process launcher.

Runs the agent CLI as a child process in its own process group, streams its
structured output into a per-session log file, and enforces the invocation
deadline with SIGTERM followed by SIGKILL after a grace period.
"""

import asyncio
import contextlib
import json
import os
import signal
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Protocol

import structlog

from featureflow import telemetry
from featureflow.config import FlowConfig
from featureflow.errors import LaunchError
from featureflow.models import TIMEOUT_EXIT_CODE, LaunchRequest, LaunchResult

logger = structlog.get_logger(__name__)

# Stream-json lines can carry whole file contents
STREAM_LINE_LIMIT = 16 * 1024 * 1024


class AgentLauncher(Protocol):
    """Anything that can turn a LaunchRequest into a LaunchResult."""

    async def __call__(self, request: LaunchRequest) -> LaunchResult: ...


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Args:
        tool_name: Name of the tool (Read, Write, Bash, etc.)
        tool_input: Dictionary of tool input parameters

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    file_path = tool_input.get("file_path") or ""
    filename = Path(file_path).name if file_path else "file"

    if tool_name == "Read":
        return f"→ Reading {filename}..."
    elif tool_name == "Write":
        return f"→ Writing {filename}..."
    elif tool_name == "Edit":
        return f"→ Editing {filename}..."
    elif tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 80:
            command = command[:80] + "..."
        return f"→ Running: {command}"
    elif tool_name == "Grep":
        return f"→ Searching for {tool_input.get('pattern', '')}..."
    elif tool_name == "Glob":
        return f"→ Finding {tool_input.get('pattern', '')}..."
    else:
        return f"→ {tool_name}..."


def _render_content(content: object) -> list[str]:
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        return [
            str(block.get("text", "")) if isinstance(block, dict) else str(block)
            for block in content
        ]
    return [str(content)]


def format_stream_line(line: str) -> list[str]:
    """Render one line of agent stream-json output for the session log.

    Assistant text, tool invocations, tool errors and the final result are
    rendered; anything else is passed through verbatim. Never raises.

    Args:
        line: Raw output line (without trailing newline)

    Returns:
        Lines to write to the log
    """
    stripped = line.strip()
    if not stripped:
        return []
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return [line]
    if not isinstance(event, dict):
        return [line]

    try:
        event_type = event.get("type")
        if event_type == "assistant":
            rendered: list[str] = []
            for item in event.get("message", {}).get("content", []):
                if item.get("type") == "text" and item.get("text"):
                    rendered.append(item["text"])
                elif item.get("type") == "tool_use":
                    rendered.append(
                        format_tool_call(item.get("name", ""), item.get("input") or {})
                    )
            return rendered
        if event_type == "user":
            rendered = []
            for item in event.get("message", {}).get("content", []):
                if item.get("type") == "tool_result" and item.get("is_error"):
                    detail = " ".join(_render_content(item.get("content", "")))
                    rendered.append(f"✗ Tool error: {detail[:200]}")
            return rendered
        if event_type == "result":
            return ["=== Result ===", str(event.get("result", ""))]
        if event_type == "system":
            return [f"[system] {event.get('subtype', '')}".rstrip()]
    except (AttributeError, TypeError):
        pass
    return [line]


@dataclass
class ClaudeLauncher:
    """Default launcher running the claude CLI.

    Attributes:
        agent_bin: Agent executable name or path
        log_dir: Directory for per-session log files
        grace_seconds: Wait between SIGTERM and SIGKILL
        restricted_tools: Tools allowed when a request restricts tools
        stream_output: Use stream-json output (False runs plain --print)
    """

    agent_bin: str = "claude"
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    grace_seconds: float = 10.0
    restricted_tools: list[str] = field(
        default_factory=lambda: ["Read", "Write", "Edit", "Glob", "Grep"]
    )
    stream_output: bool = True

    @classmethod
    def from_config(cls, config: FlowConfig) -> "ClaudeLauncher":
        return cls(
            agent_bin=config.agent_bin,
            log_dir=config.log_dir,
            grace_seconds=config.kill_grace_seconds,
            restricted_tools=list(config.restricted_tools),
            stream_output=config.stream_output,
        )

    def build_command(self, request: LaunchRequest) -> list[str]:
        """Build the agent command line for a request."""
        cmd = [self.agent_bin]
        if self.stream_output:
            cmd.extend(
                [
                    "-p",
                    request.prompt,
                    "--output-format",
                    "stream-json",
                    "--verbose",  # Required for stream-json with -p
                    "--dangerously-skip-permissions",
                ]
            )
        else:
            cmd.extend(["--print", "--verbose", request.prompt])
        if request.restrict_tools:
            cmd.extend(["--allowedTools", ",".join(self.restricted_tools)])
        return cmd

    async def __call__(self, request: LaunchRequest) -> LaunchResult:
        """Run the agent for one request.

        Raises:
            LaunchError: If the process could not be spawned
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{request.session_id}.log"
        cmd = self.build_command(request)

        logger.info(
            "Launching agent",
            session_id=request.session_id,
            work_dir=str(request.work_dir),
            timeout=request.timeout_seconds,
            restrict_tools=request.restrict_tools,
        )

        started = time.monotonic()
        with open(log_path, "w", encoding="utf-8") as log_file:
            log_file.write(
                f"# session: {request.session_id}\n"
                f"# started: {datetime.now(timezone.utc).isoformat()}\n"
                f"# cwd: {request.work_dir}\n"
                f"# timeout: {request.timeout_seconds}s\n\n"
            )
            log_file.flush()

            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=str(request.work_dir),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                    limit=STREAM_LINE_LIMIT,
                )
            except OSError as e:
                log_file.write(f"[featureflow] spawn failed: {e}\n")
                logger.error(
                    "Agent spawn failed", session_id=request.session_id, error=str(e)
                )
                raise LaunchError(
                    f"Failed to start {self.agent_bin}: {e}",
                    details={"session_id": request.session_id},
                ) from e

            stdout_lines: list[str] = []
            stderr_chunks: list[str] = []
            stdout_task = asyncio.create_task(
                self._pump_stdout(process.stdout, stdout_lines, log_file)
            )
            stderr_task = asyncio.create_task(
                self._pump_stderr(process.stderr, stderr_chunks)
            )

            try:
                stop_reason = await self._wait_or_stop(process, request)
            except asyncio.CancelledError:
                await self._drain_readers(stdout_task, stderr_task)
                log_file.write("\n# cancelled by caller\n")
                raise

            await self._drain_readers(stdout_task, stderr_task)

            stderr = "".join(stderr_chunks)
            if stop_reason is not None:
                exit_code = TIMEOUT_EXIT_CODE
                stderr = f"{stderr.rstrip()}\n{stop_reason}".lstrip()
            else:
                exit_code = process.returncode if process.returncode is not None else 0

            if stderr:
                log_file.write("\n=== stderr ===\n")
                log_file.write(stderr)
                log_file.write("\n")
            log_file.write(f"\n# exit code: {exit_code}\n")

        elapsed = time.monotonic() - started
        telemetry.record_agent_duration(elapsed, request.phase)
        logger.info(
            "Agent finished",
            session_id=request.session_id,
            exit_code=exit_code,
            duration_seconds=round(elapsed, 1),
            log_path=str(log_path),
        )
        return LaunchResult(
            exit_code=exit_code,
            stdout="".join(stdout_lines),
            stderr=stderr,
            log_path=log_path,
        )

    async def _pump_stdout(
        self,
        stream: asyncio.StreamReader | None,
        captured: list[str],
        log_file: IO[str],
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace")
            captured.append(text)
            rendered = (
                format_stream_line(text.rstrip("\n"))
                if self.stream_output
                else [text.rstrip("\n")]
            )
            for entry in rendered:
                log_file.write(entry + "\n")
            log_file.flush()

    async def _pump_stderr(
        self, stream: asyncio.StreamReader | None, captured: list[str]
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            captured.append(chunk.decode("utf-8", errors="replace"))

    async def _wait_or_stop(
        self, process: asyncio.subprocess.Process, request: LaunchRequest
    ) -> str | None:
        """Wait for exit, or stop the process on deadline or cancellation.

        Returns:
            None on normal exit, otherwise the stderr annotation for the stop
        """
        wait_task = asyncio.create_task(process.wait())
        waiters: set[asyncio.Future] = {wait_task}
        cancel_task: asyncio.Task | None = None
        if request.cancel_event is not None:
            cancel_task = asyncio.create_task(request.cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=request.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # The caller is gone; the agent must not outlive it
            if not wait_task.done():
                signals_sent = await asyncio.shield(self._terminate(process, wait_task))
                logger.warning(
                    "Agent stopped",
                    session_id=request.session_id,
                    reason="caller cancelled",
                    signals=signals_sent,
                )
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if wait_task in done:
            return None

        if cancel_task is not None and cancel_task in done:
            reason = "cancelled"
        else:
            reason = f"timed out after {request.timeout_seconds:g}s"

        signals_sent = await self._terminate(process, wait_task)
        logger.warning(
            "Agent stopped",
            session_id=request.session_id,
            reason=reason,
            signals=signals_sent,
        )
        return f"[featureflow] agent {reason} ({', '.join(signals_sent)})"

    async def _terminate(
        self, process: asyncio.subprocess.Process, wait_task: asyncio.Task
    ) -> list[str]:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        sent = ["SIGTERM"]
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(wait_task), self.grace_seconds)
        except asyncio.TimeoutError:
            sent.append("SIGKILL")
            self._signal_group(process, signal.SIGKILL)
            await wait_task
        return sent

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(sig)

    async def _drain_readers(self, *tasks: asyncio.Task) -> None:
        # Pipes close when the process group exits; bound the wait regardless
        done, pending = await asyncio.wait(tasks, timeout=self.grace_seconds + 5)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None:
                logger.debug("Output reader failed", error=str(task.exception()))


class LauncherProvider:
    """Holds the single active launcher.

    Production code uses the default launcher; test harnesses swap in a
    replacement with set() or the override() context manager and restore
    the default with reset().
    """

    def __init__(self, default: AgentLauncher) -> None:
        self._default = default
        self._current = default

    @classmethod
    def from_config(cls, config: FlowConfig) -> "LauncherProvider":
        return cls(ClaudeLauncher.from_config(config))

    @property
    def current(self) -> AgentLauncher:
        return self._current

    def set(self, launcher: AgentLauncher) -> None:
        self._current = launcher

    def reset(self) -> None:
        self._current = self._default

    @contextlib.contextmanager
    def override(self, launcher: AgentLauncher) -> Iterator[AgentLauncher]:
        previous = self._current
        self._current = launcher
        try:
            yield launcher
        finally:
            self._current = previous

    async def launch(self, request: LaunchRequest) -> LaunchResult:
        """Run a request through the active launcher."""
        return await self._current(request)
