"""Per-feature lock for worktree ownership.

At most one phase invocation, in any process, may work inside a feature's
worktree. The lock file records who holds it (pid, session and phase) so a
blocked runner can say what it is waiting on. Locks whose pid is gone are
stale and get taken over.
"""

import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

import structlog

from featureflow.errors import FeatureflowError

logger = structlog.get_logger(__name__)


class FeatureLockedError(FeatureflowError):
    """Another running process holds the feature's lock."""

    pass


@dataclass(frozen=True)
class LockHolder:
    """Contents of a feature lock file."""

    pid: int
    session_id: str | None = None
    phase: str | None = None
    acquired_at: str | None = None

    def describe(self) -> str:
        parts = [f"pid {self.pid}"]
        if self.session_id:
            parts.append(f"session {self.session_id}")
        if self.phase:
            parts.append(f"phase {self.phase}")
        return ", ".join(parts)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Owned by another user
        return True
    return True


class FeatureLock:
    """Exclusive lock on one feature's worktree.

    The lock file is created with O_EXCL, so two runners racing for the same
    feature cannot both win.

    Usage:
        with FeatureLock(state_dir, "F-001", session_id="run-1", phase="planning"):
            ...

    Attributes:
        feature_id: Feature the lock guards
        lock_path: `<state_dir>/<feature_id>.lock`
    """

    def __init__(
        self,
        state_dir: Path,
        feature_id: str,
        session_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        self.feature_id = feature_id
        self.session_id = session_id
        self.phase = phase
        self.lock_path = Path(state_dir) / f"{feature_id}.lock"

    def holder(self) -> LockHolder | None:
        """Current lock record, or None if unlocked or unreadable.

        Plain-pid lock files are accepted as well as the JSON record.
        """
        try:
            raw = self.lock_path.read_text().strip()
        except FileNotFoundError:
            return None
        if raw.isdigit():
            return LockHolder(pid=int(raw))
        try:
            data = json.loads(raw)
            return LockHolder(
                pid=int(data["pid"]),
                session_id=data.get("session_id"),
                phase=data.get("phase"),
                acquired_at=data.get("acquired_at"),
            )
        except (ValueError, TypeError, KeyError):
            return None

    def acquire(self) -> bool:
        """Try to take the lock.

        Returns:
            True if acquired, False if a live process holds it
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        record = LockHolder(
            pid=os.getpid(),
            session_id=self.session_id,
            phase=self.phase,
            acquired_at=datetime.now(timezone.utc).isoformat(),
        )
        # One retry: the second attempt follows removal of a stale lock
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                current = self.holder()
                if current is not None and _pid_alive(current.pid):
                    return False
                logger.warning(
                    "Taking over stale feature lock",
                    feature_id=self.feature_id,
                    previous=current.describe() if current else "unreadable",
                )
                self.lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(record), f)
            return True
        return False

    def release(self) -> None:
        """Remove the lock if this process holds it.

        A lock that was taken over by someone else is left alone.
        """
        current = self.holder()
        if current is not None and current.pid != os.getpid():
            return
        self.lock_path.unlink(missing_ok=True)

    def __enter__(self) -> "FeatureLock":
        """Acquire on entry.

        Raises:
            FeatureLockedError: If a running process holds the lock
        """
        if not self.acquire():
            current = self.holder()
            held_by = current.describe() if current else "unknown holder"
            raise FeatureLockedError(
                f"Feature {self.feature_id} already in progress ({held_by})",
                details={
                    "lock_path": str(self.lock_path),
                    "holder_pid": current.pid if current else None,
                    "holder_session": current.session_id if current else None,
                },
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
