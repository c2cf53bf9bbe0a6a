"""Lesson extraction runs.

After a feature's pull request has been reviewed and merged, a reflect run
asks the agent to turn the cycle's history into structured lessons, then
validates, deduplicates and persists them.
"""

import tempfile
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import structlog

from featureflow import telemetry
from featureflow.blackboard import Blackboard, WorkItem
from featureflow.errors import LaunchError, ReflectError
from featureflow.launcher import LauncherProvider
from featureflow.models import LaunchRequest
from featureflow.reflect.analyzer import (
    ReflectContext,
    ReflectMetadata,
    build_reflect_prompt,
    gather_reflect_inputs,
    parse_lessons_output,
    parse_reflect_meta,
)
from featureflow.reflect.schema import LessonRecord, make_lesson_id, validate_lesson
from featureflow.reflect.store import (
    all_lessons,
    find_duplicate,
    log_duplicate_lesson,
    persist_lesson,
)

logger = structlog.get_logger(__name__)

REFLECT_COMPLETED = "reflect.completed"
REFLECT_FAILED = "reflect.failed"
ORCHESTRATOR_ACTOR = "reflect-orchestrator"

# Keys the engine fills in itself; agent-supplied values are discarded
_SYNTHESIZED_KEYS = frozenset(
    {"id", "project", "workItemId", "work_item_id", "createdAt", "created_at"}
)


class ReflectMode(str, Enum):
    """How the agent hands back its lessons."""

    INLINE = "inline"  # JSON array in the final result message
    FILE = "file"  # JSON array written to a temp file


REFLECT_TIMEOUTS: dict[ReflectMode, float] = {
    ReflectMode.INLINE: 3 * 60,
    ReflectMode.FILE: 10 * 60,
}


@dataclass
class ReflectResult:
    """Counts from one reflect run."""

    lessons_extracted: int
    lessons_deduped: int
    lessons_persisted: int
    categories: list[str]
    work_item_id: str


@dataclass
class LessonEngine:
    """Runs lesson extraction for completed feature cycles.

    Attributes:
        store: Event log lessons are read from and written to
        launchers: Source of the active agent launcher
        mode: Output channel the agent uses
        work_dir: Working directory for the agent process
        output_dir: Where FILE mode places the agent's lesson file
    """

    store: Blackboard
    launchers: LauncherProvider
    mode: ReflectMode = ReflectMode.INLINE
    work_dir: Path = field(default_factory=Path.home)
    output_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    async def _collect_output(
        self, metadata: ReflectMetadata, prompt_context: ReflectContext, now: datetime
    ) -> str:
        stamp = int(now.timestamp() * 1000)
        session_id = f"reflect-{metadata.implementation_work_item_id}-{stamp}"
        output_path = (
            self.output_dir / f"reflect-lessons-{stamp}.json"
            if self.mode == ReflectMode.FILE
            else None
        )
        prompt = build_reflect_prompt(
            prompt_context, str(output_path) if output_path else None
        )

        try:
            launch = await self.launchers.launch(
                LaunchRequest(
                    session_id=session_id,
                    prompt=prompt,
                    work_dir=self.work_dir,
                    timeout_seconds=REFLECT_TIMEOUTS[self.mode],
                    phase="reflect",
                    restrict_tools=self.mode == ReflectMode.INLINE,
                )
            )
        except LaunchError as e:
            raise ReflectError(f"Reflect agent failed to start: {e}") from e

        if output_path is not None:
            if not output_path.exists():
                raise ReflectError(
                    f"Reflect agent did not write lessons file at {output_path}",
                    details={"exit_code": launch.exit_code},
                )
            try:
                return output_path.read_text(encoding="utf-8")
            except UnicodeDecodeError as e:
                raise ReflectError(
                    f"Reflect lessons file is not valid UTF-8: {e}",
                    details={"path": str(output_path)},
                ) from e
            finally:
                output_path.unlink(missing_ok=True)

        text = launch.result_text
        if not text.strip():
            raise ReflectError(
                f"Reflect agent produced no output (exit {launch.exit_code})",
                details={"stderr": launch.stderr[-500:]},
            )
        return text

    async def run(self, metadata: ReflectMetadata) -> ReflectResult:
        """Extract, validate, deduplicate and persist lessons for one cycle.

        Raises:
            ReflectError: If the agent cannot be run or its output is not a
                JSON array
        """
        work_item_id = metadata.implementation_work_item_id
        log = logger.bind(work_item_id=work_item_id, mode=self.mode.value)
        log.info("Starting reflect")

        context = await gather_reflect_inputs(self.store, metadata)
        now = datetime.now(timezone.utc)
        raw_lessons = parse_lessons_output(
            await self._collect_output(metadata, context, now)
        )

        existing: list[LessonRecord] = await all_lessons(self.store)
        extracted = deduped = persisted = 0
        categories: list[str] = []

        for index, raw in enumerate(raw_lessons, start=1):
            extracted += 1
            payload = raw
            if isinstance(raw, dict):
                payload = {k: v for k, v in raw.items() if k not in _SYNTHESIZED_KEYS}
                payload.update(
                    id=make_lesson_id(metadata.project_id, index, now),
                    project=metadata.project_id,
                    workItemId=work_item_id,
                    createdAt=now.isoformat(),
                )

            validation = validate_lesson(payload)
            if validation.lesson is None:
                log.warning("Lesson failed validation", index=index, error=validation.error)
                telemetry.record_lesson("invalid")
                continue

            lesson = validation.lesson
            if lesson.category not in categories:
                categories.append(lesson.category)

            duplicate = find_duplicate(lesson, existing)
            if duplicate is not None:
                deduped += 1
                await log_duplicate_lesson(self.store, lesson, duplicate.id)
                telemetry.record_lesson("deduplicated")
                log.info("Duplicate lesson skipped", index=index, duplicate_of=duplicate.id)
                continue

            await persist_lesson(self.store, lesson)
            existing.append(lesson)
            persisted += 1
            telemetry.record_lesson("persisted")
            log.info("Lesson persisted", lesson_id=lesson.id, category=lesson.category)

        result = ReflectResult(
            lessons_extracted=extracted,
            lessons_deduped=deduped,
            lessons_persisted=persisted,
            categories=categories,
            work_item_id=work_item_id,
        )
        await self.store.append_event(
            REFLECT_COMPLETED,
            f"Reflect completed: {persisted} lessons persisted",
            actor_id=ORCHESTRATOR_ACTOR,
            target_id=work_item_id,
            target_type="work_item",
            metadata=asdict(result),
        )
        log.info("Reflect completed", extracted=extracted, deduped=deduped, persisted=persisted)
        return result


async def handle_reflect_work_item(
    store: Blackboard, engine: LessonEngine, item: WorkItem, session_id: str
) -> bool:
    """Run reflect for a work item, then complete or release it.

    Returns:
        True if lessons were extracted and the item completed; False if the
        item is not a reflect item or the run failed (item released)
    """
    try:
        metadata = parse_reflect_meta(item.metadata)
    except ValueError as e:
        logger.debug("Not a reflect work item", item_id=item.item_id, reason=str(e))
        return False

    started = time.monotonic()
    try:
        result = await engine.run(metadata)
    except (ReflectError, OSError) as e:
        logger.error("Reflect failed", item_id=item.item_id, error=str(e))
        await _release_failed_item(store, item, metadata, session_id, started, str(e))
        return False
    except Exception as e:
        logger.exception("Unexpected reflect error", item_id=item.item_id)
        await _release_failed_item(
            store, item, metadata, session_id, started, f"unexpected error: {e}"
        )
        return False

    duration_ms = int((time.monotonic() - started) * 1000)
    await store.complete_work_item(item.item_id)
    await store.append_event(
        "work_item.completed",
        f"Reflect completed for PR #{metadata.pr_number} "
        f"({round(duration_ms / 1000)}s, {result.lessons_persisted} lessons)",
        actor_id=session_id,
        target_id=item.item_id,
        target_type="work_item",
        metadata={"pr_number": metadata.pr_number, "duration_ms": duration_ms},
    )
    return True


async def _release_failed_item(
    store: Blackboard,
    item: WorkItem,
    metadata: ReflectMetadata,
    session_id: str,
    started: float,
    error: str,
) -> None:
    duration_ms = int((time.monotonic() - started) * 1000)
    await store.release_work_item(item.item_id)
    await store.append_event(
        REFLECT_FAILED,
        f"Reflect failed for PR #{metadata.pr_number}: {error}",
        actor_id=session_id,
        target_id=item.item_id,
        target_type="work_item",
        metadata={"error": error, "duration_ms": duration_ms},
    )
