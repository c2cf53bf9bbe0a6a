"""Lesson persistence, retrieval and deduplication on the blackboard.

Lessons are stored as `lesson.created` events: the summary carries the
searchable text and the metadata carries the full record. They are never
updated or deleted.
"""

from collections import defaultdict
from dataclasses import dataclass

import structlog

from featureflow.blackboard import Blackboard, Event
from featureflow.reflect.schema import LessonRecord, Severity, validate_lesson

logger = structlog.get_logger(__name__)

LESSON_CREATED = "lesson.created"
LESSON_DEDUPLICATED = "lesson.deduplicated"
REFLECT_ACTOR = "reflect-agent"

DUPLICATE_THRESHOLD = 0.8
DEFAULT_QUERY_LIMIT = 50

_SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass
class LessonQuery:
    """Filters for lesson retrieval. All fields are optional."""

    project: str | None = None
    category: str | None = None
    severity: Severity | None = None
    search_text: str | None = None
    limit: int = DEFAULT_QUERY_LIMIT

    def matches(self, lesson: LessonRecord) -> bool:
        if self.project and lesson.project != self.project:
            return False
        if self.category and lesson.category != self.category:
            return False
        if self.severity and lesson.severity != self.severity:
            return False
        return True


def _lessons_from_events(events: list[Event]) -> list[LessonRecord]:
    lessons = []
    for event in events:
        validation = validate_lesson(event.metadata)
        if validation.lesson is not None:
            lessons.append(validation.lesson)
        else:
            logger.debug("Skipping unreadable stored lesson", event_id=event.id)
    return lessons


async def persist_lesson(store: Blackboard, lesson: LessonRecord) -> Event:
    """Append a lesson.created event for a validated lesson."""
    return await store.append_event(
        LESSON_CREATED,
        lesson.searchable_text,
        actor_id=REFLECT_ACTOR,
        target_id=lesson.work_item_id,
        target_type="work_item",
        metadata=lesson.to_metadata(),
    )


async def log_duplicate_lesson(
    store: Blackboard, lesson: LessonRecord, duplicate_of: str
) -> Event:
    """Record that a candidate lesson was skipped as a duplicate."""
    return await store.append_event(
        LESSON_DEDUPLICATED,
        f"Duplicate lesson skipped: {lesson.constraint[:60]}...",
        actor_id=REFLECT_ACTOR,
        target_id=lesson.work_item_id,
        target_type="work_item",
        metadata={
            "duplicate_of": duplicate_of,
            "constraint": lesson.constraint,
            "candidate_id": lesson.id,
        },
    )


async def query_lessons(store: Blackboard, query: LessonQuery) -> list[LessonRecord]:
    """Retrieve lessons matching a query.

    With search_text, results are ranked by full-text relevance; otherwise
    they come newest first.
    """
    if query.search_text:
        # Over-fetch so post-filtering still fills the limit
        events = await store.search_events(
            query.search_text, event_type=LESSON_CREATED, limit=query.limit * 4
        )
        lessons = [l for l in _lessons_from_events(events) if query.matches(l)]
        return lessons[: query.limit]

    metadata_equals = {}
    if query.project:
        metadata_equals["project"] = query.project
    if query.category:
        metadata_equals["category"] = query.category
    if query.severity:
        metadata_equals["severity"] = query.severity
    events = await store.query_events(
        event_type=LESSON_CREATED,
        metadata_equals=metadata_equals,
        descending=True,
        limit=query.limit,
    )
    return _lessons_from_events(events)


async def all_lessons(store: Blackboard) -> list[LessonRecord]:
    """Every persisted lesson, newest first."""
    events = await store.query_events(event_type=LESSON_CREATED, descending=True)
    return _lessons_from_events(events)


def token_overlap(a: str, b: str) -> float:
    """Jaccard similarity of lowercase whitespace-separated tokens.

    Returns 0.0 when both strings are empty.
    """
    tokens_a = set(a.lower().split())
    tokens_b = set(b.lower().split())
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def find_duplicate(
    candidate: LessonRecord,
    existing: list[LessonRecord],
    threshold: float = DUPLICATE_THRESHOLD,
) -> LessonRecord | None:
    """First existing lesson whose constraint overlaps the candidate's enough."""
    for lesson in existing:
        if token_overlap(candidate.constraint, lesson.constraint) >= threshold:
            return lesson
    return None


async def is_lesson_duplicate(store: Blackboard, candidate: LessonRecord) -> bool:
    return find_duplicate(candidate, await all_lessons(store)) is not None


def format_known_constraints(lessons: list[LessonRecord]) -> str:
    """Render lessons as a prompt section of severity-tagged rules.

    Lessons are grouped by category; within a category, high severity
    comes first. Returns an empty string when there are no lessons.
    """
    if not lessons:
        return ""

    by_category: dict[str, list[LessonRecord]] = defaultdict(list)
    for lesson in lessons:
        by_category[lesson.category].append(lesson)

    lines = [
        "## Known Constraints",
        "",
        "Lessons learned from previous features in this project. Follow these rules:",
    ]
    for category in sorted(by_category):
        lines.append("")
        lines.append(f"### {category}")
        ordered = sorted(by_category[category], key=lambda l: _SEVERITY_ORDER[l.severity])
        for lesson in ordered:
            lines.append(f"- [{lesson.severity.upper()}] {lesson.constraint}")
    return "\n".join(lines)
