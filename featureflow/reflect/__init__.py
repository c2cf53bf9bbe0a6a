"""Lesson memory: extract lessons from finished features and feed them back."""

from featureflow.reflect.analyzer import (
    ReflectContext,
    ReflectMetadata,
    gather_reflect_inputs,
    parse_reflect_meta,
)
from featureflow.reflect.engine import (
    LessonEngine,
    ReflectMode,
    ReflectResult,
    handle_reflect_work_item,
)
from featureflow.reflect.schema import LessonRecord, LessonValidation, validate_lesson
from featureflow.reflect.store import (
    LessonQuery,
    format_known_constraints,
    is_lesson_duplicate,
    query_lessons,
    token_overlap,
)

__all__ = [
    "LessonEngine",
    "LessonQuery",
    "LessonRecord",
    "LessonValidation",
    "ReflectContext",
    "ReflectMetadata",
    "ReflectMode",
    "ReflectResult",
    "format_known_constraints",
    "gather_reflect_inputs",
    "handle_reflect_work_item",
    "is_lesson_duplicate",
    "parse_reflect_meta",
    "query_lessons",
    "token_overlap",
    "validate_lesson",
]
