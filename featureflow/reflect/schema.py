"""Lesson record schema.

Lessons come from agent-written JSON, so every candidate passes through
validate_lesson() before it is trusted.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LessonPhase = Literal["implement", "review", "rework", "merge-fix"]
Severity = Literal["low", "medium", "high"]

MIN_TEXT_LENGTH = 10


class LessonRecord(BaseModel):
    """A reusable lesson learned from a completed feature cycle.

    Accepts the camelCase field names agents write (rootCause, workItemId,
    createdAt) as well as the Python names.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    project: str = Field(min_length=1)
    work_item_id: str = Field(min_length=1, alias="workItemId")
    phase: LessonPhase
    category: str = Field(min_length=1)
    severity: Severity
    symptom: str = Field(min_length=MIN_TEXT_LENGTH)
    root_cause: str = Field(min_length=MIN_TEXT_LENGTH, alias="rootCause")
    resolution: str = Field(min_length=MIN_TEXT_LENGTH)
    constraint: str = Field(min_length=MIN_TEXT_LENGTH)
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")

    @field_validator("category")
    @classmethod
    def strip_category(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("category must not be blank")
        return v

    @property
    def searchable_text(self) -> str:
        """Text indexed for full-text search."""
        return f"{self.symptom} {self.root_cause} {self.resolution} {self.constraint}"

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class LessonValidation:
    """Result of validating one lesson candidate.

    Exactly one of lesson and error is set.
    """

    lesson: LessonRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.lesson is not None


def validate_lesson(payload: Any) -> LessonValidation:
    """Validate an untrusted lesson payload.

    Never raises; invalid input is reported in LessonValidation.error.
    """
    if not isinstance(payload, dict):
        return LessonValidation(error=f"lesson must be an object, got {type(payload).__name__}")
    try:
        return LessonValidation(lesson=LessonRecord.model_validate(payload))
    except ValidationError as e:
        return LessonValidation(error=str(e))


def make_lesson_id(project: str, index: int, now: datetime) -> str:
    """Build a lesson id: lesson-<project>-<epoch ms>-<index>."""
    return f"lesson-{project}-{int(now.timestamp() * 1000)}-{index}"
