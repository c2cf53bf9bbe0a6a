"""Shared error types for the featureflow package."""

from typing import Any


class FeatureflowError(Exception):
    """Base exception for featureflow errors.

    Use this for user-facing errors that should have actionable messages.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class LaunchError(FeatureflowError):
    """The agent process could not be started at all.

    Distinct from an agent that ran and exited non-zero, which is reported
    through the launch result's exit code.
    """

    pass


class CommandError(FeatureflowError):
    """A source-control command (git, gh) exited non-zero."""

    pass


class ReflectError(FeatureflowError):
    """Lesson extraction produced no usable output."""

    pass
