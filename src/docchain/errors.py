from __future__ import annotations

from enum import Enum
from typing import Any


class FailureReason(str, Enum):
    """Typed reasons carried by unsuccessful operation results."""

    MISSING_ARTIFACTS = "MISSING_ARTIFACTS"
    GATE_NOT_APPROVED = "GATE_NOT_APPROVED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    REVIEW_BLOCKED = "REVIEW_BLOCKED"
    TERMINAL_PHASE = "TERMINAL_PHASE"
    ROLLBACK_DEPTH_EXCEEDED = "ROLLBACK_DEPTH_EXCEEDED"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    RESOURCE_LOCKED = "RESOURCE_LOCKED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    GENERATION_FAILURE = "GENERATION_FAILURE"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DocchainError(RuntimeError):
    """Base class for errors raised by the orchestration core."""

    reason: FailureReason = FailureReason.INTERNAL_ERROR


class ResourceLockedError(DocchainError):
    """Raised when an exclusive lock is held by another owner."""

    reason = FailureReason.RESOURCE_LOCKED

    def __init__(self, resource: str, *, holder: str | None = None) -> None:
        super().__init__(f"Resource locked: {resource}")
        self.resource = resource
        self.holder = holder


class ProjectNotFoundError(DocchainError, LookupError):
    reason = FailureReason.NOT_FOUND

    def __init__(self, slug: str) -> None:
        super().__init__(f"project not found: {slug}")
        self.slug = slug


class ArtifactNotFoundError(DocchainError, LookupError):
    reason = FailureReason.NOT_FOUND

    def __init__(self, project: str, phase: str, name: str) -> None:
        super().__init__(f"artifact not found: {project}/{phase}/{name}")
        self.project = project
        self.phase = phase
        self.name = name


class StorageFailure(DocchainError):
    """Raised when a storage backend errors, as opposed to reporting a miss.

    Carries the failed operation name and a context mapping so the failure
    can be logged with everything needed to diagnose it.
    """

    reason = FailureReason.STORAGE_FAILURE

    def __init__(self, operation: str, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.context = dict(context or {})


class GenerationFailure(DocchainError):
    reason = FailureReason.GENERATION_FAILURE


class InvariantViolation(DocchainError):
    """Raised when persisted state would break a pipeline invariant."""

    reason = FailureReason.INTERNAL_ERROR
