from importlib.metadata import version

from .artifact_store import ArtifactStore, FilesystemArtifactBackend, InMemoryArtifactBackend
from .concurrency import ConcurrencyGuard, Deduplicator, IdempotencyTracker, LockManager
from .errors import (
    DocchainError,
    FailureReason,
    GenerationFailure,
    ProjectNotFoundError,
    ResourceLockedError,
    StorageFailure,
)
from .gates import ApprovalGateRegistry
from .llm import OpenAIDocumentGenerator, StaticDocumentGenerator
from .models import (
    PHASE_DEFINITIONS,
    PHASE_ORDER,
    AdvanceResult,
    ApprovalGate,
    GateResult,
    GateStatus,
    Phase,
    ProjectMetadata,
    RollbackPreview,
    RollbackResult,
    Snapshot,
    SnapshotResult,
    ValidationReport,
)
from .orchestrator import PipelineOrchestrator
from .review import CriticReviewer
from .settings import RuntimeSettings
from .snapshots import SnapshotService
from .state_machine import PhaseStateMachine
from .state_store import FilesystemStateStore, InMemoryStateStore
from .validation import ValidationEngine


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AdvanceResult",
    "ApprovalGate",
    "ApprovalGateRegistry",
    "ArtifactStore",
    "ConcurrencyGuard",
    "CriticReviewer",
    "Deduplicator",
    "DocchainError",
    "FailureReason",
    "FilesystemArtifactBackend",
    "FilesystemStateStore",
    "GateResult",
    "GateStatus",
    "GenerationFailure",
    "IdempotencyTracker",
    "InMemoryArtifactBackend",
    "InMemoryStateStore",
    "LockManager",
    "OpenAIDocumentGenerator",
    "Phase",
    "PhaseStateMachine",
    "PipelineOrchestrator",
    "ProjectMetadata",
    "ProjectNotFoundError",
    "ResourceLockedError",
    "RollbackPreview",
    "RollbackResult",
    "RuntimeSettings",
    "Snapshot",
    "SnapshotResult",
    "SnapshotService",
    "StaticDocumentGenerator",
    "StorageFailure",
    "ValidationEngine",
    "ValidationReport",
    "PHASE_DEFINITIONS",
    "PHASE_ORDER",
    "get_version",
]
