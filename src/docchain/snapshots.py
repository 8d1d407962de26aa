from __future__ import annotations

import logging
from typing import Any, Sequence

from .artifact_store import ArtifactStore
from .canonical import fingerprint
from .errors import FailureReason
from .models import (
    PHASE_ORDER,
    CanRollbackResult,
    Phase,
    ProjectMetadata,
    RollbackPreview,
    RollbackResult,
    Snapshot,
    phase_index,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)

MAX_ROLLBACK_DEPTH = 3


def confirmation_required(target_phase: Phase) -> RollbackResult:
    return RollbackResult(
        success=False,
        target_phase=Phase(target_phase),
        reason=FailureReason.CONFIRMATION_REQUIRED.value,
        message="Rollback is a dangerous operation - confirmation required",
    )


def snapshot_digest(artifacts: dict[str, str], metadata: dict[str, Any]) -> str:
    return fingerprint({"artifacts": artifacts, "metadata": metadata})


def rollback_depth(target_phase: Phase, phases_completed: Sequence[Phase]) -> int | None:
    """Number of completed phases after ``target_phase``, or None if it was never completed."""
    completed = [Phase(phase) for phase in phases_completed]
    target = Phase(target_phase)
    if target not in completed:
        return None
    return len(completed) - completed.index(target) - 1


class SnapshotService:
    """Append-only phase snapshots and confirmation-gated rollback.

    Snapshots are numbered per (project, phase) starting at 1 and are never
    rewritten or deleted; rollback only reads them.
    """

    def __init__(
        self,
        store: StateStore,
        artifacts: ArtifactStore,
        *,
        max_rollback_depth: int = MAX_ROLLBACK_DEPTH,
    ) -> None:
        self.store = store
        self.artifacts = artifacts
        self.max_rollback_depth = max_rollback_depth

    def create_snapshot(
        self,
        project_id: str,
        phase: Phase,
        artifacts: dict[str, str],
        metadata: dict[str, Any] | None = None,
        revision_ref: str | None = None,
    ) -> Snapshot:
        """Persist a new snapshot numbered one past the latest for this phase.

        Args:
            project_id: Owning project id.
            phase: Phase whose artifacts are captured.
            artifacts: Artifact name to content.
            metadata: Free-form metadata stored with the snapshot.
            revision_ref: Optional external revision reference (e.g. a commit hash).

        Returns:
            The persisted Snapshot.

        Raises:
            StorageFailure: If the snapshot cannot be written.
        """
        payload_metadata = dict(metadata or {})
        payload_artifacts = dict(artifacts)

        def build(number: int) -> Snapshot:
            return Snapshot(
                project_id=project_id,
                phase=Phase(phase),
                snapshot_number=number,
                artifacts=payload_artifacts,
                metadata=payload_metadata,
                revision_ref=revision_ref,
                content_hash=snapshot_digest(payload_artifacts, payload_metadata),
            )

        snapshot = self.store.append_snapshot(project_id, Phase(phase), build)
        logger.info(
            "snapshot created project=%s phase=%s number=%d id=%s artifacts=%d",
            project_id,
            Phase(phase).value,
            snapshot.snapshot_number,
            snapshot.snapshot_id,
            len(payload_artifacts),
        )
        return snapshot

    def get_snapshots_for_phase(self, project_id: str, phase: Phase) -> list[Snapshot]:
        """Return every snapshot for the phase, latest first."""
        return list(reversed(self.store.list_snapshots(project_id, Phase(phase))))

    def latest_snapshot(self, project_id: str, phase: Phase) -> Snapshot | None:
        snapshots = self.store.list_snapshots(project_id, Phase(phase))
        return snapshots[-1] if snapshots else None

    def can_rollback(self, target_phase: Phase, phases_completed: Sequence[Phase]) -> CanRollbackResult:
        target = Phase(target_phase)
        depth = rollback_depth(target, phases_completed)
        if depth is None:
            return CanRollbackResult(
                allowed=False,
                reason=f"Phase {target.value} not found in completed phases",
            )
        if depth > self.max_rollback_depth:
            return CanRollbackResult(
                allowed=False,
                depth=depth,
                reason=(
                    f"Rollback to {target.value} exceeds maximum rollback depth of "
                    f"{self.max_rollback_depth} phases"
                ),
            )
        return CanRollbackResult(allowed=True, depth=depth)

    def rollback_to_phase(
        self,
        project: ProjectMetadata,
        target_phase: Phase,
        phases_completed: Sequence[Phase],
        *,
        confirm: bool,
    ) -> RollbackResult:
        """Restore the latest snapshot of ``target_phase`` into the artifact store.

        Without ``confirm`` nothing is read or written. Snapshots are left
        untouched; forward history stays available for later inspection.

        Raises:
            StorageFailure: If snapshots cannot be read or an artifact write fails.
        """
        target = Phase(target_phase)
        if not confirm:
            return confirmation_required(target)

        verdict = self.can_rollback(target, phases_completed)
        if not verdict.allowed:
            reason = (
                FailureReason.ROLLBACK_DEPTH_EXCEEDED if verdict.depth is not None else FailureReason.INVALID_REQUEST
            )
            return RollbackResult(
                success=False,
                target_phase=target,
                reason=reason.value,
                message=verdict.reason or "",
            )

        snapshot = self.latest_snapshot(project.project_id, target)
        if snapshot is None:
            return RollbackResult(
                success=False,
                target_phase=target,
                reason=FailureReason.NOT_FOUND.value,
                message=f"No snapshot found for phase {target.value}",
            )

        restored: list[str] = []
        for name, content in snapshot.artifacts.items():
            self.artifacts.put(project.slug, target, name, content)
            restored.append(name)
        logger.info(
            "rollback restored project=%s phase=%s snapshot=%s artifacts=%d",
            project.slug,
            target.value,
            snapshot.snapshot_id,
            len(restored),
        )
        return RollbackResult(
            success=True,
            target_phase=target,
            restored_artifacts=restored,
            snapshot_id=snapshot.snapshot_id,
            message=f"Restored {len(restored)} artifacts from snapshot {snapshot.snapshot_number}",
        )

    def rollback_preview(self, project: ProjectMetadata, target_phase: Phase) -> RollbackPreview:
        target = Phase(target_phase)
        verdict = self.can_rollback(target, project.phases_completed)
        snapshot = self.latest_snapshot(project.project_id, target) if verdict.depth is not None else None
        reopen = list(PHASE_ORDER[phase_index(target) : phase_index(project.current_phase) + 1])
        return RollbackPreview(
            target_phase=target,
            allowed=verdict.allowed and snapshot is not None,
            depth=verdict.depth,
            reason=verdict.reason if not verdict.allowed else (None if snapshot else "No snapshot available"),
            snapshot_id=snapshot.snapshot_id if snapshot else None,
            snapshot_number=snapshot.snapshot_number if snapshot else None,
            artifacts=sorted(snapshot.artifacts) if snapshot else [],
            metadata=dict(snapshot.metadata) if snapshot else {},
            revision_ref=snapshot.revision_ref if snapshot else None,
            phases_to_reopen=reopen,
        )
