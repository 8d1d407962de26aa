from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

from .artifact_store import ArtifactStore, FilesystemArtifactBackend, InMemoryArtifactBackend, validate_artifact_name
from .canonical import content_hash, fingerprint
from .concurrency import Clock, ConcurrencyGuard
from .errors import (
    DocchainError,
    FailureReason,
    GenerationFailure,
    InvariantViolation,
    ProjectNotFoundError,
    StorageFailure,
)
from .gates import ApprovalGateRegistry
from .llm import DocumentGenerator, GenerationConfig, OpenAIDocumentGenerator
from .models import (
    PHASE_DEFINITIONS,
    PHASE_ORDER,
    AdvanceResult,
    ArtifactResult,
    GateResult,
    Phase,
    PhaseTransition,
    ProjectMetadata,
    ProjectResult,
    RollbackPreview,
    RollbackResult,
    SnapshotListResult,
    SnapshotResult,
    ValidationRunResult,
    next_phase,
    phase_index,
)
from .review import CriticReviewer, ReviewResult, ReviewStatus
from .settings import RuntimeSettings
from .snapshots import SnapshotService, confirmation_required
from .state_machine import PhaseStateMachine, validated_artifacts_digest
from .state_store import FilesystemStateStore, InMemoryStateStore, StateStore, sanitize_slug, slugify_name
from .validation import VALIDATED_PHASES, ValidationEngine, render_coverage_matrix, render_validation_report

logger = logging.getLogger(__name__)

R = TypeVar("R")


def _known_phase(value: Any) -> Phase | None:
    """``value`` as a ``Phase``, or ``None`` when it names no phase."""
    try:
        return Phase(value)
    except ValueError:
        return None

VALIDATION_REPORT_ARTIFACT = "validation-report.md"
COVERAGE_MATRIX_ARTIFACT = "coverage-matrix.md"


class PipelineOrchestrator:
    """Facade over the phase pipeline.

    Every mutating operation runs inside the concurrency guard under a
    project-scoped lock key ``"{slug}:{operation_class}"``. Every exposed
    operation returns a typed result: recoverable errors become a failure
    reason, anything unexpected is logged and reported as ``INTERNAL_ERROR``.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        artifacts: ArtifactStore,
        settings: RuntimeSettings | None = None,
        guard: ConcurrencyGuard | None = None,
        generator: DocumentGenerator | None = None,
        reviewer: CriticReviewer | None = None,
        engine: ValidationEngine | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.store = store
        self.artifacts = artifacts
        self.guard = guard or ConcurrencyGuard.from_settings(self.settings, clock=clock)
        self.generator = generator
        self.reviewer = reviewer
        self.engine = engine or ValidationEngine()
        self.gates = ApprovalGateRegistry(store)
        self.snapshots = SnapshotService(store, artifacts, max_rollback_depth=self.settings.max_rollback_depth)
        self.machine = PhaseStateMachine(
            store=store,
            artifacts=artifacts,
            snapshots=self.snapshots,
            gates=self.gates,
            reviewer=reviewer if self.settings.review_gating_enabled else None,
        )

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        repo_root: Path,
        generator: DocumentGenerator | None = None,
        reviewer: CriticReviewer | None = None,
    ) -> "PipelineOrchestrator":
        """Wire filesystem-backed stores under ``settings.state_store_root``."""
        root = settings.state_store_path(repo_root)
        store = FilesystemStateStore(root)
        artifacts = ArtifactStore([FilesystemArtifactBackend(root / "artifacts")])
        if reviewer is None and settings.review_gating_enabled:
            reviewer = CriticReviewer.from_settings(settings)
        return cls(
            store=store,
            artifacts=artifacts,
            settings=settings,
            generator=generator or OpenAIDocumentGenerator.from_settings(settings, repo_root=repo_root),
            reviewer=reviewer,
        )

    @classmethod
    def in_memory(cls, settings: RuntimeSettings | None = None, **kwargs: Any) -> "PipelineOrchestrator":
        return cls(
            store=InMemoryStateStore(),
            artifacts=ArtifactStore([InMemoryArtifactBackend()]),
            settings=settings,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Fault handling
    # ------------------------------------------------------------------

    @staticmethod
    def _guarded(operation: str, body: Callable[[], R], failed: Callable[[FailureReason, str], R]) -> R:
        try:
            return body()
        except StorageFailure as exc:
            logger.error("%s: storage failure in %s context=%s", operation, exc.operation, exc.context)
            return failed(exc.reason, str(exc))
        except InvariantViolation:
            logger.exception("%s: invariant violation", operation)
            return failed(FailureReason.INTERNAL_ERROR, f"Internal error during {operation}")
        except DocchainError as exc:
            logger.info("%s: %s (%s)", operation, exc, exc.reason.value)
            return failed(exc.reason, str(exc))
        except ValueError as exc:
            logger.info("%s: invalid request: %s", operation, exc)
            return failed(FailureReason.INVALID_REQUEST, str(exc))
        except Exception:  # noqa: BLE001 - top-level handler for each exposed operation.
            logger.exception("%s: unexpected error", operation)
            return failed(FailureReason.INTERNAL_ERROR, f"Internal error during {operation}")

    def _require(self, slug: str) -> ProjectMetadata:
        metadata = self.store.load(slug)
        if metadata is None:
            raise ProjectNotFoundError(slug)
        return metadata

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, name: str, *, description: str = "", slug: str | None = None) -> ProjectResult:
        def body() -> ProjectResult:
            if not name or not name.strip():
                raise ValueError("project name must be non-empty")
            project_slug = sanitize_slug(slug).lower() if slug else slugify_name(name)
            if not project_slug:
                raise ValueError(f"cannot derive a slug from project name: {name!r}")
            metadata = ProjectMetadata(
                slug=project_slug,
                name=name.strip(),
                description=description,
                gates=self.gates.initialize_gates(),
            )
            self.store.create(metadata)
            logger.info("project created slug=%s id=%s", metadata.slug, metadata.project_id)
            return ProjectResult(success=True, project=metadata, message=f"Created project {metadata.slug}")

        return self._guarded(
            "create_project",
            body,
            lambda reason, message: ProjectResult(success=False, reason=reason.value, message=message),
        )

    def get_status(self, slug: str) -> ProjectResult:
        return self._guarded(
            "get_status",
            lambda: ProjectResult(success=True, project=self._require(slug)),
            lambda reason, message: ProjectResult(success=False, reason=reason.value, message=message),
        )

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def advance_phase(self, slug: str, *, idempotency_key: str | None = None, actor: str = "system") -> AdvanceResult:
        """Move a project to its next phase.

        Calls sharing ``idempotency_key`` run once and return the first
        successful outcome. Failed advances are not cached under the key: a
        failure changes nothing, so a retry with the same key runs again and
        may succeed once the cause is fixed (for example a gate approved in
        between). Without a key, a repeat against the same project state
        inside the dedup grace window reuses the first success.
        """

        def body() -> AdvanceResult:
            dedup_key = idempotency_key
            if dedup_key is None:
                metadata = self._require(slug)
                target = next_phase(metadata.current_phase) or metadata.current_phase
                dedup_key = f"advance:{slug}:{target.value}:{len(metadata.orchestration_state.history)}"
            return self.guard.run(
                lambda: self.machine.advance(slug),
                lock_keys=[f"{slug}:phase_transition"],
                owner=actor,
                idempotency_key=idempotency_key,
                dedup_key=dedup_key,
                cache_if=lambda result: result.success,
            )

        return self._guarded(
            "advance_phase",
            body,
            lambda reason, message: AdvanceResult(success=False, reason=reason.value, message=message),
        )

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def approve_gate(
        self,
        slug: str,
        gate_name: str,
        approver: str,
        *,
        notes: str | None = None,
        score: int | None = None,
        stack_choice: str | None = None,
    ) -> GateResult:
        def body() -> GateResult:
            gate = self.guard.run(
                lambda: self.gates.approve(
                    slug, gate_name, approver, notes=notes, score=score, stack_choice=stack_choice
                ),
                lock_keys=[f"{slug}:gate:{gate_name}"],
                owner=approver,
            )
            return GateResult(
                success=True,
                gate=gate_name,
                status=gate.status,
                auto_approved=gate.auto_approved,
                message=f"Gate {gate_name} approved by {approver}",
            )

        return self._guarded(
            "approve_gate",
            body,
            lambda reason, message: GateResult(success=False, gate=gate_name, reason=reason.value, message=message),
        )

    def reject_gate(self, slug: str, gate_name: str, approver: str, reason: str) -> GateResult:
        def body() -> GateResult:
            if not reason or not reason.strip():
                raise ValueError("rejection reason must be non-empty")
            gate = self.guard.run(
                lambda: self.gates.reject(slug, gate_name, approver, reason),
                lock_keys=[f"{slug}:gate:{gate_name}"],
                owner=approver,
            )
            return GateResult(
                success=True,
                gate=gate_name,
                status=gate.status,
                message=f"Gate {gate_name} rejected by {approver}",
            )

        return self._guarded(
            "reject_gate",
            body,
            lambda failure, message: GateResult(
                success=False, gate=gate_name, reason=failure.value, message=message
            ),
        )

    # ------------------------------------------------------------------
    # Snapshots and rollback
    # ------------------------------------------------------------------

    def create_snapshot(
        self,
        slug: str,
        phase: Phase,
        artifacts: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
        revision_ref: str | None = None,
        *,
        actor: str = "system",
    ) -> SnapshotResult:
        """Capture a phase explicitly. ``artifacts=None`` captures the live phase contents."""

        def body() -> SnapshotResult:
            target = Phase(phase)
            project = self._require(slug)

            def capture() -> SnapshotResult:
                contents = artifacts if artifacts is not None else self.artifacts.read_phase(slug, target)
                snapshot = self.snapshots.create_snapshot(
                    project.project_id,
                    target,
                    contents,
                    {"trigger": "manual", "actor": actor, **(metadata or {})},
                    revision_ref,
                )
                return SnapshotResult(
                    success=True,
                    snapshot_id=snapshot.snapshot_id,
                    snapshot_number=snapshot.snapshot_number,
                    message=f"Snapshot {snapshot.snapshot_number} of {target.value} created",
                )

            return self.guard.run(capture, lock_keys=[f"{slug}:snapshot:{target.value}"], owner=actor)

        return self._guarded(
            "create_snapshot",
            body,
            lambda reason, message: SnapshotResult(success=False, reason=reason.value, message=message),
        )

    def list_snapshots(self, slug: str, phase: Phase) -> SnapshotListResult:
        def body() -> SnapshotListResult:
            target = Phase(phase)
            project = self._require(slug)
            return SnapshotListResult(
                success=True,
                phase=target,
                snapshots=self.snapshots.get_snapshots_for_phase(project.project_id, target),
            )

        return self._guarded(
            "list_snapshots",
            body,
            lambda reason, message: SnapshotListResult(
                success=False, phase=_known_phase(phase), reason=reason.value, message=message
            ),
        )

    def rollback(
        self,
        slug: str,
        target_phase: Phase,
        *,
        confirm: bool = False,
        actor: str = "system",
        idempotency_key: str | None = None,
    ) -> RollbackResult:
        """Reopen ``target_phase`` from its latest snapshot.

        Restores the snapshot's artifacts, then moves the phase pointer back,
        resets the gates of every reopened phase and clears the recorded
        validation. Forward snapshots are kept.
        """

        def perform(target: Phase) -> RollbackResult:
            project = self._require(slug)
            completed = list(project.phases_completed)
            restored = self.snapshots.rollback_to_phase(project, target, completed, confirm=True)
            if not restored.success:
                return restored
            self.store.update(slug, lambda metadata: (self._reopen(metadata, target, restored, actor), None))
            logger.info(
                "rollback committed project=%s %s -> %s by=%s",
                slug,
                project.current_phase.value,
                target.value,
                actor,
            )
            return restored

        def body() -> RollbackResult:
            target = Phase(target_phase)
            if not confirm:
                return confirmation_required(target)
            return self.guard.run(
                lambda: perform(target),
                lock_keys=[f"{slug}:rollback", f"{slug}:phase_transition"],
                owner=actor,
                idempotency_key=idempotency_key,
                cache_if=lambda result: result.success,
            )

        return self._guarded(
            "rollback",
            body,
            lambda reason, message: RollbackResult(
                success=False, target_phase=_known_phase(target_phase), reason=reason.value, message=message
            ),
        )

    def _reopen(
        self,
        metadata: ProjectMetadata,
        target: Phase,
        restored: RollbackResult,
        actor: str,
    ) -> ProjectMetadata:
        index = phase_index(target)
        if index >= len(metadata.phases_completed):
            raise InvariantViolation(f"phase {target.value} is no longer completed")
        departed = metadata.current_phase
        metadata.phases_completed = list(PHASE_ORDER[:index])
        metadata.current_phase = target
        for gate in metadata.gates.values():
            if phase_index(gate.phase) >= index:
                self.gates.reset(metadata, gate.name, actor=actor, note=f"reopened by rollback to {target.value}")
        if index <= phase_index(Phase.STACK_SELECTION):
            metadata.stack_choice = None

        state = metadata.orchestration_state
        state.artifact_versions = {
            phase: versions for phase, versions in state.artifact_versions.items() if phase_index(Phase(phase)) < index
        }
        state.last_validation = None
        state.last_validation_failing = []
        state.last_validation_digest = None
        state.history.append(
            PhaseTransition(kind="rollback", from_phase=departed, to_phase=target, snapshot_id=restored.snapshot_id)
        )
        return metadata

    def rollback_preview(self, slug: str, target_phase: Phase) -> RollbackPreview:
        return self._guarded(
            "rollback_preview",
            lambda: self.snapshots.rollback_preview(self._require(slug), Phase(target_phase)),
            lambda reason, message: RollbackPreview(
                target_phase=_known_phase(target_phase), allowed=False, reason=message
            ),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def run_validation(self, slug: str, *, actor: str = "system") -> ValidationRunResult:
        """Run every cross-artifact check and record the outcome on the project.

        The rendered report and coverage matrix are written as VALIDATE
        artifacts and the full report is stored immutably.
        """

        def perform() -> ValidationRunResult:
            project = self._require(slug)
            collected = self.artifacts.collect(slug, VALIDATED_PHASES)
            digest = fingerprint(collected)
            report = self.engine.run(collected, project.model_dump(mode="json"), project_id=project.project_id)
            self.artifacts.put(
                slug, Phase.VALIDATE, VALIDATION_REPORT_ARTIFACT, render_validation_report(report, project.name)
            )
            self.artifacts.put(
                slug,
                Phase.VALIDATE,
                COVERAGE_MATRIX_ARTIFACT,
                render_coverage_matrix(collected, generated_at=report.summary.completed_at),
            )
            self.store.write_validation_report(report)

            def record(metadata: ProjectMetadata) -> tuple[ProjectMetadata, None]:
                state = metadata.orchestration_state
                state.last_validation = report.summary
                state.last_validation_failing = report.failing_check_ids
                state.last_validation_digest = digest
                state.last_report_id = report.report_id
                return metadata, None

            self.store.update(slug, record)
            return ValidationRunResult(
                success=True,
                report=report,
                message=f"Validation {report.summary.overall_status.value}",
            )

        return self._guarded(
            "run_validation",
            lambda: self.guard.run(perform, lock_keys=[f"{slug}:validation"], owner=actor),
            lambda reason, message: ValidationRunResult(success=False, reason=reason.value, message=message),
        )

    def last_validation(self, slug: str) -> ValidationRunResult:
        def body() -> ValidationRunResult:
            project = self._require(slug)
            report_id = project.orchestration_state.last_report_id
            if report_id is None:
                return ValidationRunResult(
                    success=False,
                    reason=FailureReason.NOT_FOUND.value,
                    message="No validation run has been recorded",
                )
            try:
                report = self.store.read_validation_report(project.project_id, report_id)
            except FileNotFoundError:
                return ValidationRunResult(
                    success=False,
                    reason=FailureReason.NOT_FOUND.value,
                    message=f"Validation report {report_id} not found",
                )
            stale = project.orchestration_state.last_validation is None or (
                project.orchestration_state.last_validation_digest != validated_artifacts_digest(self.artifacts, slug)
            )
            return ValidationRunResult(
                success=True,
                report=report,
                message="stale: artifacts changed or phases reopened since this run" if stale else "current",
            )

        return self._guarded(
            "last_validation",
            body,
            lambda reason, message: ValidationRunResult(success=False, reason=reason.value, message=message),
        )

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def _store_artifact(self, slug: str, phase: Phase, name: str, content: str) -> ArtifactResult:
        self._require(slug)
        stored = self.artifacts.put(slug, phase, name, content)
        return ArtifactResult(
            success=True,
            phase=phase,
            name=name,
            version=stored.record.version,
            location=stored.location,
            message=f"Stored {stored.record.key} v{stored.record.version}",
        )

    def put_artifact(self, slug: str, phase: Phase, name: str, content: str, *, actor: str = "system") -> ArtifactResult:
        def body() -> ArtifactResult:
            target = Phase(phase)
            validate_artifact_name(name)
            return self.guard.run(
                lambda: self._store_artifact(slug, target, name, content),
                lock_keys=[f"{slug}:generation:{target.value}:{name}"],
                owner=actor,
            )

        return self._guarded(
            "put_artifact",
            body,
            lambda reason, message: ArtifactResult(
                success=False, phase=_known_phase(phase), name=name, reason=reason.value, message=message
            ),
        )

    def generate_artifact(
        self,
        slug: str,
        phase: Phase,
        name: str,
        prompt: str,
        *,
        idempotency_key: str | None = None,
        config: GenerationConfig | None = None,
        actor: str = "system",
    ) -> ArtifactResult:
        """Generate a document and store it as an artifact.

        A repeat within the idempotency window returns the first result
        without calling the generator again. A concurrent duplicate finds the
        artifact lock held and fails with ``RESOURCE_LOCKED``. Nothing is
        stored when generation fails.
        """

        def perform(target: Phase) -> ArtifactResult:
            if self.generator is None:
                raise GenerationFailure("no document generator configured")
            self._require(slug)
            generated = self.generator.generate(prompt, config)
            logger.info(
                "artifact generated project=%s phase=%s name=%s chars=%d",
                slug,
                target.value,
                name,
                len(generated.content),
            )
            return self._store_artifact(slug, target, name, generated.content)

        def body() -> ArtifactResult:
            target = Phase(phase)
            validate_artifact_name(name)
            if not prompt.strip():
                raise ValueError("prompt must be non-empty")
            key = idempotency_key or f"generate:{slug}:{target.value}:{name}:{content_hash(prompt)}"
            return self.guard.run(
                lambda: perform(target),
                lock_keys=[f"{slug}:generation:{target.value}:{name}"],
                owner=actor,
                idempotency_key=key,
                dedup_key=key,
                cache_if=lambda result: result.success,
            )

        return self._guarded(
            "generate_artifact",
            body,
            lambda reason, message: ArtifactResult(
                success=False, phase=_known_phase(phase), name=name, reason=reason.value, message=message
            ),
        )

    def missing_artifacts(self, slug: str, phase: Phase) -> list[str]:
        """Required artifacts of ``phase`` that are not stored yet. Raises ``ValueError`` for an unknown phase."""
        target = Phase(phase)
        return self.artifacts.missing(slug, target, PHASE_DEFINITIONS[target].required_artifacts)

    # ------------------------------------------------------------------
    # Advisory review
    # ------------------------------------------------------------------

    def review_phase(self, slug: str, phase: Phase | None = None) -> ReviewResult:
        """Advisory critic review of a phase. Never blocks and never raises."""

        def body() -> ReviewResult:
            project = self._require(slug)
            target = Phase(phase) if phase is not None else project.current_phase
            if self.reviewer is None:
                return ReviewResult(status=ReviewStatus.APPROVED, summary="No reviewer configured")
            return self.reviewer.review(
                target,
                self.artifacts.read_phase(slug, target),
                {"project": project.name, "stack_choice": project.stack_choice or "unset"},
            )

        return self._guarded(
            "review_phase",
            body,
            lambda reason, message: ReviewResult(
                status=ReviewStatus.APPROVED, summary=f"Review skipped: {message}", degraded=True
            ),
        )
