from __future__ import annotations

import logging
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .artifact_store import ArtifactStore
from .canonical import fingerprint
from .errors import FailureReason, GenerationFailure, ProjectNotFoundError
from .gates import ApprovalGateRegistry
from .models import (
    PHASE_DEFINITIONS,
    TERMINAL_PHASE,
    AdvanceResult,
    CheckStatus,
    Phase,
    PhaseTransition,
    ProjectMetadata,
    next_phase,
)
from .review import CriticReviewer, ReviewStatus
from .snapshots import SnapshotService
from .state_store import StateStore
from .validation import VALIDATED_PHASES

logger = logging.getLogger(__name__)


class AdvanceState(TypedDict, total=False):
    slug: str
    metadata: ProjectMetadata
    source_phase: Phase
    target_phase: Phase
    result: AdvanceResult


def validated_artifacts_digest(artifacts: ArtifactStore, slug: str) -> str:
    """Digest of every artifact the validation engine inspects."""
    return fingerprint(artifacts.collect(slug, VALIDATED_PHASES))


class PhaseStateMachine:
    """Forward-only phase transitions: load -> checks -> commit | reject.

    Each check short-circuits to ``reject`` with a typed reason. ``commit``
    repeats the phase and gate checks inside the metadata store's atomic
    update, so a transition decided on stale data cannot be persisted.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        artifacts: ArtifactStore,
        snapshots: SnapshotService,
        gates: ApprovalGateRegistry,
        reviewer: CriticReviewer | None = None,
    ) -> None:
        self.store = store
        self.artifacts = artifacts
        self.snapshots = snapshots
        self.gates = gates
        self.reviewer = reviewer
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(AdvanceState)
        graph.add_node("load", self._load_node)
        graph.add_node("check_artifacts", self._check_artifacts_node)
        graph.add_node("check_gate", self._check_gate_node)
        graph.add_node("check_validation", self._check_validation_node)
        graph.add_node("check_review", self._check_review_node)
        graph.add_node("commit", self._commit_node)
        graph.add_node("reject", self._reject_node)

        graph.add_edge(START, "load")
        for node, following in (
            ("load", "check_artifacts"),
            ("check_artifacts", "check_gate"),
            ("check_gate", "check_validation"),
            ("check_validation", "check_review"),
            ("check_review", "commit"),
        ):
            graph.add_conditional_edges(
                node,
                self._route,
                {"next": following, "reject": "reject"},
            )
        graph.add_edge("commit", END)
        graph.add_edge("reject", END)
        return graph

    def advance(self, slug: str) -> AdvanceResult:
        """Attempt to move the project to its next phase.

        Returns:
            AdvanceResult describing the committed transition or why none happened.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            StorageFailure: If artifacts, snapshots or metadata cannot be read or written.
        """
        final_state = self.graph.invoke({"slug": slug})
        return final_state["result"]

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @staticmethod
    def _route(state: AdvanceState) -> str:
        return "reject" if "result" in state else "next"

    @staticmethod
    def _failure(state: AdvanceState, reason: FailureReason, message: str, **extra: Any) -> dict[str, Any]:
        return {
            "result": AdvanceResult(
                success=False,
                previous_phase=state.get("source_phase"),
                reason=reason.value,
                message=message,
                **extra,
            )
        }

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _load_node(self, state: AdvanceState) -> dict[str, Any]:
        metadata = self.store.load(state["slug"])
        if metadata is None:
            raise ProjectNotFoundError(state["slug"])
        source = metadata.current_phase
        target = next_phase(source)
        update: dict[str, Any] = {"metadata": metadata, "source_phase": source}
        if target is None:
            update.update(
                self._failure(
                    {"source_phase": source},
                    FailureReason.TERMINAL_PHASE,
                    f"Project is already in terminal phase {source.value}",
                )
            )
            return update
        update["target_phase"] = target
        return update

    def _check_artifacts_node(self, state: AdvanceState) -> dict[str, Any]:
        source = state["source_phase"]
        required = PHASE_DEFINITIONS[source].required_artifacts
        missing = self.artifacts.missing(state["slug"], source, required)
        if missing:
            return self._failure(
                state,
                FailureReason.MISSING_ARTIFACTS,
                f"Phase {source.value} is missing required artifacts: {', '.join(missing)}",
                missing_artifacts=missing,
            )
        return {}

    def _check_gate_node(self, state: AdvanceState) -> dict[str, Any]:
        source = state["source_phase"]
        if self.gates.can_proceed_from_phase(state["metadata"], source):
            return {}
        definition = self.gates.gate_for_phase(source)
        gate = state["metadata"].gates.get(definition.name) if definition else None
        status = gate.status.value if gate else "missing"
        return self._failure(
            state,
            FailureReason.GATE_NOT_APPROVED,
            f"Gate {definition.name if definition else '?'} for phase {source.value} is {status}",
        )

    def _check_validation_node(self, state: AdvanceState) -> dict[str, Any]:
        if state["target_phase"] != TERMINAL_PHASE:
            return {}
        orchestration = state["metadata"].orchestration_state
        summary = orchestration.last_validation
        if summary is None:
            return self._failure(state, FailureReason.VALIDATION_FAILED, "No validation run has been recorded")
        if summary.overall_status == CheckStatus.FAIL:
            failing = list(orchestration.last_validation_failing)
            return self._failure(
                state,
                FailureReason.VALIDATION_FAILED,
                f"Last validation failed: {', '.join(failing) or 'see report'}",
                failing_checks=failing,
            )
        if orchestration.last_validation_digest != validated_artifacts_digest(self.artifacts, state["slug"]):
            return self._failure(
                state,
                FailureReason.VALIDATION_FAILED,
                "Artifacts changed since the last validation run; validate again",
            )
        return {}

    def _check_review_node(self, state: AdvanceState) -> dict[str, Any]:
        if self.reviewer is None:
            return {}
        source = state["source_phase"]
        metadata = state["metadata"]
        contents = self.artifacts.read_phase(state["slug"], source)
        try:
            review = self.reviewer.review_or_raise(
                source,
                contents,
                {"project": metadata.name, "stack_choice": metadata.stack_choice or "unset"},
            )
        except GenerationFailure as exc:
            return self._failure(state, FailureReason.GENERATION_FAILURE, f"Gating review unavailable: {exc}")
        if review.status == ReviewStatus.ESCALATE:
            return self._failure(state, FailureReason.REVIEW_BLOCKED, review.summary)
        return {}

    def _commit_node(self, state: AdvanceState) -> dict[str, Any]:
        slug = state["slug"]
        source = state["source_phase"]
        target = state["target_phase"]

        def mutate(metadata: ProjectMetadata) -> tuple[ProjectMetadata | None, AdvanceResult]:
            if metadata.current_phase != source:
                return None, AdvanceResult(
                    success=False,
                    previous_phase=source,
                    reason=FailureReason.INVALID_REQUEST.value,
                    message=f"Project moved to {metadata.current_phase.value} concurrently",
                )
            if not self.gates.can_proceed_from_phase(metadata, source):
                return None, AdvanceResult(
                    success=False,
                    previous_phase=source,
                    reason=FailureReason.GATE_NOT_APPROVED.value,
                    message=f"Gate for phase {source.value} changed concurrently",
                )

            if target == TERMINAL_PHASE:
                summary = metadata.orchestration_state.last_validation
                if (
                    summary is None
                    or summary.overall_status == CheckStatus.FAIL
                    or metadata.orchestration_state.last_validation_digest
                    != validated_artifacts_digest(self.artifacts, slug)
                ):
                    return None, AdvanceResult(
                        success=False,
                        previous_phase=source,
                        reason=FailureReason.VALIDATION_FAILED.value,
                        message="Validation changed concurrently; validate again",
                        failing_checks=list(metadata.orchestration_state.last_validation_failing),
                    )

            contents = self.artifacts.read_phase(slug, source)
            versions = {entry.name: entry.version for entry in self.artifacts.list(slug, source)}
            gate_definition = self.gates.gate_for_phase(source)
            snapshot = self.snapshots.create_snapshot(
                metadata.project_id,
                source,
                contents,
                {
                    "trigger": "advance",
                    "metadata_digest": fingerprint(metadata),
                    "phases_completed": [phase.value for phase in metadata.phases_completed],
                    "artifact_versions": versions,
                    "gate": metadata.gates[gate_definition.name].model_dump(mode="json") if gate_definition else None,
                },
            )

            metadata.phases_completed.append(source)
            metadata.current_phase = target
            metadata.orchestration_state.artifact_versions[source.value] = versions
            metadata.orchestration_state.history.append(
                PhaseTransition(kind="advance", from_phase=source, to_phase=target, snapshot_id=snapshot.snapshot_id)
            )
            return metadata, AdvanceResult(
                success=True,
                previous_phase=source,
                new_phase=target,
                snapshot_id=snapshot.snapshot_id,
                message=f"Advanced from {source.value} to {target.value}",
            )

        result = self.store.update(slug, mutate)
        if result.success:
            logger.info("phase advanced project=%s %s -> %s", slug, source.value, target.value)
        return {"result": result}

    def _reject_node(self, state: AdvanceState) -> dict[str, Any]:
        result = state["result"]
        logger.info(
            "phase advance rejected project=%s phase=%s reason=%s: %s",
            state["slug"],
            state.get("source_phase", "?"),
            result.reason,
            result.message,
        )
        return {}
