from __future__ import annotations

import logging
from typing import Mapping

from .models import (
    GATE_DEFINITIONS,
    PHASE_DEFINITIONS,
    ApprovalGate,
    GateAuditEvent,
    GateDefinition,
    GateStatus,
    Phase,
    ProjectMetadata,
    utc_now,
)
from .state_store import StateStore

logger = logging.getLogger(__name__)

STACK_GATE = "stack_approved"


class ApprovalGateRegistry:
    """Named approval checkpoints bound one-to-one to phases.

    Every decision appends to the gate's audit trail; earlier events are
    never rewritten. Callers are responsible for serializing concurrent
    decisions on the same gate; each decision is itself a single atomic
    metadata update.
    """

    def __init__(self, store: StateStore, definitions: Mapping[str, GateDefinition] = GATE_DEFINITIONS) -> None:
        self.store = store
        self.definitions = dict(definitions)

    def definition(self, gate_name: str) -> GateDefinition:
        try:
            return self.definitions[gate_name]
        except KeyError:
            raise ValueError(f"unknown gate: {gate_name}") from None

    def initialize_gates(self) -> dict[str, ApprovalGate]:
        """Return a fresh pending gate for every declared gate."""
        return {
            name: ApprovalGate(
                name=name,
                phase=definition.phase,
                audit=[GateAuditEvent(action="initialized", actor="system", status=GateStatus.PENDING)],
            )
            for name, definition in self.definitions.items()
        }

    def gate_for_phase(self, phase: Phase) -> GateDefinition | None:
        gate_name = PHASE_DEFINITIONS[Phase(phase)].gate
        return self.definitions.get(gate_name) if gate_name else None

    def _gate(self, metadata: ProjectMetadata, gate_name: str) -> ApprovalGate:
        definition = self.definition(gate_name)
        gate = metadata.gates.get(gate_name)
        if gate is None:
            gate = ApprovalGate(name=gate_name, phase=definition.phase)
            metadata.gates[gate_name] = gate
        return gate

    def can_proceed_from_phase(self, metadata: ProjectMetadata, phase: Phase) -> bool:
        definition = self.gate_for_phase(phase)
        if definition is None:
            return True
        gate = metadata.gates.get(definition.name)
        return gate is not None and gate.status == GateStatus.APPROVED

    def approve(
        self,
        slug: str,
        gate_name: str,
        approver: str,
        *,
        notes: str | None = None,
        score: int | None = None,
        stack_choice: str | None = None,
    ) -> ApprovalGate:
        """Mark a gate approved and record who approved it.

        A ``score`` at or above the gate's auto-approve threshold flags the
        decision as automatic. Approving ``stack_approved`` may also record the
        chosen stack on the project.

        Raises:
            ValueError: If the gate is unknown or the approver is blank.
            ProjectNotFoundError: If the project does not exist.
        """
        if not approver.strip():
            raise ValueError("approver must be non-empty")
        if score is not None and not 0 <= score <= 100:
            raise ValueError(f"score must be between 0 and 100, got: {score}")
        if stack_choice is not None and gate_name != STACK_GATE:
            raise ValueError(f"stack_choice can only be recorded with {STACK_GATE}")
        threshold = self.definition(gate_name).auto_approve_threshold
        auto = score is not None and threshold is not None and score >= threshold

        def mutate(metadata: ProjectMetadata) -> tuple[ProjectMetadata, ApprovalGate]:
            gate = self._gate(metadata, gate_name)
            if stack_choice is not None:
                metadata.stack_choice = stack_choice.strip() or None
            gate.status = GateStatus.APPROVED
            gate.approver = approver
            gate.reason = None
            gate.notes = notes
            gate.score = score
            gate.auto_approved = auto
            gate.decided_at = utc_now()
            gate.audit.append(
                GateAuditEvent(
                    action="auto_approved" if auto else "approved",
                    actor=approver,
                    status=GateStatus.APPROVED,
                    notes=notes,
                    score=score,
                )
            )
            return metadata, gate

        gate = self.store.update(slug, mutate)
        logger.info("gate approved project=%s gate=%s approver=%s auto=%s", slug, gate_name, approver, auto)
        return gate

    def reject(self, slug: str, gate_name: str, approver: str, reason: str) -> ApprovalGate:
        """Mark a gate rejected. A non-empty reason is mandatory.

        Raises:
            ValueError: If the gate is unknown, the reason is blank, or the
                gate's phase is already completed.
            ProjectNotFoundError: If the project does not exist.
        """
        if not reason or not reason.strip():
            raise ValueError("rejection reason must be non-empty")
        if not approver.strip():
            raise ValueError("approver must be non-empty")
        definition = self.definition(gate_name)

        def mutate(metadata: ProjectMetadata) -> tuple[ProjectMetadata, ApprovalGate]:
            if definition.phase in metadata.phases_completed:
                raise ValueError(
                    f"gate {gate_name} guards completed phase {definition.phase.value}; roll back before rejecting"
                )
            gate = self._gate(metadata, gate_name)
            gate.status = GateStatus.REJECTED
            gate.approver = approver
            gate.reason = reason.strip()
            gate.auto_approved = False
            gate.decided_at = utc_now()
            gate.audit.append(
                GateAuditEvent(action="rejected", actor=approver, status=GateStatus.REJECTED, notes=reason.strip())
            )
            return metadata, gate

        gate = self.store.update(slug, mutate)
        logger.info("gate rejected project=%s gate=%s approver=%s", slug, gate_name, approver)
        return gate

    def reset(self, metadata: ProjectMetadata, gate_name: str, *, actor: str, note: str) -> ApprovalGate:
        """Return a gate to pending in place on ``metadata``. Used while reopening phases."""
        gate = self._gate(metadata, gate_name)
        gate.status = GateStatus.PENDING
        gate.approver = None
        gate.reason = None
        gate.score = None
        gate.auto_approved = False
        gate.decided_at = None
        gate.audit.append(GateAuditEvent(action="reset", actor=actor, status=GateStatus.PENDING, notes=note))
        return gate
