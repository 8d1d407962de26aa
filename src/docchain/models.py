from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    ANALYSIS = "ANALYSIS"
    STACK_SELECTION = "STACK_SELECTION"
    SPEC = "SPEC"
    DEPENDENCIES = "DEPENDENCIES"
    SOLUTIONING = "SOLUTIONING"
    VALIDATE = "VALIDATE"
    DONE = "DONE"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)
INITIAL_PHASE = PHASE_ORDER[0]
TERMINAL_PHASE = PHASE_ORDER[-1]


class PhaseDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    description: str
    required_artifacts: tuple[str, ...]
    gate: str | None = None


PHASE_DEFINITIONS: dict[Phase, PhaseDefinition] = {
    Phase.ANALYSIS: PhaseDefinition(
        phase=Phase.ANALYSIS,
        description="Analyst, PM and constitution work: brief, classification, personas",
        required_artifacts=("constitution.md", "project-brief.md", "project-classification.json", "personas.md"),
    ),
    Phase.STACK_SELECTION: PhaseDefinition(
        phase=Phase.STACK_SELECTION,
        description="Technology stack analysis and decision",
        required_artifacts=("stack-analysis.md", "stack-decision.md", "stack-rationale.md", "stack.json"),
        gate="stack_approved",
    ),
    Phase.SPEC: PhaseDefinition(
        phase=Phase.SPEC,
        description="Product requirements, data model, API and design system",
        required_artifacts=(
            "PRD.md",
            "data-model.md",
            "api-spec.json",
            "design-system.md",
            "component-inventory.md",
            "user-flows.md",
        ),
    ),
    Phase.DEPENDENCIES: PhaseDefinition(
        phase=Phase.DEPENDENCIES,
        description="Third-party dependency selection",
        required_artifacts=("DEPENDENCIES.md", "dependencies.json"),
        gate="dependencies_approved",
    ),
    Phase.SOLUTIONING: PhaseDefinition(
        phase=Phase.SOLUTIONING,
        description="Architecture, epics, tasks and delivery plan",
        required_artifacts=("architecture.md", "epics.md", "tasks.md", "plan.md"),
        gate="architecture_approved",
    ),
    Phase.VALIDATE: PhaseDefinition(
        phase=Phase.VALIDATE,
        description="Cross-artifact consistency validation",
        required_artifacts=("validation-report.md", "coverage-matrix.md"),
    ),
    Phase.DONE: PhaseDefinition(
        phase=Phase.DONE,
        description="Handoff package",
        required_artifacts=("HANDOFF.md",),
    ),
}


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(Phase(phase))


def next_phase(phase: Phase) -> Phase | None:
    """Return the phase that follows ``phase``, or None for the terminal phase."""
    idx = phase_index(phase)
    if idx + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[idx + 1]


# ---------------------------------------------------------------------------
# Approval gates
# ---------------------------------------------------------------------------

class GateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class GateDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    phase: Phase
    stakeholder: str
    description: str
    auto_approve_threshold: int | None = None


GATE_DEFINITIONS: dict[str, GateDefinition] = {
    "stack_approved": GateDefinition(
        name="stack_approved",
        phase=Phase.STACK_SELECTION,
        stakeholder="architect",
        description="Technology stack selection must be approved before specification",
    ),
    "dependencies_approved": GateDefinition(
        name="dependencies_approved",
        phase=Phase.DEPENDENCIES,
        stakeholder="architect",
        description="Dependency choices must be approved before solutioning",
    ),
    "architecture_approved": GateDefinition(
        name="architecture_approved",
        phase=Phase.SOLUTIONING,
        stakeholder="architect",
        description="Architecture and task breakdown must be approved before validation",
        auto_approve_threshold=95,
    ),
}


class GateAuditEvent(BaseModel):
    action: str
    actor: str
    status: GateStatus
    notes: str | None = None
    score: int | None = None
    at: datetime = Field(default_factory=utc_now)


class ApprovalGate(BaseModel):
    name: str
    phase: Phase
    status: GateStatus = GateStatus.PENDING
    approver: str | None = None
    reason: str | None = None
    notes: str | None = None
    score: int | None = None
    auto_approved: bool = False
    decided_at: datetime | None = None
    audit: list[GateAuditEvent] = Field(default_factory=list)

    @model_validator(mode="after")
    def _rejection_has_reason(self) -> "ApprovalGate":
        if self.status == GateStatus.REJECTED and not (self.reason or "").strip():
            raise ValueError(f"rejected gate {self.name} must carry a non-empty reason")
        return self


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------

class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"
    PENDING = "pending"


class ItemStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"
    INFO = "info"


class CheckCategory(str, Enum):
    REQUIREMENT_MAPPING = "requirement_mapping"
    CONSISTENCY = "consistency"
    COMPLIANCE = "compliance"
    COMPLETENESS = "completeness"


class ValidationItem(BaseModel):
    item: str
    status: ItemStatus
    message: str | None = None


class ValidationCheck(BaseModel):
    id: str
    name: str
    description: str
    category: CheckCategory
    status: CheckStatus
    details: str | None = None
    items: list[ValidationItem] = Field(default_factory=list)


class ValidationSummary(BaseModel):
    total: int
    passed: int
    failed: int
    warnings: int
    pending: int
    overall_status: CheckStatus
    completed_at: datetime = Field(default_factory=utc_now)


class ValidationReport(BaseModel):
    report_id: str = Field(default_factory=lambda: new_id("VAL"))
    project_id: str
    checks: list[ValidationCheck]
    summary: ValidationSummary
    artifacts_checked: list[str] = Field(default_factory=list)

    @property
    def failing_check_ids(self) -> list[str]:
        return [check.id for check in self.checks if check.status == CheckStatus.FAIL]


# ---------------------------------------------------------------------------
# Project metadata
# ---------------------------------------------------------------------------

class PhaseTransition(BaseModel):
    kind: str
    from_phase: Phase
    to_phase: Phase
    snapshot_id: str | None = None
    at: datetime = Field(default_factory=utc_now)


class OrchestrationState(BaseModel):
    artifact_versions: dict[str, dict[str, int]] = Field(default_factory=dict)
    last_validation: ValidationSummary | None = None
    last_validation_failing: list[str] = Field(default_factory=list)
    last_validation_digest: str | None = None
    last_report_id: str | None = None
    history: list[PhaseTransition] = Field(default_factory=list)


class ProjectMetadata(BaseModel):
    """Durable per-project state.

    ``phases_completed`` is always a strict prefix of ``PHASE_ORDER`` and
    ``current_phase`` is the phase immediately after that prefix.
    """

    project_id: str = Field(default_factory=lambda: new_id("PRJ"))
    slug: str
    name: str
    description: str = ""
    current_phase: Phase = INITIAL_PHASE
    phases_completed: list[Phase] = Field(default_factory=list)
    gates: dict[str, ApprovalGate] = Field(default_factory=dict)
    stack_choice: str | None = None
    orchestration_state: OrchestrationState = Field(default_factory=OrchestrationState)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("slug")
    @classmethod
    def _valid_slug(cls, value: str) -> str:
        if not _SLUG_RE.match(value):
            raise ValueError(f"slug must match {_SLUG_RE.pattern}, got: {value!r}")
        return value

    @model_validator(mode="after")
    def _phase_prefix(self) -> "ProjectMetadata":
        completed = list(self.phases_completed)
        if len(completed) >= len(PHASE_ORDER):
            raise ValueError("phases_completed cannot contain every phase")
        if completed != list(PHASE_ORDER[: len(completed)]):
            raise ValueError(
                "phases_completed must be a prefix of the canonical phase order, got: "
                + ", ".join(phase.value for phase in completed)
            )
        expected = PHASE_ORDER[len(completed)]
        if self.current_phase != expected:
            raise ValueError(
                f"current_phase must be {expected.value} after {len(completed)} completed phases, "
                f"got: {self.current_phase.value}"
            )
        return self


# ---------------------------------------------------------------------------
# Artifacts and snapshots
# ---------------------------------------------------------------------------

class ArtifactRecord(BaseModel):
    project: str
    phase: Phase
    name: str
    content: str
    version: int = 1
    content_hash: str
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return artifact_key(self.phase, self.name)

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


class ArtifactEntry(BaseModel):
    name: str
    size: int
    version: int = 1


def artifact_key(phase: Phase | str, name: str) -> str:
    value = phase.value if isinstance(phase, Phase) else str(phase)
    return f"{value}/{name}"


class Snapshot(BaseModel):
    """Immutable capture of one phase's artifacts at a point in time."""

    model_config = ConfigDict(frozen=True)

    snapshot_id: str = Field(default_factory=lambda: new_id("SNAP"))
    project_id: str
    phase: Phase
    snapshot_number: int = Field(ge=1)
    artifacts: dict[str, str]
    metadata: dict[str, Any] = Field(default_factory=dict)
    revision_ref: str | None = None
    content_hash: str
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class AdvanceResult(BaseModel):
    success: bool
    previous_phase: Phase | None = None
    new_phase: Phase | None = None
    reason: str | None = None
    message: str = ""
    snapshot_id: str | None = None
    missing_artifacts: list[str] = Field(default_factory=list)
    failing_checks: list[str] = Field(default_factory=list)


class GateResult(BaseModel):
    success: bool
    gate: str
    status: GateStatus | None = None
    auto_approved: bool = False
    reason: str | None = None
    message: str = ""


class SnapshotResult(BaseModel):
    success: bool
    snapshot_id: str | None = None
    snapshot_number: int | None = None
    reason: str | None = None
    message: str = ""


class CanRollbackResult(BaseModel):
    allowed: bool
    depth: int | None = None
    reason: str | None = None


class RollbackResult(BaseModel):
    success: bool
    target_phase: Phase | None = None
    restored_artifacts: list[str] = Field(default_factory=list)
    snapshot_id: str | None = None
    reason: str | None = None
    message: str = ""


class RollbackPreview(BaseModel):
    allowed: bool
    target_phase: Phase | None = None
    depth: int | None = None
    reason: str | None = None
    snapshot_id: str | None = None
    snapshot_number: int | None = None
    artifacts: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    revision_ref: str | None = None
    phases_to_reopen: list[Phase] = Field(default_factory=list)


class ArtifactResult(BaseModel):
    success: bool
    phase: Phase | None = None
    name: str
    version: int | None = None
    location: str | None = None
    reason: str | None = None
    message: str = ""


class ValidationRunResult(BaseModel):
    success: bool
    report: ValidationReport | None = None
    reason: str | None = None
    message: str = ""


class ProjectResult(BaseModel):
    success: bool
    project: ProjectMetadata | None = None
    reason: str | None = None
    message: str = ""


class SnapshotListResult(BaseModel):
    success: bool
    phase: Phase | None = None
    snapshots: list[Snapshot] = Field(default_factory=list)
    reason: str | None = None
    message: str = ""
