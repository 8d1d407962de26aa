from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from conftest import FakeClock
from docchain.errors import FailureReason, GenerationFailure
from docchain.llm import GenerationConfig, GenerationResult, StaticDocumentGenerator
from docchain.models import PHASE_ORDER, CheckStatus, GateStatus, Phase
from docchain.orchestrator import PipelineOrchestrator
from docchain.review import CriticReport, CriticReviewer, ReviewResult, ReviewStatus
from docchain.settings import RuntimeSettings

Filler = Callable[..., None]
Completer = Callable[[PipelineOrchestrator, str, Phase], None]


def _snapshot_count(orchestrator: PipelineOrchestrator, slug: str) -> int:
    return sum(len(orchestrator.list_snapshots(slug, phase).snapshots) for phase in PHASE_ORDER)


def test_create_project_derives_slug(orchestrator: PipelineOrchestrator) -> None:
    result = orchestrator.create_project("Demo Shop!")
    assert result.success and result.project is not None
    assert result.project.slug == "demo-shop"
    assert result.project.current_phase == Phase.ANALYSIS
    assert result.project.phases_completed == []

    duplicate = orchestrator.create_project("Demo Shop")
    assert duplicate.success is False
    assert duplicate.reason == FailureReason.INVALID_REQUEST.value

    blank = orchestrator.create_project("  ")
    assert blank.reason == FailureReason.INVALID_REQUEST.value


def test_get_status_of_unknown_project(orchestrator: PipelineOrchestrator) -> None:
    result = orchestrator.get_status("ghost")
    assert result.success is False
    assert result.reason == FailureReason.NOT_FOUND.value


def test_advance_requires_artifacts(orchestrator: PipelineOrchestrator, project: str, fill_phase: Filler) -> None:
    result = orchestrator.advance_phase(project)
    assert result.success is False
    assert result.reason == FailureReason.MISSING_ARTIFACTS.value
    assert result.missing_artifacts == [
        "constitution.md",
        "project-brief.md",
        "project-classification.json",
        "personas.md",
    ]

    fill_phase(orchestrator, project, Phase.ANALYSIS)
    advanced = orchestrator.advance_phase(project)
    assert advanced.success is True
    assert (advanced.previous_phase, advanced.new_phase) == (Phase.ANALYSIS, Phase.STACK_SELECTION)
    assert advanced.snapshot_id is not None

    status = orchestrator.get_status(project).project
    assert status is not None
    assert status.phases_completed == [Phase.ANALYSIS]
    assert status.orchestration_state.artifact_versions["ANALYSIS"]["personas.md"] == 1
    assert status.orchestration_state.history[-1].kind == "advance"


def test_advance_requires_gate_approval(orchestrator: PipelineOrchestrator, project: str, fill_phase: Filler) -> None:
    fill_phase(orchestrator, project, Phase.ANALYSIS)
    assert orchestrator.advance_phase(project).success
    fill_phase(orchestrator, project, Phase.STACK_SELECTION)

    blocked = orchestrator.advance_phase(project)
    assert blocked.reason == FailureReason.GATE_NOT_APPROVED.value
    assert "stack_approved" in blocked.message

    orchestrator.reject_gate(project, "stack_approved", "cto", "Too expensive")
    assert orchestrator.advance_phase(project).reason == FailureReason.GATE_NOT_APPROVED.value

    orchestrator.approve_gate(project, "stack_approved", "cto")
    assert orchestrator.advance_phase(project).new_phase == Phase.SPEC


def test_advance_snapshot_captures_departing_phase(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.STACK_SELECTION)
    snapshots = orchestrator.list_snapshots(project, Phase.STACK_SELECTION).snapshots
    assert len(snapshots) == 1
    snapshot = snapshots[0]
    assert snapshot.snapshot_number == 1
    assert sorted(snapshot.artifacts) == ["stack-analysis.md", "stack-decision.md", "stack-rationale.md", "stack.json"]
    assert snapshot.metadata["trigger"] == "advance"
    assert snapshot.metadata["gate"]["status"] == "approved"
    assert snapshot.metadata["phases_completed"] == ["ANALYSIS"]


def test_same_idempotency_key_mutates_once(orchestrator: PipelineOrchestrator, project: str, fill_phase: Filler) -> None:
    fill_phase(orchestrator, project, Phase.ANALYSIS)
    fill_phase(orchestrator, project, Phase.STACK_SELECTION)
    orchestrator.approve_gate(project, "stack_approved", "cto")

    first = orchestrator.advance_phase(project, idempotency_key="req-1")
    second = orchestrator.advance_phase(project, idempotency_key="req-1")

    assert first == second
    status = orchestrator.get_status(project).project
    assert status is not None
    assert status.phases_completed == [Phase.ANALYSIS]
    assert len(orchestrator.list_snapshots(project, Phase.ANALYSIS).snapshots) == 1

    third = orchestrator.advance_phase(project, idempotency_key="req-2")
    assert third.new_phase == Phase.SPEC


def test_failed_advance_is_not_cached(orchestrator: PipelineOrchestrator, project: str, fill_phase: Filler) -> None:
    assert orchestrator.advance_phase(project, idempotency_key="req-1").success is False
    fill_phase(orchestrator, project, Phase.ANALYSIS)
    assert orchestrator.advance_phase(project, idempotency_key="req-1").success is True


def test_advance_reports_locked_phase_pointer(
    orchestrator: PipelineOrchestrator, project: str, fill_phase: Filler, clock: FakeClock
) -> None:
    fill_phase(orchestrator, project, Phase.ANALYSIS)
    orchestrator.guard.locks.try_acquire(f"{project}:phase_transition", "crashed-worker")

    locked = orchestrator.advance_phase(project)
    assert locked.success is False
    assert locked.reason == FailureReason.RESOURCE_LOCKED.value

    clock.advance(orchestrator.settings.lock_ttl_seconds)
    assert orchestrator.advance_phase(project).success is True


def test_full_pipeline_reaches_terminal_phase(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.VALIDATE)
    status = orchestrator.get_status(project).project
    assert status is not None
    assert status.current_phase == Phase.DONE
    assert status.phases_completed == list(PHASE_ORDER[:-1])

    terminal = orchestrator.advance_phase(project)
    assert terminal.success is False
    assert terminal.reason == FailureReason.TERMINAL_PHASE.value


def test_failing_validation_blocks_done(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.SOLUTIONING)
    orchestrator.put_artifact(project, Phase.SPEC, "PRD.md", "REQ-AUTH-001 Admin [NEEDS CLARIFICATION: IdP?] Shopper")

    run = orchestrator.run_validation(project)
    assert run.success is True and run.report is not None
    assert run.report.summary.overall_status == CheckStatus.FAIL

    blocked = orchestrator.advance_phase(project)
    assert blocked.success is False
    assert blocked.reason == FailureReason.VALIDATION_FAILED.value
    assert "unresolved-clarifications" in blocked.failing_checks


def test_validation_goes_stale_when_artifacts_change(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.SOLUTIONING)
    assert orchestrator.run_validation(project).report.summary.overall_status == CheckStatus.PASS
    orchestrator.put_artifact(project, Phase.SOLUTIONING, "plan.md", "# Plan\n\nThree sprints.\n")

    stale = orchestrator.advance_phase(project)
    assert stale.reason == FailureReason.VALIDATION_FAILED.value
    assert orchestrator.last_validation(project).message.startswith("stale")

    orchestrator.run_validation(project)
    assert orchestrator.advance_phase(project).new_phase == Phase.DONE


def test_advance_rechecks_validation_at_commit(clock: FakeClock, complete_through: Completer) -> None:
    class _InterleavingReviewer:
        orchestrator: PipelineOrchestrator

        def review_or_raise(self, phase: Phase, contents: dict, context: dict) -> ReviewResult:
            if phase == Phase.VALIDATE:
                self.orchestrator.put_artifact(slug, Phase.SPEC, "PRD.md", "REQ-AUTH-001 [NEEDS CLARIFICATION: who?]")
                failing = self.orchestrator.run_validation(slug)
                assert failing.report.summary.overall_status == CheckStatus.FAIL
            return ReviewResult(status=ReviewStatus.APPROVED)

    reviewer = _InterleavingReviewer()
    orchestrator = PipelineOrchestrator.in_memory(
        RuntimeSettings(review_gating="on"),
        clock=clock,
        generator=StaticDocumentGenerator(default="# Doc\n"),
        reviewer=reviewer,
    )
    reviewer.orchestrator = orchestrator
    slug = orchestrator.create_project("Racy").project.slug
    complete_through(orchestrator, slug, Phase.SOLUTIONING)
    assert orchestrator.run_validation(slug).report.summary.overall_status == CheckStatus.PASS

    result = orchestrator.advance_phase(slug)
    assert result.success is False
    assert result.reason == FailureReason.VALIDATION_FAILED.value
    assert "unresolved-clarifications" in result.failing_checks
    status = orchestrator.get_status(slug).project
    assert status is not None and status.current_phase == Phase.VALIDATE


def test_advance_into_validate_needs_no_validation(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.SOLUTIONING)
    status = orchestrator.get_status(project).project
    assert status is not None and status.current_phase == Phase.VALIDATE
    missing = orchestrator.advance_phase(project)
    assert missing.reason == FailureReason.MISSING_ARTIFACTS.value
    assert missing.missing_artifacts == ["validation-report.md", "coverage-matrix.md"]


def test_run_validation_persists_report_and_artifacts(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.SOLUTIONING)
    run = orchestrator.run_validation(project)
    assert run.report is not None

    stored = orchestrator.last_validation(project)
    assert stored.success and stored.report is not None
    assert stored.report.report_id == run.report.report_id
    assert stored.message == "current"

    report = orchestrator.artifacts.get(project, Phase.VALIDATE, "validation-report.md")
    assert report is not None and "# Validation Report" in report.content
    assert orchestrator.missing_artifacts(project, Phase.VALIDATE) == []

    status = orchestrator.get_status(project).project
    assert status is not None
    assert status.orchestration_state.last_report_id == run.report.report_id
    assert status.orchestration_state.last_validation.overall_status == CheckStatus.PASS


def test_last_validation_before_any_run(orchestrator: PipelineOrchestrator, project: str) -> None:
    result = orchestrator.last_validation(project)
    assert result.success is False
    assert result.reason == FailureReason.NOT_FOUND.value


def test_rollback_depth_scenario(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer, fill_phase: Filler
) -> None:
    complete_through(orchestrator, project, Phase.DEPENDENCIES)
    preview = orchestrator.rollback_preview(project, Phase.ANALYSIS)
    assert preview.allowed is True and preview.depth == 3

    fill_phase(orchestrator, project, Phase.SOLUTIONING)
    assert orchestrator.approve_gate(project, "architecture_approved", "cto").success
    assert orchestrator.advance_phase(project).success

    refused = orchestrator.rollback(project, Phase.ANALYSIS, confirm=True)
    assert refused.success is False
    assert refused.reason == FailureReason.ROLLBACK_DEPTH_EXCEEDED.value
    assert "exceeds maximum rollback depth" in refused.message


def test_rollback_without_confirmation_changes_nothing(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.SPEC)
    snapshots_before = _snapshot_count(orchestrator, project)
    artifacts_before = orchestrator.artifacts.collect(project)

    result = orchestrator.rollback(project, Phase.STACK_SELECTION)

    assert result.success is False
    assert result.reason == FailureReason.CONFIRMATION_REQUIRED.value
    assert _snapshot_count(orchestrator, project) == snapshots_before
    assert orchestrator.artifacts.collect(project) == artifacts_before
    status = orchestrator.get_status(project).project
    assert status is not None and status.current_phase == Phase.DEPENDENCIES


def test_rollback_reopens_phases(orchestrator: PipelineOrchestrator, project: str, complete_through: Completer) -> None:
    complete_through(orchestrator, project, Phase.SPEC)
    orchestrator.approve_gate(project, "dependencies_approved", "cto")
    orchestrator.put_artifact(project, Phase.STACK_SELECTION, "stack-decision.md", "We switched to Django.")
    snapshots_before = _snapshot_count(orchestrator, project)

    result = orchestrator.rollback(project, Phase.STACK_SELECTION, confirm=True, actor="alice")

    assert result.success is True
    assert "stack-decision.md" in result.restored_artifacts
    decision = orchestrator.artifacts.get(project, Phase.STACK_SELECTION, "stack-decision.md")
    assert decision is not None and decision.content == "# Decision\n\nWe use Next.js with Postgres.\n"
    assert _snapshot_count(orchestrator, project) == snapshots_before

    status = orchestrator.get_status(project).project
    assert status is not None
    assert status.current_phase == Phase.STACK_SELECTION
    assert status.phases_completed == [Phase.ANALYSIS]
    assert status.gates["stack_approved"].status == GateStatus.PENDING
    assert status.gates["stack_approved"].audit[-1].action == "reset"
    assert status.gates["dependencies_approved"].status == GateStatus.PENDING
    assert "STACK_SELECTION" not in status.orchestration_state.artifact_versions
    assert status.orchestration_state.history[-1].kind == "rollback"
    assert status.orchestration_state.history[-1].snapshot_id == result.snapshot_id

    again = orchestrator.advance_phase(project)
    assert again.reason == FailureReason.GATE_NOT_APPROVED.value
    orchestrator.approve_gate(project, "stack_approved", "cto")
    assert orchestrator.advance_phase(project).new_phase == Phase.SPEC
    assert len(orchestrator.list_snapshots(project, Phase.STACK_SELECTION).snapshots) == 2


def test_rollback_clears_recorded_validation(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.SOLUTIONING)
    orchestrator.run_validation(project)
    assert orchestrator.rollback(project, Phase.SOLUTIONING, confirm=True).success

    status = orchestrator.get_status(project).project
    assert status is not None
    assert status.orchestration_state.last_validation is None
    assert status.orchestration_state.last_validation_digest is None


def test_rollback_to_stack_selection_clears_stack_choice(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer, fill_phase: Filler
) -> None:
    complete_through(orchestrator, project, Phase.ANALYSIS)
    fill_phase(orchestrator, project, Phase.STACK_SELECTION)
    orchestrator.approve_gate(project, "stack_approved", "cto", stack_choice="next.js")
    assert orchestrator.advance_phase(project).success
    status = orchestrator.get_status(project).project
    assert status is not None and status.stack_choice == "next.js"

    assert orchestrator.rollback(project, Phase.STACK_SELECTION, confirm=True).success
    status = orchestrator.get_status(project).project
    assert status is not None and status.stack_choice is None

    assert orchestrator.rollback_preview(project, Phase.ANALYSIS).allowed is True


def test_rollback_blocked_by_running_transition(
    orchestrator: PipelineOrchestrator, project: str, complete_through: Completer
) -> None:
    complete_through(orchestrator, project, Phase.ANALYSIS)
    orchestrator.guard.locks.try_acquire(f"{project}:phase_transition", "advancing-worker")
    result = orchestrator.rollback(project, Phase.ANALYSIS, confirm=True)
    assert result.reason == FailureReason.RESOURCE_LOCKED.value


def test_create_snapshot_captures_live_artifacts(
    orchestrator: PipelineOrchestrator, project: str, fill_phase: Filler
) -> None:
    fill_phase(orchestrator, project, Phase.ANALYSIS)
    first = orchestrator.create_snapshot(project, Phase.ANALYSIS, revision_ref="abc123")
    second = orchestrator.create_snapshot(project, Phase.ANALYSIS, {"notes.md": "manual"}, {"reason": "backup"})
    assert (first.snapshot_number, second.snapshot_number) == (1, 2)

    listed = orchestrator.list_snapshots(project, Phase.ANALYSIS).snapshots
    assert [snapshot.snapshot_number for snapshot in listed] == [2, 1]
    assert listed[0].metadata == {"trigger": "manual", "actor": "system", "reason": "backup"}
    assert listed[1].revision_ref == "abc123"
    assert "personas.md" in listed[1].artifacts


def test_put_artifact_rejects_unsafe_names(orchestrator: PipelineOrchestrator, project: str) -> None:
    result = orchestrator.put_artifact(project, Phase.SPEC, "../PRD.md", "x")
    assert result.success is False
    assert result.reason == FailureReason.INVALID_REQUEST.value

    ghost = orchestrator.put_artifact("ghost", Phase.SPEC, "PRD.md", "x")
    assert ghost.reason == FailureReason.NOT_FOUND.value


def test_generate_artifact_is_idempotent(
    orchestrator: PipelineOrchestrator, project: str, generator: StaticDocumentGenerator
) -> None:
    first = orchestrator.generate_artifact(project, Phase.DONE, "HANDOFF.md", "Write the handoff package")
    second = orchestrator.generate_artifact(project, Phase.DONE, "HANDOFF.md", "Write the handoff package")
    assert first.success and first == second
    assert len(generator.calls) == 1
    stored = orchestrator.artifacts.get(project, Phase.DONE, "HANDOFF.md")
    assert stored is not None and stored.content.startswith("# Handoff")


def test_generation_failure_stores_nothing(orchestrator: PipelineOrchestrator, project: str) -> None:
    class _FlakyGenerator:
        def __init__(self) -> None:
            self.calls = 0

        def generate(self, prompt: str, config: GenerationConfig | None = None) -> GenerationResult:
            self.calls += 1
            if self.calls == 1:
                raise GenerationFailure("rate limited")
            return GenerationResult(content="# Brief\n")

    orchestrator.generator = _FlakyGenerator()
    failed = orchestrator.generate_artifact(project, Phase.ANALYSIS, "project-brief.md", "Write the brief")
    assert failed.success is False
    assert failed.reason == FailureReason.GENERATION_FAILURE.value
    assert orchestrator.artifacts.get(project, Phase.ANALYSIS, "project-brief.md") is None

    retried = orchestrator.generate_artifact(project, Phase.ANALYSIS, "project-brief.md", "Write the brief")
    assert retried.success is True


def test_unexpected_errors_become_internal_error(
    orchestrator: PipelineOrchestrator, project: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    def explode(slug: str) -> None:
        raise KeyError("boom")

    monkeypatch.setattr(orchestrator.machine, "advance", explode)
    result = orchestrator.advance_phase(project)
    assert result.success is False
    assert result.reason == FailureReason.INTERNAL_ERROR.value
    assert "boom" not in result.message


def test_review_gating_blocks_on_critical_feedback(clock: FakeClock, fill_phase: Filler) -> None:
    class _Critic:
        def invoke(self, prompt: str) -> CriticReport:
            return CriticReport.model_validate(
                {"feedback": [{"severity": "critical", "issue": "Secrets in client bundle"}], "verdict": "escalate"}
            )

    orchestrator = PipelineOrchestrator.in_memory(
        RuntimeSettings(review_gating="on"), clock=clock, reviewer=CriticReviewer(_Critic())
    )
    slug = orchestrator.create_project("Gated").project.slug
    fill_phase(orchestrator, slug, Phase.ANALYSIS)
    assert orchestrator.advance_phase(slug).success
    fill_phase(orchestrator, slug, Phase.STACK_SELECTION)
    orchestrator.approve_gate(slug, "stack_approved", "cto")

    blocked = orchestrator.advance_phase(slug)
    assert blocked.success is False
    assert blocked.reason == FailureReason.REVIEW_BLOCKED.value


def test_review_gating_fails_closed(clock: FakeClock, fill_phase: Filler) -> None:
    class _DownCritic:
        def invoke(self, prompt: str) -> CriticReport:
            raise TimeoutError("model timed out")

    orchestrator = PipelineOrchestrator.in_memory(
        RuntimeSettings(review_gating="on"), clock=clock, reviewer=CriticReviewer(_DownCritic())
    )
    slug = orchestrator.create_project("Gated").project.slug
    fill_phase(orchestrator, slug, Phase.ANALYSIS)
    # ANALYSIS has no critic, so the model is never consulted.
    assert orchestrator.advance_phase(slug).success
    fill_phase(orchestrator, slug, Phase.STACK_SELECTION)
    orchestrator.approve_gate(slug, "stack_approved", "cto")
    assert orchestrator.advance_phase(slug).reason == FailureReason.GENERATION_FAILURE.value

    advisory = orchestrator.review_phase(slug)
    assert advisory.degraded is True
    assert advisory.status.value == "approved"


def test_filesystem_orchestrator_persists_layout(tmp_path: Path, fill_phase: Filler) -> None:
    settings = RuntimeSettings(state_store_root="store")
    orchestrator = PipelineOrchestrator.from_settings(
        settings, repo_root=tmp_path, generator=StaticDocumentGenerator(default="# Doc\n")
    )
    created = orchestrator.create_project("Disk Project")
    assert created.project is not None
    slug, project_id = created.project.slug, created.project.project_id
    fill_phase(orchestrator, slug, Phase.ANALYSIS)
    assert orchestrator.advance_phase(slug).success

    root = tmp_path / "store"
    assert (root / "projects" / slug / "metadata.json").is_file()
    assert (root / "artifacts" / slug / "ANALYSIS" / "personas.md").is_file()
    assert (root / "snapshots" / project_id / "ANALYSIS" / "0001.json").is_file()

    reopened = PipelineOrchestrator.from_settings(settings, repo_root=tmp_path)
    status = reopened.get_status(slug).project
    assert status is not None and status.current_phase == Phase.STACK_SELECTION


def test_unknown_phase_is_an_invalid_request(orchestrator: PipelineOrchestrator, project: str) -> None:
    invalid = FailureReason.INVALID_REQUEST.value

    rollback = orchestrator.rollback(project, "NOPE", confirm=True)
    assert (rollback.success, rollback.reason, rollback.target_phase) == (False, invalid, None)
    unconfirmed = orchestrator.rollback(project, "NOPE")
    assert unconfirmed.reason == invalid

    listing = orchestrator.list_snapshots(project, "NOPE")
    assert (listing.success, listing.reason, listing.phase) == (False, invalid, None)

    preview = orchestrator.rollback_preview(project, "NOPE")
    assert preview.allowed is False and preview.target_phase is None

    assert orchestrator.put_artifact(project, "NOPE", "notes.md", "x").reason == invalid
    assert orchestrator.generate_artifact(project, "NOPE", "notes.md", "Write notes").reason == invalid
    assert orchestrator.create_snapshot(project, "NOPE").reason == invalid
    assert orchestrator.review_phase(project, "NOPE").degraded is True
