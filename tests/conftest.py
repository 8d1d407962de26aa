from __future__ import annotations

from typing import Callable

import pytest

from docchain.llm import StaticDocumentGenerator
from docchain.models import PHASE_ORDER, Phase, phase_index
from docchain.orchestrator import PipelineOrchestrator
from docchain.settings import RuntimeSettings


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.value = start

    def now(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


# Artifact bodies that pass every cross-artifact check.
PHASE_ARTIFACTS: dict[Phase, dict[str, str]] = {
    Phase.ANALYSIS: {
        "constitution.md": "# Constitution\n\nLibrary-first, test-first, simple.\n",
        "project-brief.md": "# Brief\n\nA storefront for small shops.\n",
        "project-classification.json": '{"type": "web_app", "scale": "small"}',
        "personas.md": "# Personas\n\n## Admin (operator)\nManages the shop.\n\n## Shopper\nBuys things.\n",
    },
    Phase.STACK_SELECTION: {
        "stack-analysis.md": "# Analysis\n\nCompared three stacks.\n",
        "stack-decision.md": "# Decision\n\nWe use Next.js with Postgres.\n",
        "stack-rationale.md": "# Rationale\n\nSmall team, one deployable.\n",
        "stack.json": '{"frontend": "next.js", "database": "postgres"}',
    },
    Phase.SPEC: {
        "PRD.md": "# PRD\n\nREQ-AUTH-001 Admin can sign in.\nREQ-CART-002 Shopper can add items to a cart.\n",
        "data-model.md": "# Data Model\n\n## User\nid, email\n\n## Cart\nid, items\n",
        "api-spec.json": '{"components": {"schemas": {"User": {}, "Cart": {}, "Error": {}}}}',
        "design-system.md": "# Design System\n\nPrimary: oklch(0.62 0.15 150) green.\nType scale: text-sm text-base text-lg.\n",
        "component-inventory.md": "# Components\n\nButton, CartDrawer.\n",
        "user-flows.md": "# Flows\n\nSign in, add to cart.\n",
    },
    Phase.DEPENDENCIES: {
        "DEPENDENCIES.md": "# Dependencies\n\nnext, pg.\n",
        "dependencies.json": '{"next": "14", "pg": "8"}',
    },
    Phase.SOLUTIONING: {
        "architecture.md": "# Architecture\n\nA modular monolith on Next.js and Postgres with one API module.\n",
        "epics.md": "# Epics\n\nEPIC-001 Auth\nEPIC-002 Cart\n",
        "tasks.md": (
            "# Tasks\n\n## Test specifications\n"
            "Task 1 (EPIC-001): REQ-AUTH-001. Given an admin When they sign in Then a session exists.\n"
            "Task 2 (EPIC-002): REQ-CART-002 with integration tests against a real database.\n"
        ),
        "plan.md": "# Plan\n\nTwo sprints.\n",
    },
}

PHASE_GATES: dict[Phase, str] = {
    Phase.STACK_SELECTION: "stack_approved",
    Phase.DEPENDENCIES: "dependencies_approved",
    Phase.SOLUTIONING: "architecture_approved",
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generator() -> StaticDocumentGenerator:
    return StaticDocumentGenerator({"handoff": "# Handoff\n\nEverything is ready.\n"}, default="# Generated\n")


@pytest.fixture
def orchestrator(clock: FakeClock, generator: StaticDocumentGenerator) -> PipelineOrchestrator:
    return PipelineOrchestrator.in_memory(RuntimeSettings(), clock=clock, generator=generator)


@pytest.fixture
def project(orchestrator: PipelineOrchestrator) -> str:
    result = orchestrator.create_project("Demo Shop", description="Storefront for small shops")
    assert result.success and result.project is not None
    return result.project.slug


@pytest.fixture
def fill_phase() -> Callable[..., None]:
    def fill(orchestrator: PipelineOrchestrator, slug: str, phase: Phase, **overrides: str) -> None:
        for name, content in {**PHASE_ARTIFACTS[phase], **overrides}.items():
            result = orchestrator.put_artifact(slug, phase, name, content)
            assert result.success, result.message

    return fill


@pytest.fixture
def complete_through(fill_phase: Callable[..., None]) -> Callable[[PipelineOrchestrator, str, Phase], None]:
    """Fill, approve and advance every phase up to and including ``last``."""

    def complete(orchestrator: PipelineOrchestrator, slug: str, last: Phase) -> None:
        for phase in PHASE_ORDER[: phase_index(last) + 1]:
            if phase == Phase.VALIDATE:
                assert orchestrator.run_validation(slug).success
            else:
                fill_phase(orchestrator, slug, phase)
            gate = PHASE_GATES.get(phase)
            if gate is not None:
                assert orchestrator.approve_gate(slug, gate, "architect@example.com").success
            result = orchestrator.advance_phase(slug)
            assert result.success, result.message

    return complete
