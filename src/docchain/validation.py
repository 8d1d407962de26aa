"""Cross-artifact validation.

Every check is a pure function of the artifact map (keyed ``PHASE/name``)
and the project metadata. A check whose source documents are absent
reports ``pending`` rather than raising.
"""

from __future__ import annotations

import functools
import json
import logging
import re
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Sequence

from .models import (
    CheckCategory,
    CheckStatus,
    ItemStatus,
    Phase,
    ValidationCheck,
    ValidationItem,
    ValidationReport,
    ValidationSummary,
    utc_now,
)

logger = logging.getLogger(__name__)

Artifacts = Mapping[str, str]
Metadata = Mapping[str, Any]
CheckFn = Callable[[Artifacts, Metadata], ValidationCheck]
_Outcome = tuple[CheckStatus, str | None, list[ValidationItem]]

VALIDATED_PHASES: tuple[Phase, ...] = (
    Phase.ANALYSIS,
    Phase.STACK_SELECTION,
    Phase.SPEC,
    Phase.DEPENDENCIES,
    Phase.SOLUTIONING,
)

_REQ_RE = re.compile(r"REQ-[A-Z]+-\d{3}")
_EPIC_RE = re.compile(r"EPIC-\d{3}")
_ENTITY_RE = re.compile(r"^##\s+(\w+)", re.MULTILINE)
_PERSONA_RE = re.compile(r"^##\s+(.+?)(?:\s*\(|$)", re.MULTILINE)
_CLARIFICATION_RE = re.compile(r"\[NEEDS CLARIFICATION:[^\]]+\]")
_ASSUMPTION_RE = re.compile(r"\[AI ASSUMED:[^\]]+\]")
_PURPLE_PRIMARY_RE = re.compile(r"primary.*(?:purple|indigo|#[89ab][0-9a-f]{2}[89ab][0-9a-f]{2})", re.IGNORECASE)
_TYPOGRAPHY_RE = re.compile(r"text-(?:xs|sm|base|lg|xl|2xl|3xl|4xl)")
_SERVICE_RE = re.compile(r"service|microservice", re.IGNORECASE)

_IGNORED_SCHEMAS = frozenset({"error", "pagination", "meta"})
_STACK_KEYWORDS = ("next.js", "react", "node", "postgres", "prisma", "drizzle", "typescript", "vercel")
_MAX_TYPOGRAPHY_SIZES = 4
_MAX_SERVICES = 3
_MARKER_PREVIEW = 60


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _preview(marker: str) -> str:
    return marker[:_MARKER_PREVIEW] + ("..." if len(marker) > _MARKER_PREVIEW else "")


def validation_check(
    *,
    check_id: str,
    name: str,
    description: str,
    category: CheckCategory,
) -> Callable[[Callable[[Artifacts, Metadata], _Outcome]], CheckFn]:
    """Wrap an evaluator returning ``(status, details, items)`` into a check."""

    def decorator(evaluate: Callable[[Artifacts, Metadata], _Outcome]) -> CheckFn:
        @functools.wraps(evaluate)
        def run(artifacts: Artifacts, metadata: Metadata) -> ValidationCheck:
            status, details, items = evaluate(artifacts, metadata)
            return ValidationCheck(
                id=check_id,
                name=name,
                description=description,
                category=category,
                status=status,
                details=details,
                items=items,
            )

        run.check_id = check_id  # type: ignore[attr-defined]
        return run

    return decorator


def _pending(*names: str) -> _Outcome:
    return CheckStatus.PENDING, f"{' or '.join(names)} not found", []


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

@validation_check(
    check_id="req-task-mapping",
    name="Requirement to Task Mapping",
    description="Every PRD requirement has at least one implementing task",
    category=CheckCategory.REQUIREMENT_MAPPING,
)
def check_requirement_task_mapping(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    prd = artifacts.get("SPEC/PRD.md", "")
    tasks = artifacts.get("SOLUTIONING/tasks.md", "")
    if not prd or not tasks:
        return _pending("PRD.md", "tasks.md")

    required = _unique(_REQ_RE.findall(prd))
    referenced = set(_REQ_RE.findall(tasks))
    items = [
        ValidationItem(item=req, status=ItemStatus.PASS, message="Mapped to task")
        if req in referenced
        else ValidationItem(item=req, status=ItemStatus.FAIL, message="No implementing task found")
        for req in required
    ]
    unmapped = sum(1 for item in items if item.status == ItemStatus.FAIL)
    status = CheckStatus.FAIL if unmapped else CheckStatus.PASS
    return status, f"{len(required) - unmapped}/{len(required)} requirements mapped to tasks", items


@validation_check(
    check_id="api-data-mapping",
    name="API to Data Model Mapping",
    description="All API response schemas have corresponding data model entities",
    category=CheckCategory.CONSISTENCY,
)
def check_api_data_mapping(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    api_spec = artifacts.get("SPEC/api-spec.json", "")
    data_model = artifacts.get("SPEC/data-model.md", "")
    if not api_spec or not data_model:
        return _pending("api-spec.json", "data-model.md")

    entities = {match.lower() for match in _ENTITY_RE.findall(data_model)}
    try:
        document = json.loads(api_spec)
    except json.JSONDecodeError:
        return CheckStatus.WARNING, "Could not parse api-spec.json", []
    components = document.get("components") if isinstance(document, dict) else None
    schemas = components.get("schemas") if isinstance(components, dict) else None
    schema_names = [str(name).lower() for name in schemas] if isinstance(schemas, dict) else []

    items: list[ValidationItem] = []
    unmapped = 0
    for schema in schema_names:
        if schema in entities:
            items.append(ValidationItem(item=schema, status=ItemStatus.PASS, message="Found in data model"))
        elif schema in _IGNORED_SCHEMAS:
            items.append(ValidationItem(item=schema, status=ItemStatus.PASS, message="Auxiliary schema"))
        else:
            unmapped += 1
            items.append(ValidationItem(item=schema, status=ItemStatus.WARNING, message="Not in data model"))
    status = CheckStatus.WARNING if unmapped else CheckStatus.PASS
    return status, f"{len(schema_names) - unmapped}/{len(schema_names)} schemas mapped", items


@validation_check(
    check_id="persona-consistency",
    name="Persona Consistency",
    description="All personas defined in personas.md are referenced by the PRD",
    category=CheckCategory.CONSISTENCY,
)
def check_persona_consistency(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    personas = artifacts.get("ANALYSIS/personas.md", "")
    prd = artifacts.get("SPEC/PRD.md", "")
    if not personas or not prd:
        return _pending("personas.md", "PRD.md")

    defined = _unique(match.strip().lower() for match in _PERSONA_RE.findall(personas) if match.strip())
    prd_text = prd.lower()
    items = [
        ValidationItem(item=persona, status=ItemStatus.PASS, message="Referenced in PRD")
        if persona in prd_text
        else ValidationItem(item=persona, status=ItemStatus.WARNING, message="Not referenced in PRD")
        for persona in defined
    ]
    unreferenced = sum(1 for item in items if item.status == ItemStatus.WARNING)
    status = CheckStatus.WARNING if unreferenced else CheckStatus.PASS
    return status, f"{len(defined) - unreferenced}/{len(defined)} personas referenced in PRD", items


@validation_check(
    check_id="stack-consistency",
    name="Stack Consistency",
    description="Technologies in architecture.md match stack-decision.md",
    category=CheckCategory.CONSISTENCY,
)
def check_stack_consistency(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    decision = artifacts.get("STACK_SELECTION/stack-decision.md", "")
    architecture = artifacts.get("SOLUTIONING/architecture.md", "")
    if not decision or not architecture:
        return _pending("stack-decision.md", "architecture.md")

    decision_text = decision.lower()
    architecture_text = architecture.lower()
    items: list[ValidationItem] = []

    approved = str(metadata.get("stack_choice") or "")
    if approved:
        mentioned = approved.lower().replace("_", " ") in architecture_text
        items.append(
            ValidationItem(
                item=f"Approved stack: {approved}",
                status=ItemStatus.PASS if mentioned else ItemStatus.WARNING,
                message="Referenced in architecture" if mentioned else "Not explicitly mentioned",
            )
        )

    for tech in _STACK_KEYWORDS:
        if tech not in decision_text:
            continue
        consistent = tech in architecture_text
        items.append(
            ValidationItem(
                item=tech,
                status=ItemStatus.PASS if consistent else ItemStatus.WARNING,
                message="Consistent" if consistent else "In stack-decision but not in architecture",
            )
        )

    warnings = sum(1 for item in items if item.status == ItemStatus.WARNING)
    status = CheckStatus.WARNING if warnings else CheckStatus.PASS
    return status, f"{len(items) - warnings}/{len(items)} technologies consistent", items


@validation_check(
    check_id="epic-task-consistency",
    name="Epic to Task Consistency",
    description="All EPIC ids referenced in tasks.md exist in epics.md",
    category=CheckCategory.REQUIREMENT_MAPPING,
)
def check_epic_task_consistency(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    epics = artifacts.get("SOLUTIONING/epics.md", "")
    tasks = artifacts.get("SOLUTIONING/tasks.md", "")
    if not epics or not tasks:
        return _pending("epics.md", "tasks.md")

    defined = set(_EPIC_RE.findall(epics))
    referenced = _unique(_EPIC_RE.findall(tasks))
    items = [
        ValidationItem(item=epic, status=ItemStatus.PASS, message="Defined in epics.md")
        if epic in defined
        else ValidationItem(item=epic, status=ItemStatus.FAIL, message="Not defined in epics.md")
        for epic in referenced
    ]
    orphaned = sum(1 for item in items if item.status == ItemStatus.FAIL)
    status = CheckStatus.FAIL if orphaned else CheckStatus.PASS
    return status, f"{len(referenced) - orphaned}/{len(referenced)} epics valid", items


@validation_check(
    check_id="unresolved-clarifications",
    name="No Unresolved Clarifications",
    description="All [NEEDS CLARIFICATION] markers have been resolved",
    category=CheckCategory.COMPLETENESS,
)
def check_unresolved_clarifications(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    items = [
        ValidationItem(item=_preview(marker), status=ItemStatus.FAIL, message=f"Found in {path}")
        for path, content in artifacts.items()
        for marker in _CLARIFICATION_RE.findall(content)
    ]
    if not items:
        return CheckStatus.PASS, "No unresolved clarifications", []
    return CheckStatus.FAIL, f"{len(items)} unresolved clarifications found", items


@validation_check(
    check_id="ai-assumptions",
    name="AI Assumptions Documented",
    description="Assumptions made during generation are surfaced for review",
    category=CheckCategory.COMPLETENESS,
)
def check_ai_assumptions(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    items = [
        ValidationItem(item=_preview(marker), status=ItemStatus.INFO, message=f"Documented in {path}")
        for path, content in artifacts.items()
        for marker in _ASSUMPTION_RE.findall(content)
    ]
    details = f"{len(items)} AI assumptions documented" if items else "No AI assumptions made"
    return CheckStatus.PASS, details, items


@validation_check(
    check_id="design-system-compliance",
    name="Design System Compliance",
    description="Design system follows established guidelines",
    category=CheckCategory.COMPLIANCE,
)
def check_design_system_compliance(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    design = artifacts.get("SPEC/design-system.md", "")
    if not design:
        return _pending("design-system.md")

    purple_primary = bool(_PURPLE_PRIMARY_RE.search(design))
    uses_oklch = "oklch" in design.lower()
    sizes = len(set(_TYPOGRAPHY_RE.findall(design)))
    items = [
        ValidationItem(
            item="No purple/indigo as primary color",
            status=ItemStatus.FAIL if purple_primary else ItemStatus.PASS,
            message="Purple/indigo detected as primary" if purple_primary else "Compliant",
        ),
        ValidationItem(
            item="OKLCH color format used",
            status=ItemStatus.PASS if uses_oklch else ItemStatus.WARNING,
            message="OKLCH format found" if uses_oklch else "Consider using OKLCH",
        ),
        ValidationItem(
            item=f"At most {_MAX_TYPOGRAPHY_SIZES} typography sizes",
            status=ItemStatus.PASS if sizes <= _MAX_TYPOGRAPHY_SIZES else ItemStatus.WARNING,
            message=f"{sizes} sizes found",
        ),
    ]
    failures = sum(1 for item in items if item.status == ItemStatus.FAIL)
    status = CheckStatus.FAIL if failures else CheckStatus.PASS
    return status, f"{len(items) - failures}/{len(items)} guidelines met", items


@validation_check(
    check_id="test-first-compliance",
    name="Test-First Compliance",
    description="Tests are specified before implementation in tasks",
    category=CheckCategory.COMPLIANCE,
)
def check_test_first_compliance(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    tasks = artifacts.get("SOLUTIONING/tasks.md", "")
    if not tasks:
        return _pending("tasks.md")

    has_tests = bool(
        re.search(r"test.*specification|test.*criteria|acceptance.*test", tasks, re.IGNORECASE)
        or re.search(r"##.*test", tasks, re.IGNORECASE)
    )
    has_gherkin = bool(re.search(r"given.*when.*then", tasks, re.IGNORECASE))
    items = [
        ValidationItem(
            item="Test specifications present",
            status=ItemStatus.PASS if has_tests else ItemStatus.WARNING,
            message="Test sections found" if has_tests else "No explicit test sections",
        ),
        ValidationItem(
            item="Given/When/Then acceptance criteria",
            status=ItemStatus.PASS if has_gherkin else ItemStatus.WARNING,
            message="Gherkin format found" if has_gherkin else "Consider adding Given/When/Then",
        ),
    ]
    warnings = sum(1 for item in items if item.status == ItemStatus.WARNING)
    status = CheckStatus.WARNING if warnings else CheckStatus.PASS
    return status, f"{len(items) - warnings}/{len(items)} test-first criteria met", items


@validation_check(
    check_id="constitutional-compliance",
    name="Constitutional Articles Compliance",
    description="All 5 constitutional articles are followed",
    category=CheckCategory.COMPLIANCE,
)
def check_constitutional_compliance(artifacts: Artifacts, metadata: Metadata) -> _Outcome:
    architecture = artifacts.get("SOLUTIONING/architecture.md", "")
    tasks = artifacts.get("SOLUTIONING/tasks.md", "")
    if not architecture or not tasks:
        return _pending("architecture.md", "tasks.md")

    modular = bool(re.search(r"module|component|service|library", architecture, re.IGNORECASE))
    mentions_tests = bool(re.search(r"test", tasks, re.IGNORECASE))
    services = len(_SERVICE_RE.findall(architecture))
    integration = bool(re.search(r"integration.*test|real.*database|real.*service", tasks, re.IGNORECASE))
    items = [
        ValidationItem(
            item="Article 1: Library-First",
            status=ItemStatus.PASS if modular else ItemStatus.WARNING,
            message="Modular structure evident" if modular else "Consider modular boundaries",
        ),
        ValidationItem(
            item="Article 2: Test-First",
            status=ItemStatus.PASS if mentions_tests else ItemStatus.WARNING,
            message="See Test-First Compliance check",
        ),
        ValidationItem(
            item=f"Article 3: Simplicity (<= {_MAX_SERVICES} services)",
            status=ItemStatus.PASS if services <= _MAX_SERVICES else ItemStatus.WARNING,
            message=f"{services} service mentions found",
        ),
        ValidationItem(
            item="Article 4: Anti-Abstraction",
            status=ItemStatus.PASS,
            message="Manual review recommended",
        ),
        ValidationItem(
            item="Article 5: Integration-First",
            status=ItemStatus.PASS if integration else ItemStatus.WARNING,
            message="Integration tests mentioned" if integration else "Consider real service tests",
        ),
    ]
    failures = sum(1 for item in items if item.status == ItemStatus.FAIL)
    warnings = sum(1 for item in items if item.status == ItemStatus.WARNING)
    if failures:
        status = CheckStatus.FAIL
    elif warnings > 2:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.PASS
    return status, f"{len(items) - failures - warnings}/{len(items)} articles fully compliant", items


DEFAULT_CHECKS: tuple[CheckFn, ...] = (
    check_requirement_task_mapping,
    check_api_data_mapping,
    check_persona_consistency,
    check_stack_consistency,
    check_epic_task_consistency,
    check_unresolved_clarifications,
    check_ai_assumptions,
    check_design_system_compliance,
    check_test_first_compliance,
    check_constitutional_compliance,
)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

_PRECEDENCE: tuple[CheckStatus, ...] = (CheckStatus.FAIL, CheckStatus.WARNING, CheckStatus.PENDING)


def overall_status(statuses: Iterable[CheckStatus]) -> CheckStatus:
    """Reduce check statuses with precedence fail > warning > pending > pass."""
    seen = {CheckStatus(status) for status in statuses}
    for status in _PRECEDENCE:
        if status in seen:
            return status
    return CheckStatus.PASS


def summarize(checks: Sequence[ValidationCheck], *, completed_at: datetime | None = None) -> ValidationSummary:
    return ValidationSummary(
        total=len(checks),
        passed=sum(1 for check in checks if check.status == CheckStatus.PASS),
        failed=sum(1 for check in checks if check.status == CheckStatus.FAIL),
        warnings=sum(1 for check in checks if check.status == CheckStatus.WARNING),
        pending=sum(1 for check in checks if check.status == CheckStatus.PENDING),
        overall_status=overall_status(check.status for check in checks),
        completed_at=completed_at or utc_now(),
    )


class ValidationEngine:
    """Runs the ordered check battery. Holds no state and performs no I/O."""

    def __init__(self, checks: Sequence[CheckFn] = DEFAULT_CHECKS) -> None:
        self.checks = tuple(checks)

    def run(self, artifacts: Artifacts, metadata: Metadata, *, project_id: str) -> ValidationReport:
        results = [check(artifacts, metadata) for check in self.checks]
        summary = summarize(results)
        logger.info(
            "validation completed project=%s overall=%s passed=%d failed=%d warnings=%d pending=%d",
            project_id,
            summary.overall_status.value,
            summary.passed,
            summary.failed,
            summary.warnings,
            summary.pending,
        )
        return ValidationReport(
            project_id=project_id,
            checks=results,
            summary=summary,
            artifacts_checked=list(artifacts),
        )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_CATEGORY_LABELS: dict[CheckCategory, str] = {
    CheckCategory.REQUIREMENT_MAPPING: "Requirement Mapping",
    CheckCategory.CONSISTENCY: "Consistency Checks",
    CheckCategory.COMPLIANCE: "Constitutional Compliance",
    CheckCategory.COMPLETENESS: "Completeness Checks",
}


def _cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def render_validation_report(report: ValidationReport, project_name: str) -> str:
    summary = report.summary
    lines = [
        "---",
        "title: Validation Report",
        f"project: {project_name}",
        f"generated_at: {summary.completed_at.isoformat()}",
        f"overall_status: {summary.overall_status.value}",
        "---",
        "",
        "# Validation Report",
        "",
        "## Summary",
        "",
        "| Metric | Count |",
        "|--------|-------|",
        f"| Total Checks | {summary.total} |",
        f"| Passed | {summary.passed} |",
        f"| Failed | {summary.failed} |",
        f"| Warnings | {summary.warnings} |",
        f"| Pending | {summary.pending} |",
        f"| Overall Status | **{summary.overall_status.value.upper()}** |",
        "",
        "## Detailed Results",
        "",
    ]
    for category, label in _CATEGORY_LABELS.items():
        checks = [check for check in report.checks if check.category == category]
        if not checks:
            continue
        lines.extend([f"### {label}", ""])
        for check in checks:
            lines.extend(
                [
                    f"#### {check.name}",
                    "",
                    check.description,
                    "",
                    f"**Status:** {check.status.value.upper()}",
                    "",
                ]
            )
            if check.details:
                lines.extend([f"**Details:** {check.details}", ""])
            if check.items:
                lines.extend(["| Item | Status | Message |", "|------|--------|---------|"])
                lines.extend(
                    f"| {_cell(item.item)} | {item.status.value} | {_cell(item.message or '-')} |"
                    for item in check.items
                )
                lines.append("")
    return "\n".join(lines)


def render_coverage_matrix(artifacts: Artifacts, *, generated_at: datetime | None = None) -> str:
    lines = [
        "---",
        "title: Coverage Matrix",
        f"generated_at: {(generated_at or utc_now()).isoformat()}",
        "---",
        "",
        "# Coverage Matrix",
        "",
        "## Artifacts by Phase",
        "",
        "| Phase | Artifact | Size | Status |",
        "|-------|----------|------|--------|",
    ]
    for phase in VALIDATED_PHASES:
        prefix = f"{phase.value}/"
        for key, content in artifacts.items():
            if not key.startswith(prefix):
                continue
            size_kb = len(content.encode("utf-8")) / 1024
            lines.append(f"| {phase.value} | {key[len(prefix):]} | {size_kb:.1f}KB | Present |")
    return "\n".join(lines) + "\n"
