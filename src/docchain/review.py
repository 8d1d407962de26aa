from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from .errors import GenerationFailure
from .llm import StructuredOutputAdapter, SupportsInvoke, get_structured_chat_model
from .models import Phase
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_ARTIFACT_PREVIEW_CHARS = 2_000
_MAX_LOW_ISSUES = 5


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    CRITICAL = "critical"


class ReviewStatus(str, Enum):
    APPROVED = "approved"
    REGENERATE = "regenerate"
    ESCALATE = "escalate"


class CriticFeedback(BaseModel):
    severity: Severity = Severity.LOW
    category: str = "general"
    issue: str
    suggestion: str = ""
    artifact: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> str:
        normalized = str(value or "low").strip().lower()
        if normalized in {"critical", "high"}:
            return Severity.CRITICAL.value
        if normalized == "medium":
            return Severity.MEDIUM.value
        return Severity.LOW.value


class CriticReport(BaseModel):
    """Structured critic response."""

    feedback: list[CriticFeedback] = Field(default_factory=list)
    verdict: str = "approve"
    confidence: float = 1.0


class ReviewResult(BaseModel):
    status: ReviewStatus
    critic: str | None = None
    feedback: list[CriticFeedback] = Field(default_factory=list)
    confidence: float = 1.0
    summary: str = ""
    degraded: bool = False


@dataclass(frozen=True)
class CriticPersona:
    key: str
    name: str
    perspective: str
    criteria: tuple[str, ...]


CRITIC_PERSONAS: dict[str, CriticPersona] = {
    "skeptical_cto": CriticPersona(
        key="skeptical_cto",
        name="Skeptical CTO",
        perspective="Technical leader who has seen stack decisions go wrong",
        criteria=(
            "Hidden cost traps not mentioned",
            "Vendor lock-in risks",
            "Scaling limitations at the current scale tier",
            "Technical debt introduced",
            "Team skill mismatch",
            "Alternative stacks not fairly evaluated",
        ),
    ),
    "qa_lead": CriticPersona(
        key="qa_lead",
        name="QA Lead",
        perspective="Tester who must verify every requirement is testable",
        criteria=(
            "Requirements too vague to test",
            "Missing acceptance criteria",
            "Edge cases not addressed",
            "Persona traceability gaps",
            "Ambiguous success criteria",
            "Missing negative test cases",
        ),
    ),
    "security_auditor": CriticPersona(
        key="security_auditor",
        name="Security Auditor",
        perspective="Security professional who assumes worst-case scenarios",
        criteria=(
            "Authentication gaps or weaknesses",
            "Authorization and permission issues",
            "Data exposure risks",
            "Rate limiting missing or inadequate",
            "Injection vectors",
            "Sensitive data in logs",
            "Missing input validation",
        ),
    ),
}

PHASE_CRITICS: dict[Phase, str] = {
    Phase.STACK_SELECTION: "skeptical_cto",
    Phase.SPEC: "qa_lead",
    Phase.SOLUTIONING: "security_auditor",
}


def build_critic_prompt(persona: CriticPersona, artifacts: Mapping[str, str], context: Mapping[str, Any]) -> str:
    sections = []
    for name, content in artifacts.items():
        body = content[:_ARTIFACT_PREVIEW_CHARS]
        if len(content) > _ARTIFACT_PREVIEW_CHARS:
            body += "\n...[truncated]"
        sections.append(f"## {name}\n{body}")
    criteria = "\n".join(f"- {item}" for item in persona.criteria)
    context_lines = "\n".join(f"- {key}: {value}" for key, value in context.items()) or "- none"
    return (
        f"# ROLE\nYou are a {persona.name} ({persona.perspective}).\n\n"
        f"# REVIEW CRITERIA\n{criteria}\n\n"
        f"# PROJECT CONTEXT\n{context_lines}\n\n"
        "# ARTIFACTS\n" + "\n\n---\n\n".join(sections) + "\n\n"
        "# OUTPUT\nReturn feedback items with severity low, medium or critical, "
        "an overall verdict (approve, regenerate or escalate) and a confidence between 0 and 1.\n"
        "- critical: security flaw, data loss risk or complete blocker\n"
        "- medium: significant concern that will cause problems in production\n"
        "- low: minor nit or future consideration\n"
    )


def evaluate_decision(feedback: list[CriticFeedback], artifacts: Mapping[str, str]) -> ReviewResult:
    """Turn critic feedback into a review decision.

    Any critical issue escalates; any medium issue, or more than five low
    ones, asks for regeneration; anything else is approved.
    """
    critical = sum(1 for item in feedback if item.severity == Severity.CRITICAL)
    medium = sum(1 for item in feedback if item.severity == Severity.MEDIUM)
    low = sum(1 for item in feedback if item.severity == Severity.LOW)

    total_chars = sum(len(content) for content in artifacts.values())
    density = len(feedback) / max(total_chars / 10_000, 1)
    confidence = max(0.5, 1 - density * 0.1 - critical * 0.2 - medium * 0.05)

    if critical:
        status = ReviewStatus.ESCALATE
        summary = f"Found {critical} critical issue(s) requiring human review"
    elif medium:
        status = ReviewStatus.REGENERATE
        summary = f"Found {medium} medium issue(s) to address"
    elif low > _MAX_LOW_ISSUES:
        status = ReviewStatus.REGENERATE
        summary = f"Found {low} low issues for improvement"
    else:
        status = ReviewStatus.APPROVED
        summary = "No issues found - approved" if not feedback else f"Approved with {low} minor suggestion(s)"
    return ReviewResult(status=status, feedback=list(feedback), confidence=round(confidence, 3), summary=summary)


class CriticReviewer:
    """Per-phase critic review over a structured-output LLM runnable.

    ``review`` is advisory and fails open: a model failure yields an
    approved, degraded result with no feedback. ``review_or_raise`` is for
    gating decisions and fails closed with ``GenerationFailure``.
    """

    def __init__(self, runner: SupportsInvoke, *, phase_critics: Mapping[Phase, str] = PHASE_CRITICS) -> None:
        self.runner = runner
        self.phase_critics = dict(phase_critics)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "CriticReviewer":
        adapter: StructuredOutputAdapter[CriticReport] = get_structured_chat_model(
            model_name=settings.generator_model,
            schema=CriticReport,
            timeout=settings.generator_timeout_seconds,
            max_retries=settings.generator_max_retries,
            strict=False,
        )
        return cls(adapter)

    def persona_for(self, phase: Phase) -> CriticPersona | None:
        key = self.phase_critics.get(Phase(phase))
        return CRITIC_PERSONAS.get(key) if key else None

    def _run(self, persona: CriticPersona, artifacts: Mapping[str, str], context: Mapping[str, Any]) -> ReviewResult:
        report = self.runner.invoke(build_critic_prompt(persona, artifacts, context))
        if not isinstance(report, CriticReport):
            report = CriticReport.model_validate(report)
        result = evaluate_decision(report.feedback, artifacts)
        result.critic = persona.key
        return result

    def review_or_raise(
        self,
        phase: Phase,
        artifacts: Mapping[str, str],
        context: Mapping[str, Any] | None = None,
    ) -> ReviewResult:
        """Review a phase's artifacts, raising if the critic cannot be consulted.

        Raises:
            GenerationFailure: If the model call or its output parsing fails.
        """
        persona = self.persona_for(phase)
        if persona is None:
            return ReviewResult(status=ReviewStatus.APPROVED, summary="No critic configured for this phase")
        try:
            result = self._run(persona, artifacts, context or {})
        except GenerationFailure:
            raise
        except Exception as exc:  # noqa: BLE001 - vendor SDK and parsing errors share one failure surface.
            raise GenerationFailure(f"{persona.name} review failed: {exc}") from exc
        logger.info(
            "critic review phase=%s critic=%s status=%s issues=%d",
            Phase(phase).value,
            persona.key,
            result.status.value,
            len(result.feedback),
        )
        return result

    def review(
        self,
        phase: Phase,
        artifacts: Mapping[str, str],
        context: Mapping[str, Any] | None = None,
    ) -> ReviewResult:
        try:
            return self.review_or_raise(phase, artifacts, context)
        except GenerationFailure as exc:
            logger.warning("critic review degraded phase=%s: %s", Phase(phase).value, exc)
            persona = self.persona_for(phase)
            return ReviewResult(
                status=ReviewStatus.APPROVED,
                critic=persona.key if persona else None,
                summary="Critic unavailable - approved without review",
                degraded=True,
            )
