from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import GenerationFailure
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)
OutputMode = Literal["function_calling", "json_mode", "json_schema"]

_TIMEOUT_SECONDS = 120
_RETRIES = 3
_DEFAULT_SYSTEM_PROMPT = (
    "You write precise, well-structured project documents in Markdown or JSON as requested. "
    "Mark every assumption you make as [AI ASSUMED: ...] and every open question as "
    "[NEEDS CLARIFICATION: ...]."
)


class SupportsInvoke(Protocol):
    """Anything with a LangChain-style ``invoke``: chat models, structured runnables, test fakes."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - runnable inputs and outputs are untyped.
        ...


# ---------------------------------------------------------------------------
# Chat models
# ---------------------------------------------------------------------------

def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when it exists.

    Variables already set in the environment win over the ``.env`` file.

    Raises:
        RuntimeError: If no non-blank key is available.
    """
    dotenv_file = (repo_root or Path.cwd()) / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)
    api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is required for document generation")
    return api_key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _TIMEOUT_SECONDS,
    max_retries: int = _RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Build a ``ChatOpenAI`` client once the API key has been confirmed.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not (model_name or "").strip():
        raise ValueError("model_name is required")
    ensure_openai_api_key(repo_root=repo_root)
    options: dict[str, Any] = {"model": model_name, "temperature": temperature}
    options.update(timeout=timeout, max_retries=max_retries)
    if max_completion_tokens is not None:
        options["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**options)


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[SchemaT]):
    """Runnable wrapper whose ``invoke`` always yields a validated ``schema`` instance."""

    schema: type[SchemaT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> SchemaT:
        return normalize_structured_output(raw_output=self.runnable.invoke(prompt), schema=self.schema)


def normalize_structured_output(*, raw_output: Any, schema: type[SchemaT]) -> SchemaT:
    """Coerce whatever a structured-output runnable returned into ``schema``.

    Handles the ``include_raw=True`` envelope (``raw``/``parsed``/``parsing_error``),
    an instance of ``schema`` or of another model, and a plain dict.

    Raises:
        RuntimeError: If the envelope reports a parsing error, the payload has an
            unsupported type, or it does not validate against ``schema``.
    """
    name = schema.__name__
    payload = raw_output
    if isinstance(payload, dict) and payload.keys() >= {"parsed", "parsing_error"}:
        if payload["parsing_error"] is not None:
            raise RuntimeError(f"{name}: structured output parsing failed: {payload['parsing_error']!r}")
        if payload["parsed"] is None:
            raise RuntimeError(f"{name}: structured output envelope has no parsed value")
        payload = payload["parsed"]

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"{name}: unsupported payload type {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"{name}: structured output validation failed: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[SchemaT],
    temperature: float = 0.0,
    timeout: int = _TIMEOUT_SECONDS,
    max_retries: int = _RETRIES,
    method: OutputMode = "function_calling",
    strict: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[SchemaT]:
    """Chat model bound to ``schema`` through ``with_structured_output``.

    Raises:
        ValueError: If strict mode is requested together with ``json_mode``.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if strict and method == "json_mode":
        raise ValueError("json_mode does not support strict structured output")
    chat_model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    bound = chat_model.with_structured_output(schema, method=method, strict=None if method == "json_mode" else strict)
    return StructuredOutputAdapter(schema=schema, runnable=bound)


# ---------------------------------------------------------------------------
# Document generator port
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.2
    max_completion_tokens: int | None = None
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT


@dataclass(frozen=True)
class GenerationResult:
    content: str
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"


class DocumentGenerator(Protocol):
    def generate(self, prompt: str, config: GenerationConfig | None = None) -> GenerationResult:
        ...


class OpenAIDocumentGenerator:
    """Document generator backed by ``ChatOpenAI``.

    The chat model is built lazily so constructing the generator never needs
    an API key; the first ``generate`` call does.
    """

    def __init__(
        self,
        *,
        model_name: str,
        timeout: int = _TIMEOUT_SECONDS,
        max_retries: int = _RETRIES,
        repo_root: Path | None = None,
        chat_model: SupportsInvoke | None = None,
    ) -> None:
        self.model_name = model_name
        self.timeout = timeout
        self.max_retries = max_retries
        self.repo_root = repo_root
        self._chat_model = chat_model

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "OpenAIDocumentGenerator":
        return cls(
            model_name=settings.generator_model,
            timeout=settings.generator_timeout_seconds,
            max_retries=settings.generator_max_retries,
            repo_root=repo_root,
        )

    def _model(self, config: GenerationConfig) -> SupportsInvoke:
        if self._chat_model is not None:
            return self._chat_model
        return get_chat_model(
            model_name=self.model_name,
            temperature=config.temperature,
            timeout=self.timeout,
            max_retries=self.max_retries,
            max_completion_tokens=config.max_completion_tokens,
            repo_root=self.repo_root,
        )

    def generate(self, prompt: str, config: GenerationConfig | None = None) -> GenerationResult:
        """Generate one document.

        Raises:
            GenerationFailure: If the model call fails or returns no content.
        """
        effective = config or GenerationConfig()
        messages = [SystemMessage(content=effective.system_prompt), HumanMessage(content=prompt)]
        try:
            response = self._model(effective).invoke(messages)
        except Exception as exc:  # noqa: BLE001 - vendor SDKs raise their own hierarchies.
            raise GenerationFailure(f"{self.model_name} generation failed: {exc}") from exc

        content = response.content if isinstance(response.content, str) else _flatten_content(response.content)
        if not content.strip():
            raise GenerationFailure(f"{self.model_name} returned empty content")
        usage_metadata = getattr(response, "usage_metadata", None) or {}
        response_metadata = getattr(response, "response_metadata", None) or {}
        usage = {
            key: int(usage_metadata[key])
            for key in ("input_tokens", "output_tokens", "total_tokens")
            if key in usage_metadata
        }
        finish_reason = str(response_metadata.get("finish_reason") or "stop")
        logger.debug("generation finished model=%s finish=%s usage=%s", self.model_name, finish_reason, usage)
        return GenerationResult(content=content, usage=usage, finish_reason=finish_reason)


def _flatten_content(parts: Any) -> str:
    chunks: list[str] = []
    for part in parts or []:
        if isinstance(part, str):
            chunks.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            chunks.append(part["text"])
    return "".join(chunks)


class StaticDocumentGenerator:
    """Deterministic offline generator returning canned documents.

    ``documents`` maps a prompt substring to the content returned for any
    prompt that contains it; otherwise ``default`` is used.
    """

    def __init__(self, documents: dict[str, str] | None = None, *, default: str | None = None) -> None:
        self.documents = dict(documents or {})
        self.default = default
        self.calls: list[str] = []

    def generate(self, prompt: str, config: GenerationConfig | None = None) -> GenerationResult:
        self.calls.append(prompt)
        for marker, content in self.documents.items():
            if marker in prompt:
                return GenerationResult(content=content, usage={"total_tokens": 0})
        if self.default is None:
            raise GenerationFailure("no canned document matches the prompt")
        return GenerationResult(content=self.default, usage={"total_tokens": 0})
