from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .canonical import to_json_value
from .errors import CognitionValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3

TASK_INSTRUCTIONS: dict[str, str] = {
    "plan": (
        "You plan a software change for the given task. Return a short summary, ordered steps, "
        "the verification commands that prove the change, and any questions that must be answered first."
    ),
    "pr_draft": "Write a pull request title and body describing the implemented change.",
    "ci_fix_plan": "CI is failing on the pull request. Produce a minimal plan that makes the failing checks pass.",
    "verification_autofix_plan": (
        "Local verification commands failed. Produce a minimal plan that fixes the failures without "
        "unrelated changes."
    ),
    "verification_assist": "Verification failed. Summarize the likely cause and list next steps for a human.",
    "verification_decision": (
        "Verification failed and could not be fixed automatically. Choose the commands to rerun, "
        "and set ask_user when a human must decide."
    ),
    "review_classify": (
        "Classify each review thread by severity (blocking, question, suggestion, nitpick), list "
        "actionable and ignored thread ids, and flag threads whose full bodies are needed."
    ),
    "review_plan": (
        "Produce a fix plan for the actionable review threads. List threads that the fix fully "
        "addresses under resolve_threads."
    ),
    "recovery_plan": (
        "The run is blocked. Choose exactly one next action: rerun_verification, refetch_reviews, "
        "restart_review_loop or ask_user, with a one sentence reason."
    ),
    "learning_notes": (
        "Summarize what this run taught about the repository. Propose short rule, skill and doc "
        "updates only when they would have prevented a failure."
    ),
}


class SupportsAInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response."""

    schema: type[ModelT]
    runnable: SupportsAInvoke

    async def ainvoke(self, messages: list[BaseMessage]) -> ModelT:
        raw_output = await self.runnable.ainvoke(messages)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for cognition calls")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw structured output into a validated instance of ``schema``.

    Handles the ``include_raw=True`` envelope, model instances of any schema,
    and plain dicts. Nothing else is coerced.

    Raises:
        CognitionValidationError: If the output cannot be validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise CognitionValidationError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}",
                details={"schema": schema.__name__},
            )
        payload = payload.get("parsed")
        if payload is None:
            raise CognitionValidationError(
                f"Structured output returned no parsed payload for {schema.__name__}",
                details={"schema": schema.__name__},
            )

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise CognitionValidationError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}",
            details={"schema": schema.__name__},
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise CognitionValidationError(
            f"Structured output validation failed for {schema.__name__}: {exc}",
            details={"schema": schema.__name__, "errors": exc.errors(include_url=False)},
        ) from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind ``schema`` to a chat model via ``with_structured_output``.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")

    model = get_chat_model(model_name=model_name, temperature=temperature, repo_root=repo_root)
    runnable = model.with_structured_output(
        schema,
        method=method,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def build_messages(task: str, context: dict[str, Any]) -> list[BaseMessage]:
    instructions = TASK_INSTRUCTIONS.get(task)
    if instructions is None:
        raise ValueError(f"Unknown cognition task: {task}")
    body = json.dumps(to_json_value(context), indent=2, sort_keys=True)
    return [SystemMessage(content=instructions), HumanMessage(content=body)]


@dataclass
class LangChainCognition:
    """Cognition collaborator backed by ``ChatOpenAI`` structured output."""

    model_name: str
    repo_root: Path | None = None
    _adapters: dict[type[BaseModel], StructuredOutputAdapter[Any]] = field(default_factory=dict, repr=False)

    async def invoke(self, task: str, context: dict[str, Any], schema: type[BaseModel]) -> Any:  # noqa: ANN401
        adapter = self._adapters.get(schema)
        if adapter is None:
            adapter = get_structured_chat_model(
                model_name=self.model_name,
                schema=schema,
                repo_root=self.repo_root,
            )
            self._adapters[schema] = adapter
        logger.info("cognition task=%s schema=%s model=%s", task, schema.__name__, self.model_name)
        return await adapter.ainvoke(build_messages(task, context))
