from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 2


class SupportsAsyncInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response."""

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, prompt: str) -> ModelT:
        """Invoke the model and return a validated Pydantic instance.

        Raises:
            RuntimeError: If the model returns unparseable or invalid output.
        """
        raw_output = await self.runnable.ainvoke(prompt)
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
        raise RuntimeError("OPENAI_API_KEY is required when BLUEPRINT_USE_LLM is enabled")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If model_name is empty.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
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
    """Normalize raw structured output into a validated Pydantic model instance.

    Handles three input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            )
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter bound to ``schema`` via ``with_structured_output``.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")

    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def content_to_text(content: Any) -> str:
    """Flatten heterogeneous chat message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict):
                chunks.append(json.dumps(item, sort_keys=True))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if hasattr(content, "content"):
        return content_to_text(content.content)
    return str(content)
