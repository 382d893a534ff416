"""OpenAI model settings for content agents, with reasoning options where supported."""

from __future__ import annotations

from typing import Any

from pydantic_ai.models.openai import OpenAIResponsesModelSettings

_REASONING_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def supports_reasoning(model_name: str | None) -> bool:
    return bool(model_name) and model_name.strip().lower().startswith(_REASONING_PREFIXES)


def build_openai_model_settings(
    model_name: str | None,
    *,
    reasoning_effort: str | None = None,
    timeout_seconds: float | None = None,
    **overrides: Any,
) -> OpenAIResponsesModelSettings:
    """Model settings for a content agent; reasoning effort is dropped for models without it."""
    kwargs: dict[str, Any] = dict(overrides)
    if timeout_seconds is not None:
        kwargs["timeout"] = timeout_seconds
    if reasoning_effort and supports_reasoning(model_name):
        kwargs["openai_reasoning_effort"] = reasoning_effort
    return OpenAIResponsesModelSettings(**kwargs)
