"""Shared helpers."""

from coursegen.utils.model_settings import build_openai_model_settings, supports_reasoning

__all__ = ["build_openai_model_settings", "supports_reasoning"]
