"""Helpers for working with the project configuration file."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

CONFIG_PATH = Path("config.yaml")

DEFAULT_TEMPERATURE = 0.1
DEFAULT_MAX_OUTPUT_TOKENS = 8192
DEFAULT_MAX_PROMPT_CHARS = 60_000
DEFAULT_INFERENCE_TIMEOUT = 60.0
DEFAULT_MAX_CONCURRENCY = 4

PROVIDER_ENV = "ANALYSIS_PIPELINE_PROVIDER"
MODEL_ENV = "ANALYSIS_PIPELINE_MODEL"

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration file cannot be used."""


class VertexSettings(BaseModel):
    project_id: str = ""
    location: str = "us-central1"
    base_url: str | None = None
    token_env: str = "ANALYSIS_PIPELINE_ACCESS_TOKEN"
    token_command: list[str] = Field(default_factory=list)
    token_lifetime_seconds: float = Field(default=3300.0, gt=0)
    top_p: float = 0.8
    top_k: int = 40


class InferenceSettings(BaseModel):
    provider: Literal["ollama", "vertex", "disabled"] = "ollama"
    model: str = "gemma3:12b"
    host: str | None = None
    timeout_seconds: float = Field(default=DEFAULT_INFERENCE_TIMEOUT, gt=0)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=2)
    max_output_tokens: int = Field(default=DEFAULT_MAX_OUTPUT_TOKENS, gt=0)
    max_prompt_chars: int = Field(default=DEFAULT_MAX_PROMPT_CHARS, gt=0)
    context_window: int | None = None
    vertex: VertexSettings = Field(default_factory=VertexSettings)


class SummarizerSettings(BaseModel):
    max_field_chars: int = Field(default=200, gt=0)
    max_content_chars: int = Field(default=4000, gt=0)
    max_digest_chars: int = Field(default=16_000, gt=0)


class PipelineSettings(BaseModel):
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    run_timeout_seconds: float | None = Field(default=None, gt=0)
    results_dir: Path = Path("data/analysis-results")


class AppSettings(BaseModel):
    inference: InferenceSettings = Field(default_factory=InferenceSettings)
    summarizer: SummarizerSettings = Field(default_factory=SummarizerSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)


def load_config(path: Path | str = CONFIG_PATH) -> dict[str, Any]:
    """Load the YAML configuration."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _section(config: Mapping[str, Any], key: str) -> dict[str, Any]:
    """Return a configuration section as a plain dict."""
    entry = config.get(key)
    if entry is None:
        return {}
    if not isinstance(entry, Mapping):
        raise ConfigError(f"Configuration section '{key}' must be a mapping.")
    return dict(entry)


def build_settings(config: Mapping[str, Any] | None = None) -> AppSettings:
    """Validate a raw configuration mapping into typed settings."""
    config = config or {}
    inference = _section(config, "inference")

    provider_override = os.getenv(PROVIDER_ENV)
    if provider_override:
        inference["provider"] = provider_override.strip().lower()
    model_override = os.getenv(MODEL_ENV)
    if model_override:
        inference["model"] = model_override.strip()

    try:
        return AppSettings(
            inference=InferenceSettings.model_validate(inference),
            summarizer=SummarizerSettings.model_validate(
                _section(config, "summarizer")
            ),
            pipeline=PipelineSettings.model_validate(_section(config, "pipeline")),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_settings(path: Path | str | None = CONFIG_PATH) -> AppSettings:
    """Load settings from disk, falling back to defaults when no file exists."""
    if path is None or not Path(path).exists():
        logger.debug("No configuration file at %s; using defaults", path)
        return build_settings({})
    try:
        raw = load_config(path)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Unable to parse {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Configuration root in {path} must be a mapping.")
    return build_settings(raw)


def build_ollama_options(settings: InferenceSettings) -> dict[str, Any]:
    """Return Ollama options derived from the inference settings."""
    options: dict[str, Any] = {
        "temperature": settings.temperature,
        "num_predict": settings.max_output_tokens,
    }
    if settings.context_window:
        options["num_ctx"] = settings.context_window
    return options
