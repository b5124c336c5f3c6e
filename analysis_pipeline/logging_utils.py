"""Logging setup for the analysis pipeline.

Log records go to stderr so the rich tables the CLI prints on stdout stay
clean. Nothing is written to disk unless ``ANALYSIS_PIPELINE_LOG_FILE`` or an
explicit ``log_file`` names a file. Per-target messages carry the target name
through :func:`target_logger`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s"
LEVEL_ENV = "ANALYSIS_PIPELINE_LOG_LEVEL"
FILE_ENV = "ANALYSIS_PIPELINE_LOG_FILE"
FORMAT_ENV = "ANALYSIS_PIPELINE_LOG_FORMAT"
# client libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "ollama")
_CONFIGURED = False


def _resolve_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    resolved = logging.getLevelName(os.getenv(LEVEL_ENV, "INFO").upper())
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def _build_handlers(
    log_file: str | os.PathLike[str] | None, console: bool
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())  # stderr

    if log_file is None:
        log_file = os.getenv(FILE_ENV, "")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))
    return handlers


def configure_logging(
    level: int | str | None = None,
    *,
    log_file: str | os.PathLike[str] | None = None,
    console: bool = True,
    force: bool = False,
) -> None:
    """Install the pipeline's root handlers.

    The first call (or any call with ``force=True``) replaces the root
    handlers with a stderr stream handler and, when a log file is named, an
    appending UTF-8 file handler. Later calls only adjust the level, so worker
    threads and library code can call this freely.

    ``level`` falls back to ``ANALYSIS_PIPELINE_LOG_LEVEL`` (default INFO) and
    ``log_file`` to ``ANALYSIS_PIPELINE_LOG_FILE``; an empty string disables
    file logging. ``ANALYSIS_PIPELINE_LOG_FORMAT`` overrides the line format.
    The HTTP and ollama client loggers are held at WARNING so request chatter
    does not drown out per-target messages.
    """
    global _CONFIGURED

    resolved_level = _resolve_level(level)
    handlers = _build_handlers(log_file, console)
    if not handlers:
        raise ValueError("configure_logging requires at least one handler")

    if force or not _CONFIGURED:
        logging.basicConfig(
            level=resolved_level,
            format=os.getenv(FORMAT_ENV, DEFAULT_FORMAT),
            handlers=handlers,
            force=True,
        )
        _CONFIGURED = True
    else:
        logging.getLogger().setLevel(resolved_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class TargetLoggerAdapter(logging.LoggerAdapter):
    """Prefix every message with the analysis target it concerns."""

    def process(self, msg, kwargs):
        return f"[{self.extra['target']}] {msg}", kwargs


def target_logger(logger: logging.Logger, target_name: str) -> TargetLoggerAdapter:
    return TargetLoggerAdapter(logger, {"target": target_name})


__all__ = ["TargetLoggerAdapter", "configure_logging", "target_logger"]
