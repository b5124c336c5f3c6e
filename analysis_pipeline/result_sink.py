"""Durable storage for per-target analysis results."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from analysis_pipeline.schema import PerTargetResult

logger = logging.getLogger("analysis_pipeline.sink")

RESULT_SUFFIX = "-analysis.json"
_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9]")
_ALNUM_RE = re.compile(r"[a-zA-Z0-9]")


class ResultSink(Protocol):
    def write(self, result: PerTargetResult) -> Path | None:
        ...

    def load(self, target_name: str) -> PerTargetResult | None:
        ...


def sanitize_target_name(name: str) -> str:
    """Map a target name to a filesystem-safe stem.

    Every character outside ``[A-Za-z0-9]`` becomes ``-``. Names with no ASCII
    letters or digits at all (for example Persian labels) would collapse to
    dashes only, so they get a stable hash prefix to keep them distinct.
    """
    stem = _UNSAFE_CHARS_RE.sub("-", name)
    if not _ALNUM_RE.search(name):
        digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:12]
        stem = f"target-{digest}"
    return stem


class JsonFileResultSink:
    """Write one ``<name>-analysis.json`` file per target, atomically."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, target_name: str) -> Path:
        return self.directory / f"{sanitize_target_name(target_name)}{RESULT_SUFFIX}"

    def write(self, result: PerTargetResult) -> Path:
        path = self.path_for(result.target.name)
        self.directory.mkdir(parents=True, exist_ok=True)
        data = result.to_json_dict()

        with self._lock:
            temp_path = None
            try:
                with tempfile.NamedTemporaryFile(
                    mode="w",
                    encoding="utf-8",
                    dir=self.directory,
                    prefix=f"{path.stem}-",
                    suffix=".tmp",
                    delete=False,
                ) as tmp_file:
                    temp_path = Path(tmp_file.name)
                    json.dump(data, tmp_file, indent=2, ensure_ascii=False)
                    tmp_file.flush()
                    os.fsync(tmp_file.fileno())
                os.replace(temp_path, path)
                temp_path = None
            finally:
                if temp_path and temp_path.exists():
                    try:
                        temp_path.unlink()
                    except OSError as exc:
                        logger.debug("Unable to remove temp file %s: %s", temp_path, exc)

        logger.debug("Saved analysis for %s to %s", result.target.name, path)
        return path

    def load(self, target_name: str) -> PerTargetResult | None:
        """Load a stored result, or None when nothing was saved for the target."""
        path = self.path_for(target_name)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as handle:
            data = json.load(handle)
        try:
            return PerTargetResult.model_validate(data)
        except ValidationError as exc:
            logger.error("Stored analysis %s is invalid: %s", path, exc)
            raise
