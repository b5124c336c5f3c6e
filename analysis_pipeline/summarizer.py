"""Reduce a batch of raw records into a compact digest for prompting."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence

from analysis_pipeline.config_utils import SummarizerSettings
from analysis_pipeline.schema import DomainRecord

logger = logging.getLogger(__name__)

ELLIPSIS = "…"
EMPTY_BATCH_DIGEST = "No records supplied."
UNKNOWN = "unknown"
NO_SUMMARY = "no summary"

_WHITESPACE_RE = re.compile(r"\s+")


def truncate_text(value: str | None, limit: int) -> str:
    """Collapse whitespace and cut the value to at most ``limit`` characters."""
    if not value:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", value).strip()
    if len(collapsed) <= limit:
        return collapsed
    if limit <= len(ELLIPSIS):
        return collapsed[:limit]
    return collapsed[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def _format_duration(minutes: float | None) -> str:
    if minutes is None or not math.isfinite(minutes) or minutes <= 0:
        return "0"
    if float(minutes).is_integer():
        return str(int(minutes))
    return f"{minutes:.1f}"


def summarize_record(
    index: int,
    record: DomainRecord,
    *,
    max_field_chars: int,
    max_content_chars: int,
) -> str:
    """Render one record as a single digest line."""
    record_id = record.record_id or str(index)
    parts = [
        f"Record {truncate_text(record_id, max_field_chars)}",
        f"direction={truncate_text(record.direction, max_field_chars) or UNKNOWN}",
        f"subject={truncate_text(record.subject, max_field_chars) or UNKNOWN}",
        f"summary={truncate_text(record.summary_text, max_field_chars) or NO_SUMMARY}",
        f"duration={_format_duration(record.duration_minutes)} min",
        "date="
        + (record.timestamp.date().isoformat() if record.timestamp else UNKNOWN),
        "follow_up=" + ("yes" if record.follow_up_date else "no"),
    ]
    if record.location:
        parts.append(f"location={truncate_text(record.location, max_field_chars)}")
    if record.content:
        parts.append(f"content={truncate_text(record.content, max_content_chars)}")
    return "; ".join(parts)


def summarize_records(
    records: Sequence[DomainRecord],
    *,
    max_field_chars: int = 200,
    max_content_chars: int = 4000,
    max_digest_chars: int = 16_000,
) -> str:
    """Return a bounded, deterministic digest with one line per record."""
    if not records:
        return EMPTY_BATCH_DIGEST

    lines: list[str] = []
    used = 0
    for index, record in enumerate(records, start=1):
        line = summarize_record(
            index,
            record,
            max_field_chars=max_field_chars,
            max_content_chars=max_content_chars,
        )
        # Always keep at least the first record, even if it alone is too long.
        if lines and used + len(line) + 1 > max_digest_chars:
            omitted = len(records) - len(lines)
            logger.debug(
                "Digest limit of %d chars reached; omitting %d record(s)",
                max_digest_chars,
                omitted,
            )
            lines.append(f"... {omitted} more record(s) omitted")
            break
        if not lines and len(line) > max_digest_chars:
            line = truncate_text(line, max_digest_chars)
        lines.append(line)
        used += len(line) + 1

    return "\n".join(lines)


def summarize_with_settings(
    records: Sequence[DomainRecord], settings: SummarizerSettings
) -> str:
    return summarize_records(
        records,
        max_field_chars=settings.max_field_chars,
        max_content_chars=settings.max_content_chars,
        max_digest_chars=settings.max_digest_chars,
    )
