"""Per-target analysis: model path first, deterministic heuristics for the rest."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from analysis_pipeline.config_utils import AppSettings
from analysis_pipeline.heuristics import (
    BatchHeuristics,
    assemble_result,
    complete_field_groups,
)
from analysis_pipeline.inference import (
    InferenceClient,
    InferenceError,
    InferenceErrorKind,
    call_with_timeout,
)
from analysis_pipeline.logging_utils import target_logger
from analysis_pipeline.prompts import build_analysis_request
from analysis_pipeline.response_parser import (
    ParsedPayload,
    ParseFailure,
    ParseOutcome,
    parse_response,
)
from analysis_pipeline.schema import (
    PARSE_FAILURE,
    AnalysisRequest,
    AnalysisState,
    AnalysisTarget,
    DomainRecord,
    PerTargetResult,
    TargetCategory,
)
from analysis_pipeline.summarizer import summarize_with_settings

logger = logging.getLogger("analysis_pipeline.analyzer")


@dataclass(frozen=True)
class InferenceReply:
    text: str


@dataclass(frozen=True)
class InferenceFailure:
    kind: InferenceErrorKind
    message: str


InferenceOutcome = Union[InferenceReply, InferenceFailure]


def remaining_budget(deadline: float | None, clock=time.monotonic) -> float | None:
    """Seconds left before ``deadline`` (a ``time.monotonic`` value)."""
    if deadline is None:
        return None
    return deadline - clock()


class TargetAnalyzer:
    """Drive one target through built -> requested -> parsed|failed -> finalized."""

    def __init__(self, client: InferenceClient, settings: AppSettings | None = None):
        self.client = client
        self.settings = settings or AppSettings()

    def build_request(
        self, target: AnalysisTarget, records: Sequence[DomainRecord]
    ) -> AnalysisRequest:
        digest = summarize_with_settings(records, self.settings.summarizer)
        return build_analysis_request(
            digest,
            target.context_description,
            target.layer,
            category=target.category,
            temperature=self.settings.inference.temperature,
            max_output_tokens=self.settings.inference.max_output_tokens,
        )

    def request(
        self, request: AnalysisRequest, *, deadline: float | None = None
    ) -> InferenceOutcome:
        """Make exactly one inference attempt and tag the outcome."""
        budget = remaining_budget(deadline)
        try:
            text = call_with_timeout(
                lambda: self.client.complete(request, timeout=budget), budget
            )
        except InferenceError as exc:
            return InferenceFailure(exc.kind, str(exc))
        return InferenceReply(text)

    def analyze(
        self,
        target: AnalysisTarget,
        records: Sequence[DomainRecord],
        *,
        deadline: float | None = None,
    ) -> PerTargetResult:
        """Return a schema-complete result; never raises for model problems."""
        log = target_logger(logger, target.name)
        states: list[AnalysisState] = []
        failure: str | None = None

        request = self.build_request(target, records)
        states.append(AnalysisState.BUILT)
        log.debug("Built request (%d chars) for %d record(s)", len(request.text), len(records))

        states.append(AnalysisState.REQUESTED)
        outcome = self.request(request, deadline=deadline)

        supplied: dict = {}
        if isinstance(outcome, InferenceFailure):
            states.append(AnalysisState.FAILED)
            failure = outcome.kind.value
            log.warning("Inference failed (%s); using heuristics: %s", failure, outcome.message)
        else:
            parsed: ParseOutcome = parse_response(outcome.text)
            if isinstance(parsed, ParseFailure):
                states.append(AnalysisState.FAILED)
                failure = PARSE_FAILURE
                log.warning("Could not parse model reply; using heuristics: %s", parsed.reason)
            else:
                states.append(AnalysisState.PARSED)
                supplied = self._supplied_values(parsed, log)

        heuristics = BatchHeuristics(
            records,
            interaction_batch=target.category is TargetCategory.INTERACTION_BATCH,
        )
        values, provenance = complete_field_groups(supplied, heuristics)
        states.append(AnalysisState.FINALIZED)

        result = assemble_result(
            target,
            records,
            values,
            provenance,
            states=states,
            failure=failure,
            analyzed_at=datetime.now(timezone.utc),
        )
        log.info(
            "Finalized with %d finding(s), compliance %d (%s)",
            len(result.findings),
            result.compliance_score,
            "model" if result.fully_model_sourced else "with fallback",
        )
        return result

    @staticmethod
    def _supplied_values(parsed: ParsedPayload, log: logging.LoggerAdapter) -> dict:
        if parsed.omitted:
            log.info("Backfilling omitted field group(s): %s", ", ".join(parsed.omitted))
        return dict(parsed.values)
