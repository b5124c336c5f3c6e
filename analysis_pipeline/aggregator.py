"""Run many targets and fold their results into one consolidated report."""

from __future__ import annotations

import concurrent.futures
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from analysis_pipeline.analyzer import TargetAnalyzer
from analysis_pipeline.config_utils import AppSettings
from analysis_pipeline.inference import build_inference_client
from analysis_pipeline.logging_utils import target_logger
from analysis_pipeline.result_sink import ResultSink
from analysis_pipeline.schema import (
    BLOCKING_SEVERITIES,
    FIELD_GROUPS,
    SEVERITY_RANK,
    TARGET_FAILURE,
    ActionItem,
    ActionPriority,
    AnalysisState,
    AnalysisTarget,
    BehavioralInsights,
    BusinessImpact,
    ComplianceScores,
    ConsolidatedReport,
    CriticalFinding,
    DomainRecord,
    FindingCategory,
    InputValidationError,
    LegacyCleanupItem,
    PerformanceMetrics,
    PerformanceTrend,
    PerTargetResult,
    PredictiveInsights,
    Provenance,
    RemnantStatus,
    Severity,
    StructuredFinding,
    TargetFailure,
    TargetSummary,
    TechnicalProficiency,
)

logger = logging.getLogger("analysis_pipeline.run")

FINDING_PENALTY = 10
LEGACY_PENALTY = 5
OVERALL_WEIGHT = 0.8

FUNCTIONALITY_CATEGORIES = {FindingCategory.FUNCTIONAL, FindingCategory.LOGICAL}

TargetInput = AnalysisTarget | Mapping[str, Any]
RecordInput = DomainRecord | Mapping[str, Any]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float) -> int:
    return max(0, min(100, _round_half_up(value)))


def _coerce_target(value: TargetInput) -> AnalysisTarget:
    if isinstance(value, AnalysisTarget):
        return value
    try:
        return AnalysisTarget.model_validate(value)
    except ValidationError as exc:
        raise InputValidationError(f"Invalid analysis target: {exc}") from exc


def _coerce_records(name: str, batch: Iterable[RecordInput]) -> list[DomainRecord]:
    records: list[DomainRecord] = []
    for position, item in enumerate(batch):
        if isinstance(item, DomainRecord):
            records.append(item)
            continue
        if not isinstance(item, Mapping):
            raise InputValidationError(
                f"Record {position} for target {name!r} is not an object"
            )
        try:
            records.append(DomainRecord.model_validate(dict(item)))
        except ValidationError as exc:
            raise InputValidationError(
                f"Record {position} for target {name!r} is invalid: {exc}"
            ) from exc
    return records


def validate_inputs(
    targets: Sequence[TargetInput],
    record_batches_by_target: Mapping[str, Iterable[RecordInput]],
) -> list[tuple[AnalysisTarget, list[DomainRecord]]]:
    """Check the whole run up front; raises ``InputValidationError``."""
    if not targets:
        raise InputValidationError("At least one analysis target is required")

    work: list[tuple[AnalysisTarget, list[DomainRecord]]] = []
    seen: set[str] = set()
    for raw_target in targets:
        target = _coerce_target(raw_target)
        if target.name in seen:
            raise InputValidationError(f"Duplicate target name {target.name!r}")
        seen.add(target.name)

        batch = record_batches_by_target.get(target.name)
        if batch is None:
            raise InputValidationError(f"No record batch for target {target.name!r}")
        records = _coerce_records(target.name, batch)
        if not records:
            raise InputValidationError(f"Record batch for {target.name!r} is empty")
        work.append((target, records))
    return work


def build_placeholder_result(
    target: AnalysisTarget,
    records: Sequence[DomainRecord],
    cause: BaseException,
) -> PerTargetResult:
    """Stand-in result for a target whose analysis raised unexpectedly."""
    finding = StructuredFinding(
        category=FindingCategory.FUNCTIONAL,
        severity=Severity.HIGH,
        description=f"Analysis failed with {type(cause).__name__}: {cause}",
        location=target.name,
        recommendation="Fix the underlying error and re-run the analysis.",
    )
    return PerTargetResult(
        target=TargetSummary.from_target(target),
        findings=[finding],
        compliance_score=max(0, 100 - FINDING_PENALTY),
        performance_metrics=PerformanceMetrics(total_records=len(records)),
        business_impact=BusinessImpact(
            revenue_contribution=0,
            customer_retention=0,
            upsell_success=0,
            referral_generation=0,
        ),
        behavioral_insights=BehavioralInsights(
            empathy_score=0,
            cultural_sensitivity=0,
            adaptability_index=0,
        ),
        technical_proficiency=TechnicalProficiency(
            v2ray_expertise=0,
            troubleshooting_efficiency=0,
            problem_resolution_speed=0,
            technical_accuracy=0,
        ),
        predictive_insights=PredictiveInsights(
            burnout_risk=0,
            performance_trend=PerformanceTrend.STABLE,
            expected_interactions=0,
            quality_forecast=0,
        ),
        provenance={group: Provenance.FALLBACK for group in FIELD_GROUPS},
        states=[AnalysisState.FAILED, AnalysisState.FINALIZED],
        failure=TARGET_FAILURE,
        analyzed_at=datetime.now(timezone.utc),
    )


def _count_blocking(
    results: Sequence[PerTargetResult], categories: set[FindingCategory] | None = None
) -> int:
    return sum(
        1
        for result in results
        for finding in result.blocking_findings()
        if categories is None or finding.category in categories
    )


def _pending_remnants(results: Sequence[PerTargetResult]) -> int:
    return sum(
        1
        for result in results
        for remnant in result.legacy_remnants
        if remnant.status is RemnantStatus.PENDING
    )


def build_critical_findings(results: Sequence[PerTargetResult]) -> list[CriticalFinding]:
    entries: list[CriticalFinding] = []
    for result in results:
        blocking = sorted(
            result.blocking_findings(), key=lambda f: SEVERITY_RANK[f.severity]
        )
        if not blocking:
            continue
        entries.append(
            CriticalFinding(
                component=result.target.name,
                issue_count=len(blocking),
                severity=blocking[0].severity,
                category=blocking[0].category,
            )
        )
    return entries


def build_legacy_cleanup(results: Sequence[PerTargetResult]) -> list[LegacyCleanupItem]:
    return [
        LegacyCleanupItem(
            location=f"{result.target.name}: {remnant.location}",
            action=remnant.removal_instructions or remnant.description,
            status=remnant.status,
        )
        for result in results
        for remnant in result.legacy_remnants
    ]


def compute_compliance_scores(results: Sequence[PerTargetResult]) -> ComplianceScores:
    """Per-dimension scores capped by the weakest target; always within 0-100."""
    min_target = min((r.compliance_score for r in results), default=100)

    def dimension(categories: set[FindingCategory] | None) -> int:
        base = max(0, 100 - FINDING_PENALTY * _count_blocking(results, categories))
        return _clamp(min(min_target, base))

    security = _clamp(
        dimension({FindingCategory.SECURITY})
        - LEGACY_PENALTY * _pending_remnants(results)
    )
    functionality = dimension(FUNCTIONALITY_CATEGORIES)
    performance = dimension({FindingCategory.PERFORMANCE})
    user_experience = dimension(None)
    overall = _clamp(
        min(security, functionality, performance, user_experience) * OVERALL_WEIGHT
    )
    return ComplianceScores(
        security=security,
        functionality=functionality,
        performance=performance,
        user_experience=user_experience,
        overall=overall,
    )


def _targets_with(
    results: Sequence[PerTargetResult], categories: set[FindingCategory]
) -> list[str]:
    return [
        result.target.name
        for result in results
        if any(f.category in categories for f in result.blocking_findings())
    ]


def build_action_plan(results: Sequence[PerTargetResult]) -> list[ActionItem]:
    """Ordered plan: security, legacy cleanup, functional, performance, re-runs."""
    plan: list[ActionItem] = []

    security = _count_blocking(results, {FindingCategory.SECURITY})
    if security:
        names = _targets_with(results, {FindingCategory.SECURITY})
        plan.append(
            ActionItem(
                priority=ActionPriority.IMMEDIATE,
                task=(
                    f"Fix {security} critical/high security finding(s) in "
                    f"{', '.join(names)}"
                ),
                estimated_effort="2-4 hours",
                business_impact="Closes exploitable security gaps",
            )
        )

    pending = _pending_remnants(results)
    if pending:
        plan.append(
            ActionItem(
                priority=ActionPriority.IMMEDIATE,
                task=f"Remove {pending} legacy system remnant(s)",
                estimated_effort="1-2 hours",
                business_impact="Removes retired access paths and dead integrations",
            )
        )

    functional = _count_blocking(results, FUNCTIONALITY_CATEGORIES)
    if functional:
        names = _targets_with(results, FUNCTIONALITY_CATEGORIES)
        plan.append(
            ActionItem(
                priority=ActionPriority.HIGH,
                task=(
                    f"Resolve {functional} functional/logical finding(s) in "
                    f"{', '.join(names)}"
                ),
                estimated_effort="3-6 hours",
                business_impact="Restores correct behavior for users",
            )
        )

    performance = _count_blocking(results, {FindingCategory.PERFORMANCE})
    if performance:
        names = _targets_with(results, {FindingCategory.PERFORMANCE})
        plan.append(
            ActionItem(
                priority=ActionPriority.MEDIUM,
                task=(
                    f"Address {performance} performance finding(s) in "
                    f"{', '.join(names)}"
                ),
                estimated_effort="2-3 hours",
                business_impact="Improves responsiveness",
            )
        )

    failed = [r.target.name for r in results if r.failure == TARGET_FAILURE]
    if failed:
        plan.append(
            ActionItem(
                priority=ActionPriority.HIGH,
                task=f"Re-run analysis for {', '.join(failed)}",
                estimated_effort="under 1 hour",
                business_impact="Completes the assessment",
            )
        )
    return plan


def fold_results(
    results: Sequence[PerTargetResult],
    *,
    targets_analyzed: int | None = None,
    now: Callable[[], datetime] | None = None,
) -> ConsolidatedReport:
    """Fold per-target results into the batch report on the calling thread."""
    timestamp = (now or (lambda: datetime.now(timezone.utc)))()
    return ConsolidatedReport(
        timestamp=timestamp,
        targets_analyzed=len(results) if targets_analyzed is None else targets_analyzed,
        critical_findings=build_critical_findings(results),
        legacy_system_cleanup=build_legacy_cleanup(results),
        compliance_scores=compute_compliance_scores(results),
        prioritized_action_plan=build_action_plan(results),
        target_provenance={r.target.name: dict(r.provenance) for r in results},
        failed_targets=[r.target.name for r in results if r.failure == TARGET_FAILURE],
    )


class ReportAggregator:
    """Fan targets out to a bounded thread pool and fold the results."""

    def __init__(
        self,
        analyzer: TargetAnalyzer,
        sink: ResultSink | None = None,
        *,
        max_concurrency: int = 4,
        run_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.analyzer = analyzer
        self.sink = sink
        self.max_concurrency = max_concurrency
        self.run_timeout = run_timeout
        self.clock = clock

    def _analyze_one(
        self,
        target: AnalysisTarget,
        records: Sequence[DomainRecord],
        deadline: float | None,
    ) -> PerTargetResult:
        try:
            return self.analyzer.analyze(target, records, deadline=deadline)
        except Exception as exc:
            raise TargetFailure(target.name, exc) from exc

    def _store(self, result: PerTargetResult) -> None:
        if self.sink is None:
            return
        try:
            self.sink.write(result)
        except (OSError, TypeError, ValueError) as exc:
            target_logger(logger, result.target.name).warning(
                "Unable to store analysis result: %s", exc
            )

    def analyze_targets(
        self,
        targets: Sequence[TargetInput],
        record_batches_by_target: Mapping[str, Iterable[RecordInput]],
    ) -> list[PerTargetResult]:
        """Analyze every target; results come back in input order."""
        work = validate_inputs(targets, record_batches_by_target)
        deadline = (
            self.clock() + self.run_timeout if self.run_timeout is not None else None
        )
        logger.info(
            "Analyzing %d target(s) with up to %d worker(s)",
            len(work),
            self.max_concurrency,
        )

        results: list[PerTargetResult | None] = [None] * len(work)
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_concurrency, len(work)),
            thread_name_prefix="analysis",
        ) as executor:
            futures = {
                executor.submit(self._analyze_one, target, records, deadline): index
                for index, (target, records) in enumerate(work)
            }
            for future in concurrent.futures.as_completed(futures):
                index = futures[future]
                target, records = work[index]
                try:
                    results[index] = future.result()
                except TargetFailure as exc:
                    logger.error(
                        "Target %s failed; recording placeholder result: %s",
                        exc.target_name,
                        exc.cause,
                        exc_info=exc.cause,
                    )
                    results[index] = build_placeholder_result(target, records, exc.cause)

        completed = [result for result in results if result is not None]
        for result in completed:
            self._store(result)
        return completed

    def run(
        self,
        targets: Sequence[TargetInput],
        record_batches_by_target: Mapping[str, Iterable[RecordInput]],
    ) -> ConsolidatedReport:
        results = self.analyze_targets(targets, record_batches_by_target)
        report = fold_results(results, targets_analyzed=len(results))
        logger.info(
            "Report ready: %d target(s), overall compliance %d, %d failed",
            report.targets_analyzed,
            report.compliance_scores.overall,
            len(report.failed_targets),
        )
        return report


def analyze(
    targets: Sequence[TargetInput],
    record_batches_by_target: Mapping[str, Iterable[RecordInput]],
    *,
    analyzer: TargetAnalyzer | None = None,
    sink: ResultSink | None = None,
    settings: AppSettings | None = None,
) -> ConsolidatedReport:
    """Analyze every target and return the consolidated report.

    Raises ``InputValidationError`` when the input is unusable; every other
    problem is recovered per target.
    """
    settings = settings or AppSettings()
    if analyzer is None:
        analyzer = TargetAnalyzer(build_inference_client(settings.inference), settings)
    aggregator = ReportAggregator(
        analyzer,
        sink,
        max_concurrency=settings.pipeline.max_concurrency,
        run_timeout=settings.pipeline.run_timeout_seconds,
    )
    return aggregator.run(targets, record_batches_by_target)
