"""Deterministic, model-free computation of every per-target result field.

Everything in this module is a pure function of the record batch: no I/O, no
randomness and no wall-clock reads, so identical batches always produce
identical output. The analyzer uses it wholesale when the model path fails and
field-by-field to backfill groups the model omitted.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import cached_property
from typing import Any

from analysis_pipeline.schema import (
    BLOCKING_SEVERITIES,
    FIELD_GROUPS,
    SEVERITY_RANK,
    AnalysisState,
    AnalysisTarget,
    BehavioralInsights,
    BusinessImpact,
    CommunicationPattern,
    DomainRecord,
    FindingCategory,
    LegacyRemnant,
    OptimizationCategory,
    OptimizationSuggestion,
    PerformanceMetrics,
    PerformanceTrend,
    PerTargetResult,
    PredictiveInsights,
    Provenance,
    RemnantStatus,
    Severity,
    StructuredFinding,
    TargetCategory,
    TargetSummary,
    TechnicalProficiency,
)

logger = logging.getLogger(__name__)

BASE_QUALITY_SCORE = 50
MAX_DURATION_BONUS = 20
SUMMARY_BONUS = 15
SUMMARY_MIN_LENGTH = 20
FOLLOW_UP_BONUS = 15

COMPLIANCE_PENALTY_PER_FINDING = 10
COMPLIANCE_PENALTY_PER_REMNANT = 5

RECENT_ACTIVITY_WINDOW = timedelta(days=7)
IMPROVING_ACTIVITY_THRESHOLD = 15
DECLINING_ACTIVITY_THRESHOLD = 5
MIN_EXPECTED_INTERACTIONS = 5
BURNOUT_PER_RECENT_RECORD = 3
SLOW_RESPONSE_MINUTES = 30
SLOW_RESPONSE_BURNOUT_PENALTY = 10

LOW_RESOLUTION_RATE = 50
LOW_SATISFACTION_INDEX = 30
LOW_QUALITY_SCORE = 70
OPTIMIZE_RESPONSE_MINUTES = 15
LARGE_COMPONENT_LINES = 300

RESOLUTION_KEYWORDS = ("حل", "رفع", "موفق", "resolved", "fixed", "solved")
POSITIVE_KEYWORDS = (
    "راضی",
    "خوب",
    "عالی",
    "ممنون",
    "satisfied",
    "thank",
    "great",
    "happy",
)
UPSELL_KEYWORDS = ("تمدید", "خرید", "ارتقا", "renew", "upgrade", "purchase")
REFERRAL_KEYWORDS = ("معرفی", "referral", "referred", "recommend")
EMPATHY_KEYWORDS = ("متاسف", "ببخشید", "درک", "sorry", "apolog", "understand")
TECHNICAL_KEYWORDS = ("v2ray", "وی‌راهی")

QUICK_RESPONSE_PATTERN = "پاسخگویی سریع"
PROBLEM_SOLVING_PATTERN = "حل مسئله خلاقانه"
QUICK_RESPONSE_MINUTES = 15
EXPERTISE_BASELINE = 60

_PERSIAN_SCRIPT_RE = re.compile(r"[\u0600-\u06FF]")


@dataclass(frozen=True)
class HeuristicRule:
    id: str
    category: FindingCategory
    severity: Severity
    description: str
    patterns: tuple[str, ...]
    recommendation: str

    @cached_property
    def compiled(self) -> tuple[re.Pattern[str], ...]:
        return tuple(re.compile(p, re.IGNORECASE | re.MULTILINE) for p in self.patterns)

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.compiled)


@dataclass(frozen=True)
class LegacyMarker:
    id: str
    pattern: str
    description: str
    removal_instructions: str

    @cached_property
    def compiled(self) -> re.Pattern[str]:
        return re.compile(self.pattern, re.IGNORECASE)


CONTENT_RULES: tuple[HeuristicRule, ...] = (
    HeuristicRule(
        id="dynamic-code-execution",
        category=FindingCategory.SECURITY,
        severity=Severity.CRITICAL,
        description="Dynamic code execution on runtime data",
        patterns=(r"\beval\s*\(", r"\bnew\s+Function\s*\("),
        recommendation="Replace dynamic evaluation with explicit parsing or dispatch.",
    ),
    HeuristicRule(
        id="hardcoded-credential",
        category=FindingCategory.SECURITY,
        severity=Severity.CRITICAL,
        description="Credential literal embedded in source",
        patterns=(
            r"(password|passwd|secret|api[_-]?key|token)\s*[:=]\s*['\"][^'\"\s]{3,}['\"]",
        ),
        recommendation="Move the credential to the secret store and rotate it.",
    ),
    HeuristicRule(
        id="raw-html-injection",
        category=FindingCategory.SECURITY,
        severity=Severity.HIGH,
        description="Unescaped HTML written to the page",
        patterns=(r"dangerouslySetInnerHTML", r"\.innerHTML\s*="),
        recommendation="Render text through the framework or sanitize the HTML first.",
    ),
    HeuristicRule(
        id="string-built-sql",
        category=FindingCategory.SECURITY,
        severity=Severity.HIGH,
        description="SQL statement assembled from string fragments",
        patterns=(
            r"\b(select|insert|update|delete)\b[^;\n]*['\"`]\s*\+",
            r"\b(select|insert|update|delete)\b[^;\n]*\$\{",
        ),
        recommendation="Use parameterized queries through the data access layer.",
    ),
    HeuristicRule(
        id="auth-bypass",
        category=FindingCategory.SECURITY,
        severity=Severity.HIGH,
        description="Authentication check is skipped or disabled",
        patterns=(r"\b(skip|bypass|disable)_?auth\b", r"\bauth(enticated)?\s*[:=]\s*false\b"),
        recommendation="Enforce the session check on every protected route.",
    ),
    HeuristicRule(
        id="type-escape",
        category=FindingCategory.LOGICAL,
        severity=Severity.MEDIUM,
        description="Type checking is bypassed",
        patterns=(r"\bas\s+any\b", r"@ts-ignore", r"#\s*type:\s*ignore"),
        recommendation="Model the data with an explicit type or validator.",
    ),
    HeuristicRule(
        id="blocking-io",
        category=FindingCategory.PERFORMANCE,
        severity=Severity.MEDIUM,
        description="Synchronous file I/O on a request path",
        patterns=(r"\b(readFileSync|writeFileSync|execSync)\s*\(",),
        recommendation="Switch to the asynchronous API.",
    ),
    HeuristicRule(
        id="unfinished-work",
        category=FindingCategory.FUNCTIONAL,
        severity=Severity.LOW,
        description="Unfinished work marker left in the code",
        patterns=(r"\b(TODO|FIXME|HACK)\b",),
        recommendation="Resolve the marker or track it as an issue.",
    ),
)

LEGACY_MARKERS: tuple[LegacyMarker, ...] = (
    LegacyMarker(
        id="retired-ai-model",
        pattern=r"\bgrok\b",
        description="Reference to the retired Grok AI model",
        removal_instructions=(
            "Route the call through the current inference client and delete the "
            "Grok configuration."
        ),
    ),
    LegacyMarker(
        id="secret-path-auth",
        pattern=r"secret[\s_-]?path",
        description="Secret-path authentication",
        removal_instructions=(
            "Remove the secret-path route and require session authentication."
        ),
    ),
    LegacyMarker(
        id="hardcoded-access",
        pattern=r"hard[\s_-]?coded[\s_-]?(access|login|credential)",
        description="Hard-coded access method",
        removal_instructions="Replace the hard-coded access with role-based login.",
    ),
    LegacyMarker(
        id="deprecated-auth",
        pattern=r"legacy[\s_-]?auth|deprecated[\s_-]?auth",
        description="Deprecated authentication logic",
        removal_instructions=(
            "Delete the deprecated authentication branch and its session keys."
        ),
    ),
)


def _round_half_up(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return int(math.floor(value + 0.5))


def _clamp(value: float, lower: int = 0, upper: int = 100) -> int:
    if math.isnan(value):
        return lower
    if math.isinf(value):
        return upper if value > 0 else lower
    return max(lower, min(upper, _round_half_up(value)))


def _duration(record: DomainRecord) -> float | None:
    """Positive, finite duration in minutes, otherwise None."""
    duration = record.duration_minutes
    if duration is not None and math.isfinite(duration) and duration > 0:
        return duration
    return None


def _percentage(count: int, total: int) -> int:
    if total <= 0:
        return 0
    return _clamp(count / total * 100)


def _summary(record: DomainRecord) -> str:
    return (record.summary_text or "").lower()


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _count_matching(records: Sequence[DomainRecord], keywords: Iterable[str]) -> int:
    keywords = tuple(k.lower() for k in keywords)
    return sum(1 for record in records if _contains_any(_summary(record), keywords))


def _record_location(index: int, record: DomainRecord) -> str:
    label = f"record {record.record_id or index}"
    if record.location:
        return f"{label} ({record.location})"
    return label


def _searchable_text(record: DomainRecord) -> str:
    return "\n".join(
        part for part in (record.subject, record.summary_text, record.content) if part
    )


# --- Performance metrics -------------------------------------------------


def record_quality_score(record: DomainRecord) -> int:
    score = float(BASE_QUALITY_SCORE)
    duration = _duration(record)
    if duration is not None:
        score += min(duration, MAX_DURATION_BONUS)
    if record.summary_text and len(record.summary_text) > SUMMARY_MIN_LENGTH:
        score += SUMMARY_BONUS
    if record.follow_up_date:
        score += FOLLOW_UP_BONUS
    return _clamp(score)


def calculate_quality_score(records: Sequence[DomainRecord]) -> int:
    """Mean per-record quality score (0-100); 0 for an empty batch."""
    if not records:
        return 0
    scores = [record_quality_score(record) for record in records]
    return _clamp(sum(scores) / len(scores))


def calculate_resolution_rate(records: Sequence[DomainRecord]) -> int:
    """Percentage of records whose summary mentions a resolution."""
    return _percentage(_count_matching(records, RESOLUTION_KEYWORDS), len(records))


def calculate_average_response_time(records: Sequence[DomainRecord]) -> int:
    """Mean of the positive durations in minutes; 0 when there are none."""
    durations = [_duration(record) for record in records]
    durations = [duration for duration in durations if duration is not None]
    if not durations:
        return 0
    total = sum(durations)
    if math.isfinite(total):
        mean = total / len(durations)
    else:
        # durations near the float limit overflow when summed
        mean = sum(duration / len(durations) for duration in durations)
    return max(0, _round_half_up(mean))


def calculate_satisfaction_index(records: Sequence[DomainRecord]) -> int:
    """Percentage of records whose summary carries positive sentiment."""
    return _percentage(_count_matching(records, POSITIVE_KEYWORDS), len(records))


def compute_performance_metrics(records: Sequence[DomainRecord]) -> PerformanceMetrics:
    return PerformanceMetrics(
        total_records=len(records),
        quality_score=calculate_quality_score(records),
        resolution_rate=calculate_resolution_rate(records),
        average_response_time=calculate_average_response_time(records),
        satisfaction_index=calculate_satisfaction_index(records),
    )


# --- Compliance ----------------------------------------------------------


def calculate_compliance_score(
    findings: Sequence[StructuredFinding],
    remnants: Sequence[LegacyRemnant] = (),
) -> int:
    """100 minus 10 per critical/high finding and 5 per pending remnant."""
    blocking = sum(1 for finding in findings if finding.severity in BLOCKING_SEVERITIES)
    pending = sum(1 for remnant in remnants if remnant.status is RemnantStatus.PENDING)
    base = max(0, 100 - COMPLIANCE_PENALTY_PER_FINDING * blocking)
    return _clamp(base - COMPLIANCE_PENALTY_PER_REMNANT * pending)


# --- Findings, remnants, optimizations -----------------------------------


def _sort_findings(findings: list[StructuredFinding]) -> list[StructuredFinding]:
    return sorted(findings, key=lambda finding: SEVERITY_RANK[finding.severity])


def _interaction_findings(
    records: Sequence[DomainRecord], metrics: PerformanceMetrics
) -> list[StructuredFinding]:
    findings: list[StructuredFinding] = []
    if not records:
        return findings

    if metrics.resolution_rate < LOW_RESOLUTION_RATE:
        findings.append(
            StructuredFinding(
                category=FindingCategory.FUNCTIONAL,
                severity=Severity.HIGH,
                description=(
                    f"Only {metrics.resolution_rate}% of interactions record a "
                    "resolution"
                ),
                location="interaction batch",
                recommendation=(
                    "Review open interactions and record the outcome of each one."
                ),
            )
        )
    if metrics.satisfaction_index < LOW_SATISFACTION_INDEX:
        findings.append(
            StructuredFinding(
                category=FindingCategory.FUNCTIONAL,
                severity=Severity.MEDIUM,
                description=(
                    f"Customer satisfaction signals appear in only "
                    f"{metrics.satisfaction_index}% of interactions"
                ),
                location="interaction batch",
                recommendation="Confirm customer satisfaction before closing a case.",
            )
        )
    if metrics.average_response_time > SLOW_RESPONSE_MINUTES:
        findings.append(
            StructuredFinding(
                category=FindingCategory.PERFORMANCE,
                severity=Severity.MEDIUM,
                description=(
                    f"Average handling time is {metrics.average_response_time} "
                    "minutes"
                ),
                location="interaction batch",
                recommendation="Add triage scripts for the most frequent subjects.",
            )
        )

    missing = [
        _record_location(index, record)
        for index, record in enumerate(records, start=1)
        if not (record.summary_text or "").strip()
    ]
    if missing:
        findings.append(
            StructuredFinding(
                category=FindingCategory.FUNCTIONAL,
                severity=Severity.LOW,
                description=f"{len(missing)} interaction(s) have no summary",
                location=", ".join(missing[:5]) + (" ..." if len(missing) > 5 else ""),
                recommendation="Require a short summary when an interaction is logged.",
            )
        )
    return findings


def detect_findings(
    records: Sequence[DomainRecord],
    *,
    interaction_batch: bool,
    metrics: PerformanceMetrics | None = None,
) -> list[StructuredFinding]:
    """Apply the fixed rule set to every record, most severe first."""
    findings: list[StructuredFinding] = []
    for index, record in enumerate(records, start=1):
        text = _searchable_text(record)
        if not text:
            continue
        for rule in CONTENT_RULES:
            if rule.matches(text):
                findings.append(
                    StructuredFinding(
                        category=rule.category,
                        severity=rule.severity,
                        description=rule.description,
                        location=_record_location(index, record),
                        recommendation=rule.recommendation,
                    )
                )

    if interaction_batch:
        findings.extend(
            _interaction_findings(
                records, metrics or compute_performance_metrics(records)
            )
        )
    return _sort_findings(findings)


def detect_legacy_remnants(records: Sequence[DomainRecord]) -> list[LegacyRemnant]:
    """One pending remnant per (record, legacy marker) match."""
    remnants: list[LegacyRemnant] = []
    for index, record in enumerate(records, start=1):
        text = _searchable_text(record)
        if not text:
            continue
        for marker in LEGACY_MARKERS:
            if marker.compiled.search(text):
                remnants.append(
                    LegacyRemnant(
                        location=_record_location(index, record),
                        description=marker.description,
                        removal_instructions=marker.removal_instructions,
                    )
                )
    return remnants


def suggest_optimizations(
    records: Sequence[DomainRecord],
    *,
    interaction_batch: bool,
    metrics: PerformanceMetrics | None = None,
) -> list[OptimizationSuggestion]:
    suggestions: list[OptimizationSuggestion] = []
    if not records:
        return suggestions
    metrics = metrics or compute_performance_metrics(records)

    if interaction_batch:
        if metrics.quality_score < LOW_QUALITY_SCORE:
            suggestions.append(
                OptimizationSuggestion(
                    category=OptimizationCategory.UI_UX,
                    recommendation="Capture richer interaction notes",
                    implementation=(
                        "Prompt for a summary and a follow-up date in the "
                        "interaction form."
                    ),
                    impact=f"Raises the quality score from {metrics.quality_score}.",
                )
            )
        if metrics.average_response_time > OPTIMIZE_RESPONSE_MINUTES:
            suggestions.append(
                OptimizationSuggestion(
                    category=OptimizationCategory.PERFORMANCE,
                    recommendation="Shorten interaction handling time",
                    implementation="Prepare answers for recurring subjects.",
                    impact=(
                        f"Average handling time is "
                        f"{metrics.average_response_time} minutes."
                    ),
                )
            )
        without_follow_up = sum(1 for record in records if not record.follow_up_date)
        if without_follow_up * 2 > len(records):
            suggestions.append(
                OptimizationSuggestion(
                    category=OptimizationCategory.AI_INTEGRATION,
                    recommendation="Suggest follow-up dates automatically",
                    implementation=(
                        "Propose a follow-up date from the interaction summary."
                    ),
                    impact=(
                        f"{without_follow_up} of {len(records)} interactions "
                        "have no follow-up."
                    ),
                )
            )
        return suggestions

    for index, record in enumerate(records, start=1):
        if record.content and record.content.count("\n") + 1 > LARGE_COMPONENT_LINES:
            suggestions.append(
                OptimizationSuggestion(
                    category=OptimizationCategory.ARCHITECTURE,
                    recommendation="Split the component into smaller units",
                    implementation="Extract data loading and presentation parts.",
                    impact=f"{_record_location(index, record)} exceeds "
                    f"{LARGE_COMPONENT_LINES} lines.",
                )
            )
    return suggestions


# --- Business impact and outlook -----------------------------------------


def compute_business_impact(
    records: Sequence[DomainRecord],
    metrics: PerformanceMetrics | None = None,
) -> BusinessImpact:
    """Keyword- and metric-derived impact sub-scores."""
    metrics = metrics or compute_performance_metrics(records)
    total = len(records)
    upsell = _percentage(_count_matching(records, UPSELL_KEYWORDS), total)
    referral = _percentage(_count_matching(records, REFERRAL_KEYWORDS), total)
    return BusinessImpact(
        revenue_contribution=_clamp((metrics.quality_score + upsell) / 2),
        customer_retention=_clamp(
            (metrics.resolution_rate + metrics.satisfaction_index) / 2
        ),
        upsell_success=upsell,
        referral_generation=referral,
    )


def _mentions(record: DomainRecord, keywords: Iterable[str]) -> bool:
    text = f"{record.subject or ''}\n{record.summary_text or ''}".lower()
    return _contains_any(text, (keyword.lower() for keyword in keywords))


def _is_persian(record: DomainRecord) -> bool:
    text = f"{record.subject or ''}{record.summary_text or ''}"
    return bool(_PERSIAN_SCRIPT_RE.search(text))


def _subject_adaptability(
    records: Sequence[DomainRecord], metrics: PerformanceMetrics
) -> int:
    """Share of distinct subjects with at least one resolved interaction."""
    resolved_by_subject: dict[str, bool] = {}
    resolution_keywords = tuple(k.lower() for k in RESOLUTION_KEYWORDS)
    for record in records:
        if not record.subject or not record.subject.strip():
            continue
        subject = " ".join(record.subject.lower().split())
        resolved = _contains_any(_summary(record), resolution_keywords)
        resolved_by_subject[subject] = resolved_by_subject.get(subject, False) or resolved
    if not resolved_by_subject:
        return metrics.resolution_rate
    return _percentage(sum(resolved_by_subject.values()), len(resolved_by_subject))


def compute_behavioral_insights(
    records: Sequence[DomainRecord],
    metrics: PerformanceMetrics | None = None,
) -> BehavioralInsights:
    """Communication patterns and emotional-intelligence scores from keywords."""
    metrics = metrics or compute_performance_metrics(records)
    total = len(records)
    cultural = _percentage(sum(1 for record in records if _is_persian(record)), total)

    quick = [
        record
        for record in records
        if (_duration(record) or math.inf) <= QUICK_RESPONSE_MINUTES
    ]
    resolved = [
        record
        for record in records
        if _contains_any(_summary(record), RESOLUTION_KEYWORDS)
    ]
    patterns = [
        CommunicationPattern(
            pattern=QUICK_RESPONSE_PATTERN,
            frequency=_percentage(len(quick), total),
            effectiveness=_percentage(
                _count_matching(quick, RESOLUTION_KEYWORDS), len(quick)
            ),
            cultural_relevance=cultural,
        ),
        CommunicationPattern(
            pattern=PROBLEM_SOLVING_PATTERN,
            frequency=metrics.resolution_rate,
            effectiveness=_percentage(
                _count_matching(resolved, POSITIVE_KEYWORDS), len(resolved)
            ),
            cultural_relevance=cultural,
        ),
    ]

    empathy_mentions = _percentage(_count_matching(records, EMPATHY_KEYWORDS), total)
    return BehavioralInsights(
        communication_patterns=patterns,
        empathy_score=_clamp((metrics.satisfaction_index + empathy_mentions) / 2),
        cultural_sensitivity=cultural,
        adaptability_index=_subject_adaptability(records, metrics),
    )


def compute_technical_proficiency(
    records: Sequence[DomainRecord],
    metrics: PerformanceMetrics | None = None,
) -> TechnicalProficiency:
    metrics = metrics or compute_performance_metrics(records)
    technical = [record for record in records if _mentions(record, TECHNICAL_KEYWORDS)]

    expertise = _clamp(
        len(technical) / max(len(records), 1) * 100 + EXPERTISE_BASELINE
    )
    if technical:
        troubleshooting = _percentage(
            _count_matching(technical, RESOLUTION_KEYWORDS), len(technical)
        )
    else:
        troubleshooting = metrics.resolution_rate

    # full marks at or under the target time, scaled down past it
    if metrics.average_response_time <= 0:
        speed = 0
    else:
        speed = _clamp(
            100 * QUICK_RESPONSE_MINUTES
            / max(metrics.average_response_time, QUICK_RESPONSE_MINUTES)
        )

    return TechnicalProficiency(
        v2ray_expertise=expertise,
        troubleshooting_efficiency=troubleshooting,
        problem_resolution_speed=speed,
        technical_accuracy=_clamp(
            (metrics.quality_score + metrics.resolution_rate) / 2
        ),
    )


def _reference_time(records: Sequence[DomainRecord]) -> datetime | None:
    timestamps = [record.timestamp for record in records if record.timestamp]
    if not timestamps:
        return None
    try:
        return max(timestamps)
    except TypeError:
        # naive and aware timestamps cannot be compared
        return max(timestamps, key=lambda ts: ts.replace(tzinfo=None))


def count_recent_activity(records: Sequence[DomainRecord]) -> int:
    """Records within seven days of the batch's latest timestamp."""
    reference = _reference_time(records)
    if reference is None:
        return 0
    reference = reference.replace(tzinfo=None)
    return sum(
        1
        for record in records
        if record.timestamp
        and reference - record.timestamp.replace(tzinfo=None) <= RECENT_ACTIVITY_WINDOW
    )


def compute_predictive_insights(
    records: Sequence[DomainRecord],
    metrics: PerformanceMetrics | None = None,
) -> PredictiveInsights:
    metrics = metrics or compute_performance_metrics(records)
    recent = count_recent_activity(records)

    if recent > IMPROVING_ACTIVITY_THRESHOLD:
        trend = PerformanceTrend.IMPROVING
    elif recent < DECLINING_ACTIVITY_THRESHOLD:
        trend = PerformanceTrend.DECLINING
    else:
        trend = PerformanceTrend.STABLE

    burnout = BURNOUT_PER_RECENT_RECORD * recent
    if metrics.average_response_time > SLOW_RESPONSE_MINUTES:
        burnout += SLOW_RESPONSE_BURNOUT_PENALTY
    burnout = _clamp(burnout)

    interventions: list[str] = []
    if metrics.resolution_rate < LOW_RESOLUTION_RATE:
        interventions.append("Review unresolved interactions and close open issues")
    if metrics.satisfaction_index < 50:
        interventions.append("Increase positive follow-up contact with customers")
    if metrics.average_response_time > SLOW_RESPONSE_MINUTES:
        interventions.append("Shorten response times with clearer triage")
    if burnout >= 60:
        interventions.append("Rebalance workload across the team")
    if not interventions:
        interventions.append("Maintain current interaction practices")

    return PredictiveInsights(
        recent_activity=recent,
        burnout_risk=burnout,
        performance_trend=trend,
        expected_interactions=max(
            math.floor(recent * 1.1), MIN_EXPECTED_INTERACTIONS
        ),
        quality_forecast=metrics.quality_score,
        recommended_interventions=interventions,
    )


# --- Backfill ------------------------------------------------------------


class BatchHeuristics:
    """Lazily computed heuristic values for one record batch."""

    def __init__(self, records: Sequence[DomainRecord], *, interaction_batch: bool):
        self.records = tuple(records)
        self.interaction_batch = interaction_batch

    @cached_property
    def metrics(self) -> PerformanceMetrics:
        return compute_performance_metrics(self.records)

    @cached_property
    def findings(self) -> list[StructuredFinding]:
        return detect_findings(
            self.records,
            interaction_batch=self.interaction_batch,
            metrics=self.metrics,
        )

    @cached_property
    def optimizations(self) -> list[OptimizationSuggestion]:
        return suggest_optimizations(
            self.records,
            interaction_batch=self.interaction_batch,
            metrics=self.metrics,
        )

    @cached_property
    def legacy_remnants(self) -> list[LegacyRemnant]:
        return detect_legacy_remnants(self.records)

    @cached_property
    def business_impact(self) -> BusinessImpact:
        return compute_business_impact(self.records, self.metrics)

    @cached_property
    def behavioral_insights(self) -> BehavioralInsights:
        return compute_behavioral_insights(self.records, self.metrics)

    @cached_property
    def technical_proficiency(self) -> TechnicalProficiency:
        return compute_technical_proficiency(self.records, self.metrics)

    @cached_property
    def predictive_insights(self) -> PredictiveInsights:
        return compute_predictive_insights(self.records, self.metrics)

    def value_for(self, group: str, supplied: Mapping[str, Any]) -> Any:
        """Heuristic value for ``group``; compliance uses the final findings."""
        if group == "compliance_score":
            findings = supplied.get("findings", self.findings)
            remnants = supplied.get("legacy_remnants", self.legacy_remnants)
            return calculate_compliance_score(findings, remnants)
        if group in {
            "quality_score",
            "resolution_rate",
            "average_response_time",
            "satisfaction_index",
        }:
            return getattr(self.metrics, group)
        return getattr(self, group)


def complete_field_groups(
    supplied: Mapping[str, Any],
    heuristics: BatchHeuristics,
) -> tuple[dict[str, Any], dict[str, Provenance]]:
    """Fill every group missing from ``supplied`` and tag each group's origin."""
    values = dict(supplied)
    provenance: dict[str, Provenance] = {}
    # compliance last: it depends on the final findings and remnants
    ordered = [g for g in FIELD_GROUPS if g != "compliance_score"] + ["compliance_score"]
    for group in ordered:
        if group in supplied:
            provenance[group] = Provenance.MODEL
            continue
        values[group] = heuristics.value_for(group, values)
        provenance[group] = Provenance.FALLBACK
    return values, provenance


def assemble_result(
    target: AnalysisTarget,
    records: Sequence[DomainRecord],
    values: Mapping[str, Any],
    provenance: Mapping[str, Provenance],
    *,
    states: Sequence[AnalysisState] = (),
    failure: str | None = None,
    analyzed_at: datetime | None = None,
) -> PerTargetResult:
    """Build a PerTargetResult from a complete set of field-group values."""
    return PerTargetResult(
        target=TargetSummary.from_target(target),
        findings=_sort_findings(list(values["findings"])),
        optimizations=list(values["optimizations"]),
        legacy_remnants=list(values["legacy_remnants"]),
        compliance_score=values["compliance_score"],
        performance_metrics=PerformanceMetrics(
            total_records=len(records),
            quality_score=values["quality_score"],
            resolution_rate=values["resolution_rate"],
            average_response_time=values["average_response_time"],
            satisfaction_index=values["satisfaction_index"],
        ),
        business_impact=values["business_impact"],
        behavioral_insights=values["behavioral_insights"],
        technical_proficiency=values["technical_proficiency"],
        predictive_insights=values["predictive_insights"],
        provenance=dict(provenance),
        states=list(states),
        failure=failure,
        analyzed_at=analyzed_at,
    )


def build_fallback_result(
    target: AnalysisTarget,
    records: Sequence[DomainRecord],
) -> PerTargetResult:
    """Compute a complete result for ``target`` without any model input."""
    heuristics = BatchHeuristics(
        records,
        interaction_batch=target.category is TargetCategory.INTERACTION_BATCH,
    )
    values, provenance = complete_field_groups({}, heuristics)
    logger.debug(
        "Fallback result for %s: %d finding(s), compliance %d",
        target.name,
        len(values["findings"]),
        values["compliance_score"],
    )
    return assemble_result(target, records, values, provenance)
