"""Extract a structured result from a model's free-form reply."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from analysis_pipeline.schema import (
    FIELD_GROUPS,
    BehavioralInsights,
    BusinessImpact,
    CommunicationPattern,
    LegacyRemnant,
    OptimizationSuggestion,
    PerformanceTrend,
    PredictiveInsights,
    StructuredFinding,
    TechnicalProficiency,
)

logger = logging.getLogger(__name__)

FENCED_JSON_RE = re.compile(r"```json[ \t]*\r?\n?(.*?)```", re.DOTALL | re.IGNORECASE)

LIST_GROUPS: dict[str, tuple[str, type[BaseModel]]] = {
    "findings": ("criticalIssues", StructuredFinding),
    "optimizations": ("optimizations", OptimizationSuggestion),
    "legacy_remnants": ("legacySystemRemnants", LegacyRemnant),
}

# field group -> (accepted keys, upper bound)
METRIC_GROUPS: dict[str, tuple[tuple[str, ...], int | None]] = {
    "quality_score": (("qualityScore", "quality_score"), 100),
    "resolution_rate": (("resolutionRate", "resolution_rate"), 100),
    "average_response_time": (("averageResponseTime", "average_response_time"), None),
    "satisfaction_index": (
        ("customerSatisfactionIndex", "satisfactionIndex", "satisfaction_index"),
        100,
    ),
}


@dataclass(frozen=True)
class ParseFailure:
    """The reply held no usable JSON object."""

    reason: str


@dataclass
class ParsedPayload:
    """Validated field groups plus the groups the model left out."""

    values: dict[str, Any] = field(default_factory=dict)
    omitted: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.omitted

    def has(self, group: str) -> bool:
        return group in self.values


ParseOutcome = Union[ParsedPayload, ParseFailure]


def _clean_json_response(response_text: str) -> str:
    """Clean JSON response by removing code block markers if present."""
    response_text = response_text.strip()
    if response_text.lower().startswith("```json"):
        response_text = response_text[7:]
    elif response_text.startswith("```"):
        response_text = response_text[3:]

    if response_text.endswith("```"):
        response_text = response_text[:-3]

    return response_text.strip()


def _extract_json_segment(text: str) -> str | None:
    """Attempt to extract the first balanced JSON object from text."""
    start_index = text.find("{")
    if start_index == -1:
        return None

    depth = 0
    in_string = False
    escape = False

    for position in range(start_index, len(text)):
        char = text[position]

        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start_index : position + 1]

    return None


def extract_json_object(raw_text: str) -> Any:
    """Locate and decode the JSON payload; raises ``ValueError`` on failure."""
    match = FENCED_JSON_RE.search(raw_text)
    if match:
        return json.loads(match.group(1))

    cleaned = _clean_json_response(raw_text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        candidate = _extract_json_segment(cleaned)
        if candidate and candidate != cleaned:
            return json.loads(candidate)
        raise


def _number(value: Any) -> float | None:
    # bool is an int subclass but never a valid score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        # integers past the float range
        return None
    if not math.isfinite(number):
        return None
    return number


def _bounded_int(value: Any, upper: int | None = 100) -> int | None:
    number = _number(value)
    if number is None:
        return None
    bounded = max(0, int(round(number)))
    if upper is not None:
        bounded = min(upper, bounded)
    return bounded


def _pick(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def _validate_items(
    value: Any, model: type[BaseModel], group: str
) -> list[BaseModel] | None:
    if not isinstance(value, list):
        return None
    valid: list[BaseModel] = []
    for item in value:
        if not isinstance(item, dict):
            logger.debug("Dropping %s entry of type %s", group, type(item).__name__)
            continue
        try:
            valid.append(model.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping invalid %s entry: %s", group, exc.errors()[:1])
    if value and not valid:
        return None
    return valid


def _validate_business_impact(value: Any) -> BusinessImpact | None:
    if not isinstance(value, dict):
        return None
    scores = {
        "revenue_contribution": _bounded_int(
            _pick(value, "revenueContribution", "revenue_contribution")
        ),
        "customer_retention": _bounded_int(
            _pick(value, "customerRetention", "customer_retention")
        ),
        "upsell_success": _bounded_int(_pick(value, "upsellSuccess", "upsell_success")),
        "referral_generation": _bounded_int(
            _pick(value, "referralGeneration", "referral_generation")
        ),
    }
    if any(score is None for score in scores.values()):
        return None
    return BusinessImpact(**scores)


def _validate_pattern(value: Any) -> CommunicationPattern | None:
    if not isinstance(value, dict):
        return None
    label = value.get("pattern")
    if not isinstance(label, str) or not label.strip():
        return None
    scores = {
        "frequency": _bounded_int(value.get("frequency")),
        "effectiveness": _bounded_int(value.get("effectiveness")),
        "cultural_relevance": _bounded_int(
            _pick(value, "culturalRelevance", "cultural_relevance")
        ),
    }
    if any(score is None for score in scores.values()):
        return None
    return CommunicationPattern(pattern=label.strip(), **scores)


def _validate_behavioral_insights(value: Any) -> BehavioralInsights | None:
    if not isinstance(value, dict):
        return None
    # scores may sit flat or under an "emotionalIntelligence" object
    emotional = _pick(value, "emotionalIntelligence", "emotional_intelligence")
    if not isinstance(emotional, dict):
        emotional = value
    scores = {
        "empathy_score": _bounded_int(_pick(emotional, "empathyScore", "empathy_score")),
        "cultural_sensitivity": _bounded_int(
            _pick(emotional, "culturalSensitivity", "cultural_sensitivity")
        ),
        "adaptability_index": _bounded_int(
            _pick(emotional, "adaptabilityIndex", "adaptability_index")
        ),
    }
    if any(score is None for score in scores.values()):
        return None

    raw_patterns = _pick(value, "communicationPatterns", "communication_patterns")
    if not isinstance(raw_patterns, list):
        raw_patterns = []
    patterns = [_validate_pattern(item) for item in raw_patterns]
    return BehavioralInsights(
        communication_patterns=[p for p in patterns if p is not None],
        **scores,
    )


def _validate_technical_proficiency(value: Any) -> TechnicalProficiency | None:
    if not isinstance(value, dict):
        return None
    scores = {
        "v2ray_expertise": _bounded_int(
            _pick(value, "v2rayExpertise", "v2ray_expertise")
        ),
        "troubleshooting_efficiency": _bounded_int(
            _pick(value, "troubleshootingEfficiency", "troubleshooting_efficiency")
        ),
        "problem_resolution_speed": _bounded_int(
            _pick(value, "problemResolutionSpeed", "problem_resolution_speed")
        ),
        "technical_accuracy": _bounded_int(
            _pick(value, "technicalAccuracy", "technical_accuracy")
        ),
    }
    if any(score is None for score in scores.values()):
        return None
    return TechnicalProficiency(**scores)


def _validate_predictive_insights(value: Any) -> PredictiveInsights | None:
    if not isinstance(value, dict):
        return None
    trend_value = _pick(value, "performanceTrend", "performance_trend")
    try:
        trend = PerformanceTrend(trend_value)
    except (ValueError, TypeError):
        return None
    numbers = {
        "recent_activity": _bounded_int(
            _pick(value, "recentActivity", "recent_activity") or 0, None
        ),
        "burnout_risk": _bounded_int(_pick(value, "burnoutRisk", "burnout_risk")),
        "expected_interactions": _bounded_int(
            _pick(value, "expectedInteractions", "expected_interactions"), None
        ),
        "quality_forecast": _bounded_int(
            _pick(value, "qualityForecast", "quality_forecast")
        ),
    }
    if any(number is None for number in numbers.values()):
        return None
    interventions = _pick(
        value, "recommendedInterventions", "recommended_interventions"
    )
    if not isinstance(interventions, list):
        interventions = []
    return PredictiveInsights(
        performance_trend=trend,
        recommended_interventions=[
            item.strip() for item in interventions if isinstance(item, str) and item.strip()
        ],
        **numbers,
    )


def validate_payload(payload: dict[str, Any]) -> ParsedPayload:
    """Validate each field group independently; bad groups count as omitted."""
    values: dict[str, Any] = {}

    for group, (key, model) in LIST_GROUPS.items():
        if key in payload:
            items = _validate_items(payload[key], model, group)
            if items is not None:
                values[group] = items

    score = _bounded_int(payload.get("complianceScore"))
    if score is not None:
        values["compliance_score"] = score

    metrics = payload.get("performanceMetrics")
    if not isinstance(metrics, dict):
        metrics = {}
    for group, (keys, upper) in METRIC_GROUPS.items():
        raw_value = _pick(metrics, *keys)
        if raw_value is None:
            raw_value = _pick(payload, *keys)
        metric = _bounded_int(raw_value, upper)
        if metric is not None:
            values[group] = metric

    impact = _validate_business_impact(payload.get("businessImpact"))
    if impact is not None:
        values["business_impact"] = impact

    behavior = _validate_behavioral_insights(payload.get("behavioralInsights"))
    if behavior is not None:
        values["behavioral_insights"] = behavior

    proficiency = _validate_technical_proficiency(payload.get("technicalProficiency"))
    if proficiency is not None:
        values["technical_proficiency"] = proficiency

    insights = _validate_predictive_insights(payload.get("predictiveInsights"))
    if insights is not None:
        values["predictive_insights"] = insights

    omitted = tuple(group for group in FIELD_GROUPS if group not in values)
    return ParsedPayload(values=values, omitted=omitted)


def parse_response(raw_text: str | None) -> ParseOutcome:
    """Turn raw model text into a ParsedPayload, or a ParseFailure. Never raises."""
    if not raw_text or not raw_text.strip():
        return ParseFailure("empty reply")
    try:
        payload = extract_json_object(raw_text)
    except (ValueError, RecursionError) as exc:
        logger.debug("Model reply failed JSON decode: %s", exc)
        return ParseFailure(f"invalid JSON: {exc}")

    if not isinstance(payload, dict):
        return ParseFailure(f"expected a JSON object, got {type(payload).__name__}")

    parsed = validate_payload(payload)
    if parsed.omitted:
        logger.debug("Model reply omitted field groups: %s", ", ".join(parsed.omitted))
    return parsed
