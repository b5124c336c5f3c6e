import json

import pytest

from analysis_pipeline.response_parser import (
    ParsedPayload,
    ParseFailure,
    extract_json_object,
    parse_response,
)
from analysis_pipeline.schema import (
    FIELD_GROUPS,
    FindingCategory,
    PerformanceTrend,
    Severity,
)

FULL_PAYLOAD = {
    "criticalIssues": [
        {
            "type": "security",
            "severity": "critical",
            "description": "eval on user input",
            "location": "Dashboard.tsx:12",
            "solution": "Parse the value explicitly",
        }
    ],
    "optimizations": [
        {
            "category": "performance",
            "recommendation": "Memoize the table rows",
            "implementation": "useMemo",
            "impact": "Fewer renders",
        }
    ],
    "legacySystemRemnants": [
        {
            "location": "auth.ts",
            "description": "Secret path login",
            "removalInstructions": "Delete the route",
        }
    ],
    "complianceScore": 72,
    "performanceMetrics": {
        "qualityScore": 61,
        "resolutionRate": 33,
        "averageResponseTime": 10,
        "customerSatisfactionIndex": 33,
    },
    "businessImpact": {
        "revenueContribution": 40,
        "customerRetention": 33,
        "upsellSuccess": 0,
        "referralGeneration": 0,
    },
    "behavioralInsights": {
        "communicationPatterns": [
            {
                "pattern": "Quick responses",
                "frequency": 67,
                "effectiveness": 50,
                "culturalRelevance": 67,
            },
            {"pattern": "", "frequency": 10},
        ],
        "emotionalIntelligence": {
            "empathyScore": 17,
            "culturalSensitivity": 67,
            "adaptabilityIndex": 33,
        },
    },
    "technicalProficiency": {
        "v2rayExpertise": 60,
        "troubleshootingEfficiency": 33,
        "problemResolutionSpeed": 100,
        "technicalAccuracy": 48,
    },
    "predictiveInsights": {
        "recentActivity": 3,
        "burnoutRisk": 9,
        "performanceTrend": "declining",
        "expectedInteractions": 5,
        "qualityForecast": 61,
        "recommendedInterventions": ["Close open issues", 7, ""],
    },
}


def test_full_payload_parses_without_omissions():
    outcome = parse_response(json.dumps(FULL_PAYLOAD))

    assert isinstance(outcome, ParsedPayload)
    assert outcome.complete
    finding = outcome.values["findings"][0]
    assert finding.category is FindingCategory.SECURITY
    assert finding.severity is Severity.CRITICAL
    assert finding.recommendation == "Parse the value explicitly"
    assert outcome.values["compliance_score"] == 72
    assert outcome.values["quality_score"] == 61
    insights = outcome.values["predictive_insights"]
    assert insights.performance_trend is PerformanceTrend.DECLINING
    assert insights.recommended_interventions == ["Close open issues"]
    behavior = outcome.values["behavioral_insights"]
    assert [p.pattern for p in behavior.communication_patterns] == ["Quick responses"]
    assert behavior.empathy_score == 17
    assert outcome.values["technical_proficiency"].technical_accuracy == 48


def test_fenced_and_prose_wrapped_replies_parse_identically():
    body = json.dumps(FULL_PAYLOAD, ensure_ascii=False)
    fenced = f"Here is the analysis:\n```json\n{body}\n```\nLet me know!"
    prose = f"Sure. The result is {body} and that is all."

    fenced_outcome = parse_response(fenced)
    prose_outcome = parse_response(prose)

    assert isinstance(fenced_outcome, ParsedPayload)
    assert fenced_outcome.values == prose_outcome.values
    assert fenced_outcome.omitted == prose_outcome.omitted


@pytest.mark.parametrize("raw", ["", "   ", "no json here at all", "{broken", "[1, 2, 3]"])
def test_unusable_replies_are_parse_failures(raw):
    assert isinstance(parse_response(raw), ParseFailure)


def test_invalid_fenced_block_does_not_fall_back_to_other_text():
    raw = '```json\n{"complianceScore": \n```\n{"complianceScore": 90}'

    assert isinstance(parse_response(raw), ParseFailure)


def test_missing_groups_are_reported_as_omitted():
    outcome = parse_response('{"criticalIssues": [], "complianceScore": 95}')

    assert isinstance(outcome, ParsedPayload)
    assert outcome.values["findings"] == []
    assert outcome.values["compliance_score"] == 95
    assert "optimizations" in outcome.omitted
    assert "business_impact" in outcome.omitted
    assert set(outcome.omitted) | set(outcome.values) == set(FIELD_GROUPS)


def test_wrong_types_count_as_omitted():
    payload = {
        "criticalIssues": "none",
        "complianceScore": "high",
        "performanceMetrics": {"qualityScore": True, "resolutionRate": 250},
        "predictiveInsights": {"performanceTrend": "sideways"},
    }

    outcome = parse_response(json.dumps(payload))

    assert isinstance(outcome, ParsedPayload)
    assert not outcome.has("findings")
    assert not outcome.has("compliance_score")
    assert not outcome.has("quality_score")
    assert not outcome.has("predictive_insights")
    # out-of-range percentages are clamped
    assert outcome.values["resolution_rate"] == 100


def test_invalid_list_items_are_dropped():
    payload = {
        "criticalIssues": [
            {"type": "security", "severity": "urgent", "description": "bad severity"},
            "not an object",
            {"type": "logical", "severity": "low", "description": "kept"},
        ]
    }

    outcome = parse_response(json.dumps(payload))

    assert [f.description for f in outcome.values["findings"]] == ["kept"]


def test_list_with_no_valid_items_is_omitted():
    payload = {"criticalIssues": [{"severity": "critical"}]}

    outcome = parse_response(json.dumps(payload))

    assert "findings" in outcome.omitted


def test_top_level_metrics_are_accepted():
    outcome = parse_response('{"qualityScore": 80.6, "averageResponseTime": 400}')

    assert outcome.values["quality_score"] == 81
    assert outcome.values["average_response_time"] == 400


def test_extract_json_object_strips_bare_fences():
    assert extract_json_object('```\n{"a": 1}\n```') == {"a": 1}


def test_integer_past_float_range_counts_as_omitted():
    outcome = parse_response('{"complianceScore": ' + "9" * 400 + "}")

    assert isinstance(outcome, ParsedPayload)
    assert "compliance_score" in outcome.omitted


def test_oversized_integers_in_nested_groups_are_rejected():
    huge = int("9" * 400)
    payload = {
        "performanceMetrics": {"qualityScore": huge, "resolutionRate": 40},
        "businessImpact": {
            "revenueContribution": huge,
            "customerRetention": 1,
            "upsellSuccess": 1,
            "referralGeneration": 1,
        },
    }

    outcome = parse_response(json.dumps(payload))

    assert isinstance(outcome, ParsedPayload)
    assert not outcome.has("quality_score")
    assert not outcome.has("business_impact")
    assert outcome.values["resolution_rate"] == 40


def test_behavioral_insights_accept_flat_scores():
    payload = {
        "behavioralInsights": {
            "empathyScore": 80.6,
            "culturalSensitivity": 120,
            "adaptabilityIndex": 55,
        }
    }

    outcome = parse_response(json.dumps(payload))

    behavior = outcome.values["behavioral_insights"]
    assert behavior.empathy_score == 81
    assert behavior.cultural_sensitivity == 100
    assert behavior.communication_patterns == []


def test_incomplete_sub_score_groups_are_omitted():
    payload = {
        "behavioralInsights": {"emotionalIntelligence": {"empathyScore": 70}},
        "technicalProficiency": {
            "v2rayExpertise": 60,
            "troubleshootingEfficiency": "fast",
            "problemResolutionSpeed": 70,
            "technicalAccuracy": 70,
        },
    }

    outcome = parse_response(json.dumps(payload))

    assert isinstance(outcome, ParsedPayload)
    assert "behavioral_insights" in outcome.omitted
    assert "technical_proficiency" in outcome.omitted
