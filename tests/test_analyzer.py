import json
import time
from unittest.mock import MagicMock

import pytest

from analysis_pipeline.analyzer import (
    InferenceFailure,
    InferenceReply,
    TargetAnalyzer,
    remaining_budget,
)
from analysis_pipeline.config_utils import AppSettings
from analysis_pipeline.inference import (
    DisabledInferenceClient,
    InferenceError,
    InferenceErrorKind,
)
from analysis_pipeline.schema import (
    FIELD_GROUPS,
    PARSE_FAILURE,
    AnalysisState,
    AnalysisTarget,
    DomainRecord,
    Provenance,
    TargetCategory,
)

FULL_REPLY = {
    "criticalIssues": [
        {
            "type": "functional",
            "severity": "high",
            "description": "Unresolved refunds",
            "location": "record 2",
            "solution": "Follow up",
        }
    ],
    "optimizations": [],
    "legacySystemRemnants": [],
    "complianceScore": 88,
    "performanceMetrics": {
        "qualityScore": 70,
        "resolutionRate": 40,
        "averageResponseTime": 11,
        "customerSatisfactionIndex": 55,
    },
    "businessImpact": {
        "revenueContribution": 60,
        "customerRetention": 70,
        "upsellSuccess": 20,
        "referralGeneration": 10,
    },
    "behavioralInsights": {
        "communicationPatterns": [],
        "empathyScore": 72,
        "culturalSensitivity": 90,
        "adaptabilityIndex": 64,
    },
    "technicalProficiency": {
        "v2rayExpertise": 80,
        "troubleshootingEfficiency": 75,
        "problemResolutionSpeed": 66,
        "technicalAccuracy": 70,
    },
    "predictiveInsights": {
        "recentActivity": 3,
        "burnoutRisk": 25,
        "performanceTrend": "stable",
        "expectedInteractions": 9,
        "qualityForecast": 70,
        "recommendedInterventions": ["Coach the team"],
    },
}


class StubClient:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    def complete(self, request, *, timeout=None):
        self.requests.append((request, timeout))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def target():
    return AnalysisTarget(
        name="Support team", category=TargetCategory.INTERACTION_BATCH
    )


@pytest.fixture
def records():
    return [
        DomainRecord(record_id="1", summary_text="مشکل حل شد, مشتری راضی", duration_minutes=12),
        DomainRecord(record_id="2"),
        DomainRecord(record_id="3", summary_text="پیگیری لازم است", duration_minutes=8),
    ]


def test_complete_model_reply_is_used_without_fallback(target, records):
    client = StubClient(reply=f"```json\n{json.dumps(FULL_REPLY)}\n```")

    result = TargetAnalyzer(client).analyze(target, records)

    assert result.fully_model_sourced
    assert result.compliance_score == 88
    assert result.performance_metrics.quality_score == 70
    assert result.performance_metrics.total_records == 3
    assert result.business_impact.upsell_success == 20
    assert result.behavioral_insights.empathy_score == 72
    assert result.technical_proficiency.v2ray_expertise == 80
    assert result.failure is None
    assert result.states == [
        AnalysisState.BUILT,
        AnalysisState.REQUESTED,
        AnalysisState.PARSED,
        AnalysisState.FINALIZED,
    ]
    assert len(client.requests) == 1


def test_partial_reply_is_backfilled(target, records):
    reply = {"criticalIssues": FULL_REPLY["criticalIssues"], "complianceScore": 95}
    client = StubClient(reply=json.dumps(reply))

    result = TargetAnalyzer(client).analyze(target, records)

    assert result.provenance["findings"] is Provenance.MODEL
    assert result.provenance["compliance_score"] is Provenance.MODEL
    assert result.provenance["quality_score"] is Provenance.FALLBACK
    assert result.provenance["business_impact"] is Provenance.FALLBACK
    assert result.compliance_score == 95
    assert result.performance_metrics.resolution_rate == 33
    assert not result.fully_model_sourced


@pytest.mark.parametrize(
    "kind",
    [
        InferenceErrorKind.AUTH_FAILURE,
        InferenceErrorKind.TRANSPORT_FAILURE,
        InferenceErrorKind.SERVICE_ERROR,
        InferenceErrorKind.EMPTY_RESPONSE,
    ],
)
def test_inference_errors_fall_back_completely(target, records, kind):
    client = StubClient(error=InferenceError(kind, "boom"))

    result = TargetAnalyzer(client).analyze(target, records)

    assert result.failure == kind.value
    assert AnalysisState.FAILED in result.states
    assert result.states[-1] is AnalysisState.FINALIZED
    assert all(result.provenance[g] is Provenance.FALLBACK for g in FIELD_GROUPS)
    assert result.performance_metrics.average_response_time == 10


def test_unparseable_reply_records_parse_failure(target, records):
    client = StubClient(reply="I could not analyze this, sorry.")

    result = TargetAnalyzer(client).analyze(target, records)

    assert result.failure == PARSE_FAILURE
    assert result.states == [
        AnalysisState.BUILT,
        AnalysisState.REQUESTED,
        AnalysisState.FAILED,
        AnalysisState.FINALIZED,
    ]


def test_empty_batch_and_null_record_do_not_crash(target):
    analyzer = TargetAnalyzer(DisabledInferenceClient())

    empty = analyzer.analyze(target, [])
    nulls = analyzer.analyze(target, [DomainRecord()])

    assert empty.performance_metrics.total_records == 0
    assert nulls.performance_metrics.total_records == 1
    assert nulls.performance_metrics.average_response_time == 0


def test_passed_deadline_skips_the_call(target, records):
    client = MagicMock()

    result = TargetAnalyzer(client).analyze(
        target, records, deadline=time.monotonic() - 1
    )

    client.complete.assert_not_called()
    assert result.failure == InferenceErrorKind.TRANSPORT_FAILURE.value


def test_request_uses_configured_sampling(target, records):
    settings = AppSettings()
    settings.inference.temperature = 0.4
    settings.inference.max_output_tokens = 2048
    client = StubClient(reply="{}")

    TargetAnalyzer(client, settings).analyze(target, records)

    request, timeout = client.requests[0]
    assert request.temperature == 0.4
    assert request.max_output_tokens == 2048
    assert timeout is None
    assert "Record 1;" in request.text


def test_request_stage_returns_tagged_outcomes(target, records):
    analyzer = TargetAnalyzer(StubClient(reply="{}"))
    request = analyzer.build_request(target, records)

    assert analyzer.request(request) == InferenceReply("{}")

    failing = TargetAnalyzer(
        StubClient(error=InferenceError(InferenceErrorKind.AUTH_FAILURE, "denied"))
    )
    outcome = failing.request(request)
    assert isinstance(outcome, InferenceFailure)
    assert outcome.kind is InferenceErrorKind.AUTH_FAILURE


def test_remaining_budget():
    assert remaining_budget(None) is None
    assert remaining_budget(10.0, clock=lambda: 4.0) == 6.0


def test_non_finite_duration_is_treated_as_missing(target):
    record = DomainRecord.model_validate(
        json.loads('{"durationMinutes": 1e400, "summaryText": "ok"}')
    )

    result = TargetAnalyzer(DisabledInferenceClient()).analyze(target, [record])

    assert result.states[-1] is AnalysisState.FINALIZED
    assert result.failure != "target_failure"
    assert result.performance_metrics.average_response_time == 0
    assert result.performance_metrics.quality_score == 50
