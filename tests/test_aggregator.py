import json
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from analysis_pipeline.aggregator import (
    ReportAggregator,
    analyze,
    build_placeholder_result,
    compute_compliance_scores,
    fold_results,
    validate_inputs,
)
from analysis_pipeline.analyzer import TargetAnalyzer
from analysis_pipeline.config_utils import AppSettings
from analysis_pipeline.heuristics import build_fallback_result
from analysis_pipeline.inference import DisabledInferenceClient
from analysis_pipeline.result_sink import JsonFileResultSink
from analysis_pipeline.schema import (
    TARGET_FAILURE,
    ActionPriority,
    AnalysisTarget,
    DomainRecord,
    FindingCategory,
    InputValidationError,
    LegacyRemnant,
    Severity,
    StructuredFinding,
    TargetCategory,
)


def _target(name: str, category=TargetCategory.REACT_COMPONENT) -> AnalysisTarget:
    return AnalysisTarget(name=name, category=category)


def _finding(severity: str, category: str) -> StructuredFinding:
    return StructuredFinding(category=category, severity=severity, description="x")


def _result_with(name: str, findings=(), remnants=(), compliance=None):
    result = build_fallback_result(_target(name), [DomainRecord(content="ok")])
    update = {"findings": list(findings), "legacy_remnants": list(remnants)}
    if compliance is not None:
        update["compliance_score"] = compliance
    return result.model_copy(update=update)


def _disabled_analyzer() -> TargetAnalyzer:
    return TargetAnalyzer(DisabledInferenceClient())


# --- Validation -----------------------------------------------------------


def test_empty_target_list_is_rejected():
    with pytest.raises(InputValidationError):
        validate_inputs([], {})


def test_duplicate_target_names_are_rejected():
    targets = [_target("A"), {"name": " A ", "category": "api-route"}]
    with pytest.raises(InputValidationError):
        validate_inputs(targets, {"A": [{}]})


@pytest.mark.parametrize("batches", [{}, {"A": []}, {"A": ["not a record"]}])
def test_missing_or_empty_batches_are_rejected(batches):
    with pytest.raises(InputValidationError):
        validate_inputs([_target("A")], batches)


def test_invalid_target_definition_is_rejected():
    with pytest.raises(InputValidationError):
        validate_inputs([{"name": "A", "category": "spaceship"}], {"A": [{}]})


def test_input_validation_error_is_a_value_error():
    assert issubclass(InputValidationError, ValueError)


# --- Execution ------------------------------------------------------------


def test_run_preserves_input_order_and_conserves_findings():
    targets = [_target(f"T{i}") for i in range(6)]
    batches = {
        f"T{i}": [DomainRecord(content="eval(x)\n" if i % 2 else "const a = 1;")]
        for i in range(6)
    }

    aggregator = ReportAggregator(_disabled_analyzer(), max_concurrency=3)
    results = aggregator.analyze_targets(targets, batches)
    report = fold_results(results, targets_analyzed=len(results))

    assert [r.target.name for r in results] == [f"T{i}" for i in range(6)]
    assert report.targets_analyzed == 6
    assert [c.component for c in report.critical_findings] == ["T1", "T3", "T5"]
    assert sum(c.issue_count for c in report.critical_findings) == sum(
        len(r.blocking_findings()) for r in results
    )
    assert set(report.target_provenance) == {f"T{i}" for i in range(6)}


def test_unexpected_target_error_becomes_placeholder():
    analyzer = MagicMock()

    def fake_analyze(target, records, *, deadline=None):
        if target.name == "broken":
            raise KeyError("missing column")
        return build_fallback_result(target, records)

    analyzer.analyze.side_effect = fake_analyze
    targets = [_target("ok"), _target("broken")]
    batches = {"ok": [{"content": "fine"}], "broken": [{"content": "fine"}]}

    report = ReportAggregator(analyzer).run(targets, batches)

    assert report.targets_analyzed == 2
    assert report.failed_targets == ["broken"]
    assert report.critical_findings[0].component == "broken"
    assert report.critical_findings[0].severity is Severity.HIGH
    assert any(
        item.priority is ActionPriority.HIGH and "broken" in item.task
        for item in report.prioritized_action_plan
    )


def test_placeholder_result_shape():
    result = build_placeholder_result(_target("X"), [DomainRecord()], RuntimeError("boom"))

    assert result.failure == TARGET_FAILURE
    assert len(result.findings) == 1
    assert result.findings[0].severity is Severity.HIGH
    assert result.findings[0].category is FindingCategory.FUNCTIONAL
    assert "RuntimeError" in result.findings[0].description
    assert result.compliance_score == 90


def test_results_are_written_to_the_sink(tmp_path):
    sink = JsonFileResultSink(tmp_path)

    ReportAggregator(_disabled_analyzer(), sink).run(
        [_target("Orders API")], {"Orders API": [{"content": "ok"}]}
    )

    stored = json.loads((tmp_path / "Orders-API-analysis.json").read_text("utf-8"))
    assert stored["target"]["name"] == "Orders API"
    assert "complianceScore" in stored


def test_sink_errors_do_not_fail_the_run():
    sink = MagicMock()
    sink.write.side_effect = OSError("disk full")

    report = ReportAggregator(_disabled_analyzer(), sink).run(
        [_target("A")], {"A": [{"content": "ok"}]}
    )

    assert report.targets_analyzed == 1
    assert report.failed_targets == []


def test_run_timeout_marks_targets_as_transport_failures():
    client = MagicMock()
    # the run started a minute ago, so its 10 second budget is already spent
    aggregator = ReportAggregator(
        TargetAnalyzer(client),
        run_timeout=10,
        clock=lambda: time.monotonic() - 60,
    )

    results = aggregator.analyze_targets([_target("A")], {"A": [{"content": "ok"}]})

    assert results[0].failure == "transport_failure"
    client.complete.assert_not_called()


def test_max_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        ReportAggregator(_disabled_analyzer(), max_concurrency=0)


# --- Folding --------------------------------------------------------------


def test_compliance_scores_follow_dimension_rules():
    results = [
        _result_with(
            "A",
            findings=[_finding("critical", "security"), _finding("high", "logical")],
            remnants=[LegacyRemnant(location="auth.ts", removal_instructions="Delete")],
            compliance=85,
        ),
        _result_with("B", findings=[_finding("medium", "performance")], compliance=95),
    ]

    scores = compute_compliance_scores(results)

    assert scores.security == 80
    assert scores.functionality == 85
    assert scores.performance == 85
    assert scores.user_experience == 80
    assert scores.overall == 64


def test_scores_stay_bounded_with_many_critical_findings():
    findings = [_finding("critical", "security") for _ in range(1000)]
    remnants = [LegacyRemnant(location=str(i)) for i in range(20)]
    results = [_result_with("A", findings=findings, remnants=remnants, compliance=0)]

    report = fold_results(results)

    scores = report.compliance_scores
    for value in (
        scores.security,
        scores.functionality,
        scores.performance,
        scores.user_experience,
        scores.overall,
    ):
        assert 0 <= value <= 100
    assert scores.security == 0
    assert report.critical_findings[0].issue_count == 1000


def test_legacy_cleanup_and_action_plan_order():
    results = [
        _result_with(
            "Login",
            findings=[
                _finding("high", "performance"),
                _finding("critical", "functional"),
                _finding("critical", "security"),
            ],
            remnants=[LegacyRemnant(location="auth.ts", removal_instructions="Delete route")],
        )
    ]
    fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)

    report = fold_results(results, now=lambda: fixed)

    assert report.timestamp == fixed
    assert report.legacy_system_cleanup[0].location == "Login: auth.ts"
    assert report.legacy_system_cleanup[0].action == "Delete route"
    assert [item.priority for item in report.prioritized_action_plan] == [
        ActionPriority.IMMEDIATE,
        ActionPriority.IMMEDIATE,
        ActionPriority.HIGH,
        ActionPriority.MEDIUM,
    ]
    assert "security" in report.prioritized_action_plan[0].task
    assert "legacy" in report.prioritized_action_plan[1].task
    critical = report.critical_findings[0]
    assert critical.issue_count == 3
    assert critical.severity is Severity.CRITICAL
    assert critical.category is FindingCategory.FUNCTIONAL


def test_analyze_entry_point_uses_settings(tmp_path):
    settings = AppSettings()
    settings.inference.provider = "disabled"
    settings.pipeline.max_concurrency = 2

    report = analyze(
        [{"name": "Team", "category": "interaction-batch"}],
        {"Team": [{"summary": "مشکل حل شد", "duration": 5}]},
        settings=settings,
        sink=JsonFileResultSink(tmp_path),
    )

    assert report.targets_analyzed == 1
    assert report.target_provenance["Team"]["findings"].value == "fallback"
    assert (tmp_path / "Team-analysis.json").exists()
