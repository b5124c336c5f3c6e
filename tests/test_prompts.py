from analysis_pipeline.prompts import (
    COMPONENT_FOCUS,
    INTERACTION_FOCUS,
    LAYER_INSTRUCTIONS,
    build_analysis_prompt,
    build_analysis_request,
)
from analysis_pipeline.schema import AnalysisLayer, TargetCategory


def test_prompt_is_stable_for_identical_inputs():
    first = build_analysis_prompt(
        "Record 1; summary=ok",
        "Support team, March",
        AnalysisLayer.PANEL,
        category=TargetCategory.INTERACTION_BATCH,
    )
    second = build_analysis_prompt(
        "Record 1; summary=ok",
        "Support team, March",
        AnalysisLayer.PANEL,
        category=TargetCategory.INTERACTION_BATCH,
    )

    assert first == second


def test_prompt_embeds_digest_context_and_schema():
    prompt = build_analysis_prompt(
        "Record 7; subject=Refund",
        "Support team, March",
        AnalysisLayer.COMPONENT,
        category=TargetCategory.INTERACTION_BATCH,
    )

    assert "```text\nRecord 7; subject=Refund\n```" in prompt
    assert "Support team, March" in prompt
    assert LAYER_INSTRUCTIONS[AnalysisLayer.COMPONENT] in prompt
    assert INTERACTION_FOCUS in prompt
    assert '"criticalIssues"' in prompt
    assert '"legacySystemRemnants"' in prompt
    assert "security|functional|performance|logical" in prompt


def test_component_targets_get_component_focus():
    prompt = build_analysis_prompt(
        "Record 1", "", AnalysisLayer.ECOSYSTEM, category=TargetCategory.API_ROUTE
    )

    assert COMPONENT_FOCUS in prompt
    assert INTERACTION_FOCUS not in prompt
    assert "No additional context supplied." in prompt


def test_build_analysis_request_carries_sampling_parameters():
    request = build_analysis_request(
        "Record 1",
        "ctx",
        AnalysisLayer.PAGE,
        category=TargetCategory.PAGE_VIEW,
        temperature=0.3,
        max_output_tokens=1024,
    )

    assert request.temperature == 0.3
    assert request.max_output_tokens == 1024
    assert request.text.startswith("# ANALYSIS REQUEST")
