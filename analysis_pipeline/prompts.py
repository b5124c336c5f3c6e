"""Standardized prompts for target analysis requests."""

from __future__ import annotations

from analysis_pipeline.config_utils import DEFAULT_MAX_OUTPUT_TOKENS, DEFAULT_TEMPERATURE
from analysis_pipeline.schema import (
    AnalysisLayer,
    AnalysisRequest,
    FindingCategory,
    OptimizationCategory,
    PerformanceTrend,
    Severity,
    TargetCategory,
)

JSON_SYSTEM_MESSAGE = (
    "You are a JSON generation engine. Every reply MUST contain a single valid "
    "JSON object that strictly follows the caller's schema. Use double quotes for "
    "all keys and string values and ensure the JSON is syntactically correct."
)

LAYER_INSTRUCTIONS: dict[AnalysisLayer, str] = {
    AnalysisLayer.COMPONENT: (
        "Component-level deep dive: perform a line-by-line review for bugs, "
        "security vulnerabilities, type errors, logical flaws and anti-patterns."
    ),
    AnalysisLayer.PAGE: (
        "Page-level synthesis: analyze layout composition, responsive design, "
        "user workflows and clarity of data presentation."
    ),
    AnalysisLayer.PANEL: (
        "Panel-level architecture: evaluate overall architecture, feature "
        "completeness and cross-component integration."
    ),
    AnalysisLayer.ECOSYSTEM: (
        "Ecosystem-level validation: assess alignment with the platform's goals "
        "and its overall quality standard."
    ),
}

INTERACTION_FOCUS = (
    "The records are customer interactions. Judge interaction quality, how often "
    "issues were resolved, response times, customer satisfaction, business impact "
    "and short-term performance outlook."
)
COMPONENT_FOCUS = (
    "The records describe source components. Look for security vulnerabilities, "
    "functional bugs, performance issues, logical inconsistencies and remnants of "
    "retired subsystems (removed AI providers, secret-path authentication, "
    "hard-coded access methods, deprecated authentication logic)."
)


def _enum_values(enum_cls) -> str:
    return "|".join(member.value for member in enum_cls)


RESPONSE_SCHEMA = (
    "{\n"
    '  "criticalIssues": [\n'
    "    {\n"
    f'      "type": "{_enum_values(FindingCategory)}",\n'
    f'      "severity": "{_enum_values(Severity)}",\n'
    '      "description": "Detailed issue description",\n'
    '      "location": "Record id, line or section where the issue occurs",\n'
    '      "solution": "Exact fix or recommendation",\n'
    '      "codeExample": "Optional corrected snippet"\n'
    "    }\n"
    "  ],\n"
    '  "optimizations": [\n'
    "    {\n"
    f'      "category": "{_enum_values(OptimizationCategory)}",\n'
    '      "recommendation": "Specific improvement",\n'
    '      "implementation": "How to implement it",\n'
    '      "impact": "Expected benefit"\n'
    "    }\n"
    "  ],\n"
    '  "legacySystemRemnants": [\n'
    "    {\n"
    '      "location": "Where the legacy code or practice was found",\n'
    '      "description": "Which legacy subsystem it belongs to",\n'
    '      "removalInstructions": "Step-by-step removal"\n'
    "    }\n"
    "  ],\n"
    '  "complianceScore": 85,\n'
    '  "performanceMetrics": {\n'
    '    "qualityScore": 70,\n'
    '    "resolutionRate": 40,\n'
    '    "averageResponseTime": 12,\n'
    '    "customerSatisfactionIndex": 55\n'
    "  },\n"
    '  "businessImpact": {\n'
    '    "revenueContribution": 60,\n'
    '    "customerRetention": 70,\n'
    '    "upsellSuccess": 20,\n'
    '    "referralGeneration": 10\n'
    "  },\n"
    '  "behavioralInsights": {\n'
    '    "communicationPatterns": [\n'
    "      {\n"
    '        "pattern": "Observed communication pattern",\n'
    '        "frequency": 60,\n'
    '        "effectiveness": 75,\n'
    '        "culturalRelevance": 80\n'
    "      }\n"
    "    ],\n"
    '    "emotionalIntelligence": {\n'
    '      "empathyScore": 70,\n'
    '      "culturalSensitivity": 80,\n'
    '      "adaptabilityIndex": 65\n'
    "    }\n"
    "  },\n"
    '  "technicalProficiency": {\n'
    '    "v2rayExpertise": 60,\n'
    '    "troubleshootingEfficiency": 70,\n'
    '    "problemResolutionSpeed": 75,\n'
    '    "technicalAccuracy": 80\n'
    "  },\n"
    '  "predictiveInsights": {\n'
    '    "recentActivity": 8,\n'
    '    "burnoutRisk": 25,\n'
    f'    "performanceTrend": "{_enum_values(PerformanceTrend)}",\n'
    '    "expectedInteractions": 9,\n'
    '    "qualityForecast": 70,\n'
    '    "recommendedInterventions": ["Short actionable intervention"]\n'
    "  }\n"
    "}"
)

SCHEMA_RULES = (
    "Schema rules:\n"
    f'- "type" must be one of: {", ".join(m.value for m in FindingCategory)}.\n'
    f'- "severity" must be one of: {", ".join(m.value for m in Severity)}.\n'
    f'- optimization "category" must be one of: '
    f"{', '.join(m.value for m in OptimizationCategory)}.\n"
    '- "complianceScore", every score and every percentage is an integer from 0 '
    "to 100.\n"
    '- "averageResponseTime" is a non-negative integer number of minutes.\n'
    "- Use empty arrays when nothing applies. The values in the example are for "
    "structure only; never copy them."
)


def build_analysis_prompt(
    digest: str,
    context_description: str,
    layer: AnalysisLayer,
    *,
    category: TargetCategory,
) -> str:
    """Build the request text. Identical inputs always give identical text."""
    focus = (
        INTERACTION_FOCUS
        if category is TargetCategory.INTERACTION_BATCH
        else COMPONENT_FOCUS
    )
    context = context_description.strip() or "No additional context supplied."
    return (
        "# ANALYSIS REQUEST\n\n"
        "You are a senior reviewer producing a structured quality and performance "
        "assessment.\n\n"
        "## ANALYSIS CONTEXT\n"
        f"- Target category: {category.value}\n"
        f"- Analysis layer: {int(layer)} - {LAYER_INSTRUCTIONS[layer]}\n"
        f"- Focus: {focus}\n\n"
        "## CONTEXT DESCRIPTION\n"
        f"{context}\n\n"
        "## RECORDS\n"
        "```text\n"
        f"{digest}\n"
        "```\n\n"
        "## RESPONSE FORMAT\n"
        "Reply with one JSON object inside a ```json fenced block using exactly "
        "this structure:\n\n"
        "```json\n"
        f"{RESPONSE_SCHEMA}\n"
        "```\n\n"
        f"{SCHEMA_RULES}\n\n"
        "Base every statement only on the records above."
    )


def build_analysis_request(
    digest: str,
    context_description: str,
    layer: AnalysisLayer,
    *,
    category: TargetCategory,
    temperature: float = DEFAULT_TEMPERATURE,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
) -> AnalysisRequest:
    """Builds the request for one analysis target."""
    return AnalysisRequest(
        text=build_analysis_prompt(
            digest, context_description, layer, category=category
        ),
        temperature=temperature,
        max_output_tokens=max_output_tokens,
    )
