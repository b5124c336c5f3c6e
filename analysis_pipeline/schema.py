from __future__ import annotations

import math
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

# Status constants recorded on a PerTargetResult when the model path failed.
AUTH_FAILURE = "auth_failure"
TRANSPORT_FAILURE = "transport_failure"
SERVICE_ERROR = "service_error"
EMPTY_RESPONSE = "empty_response"
PARSE_FAILURE = "parse_failure"
TARGET_FAILURE = "target_failure"


class InputValidationError(ValueError):
    """Raised when a run is requested with unusable input."""


class TargetFailure(RuntimeError):
    """Raised when one target's analysis fails outside the recovered stages."""

    def __init__(self, target_name: str, cause: BaseException):
        super().__init__(f"Analysis of {target_name!r} failed: {cause}")
        self.target_name = target_name
        self.cause = cause


class TargetCategory(str, Enum):
    """Enum for the kinds of things a run can analyze."""

    REACT_COMPONENT = "react-component"
    API_ROUTE = "api-route"
    DATABASE_SCHEMA = "database-schema"
    PAGE_VIEW = "page-view"
    INTERACTION_BATCH = "interaction-batch"


class AnalysisLayer(IntEnum):
    """Depth of analysis requested from the model."""

    COMPONENT = 1
    PAGE = 2
    PANEL = 3
    ECOSYSTEM = 4


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}
BLOCKING_SEVERITIES = {Severity.CRITICAL, Severity.HIGH}


class FindingCategory(str, Enum):
    SECURITY = "security"
    FUNCTIONAL = "functional"
    PERFORMANCE = "performance"
    LOGICAL = "logical"


class OptimizationCategory(str, Enum):
    UI_UX = "ui-ux"
    PERFORMANCE = "performance"
    ARCHITECTURE = "architecture"
    AI_INTEGRATION = "ai-integration"


class RemnantStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class PerformanceTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class Provenance(str, Enum):
    """Where a result field group came from."""

    MODEL = "model"
    FALLBACK = "fallback"


class AnalysisState(str, Enum):
    """States of the per-target analyzer."""

    BUILT = "built"
    REQUESTED = "requested"
    PARSED = "parsed"
    FAILED = "failed"
    FINALIZED = "finalized"


class ActionPriority(str, Enum):
    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"


FIELD_GROUPS: tuple[str, ...] = (
    "findings",
    "optimizations",
    "legacy_remnants",
    "compliance_score",
    "quality_score",
    "resolution_rate",
    "average_response_time",
    "satisfaction_index",
    "business_impact",
    "behavioral_insights",
    "technical_proficiency",
    "predictive_insights",
)


class CamelModel(BaseModel):
    """Base model that reads snake_case or camelCase and writes camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AnalysisTarget(CamelModel):
    """One unit of work submitted for assessment."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    name: str = Field(min_length=1)
    context_description: str = ""
    category: TargetCategory
    layer: AnalysisLayer = AnalysisLayer.COMPONENT
    period_start: datetime | None = None
    period_end: datetime | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value


class DomainRecord(CamelModel):
    """A single raw input record; every field is optional."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    record_id: str | None = Field(
        default=None, validation_alias=AliasChoices("record_id", "recordId", "id")
    )
    direction: str | None = None
    subject: str | None = None
    summary_text: str | None = Field(
        default=None,
        validation_alias=AliasChoices("summary_text", "summaryText", "summary"),
    )
    duration_minutes: float | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "duration_minutes", "durationMinutes", "duration"
        ),
    )
    timestamp: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("timestamp", "createdAt", "created_at"),
    )
    follow_up_date: datetime | None = None
    location: str | None = None
    content: str | None = None

    @field_validator("record_id", mode="before")
    @classmethod
    def _coerce_record_id(cls, value: Any) -> str | None:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("duration_minutes")
    @classmethod
    def _drop_non_finite_duration(cls, value: float | None) -> float | None:
        # JSON 1e400 decodes to inf; treat it like a missing duration
        if value is not None and not math.isfinite(value):
            return None
        return value


class AnalysisRequest(BaseModel):
    """Prompt text plus sampling parameters for one inference attempt."""

    text: str
    temperature: float = 0.1
    max_output_tokens: int = Field(default=8192, gt=0)


class StructuredFinding(CamelModel):
    category: FindingCategory = Field(
        validation_alias=AliasChoices("category", "type")
    )
    severity: Severity
    description: str = Field(min_length=1)
    location: str = ""
    recommendation: str = Field(
        default="",
        validation_alias=AliasChoices("recommendation", "solution"),
    )
    example: str | None = Field(
        default=None,
        validation_alias=AliasChoices("example", "codeExample", "code_example"),
    )


class OptimizationSuggestion(CamelModel):
    category: OptimizationCategory
    recommendation: str = Field(min_length=1)
    implementation: str = ""
    impact: str = ""


class LegacyRemnant(CamelModel):
    location: str = Field(min_length=1)
    description: str = ""
    removal_instructions: str = ""
    status: RemnantStatus = RemnantStatus.PENDING


class PerformanceMetrics(CamelModel):
    total_records: int = Field(default=0, ge=0)
    quality_score: int = Field(default=0, ge=0, le=100)
    resolution_rate: int = Field(default=0, ge=0, le=100)
    average_response_time: int = Field(default=0, ge=0)
    satisfaction_index: int = Field(default=0, ge=0, le=100)


class BusinessImpact(CamelModel):
    revenue_contribution: int = Field(ge=0, le=100)
    customer_retention: int = Field(ge=0, le=100)
    upsell_success: int = Field(ge=0, le=100)
    referral_generation: int = Field(ge=0, le=100)


class CommunicationPattern(CamelModel):
    pattern: str = Field(min_length=1)
    frequency: int = Field(ge=0, le=100)
    effectiveness: int = Field(ge=0, le=100)
    cultural_relevance: int = Field(ge=0, le=100)


class BehavioralInsights(CamelModel):
    communication_patterns: list[CommunicationPattern] = Field(default_factory=list)
    empathy_score: int = Field(ge=0, le=100)
    cultural_sensitivity: int = Field(ge=0, le=100)
    adaptability_index: int = Field(ge=0, le=100)


class TechnicalProficiency(CamelModel):
    # title-casing in to_camel would give "v2RayExpertise"
    v2ray_expertise: int = Field(ge=0, le=100, alias="v2rayExpertise")
    troubleshooting_efficiency: int = Field(ge=0, le=100)
    problem_resolution_speed: int = Field(ge=0, le=100)
    technical_accuracy: int = Field(ge=0, le=100)


class PredictiveInsights(CamelModel):
    recent_activity: int = Field(default=0, ge=0)
    burnout_risk: int = Field(ge=0, le=100)
    performance_trend: PerformanceTrend
    expected_interactions: int = Field(ge=0)
    quality_forecast: int = Field(ge=0, le=100)
    recommended_interventions: list[str] = Field(default_factory=list)


class TargetSummary(CamelModel):
    name: str
    category: TargetCategory
    layer: AnalysisLayer

    @classmethod
    def from_target(cls, target: AnalysisTarget) -> TargetSummary:
        return cls(name=target.name, category=target.category, layer=target.layer)


class PerTargetResult(CamelModel):
    """Schema-complete, provenance-tagged result for one target."""

    target: TargetSummary
    findings: list[StructuredFinding] = Field(default_factory=list)
    optimizations: list[OptimizationSuggestion] = Field(default_factory=list)
    legacy_remnants: list[LegacyRemnant] = Field(default_factory=list)
    compliance_score: int = Field(ge=0, le=100)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    business_impact: BusinessImpact
    behavioral_insights: BehavioralInsights
    technical_proficiency: TechnicalProficiency
    predictive_insights: PredictiveInsights
    provenance: dict[str, Provenance] = Field(default_factory=dict)
    states: list[AnalysisState] = Field(default_factory=list)
    failure: str | None = None
    analyzed_at: datetime | None = None

    @property
    def fully_model_sourced(self) -> bool:
        return all(
            self.provenance.get(group) is Provenance.MODEL for group in FIELD_GROUPS
        )

    def blocking_findings(self) -> list[StructuredFinding]:
        return [f for f in self.findings if f.severity in BLOCKING_SEVERITIES]


class CriticalFinding(CamelModel):
    component: str
    issue_count: int = Field(ge=0)
    severity: Severity
    category: FindingCategory


class LegacyCleanupItem(CamelModel):
    location: str
    action: str
    status: RemnantStatus = RemnantStatus.PENDING


class ComplianceScores(CamelModel):
    security: int = Field(ge=0, le=100)
    functionality: int = Field(ge=0, le=100)
    performance: int = Field(ge=0, le=100)
    user_experience: int = Field(ge=0, le=100)
    overall: int = Field(ge=0, le=100)


class ActionItem(CamelModel):
    priority: ActionPriority
    task: str
    estimated_effort: str
    business_impact: str


class ConsolidatedReport(CamelModel):
    """Batch-level summary folded from every per-target result."""

    timestamp: datetime
    targets_analyzed: int = Field(ge=0)
    critical_findings: list[CriticalFinding] = Field(default_factory=list)
    legacy_system_cleanup: list[LegacyCleanupItem] = Field(default_factory=list)
    compliance_scores: ComplianceScores
    prioritized_action_plan: list[ActionItem] = Field(default_factory=list)
    target_provenance: dict[str, dict[str, Provenance]] = Field(default_factory=dict)
    failed_targets: list[str] = Field(default_factory=list)
