"""
Data model for Waffle review sessions.

Every entity exchanged between the analyzer, the evaluator, the model
adapter and the engine is a Pydantic model, so a complete review session
(including its workload model, evaluations and results) serialises to a
single JSON document and reloads without custom code.

Model Overview:
    ReviewSession
    ├── ReviewScope (workload | pillar | question)
    ├── WorkloadModel
    │   ├── Resource[]
    │   └── ResourceGraph (address → Resource, address → [address])
    ├── WAFRQuestion[] / QuestionEvaluation[] (resume data)
    └── ReviewResults
        ├── QuestionEvaluation[] → Evidence[]
        ├── Risk[]
        ├── ImprovementPlan → ImprovementPlanItem[]
        └── ResultsSummary

Usage:
    from waffle.models import Pillar, ReviewScope

    scope = ReviewScope.for_pillar(Pillar.SECURITY)
    scope.validate_scope()
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from waffle.errors import PillarRequiredError, QuestionIDRequiredError, ValidationError


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


# =============================================================================
# Enumerations
# =============================================================================


class Pillar(str, Enum):
    """
    The six Well-Architected pillars.

    Values are the stable pillar ids used by the Well-Architected Tool.
    """

    OPERATIONAL_EXCELLENCE = "operationalExcellence"
    SECURITY = "security"
    RELIABILITY = "reliability"
    PERFORMANCE = "performance"
    COST_OPTIMIZATION = "costOptimization"
    SUSTAINABILITY = "sustainability"

    @property
    def wafr_id(self) -> str:
        """Pillar id expected by the Well-Architected Tool API."""
        return self.value

    @property
    def docs_path(self) -> str:
        """Path segment of the pillar in the framework documentation."""
        return _PILLAR_DOCS_PATHS[self]


_PILLAR_DOCS_PATHS: dict[Pillar, str] = {
    Pillar.OPERATIONAL_EXCELLENCE: "operational-excellence",
    Pillar.SECURITY: "security",
    Pillar.RELIABILITY: "reliability",
    Pillar.PERFORMANCE: "performance-efficiency",
    Pillar.COST_OPTIMIZATION: "cost-optimization",
    Pillar.SUSTAINABILITY: "sustainability",
}

ALL_PILLARS: tuple[Pillar, ...] = tuple(Pillar)

_PILLAR_ALIASES: dict[str, Pillar] = {
    "operationalexcellence": Pillar.OPERATIONAL_EXCELLENCE,
    "operational-excellence": Pillar.OPERATIONAL_EXCELLENCE,
    "operational_excellence": Pillar.OPERATIONAL_EXCELLENCE,
    "security": Pillar.SECURITY,
    "reliability": Pillar.RELIABILITY,
    "performance": Pillar.PERFORMANCE,
    "performanceefficiency": Pillar.PERFORMANCE,
    "performance-efficiency": Pillar.PERFORMANCE,
    "performance_efficiency": Pillar.PERFORMANCE,
    "cost": Pillar.COST_OPTIMIZATION,
    "costoptimization": Pillar.COST_OPTIMIZATION,
    "cost-optimization": Pillar.COST_OPTIMIZATION,
    "cost_optimization": Pillar.COST_OPTIMIZATION,
    "sustainability": Pillar.SUSTAINABILITY,
}


def parse_pillar(value: str) -> Pillar:
    """
    Parse a user-supplied pillar name, accepting common spellings.

    Args:
        value: Pillar name such as "security", "costOptimization" or
            "cost-optimization"

    Returns:
        Matching Pillar

    Raises:
        ValidationError: If the name is not a known pillar

    Example:
        >>> parse_pillar("Cost_Optimization")
        <Pillar.COST_OPTIMIZATION: 'costOptimization'>
    """
    pillar = _PILLAR_ALIASES.get(value.strip().lower())
    if pillar is None:
        raise ValidationError(
            "pillar",
            "must be one of: " + ", ".join(p.value for p in ALL_PILLARS),
            value=value,
        )
    return pillar


class ScopeLevel(str, Enum):
    """Granularity of a review."""

    WORKLOAD = "workload"
    PILLAR = "pillar"
    QUESTION = "question"


class SessionStatus(str, Enum):
    """
    Lifecycle status of a review session.

    Attributes:
        CREATED: Session persisted, workflow not started
        IN_PROGRESS: Workflow running (or interrupted mid-run)
        COMPLETED: Workflow finished and results attached
        FAILED: A fatal stage failed
    """

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Checkpoint(str, Enum):
    """Names of the durable workflow checkpoints, in order."""

    NONE = ""
    CREATED = "created"
    IAC_ANALYSIS_COMPLETE = "iac_analysis_complete"
    QUESTIONS_RETRIEVED = "questions_retrieved"
    QUESTIONS_EVALUATED = "questions_evaluated"
    ANSWERS_SUBMITTED = "answers_submitted"
    IMPROVEMENT_PLAN_RETRIEVED = "improvement_plan_retrieved"
    MILESTONE_CREATED = "milestone_created"


class SourceType(str, Enum):
    """Origin of the resources in a workload model."""

    PLAN = "plan"
    HCL = "hcl"
    HCL_ENHANCED = "hcl_enhanced"
    MERGED = "merged"


class RiskLevel(str, Enum):
    """Risk severity reported for a question."""

    NONE = "NONE"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class EstimatedEffort(str, Enum):
    """Effort estimate for an improvement plan item."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# =============================================================================
# Review scope
# =============================================================================


class ReviewScope(BaseModel):
    """
    What part of the framework a review covers.

    Attributes:
        level: Workload, pillar or question
        pillar: Pillar when level is pillar
        question_id: Question id when level is question
    """

    level: ScopeLevel = ScopeLevel.WORKLOAD
    pillar: Pillar | None = None
    question_id: str = ""

    @classmethod
    def workload(cls) -> "ReviewScope":
        """Scope covering all six pillars."""
        return cls(level=ScopeLevel.WORKLOAD)

    @classmethod
    def for_pillar(cls, pillar: Pillar) -> "ReviewScope":
        """Scope covering a single pillar."""
        return cls(level=ScopeLevel.PILLAR, pillar=pillar)

    @classmethod
    def for_question(cls, question_id: str) -> "ReviewScope":
        """Scope covering a single question."""
        return cls(level=ScopeLevel.QUESTION, question_id=question_id)

    def validate_scope(self) -> None:
        """
        Check the level-specific invariants.

        Raises:
            PillarRequiredError: Level is pillar but no pillar is set
            QuestionIDRequiredError: Level is question but the id is empty
        """
        if self.level == ScopeLevel.PILLAR and self.pillar is None:
            raise PillarRequiredError()
        if self.level == ScopeLevel.QUESTION and not self.question_id.strip():
            raise QuestionIDRequiredError()

    def describe(self) -> str:
        """Short human-readable description, e.g. ``pillar (security)``."""
        if self.level == ScopeLevel.PILLAR:
            return f"pillar ({self.pillar.value})" if self.pillar else "pillar"
        if self.level == ScopeLevel.QUESTION:
            return f"question ({self.question_id})"
        return "workload (all pillars)"


# =============================================================================
# IaC model
# =============================================================================


class IaCFile(BaseModel):
    """A retrieved (already redacted) IaC file."""

    path: str
    content: str


class Resource(BaseModel):
    """
    A single cloud resource declared in Terraform.

    Attributes:
        id: Resource identifier (same as address)
        type: Terraform resource type (e.g. aws_s3_bucket)
        address: Canonical unique key (e.g. module.vpc.aws_vpc.main)
        properties: Attribute name to arbitrary nested value
        dependencies: Addresses this resource references
        source_file: File the resource was declared in (HCL only)
        source_line: Line the block starts on (HCL only)
        is_from_plan: Whether plan data contributed to this resource
        module_path: Containing module address, empty for the root module
    """

    id: str
    type: str
    address: str
    properties: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    source_file: str = ""
    source_line: int = 0
    is_from_plan: bool = False
    module_path: str = ""


class ResourceGraph(BaseModel):
    """
    Resource dependency graph.

    ``nodes`` is a lookup index over the workload's resources and is not
    serialised; ``WorkloadModel`` rebuilds it after loading.
    """

    nodes: dict[str, Resource] = Field(default_factory=dict, exclude=True)
    edges: dict[str, list[str]] = Field(default_factory=dict)

    def contains(self, address: str) -> bool:
        """Return True if ``address`` is a node in the graph."""
        return address in self.nodes


class WorkloadModel(BaseModel):
    """
    Semantic model of a workload built from IaC.

    Attributes:
        resources: Resources in declaration order
        relationships: Dependency graph, once inferred
        framework: IaC framework tag (e.g. "terraform")
        source_type: Where the resources came from
        metadata: Free-form bookkeeping (file counts, merge info, ...)
    """

    resources: list[Resource] = Field(default_factory=list)
    relationships: ResourceGraph | None = None
    framework: str = "terraform"
    source_type: SourceType = SourceType.HCL
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _index_graph_nodes(self) -> "WorkloadModel":
        if self.relationships is not None and not self.relationships.nodes:
            self.relationships.nodes = {r.address: r for r in self.resources}
        return self


# =============================================================================
# WAFR questions and evaluations
# =============================================================================


class BestPractice(BaseModel):
    """A best practice associated with a WAFR question."""

    id: str
    title: str = ""
    description: str = ""


class Choice(BaseModel):
    """A selectable answer choice of a WAFR question."""

    id: str
    title: str = ""
    description: str = ""


class WAFRQuestion(BaseModel):
    """
    A Well-Architected question as returned by the Well-Architected Tool.

    Attributes:
        id: Question id (e.g. "sec_data_at_rest")
        pillar: Pillar the question belongs to
        title: Question title
        description: Helpful resource text
        best_practices: Best practices the question covers
        choices: Selectable choices
        risk_rules: Additional risk metadata (e.g. current risk)
    """

    id: str
    pillar: Pillar
    title: str = ""
    description: str = ""
    best_practices: list[BestPractice] = Field(default_factory=list)
    choices: list[Choice] = Field(default_factory=list)
    risk_rules: dict[str, str] = Field(default_factory=dict)


class Evidence(BaseModel):
    """Why a choice was selected, with the resources that support it."""

    choice_id: str
    explanation: str = ""
    resources: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class QuestionEvaluation(BaseModel):
    """
    Result of evaluating one question against a workload.

    Attributes:
        question: Question evaluated
        selected_choices: Choices the workload satisfies
        evidence: Supporting evidence per choice
        confidence_score: Overall confidence in [0, 1]
        notes: Free-form notes from the model or the evaluator
    """

    question: WAFRQuestion
    selected_choices: list[Choice] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)
    confidence_score: float = 0.0
    notes: str = ""


class Risk(BaseModel):
    """A risk identified for a question."""

    id: str
    question: WAFRQuestion
    pillar: Pillar
    severity: RiskLevel = RiskLevel.NONE
    description: str = ""
    affected_resources: list[str] = Field(default_factory=list)
    missing_best_practices: list[BestPractice] = Field(default_factory=list)


class ImprovementPlanItem(BaseModel):
    """A prioritised remediation item derived from a risk."""

    id: str
    risk: Risk | None = None
    description: str = ""
    best_practice_refs: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    priority: int = 0
    estimated_effort: EstimatedEffort = EstimatedEffort.LOW


class ImprovementPlan(BaseModel):
    """Ordered improvement plan items."""

    items: list[ImprovementPlanItem] = Field(default_factory=list)


class ResultsSummary(BaseModel):
    """Aggregate figures for a completed review."""

    total_questions: int = 0
    questions_evaluated: int = 0
    high_risks: int = 0
    medium_risks: int = 0
    average_confidence: float = 0.0
    improvement_plan_size: int = 0


class ReviewResults(BaseModel):
    """Everything a completed review produced."""

    evaluations: list[QuestionEvaluation] = Field(default_factory=list)
    risks: list[Risk] = Field(default_factory=list)
    improvement_plan: ImprovementPlan = Field(default_factory=ImprovementPlan)
    summary: ResultsSummary = Field(default_factory=ResultsSummary)


# =============================================================================
# Semantic analysis and usage stats
# =============================================================================


class SecurityFinding(BaseModel):
    """Security observations the model made about one resource."""

    resource: str
    findings: list[str] = Field(default_factory=list)
    severity: str = ""


class SemanticRelationship(BaseModel):
    """A security-relevant relationship between two resources."""

    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    type: str = ""
    status: str = ""


class SemanticAnalysis(BaseModel):
    """Model-produced semantic analysis of a set of resources."""

    security_findings: list[SecurityFinding] = Field(default_factory=list)
    relationships: list[SemanticRelationship] = Field(default_factory=list)


class TokenUsageStats(BaseModel):
    """Accumulated Bedrock token usage and estimated cost (USD)."""

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    invocation_count: int = 0
    estimated_cost: float = 0.0


# =============================================================================
# Review session
# =============================================================================


class ReviewSession(BaseModel):
    """
    A persisted review session.

    Attributes:
        session_id: Unique session id (UUID)
        workload_id: Caller-supplied workload identifier
        aws_workload_id: Well-Architected Tool workload id
        milestone_id: Milestone number once created
        plan_file_path: Optional Terraform plan JSON path (absolute)
        working_directory: Resolved Terraform directory under review
        scope: Review scope
        status: Lifecycle status
        created_at: Creation timestamp (UTC)
        updated_at: Last save timestamp (UTC)
        workload_model: Model produced by IaC analysis
        results: Results, set when the review completes
        checkpoint: Last durable checkpoint reached
        questions: Questions retrieved for this review
        evaluations: Successful evaluations so far
        improvement_plan: Improvement plan once retrieved
    """

    session_id: str
    workload_id: str
    aws_workload_id: str = ""
    milestone_id: str = ""
    plan_file_path: str = ""
    working_directory: str = ""
    scope: ReviewScope = Field(default_factory=ReviewScope)
    status: SessionStatus = SessionStatus.CREATED
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    workload_model: WorkloadModel | None = None
    results: ReviewResults | None = None
    checkpoint: Checkpoint = Checkpoint.NONE
    questions: list[WAFRQuestion] = Field(default_factory=list)
    evaluations: list[QuestionEvaluation] = Field(default_factory=list)
    improvement_plan: ImprovementPlan | None = None
