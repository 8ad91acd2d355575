"""
JSON output shapes for the CLI.

Every command that supports ``--format json`` writes a ``JSONOutput``
envelope: ``{"success": true, "data": {...}}`` on success and
``{"success": false, "error": {"code": ..., "message": ...}}`` on failure.
The ``data`` payloads are the output models below, converted from a
``ReviewSession``. Optional fields that are unset are omitted.

Usage:
    from waffle.output import results_output, write_json_success

    write_json_success(sys.stdout, results_output(session))
"""

import json
from datetime import datetime
from typing import Any, TextIO

from pydantic import BaseModel, Field

from waffle.models import (
    Checkpoint,
    Evidence,
    ImprovementPlanItem,
    QuestionEvaluation,
    Resource,
    ResultsSummary,
    ReviewScope,
    ReviewSession,
    Risk,
    ScopeLevel,
)
from waffle.wafr_evaluator import console_link

# Checkpoint reached → (steps completed, next step)
_CHECKPOINT_PROGRESS: dict[Checkpoint, tuple[int, str]] = {
    Checkpoint.NONE: (0, "iac_analysis"),
    Checkpoint.CREATED: (0, "iac_analysis"),
    Checkpoint.IAC_ANALYSIS_COMPLETE: (1, "retrieve_questions"),
    Checkpoint.QUESTIONS_RETRIEVED: (2, "evaluate_questions"),
    Checkpoint.QUESTIONS_EVALUATED: (3, "submit_answers"),
    Checkpoint.ANSWERS_SUBMITTED: (4, "improvement_plan"),
    Checkpoint.IMPROVEMENT_PLAN_RETRIEVED: (5, "create_milestone"),
    Checkpoint.MILESTONE_CREATED: (6, "complete"),
}
TOTAL_STEPS = 6


class JSONError(BaseModel):
    """Error payload of a failed command."""

    code: str
    message: str


class JSONOutput(BaseModel):
    """Envelope for every JSON command output."""

    success: bool
    data: Any = None
    error: JSONError | None = None


class ReviewSummaryOutput(BaseModel):
    """Summary figures of a review."""

    questions_evaluated: int = 0
    high_risks: int = 0
    medium_risks: int = 0
    average_confidence: float = 0.0
    improvement_plan_size: int = 0


class ReviewOutput(BaseModel):
    """Output of the ``review`` and ``resume`` commands."""

    session_id: str
    workload_id: str
    status: str
    created_at: datetime
    summary: ReviewSummaryOutput | None = None
    metadata: dict[str, Any] | None = None


class ProgressOutput(BaseModel):
    """Workflow progress derived from the session checkpoint."""

    current_step: str
    total_steps: int = TOTAL_STEPS
    completed_steps: int = 0
    current_step_detail: str | None = None


class StatusOutput(BaseModel):
    """Output of the ``status`` command."""

    session_id: str
    workload_id: str
    status: str
    created_at: datetime
    updated_at: datetime
    progress: ProgressOutput | None = None
    metadata: dict[str, Any] | None = None


class ScopeOutput(BaseModel):
    """Review scope."""

    level: str
    pillar: str | None = None
    question_id: str | None = None


class EvidenceOutput(BaseModel):
    """Evidence for a selected choice."""

    choice_id: str
    explanation: str
    resources: list[str] = Field(default_factory=list)
    confidence: float


class EvaluationOutput(BaseModel):
    """One question evaluation."""

    question_id: str
    pillar: str
    title: str
    selected_choices: list[str] = Field(default_factory=list)
    evidence: list[EvidenceOutput] | None = None
    confidence_score: float
    notes: str | None = None


class RiskOutput(BaseModel):
    """One identified risk; severity is lower case (high, medium, none)."""

    id: str
    question_id: str
    pillar: str
    severity: str
    description: str
    affected_resources: list[str] = Field(default_factory=list)
    missing_best_practices: list[str] = Field(default_factory=list)


class ImprovementOutput(BaseModel):
    """One improvement plan item."""

    id: str
    risk_id: str = ""
    description: str
    best_practice_refs: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    priority: int
    estimated_effort: str


class ResourceOutput(BaseModel):
    """One workload resource."""

    id: str
    type: str
    address: str
    source_file: str | None = None
    is_from_plan: bool = False
    module_path: str | None = None
    properties: dict[str, Any] | None = None


class ResultsOutput(BaseModel):
    """Output of the ``results`` command."""

    session_id: str
    workload_id: str
    aws_workload_id: str | None = None
    milestone_id: str | None = None
    status: str
    created_at: datetime
    completed_at: datetime | None = None
    scope: ScopeOutput
    summary: ReviewSummaryOutput
    evaluations: list[EvaluationOutput] | None = None
    risks: list[RiskOutput] | None = None
    improvements: list[ImprovementOutput] | None = None
    resources: list[ResourceOutput] | None = None
    links: dict[str, str] | None = None


# =============================================================================
# Converters
# =============================================================================


def _summary_output(summary: ResultsSummary) -> ReviewSummaryOutput:
    return ReviewSummaryOutput(
        questions_evaluated=summary.questions_evaluated,
        high_risks=summary.high_risks,
        medium_risks=summary.medium_risks,
        average_confidence=summary.average_confidence,
        improvement_plan_size=summary.improvement_plan_size,
    )


def _scope_output(scope: ReviewScope) -> ScopeOutput:
    if scope.level == ScopeLevel.PILLAR:
        return ScopeOutput(level="pillar", pillar=scope.pillar.value if scope.pillar else None)
    if scope.level == ScopeLevel.QUESTION:
        return ScopeOutput(level="question", question_id=scope.question_id or None)
    return ScopeOutput(level="workload")


def _evidence_output(evidence: Evidence) -> EvidenceOutput:
    return EvidenceOutput(
        choice_id=evidence.choice_id,
        explanation=evidence.explanation,
        resources=list(evidence.resources),
        confidence=evidence.confidence,
    )


def _evaluation_output(evaluation: QuestionEvaluation) -> EvaluationOutput:
    return EvaluationOutput(
        question_id=evaluation.question.id,
        pillar=evaluation.question.pillar.value,
        title=evaluation.question.title,
        selected_choices=[choice.id for choice in evaluation.selected_choices],
        evidence=[_evidence_output(e) for e in evaluation.evidence] or None,
        confidence_score=evaluation.confidence_score,
        notes=evaluation.notes or None,
    )


def _risk_output(risk: Risk) -> RiskOutput:
    return RiskOutput(
        id=risk.id,
        question_id=risk.question.id,
        pillar=risk.pillar.value,
        severity=risk.severity.value.lower(),
        description=risk.description,
        affected_resources=list(risk.affected_resources),
        missing_best_practices=[bp.id for bp in risk.missing_best_practices],
    )


def _improvement_output(item: ImprovementPlanItem) -> ImprovementOutput:
    return ImprovementOutput(
        id=item.id,
        risk_id=item.risk.id if item.risk else "",
        description=item.description,
        best_practice_refs=list(item.best_practice_refs),
        affected_resources=list(item.affected_resources),
        priority=item.priority,
        estimated_effort=item.estimated_effort.value,
    )


def _resource_output(resource: Resource) -> ResourceOutput:
    return ResourceOutput(
        id=resource.id,
        type=resource.type,
        address=resource.address,
        source_file=resource.source_file or None,
        is_from_plan=resource.is_from_plan,
        module_path=resource.module_path or None,
        properties=resource.properties or None,
    )


def review_output(session: ReviewSession) -> ReviewOutput:
    """Convert a session to the ``review`` command output."""
    return ReviewOutput(
        session_id=session.session_id,
        workload_id=session.workload_id,
        status=session.status.value,
        created_at=session.created_at,
        summary=_summary_output(session.results.summary) if session.results else None,
        metadata={
            "aws_workload_id": session.aws_workload_id,
            "milestone_id": session.milestone_id,
        },
    )


def status_output(session: ReviewSession) -> StatusOutput:
    """Convert a session to the ``status`` command output."""
    completed, current = _CHECKPOINT_PROGRESS.get(session.checkpoint, (0, "iac_analysis"))
    return StatusOutput(
        session_id=session.session_id,
        workload_id=session.workload_id,
        status=session.status.value,
        created_at=session.created_at,
        updated_at=session.updated_at,
        progress=ProgressOutput(current_step=current, completed_steps=completed),
        metadata={
            "aws_workload_id": session.aws_workload_id,
            "checkpoint": session.checkpoint.value,
        },
    )


def results_output(session: ReviewSession) -> ResultsOutput:
    """Convert a session to the ``results`` command output."""
    results = session.results
    model = session.workload_model
    return ResultsOutput(
        session_id=session.session_id,
        workload_id=session.workload_id,
        aws_workload_id=session.aws_workload_id or None,
        milestone_id=session.milestone_id or None,
        status=session.status.value,
        created_at=session.created_at,
        completed_at=session.updated_at,
        scope=_scope_output(session.scope),
        summary=_summary_output(results.summary) if results else ReviewSummaryOutput(),
        evaluations=[_evaluation_output(e) for e in results.evaluations] or None if results else None,
        risks=[_risk_output(r) for r in results.risks] or None if results else None,
        improvements=(
            [_improvement_output(i) for i in results.improvement_plan.items] or None if results else None
        ),
        resources=[_resource_output(r) for r in model.resources] or None if model else None,
        links={"aws_console": console_link(session.aws_workload_id)} if session.aws_workload_id else None,
    )


# =============================================================================
# Writers
# =============================================================================


def _to_jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", exclude_none=True)
    if isinstance(data, list):
        return [_to_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {key: _to_jsonable(value) for key, value in data.items()}
    return data


def write_json(stream: TextIO, data: Any) -> None:
    """Write ``data`` as indented JSON followed by a newline."""
    _ = stream.write(json.dumps(_to_jsonable(data), indent=2, default=str))
    _ = stream.write("\n")


def write_json_success(stream: TextIO, data: Any) -> None:
    """Write a success envelope around ``data``."""
    write_json(stream, JSONOutput(success=True, data=_to_jsonable(data)))


def write_json_error(stream: TextIO, code: str, message: str) -> None:
    """Write an error envelope."""
    write_json(stream, JSONOutput(success=False, error=JSONError(code=code, message=message)))
