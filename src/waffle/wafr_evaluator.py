"""
AWS Well-Architected Tool evaluator.

This module drives the Well-Architected Tool (boto3 ``wellarchitected``)
for a review: it creates or reuses the workload, lists the questions in
scope, delegates each question to the model adapter, submits the answers,
reads back the risks the tool computed and turns them into an improvement
plan, and records a milestone.

API Operations Used:
    - ListWorkloads / CreateWorkload: workload lookup and creation
    - ListAnswers: questions per pillar (paginated, 50 per page)
    - UpdateAnswer: submit selected choices and notes
    - CreateMilestone: snapshot answers after a review
    - GetConsolidatedReport: PDF or JSON report

Retries:
    ThrottlingException, ServiceUnavailableException and
    InternalServerException are retried with exponential backoff; all other
    errors surface as WAFRAPIError.

Usage:
    from waffle.wafr_evaluator import WAFREvaluator

    evaluator = WAFREvaluator(region="us-east-1")
    aws_workload_id = evaluator.create_workload("my-app", "Automated WAFR review")
    questions = evaluator.get_questions(aws_workload_id, ReviewScope.workload())
"""

import base64
import binascii
import json
import threading
from collections.abc import Callable, Iterator
from typing import Any, Protocol, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from waffle.aws import create_client
from waffle.errors import (
    EvaluatorNotInitializedError,
    InvalidWorkloadIDError,
    MaxRetriesExceededError,
    OperationCancelledError,
    ValidationError,
    WAFRAPIError,
    WorkloadNotFoundError,
)
from waffle.logging_config import get_logger, log_with_context
from waffle.models import (
    ALL_PILLARS,
    BestPractice,
    Choice,
    ImprovementPlan,
    ImprovementPlanItem,
    Pillar,
    QuestionEvaluation,
    ReviewScope,
    ReviewSession,
    Risk,
    RiskLevel,
    ScopeLevel,
    WAFRQuestion,
    WorkloadModel,
    utc_now,
)
from waffle.retry import (
    DEFAULT_MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    WAFR_RETRYABLE_CODES,
    RetryPolicy,
    get_error_code,
    get_error_message,
    retry_with_backoff,
)
from waffle.scoring import (
    calculate_confidence_score,
    calculate_priority,
    estimate_effort,
    find_affected_resources,
)

logger = get_logger(__name__)

T = TypeVar("T")

LENS_ALIAS = "wellarchitected"
REVIEW_OWNER = "waffle-automated"
WORKLOAD_ENVIRONMENT = "PRODUCTION"
PAGE_SIZE = 50
MAX_NOTES_LENGTH = 2084
MILESTONE_NAME_FORMAT = "waffle-%Y-%m-%d-%H-%M-%S"
FRAMEWORK_DOCS_URL = "https://docs.aws.amazon.com/wellarchitected/latest/framework"
CONSOLE_WORKLOAD_URL = "https://console.aws.amazon.com/wellarchitected/home#/workload/{workload_id}"

_RISK_LEVELS: dict[str, RiskLevel] = {
    "HIGH": RiskLevel.HIGH,
    "MEDIUM": RiskLevel.MEDIUM,
}


class ModelAdapter(Protocol):
    """Model operations the evaluator depends on."""

    def evaluate_wafr_question(
        self,
        question: WAFRQuestion,
        workload_model: WorkloadModel,
        cancel_event: threading.Event | None = None,
    ) -> QuestionEvaluation: ...


def console_link(aws_workload_id: str) -> str:
    """Return the Well-Architected console URL for a workload."""
    return CONSOLE_WORKLOAD_URL.format(workload_id=aws_workload_id)


def best_practice_url(pillar: Pillar, practice_id: str) -> str:
    """Return the framework documentation URL for a best practice."""
    return f"{FRAMEWORK_DOCS_URL}/{pillar.docs_path}.html#{practice_id}"


def _question_from_answer(answer: dict[str, Any], pillar: Pillar) -> WAFRQuestion:
    choices = [
        Choice(
            id=choice.get("ChoiceId", ""),
            title=choice.get("Title", ""),
            description=choice.get("Description", ""),
        )
        for choice in answer.get("Choices", [])
    ]
    risk_rules: dict[str, str] = {}
    if answer.get("Risk"):
        risk_rules["current_risk"] = str(answer["Risk"])
    return WAFRQuestion(
        id=answer.get("QuestionId", ""),
        pillar=pillar,
        title=answer.get("QuestionTitle", ""),
        choices=choices,
        risk_rules=risk_rules,
    )


def _risk_from_answer(answer: dict[str, Any], pillar: Pillar) -> Risk:
    question_id = answer.get("QuestionId", "")
    title = answer.get("QuestionTitle", "")
    risk_value = str(answer.get("Risk", ""))
    selected = set(answer.get("SelectedChoices", []))

    missing = [
        BestPractice(
            id=choice.get("ChoiceId", ""),
            title=choice.get("Title", ""),
            description=choice.get("Description", ""),
        )
        for choice in answer.get("Choices", [])
        if choice.get("ChoiceId", "") not in selected
    ]

    description = f"Risk identified for question: {title} (Risk Level: {risk_value})"
    if missing:
        description += f"\n{len(missing)} best practice(s) not implemented."

    return Risk(
        id=question_id,
        question=WAFRQuestion(id=question_id, pillar=pillar, title=title),
        pillar=pillar,
        severity=_RISK_LEVELS.get(risk_value, RiskLevel.NONE),
        description=description,
        missing_best_practices=missing,
    )


class WAFREvaluator:
    """
    Client for the AWS Well-Architected Tool.

    Attributes:
        client: boto3 ``wellarchitected`` client
        region: Region recorded on created workloads
        retry_policy: Backoff policy for WAFR calls
    """

    def __init__(
        self,
        client: Any = None,
        region: str | None = None,
        profile: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = INITIAL_BACKOFF_SECONDS,
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            client: Pre-built ``wellarchitected`` client (created when None)
            region: AWS region (the client's region when None)
            profile: Named AWS profile for client creation
            max_retries: Retries after the first attempt
            base_delay: First retry backoff in seconds
        """
        self.client: Any = client or create_client("wellarchitected", region=region, profile=profile)
        self.region: str = region or getattr(getattr(self.client, "meta", None), "region_name", None) or "us-east-1"
        self.retry_policy: RetryPolicy = RetryPolicy(
            retryable_codes=WAFR_RETRYABLE_CODES,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=MAX_BACKOFF_SECONDS,
        )

        log_with_context(
            logger,
            "info",
            "Initialized WAFR evaluator",
            region=self.region,
            max_retries=max_retries,
        )

    def _call(
        self,
        operation: str,
        func: Callable[[], T],
        cancel_event: threading.Event | None = None,
    ) -> T:
        """Run one API call under the retry policy, wrapping failures."""
        try:
            return retry_with_backoff(
                func,
                operation=operation,
                policy=self.retry_policy,
                cancel_event=cancel_event,
            )
        except MaxRetriesExceededError as e:
            log_with_context(logger, "error", "Max retries exceeded", operation=operation)
            raise WAFRAPIError(operation, str(e), retryable=True) from e
        except ClientError as e:
            raise WAFRAPIError(operation, get_error_message(e), error_code=get_error_code(e)) from e
        except BotoCoreError as e:
            raise WAFRAPIError(operation, str(e)) from e

    # -------------------------------------------------------------------------
    # Workloads
    # -------------------------------------------------------------------------

    def create_workload(
        self,
        workload_id: str,
        description: str,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """
        Create a workload, or reuse one with the same name.

        Args:
            workload_id: Workload name
            description: Workload description
            cancel_event: Optional cancellation event

        Returns:
            Well-Architected Tool workload id

        Raises:
            InvalidWorkloadIDError: If ``workload_id`` is empty
            WAFRAPIError: If the API call fails
        """
        if not workload_id.strip():
            raise InvalidWorkloadIDError()

        existing = self._find_workload_by_name(workload_id, cancel_event)
        if existing:
            log_with_context(
                logger,
                "info",
                "Workload already exists, reusing",
                workload_id=workload_id,
                aws_workload_id=existing,
            )
            return existing

        try:
            response = self._call(
                "CreateWorkload",
                lambda: self.client.create_workload(
                    WorkloadName=workload_id,
                    Description=description,
                    Environment=WORKLOAD_ENVIRONMENT,
                    Lenses=[LENS_ALIAS],
                    ReviewOwner=REVIEW_OWNER,
                    AwsRegions=[self.region],
                ),
                cancel_event,
            )
        except WAFRAPIError as e:
            if e.error_code == "ConflictException":
                existing = self._find_workload_by_name(workload_id, cancel_event)
                if existing:
                    log_with_context(
                        logger,
                        "info",
                        "Workload exists (conflict), reusing",
                        workload_id=workload_id,
                        aws_workload_id=existing,
                    )
                    return existing
            raise

        aws_workload_id = str(response["WorkloadId"])
        log_with_context(
            logger,
            "info",
            "Workload created",
            workload_id=workload_id,
            aws_workload_id=aws_workload_id,
        )
        return aws_workload_id

    def _find_workload_by_name(self, name: str, cancel_event: threading.Event | None) -> str | None:
        next_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"WorkloadNamePrefix": name, "MaxResults": PAGE_SIZE}
            if next_token:
                kwargs["NextToken"] = next_token
            response = self._call("ListWorkloads", lambda: self.client.list_workloads(**kwargs), cancel_event)

            for summary in response.get("WorkloadSummaries", []):
                if summary.get("WorkloadName") == name:
                    return str(summary["WorkloadId"])

            next_token = response.get("NextToken")
            if not next_token:
                return None

    # -------------------------------------------------------------------------
    # Questions
    # -------------------------------------------------------------------------

    def _iter_answers(
        self,
        aws_workload_id: str,
        pillar: Pillar,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[dict[str, Any]]:
        next_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {
                "WorkloadId": aws_workload_id,
                "LensAlias": LENS_ALIAS,
                "PillarId": pillar.wafr_id,
                "MaxResults": PAGE_SIZE,
            }
            if next_token:
                kwargs["NextToken"] = next_token
            response = self._call("ListAnswers", lambda: self.client.list_answers(**kwargs), cancel_event)

            yield from response.get("AnswerSummaries", [])

            next_token = response.get("NextToken")
            if not next_token:
                return

    def get_questions_for_pillar(
        self,
        aws_workload_id: str,
        pillar: Pillar,
        cancel_event: threading.Event | None = None,
    ) -> list[WAFRQuestion]:
        """Return every question of one pillar, following pagination."""
        return [
            _question_from_answer(answer, pillar)
            for answer in self._iter_answers(aws_workload_id, pillar, cancel_event)
        ]

    def get_questions(
        self,
        aws_workload_id: str,
        scope: ReviewScope,
        cancel_event: threading.Event | None = None,
    ) -> list[WAFRQuestion]:
        """
        Return the questions covered by a review scope.

        Workload scope lists each of the six pillars exactly once, pillar
        scope lists one pillar, and question scope searches the pillars for
        the question id.

        Args:
            aws_workload_id: Well-Architected Tool workload id
            scope: Review scope
            cancel_event: Optional cancellation event

        Returns:
            Questions in the order the tool returned them

        Raises:
            ValidationError: If the workload id is empty
            PillarRequiredError / QuestionIDRequiredError: Invalid scope
            WAFRAPIError: If listing fails, or the question does not exist
        """
        if not aws_workload_id:
            raise ValidationError("aws_workload_id", "AWS workload ID is required")
        scope.validate_scope()

        if scope.level == ScopeLevel.PILLAR and scope.pillar is not None:
            questions = self.get_questions_for_pillar(aws_workload_id, scope.pillar, cancel_event)
        elif scope.level == ScopeLevel.QUESTION:
            questions = [self._get_specific_question(aws_workload_id, scope.question_id, cancel_event)]
        else:
            questions = []
            for pillar in ALL_PILLARS:
                questions.extend(self.get_questions_for_pillar(aws_workload_id, pillar, cancel_event))

        log_with_context(
            logger,
            "info",
            "Retrieved questions",
            aws_workload_id=aws_workload_id,
            scope_level=scope.level.value,
            question_count=len(questions),
        )
        return questions

    def _get_specific_question(
        self,
        aws_workload_id: str,
        question_id: str,
        cancel_event: threading.Event | None,
    ) -> WAFRQuestion:
        for pillar in ALL_PILLARS:
            try:
                questions = self.get_questions_for_pillar(aws_workload_id, pillar, cancel_event)
            except WAFRAPIError as e:
                log_with_context(
                    logger,
                    "warning",
                    "Failed to list questions for pillar",
                    pillar=pillar.value,
                    error=str(e),
                )
                continue
            for question in questions:
                if question.id == question_id:
                    return question

        not_found = WorkloadNotFoundError(f"question {question_id} not found", aws_workload_id)
        raise WAFRAPIError("ListAnswers", f"question {question_id} not found") from not_found

    # -------------------------------------------------------------------------
    # Evaluation and answers
    # -------------------------------------------------------------------------

    def evaluate_question(
        self,
        question: WAFRQuestion | None,
        workload_model: WorkloadModel | None,
        adapter: ModelAdapter | None,
        cancel_event: threading.Event | None = None,
    ) -> QuestionEvaluation:
        """
        Evaluate one question with the model adapter and adjust its confidence.

        Adapter failures never raise: they yield an evaluation with no
        choices, confidence 0.0 and notes starting with "Evaluation failed".

        Raises:
            ValidationError: If ``question`` or ``workload_model`` is None
            EvaluatorNotInitializedError: If ``adapter`` is None
            OperationCancelledError: If ``cancel_event`` was set
        """
        if question is None:
            raise ValidationError("question", "question is required")
        if workload_model is None:
            raise ValidationError("workload_model", "workload model is required")
        if adapter is None:
            raise EvaluatorNotInitializedError()

        log_with_context(
            logger,
            "info",
            "Evaluating question",
            question_id=question.id,
            pillar=question.pillar.value,
            resource_count=len(workload_model.resources),
        )

        try:
            evaluation = adapter.evaluate_wafr_question(question, workload_model, cancel_event)
        except OperationCancelledError:
            raise
        except Exception as e:
            return self._failed_evaluation(question, e)

        evaluation.confidence_score = calculate_confidence_score(evaluation, workload_model)

        log_with_context(
            logger,
            "info",
            "Question evaluated",
            question_id=question.id,
            selected_choices=len(evaluation.selected_choices),
            evidence_count=len(evaluation.evidence),
            confidence=evaluation.confidence_score,
        )
        return evaluation

    @staticmethod
    def _failed_evaluation(question: WAFRQuestion, error: Exception) -> QuestionEvaluation:
        log_with_context(
            logger,
            "warning",
            "Model evaluation failed, returning low confidence",
            question_id=question.id,
            error=str(error),
        )
        return QuestionEvaluation(
            question=question,
            confidence_score=0.0,
            notes=f"Evaluation failed: {error}",
        )

    def submit_answer(
        self,
        aws_workload_id: str,
        question_id: str,
        evaluation: QuestionEvaluation | None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """
        Submit the selected choices of an evaluation as the question's answer.

        Raises:
            ValidationError: Missing workload id, question id or evaluation
            WAFRAPIError: If the update fails
        """
        if not aws_workload_id:
            raise ValidationError("aws_workload_id", "AWS workload ID is required")
        if not question_id:
            raise ValidationError("question_id", "question ID is required")
        if evaluation is None:
            raise ValidationError("evaluation", "evaluation is required")

        selected = [choice.id for choice in evaluation.selected_choices]
        notes = f"Automated analysis by Waffle (confidence: {evaluation.confidence_score:.2f})\n\n{evaluation.notes}"
        if len(notes) > MAX_NOTES_LENGTH:
            notes = notes[:MAX_NOTES_LENGTH]

        _ = self._call(
            "UpdateAnswer",
            lambda: self.client.update_answer(
                WorkloadId=aws_workload_id,
                LensAlias=LENS_ALIAS,
                QuestionId=question_id,
                SelectedChoices=selected,
                Notes=notes,
                IsApplicable=True,
            ),
            cancel_event,
        )

        log_with_context(
            logger,
            "info",
            "Answer submitted",
            aws_workload_id=aws_workload_id,
            question_id=question_id,
            choices_count=len(selected),
            confidence=evaluation.confidence_score,
        )

    # -------------------------------------------------------------------------
    # Improvement plan, milestones and reports
    # -------------------------------------------------------------------------

    def get_improvement_plan(
        self,
        aws_workload_id: str,
        workload_model: WorkloadModel | None,
        cancel_event: threading.Event | None = None,
    ) -> ImprovementPlan:
        """
        Build an improvement plan from the risks the tool reports.

        Every answer with a HIGH or MEDIUM risk becomes a Risk and an
        improvement item. A pillar whose answers cannot be listed is
        logged and skipped.

        Args:
            aws_workload_id: Well-Architected Tool workload id
            workload_model: Model used to attach affected resources
            cancel_event: Optional cancellation event

        Returns:
            ImprovementPlan with items ``improvement-1`` ... ``improvement-n``

        Raises:
            ValidationError: If the workload id is empty
        """
        if not aws_workload_id:
            raise ValidationError("aws_workload_id", "AWS workload ID is required")

        log_with_context(logger, "info", "Retrieving improvement plan", aws_workload_id=aws_workload_id)

        risks: list[Risk] = []
        for pillar in ALL_PILLARS:
            try:
                answers = list(self._iter_answers(aws_workload_id, pillar, cancel_event))
            except WAFRAPIError as e:
                log_with_context(
                    logger,
                    "warning",
                    "Failed to get risks for pillar",
                    pillar=pillar.value,
                    error=str(e),
                )
                continue
            risks.extend(
                _risk_from_answer(answer, pillar)
                for answer in answers
                if str(answer.get("Risk", "")) in _RISK_LEVELS
            )

        if workload_model is not None and workload_model.resources:
            for risk in risks:
                risk.affected_resources = find_affected_resources(risk.pillar, workload_model)

        items = [
            ImprovementPlanItem(
                id=f"improvement-{index}",
                risk=risk,
                description=risk.description,
                best_practice_refs=[
                    best_practice_url(risk.pillar, practice.id) for practice in risk.missing_best_practices
                ],
                affected_resources=list(risk.affected_resources),
                priority=calculate_priority(risk.severity, len(risk.missing_best_practices)),
                estimated_effort=estimate_effort(
                    len(risk.missing_best_practices), len(risk.affected_resources)
                ),
            )
            for index, risk in enumerate(risks, start=1)
        ]

        log_with_context(
            logger,
            "info",
            "Improvement plan retrieved",
            aws_workload_id=aws_workload_id,
            risk_count=len(risks),
            improvement_items=len(items),
        )
        return ImprovementPlan(items=items)

    def create_milestone(
        self,
        aws_workload_id: str,
        name: str = "",
        cancel_event: threading.Event | None = None,
    ) -> str:
        """
        Create a milestone and return its number as a string.

        An empty ``name`` becomes ``waffle-YYYY-MM-DD-HH-MM-SS`` (UTC).

        Raises:
            ValidationError: If the workload id is empty
            WAFRAPIError: If the call fails
        """
        if not aws_workload_id:
            raise ValidationError("aws_workload_id", "AWS workload ID is required")
        milestone_name = name or utc_now().strftime(MILESTONE_NAME_FORMAT)

        response = self._call(
            "CreateMilestone",
            lambda: self.client.create_milestone(
                WorkloadId=aws_workload_id,
                MilestoneName=milestone_name,
            ),
            cancel_event,
        )
        milestone_number = str(response.get("MilestoneNumber", 0))

        log_with_context(
            logger,
            "info",
            "Milestone created",
            aws_workload_id=aws_workload_id,
            milestone_name=milestone_name,
            milestone_number=milestone_number,
        )
        return milestone_number

    def get_consolidated_report(self, aws_workload_id: str, fmt: str = "pdf") -> bytes:
        """
        Download the consolidated report.

        Args:
            aws_workload_id: Workload the report is requested for
            fmt: "pdf" or "json" (case-insensitive)

        Returns:
            Decoded report bytes

        Raises:
            ValidationError: Empty workload id or unsupported format
            WAFRAPIError: If the call fails or the payload cannot be decoded
        """
        if not aws_workload_id:
            raise ValidationError("aws_workload_id", "AWS workload ID is required")
        report_format = fmt.upper()
        if report_format not in ("PDF", "JSON"):
            raise ValidationError("format", "unsupported report format (supported: pdf, json)", value=fmt)

        response = self._call(
            "GetConsolidatedReport",
            lambda: self.client.get_consolidated_report(
                Format=report_format,
                IncludeSharedResources=False,
            ),
        )

        if response.get("Base64String"):
            try:
                data = base64.b64decode(response["Base64String"], validate=True)
            except (binascii.Error, ValueError) as e:
                raise WAFRAPIError("GetConsolidatedReport", f"failed to decode report data: {e}") from e
        else:
            data = json.dumps({"Metrics": response.get("Metrics", [])}, default=str).encode("utf-8")

        log_with_context(
            logger,
            "info",
            "Consolidated report retrieved",
            aws_workload_id=aws_workload_id,
            format=report_format,
            size_bytes=len(data),
        )
        return data

    def get_results_json(self, aws_workload_id: str, session: ReviewSession) -> dict[str, Any]:
        """
        Build a JSON report that combines session results with the tool's report.

        The tool's JSON report is included under ``aws_report`` when it can
        be retrieved; otherwise the report is built from the session alone.

        Raises:
            ValidationError: If the workload id is empty
        """
        if not aws_workload_id:
            raise ValidationError("aws_workload_id", "AWS workload ID is required")

        aws_report: Any = None
        try:
            aws_report = json.loads(self.get_consolidated_report(aws_workload_id, "json"))
        except (WAFRAPIError, ValueError) as e:
            log_with_context(
                logger,
                "warning",
                "Failed to get base AWS report, continuing with session data only",
                error=str(e),
            )

        model = session.workload_model
        results = session.results
        evaluations = results.evaluations if results else []

        report: dict[str, Any] = {
            "aws_workload_id": aws_workload_id,
            "workload_name": session.workload_id,
            "console_link": console_link(aws_workload_id),
            "generated_at": utc_now().isoformat(),
            "iac_framework": model.framework if model else "",
            "iac_source_type": model.source_type.value if model else "",
            "resource_count": len(model.resources) if model else 0,
            "resources": [r.address for r in model.resources] if model else [],
            "evaluations": [
                {
                    "question_id": e.question.id,
                    "question_title": e.question.title,
                    "pillar": e.question.pillar.value,
                    "selected_choices": [c.title for c in e.selected_choices],
                    "confidence_score": e.confidence_score,
                    "evidence": [ev.explanation for ev in e.evidence],
                    "notes": e.notes,
                }
                for e in evaluations
            ],
            "risks": [
                {
                    "id": r.id,
                    "question_id": r.question.id,
                    "question_title": r.question.title,
                    "pillar": r.pillar.value,
                    "severity": r.severity.value,
                    "description": r.description,
                    "affected_resources": list(r.affected_resources),
                }
                for r in (results.risks if results else [])
            ],
            "improvement_plan": [
                item.description for item in (results.improvement_plan.items if results else [])
            ],
            "average_confidence": (
                sum(e.confidence_score for e in evaluations) / len(evaluations) if evaluations else 0.0
            ),
        }
        if aws_report is not None:
            report["aws_report"] = aws_report
        return report
