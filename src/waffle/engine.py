"""
Review workflow engine.

The engine drives a review session through six checkpointed stages. Each
stage runs only when the session's checkpoint names the previous stage, and
every checkpoint is persisted before the next stage starts, so a failed or
interrupted review resumes exactly where it stopped.

Workflow:
    ""/created              → IaC analysis         → iac_analysis_complete
    iac_analysis_complete   → retrieve questions   → questions_retrieved
    questions_retrieved     → evaluate questions   → questions_evaluated
    questions_evaluated     → submit answers       → answers_submitted
    answers_submitted       → improvement plan     → improvement_plan_retrieved
    improvement_plan_retrieved → create milestone  → milestone_created

Failure semantics:
    - IaC analysis, question retrieval, "no question evaluated" and
      "no answer submitted" are fatal: the session is marked failed
    - Single question or answer failures are logged and skipped
    - Improvement plan and milestone failures are logged and ignored
    - Cancellation leaves the session in progress and resumable

Usage:
    from waffle.engine import ReviewEngine

    engine = ReviewEngine(store, analyzer, evaluator, bedrock)
    session = engine.initiate_review("my-app", ReviewScope.workload())
    results = engine.execute_review(session, progress=TerminalProgressReporter())
"""

import threading
from pathlib import Path

from waffle.bedrock_client import BedrockClient
from waffle.errors import (
    BedrockInvocationFailedError,
    InvalidSessionStatusError,
    InvalidWorkloadIDError,
    OperationCancelledError,
    SessionAlreadyCompletedError,
    WAFRAPIError,
    WaffleError,
)
from waffle.iac_analyzer import IaCAnalyzer
from waffle.logging_config import LogContext, get_logger, log_with_context
from waffle.models import (
    Checkpoint,
    ImprovementPlan,
    QuestionEvaluation,
    ResultsSummary,
    ReviewResults,
    ReviewScope,
    ReviewSession,
    Risk,
    RiskLevel,
    SessionStatus,
    WorkloadModel,
)
from waffle.progress import ProgressReporter
from waffle.session_store import SessionStore
from waffle.wafr_evaluator import WAFREvaluator

logger = get_logger(__name__)

WORKLOAD_DESCRIPTION = "Automated WAFR review"

# Risk extraction and summary thresholds
LOW_CONFIDENCE_THRESHOLD = 0.5
HIGH_RISK_CONFIDENCE = 0.3
MEDIUM_RISK_CONFIDENCE = 0.7

_RESUMABLE_STATUSES = frozenset({SessionStatus.CREATED, SessionStatus.IN_PROGRESS, SessionStatus.FAILED})


def _check_cancelled(cancel_event: threading.Event | None, operation: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(operation)


def extract_risks(evaluations: list[QuestionEvaluation]) -> list[Risk]:
    """
    Flag low-confidence or unanswered evaluations as medium risks.

    An evaluation is flagged when its confidence is below 0.5 or it selected
    no choice.
    """
    return [
        Risk(
            id=f"risk-{evaluation.question.id}",
            question=evaluation.question,
            pillar=evaluation.question.pillar,
            severity=RiskLevel.MEDIUM,
            description=f"Low confidence or incomplete answer for: {evaluation.question.title}",
        )
        for evaluation in evaluations
        if evaluation.confidence_score < LOW_CONFIDENCE_THRESHOLD or not evaluation.selected_choices
    ]


def build_summary(
    evaluations: list[QuestionEvaluation],
    improvement_plan: ImprovementPlan | None,
) -> ResultsSummary:
    """
    Aggregate evaluation figures.

    Confidence below 0.3 counts as a high risk, 0.3 up to 0.7 as a medium
    risk.
    """
    high = sum(1 for e in evaluations if e.confidence_score < HIGH_RISK_CONFIDENCE)
    medium = sum(
        1 for e in evaluations if HIGH_RISK_CONFIDENCE <= e.confidence_score < MEDIUM_RISK_CONFIDENCE
    )
    average = sum(e.confidence_score for e in evaluations) / len(evaluations) if evaluations else 0.0
    return ResultsSummary(
        total_questions=len(evaluations),
        questions_evaluated=len(evaluations),
        high_risks=high,
        medium_risks=medium,
        average_confidence=average,
        improvement_plan_size=len(improvement_plan.items) if improvement_plan else 0,
    )


class ReviewEngine:
    """
    Checkpointed review workflow.

    Attributes:
        session_store: Persists sessions at every checkpoint
        iac_analyzer: Builds the workload model
        wafr_evaluator: Well-Architected Tool operations
        bedrock_client: Model adapter used for question evaluation
        progress: Default progress observer (optional)
    """

    def __init__(
        self,
        session_store: SessionStore,
        iac_analyzer: IaCAnalyzer,
        wafr_evaluator: WAFREvaluator,
        bedrock_client: BedrockClient,
        progress: ProgressReporter | None = None,
    ) -> None:
        self.session_store: SessionStore = session_store
        self.iac_analyzer: IaCAnalyzer = iac_analyzer
        self.wafr_evaluator: WAFREvaluator = wafr_evaluator
        self.bedrock_client: BedrockClient = bedrock_client
        self.progress: ProgressReporter | None = progress

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def initiate_review(
        self,
        workload_id: str,
        scope: ReviewScope,
        plan_file_path: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ReviewSession:
        """
        Create the external workload and a new ``created`` session.

        Args:
            workload_id: Caller-supplied workload identifier
            scope: Review scope
            plan_file_path: Optional Terraform plan JSON path
            cancel_event: Optional cancellation event

        Returns:
            The persisted session

        Raises:
            InvalidWorkloadIDError: If ``workload_id`` is empty
            PillarRequiredError / QuestionIDRequiredError: Invalid scope
            WAFRAPIError: If the workload cannot be created
            StateStoreError: If the session cannot be saved
        """
        log_with_context(
            logger,
            "info",
            "Initiating review",
            workload_id=workload_id,
            scope_level=scope.level.value,
        )

        if not workload_id.strip():
            raise InvalidWorkloadIDError()
        scope.validate_scope()

        aws_workload_id = self.wafr_evaluator.create_workload(workload_id, WORKLOAD_DESCRIPTION, cancel_event)
        session = self.session_store.create_session(workload_id, scope, aws_workload_id)
        session.working_directory = str(self.iac_analyzer.working_dir.resolve())
        if plan_file_path:
            session.plan_file_path = str(Path(plan_file_path).expanduser().resolve())
        self.session_store.save_session(session)

        log_with_context(
            logger,
            "info",
            "Review initiated",
            session_id=session.session_id,
            aws_workload_id=aws_workload_id,
        )
        return session

    def execute_review(
        self,
        session: ReviewSession,
        progress: ProgressReporter | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ReviewResults:
        """
        Run the workflow from the session's current checkpoint to completion.

        Args:
            session: Session to drive (mutated and persisted in place)
            progress: Progress observer (defaults to the engine's)
            cancel_event: Optional cancellation event

        Returns:
            Review results, also attached to the session

        Raises:
            WaffleError: Any fatal stage failure (session marked failed)
            OperationCancelledError: ``cancel_event`` was set
        """
        reporter = progress or self.progress

        with LogContext(session.session_id):
            log_with_context(
                logger,
                "info",
                "Starting review execution",
                session_id=session.session_id,
                workload_id=session.workload_id,
                checkpoint=session.checkpoint.value,
            )

            session.status = SessionStatus.IN_PROGRESS
            self.session_store.save_session(session)

            try:
                results = self._run_workflow(session, reporter, cancel_event)
            except OperationCancelledError:
                log_with_context(
                    logger,
                    "warning",
                    "Review cancelled",
                    session_id=session.session_id,
                    checkpoint=session.checkpoint.value,
                )
                raise
            except WaffleError as e:
                self._mark_failed(session, e)
                raise
            except Exception as e:
                log_with_context(logger, "error", "Unexpected error during review", error_type=type(e).__name__)
                self._mark_failed(session, e)
                raise

            session.results = results
            session.status = SessionStatus.COMPLETED
            self.session_store.save_session(session)

            log_with_context(
                logger,
                "info",
                "Review execution completed",
                session_id=session.session_id,
                questions_evaluated=len(results.evaluations),
                risks_identified=len(results.risks),
            )

            if reporter is not None:
                reporter.report_completion(results.summary)
            return results

    def resume_session(
        self,
        session_id: str,
        progress: ProgressReporter | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ReviewSession:
        """
        Resume a session from its last checkpoint.

        Args:
            session_id: Session to resume
            progress: Progress observer
            cancel_event: Optional cancellation event

        Returns:
            The completed session

        Raises:
            SessionNotFoundError: Unknown session id
            SessionAlreadyCompletedError: Session already completed
            InvalidSessionStatusError: Status does not allow resuming
        """
        log_with_context(logger, "info", "Resuming session", session_id=session_id)

        session = self.session_store.load_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise SessionAlreadyCompletedError()
        if session.status not in _RESUMABLE_STATUSES:
            raise InvalidSessionStatusError(f"session cannot be resumed from status: {session.status.value}")

        log_with_context(
            logger,
            "info",
            "Resuming from checkpoint",
            session_id=session_id,
            checkpoint=session.checkpoint.value,
        )
        _ = self.execute_review(session, progress, cancel_event)
        return session

    def get_session_status(self, session_id: str) -> SessionStatus:
        """Return the stored status of a session."""
        return self.session_store.load_session(session_id).status

    # -------------------------------------------------------------------------
    # Workflow
    # -------------------------------------------------------------------------

    def _checkpoint(self, session: ReviewSession, checkpoint: Checkpoint) -> None:
        session.checkpoint = checkpoint
        self.session_store.save_session(session)
        log_with_context(
            logger,
            "debug",
            "Checkpoint saved",
            session_id=session.session_id,
            checkpoint=checkpoint.value,
        )

    def _mark_failed(self, session: ReviewSession, error: Exception) -> None:
        log_with_context(
            logger,
            "error",
            "Review failed",
            session_id=session.session_id,
            checkpoint=session.checkpoint.value,
            error=str(error),
        )
        session.status = SessionStatus.FAILED
        try:
            self.session_store.save_session(session)
        except WaffleError as save_error:
            log_with_context(
                logger,
                "error",
                "Failed to save failed session state",
                session_id=session.session_id,
                error=str(save_error),
            )

    def _run_workflow(
        self,
        session: ReviewSession,
        progress: ProgressReporter | None,
        cancel_event: threading.Event | None,
    ) -> ReviewResults:
        if session.checkpoint in (Checkpoint.NONE, Checkpoint.CREATED):
            _check_cancelled(cancel_event, "iac_analysis")
            if progress is not None:
                progress.report_step("iac_analysis", "Analyzing infrastructure-as-code files...")
            session.workload_model = self._analyze_iac(session, cancel_event)
            self._checkpoint(session, Checkpoint.IAC_ANALYSIS_COMPLETE)

        if session.checkpoint == Checkpoint.IAC_ANALYSIS_COMPLETE:
            _check_cancelled(cancel_event, "retrieve_questions")
            if progress is not None:
                progress.report_step("retrieve_questions", "Retrieving WAFR questions from AWS...")
            session.questions = self.wafr_evaluator.get_questions(
                session.aws_workload_id, session.scope, cancel_event
            )
            count = len(session.questions)
            log_with_context(logger, "info", "Retrieved questions", count=count)
            if progress is not None:
                progress.report_progress(count, count, f"Retrieved {count} questions")
            self._checkpoint(session, Checkpoint.QUESTIONS_RETRIEVED)

        if session.checkpoint == Checkpoint.QUESTIONS_RETRIEVED:
            _check_cancelled(cancel_event, "evaluate_questions")
            if progress is not None:
                progress.report_step("evaluate_questions", "Evaluating questions using Bedrock...")
            session.evaluations = self._evaluate_questions(session, progress, cancel_event)
            self._checkpoint(session, Checkpoint.QUESTIONS_EVALUATED)

        if session.checkpoint == Checkpoint.QUESTIONS_EVALUATED:
            _check_cancelled(cancel_event, "submit_answers")
            if progress is not None:
                progress.report_step("submit_answers", "Submitting answers to AWS Well-Architected Tool...")
            self._submit_answers(session, progress, cancel_event)
            self._checkpoint(session, Checkpoint.ANSWERS_SUBMITTED)

        if session.checkpoint == Checkpoint.ANSWERS_SUBMITTED:
            _check_cancelled(cancel_event, "improvement_plan")
            if progress is not None:
                progress.report_step("improvement_plan", "Retrieving improvement plan from AWS...")
            session.improvement_plan = self._fetch_improvement_plan(session, cancel_event)
            self._checkpoint(session, Checkpoint.IMPROVEMENT_PLAN_RETRIEVED)

        if session.checkpoint == Checkpoint.IMPROVEMENT_PLAN_RETRIEVED:
            _check_cancelled(cancel_event, "create_milestone")
            if progress is not None:
                progress.report_step("create_milestone", "Creating milestone in AWS...")
            self._create_milestone(session, cancel_event)
            self._checkpoint(session, Checkpoint.MILESTONE_CREATED)

        plan = session.improvement_plan or ImprovementPlan()
        return ReviewResults(
            evaluations=list(session.evaluations),
            risks=extract_risks(session.evaluations),
            improvement_plan=plan,
            summary=build_summary(session.evaluations, plan),
        )

    def _analyze_iac(self, session: ReviewSession, cancel_event: threading.Event | None) -> WorkloadModel:
        analyzer = self.iac_analyzer
        files = analyzer.retrieve_files(cancel_event)
        analyzer.validate_terraform_files(files, cancel_event)

        plan_model: WorkloadModel | None = None
        if session.plan_file_path:
            log_with_context(logger, "info", "Parsing Terraform plan", path=session.plan_file_path)
            try:
                plan_model = analyzer.parse_terraform_plan(session.plan_file_path)
            except WaffleError as e:
                log_with_context(
                    logger,
                    "warning",
                    "Failed to parse Terraform plan, falling back to HCL",
                    error=str(e),
                )

        _check_cancelled(cancel_event, "iac_analysis")
        source_model = analyzer.parse_terraform(files, cancel_event)

        model = source_model
        if plan_model is not None:
            log_with_context(logger, "info", "Merging plan and source models")
            model = analyzer.merge_models(plan_model, source_model)

        resources = analyzer.extract_resources(model)
        model.relationships = analyzer.identify_relationships(resources)
        model.resources = resources

        log_with_context(logger, "info", "IaC analysis complete", resource_count=len(resources))
        return model

    def _evaluate_questions(
        self,
        session: ReviewSession,
        progress: ProgressReporter | None,
        cancel_event: threading.Event | None,
    ) -> list[QuestionEvaluation]:
        questions = session.questions
        total = len(questions)
        evaluations: list[QuestionEvaluation] = []

        for index, question in enumerate(questions, start=1):
            _check_cancelled(cancel_event, "evaluate_questions")
            if progress is not None:
                progress.report_progress(index, total, f"Evaluating question {index} of {total}")
            else:
                log_with_context(
                    logger,
                    "info",
                    "Evaluating question",
                    question_id=question.id,
                    progress=f"{index}/{total}",
                )

            try:
                evaluation = self.wafr_evaluator.evaluate_question(
                    question, session.workload_model, self.bedrock_client, cancel_event
                )
            except OperationCancelledError:
                raise
            except WaffleError as e:
                log_with_context(
                    logger,
                    "error",
                    "Failed to evaluate question, continuing",
                    question_id=question.id,
                    error=str(e),
                )
                continue
            evaluations.append(evaluation)

        if not evaluations:
            raise BedrockInvocationFailedError("no questions were successfully evaluated")
        return evaluations

    def _submit_answers(
        self,
        session: ReviewSession,
        progress: ProgressReporter | None,
        cancel_event: threading.Event | None,
    ) -> None:
        evaluations = session.evaluations
        total = len(evaluations)
        submitted = 0
        failed = 0

        for index, evaluation in enumerate(evaluations, start=1):
            _check_cancelled(cancel_event, "submit_answers")
            if progress is not None:
                progress.report_progress(index, total, f"Submitting answer {index} of {total}")

            try:
                self.wafr_evaluator.submit_answer(
                    session.aws_workload_id, evaluation.question.id, evaluation, cancel_event
                )
            except OperationCancelledError:
                raise
            except WaffleError as e:
                failed += 1
                log_with_context(
                    logger,
                    "error",
                    "Failed to submit answer, continuing",
                    question_id=evaluation.question.id,
                    error=str(e),
                )
                continue
            submitted += 1

        log_with_context(logger, "info", "Answer submission complete", success=submitted, errors=failed)
        if submitted == 0:
            raise WAFRAPIError("UpdateAnswer", "failed to submit any answers")

    def _fetch_improvement_plan(
        self,
        session: ReviewSession,
        cancel_event: threading.Event | None,
    ) -> ImprovementPlan:
        try:
            return self.wafr_evaluator.get_improvement_plan(
                session.aws_workload_id, session.workload_model, cancel_event
            )
        except OperationCancelledError:
            raise
        except WaffleError as e:
            log_with_context(logger, "warning", "Failed to get improvement plan, continuing", error=str(e))
            return ImprovementPlan()

    def _create_milestone(self, session: ReviewSession, cancel_event: threading.Event | None) -> None:
        try:
            session.milestone_id = self.wafr_evaluator.create_milestone(
                session.aws_workload_id, cancel_event=cancel_event
            )
        except OperationCancelledError:
            raise
        except WaffleError as e:
            log_with_context(logger, "warning", "Failed to create milestone, continuing", error=str(e))
            return
        log_with_context(logger, "info", "Milestone created", milestone_id=session.milestone_id)
