"""
Amazon Bedrock adapter for WAFR evaluation.

This module wraps the Bedrock Runtime ``InvokeModel`` API for Anthropic
Claude models. It gates every call through a token bucket rate limiter,
retries throttling, unavailability and model timeouts with exponential
backoff, tracks token usage and estimated cost, and parses the model's JSON
replies into Waffle models.

Invocation:
    1. Acquire a rate limiter token (default 2 requests/second)
    2. Invoke the model with a bounded read timeout (default 60s)
    3. Retry ThrottlingException, ServiceUnavailableException and
       ModelTimeoutException (1s, 2s, 4s ... capped at 32s)
    4. Concatenate the text content blocks of the reply

Parsing tolerance:
    - Semantic analysis falls back to partial extraction
    - Question evaluation degrades to an empty, zero-confidence evaluation
    - Improvement guidance raises IaCParsingError

Audit events (logged with ``event_type``):
    bedrock_invocation, bedrock_success, bedrock_error,
    bedrock_throttled, bedrock_unavailable, bedrock_timeout

Usage:
    from waffle.bedrock_client import BedrockClient, BedrockClientConfig

    client = BedrockClient(BedrockClientConfig(region="us-west-2"))
    evaluation = client.evaluate_wafr_question(question, workload_model)
    print(client.get_token_usage_stats().estimated_cost)
"""

import json
import threading
from dataclasses import dataclass
from typing import Any, cast

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from waffle.aws import create_client
from waffle.errors import BedrockAPIError, IaCParsingError, MaxRetriesExceededError
from waffle.logging_config import get_logger, log_with_context
from waffle.models import (
    Choice,
    EstimatedEffort,
    Evidence,
    ImprovementPlanItem,
    QuestionEvaluation,
    Resource,
    Risk,
    SecurityFinding,
    SemanticAnalysis,
    SemanticRelationship,
    TokenUsageStats,
    WAFRQuestion,
    WorkloadModel,
)
from waffle.prompts import (
    build_evaluation_prompt,
    build_improvement_prompt,
    build_semantic_analysis_prompt,
)
from waffle.rate_limiter import RateLimitConfig, TokenBucketRateLimiter
from waffle.retry import (
    BEDROCK_RETRYABLE_CODES,
    REQUEST_TIMEOUT_CODE,
    RetryPolicy,
    get_error_code,
    get_error_message,
    retry_with_backoff,
)
from waffle.scoring import calculate_priority

logger = get_logger(__name__)

DEFAULT_MODEL_ID = "us.anthropic.claude-sonnet-4-20250514-v1:0"
ANTHROPIC_VERSION = "bedrock-2023-05-31"

# USD per 1K tokens
INPUT_COST_PER_1K = 0.003
OUTPUT_COST_PER_1K = 0.015

_OPERATION = "InvokeModel"


@dataclass
class BedrockClientConfig:
    """
    Bedrock adapter configuration.

    Attributes:
        model_id: Bedrock model id (inference profile)
        region: AWS region for Bedrock Runtime
        max_tokens: Maximum tokens in the reply
        temperature: Sampling temperature in [0, 1]
        top_p: Nucleus sampling parameter
        max_retries: Retries after the first attempt
        timeout_seconds: Per-call read timeout and rate limiter wait
        rate_limit: Requests per second
        profile: Named AWS profile (empty for the default chain)
        base_delay: First retry backoff in seconds
        max_delay: Retry backoff cap in seconds
    """

    model_id: str = DEFAULT_MODEL_ID
    region: str = "us-east-1"
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9
    max_retries: int = 3
    timeout_seconds: int = 60
    rate_limit: float = 2.0
    profile: str = ""
    base_delay: float = 1.0
    max_delay: float = 32.0


class TokenUsageTracker:
    """Thread-safe accumulator of token usage."""

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._input_tokens: int = 0
        self._output_tokens: int = 0
        self._invocations: int = 0

    def record_invocation(self, input_tokens: int, output_tokens: int) -> None:
        """Add the usage of one successful invocation."""
        with self._lock:
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._invocations += 1

    def get_stats(self) -> TokenUsageStats:
        """Return a snapshot of the accumulated usage and estimated cost."""
        with self._lock:
            cost = (
                self._input_tokens / 1000.0 * INPUT_COST_PER_1K
                + self._output_tokens / 1000.0 * OUTPUT_COST_PER_1K
            )
            return TokenUsageStats(
                total_input_tokens=self._input_tokens,
                total_output_tokens=self._output_tokens,
                invocation_count=self._invocations,
                estimated_cost=cost,
            )


def _audit(level: str, event_type: str, **context: object) -> None:
    log_with_context(logger, level, event_type, event_type=event_type, **context)


def _audit_retry(error_code: str, attempt: int, backoff: float) -> None:
    if error_code == "ThrottlingException":
        _audit("warning", "bedrock_throttled", attempt=attempt, backoff_seconds=backoff)
    elif error_code == "ServiceUnavailableException":
        _audit("warning", "bedrock_unavailable", attempt=attempt)
    elif error_code in ("ModelTimeoutException", REQUEST_TIMEOUT_CODE):
        _audit("warning", "bedrock_timeout", attempt=attempt)


# =============================================================================
# Response parsing
# =============================================================================


class _EvidenceResponse(BaseModel):
    choice_id: str = ""
    explanation: str = ""
    resources: list[str] | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class _EvaluationResponse(BaseModel):
    selected_choices: list[str] | None = None
    evidence: list[_EvidenceResponse] | None = None
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    notes: str | None = None


class _ImprovementResponse(BaseModel):
    description: str = ""
    rationale: str = ""
    best_practice_refs: list[str] | None = None
    affected_resources: list[str] | None = None
    estimated_effort: str = ""


def extract_json(text: str) -> str:
    """
    Strip Markdown code fences around a JSON reply.

    Handles a leading ```` ```json ```` or ```` ``` ```` and the last
    closing fence.

    Args:
        text: Raw model reply

    Returns:
        Text between the fences, trimmed
    """
    stripped = text.strip()
    for fence in ("```json", "```"):
        if stripped.startswith(fence):
            stripped = stripped[len(fence) :]
            closing = stripped.rfind("```")
            if closing != -1:
                stripped = stripped[:closing]
            break
    return stripped.strip()


def _load_json_object(text: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(extract_json(text))
    except json.JSONDecodeError as e:
        raise IaCParsingError("bedrock response", str(e), f"invalid {what} JSON") from e
    if not isinstance(data, dict):
        raise IaCParsingError("bedrock response", "reply is not a JSON object", f"invalid {what} JSON")
    return cast(dict[str, Any], data)


def parse_semantic_analysis(text: str) -> SemanticAnalysis:
    """
    Parse a semantic-analysis reply.

    Raises:
        IaCParsingError: If the reply is not valid JSON of the expected shape
    """
    data = _load_json_object(text, "semantic analysis")
    try:
        return SemanticAnalysis.model_validate(
            {
                "security_findings": data.get("security_findings") or [],
                "relationships": data.get("relationships") or [],
            }
        )
    except PydanticValidationError as e:
        raise IaCParsingError("bedrock response", str(e), "invalid semantic analysis") from e


def extract_partial_semantic_analysis(text: str) -> SemanticAnalysis:
    """
    Best-effort extraction of a semantic-analysis reply.

    Tries the outermost ``{...}`` span of the reply and keeps every finding
    and relationship that validates on its own. Never raises.
    """
    candidate = extract_json(text)
    start, end = candidate.find("{"), candidate.rfind("}")
    data: Any = None
    if start != -1 and end > start:
        try:
            data = json.loads(candidate[start : end + 1])
        except json.JSONDecodeError:
            data = None

    analysis = SemanticAnalysis()
    if not isinstance(data, dict):
        return analysis
    data = cast(dict[str, Any], data)

    for item in data.get("security_findings") or []:
        try:
            analysis.security_findings.append(SecurityFinding.model_validate(item))
        except PydanticValidationError:
            continue
    for item in data.get("relationships") or []:
        try:
            analysis.relationships.append(SemanticRelationship.model_validate(item))
        except PydanticValidationError:
            continue
    return analysis


def parse_evaluation_response(text: str, question: WAFRQuestion) -> QuestionEvaluation:
    """
    Parse a question-evaluation reply.

    Selected choice ids that are not choices of ``question`` are dropped.

    Args:
        text: Raw model reply
        question: Question that was evaluated

    Returns:
        QuestionEvaluation with the model-reported confidence

    Raises:
        IaCParsingError: Invalid JSON, or any confidence outside [0, 1]
    """
    data = _load_json_object(text, "evaluation")
    try:
        response = _EvaluationResponse.model_validate(data)
    except PydanticValidationError as e:
        raise IaCParsingError("bedrock response", str(e), "invalid evaluation response") from e

    choices_by_id: dict[str, Choice] = {choice.id: choice for choice in question.choices}
    selected = [
        choices_by_id[choice_id]
        for choice_id in response.selected_choices or []
        if choice_id in choices_by_id
    ]
    evidence = [
        Evidence(
            choice_id=item.choice_id,
            explanation=item.explanation,
            resources=list(item.resources or []),
            confidence=item.confidence,
        )
        for item in response.evidence or []
    ]
    return QuestionEvaluation(
        question=question,
        selected_choices=selected,
        evidence=evidence,
        confidence_score=response.overall_confidence,
        notes=response.notes or "",
    )


def parse_improvement_response(text: str, risk: Risk) -> ImprovementPlanItem:
    """
    Parse an improvement-guidance reply into a plan item ``improvement-<risk id>``.

    Raises:
        IaCParsingError: If the reply is not valid JSON of the expected shape
    """
    data = _load_json_object(text, "improvement")
    try:
        response = _ImprovementResponse.model_validate(data)
    except PydanticValidationError as e:
        raise IaCParsingError("bedrock response", str(e), "invalid improvement response") from e

    description = response.description
    if response.rationale:
        description = f"{description}\n\nRationale: {response.rationale}" if description else response.rationale

    effort_value = response.estimated_effort.strip().upper()
    effort = (
        EstimatedEffort(effort_value)
        if effort_value in EstimatedEffort.__members__
        else EstimatedEffort.MEDIUM
    )

    return ImprovementPlanItem(
        id=f"improvement-{risk.id}",
        risk=risk,
        description=description,
        best_practice_refs=list(response.best_practice_refs or []),
        affected_resources=list(response.affected_resources or []),
        priority=calculate_priority(risk.severity, len(risk.missing_best_practices)),
        estimated_effort=effort,
    )


# =============================================================================
# Client
# =============================================================================


class BedrockClient:
    """
    Rate-limited, retrying Bedrock Runtime client.

    Attributes:
        config: Adapter configuration
        client: boto3 ``bedrock-runtime`` client
        rate_limiter: Limiter gating every invocation
        token_tracker: Accumulated token usage
    """

    def __init__(
        self,
        config: BedrockClientConfig | None = None,
        client: Any = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            config: Adapter configuration (defaults when None)
            client: Pre-built ``bedrock-runtime`` client (created when None)
            rate_limiter: Limiter to use (created from ``config.rate_limit``
                when None)

        Example:
            >>> client = BedrockClient(BedrockClientConfig(model_id="us.anthropic.claude-sonnet-4-20250514-v1:0"))
        """
        self.config: BedrockClientConfig = config or BedrockClientConfig()
        self.client: Any = client or create_client(
            "bedrock-runtime",
            region=self.config.region,
            profile=self.config.profile,
            read_timeout=self.config.timeout_seconds,
        )
        self.rate_limiter: TokenBucketRateLimiter = rate_limiter or TokenBucketRateLimiter(
            RateLimitConfig(
                requests_per_second=self.config.rate_limit,
                burst_size=max(1, int(self.config.rate_limit)),
            )
        )
        self.token_tracker: TokenUsageTracker = TokenUsageTracker()
        self.retry_policy: RetryPolicy = RetryPolicy(
            retryable_codes=BEDROCK_RETRYABLE_CODES,
            max_retries=self.config.max_retries,
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
        )

        log_with_context(
            logger,
            "info",
            "Initialized Bedrock client",
            model_id=self.config.model_id,
            region=self.config.region,
            max_retries=self.config.max_retries,
        )

    def invoke_model(self, prompt: str, cancel_event: threading.Event | None = None) -> str:
        """
        Invoke the model with a single user message.

        Args:
            prompt: User message
            cancel_event: Optional event honoured while waiting

        Returns:
            Concatenated text content of the reply

        Raises:
            BedrockAPIError: Non-retryable error, exhausted retries (caused
                by ``MaxRetriesExceededError``), rate limiter timeout or an
                unusable reply
            OperationCancelledError: ``cancel_event`` was set
        """
        if not self.rate_limiter.acquire(
            timeout=float(self.config.timeout_seconds), cancel_event=cancel_event
        ):
            raise BedrockAPIError(_OPERATION, "timed out waiting for rate limiter", retryable=True)

        try:
            return retry_with_backoff(
                lambda: self._invoke_once(prompt),
                operation=_OPERATION,
                policy=self.retry_policy,
                cancel_event=cancel_event,
                on_retry=_audit_retry,
            )
        except MaxRetriesExceededError as e:
            _audit("error", "bedrock_error", error_type="max retries exceeded", error=str(e))
            raise BedrockAPIError(
                _OPERATION,
                f"max retries ({self.config.max_retries}) exceeded",
                retryable=True,
            ) from e
        except ClientError as e:
            _audit("error", "bedrock_error", error_type="non-retryable error", error=str(e))
            raise BedrockAPIError(
                _OPERATION,
                get_error_message(e),
                error_code=get_error_code(e),
            ) from e
        except BotoCoreError as e:
            _audit("error", "bedrock_error", error_type="client error", error=str(e))
            raise BedrockAPIError(_OPERATION, str(e)) from e

    def _invoke_once(self, prompt: str) -> str:
        body = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
            "messages": [{"role": "user", "content": prompt}],
        }

        _audit("info", "bedrock_invocation", model_id=self.config.model_id, prompt_length=len(prompt))

        response = self.client.invoke_model(
            modelId=self.config.model_id,
            body=json.dumps(body),
            contentType="application/json",
            accept="application/json",
        )

        try:
            payload = json.loads(response["body"].read())
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            _audit("error", "bedrock_error", error_type="invalid response", error=str(e))
            raise BedrockAPIError(_OPERATION, f"failed to decode response: {e}") from e

        if not isinstance(payload, dict):
            _audit("error", "bedrock_error", error_type="invalid response", error=type(payload).__name__)
            raise BedrockAPIError(_OPERATION, f"response body is not a JSON object: {type(payload).__name__}")

        if payload.get("error"):
            _audit("error", "bedrock_error", error_type="model error", error=str(payload["error"]))
            raise BedrockAPIError(_OPERATION, f"model returned error: {payload['error']}")

        content = payload.get("content") or []
        if not content:
            _audit("error", "bedrock_error", error_type="empty content", error="empty content")
            raise BedrockAPIError(_OPERATION, "model returned empty content")

        text = "".join(
            str(block.get("text", ""))
            for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )

        usage = payload.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        output_tokens = int(usage.get("output_tokens", 0) or 0)
        self.token_tracker.record_invocation(input_tokens, output_tokens)

        _audit("info", "bedrock_success", input_tokens=input_tokens, output_tokens=output_tokens)
        return text

    def analyze_iac_semantics(
        self,
        resources: list[Resource],
        cancel_event: threading.Event | None = None,
    ) -> SemanticAnalysis:
        """
        Ask the model for security findings and relationships.

        Raises:
            BedrockAPIError: If the invocation fails
        """
        reply = self.invoke_model(build_semantic_analysis_prompt(resources), cancel_event)
        try:
            return parse_semantic_analysis(reply)
        except IaCParsingError as e:
            log_with_context(
                logger,
                "warning",
                "Failed to parse semantic analysis, attempting partial extraction",
                error=str(e),
            )
            return extract_partial_semantic_analysis(reply)

    def evaluate_wafr_question(
        self,
        question: WAFRQuestion,
        workload_model: WorkloadModel,
        cancel_event: threading.Event | None = None,
    ) -> QuestionEvaluation:
        """
        Evaluate one WAFR question against a workload model.

        A reply that cannot be parsed yields an evaluation with no selected
        choices, confidence 0.0 and notes describing the failure.

        Raises:
            BedrockAPIError: If the invocation fails
        """
        reply = self.invoke_model(build_evaluation_prompt(question, workload_model), cancel_event)
        try:
            return parse_evaluation_response(reply, question)
        except IaCParsingError as e:
            log_with_context(
                logger,
                "warning",
                "Failed to parse WAFR evaluation, returning low confidence",
                question_id=question.id,
                error=str(e),
            )
            return QuestionEvaluation(
                question=question,
                confidence_score=0.0,
                notes=f"Failed to parse response: {e}",
            )

    def generate_improvement_guidance(
        self,
        risk: Risk,
        resources: list[Resource],
        cancel_event: threading.Event | None = None,
    ) -> ImprovementPlanItem:
        """
        Generate an improvement plan item for a risk.

        Raises:
            BedrockAPIError: If the invocation fails
            IaCParsingError: If the reply cannot be parsed
        """
        reply = self.invoke_model(build_improvement_prompt(risk, resources), cancel_event)
        return parse_improvement_response(reply, risk)

    def get_token_usage_stats(self) -> TokenUsageStats:
        """Return accumulated token usage and estimated cost."""
        return self.token_tracker.get_stats()
