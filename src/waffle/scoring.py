"""
Scoring rules for evaluations and improvement plans.

This module holds the deterministic numbers Waffle attaches to model
output: the adjusted confidence of a question evaluation, the priority and
estimated effort of an improvement plan item, and the pillar-to-resource
type table used to attach affected resources to a risk.

Confidence adjustment (multiplicative, clamped to [0, 1]):
    - No resources in the workload:  x0.4, never above 0.4
    - 1-4 resources:                  x0.8
    - No evidence cites a resource:   x0.8
    - Source is not a plan:           x0.9

Usage:
    from waffle.scoring import calculate_confidence_score, calculate_priority

    evaluation.confidence_score = calculate_confidence_score(evaluation, model)
    priority = calculate_priority(RiskLevel.HIGH, missing_count=2)  # 120
"""

from waffle.models import (
    EstimatedEffort,
    Pillar,
    QuestionEvaluation,
    RiskLevel,
    SourceType,
    WorkloadModel,
)

NO_RESOURCES_FACTOR = 0.4
NO_RESOURCES_CEILING = 0.4
FEW_RESOURCES_FACTOR = 0.8
FEW_RESOURCES_THRESHOLD = 5
NO_EVIDENCE_RESOURCES_FACTOR = 0.8
NON_PLAN_SOURCE_FACTOR = 0.9

SEVERITY_BASE_PRIORITY: dict[RiskLevel, int] = {
    RiskLevel.HIGH: 100,
    RiskLevel.MEDIUM: 50,
}
DEFAULT_BASE_PRIORITY = 10
PRIORITY_PER_MISSING_PRACTICE = 10

# Terraform type prefixes considered relevant to each pillar's risks
PILLAR_RESOURCE_PREFIXES: dict[Pillar, tuple[str, ...]] = {
    Pillar.SECURITY: (
        "aws_s3_bucket",
        "aws_kms_key",
        "aws_iam_role",
        "aws_iam_policy",
        "aws_security_group",
        "aws_vpc",
        "aws_subnet",
    ),
    Pillar.RELIABILITY: (
        "aws_autoscaling_group",
        "aws_elb",
        "aws_lb",
        "aws_rds_instance",
        "aws_dynamodb_table",
        "aws_backup_plan",
    ),
    Pillar.PERFORMANCE: (
        "aws_instance",
        "aws_lambda_function",
        "aws_cloudfront_distribution",
        "aws_elasticache_cluster",
    ),
    Pillar.COST_OPTIMIZATION: (
        "aws_instance",
        "aws_rds_instance",
        "aws_s3_bucket",
        "aws_ebs_volume",
    ),
    Pillar.OPERATIONAL_EXCELLENCE: (
        "aws_cloudwatch_log_group",
        "aws_cloudwatch_metric_alarm",
        "aws_sns_topic",
        "aws_lambda_function",
    ),
    Pillar.SUSTAINABILITY: (
        "aws_instance",
        "aws_autoscaling_group",
        "aws_lambda_function",
    ),
}


def calculate_confidence_score(
    evaluation: QuestionEvaluation | None,
    model: WorkloadModel | None,
) -> float:
    """
    Adjust the model-reported confidence for the completeness of the data.

    Args:
        evaluation: Evaluation returned by the model adapter
        model: Workload model the evaluation was based on

    Returns:
        Adjusted confidence in [0, 1]; 0.0 when either argument is None

    Example:
        >>> # 10 plan resources, evidence citing resources: unchanged
        >>> calculate_confidence_score(evaluation, plan_model)
        0.9
    """
    if evaluation is None or model is None:
        return 0.0

    score = evaluation.confidence_score
    resource_count = len(model.resources)

    if resource_count == 0:
        score = min(score * NO_RESOURCES_FACTOR, NO_RESOURCES_CEILING)
    elif resource_count < FEW_RESOURCES_THRESHOLD:
        score *= FEW_RESOURCES_FACTOR

    if not any(evidence.resources for evidence in evaluation.evidence):
        score *= NO_EVIDENCE_RESOURCES_FACTOR

    if model.source_type != SourceType.PLAN:
        score *= NON_PLAN_SOURCE_FACTOR

    return max(0.0, min(1.0, score))


def calculate_priority(severity: RiskLevel, missing_count: int) -> int:
    """
    Priority of an improvement item.

    ``base + 10 * missing_count`` where base is 100 for HIGH, 50 for MEDIUM
    and 10 otherwise. Higher is more urgent.
    """
    base = SEVERITY_BASE_PRIORITY.get(severity, DEFAULT_BASE_PRIORITY)
    return base + PRIORITY_PER_MISSING_PRACTICE * max(0, missing_count)


def estimate_effort(missing_count: int, affected_count: int) -> EstimatedEffort:
    """Estimate remediation effort from missing practices and affected resources."""
    if missing_count >= 3 and affected_count >= 4:
        return EstimatedEffort.HIGH
    if missing_count >= 2 and affected_count >= 2:
        return EstimatedEffort.MEDIUM
    return EstimatedEffort.LOW


def matches_resource_type(resource_type: str, prefix: str) -> bool:
    """Return True if ``resource_type`` is ``prefix`` or starts with it."""
    return resource_type.startswith(prefix)


def find_affected_resources(pillar: Pillar, model: WorkloadModel | None) -> list[str]:
    """
    Addresses of workload resources relevant to a pillar, in model order.

    Args:
        pillar: Pillar of the risk
        model: Workload model (None yields no resources)

    Returns:
        Resource addresses whose type matches one of the pillar's prefixes
    """
    if model is None:
        return []
    prefixes = PILLAR_RESOURCE_PREFIXES.get(pillar, ())
    return [
        resource.address
        for resource in model.resources
        if any(matches_resource_type(resource.type, prefix) for prefix in prefixes)
    ]
