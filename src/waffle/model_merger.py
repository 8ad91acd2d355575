"""
Configuration-first merging of HCL and plan workload models.

HCL sources describe what the author declared; a plan export adds values
Terraform computes at plan time and resources that only exist once
modules are expanded. The merger keeps the HCL model as the foundation
and enriches it with plan data.

Merge Rules:
    1. HCL properties are kept as-is
    2. Plan property keys missing from HCL are added
    3. Plan dependencies replace HCL dependencies when there are more of them
    4. Matched resources are flagged ``is_from_plan``
    5. HCL source file/line are preserved
    6. Plan-only resources are appended after all HCL resources

Usage:
    from waffle.model_merger import merge_workload_models

    merged = merge_workload_models(plan_model, hcl_model)
    merged.source_type   # SourceType.HCL_ENHANCED
    merged.metadata["plan_only_resources"]
"""

from typing import Any

from waffle.errors import IaCParsingError
from waffle.logging_config import get_logger, log_with_context
from waffle.models import Resource, SourceType, WorkloadModel

logger = get_logger(__name__)

MERGE_STRATEGY = "configuration_first"


def merge_workload_models(
    plan_model: WorkloadModel | None,
    source_model: WorkloadModel | None,
) -> WorkloadModel:
    """
    Merge a plan-derived model into an HCL-derived model.

    Args:
        plan_model: Model parsed from a Terraform plan export
        source_model: Model parsed from HCL sources

    Returns:
        The only model given, unchanged, or a new merged model with source
        type ``hcl_enhanced``

    Raises:
        IaCParsingError: If both models are None

    Example:
        >>> merged = merge_workload_models(plan_model, hcl_model)
        >>> merged.metadata["merge_strategy"]
        'configuration_first'
    """
    if plan_model is None and source_model is None:
        raise IaCParsingError("workload models", "both plan and configuration models are missing")
    if source_model is None:
        log_with_context(logger, "info", "No configuration model provided, using plan model only")
        return plan_model  # type: ignore[return-value]
    if plan_model is None:
        log_with_context(logger, "info", "No plan model provided, using configuration model only")
        return source_model

    log_with_context(
        logger,
        "info",
        "Merging workload models",
        hcl_resources=len(source_model.resources),
        plan_resources=len(plan_model.resources),
    )

    unmatched: dict[str, Resource] = {r.address: r for r in plan_model.resources}
    merged_resources: list[Resource] = []
    enhanced = 0

    for config_resource in source_model.resources:
        plan_resource = unmatched.pop(config_resource.address, None)
        if plan_resource is None:
            merged_resources.append(config_resource.model_copy(deep=True))
            continue

        merged_resources.append(_merge_resource(config_resource, plan_resource))
        enhanced += 1
        log_with_context(
            logger,
            "debug",
            "Enhanced HCL resource with plan data",
            address=config_resource.address,
            hcl_properties=len(config_resource.properties),
            plan_properties=len(plan_resource.properties),
        )

    for plan_only in unmatched.values():
        log_with_context(
            logger,
            "debug",
            "Adding plan-only resource",
            address=plan_only.address,
            type=plan_only.type,
        )
        merged_resources.append(plan_only.model_copy(deep=True))

    metadata: dict[str, Any] = dict(source_model.metadata)
    for key, value in plan_model.metadata.items():
        metadata.setdefault(key, value)
    metadata["merged"] = True
    metadata["merge_strategy"] = MERGE_STRATEGY
    metadata["config_resource_count"] = len(source_model.resources)
    metadata["plan_resource_count"] = len(plan_model.resources)
    metadata["plan_only_resources"] = len(unmatched)

    log_with_context(
        logger,
        "info",
        "Workload model merge complete",
        total_resources=len(merged_resources),
        plan_enhanced=enhanced,
        plan_only=len(unmatched),
    )

    return WorkloadModel(
        resources=merged_resources,
        framework=source_model.framework,
        source_type=SourceType.HCL_ENHANCED,
        metadata=metadata,
    )


def _merge_resource(config_resource: Resource, plan_resource: Resource) -> Resource:
    merged = config_resource.model_copy(deep=True)

    properties = dict(merged.properties)
    for key, value in plan_resource.properties.items():
        if key not in properties:
            properties[key] = value
    merged.properties = properties

    if len(plan_resource.dependencies) > len(config_resource.dependencies):
        merged.dependencies = list(plan_resource.dependencies)

    merged.is_from_plan = True
    return merged
