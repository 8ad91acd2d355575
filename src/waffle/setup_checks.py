"""
Environment checks run by ``waffle init``.

Each check makes the cheapest possible call against one AWS service and
reports whether Waffle will be able to use it:

    - AWS Credentials: STS GetCallerIdentity
    - Bedrock Model Access: a one-token InvokeModel against the configured model
    - Well-Architected Tool Permissions: ListWorkloads with MaxResults=1

Checks never raise; failures are reported in the returned ``CheckResult``.

Usage:
    from waffle.setup_checks import run_setup_checks

    for result in run_setup_checks(settings):
        print(result.name, result.success, result.message)
"""

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from waffle.aws import create_client
from waffle.bedrock_client import ANTHROPIC_VERSION
from waffle.config import Settings
from waffle.logging_config import get_logger, log_with_context

logger = get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 10


@dataclass
class CheckResult:
    """
    Outcome of one setup check.

    Attributes:
        name: Human-readable check name
        success: Whether the check passed
        message: Summary shown to the user
        error: Underlying error text when the check failed
    """

    name: str
    success: bool
    message: str
    error: str = ""


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _wafr_region(settings: Settings) -> str:
    return settings.aws.region or settings.bedrock.region


def check_credentials(settings: Settings, client: Any = None) -> CheckResult:
    """Verify that AWS credentials resolve to a caller identity."""
    name = "AWS Credentials"
    sts = client or create_client(
        "sts", _wafr_region(settings), settings.aws.profile, CHECK_TIMEOUT_SECONDS
    )
    try:
        identity = sts.get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        return CheckResult(name, False, "Failed to retrieve AWS credentials", str(e))

    account = identity.get("Account", "unknown")
    if settings.aws.profile:
        message = f"AWS credentials configured (profile: {settings.aws.profile}, account: {account})"
    else:
        message = f"AWS credentials configured (account: {account})"
    return CheckResult(name, True, message)


def check_bedrock_access(settings: Settings, client: Any = None) -> CheckResult:
    """
    Verify that the configured model can be invoked.

    A ValidationException still proves access, since the request reached the
    model.
    """
    name = "Bedrock Model Access"
    model_id = settings.bedrock.model_id
    region = settings.bedrock.region
    granted = f"Bedrock model access enabled (model: {model_id}, region: {region})"

    runtime = client or create_client(
        "bedrock-runtime", region, settings.aws.profile, CHECK_TIMEOUT_SECONDS
    )
    body = {
        "anthropic_version": ANTHROPIC_VERSION,
        "max_tokens": 1,
        "messages": [{"role": "user", "content": "Hi"}],
    }
    try:
        _ = runtime.invoke_model(
            modelId=model_id,
            body=json.dumps(body),
            contentType="application/json",
            accept="application/json",
        )
    except ClientError as e:
        code = _error_code(e)
        if code == "ValidationException":
            return CheckResult(name, True, granted)
        if code == "AccessDeniedException":
            message = (
                f"Bedrock model access not enabled in region {region}. "
                "Enable model access in the AWS Console under Bedrock > Model access"
            )
        elif code == "ResourceNotFoundException":
            message = f"Bedrock model {model_id} not found in region {region}"
        else:
            message = "Failed to verify Bedrock access"
        return CheckResult(name, False, message, str(e))
    except BotoCoreError as e:
        return CheckResult(name, False, "Failed to verify Bedrock access", str(e))
    return CheckResult(name, True, granted)


def check_wafr_permissions(settings: Settings, client: Any = None) -> CheckResult:
    """Verify that the Well-Architected Tool can be listed."""
    name = "Well-Architected Tool Permissions"
    region = _wafr_region(settings)
    wafr = client or create_client(
        "wellarchitected", region, settings.aws.profile, CHECK_TIMEOUT_SECONDS
    )
    try:
        _ = wafr.list_workloads(MaxResults=1)
    except ClientError as e:
        if _error_code(e) == "AccessDeniedException":
            message = (
                "Insufficient permissions for Well-Architected Tool. "
                "Required: wellarchitected:ListWorkloads (and other wellarchitected:* permissions)"
            )
        else:
            message = "Failed to verify Well-Architected Tool permissions"
        return CheckResult(name, False, message, str(e))
    except BotoCoreError as e:
        return CheckResult(name, False, "Failed to verify Well-Architected Tool permissions", str(e))
    return CheckResult(name, True, f"Well-Architected Tool access verified (region: {region})")


_CHECKS: tuple[Callable[[Settings], CheckResult], ...] = (
    check_credentials,
    check_bedrock_access,
    check_wafr_permissions,
)


def run_setup_checks(settings: Settings) -> list[CheckResult]:
    """
    Run every setup check in order.

    Args:
        settings: Loaded settings

    Returns:
        One result per check
    """
    results: list[CheckResult] = []
    for check in _CHECKS:
        result = check(settings)
        log_with_context(
            logger,
            "info" if result.success else "warning",
            "Setup check finished",
            check=result.name,
            success=result.success,
            error=result.error or None,
        )
        results.append(result)
    return results
