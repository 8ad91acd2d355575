"""
boto3 client construction shared by the Bedrock and WAFR clients.

Clients are created with ``boto3.client`` unless a named profile is
configured, in which case a ``boto3.Session`` for that profile is used.
botocore's own retry loop is limited to a single attempt because Waffle
applies its own retry policy (see ``waffle.retry``).
"""

from typing import Any

import boto3
from botocore.config import Config

from waffle.logging_config import get_logger, log_with_context

logger = get_logger(__name__)


def create_client(
    service_name: str,
    region: str | None = None,
    profile: str | None = None,
    read_timeout: int | None = None,
) -> Any:
    """
    Create a boto3 client.

    Args:
        service_name: boto3 service name (e.g. "bedrock-runtime")
        region: AWS region, or None for the default chain
        profile: Named AWS profile, or None/"" for the default chain
        read_timeout: Socket read timeout in seconds

    Returns:
        boto3 client for the service
    """
    config_kwargs: dict[str, Any] = {"retries": {"max_attempts": 1, "mode": "standard"}}
    if read_timeout is not None:
        config_kwargs["read_timeout"] = read_timeout
    config = Config(**config_kwargs)

    log_with_context(
        logger,
        "debug",
        "Creating AWS client",
        service_name=service_name,
        region=region,
        profile=profile or None,
    )

    if profile:
        session = boto3.Session(profile_name=profile)
        return session.client(service_name=service_name, region_name=region or None, config=config)
    return boto3.client(service_name=service_name, region_name=region or None, config=config)
