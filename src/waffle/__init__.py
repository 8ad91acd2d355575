"""
Waffle: automated AWS Well-Architected Framework Reviews for Terraform.

Waffle reads the Terraform configuration (and optionally a Terraform plan
JSON) in a directory, builds a workload model of its resources, asks a
foundation model on Amazon Bedrock to answer each Well-Architected question
with evidence from that model, and records the answers, the improvement plan
and a milestone in the AWS Well-Architected Tool.

Key Components:
    - IaCAnalyzer: Discovers, validates and parses Terraform into a workload model
    - BedrockClient: Rate-limited, retrying Bedrock adapter for evaluations
    - WAFREvaluator: Well-Architected Tool workloads, questions, answers and reports
    - SessionStore: File-backed review sessions with checkpoints
    - ReviewEngine: Checkpointed, resumable review workflow

Architecture:
    Terraform (.tf / plan JSON) → IaCAnalyzer → ReviewEngine → Bedrock
                                                    ↓
                                  AWS Well-Architected Tool + Session files

Environment Variables:
    AWS_PROFILE: Named AWS profile (optional)
    AWS_REGION: AWS region (optional, default: us-east-1)
    WAFFLE_LOG_LEVEL: Log level (default: INFO)
    WAFFLE_CONFIG_FILE: Use only this YAML config file
    WAFFLE_<SECTION>__<KEY>: Any setting, e.g. WAFFLE_BEDROCK__MAX_RETRIES=5

Usage:
    # Review the Terraform in the current directory
    waffle review --workload-id my-app

    # Or as a module
    python -m waffle status <session-id>

Version: 0.1.0
License: MIT
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
