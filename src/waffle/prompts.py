"""
Prompt templates for the Bedrock adapter.

Each builder renders a single user message that instructs Claude to reply
with one JSON document of a fixed shape. The shapes are the contract with
the parsers in ``waffle.bedrock_client``.

Usage:
    from waffle.prompts import build_evaluation_prompt

    prompt = build_evaluation_prompt(question, workload_model)
"""

import json

from waffle.models import BestPractice, Choice, Resource, Risk, WAFRQuestion, WorkloadModel


def format_resources(resources: list[Resource]) -> str:
    """Render resources as numbered blocks with address, type and properties."""
    if not resources:
        return "No resources provided"

    blocks: list[str] = []
    for index, resource in enumerate(resources, start=1):
        lines = [
            f"Resource {index}:",
            f"  Address: {resource.address}",
            f"  Type: {resource.type}",
        ]
        if resource.properties:
            properties = json.dumps(resource.properties, indent=2, sort_keys=True, default=str)
            lines.append(f"  Properties: {properties}")
        if resource.dependencies:
            lines.append(f"  Dependencies: {', '.join(resource.dependencies)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_best_practices(practices: list[BestPractice]) -> str:
    """Render best practices as a bullet list."""
    if not practices:
        return "No best practices specified"
    return "\n".join(f"- {p.title}: {p.description}" if p.description else f"- {p.title}" for p in practices)


def format_choices(choices: list[Choice]) -> str:
    """Render choices with the ids the model must echo back."""
    if not choices:
        return "No choices available"
    lines: list[str] = []
    for choice in choices:
        line = f"- [{choice.id}] {choice.title}"
        if choice.description:
            line = f"{line}: {choice.description}"
        lines.append(line)
    return "\n".join(lines)


def format_workload_model(model: WorkloadModel) -> str:
    """Render the workload summary followed by its resources."""
    header = (
        f"Framework: {model.framework}\n"
        f"Source: {model.source_type.value}\n"
        f"Total resources: {len(model.resources)}"
    )
    return f"{header}\n\n{format_resources(model.resources)}"


def build_semantic_analysis_prompt(resources: list[Resource]) -> str:
    """
    Build the prompt for security-oriented semantic analysis.

    Args:
        resources: Resources to analyse

    Returns:
        Prompt text
    """
    return f"""You are a principal cloud security architect reviewing Terraform-managed AWS resources.

RESOURCES:
{format_resources(resources)}

TASK:
For each resource, identify:
1. Security-relevant configuration
2. Compliance implications
3. Relationships that affect the security posture
4. Missing security controls

RESPONSE FORMAT (JSON):
{{
  "security_findings": [
    {{
      "resource": "resource_address",
      "findings": ["finding 1", "finding 2"],
      "severity": "high|medium|low"
    }}
  ],
  "relationships": [
    {{
      "from": "resource_address_1",
      "to": "resource_address_2",
      "type": "encryption|access|dependency",
      "status": "configured|missing|misconfigured"
    }}
  ]
}}

Respond ONLY with valid JSON, no additional text."""


def build_evaluation_prompt(question: WAFRQuestion, model: WorkloadModel) -> str:
    """
    Build the prompt that asks which choices of a question the workload meets.

    Args:
        question: Question to evaluate
        model: Workload model built from IaC

    Returns:
        Prompt text
    """
    return f"""You are evaluating an AWS workload against the AWS Well-Architected Framework.

QUESTION: {question.title}
PILLAR: {question.pillar.value}
DESCRIPTION: {question.description or "No description provided"}

BEST PRACTICES:
{format_best_practices(question.best_practices)}

AVAILABLE CHOICES:
{format_choices(question.choices)}

WORKLOAD (from infrastructure-as-code):
{format_workload_model(model)}

TASK:
Decide which choices the workload satisfies, based only on the infrastructure-as-code above.
For each selected choice:
1. Explain why it applies
2. Cite specific evidence (resource addresses and configuration)
3. Assign a confidence between 0.0 and 1.0 reflecting how complete the evidence is

RESPONSE FORMAT (JSON):
{{
  "selected_choices": ["choice_id_1", "choice_id_2"],
  "evidence": [
    {{
      "choice_id": "choice_id_1",
      "explanation": "Why this choice applies",
      "resources": ["resource_address_1"],
      "confidence": 0.9
    }}
  ],
  "overall_confidence": 0.85,
  "notes": "Caveats or missing information"
}}

REQUIREMENTS:
- Use only choice ids from AVAILABLE CHOICES
- Confidence values must be between 0.0 and 1.0
- Do not select a choice without evidence

Respond ONLY with valid JSON, no additional text."""


def build_improvement_prompt(risk: Risk, resources: list[Resource]) -> str:
    """
    Build the prompt for a single improvement plan item.

    Args:
        risk: Risk to address
        resources: Resources affected by the risk

    Returns:
        Prompt text
    """
    return f"""Generate an improvement plan item for the following AWS Well-Architected risk.

RISK:
- Question: {risk.question.title}
- Pillar: {risk.pillar.value}
- Severity: {risk.severity.value}
- Description: {risk.description}

MISSING BEST PRACTICES:
{format_best_practices(risk.missing_best_practices)}

AFFECTED RESOURCES:
{format_resources(resources)}

TASK:
1. Describe the changes needed at a high level (no code)
2. Explain why the changes improve the architecture
3. Reference the relevant best practices and AWS documentation
4. Consider relationships between the affected resources

RESPONSE FORMAT (JSON):
{{
  "description": "High-level description of the recommended changes",
  "rationale": "Why these changes improve the architecture",
  "best_practice_refs": ["https://docs.aws.amazon.com/wellarchitected/..."],
  "affected_resources": ["resource_address_1"],
  "estimated_effort": "LOW|MEDIUM|HIGH"
}}

Respond ONLY with valid JSON, no additional text."""
