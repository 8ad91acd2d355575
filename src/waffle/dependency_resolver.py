"""
Dependency inference for Terraform resources.

Builds a ``ResourceGraph`` by scanning resource property values for
textual references to other resources. No HCL expression evaluation is
done here: any word in a string value that looks like a resource address
(``aws_s3_bucket.example.id``, ``data.aws_ami.ubuntu.id``,
``module.vpc.aws_vpc.main.id``) and matches a known node becomes an edge.

The scan over-approximates. A word such as ``aws_s3_bucket.logs_archive``
also matches a node ``aws_s3_bucket.logs`` by containment; false
positives are accepted in exchange for working on both HCL and plan
properties.

Usage:
    from waffle.dependency_resolver import build_resource_graph

    graph = build_resource_graph(model.resources)
    graph.edges["aws_s3_bucket_versioning.example"]
    # ['aws_s3_bucket.example']
"""

import re
from collections.abc import Iterable
from typing import Any

from waffle.logging_config import get_logger, log_with_context
from waffle.models import Resource, ResourceGraph

logger = get_logger(__name__)

# Delimiters between candidate reference words
_WORD_SPLIT = re.compile(r"""[\s,"'()\[\]{}]+""")


def build_resource_graph(resources: list[Resource]) -> ResourceGraph:
    """
    Infer dependencies between resources and build the resource graph.

    Every resource's ``dependencies`` is replaced with its inferred,
    de-duplicated dependency list. Explicit dependencies are kept only when
    they name a node of the graph.

    Args:
        resources: Resources of one workload model

    Returns:
        ResourceGraph with nodes for every resource and edges for every
        resource that has at least one dependency

    Example:
        >>> graph = build_resource_graph(resources)
        >>> graph.contains("aws_s3_bucket.example")
        True
    """
    graph = ResourceGraph(nodes={resource.address: resource for resource in resources})

    for resource in resources:
        found: dict[str, None] = {}

        for value in resource.properties.values():
            for address in _references_in_value(value, graph.nodes):
                found[address] = None

        for dependency in resource.dependencies:
            if dependency in graph.nodes:
                found[dependency] = None

        dependencies = list(found)
        resource.dependencies = dependencies

        if dependencies:
            graph.edges[resource.address] = dependencies
            log_with_context(
                logger,
                "debug",
                "Identified resource dependencies",
                resource=resource.address,
                dependencies=dependencies,
            )

    log_with_context(
        logger,
        "info",
        "Relationship identification complete",
        total_nodes=len(graph.nodes),
        total_edges=len(graph.edges),
    )
    return graph


def _references_in_value(value: Any, nodes: dict[str, Resource]) -> Iterable[str]:
    if isinstance(value, str):
        yield from find_references(value, nodes)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _references_in_value(item, nodes)
    elif isinstance(value, list):
        for item in value:
            yield from _references_in_value(item, nodes)


def find_references(text: str, nodes: dict[str, Resource]) -> list[str]:
    """
    Find node addresses referenced from a single string.

    Each word containing a dot is compared against the nodes in order and
    contributes at most one match.

    Args:
        text: Property string value
        nodes: Known addresses

    Returns:
        Matched addresses in first-seen order, without duplicates
    """
    references: dict[str, None] = {}
    for word in _WORD_SPLIT.split(text):
        if "." not in word:
            continue
        for address in nodes:
            if _word_matches(word, address):
                references[address] = None
                break
    return list(references)


def _word_matches(word: str, address: str) -> bool:
    if address in word:
        return True

    parts = word.split(".")
    if len(parts) < 2:
        return False
    if f"{parts[0]}.{parts[1]}" == address:
        return True
    if len(parts) >= 3 and parts[0] == "data" and f"data.{parts[1]}.{parts[2]}" == address:
        return True
    if (
        len(parts) >= 4
        and parts[0] == "module"
        and f"module.{parts[1]}.{parts[2]}.{parts[3]}" == address
    ):
        return True
    return False
