# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Validation

Graph validation using topological sort (Kahn's algorithm).
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from pydantic import ValidationError as PydanticValidationError

from .models import NodeType, WorkflowGraph, WorkflowNode
from .exceptions import WorkflowValidationError

DEFAULT_BRANCH = "default"


@dataclass
class ValidationReport:
    """Outcome of a successful validation"""
    order: List[str]
    warnings: List[str] = field(default_factory=list)


def parse_graph(data: Dict[str, Any]) -> WorkflowGraph:
    """Build a WorkflowGraph from raw JSON, normalizing legacy node types."""
    try:
        return WorkflowGraph.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise WorkflowValidationError(
            f"Invalid workflow graph: {first.get('msg')}",
            field=location or None
        )


def logic_branches(node: WorkflowNode) -> Set[str]:
    """Branch handles a LOGIC node can select"""
    config = node.config or {}
    conditions = config.get("conditions")
    if conditions:
        return {str(c.get("id")) for c in conditions if c.get("id") is not None} | {DEFAULT_BRANCH}
    return {"true", "false"}


def validate_graph(graph: WorkflowGraph) -> ValidationReport:
    """
    Validate workflow structure.

    Returns topological order of nodes plus non-fatal warnings.

    Raises WorkflowValidationError if validation fails.
    """
    # 1. Empty workflow check
    if len(graph.nodes) == 0:
        raise WorkflowValidationError("Workflow must have at least one node", field="nodes")

    # 2. Duplicate node IDs
    node_ids = [node.id for node in graph.nodes]
    if len(node_ids) != len(set(node_ids)):
        duplicates = sorted({nid for nid in node_ids if node_ids.count(nid) > 1})
        raise WorkflowValidationError(f"Duplicate node IDs found: {duplicates}", field="nodes")

    # 3. Invalid edge references
    node_id_set = set(node_ids)
    for edge in graph.edges:
        for ref in (edge.source, edge.target):
            if ref not in node_id_set:
                raise WorkflowValidationError(
                    f"Edge references non-existent node: {ref}",
                    field="edges"
                )

    # 4. INPUT nodes are seeded from caller input, never fed by edges
    input_ids = {node.id for node in graph.nodes if node.type == NodeType.INPUT}
    if not input_ids:
        raise WorkflowValidationError("Workflow must have at least one INPUT node", field="nodes")
    for edge in graph.edges:
        if edge.target in input_ids:
            raise WorkflowValidationError(
                f"INPUT node cannot have incoming edges: {edge.source} -> {edge.target}",
                field="edges"
            )

    # 5. DAG validation
    order = topological_sort(graph)

    warnings = _unreachable_warnings(graph, input_ids)
    warnings.extend(_stale_handle_warnings(graph))

    return ValidationReport(order=order, warnings=warnings)


def topological_sort(graph: WorkflowGraph) -> List[str]:
    """
    Perform topological sort using Kahn's algorithm.

    Detects self-loops and cycles. Returns node IDs in topological order,
    ties broken by declaration order.
    """
    adjacency: Dict[str, List[str]] = {node.id: [] for node in graph.nodes}
    in_degree: Dict[str, int] = {node.id: 0 for node in graph.nodes}

    for edge in graph.edges:
        if edge.source == edge.target:
            raise WorkflowValidationError(
                f"Self-loop not allowed: {edge.source} -> {edge.target}",
                field="edges"
            )
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    queue = deque([node.id for node in graph.nodes if in_degree[node.id] == 0])
    order = []

    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for neighbor in adjacency[node_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(graph.nodes):
        cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
        raise WorkflowValidationError(
            f"Cycle detected in workflow graph involving nodes: {cyclic}",
            field="edges"
        )

    return order


def _unreachable_warnings(graph: WorkflowGraph, input_ids: Set[str]) -> List[str]:
    """Flag nodes with no path from any INPUT node"""
    adjacency: Dict[str, List[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        adjacency[edge.source].append(edge.target)

    visited: Set[str] = set()
    queue = deque(input_ids)
    while queue:
        node_id = queue.popleft()
        if node_id in visited:
            continue
        visited.add(node_id)
        queue.extend(adjacency[node_id])

    return [
        f"Node '{node.id}' is not reachable from any INPUT node"
        for node in graph.nodes if node.id not in visited
    ]


def _stale_handle_warnings(graph: WorkflowGraph) -> List[str]:
    """Flag LOGIC edges whose handle names no defined branch (never traversed)"""
    warnings = []
    for edge in graph.edges:
        source = graph.get_node(edge.source)
        if source.type != NodeType.LOGIC:
            continue
        if edge.source_handle not in logic_branches(source):
            warnings.append(
                f"Edge {edge.source} -> {edge.target} has handle "
                f"'{edge.source_handle}' matching no branch of LOGIC node; it will never be traversed"
            )
    return warnings


def validate_input(graph: WorkflowGraph, input_data: Dict[str, Any]) -> None:
    """Reject a run whose input lacks a required INPUT field"""
    for node in graph.nodes:
        if node.type != NodeType.INPUT:
            continue
        for field_def in node.config.get("fields") or []:
            name = field_def.get("name")
            if field_def.get("required") and name not in input_data and field_def.get("default") is None:
                raise WorkflowValidationError(
                    f"Missing required input field '{name}' for node '{node.id}'",
                    field=f"input.{name}"
                )
