# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for workflow graph validation
"""

import pytest

from flowengine.workflow.exceptions import WorkflowValidationError
from flowengine.workflow.models import NodeType, WorkflowEdge, WorkflowGraph, WorkflowNode
from flowengine.workflow.validation import (
    logic_branches, parse_graph, topological_sort, validate_graph, validate_input,
)


def graph(nodes, edges=()):
    return WorkflowGraph(
        nodes=[WorkflowNode(id=node_id, type=node_type) for node_id, node_type in nodes],
        edges=[WorkflowEdge(source=s, target=t) for s, t in edges],
    )


def test_empty_workflow():
    """Empty workflow should raise ValidationError"""
    with pytest.raises(WorkflowValidationError, match="at least one node"):
        validate_graph(WorkflowGraph(nodes=[]))


def test_duplicate_node_ids():
    with pytest.raises(WorkflowValidationError, match="Duplicate node IDs"):
        validate_graph(graph([("in", "INPUT"), ("in", "OUTPUT")]))


def test_invalid_edge_reference():
    with pytest.raises(WorkflowValidationError, match="non-existent node"):
        validate_graph(graph([("in", "INPUT")], [("in", "ghost")]))


def test_requires_input_node():
    with pytest.raises(WorkflowValidationError, match="INPUT"):
        validate_graph(graph([("out", "OUTPUT")]))


def test_edge_into_input_node():
    with pytest.raises(WorkflowValidationError, match="incoming edges"):
        validate_graph(graph([("in", "INPUT"), ("code", "CODE")], [("code", "in")]))


def test_self_loop():
    with pytest.raises(WorkflowValidationError, match="Self-loop"):
        validate_graph(graph([("in", "INPUT"), ("a", "CODE")], [("in", "a"), ("a", "a")]))


def test_topological_order_follows_declaration_on_ties():
    g = graph(
        [("in", "INPUT"), ("b", "CODE"), ("a", "CODE"), ("out", "OUTPUT")],
        [("in", "b"), ("in", "a"), ("a", "out"), ("b", "out")],
    )

    assert topological_sort(g) == ["in", "b", "a", "out"]


def test_unreachable_node_is_a_warning():
    report = validate_graph(graph([("in", "INPUT"), ("orphan", "OUTPUT")]))

    assert any("orphan" in warning for warning in report.warnings)


def test_parse_graph_reports_bad_type():
    with pytest.raises(WorkflowValidationError, match="Invalid workflow graph"):
        parse_graph({"nodes": [{"id": "x", "type": "SWITCH"}]})


def test_parse_graph_accepts_camel_case_handles():
    parsed = parse_graph({
        "nodes": [{"id": "in", "type": "input"}, {"id": "c", "type": "condition"}],
        "edges": [{"source": "in", "target": "c", "sourceHandle": "true"}],
    })

    assert parsed.nodes[1].type == NodeType.LOGIC
    assert parsed.edges[0].source_handle == "true"


def test_logic_branches():
    plain = WorkflowNode(id="l", type="LOGIC", config={"expression": "x"})
    routed = WorkflowNode(id="r", type="LOGIC", config={"conditions": [{"id": "a", "expression": "x"}]})

    assert logic_branches(plain) == {"true", "false"}
    assert logic_branches(routed) == {"a", "default"}


def test_validate_input_required_field():
    g = WorkflowGraph(nodes=[WorkflowNode(id="in", type="INPUT", config={"fields": [
        {"name": "q", "required": True},
        {"name": "lang", "required": True, "default": "en"},
    ]})])

    validate_input(g, {"q": "hello"})
    with pytest.raises(WorkflowValidationError, match="'q'"):
        validate_input(g, {})
