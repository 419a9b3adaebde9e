# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for the graph walker (WorkflowEngine.execute)
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

from flowengine.clients.sandbox import SandboxResult
from flowengine.models import Decision
from flowengine.processors.base import NodeProcessor
from flowengine.storage.store import FAILED_RUNS, SUSPENDED_RUNS
from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.exceptions import ContextWriteError, SuspensionError
from flowengine.workflow.models import (
    ErrorKind, ExecutionStatus, NodeOutput, NodeType, WorkflowNode,
)


async def slow_chat(provider, request, api_key, base_url=None):
    await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_three_node_echo(engine, echo_workflow):
    """INPUT -> PROCESS -> OUTPUT returns the PROCESS result derived from input"""
    result = await engine.execute(echo_workflow, {"text": "hi"}, workflow_id="echo")

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output == {"answer": "echo: hi"}
    assert set(result.node_outputs) == {"in", "ask", "out"}
    assert result.token_usage.total_tokens == 5
    assert result.execution_id.startswith("exec_")


@pytest.mark.asyncio
async def test_provider_timeout_fails_run(engine, echo_workflow, ai_client):
    """Timeout on PROCESS fails the run and keeps only the INPUT output"""
    ai_client.chat = AsyncMock(side_effect=slow_chat)
    echo_workflow["nodes"][1]["config"]["timeoutSeconds"] = 0.05

    result = await engine.execute(echo_workflow, {"text": "hi"})

    assert result.status == ExecutionStatus.FAILED
    assert result.failed_node_id == "ask"
    assert result.error_kind == ErrorKind.NODE
    assert "ask" in result.error
    assert "timed out" in result.error
    assert list(result.node_outputs) == ["in"]


@pytest.mark.asyncio
async def test_logic_positive_branch(engine, branching_workflow):
    result = await engine.execute(branching_workflow, {"x": 5})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output["content"] == "positive"
    assert "neg" not in result.node_outputs


@pytest.mark.asyncio
async def test_logic_non_positive_branch(engine, branching_workflow):
    result = await engine.execute(branching_workflow, {"x": -1})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output["content"] == "non-positive"
    assert "pos" not in result.node_outputs


@pytest.mark.asyncio
async def test_join_after_branch_runs_once(engine, branching_workflow):
    """A node fed by both branches runs when the selected branch arrives"""
    for node in branching_workflow["nodes"][2:]:
        node["type"] = "CODE"
        node["config"] = {"code": "output = 1"}
    branching_workflow["nodes"].append({"id": "join", "type": "OUTPUT", "config": {"template": "joined"}})
    branching_workflow["edges"] += [
        {"source": "pos", "target": "join"},
        {"source": "neg", "target": "join"},
    ]

    result = await engine.execute(branching_workflow, {"x": 5})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output["content"] == "joined"
    assert "pos" in result.node_outputs
    assert "neg" not in result.node_outputs


@pytest.mark.asyncio
async def test_diamond_executes_every_node(engine, sandbox):
    graph = {
        "nodes": [
            {"id": "a", "type": "INPUT"},
            {"id": "b", "type": "CODE", "config": {"code": "output = 1"}},
            {"id": "c", "type": "CODE", "config": {"code": "output = 2"}},
            {"id": "d", "type": "OUTPUT", "config": {"format": "json"}},
        ],
        "edges": [
            {"source": "a", "target": "b"},
            {"source": "a", "target": "c"},
            {"source": "b", "target": "d"},
            {"source": "c", "target": "d"},
        ],
    }

    result = await engine.execute(graph, {})

    assert result.status == ExecutionStatus.COMPLETED
    assert list(result.node_outputs) == ["a", "b", "c", "d"]
    assert sandbox.run.await_count == 2


@pytest.mark.asyncio
async def test_skipped_branch_propagates_downstream(engine, branching_workflow):
    """Nodes only reachable through a dead edge never execute"""
    branching_workflow["nodes"][3]["type"] = "CODE"
    branching_workflow["nodes"][3]["config"] = {"code": "output = 1"}
    branching_workflow["nodes"].append({"id": "after_neg", "type": "OUTPUT"})
    branching_workflow["edges"].append({"source": "neg", "target": "after_neg"})

    result = await engine.execute(branching_workflow, {"x": 3})

    assert result.status == ExecutionStatus.COMPLETED
    assert "neg" not in result.node_outputs
    assert "after_neg" not in result.node_outputs
    assert result.output["content"] == "positive"


@pytest.mark.asyncio
async def test_conditions_first_match_wins(engine):
    graph = {
        "nodes": [
            {"id": "in", "type": "INPUT"},
            {"id": "route", "type": "LOGIC", "config": {"conditions": [
                {"id": "big", "expression": "input.n > 100"},
                {"id": "mid", "expression": "input.n > 10"},
            ]}},
            {"id": "big_out", "type": "OUTPUT", "config": {"template": "big"}},
            {"id": "mid_out", "type": "OUTPUT", "config": {"template": "mid"}},
            {"id": "small_out", "type": "OUTPUT", "config": {"template": "small"}},
        ],
        "edges": [
            {"source": "in", "target": "route"},
            {"source": "route", "target": "big_out", "sourceHandle": "big"},
            {"source": "route", "target": "mid_out", "sourceHandle": "mid"},
            {"source": "route", "target": "small_out", "sourceHandle": "default"},
        ],
    }

    assert (await engine.execute(graph, {"n": 500})).output["content"] == "big"
    assert (await engine.execute(graph, {"n": 50})).output["content"] == "mid"
    assert (await engine.execute(graph, {"n": 5})).output["content"] == "small"


@pytest.mark.asyncio
async def test_stale_handle_edge_is_never_traversed(engine, branching_workflow):
    branching_workflow["edges"][1]["sourceHandle"] = "removed-branch"

    result = await engine.execute(branching_workflow, {"x": 5})

    assert result.status == ExecutionStatus.COMPLETED
    assert "pos" not in result.node_outputs
    assert result.output == {}
    assert any("removed-branch" in warning for warning in result.warnings)


@pytest.mark.asyncio
async def test_multiple_outputs_keyed_by_node_id(engine):
    graph = {
        "nodes": [
            {"id": "in", "type": "INPUT"},
            {"id": "first", "type": "OUTPUT", "config": {"template": "one"}},
            {"id": "second", "type": "OUTPUT", "config": {"template": "two"}},
        ],
        "edges": [
            {"source": "in", "target": "first"},
            {"source": "in", "target": "second"},
        ],
    }

    result = await engine.execute(graph, {})

    assert result.output == {
        "first": {"content": "one", "format": "text"},
        "second": {"content": "two", "format": "text"},
    }


@pytest.mark.asyncio
async def test_no_output_node_warns(engine):
    result = await engine.execute({"nodes": [{"id": "in", "type": "INPUT"}]}, {"a": 1})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output == {}
    assert result.warnings


@pytest.mark.asyncio
async def test_cancel_event_stops_between_nodes(engine, echo_workflow, ai_client):
    cancel = asyncio.Event()
    cancel.set()

    result = await engine.execute(echo_workflow, {"text": "hi"}, cancel_event=cancel)

    assert result.status == ExecutionStatus.CANCELLED
    assert list(result.node_outputs) == ["in"]
    ai_client.chat.assert_not_awaited()


class TestValidationFailures:
    """Invalid graphs fail before any node runs"""

    @pytest.mark.asyncio
    async def test_cycle(self, engine):
        graph = {
            "nodes": [
                {"id": "in", "type": "INPUT"},
                {"id": "a", "type": "OUTPUT"},
                {"id": "b", "type": "OUTPUT"},
            ],
            "edges": [
                {"source": "in", "target": "a"},
                {"source": "a", "target": "b"},
                {"source": "b", "target": "a"},
            ],
        }

        result = await engine.execute(graph, {})

        assert result.status == ExecutionStatus.FAILED
        assert result.error_kind == ErrorKind.VALIDATION
        assert "Cycle" in result.error
        assert result.node_outputs == {}

    @pytest.mark.asyncio
    async def test_missing_required_input(self, engine, echo_workflow, ai_client):
        result = await engine.execute(echo_workflow, {})

        assert result.status == ExecutionStatus.FAILED
        assert result.error_kind == ErrorKind.VALIDATION
        assert "text" in result.error
        ai_client.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_legacy_type(self, engine):
        graph = {"nodes": [{"id": "in", "type": "INPUT"}, {"id": "loop", "type": "LOOP"}]}

        result = await engine.execute(graph, {})

        assert result.status == ExecutionStatus.FAILED
        assert result.error_kind == ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_legacy_type_is_normalized(self, engine):
        graph = {
            "nodes": [
                {"id": "in", "type": "data"},
                {"id": "out", "type": "OUTPUT", "config": {"template": "ok"}},
            ],
            "edges": [{"source": "in", "target": "out"}],
        }

        result = await engine.execute(graph, {})

        assert result.status == ExecutionStatus.COMPLETED
        assert result.node_outputs["in"].node_type == NodeType.INPUT


class ExplodingProcessor(NodeProcessor):
    node_type = NodeType.CODE

    async def run(self, node, context):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_raising_processor_is_a_node_failure(engine, registry):
    registry.register(ExplodingProcessor())
    graph = {
        "nodes": [{"id": "in", "type": "INPUT"}, {"id": "code", "type": "CODE", "config": {"code": "x"}}],
        "edges": [{"source": "in", "target": "code"}],
    }

    result = await engine.execute(graph, {})

    assert result.status == ExecutionStatus.FAILED
    assert result.failed_node_id == "code"
    assert "boom" in result.error


def test_context_output_is_write_once():
    context = ExecutionContext(execution_id="exec_1")
    node = WorkflowNode(id="n", type="OUTPUT")
    context.record_output(NodeOutput.success(node, {"a": 1}))

    with pytest.raises(ContextWriteError):
        context.record_output(NodeOutput.success(node, {"a": 2}))
    assert context.get_output("n").data == {"a": 1}


@pytest.mark.asyncio
async def test_operator_text_inside_a_literal_is_compared_verbatim(engine, branching_workflow):
    branching_workflow["nodes"][1]["config"]["expression"] = 'input.s == "a && b"'

    result = await engine.execute(branching_workflow, {"s": "a && b"})

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output["content"] == "positive"


def drafting_workflow():
    """INPUT -> PROCESS(draft) -> CODE -> OUTPUT"""
    return {
        "nodes": [
            {"id": "in", "type": "INPUT"},
            {"id": "draft", "type": "PROCESS", "config": {"aiConfigId": "default", "prompt": "{{input.topic}}"}},
            {"id": "code", "type": "CODE", "config": {"code": "return draft"}},
            {"id": "out", "type": "OUTPUT", "config": {"template": "{{draft.result}}"}},
        ],
        "edges": [
            {"source": "in", "target": "draft"},
            {"source": "draft", "target": "code"},
            {"source": "code", "target": "out"},
        ],
    }


class TestRetryFailed:
    """resume_failed reruns a failed run from its failing node"""

    @pytest.mark.asyncio
    async def test_retry_reuses_outputs_before_the_failure(self, engine, store, ai_client, sandbox):
        sandbox.run = AsyncMock(side_effect=[
            SandboxResult(success=False, error="sandbox unavailable"),
            SandboxResult(success=True, output={"ok": True}),
        ])
        failed = await engine.execute(drafting_workflow(), {"topic": "cats"}, workflow_id="drafts")

        assert failed.status == ExecutionStatus.FAILED
        assert failed.failed_node_id == "code"
        snapshot = await store.get(FAILED_RUNS, failed.execution_id)
        assert snapshot["state"] == "failed"
        assert "code" not in snapshot["context"]["node_outputs"]

        retried = await engine.resume_failed(failed.execution_id)

        assert retried.status == ExecutionStatus.COMPLETED
        assert retried.execution_id == failed.execution_id
        assert retried.output["content"] == "echo: cats"
        assert retried.node_outputs["draft"] == failed.node_outputs["draft"]
        assert retried.node_outputs["code"].data["output"] == {"ok": True}
        assert ai_client.chat.await_count == 1
        assert sandbox.run.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_is_single_use(self, engine, sandbox):
        sandbox.run = AsyncMock(side_effect=[
            SandboxResult(success=False, error="sandbox unavailable"),
            SandboxResult(success=True, output={}),
        ])
        failed = await engine.execute(drafting_workflow(), {"topic": "cats"})
        await engine.resume_failed(failed.execution_id)

        with pytest.raises(SuspensionError):
            await engine.resume_failed(failed.execution_id)

    @pytest.mark.asyncio
    async def test_run_that_fails_again_can_be_retried_again(self, engine, sandbox):
        sandbox.run = AsyncMock(side_effect=[
            SandboxResult(success=False, error="first"),
            SandboxResult(success=False, error="second"),
            SandboxResult(success=True, output={}),
        ])
        failed = await engine.execute(drafting_workflow(), {"topic": "cats"})

        again = await engine.resume_failed(failed.execution_id)
        assert again.status == ExecutionStatus.FAILED
        assert "second" in again.error

        finally_done = await engine.resume_failed(failed.execution_id)
        assert finally_done.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_run(self, engine):
        with pytest.raises(SuspensionError):
            await engine.resume_failed("exec_missing")


class TestSnapshotPruning:

    @pytest.mark.asyncio
    async def test_finished_snapshots_are_pruned_and_open_ones_kept(
        self, engine, approvals, store, sandbox, approval_workflow
    ):
        waiting = await engine.execute(approval_workflow, {"version": "1"})
        decided = await engine.execute(approval_workflow, {"version": "2"})
        request = await approvals.submit_decision(decided.approval_request_id, "alice", Decision.APPROVE)
        await engine.resume(request.id, approvals.build_outcome(request))
        sandbox.run = AsyncMock(return_value=SandboxResult(success=False, error="down"))
        failed = await engine.execute(drafting_workflow(), {"topic": "cats"})

        later = datetime.now(timezone.utc) + timedelta(days=2)
        removed = await engine.prune_snapshots(older_than=3600, now=later)

        assert removed == 2
        assert await store.get(SUSPENDED_RUNS, waiting.approval_request_id) is not None
        assert await store.get(SUSPENDED_RUNS, decided.approval_request_id) is None
        assert await store.get(FAILED_RUNS, failed.execution_id) is None

    @pytest.mark.asyncio
    async def test_recent_snapshots_survive(self, engine, sandbox):
        sandbox.run = AsyncMock(return_value=SandboxResult(success=False, error="down"))
        await engine.execute(drafting_workflow(), {"topic": "cats"})

        assert await engine.prune_snapshots(older_than=3600) == 0
