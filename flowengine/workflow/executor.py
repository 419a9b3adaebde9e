# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Executor

Sequential graph walker over traversed edges.

Each edge is undecided until its source finishes, then becomes active
(traversed) or dead. A LOGIC node activates only the edge whose
sourceHandle equals its selected branch. A node runs once every incoming
edge is decided and at least one is active; a node whose incoming edges
are all dead is skipped and kills its own outgoing edges. Among ready
nodes the first in declaration order runs next.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from flowengine.core.errors import FlowEngineError, sanitize_error_for_user
from flowengine.core.logging import get_logger, log_event
from flowengine.processors.base import ProcessorRegistry
from flowengine.processors.logic import SELECTED_BRANCH
from flowengine.storage.store import FAILED_RUNS, SUSPENDED_RUNS, Store

from .context import ExecutionContext
from .exceptions import NodeExecutionException, SuspensionError, WorkflowValidationError
from .models import (
    ErrorKind, ExecutionResult, ExecutionStatus, NodeOutput, NodeStatus,
    NodeType, WorkflowGraph, WorkflowNode, now_iso,
)
from .validation import logic_branches, parse_graph, validate_graph, validate_input

logger = get_logger(__name__)

ACTIVE = "active"
DEAD = "dead"


def new_execution_id() -> str:
    return f"exec_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


@dataclass
class WalkState:
    """Resumption cursor: decided edges and skipped nodes"""
    edge_states: Dict[int, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge_states": {str(index): state for index, state in self.edge_states.items()},
            "skipped": list(self.skipped),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalkState":
        return cls(
            edge_states={int(index): state for index, state in data.get("edge_states", {}).items()},
            skipped=list(data.get("skipped", [])),
            warnings=list(data.get("warnings", [])),
        )


class WorkflowEngine:
    """
    Runs workflow graphs to a terminal ExecutionResult.

    `execute`, `resume` and `resume_failed` never raise for graph or node
    problems; they return FAILED results. Both resume paths raise
    SuspensionError when there is nothing valid to resume.

    A run that fails at a node keeps a snapshot of everything before that
    node, so `resume_failed` can rerun it from the failing node.
    """

    def __init__(self, registry: ProcessorRegistry, store: Store):
        self.registry = registry
        self.store = store

    async def execute(
        self,
        graph: Union[WorkflowGraph, Dict[str, Any]],
        input_data: Optional[Dict[str, Any]] = None,
        *,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        input_data = dict(input_data or {})
        context = ExecutionContext(
            execution_id=execution_id or new_execution_id(),
            workflow_id=workflow_id,
            organization_id=organization_id,
            user_id=user_id,
            input_data=input_data,
        )
        state = WalkState()

        try:
            if isinstance(graph, dict):
                graph = parse_graph(graph)
            context.global_variables.update(
                {k: v for k, v in graph.global_variables.items() if k not in context.global_variables}
            )
            context.graph = graph
            report = validate_graph(graph)
            validate_input(graph, input_data)
            self._check_processors(graph)
        except WorkflowValidationError as e:
            log_event(logger, "Workflow rejected", "WARNING",
                      execution_id=context.execution_id, workflow_id=workflow_id,
                      error_kind=ErrorKind.VALIDATION.value, error=e.message, field=e.field)
            return self._result(context, state, ExecutionStatus.FAILED,
                                error=e.message, error_kind=ErrorKind.VALIDATION)

        state.warnings.extend(report.warnings)
        log_event(logger, "Workflow started", execution_id=context.execution_id,
                  workflow_id=workflow_id, node_count=len(graph.nodes))

        # INPUT nodes are seeded before the walk
        for node in graph.nodes:
            if node.type != NodeType.INPUT:
                continue
            output = await self._run_node(node, context)
            if output.status != NodeStatus.SUCCESS:
                return await self._fail(graph, context, state, node, output)
            context.record_output(output)
            self._decide_outgoing(graph, node, output, state)

        return await self._walk(graph, context, state, cancel_event)

    async def resume(
        self,
        approval_request_id: str,
        outcome: Dict[str, Any],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Continue a suspended run with the approval outcome as the node's data."""
        snapshot = await self.store.get(SUSPENDED_RUNS, approval_request_id)
        if snapshot is None:
            raise SuspensionError(approval_request_id, "no suspended run found")
        if snapshot.get("state") != "suspended":
            raise SuspensionError(approval_request_id, f"run is {snapshot.get('state')}")

        claimed = await self.store.update(
            SUSPENDED_RUNS, approval_request_id,
            {"state": "resumed", "resumed_at": now_iso()},
            expected={"state": "suspended"},
        )
        if claimed is None:
            raise SuspensionError(approval_request_id, "run was resumed or discarded concurrently")

        graph = WorkflowGraph.model_validate(snapshot["graph"])
        context = ExecutionContext.from_snapshot(snapshot["context"])
        context.graph = graph
        state = WalkState.from_dict(snapshot["walk"])

        node = graph.get_node(snapshot["suspended_node_id"])
        suspended = context.get_output(node.id)
        resolved = NodeOutput.success(
            node,
            outcome,
            started_at=suspended.started_at if suspended else None,
            completed_at=now_iso(),
        )
        context.resolve_suspended(resolved)
        self._decide_outgoing(graph, node, resolved, state)

        log_event(logger, "Workflow resumed", execution_id=context.execution_id,
                  workflow_id=context.workflow_id, approval_request_id=approval_request_id,
                  node_id=node.id)

        return await self._walk(graph, context, state, cancel_event)

    async def resume_failed(
        self,
        execution_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """
        Rerun a failed run from its failing node.

        Outputs recorded before the failure are reused as they are; only the
        failing node and what follows it execute again. A run that fails
        again can be retried again.
        """
        snapshot = await self.store.get(FAILED_RUNS, execution_id)
        if snapshot is None:
            raise SuspensionError(execution_id, "no failed run found")
        if snapshot.get("state") != "failed":
            raise SuspensionError(execution_id, f"run is {snapshot.get('state')}")

        claimed = await self.store.update(
            FAILED_RUNS, execution_id,
            {"state": "retried", "retried_at": now_iso()},
            expected={"state": "failed", "failed_at": snapshot.get("failed_at")},
        )
        if claimed is None:
            raise SuspensionError(execution_id, "run was retried concurrently")

        graph = WorkflowGraph.model_validate(snapshot["graph"])
        context = ExecutionContext.from_snapshot(snapshot["context"])
        context.graph = graph
        state = WalkState.from_dict(snapshot["walk"])

        log_event(logger, "Workflow retried", execution_id=execution_id,
                  workflow_id=context.workflow_id, node_id=snapshot.get("failed_node_id"))

        return await self._walk(graph, context, state, cancel_event)

    async def prune_snapshots(self, older_than: float, now: Optional[datetime] = None) -> int:
        """
        Delete snapshots nobody can resume any more.

        Resumed, discarded and retried snapshots go once they are older than
        `older_than` seconds; failed ones too, since a retry that late is not
        offered. Suspended runs are kept while their approval is open.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=older_than)
        removed = 0
        for collection in (SUSPENDED_RUNS, FAILED_RUNS):
            for record in await self.store.list(collection):
                if record.get("state") == "suspended":
                    continue
                stamp = (record.get("resumed_at") or record.get("discarded_at")
                         or record.get("retried_at") or record.get("failed_at")
                         or record.get("created_at"))
                if stamp and datetime.fromisoformat(stamp) < cutoff:
                    key = record.get("approval_request_id") or record.get("execution_id")
                    if await self.store.delete(collection, key):
                        removed += 1
        if removed:
            log_event(logger, "Run snapshots pruned", removed=removed)
        return removed

    # ------------------------------------------------------------------ walk

    async def _walk(
        self,
        graph: WorkflowGraph,
        context: ExecutionContext,
        state: WalkState,
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutionResult:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                log_event(logger, "Workflow cancelled", "WARNING", execution_id=context.execution_id)
                return self._result(context, state, ExecutionStatus.CANCELLED,
                                    error="Execution cancelled")

            self._propagate_skips(graph, context, state)
            node = self._next_ready(graph, context, state)
            if node is None:
                break

            output = await self._run_node(node, context)

            # Failed outputs stay out of nodeOutputs; the result carries the error
            if output.status == NodeStatus.ERROR:
                return await self._fail(graph, context, state, node, output)

            context.record_output(output)
            if output.status == NodeStatus.SUSPENDED:
                return await self._suspend(graph, context, state, node, output)

            self._decide_outgoing(graph, node, output, state)

        pending = [
            n.id for n in graph.nodes
            if n.id not in context.node_outputs and n.id not in state.skipped
        ]
        if pending:
            # Unreachable after validation; reported rather than raised
            return self._result(context, state, ExecutionStatus.FAILED,
                                error=f"Execution deadlock: nodes never became ready: {pending}",
                                error_kind=ErrorKind.NODE)

        return self._result(context, state, ExecutionStatus.COMPLETED,
                            output=self._assemble_output(graph, context, state))

    async def _run_node(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        processor = self.registry.get_processor(node.type)
        try:
            return await processor.process(node, context)
        except Exception as e:
            # Processors should not raise; treat it as a returned error
            log_event(logger, "Unhandled processor failure", "ERROR",
                      execution_id=context.execution_id, node_id=node.id,
                      error_kind=ErrorKind.NODE.value, error=str(e))
            return NodeOutput.failure(node, sanitize_error_for_user(e), completed_at=now_iso())

    def _check_processors(self, graph: WorkflowGraph) -> None:
        for node in graph.nodes:
            if self.registry.get_processor(node.type) is None:
                raise WorkflowValidationError(
                    f"No processor registered for node type {node.type.value}",
                    field=f"nodes[{node.id}].type"
                )

    def _is_settled(self, node_id: str, context: ExecutionContext, state: WalkState) -> bool:
        return node_id in context.node_outputs or node_id in state.skipped

    def _next_ready(self, graph: WorkflowGraph, context: ExecutionContext, state: WalkState) -> Optional[WorkflowNode]:
        for node in graph.nodes:
            if self._is_settled(node.id, context, state):
                continue
            incoming = graph.incoming(node.id)
            decisions = [state.edge_states.get(i) for i in incoming]
            if all(decisions) and (not incoming or ACTIVE in decisions):
                return node
        return None

    def _propagate_skips(self, graph: WorkflowGraph, context: ExecutionContext, state: WalkState) -> None:
        changed = True
        while changed:
            changed = False
            for node in graph.nodes:
                if self._is_settled(node.id, context, state):
                    continue
                incoming = graph.incoming(node.id)
                if incoming and all(state.edge_states.get(i) == DEAD for i in incoming):
                    state.skipped.append(node.id)
                    for i in graph.outgoing(node.id):
                        state.edge_states[i] = DEAD
                    changed = True

    def _decide_outgoing(self, graph: WorkflowGraph, node: WorkflowNode, output: NodeOutput, state: WalkState) -> None:
        if node.type == NodeType.LOGIC:
            selected = output.data.get(SELECTED_BRANCH)
            branches = logic_branches(node)
            for i in graph.outgoing(node.id):
                handle = graph.edges[i].source_handle
                state.edge_states[i] = ACTIVE if handle == selected and handle in branches else DEAD
            return

        for i in graph.outgoing(node.id):
            state.edge_states[i] = ACTIVE

    def _assemble_output(self, graph: WorkflowGraph, context: ExecutionContext, state: WalkState) -> Dict[str, Any]:
        executed = [
            context.node_outputs[node.id] for node in graph.nodes
            if node.type == NodeType.OUTPUT and context.is_completed(node.id)
        ]
        if not executed:
            state.warnings.append("No OUTPUT node executed; output is empty")
            return {}
        if len(executed) == 1:
            return dict(executed[0].data)
        return {out.node_id: dict(out.data) for out in executed}

    # -------------------------------------------------------- terminal states

    async def _fail(
        self,
        graph: WorkflowGraph,
        context: ExecutionContext,
        state: WalkState,
        node: WorkflowNode,
        output: NodeOutput,
    ) -> ExecutionResult:
        error = NodeExecutionException(node.id, node.type.value, output.error or "unknown error")
        log_event(logger, "Workflow failed", "ERROR",
                  execution_id=context.execution_id, workflow_id=context.workflow_id,
                  node_id=node.id, error_kind=ErrorKind.NODE.value, error=output.error)

        # The failing output is not part of the snapshot; a retry reruns the node
        snapshot = {
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "failed_node_id": node.id,
            "error": output.error,
            "graph": graph.model_dump(by_alias=True, mode="json"),
            "context": context.to_snapshot(),
            "walk": state.to_dict(),
            "state": "failed",
            "failed_at": now_iso(),
        }
        try:
            await self.store.put(FAILED_RUNS, context.execution_id, snapshot)
        except FlowEngineError as e:
            log_event(logger, "Failure snapshot not saved", "WARNING",
                      execution_id=context.execution_id, node_id=node.id,
                      error_kind=ErrorKind.INFRASTRUCTURE.value, error=e.message)

        return self._result(context, state, ExecutionStatus.FAILED,
                            error=str(error), failed_node_id=node.id, error_kind=ErrorKind.NODE)

    async def _suspend(
        self,
        graph: WorkflowGraph,
        context: ExecutionContext,
        state: WalkState,
        node: WorkflowNode,
        output: NodeOutput,
    ) -> ExecutionResult:
        approval_request_id = output.approval_request_id
        snapshot = {
            "approval_request_id": approval_request_id,
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "suspended_node_id": node.id,
            "graph": graph.model_dump(by_alias=True, mode="json"),
            "context": context.to_snapshot(),
            "walk": state.to_dict(),
            "state": "suspended",
            "created_at": now_iso(),
        }

        try:
            await self.store.put(SUSPENDED_RUNS, approval_request_id, snapshot)
        except FlowEngineError as e:
            log_event(logger, "Suspension snapshot failed", "ERROR",
                      execution_id=context.execution_id, node_id=node.id,
                      error_kind=ErrorKind.INFRASTRUCTURE.value, error=e.message)
            return self._result(context, state, ExecutionStatus.FAILED,
                                error=f"Could not persist suspended run: {e.message}",
                                failed_node_id=node.id, error_kind=ErrorKind.INFRASTRUCTURE)

        # Whatever can resume the run is opened only once the run is saved
        try:
            await self.registry.get_processor(node.type).on_suspended(node, context, output)
        except Exception as e:
            await self.store.update(
                SUSPENDED_RUNS, approval_request_id,
                {"state": "discarded", "discarded_at": now_iso(), "discard_reason": str(e)},
                expected={"state": "suspended"},
            )
            log_event(logger, "Suspension could not be opened", "ERROR",
                      execution_id=context.execution_id, node_id=node.id,
                      error_kind=ErrorKind.NODE.value, error=str(e))
            return self._result(context, state, ExecutionStatus.FAILED,
                                error=f"Node '{node.id}' ({node.type.value}) failed: {sanitize_error_for_user(e)}",
                                failed_node_id=node.id, error_kind=ErrorKind.NODE)

        log_event(logger, "Workflow suspended", execution_id=context.execution_id,
                  workflow_id=context.workflow_id, node_id=node.id,
                  approval_request_id=approval_request_id)
        return self._result(context, state, ExecutionStatus.SUSPENDED,
                            approval_request_id=approval_request_id)

    def _result(self, context: ExecutionContext, state: WalkState, status: ExecutionStatus, **fields) -> ExecutionResult:
        context.finalize()
        started = datetime.fromisoformat(context.started_at)
        completed = datetime.fromisoformat(context.completed_at)
        if status == ExecutionStatus.COMPLETED:
            log_event(logger, "Workflow completed", execution_id=context.execution_id,
                      workflow_id=context.workflow_id, node_count=len(context.node_outputs))
        return ExecutionResult(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            status=status,
            node_outputs=dict(context.node_outputs),
            warnings=list(state.warnings),
            token_usage=context.token_usage(),
            started_at=context.started_at,
            completed_at=context.completed_at,
            duration_ms=int((completed - started).total_seconds() * 1000),
            **fields,
        )
