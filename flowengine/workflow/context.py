# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Execution Context

Per-run state: node outputs, global variables and the provider
credential cache. One context per run, never shared.
"""

from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

from .models import NodeOutput, NodeStatus, TokenUsage, WorkflowGraph
from .exceptions import ContextWriteError


class ExecutionContext:
    """
    Execution context for a workflow run.

    Tracks:
    - Node outputs (write-once per node)
    - Outputs superseded by a resume (kept for audit)
    - Global variables visible to every node
    - Resolved AI configs (credentials are never serialized)
    """

    def __init__(
        self,
        execution_id: str,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        global_variables: Optional[Dict[str, Any]] = None,
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.organization_id = organization_id
        self.user_id = user_id
        self.input: Dict[str, Any] = dict(input_data or {})
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.completed_at: Optional[str] = None

        self.node_outputs: Dict[str, NodeOutput] = {}
        self.superseded_outputs: List[NodeOutput] = []
        self.global_variables: Dict[str, Any] = dict(global_variables or {})
        self.global_variables.setdefault("triggerInput", self.input)
        self.ai_configs: Dict[str, Any] = {}
        self.graph: Optional[WorkflowGraph] = None

    def record_output(self, output: NodeOutput) -> None:
        """Store a node's output. Each node id may be written once."""
        if output.node_id in self.node_outputs:
            raise ContextWriteError(output.node_id)
        self.node_outputs[output.node_id] = output

    def resolve_suspended(self, output: NodeOutput) -> None:
        """Replace a suspended output with its resolved successor."""
        current = self.node_outputs.get(output.node_id)
        if current is None or current.status != NodeStatus.SUSPENDED:
            raise ContextWriteError(output.node_id)
        self.superseded_outputs.append(current)
        self.node_outputs[output.node_id] = output

    def is_completed(self, node_id: str) -> bool:
        output = self.node_outputs.get(node_id)
        return output is not None and output.status == NodeStatus.SUCCESS

    def get_output(self, node_id: str) -> Optional[NodeOutput]:
        return self.node_outputs.get(node_id)

    def successful_outputs(self) -> Dict[str, NodeOutput]:
        return {
            node_id: output for node_id, output in self.node_outputs.items()
            if output.status == NodeStatus.SUCCESS
        }

    def token_usage(self) -> TokenUsage:
        total = TokenUsage()
        for output in self.node_outputs.values():
            total = total.add(output.token_usage)
        return total

    def finalize(self) -> None:
        """Mark execution as complete"""
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialize everything needed to resume. ai_configs is excluded."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "input": self.input,
            "started_at": self.started_at,
            "global_variables": self.global_variables,
            "node_outputs": {
                node_id: output.model_dump(by_alias=True, mode="json")
                for node_id, output in self.node_outputs.items()
            },
            "superseded_outputs": [
                output.model_dump(by_alias=True, mode="json")
                for output in self.superseded_outputs
            ],
        }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "ExecutionContext":
        context = cls(
            execution_id=snapshot["execution_id"],
            workflow_id=snapshot.get("workflow_id"),
            organization_id=snapshot.get("organization_id"),
            user_id=snapshot.get("user_id"),
            input_data=snapshot.get("input"),
            global_variables=snapshot.get("global_variables"),
        )
        context.started_at = snapshot.get("started_at", context.started_at)
        context.node_outputs = {
            node_id: NodeOutput.model_validate(data)
            for node_id, data in snapshot.get("node_outputs", {}).items()
        }
        context.superseded_outputs = [
            NodeOutput.model_validate(data)
            for data in snapshot.get("superseded_outputs", [])
        ]
        return context
