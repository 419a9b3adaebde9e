# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
APPROVAL node: opens an approval request and suspends the run.

The request is opened only after the engine has saved the suspended run.
The node completes later, on resume, with the approval outcome as data.
"""

from typing import TYPE_CHECKING, Tuple

from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode
from flowengine.workflow.variables import render_template

from .base import NodeProcessor

if TYPE_CHECKING:
    from flowengine.services.approval_service import ApprovalService


class ApprovalProcessor(NodeProcessor):
    """
    Config:
        title, description: templates
        approvers: [{type: user|role, id, name}] (required)
        requiredApprovals: default 1
        policy: threshold | unanimous
        timeoutSeconds: default from config
        timeoutAction: APPROVE | REJECT | ESCALATE (default REJECT)
        customFields: [{name, label, type}]
    """

    node_type = NodeType.APPROVAL

    def __init__(self, approvals: "ApprovalService"):
        self.approvals = approvals

    def _rendered(self, node: WorkflowNode, context: ExecutionContext) -> Tuple[str, str]:
        scope = self.scope(context)
        title = render_template(node.config.get("title") or f"Approval required: {node.label}", scope)
        return title, render_template(node.config.get("description", ""), scope)

    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        cfg = node.config
        if not cfg.get("approvers"):
            return NodeOutput.failure(node, "APPROVAL node requires at least one approver")
        if int(cfg.get("requiredApprovals", 1)) < 1:
            return NodeOutput.failure(node, "requiredApprovals must be at least 1")

        # The request itself is opened in on_suspended, after the run is saved
        title, _ = self._rendered(node, context)
        request_id = self.approvals.new_request_id()
        return NodeOutput.suspended(
            node,
            request_id,
            data={"approvalRequestId": request_id, "title": title},
        )

    async def on_suspended(self, node: WorkflowNode, context: ExecutionContext, output: NodeOutput) -> None:
        cfg = node.config
        title, description = self._rendered(node, context)
        await self.approvals.create_request(
            request_id=output.approval_request_id,
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            organization_id=context.organization_id,
            node_id=node.id,
            title=title,
            description=description,
            approvers=cfg.get("approvers") or [],
            required_approvals=int(cfg.get("requiredApprovals", 1)),
            policy=cfg.get("policy", "threshold"),
            timeout_seconds=cfg.get("timeoutSeconds"),
            timeout_action=cfg.get("timeoutAction", "REJECT"),
            custom_fields=cfg.get("customFields") or [],
            input_snapshot={
                node_id: out.data for node_id, out in context.successful_outputs().items()
            },
        )
