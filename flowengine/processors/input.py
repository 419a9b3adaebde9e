# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""INPUT node: copies caller-supplied fields into the node's data."""

from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode

from .base import NodeProcessor


class InputProcessor(NodeProcessor):
    """
    Config:
        fields: [{name, default?, required?}]

    With no declared fields the whole caller input is copied.
    """

    node_type = NodeType.INPUT

    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        fields = node.config.get("fields")
        if not fields:
            return NodeOutput.success(node, dict(context.input))

        data = {}
        for field in fields:
            name = field.get("name")
            if not name:
                continue
            if name in context.input:
                data[name] = context.input[name]
            elif field.get("default") is not None:
                data[name] = field["default"]
            elif field.get("required"):
                return NodeOutput.failure(node, f"Missing required input field '{name}'")

        return NodeOutput.success(node, data)
