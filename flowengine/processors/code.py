# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""CODE node: runs user code in the sandbox with templated inputs."""

import asyncio

from flowengine.clients.sandbox import CodeSandbox
from flowengine.core.config import Config
from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode
from flowengine.workflow.variables import resolve_value

from .base import NodeProcessor

# Slack on top of the sandbox's own limit before the engine gives up
SANDBOX_GRACE_SECONDS = 5


class CodeProcessor(NodeProcessor):
    """
    Config:
        code: source text (required)
        language: defaults to python
        inputs: mapping of templates; defaults to every upstream output
        timeoutMs: clamped to the configured window
    """

    node_type = NodeType.CODE

    def __init__(self, sandbox: CodeSandbox, config: Config):
        self.sandbox = sandbox
        self.config = config

    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        cfg = node.config
        code = cfg.get("code")
        if not code:
            return NodeOutput.failure(node, "CODE node has no code")

        scope = self.scope(context)
        if cfg.get("inputs") is not None:
            inputs = resolve_value(cfg["inputs"], scope)
        else:
            inputs = {"input": context.input}
            inputs.update({node_id: out.data for node_id, out in context.successful_outputs().items()})

        timeout_ms = self.config.clamp_code_timeout(cfg.get("timeoutMs"))

        try:
            result = await asyncio.wait_for(
                self.sandbox.run(code, cfg.get("language", "python"), inputs, timeout_ms),
                timeout=timeout_ms / 1000 + SANDBOX_GRACE_SECONDS
            )
        except asyncio.TimeoutError:
            return NodeOutput.failure(node, f"Code execution timed out after {timeout_ms}ms")

        if not result.success:
            return NodeOutput.failure(
                node,
                result.error or "Code execution failed",
                data={"logs": result.logs},
            )

        return NodeOutput.success(node, {"output": result.output, "logs": result.logs})
