# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Node Processor contract and registry.

A processor turns (node, context) into a NodeOutput. It never raises:
`process()` folds any exception from `run()` into an error output so the
engine has a single failure shape to handle.
"""

import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from flowengine.core.errors import sanitize_error_for_user
from flowengine.core.logging import get_logger, log_event
from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode, now_iso
from flowengine.workflow.variables import build_scope

logger = get_logger(__name__)


class NodeProcessor(ABC):
    """Executable behavior bound to one node type"""

    node_type: NodeType

    async def process(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        started_at = now_iso()
        started = time.monotonic()

        try:
            output = await self.run(node, context)
        except Exception as e:
            log_event(
                logger, "Processor raised", "ERROR",
                execution_id=context.execution_id,
                node_id=node.id,
                node_type=node.type.value,
                error_kind="node",
                error=str(e),
            )
            output = NodeOutput.failure(node, sanitize_error_for_user(e))

        output.started_at = output.started_at or started_at
        output.completed_at = output.completed_at or now_iso()
        output.duration_ms = int((time.monotonic() - started) * 1000)
        return output

    @abstractmethod
    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        ...

    async def on_suspended(self, node: WorkflowNode, context: ExecutionContext, output: NodeOutput) -> None:
        """
        Called by the engine after a SUSPENDED output's run is persisted.

        Anything that can lead to a resume (an approval request, say) is
        opened here, never in `run()`, so a resume always finds its run.
        Raising fails the run.
        """

    def scope(self, context: ExecutionContext) -> Dict:
        """Names visible to templates and expressions for this run"""
        return build_scope(context, context.graph)


class ProcessorRegistry:
    """Lookup table from node type to processor"""

    def __init__(self):
        self._processors: Dict[NodeType, NodeProcessor] = {}

    def register(self, processor: NodeProcessor) -> None:
        self._processors[processor.node_type] = processor

    def get_processor(self, node_type: NodeType) -> Optional[NodeProcessor]:
        return self._processors.get(node_type)

    def supported_types(self) -> List[NodeType]:
        return list(self._processors.keys())
