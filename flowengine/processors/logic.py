# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
LOGIC node: picks exactly one outgoing branch.

Either a single `expression` (branches "true"/"false") or an ordered
`conditions` list [{id, expression}] where the first match wins and
"default" is taken when nothing matches.
"""

from flowengine.condition_evaluator import evaluate_condition
from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode
from flowengine.workflow.validation import DEFAULT_BRANCH, logic_branches

from .base import NodeProcessor

SELECTED_BRANCH = "selectedBranch"


class LogicProcessor(NodeProcessor):

    node_type = NodeType.LOGIC

    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        cfg = node.config
        scope = self.scope(context)
        branches = sorted(logic_branches(node))

        try:
            conditions = cfg.get("conditions")
            if conditions:
                selected = DEFAULT_BRANCH
                for condition in conditions:
                    if evaluate_condition(condition.get("expression", ""), scope):
                        selected = str(condition.get("id"))
                        break
                return NodeOutput.success(node, {SELECTED_BRANCH: selected, "branches": branches})

            expression = cfg.get("expression") or cfg.get("condition")
            if not expression:
                return NodeOutput.failure(node, "LOGIC node needs 'expression' or 'conditions'")
            result = evaluate_condition(expression, scope)
        except (ValueError, SyntaxError) as e:
            return NodeOutput.failure(node, str(e))

        return NodeOutput.success(node, {
            SELECTED_BRANCH: "true" if result else "false",
            "result": result,
            "branches": branches,
        })
