# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""OUTPUT node: final formatting of upstream data."""

import json
from typing import Any, Dict

from flowengine.workflow.context import ExecutionContext
from flowengine.workflow.models import NodeOutput, NodeType, WorkflowNode
from flowengine.workflow.variables import render_template, resolve_value

from .base import NodeProcessor

FORMATS = ("text", "json", "markdown")


def _primary_value(data: Dict[str, Any]) -> Any:
    for key in ("result", "content", "output"):
        if key in data:
            return data[key]
    return data


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2)


class OutputProcessor(NodeProcessor):
    """
    Config:
        template: text with {{ref.path}} tokens
        fields: {name: template} for structured output
        format: text | json | markdown

    With neither template nor fields, every successful upstream output is
    rendered in the requested format.
    """

    node_type = NodeType.OUTPUT

    async def run(self, node: WorkflowNode, context: ExecutionContext) -> NodeOutput:
        cfg = node.config
        fmt = cfg.get("format", "text")
        if fmt not in FORMATS:
            return NodeOutput.failure(node, f"Unsupported output format: {fmt}")

        scope = self.scope(context)

        if cfg.get("fields"):
            return NodeOutput.success(node, resolve_value(cfg["fields"], scope))

        if cfg.get("template") is not None:
            return NodeOutput.success(node, {"content": render_template(cfg["template"], scope), "format": fmt})

        return NodeOutput.success(node, {"content": self._format_upstream(context, fmt), "format": fmt})

    def _format_upstream(self, context: ExecutionContext, fmt: str) -> str:
        outputs = [
            out for out in context.successful_outputs().values()
            if out.node_type != NodeType.OUTPUT
        ]

        if fmt == "json":
            return json.dumps(
                {out.node_name or out.node_id: _primary_value(out.data) for out in outputs},
                ensure_ascii=False,
                indent=2,
            )
        if fmt == "markdown":
            return "\n\n".join(
                f"## {out.node_name or out.node_id}\n\n{_as_text(_primary_value(out.data))}"
                for out in outputs
            )
        return "\n\n".join(
            f"{out.node_name or out.node_id}:\n{_as_text(_primary_value(out.data))}"
            for out in outputs
        )
