# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Variable Resolution

Resolves {{ref.path}} tokens against a run's outputs. `ref` is a node id,
a node name, `input` or a global variable name.
"""

import json
import re
from typing import Any, Dict, Optional

from .context import ExecutionContext
from .models import WorkflowGraph

TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def build_scope(context: ExecutionContext, graph: Optional[WorkflowGraph] = None) -> Dict[str, Any]:
    """
    Build the name -> value mapping templates and conditions see.

    Precedence (highest last): globals, input, node names, node ids.
    """
    scope: Dict[str, Any] = dict(context.global_variables)
    scope["input"] = context.input

    outputs = context.successful_outputs()
    if graph is not None:
        for node in graph.nodes:
            if node.name and node.id in outputs:
                scope[node.name] = outputs[node.id].data
    for node_id, output in outputs.items():
        scope[node_id] = output.data

    return scope


def get_nested_value(obj: Any, path: str) -> Any:
    """Get nested value using dot notation; list segments are indexes"""
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def lookup(ref: str, scope: Dict[str, Any]) -> Any:
    """Resolve a bare reference such as `node1.result` or `topic`."""
    ref = ref.strip()
    if ref in scope:
        return scope[ref]
    if "." in ref:
        head, path = ref.split(".", 1)
        if head in scope:
            return get_nested_value(scope[head], path)
    return None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_value(value: Any, scope: Dict[str, Any]) -> Any:
    """
    Resolve templates in a value.

    A string that is exactly one token yields the raw referenced value;
    embedded tokens are stringified. Dicts and lists resolve recursively.
    """
    if isinstance(value, dict):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    if not isinstance(value, str):
        return value

    single = TOKEN_PATTERN.fullmatch(value.strip())
    if single:
        resolved = lookup(single.group(1), scope)
        return "" if resolved is None else resolved

    return TOKEN_PATTERN.sub(lambda match: _stringify(lookup(match.group(1), scope)), value)


def render_template(template: str, scope: Dict[str, Any]) -> str:
    """Render a template to text, always returning a string"""
    if template is None:
        return ""
    return TOKEN_PATTERN.sub(lambda match: _stringify(lookup(match.group(1), scope)), str(template))
