# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Safe Condition Evaluator

AST-based evaluation of LOGIC node conditions. Prevents arbitrary code
execution while allowing comparisons, boolean logic and read-only
access into node data (``input.x > 0``, ``classify.labels[0] == "spam"``).
"""

import ast
import operator
import re
from typing import Dict, Any, Tuple

from flowengine.workflow.variables import TOKEN_PATTERN, lookup


# Allowed operators for safe evaluation
SAFE_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.And: operator.and_,
    ast.Or: operator.or_,
    ast.Not: operator.not_,
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


# Allowed functions for safe evaluation
SAFE_FUNCTIONS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'abs': abs,
    'min': min,
    'max': max,
    'lower': lambda s: str(s).lower(),
    'upper': lambda s: str(s).upper(),
    'contains': lambda container, item: container is not None and item in container,
}


# Literal names accepted from JavaScript-style expressions
SAFE_CONSTANTS = {
    'true': True,
    'false': False,
    'null': None,
    'None': None,
    'True': True,
    'False': False,
}


# Ordered rewrites from JavaScript-style operators to Python
_JS_REWRITES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"(?<![\w'\"])!(?!=)"), " not "),
]

# Quoted string literals, with backslash escapes
_STRING_LITERAL = re.compile(r"'(?:[^'\\]|\\.)*'" r'|"(?:[^"\\]|\\.)*"')


class SafeEvaluator(ast.NodeVisitor):
    """
    AST-based safe evaluator for boolean expressions.

    Restricts evaluation to:
    - Basic arithmetic and comparison operators
    - Logical operators (and, or, not)
    - Safe built-in functions (len, str, int, etc.)
    - Variable references, dict key access and indexing into provided data
    """

    def __init__(self, variables: Dict[str, Any]):
        self.variables = variables

    def visit_Expression(self, node):
        return self.visit(node.body)

    def visit_Constant(self, node):
        return node.value

    def visit_Name(self, node):
        if node.id in self.variables:
            return self.variables[node.id]
        elif node.id in SAFE_CONSTANTS:
            return SAFE_CONSTANTS[node.id]
        elif node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        else:
            raise ValueError(f"Undefined variable: {node.id}")

    def visit_Attribute(self, node):
        # Dotted access reads dict keys only, never Python attributes
        value = self.visit(node.value)
        if isinstance(value, dict):
            return value.get(node.attr)
        if value is None:
            return None
        raise ValueError(f"Attribute access not allowed: .{node.attr}")

    def visit_Subscript(self, node):
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(value, dict):
            return value.get(key)
        if isinstance(value, (list, tuple, str)) and isinstance(key, int):
            return value[key] if -len(value) <= key < len(value) else None
        if value is None:
            return None
        raise ValueError(f"Subscript not allowed on {type(value).__name__}")

    def visit_List(self, node):
        return [self.visit(item) for item in node.elts]

    def visit_Tuple(self, node):
        return tuple(self.visit(item) for item in node.elts)

    def visit_BinOp(self, node):
        left = self.visit(node.left)
        right = self.visit(node.right)
        op_type = type(node.op)

        if op_type not in SAFE_OPERATORS:
            raise ValueError(f"Operator not allowed: {op_type.__name__}")

        return SAFE_OPERATORS[op_type](left, right)

    def visit_UnaryOp(self, node):
        operand = self.visit(node.operand)
        op_type = type(node.op)

        if op_type not in SAFE_OPERATORS:
            raise ValueError(f"Operator not allowed: {op_type.__name__}")

        return SAFE_OPERATORS[op_type](operand)

    def visit_Compare(self, node):
        left = self.visit(node.left)

        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            op_type = type(op)

            if op_type not in SAFE_OPERATORS:
                raise ValueError(f"Operator not allowed: {op_type.__name__}")

            if not SAFE_OPERATORS[op_type](left, right):
                return False

            left = right

        return True

    def visit_BoolOp(self, node):
        if isinstance(node.op, ast.And):
            return all(self.visit(value) for value in node.values)
        elif isinstance(node.op, ast.Or):
            return any(self.visit(value) for value in node.values)
        raise ValueError(f"Boolean operator not allowed: {type(node.op).__name__}")

    def visit_IfExp(self, node):
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node):
        func = self.visit(node.func)

        if func not in SAFE_FUNCTIONS.values():
            raise ValueError(f"Function not allowed: {getattr(node.func, 'id', 'unknown')}")

        args = [self.visit(arg) for arg in node.args]
        kwargs = {kw.arg: self.visit(kw.value) for kw in node.keywords}

        return func(*args, **kwargs)

    def generic_visit(self, node):
        raise ValueError(f"AST node type not allowed: {type(node).__name__}")


def normalize_expression(condition: str) -> str:
    """Rewrite JavaScript-style operators to their Python spelling, leaving string literals as written."""
    parts = []
    position = 0
    for literal in _STRING_LITERAL.finditer(condition):
        parts.append(_rewrite_operators(condition[position:literal.start()]))
        parts.append(literal.group(0))
        position = literal.end()
    parts.append(_rewrite_operators(condition[position:]))
    return "".join(parts).strip()


def _rewrite_operators(code: str) -> str:
    for pattern, replacement in _JS_REWRITES:
        code = pattern.sub(replacement, code)
    return code


def bind_template_tokens(condition: str, scope: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """
    Replace {{ref}} tokens with generated names bound to their values.

    Returns the rewritten expression and the variables it needs.
    """
    variables = dict(scope)
    counter = 0

    def replace(match):
        nonlocal counter
        name = f"var_{counter}"
        counter += 1
        variables[name] = lookup(match.group(1), scope)
        return name

    return TOKEN_PATTERN.sub(replace, condition), variables


def evaluate_condition(condition: str, variables: Dict[str, Any]) -> bool:
    """
    Safely evaluate a boolean condition string.

    Args:
        condition: expression string (e.g., "input.x > 0 && {{score.value}} > 5")
        variables: Variable context mapping names to values

    Returns:
        Boolean result of evaluation

    Raises:
        ValueError: If condition is invalid or uses unsafe operations
        SyntaxError: If condition has syntax errors

    Examples:
        >>> evaluate_condition("var_0 > 5", {"var_0": 10})
        True
        >>> evaluate_condition("input.x > 0", {"input": {"x": -1}})
        False
    """
    expression, bound = bind_template_tokens(condition, variables)
    expression = normalize_expression(expression)

    try:
        tree = ast.parse(expression, mode='eval')
    except SyntaxError as e:
        raise SyntaxError(f"Invalid condition syntax: {e}")

    try:
        return bool(SafeEvaluator(bound).visit(tree))
    except Exception as e:
        raise ValueError(f"Condition evaluation failed: {e}")
