# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for the safe condition evaluator
"""

import pytest

from flowengine.condition_evaluator import evaluate_condition, normalize_expression


class TestEvaluation:

    @pytest.mark.parametrize("expression, expected", [
        ("input.x > 0", True),
        ("input.x > 0 and input.x < 3", False),
        ("input.tags[0] == 'a'", True),
        ("len(input.tags) == 2", True),
        ("contains(input.tags, 'b')", True),
        ("lower(input.name) == 'ada'", True),
        ("input.missing == null", True),
    ])
    def test_expressions(self, expression, expected):
        variables = {"input": {"x": 5, "tags": ["a", "b"], "name": "ADA"}}

        assert evaluate_condition(expression, variables) is expected

    def test_javascript_operators(self):
        variables = {"input": {"status": "ok", "retry": False}}

        assert evaluate_condition("input.status === 'ok' && !input.retry", variables) is True
        assert evaluate_condition("input.status !== 'ok' || input.retry", variables) is False

    def test_template_tokens_bind_values(self):
        variables = {"score": {"value": 0.9}}

        assert evaluate_condition("{{score.value}} > 0.5", variables) is True

    def test_not_equal_is_preserved(self):
        assert normalize_expression("a != b") == "a != b"


class TestRejections:

    @pytest.mark.parametrize("expression", [
        "__import__('os').system('ls')",
        "'abc'.upper()",
        "[x for x in input]",
        "open('/etc/passwd')",
    ])
    def test_unsafe_expressions_raise(self, expression):
        with pytest.raises(ValueError):
            evaluate_condition(expression, {"input": {}})

    def test_undefined_variable(self):
        with pytest.raises(ValueError):
            evaluate_condition("nothing > 1", {})

    def test_syntax_error(self):
        with pytest.raises(SyntaxError):
            evaluate_condition("input.x >", {"input": {"x": 1}})


class TestStringLiterals:
    """Operators inside quoted strings are data, not syntax"""

    @pytest.mark.parametrize("expression", [
        'input.s == "a && b"',
        "input.s == 'x || y'",
        'input.s == "a === b !== c"',
        "input.s == 'wow!'",
        'input.s == "say \\"hi\\" && go"',
    ])
    def test_literals_are_left_as_written(self, expression):
        assert normalize_expression(expression) == expression

    def test_code_around_literals_is_still_rewritten(self):
        rewritten = normalize_expression('input.a === "&&" && !input.b')

        assert rewritten.split() == ['input.a', '==', '"&&"', 'and', 'not', 'input.b']

    def test_literal_with_operator_text_compares_by_value(self):
        variables = {"input": {"s": "a && b"}}

        assert evaluate_condition('input.s == "a && b"', variables) is True
        assert evaluate_condition("input.s === 'a || b'", variables) is False
