"""
Tests for the restricted expression evaluator.
"""
import pytest

from workflow_engine.expressions import ExpressionError, evaluate_expression

CONTEXT = {
    "total": 120,
    "status": "open",
    "items": [1, 2, 3],
    "user": {"name": "Ada", "roles": ["admin"]},
}


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("total > 100 and status == 'open'", True),
        ("{{user.name}} == 'Ada'", True),
        ("len(items) * 2", 6),
        ("'admin' in {{user.roles}}", True),
        ("upper(status)", "OPEN"),
        ("items[0] + items[-1]", 4),
        ("'big' if total > 1000 else 'small'", "small"),
        ("not (total % 2)", True),
    ],
)
def test_allowed_expressions(expression, expected):
    assert evaluate_expression(expression, CONTEXT) == expected


@pytest.mark.parametrize(
    "expression",
    [
        "__import__('os').system('echo hi')",
        "open('/etc/passwd')",
        "user.name",
        "(lambda: 1)()",
        "total ** 1000000",
        "[x for x in items]",
        "undefined_name + 1",
        "str(total, 'utf-8') if False else len(x=items)",
    ],
)
def test_rejected_expressions(expression):
    with pytest.raises(ExpressionError):
        evaluate_expression(expression, CONTEXT)


def test_unknown_placeholder_is_rejected():
    with pytest.raises(ExpressionError, match="Unknown reference"):
        evaluate_expression("{{missing.value}} > 1", CONTEXT)


def test_runtime_errors_are_wrapped():
    with pytest.raises(ExpressionError, match="Expression failed"):
        evaluate_expression("total / 0", CONTEXT)


def test_syntax_errors_are_wrapped():
    with pytest.raises(ExpressionError, match="syntax"):
        evaluate_expression("total >", CONTEXT)


def test_small_powers_are_allowed():
    assert evaluate_expression("2 ** 10", CONTEXT) == 1024


@pytest.mark.parametrize(
    "expression, message",
    [
        ("len('ab' * 200000000)", "Repetition would produce"),
        ("items * 1000000", "Repetition would produce"),
        ("2 ** 65", "Exponent"),
        ("(10 ** 60) ** 60", "too large"),
        ("'%0999999d' % 1", "String formatting"),
    ],
)
def test_unbounded_allocations_are_refused(expression, message):
    with pytest.raises(ExpressionError, match=message):
        evaluate_expression(expression, CONTEXT)


def test_repetition_limit_is_configurable():
    assert evaluate_expression("'ab' * 3", CONTEXT, max_sequence_length=6) == "ababab"
    with pytest.raises(ExpressionError, match="limit is 5"):
        evaluate_expression("'ab' * 3", CONTEXT, max_sequence_length=5)


def test_helpers_cannot_be_used_as_values():
    with pytest.raises(ExpressionError, match="can only be called"):
        evaluate_expression("len", CONTEXT)


def test_untaken_branches_are_still_checked():
    with pytest.raises(ExpressionError, match="Unknown variable"):
        evaluate_expression("1 if True else nope", CONTEXT)
