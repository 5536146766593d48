import math

import pytest

from expression import (
    ExpressionError,
    build_context,
    evaluate_condition,
    evaluate_math,
    is_math_expression,
    sanitize_math,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("5 > 3", True),
        ("5 < 3", False),
        ("'5' == 5", True),
        ("'5' === 5", False),
        ("'abc' < 'abd'", True),
        ("1 + 2 * 3 == 7", True),
        ("(1 + 2) * 3 == 9", True),
        ("!false", True),
        ("true && 0", False),
        ("'' || 'x'", True),
        ("10 % 4 == 2", True),
        ("'a' + 1 == 'a1'", True),
        ("1 / 0 > 100", True),
        ("0", False),
        ("''", False),
        ("1e309 % 2 == 0", False),
    ],
)
def test_condition_semantics(text, expected):
    assert evaluate_condition(text) is expected


def test_condition_reads_typed_context():
    context = build_context({"n": "5", "name": "Ann"})

    assert context == {"n": 5.0, "name": "Ann"}
    assert evaluate_condition("n >= 5 && name == 'Ann'", context)
    assert not evaluate_condition("n != 5", context)


def test_short_circuit_skips_unknown_names():
    assert evaluate_condition("(1 < 2) || nope")
    with pytest.raises(ExpressionError):
        evaluate_condition("nope || true")


@pytest.mark.parametrize("text", ["hello world", "", "1 +", "'open", "5 $ 3"])
def test_malformed_conditions_raise(text):
    with pytest.raises(ExpressionError):
        evaluate_condition(text)


def test_is_math_expression():
    assert is_math_expression("2 + 3")
    assert is_math_expression("a-b")
    assert not is_math_expression("hello")
    assert not is_math_expression("§add[1;2]")


def test_evaluate_math():
    assert evaluate_math("2 + 3 * 4") == 14.0
    assert evaluate_math("(1+2)*3") == 9.0
    assert evaluate_math("7 / 2") == 3.5
    assert evaluate_math("5 apples + 3") == 8.0
    assert sanitize_math("5 apples + 3") == "5+3"


def test_evaluate_math_errors():
    with pytest.raises(ExpressionError):
        evaluate_math("10 / 0")
    with pytest.raises(ExpressionError):
        evaluate_math("abc")


def test_number_exponents():
    assert evaluate_condition("1e3 == 1000")
    assert math.isclose(evaluate_math("1.5*2"), 3.0)
