# StratusFlags/stratus/tests/test_audience_evaluator.py
"""
Unit tests for condition parsing and three-valued evaluation.
"""


import pytest

from stratus.services.audience_evaluator import (
    And,
    Leaf,
    Not,
    Or,
    Unknown,
    evaluate,
    evaluate_leaf,
    is_number,
    is_user_in_audience,
    parse_conditions,
)


TRUE = Leaf(name="flag", match="exact", value=True)
FALSE = Leaf(name="flag", match="exact", value=False)
UNKNOWN = Unknown()
ATTRS = {"flag": True}


# ---------- Kleene logic ----------


def test_and_truth_table():
    assert evaluate(And((TRUE, UNKNOWN)), ATTRS) is None
    assert evaluate(And((FALSE, UNKNOWN)), ATTRS) is False
    assert evaluate(And((UNKNOWN, FALSE)), ATTRS) is False
    assert evaluate(And((TRUE, TRUE)), ATTRS) is True


def test_or_truth_table():
    assert evaluate(Or((FALSE, UNKNOWN)), ATTRS) is None
    assert evaluate(Or((TRUE, UNKNOWN)), ATTRS) is True
    assert evaluate(Or((UNKNOWN, TRUE)), ATTRS) is True
    assert evaluate(Or((FALSE, FALSE)), ATTRS) is False


def test_not_truth_table():
    assert evaluate(Not(UNKNOWN), ATTRS) is None
    assert evaluate(Not(TRUE), ATTRS) is False
    assert evaluate(Not(FALSE), ATTRS) is True
    assert evaluate(Not(None), ATTRS) is None


def test_empty_operators():
    assert evaluate(And(()), {}) is True
    assert evaluate(Or(()), {}) is False


def test_no_tree_matches_everyone():
    assert evaluate(None, {}) is True
    assert evaluate(None, None) is True


def test_unknown_is_kept_until_the_top():
    # not(and(unknown, true)) must stay unknown, not become True.
    tree = Not(And((Leaf(name="missing", match="exact", value="x"), TRUE)))
    assert evaluate(tree, ATTRS) is None


def _count_leaf_calls(monkeypatch):
    calls = []
    real = evaluate_leaf

    def counting(leaf, attributes):
        calls.append(leaf.name)
        return real(leaf, attributes)

    monkeypatch.setattr(
        "stratus.services.audience_evaluator.evaluate_leaf", counting
    )
    return calls


def test_and_short_circuits_on_false(monkeypatch):
    calls = _count_leaf_calls(monkeypatch)
    tree = And((FALSE, Leaf(name="never", match="exact", value="x")))

    assert evaluate(tree, ATTRS) is False
    assert calls == ["flag"]


def test_or_short_circuits_on_true(monkeypatch):
    calls = _count_leaf_calls(monkeypatch)
    tree = Or((TRUE, Leaf(name="never", match="exact", value="x")))

    assert evaluate(tree, ATTRS) is True
    assert calls == ["flag"]


# ---------- Leaves ----------


@pytest.mark.parametrize(
    "expected, actual, result",
    [
        ("CA", "CA", True),
        ("CA", "US", False),
        (True, True, True),
        (True, False, False),
        (42, 42.0, True),
        (42, 43, False),
        ("42", 42, None),
        (True, 1, None),
        (1, True, None),
    ],
)
def test_exact_match(expected, actual, result):
    leaf = Leaf(name="a", match="exact", value=expected)
    assert evaluate_leaf(leaf, {"a": actual}) is result


def test_missing_attribute_is_unknown():
    leaf = Leaf(name="country", match="exact", value="CA")
    assert evaluate_leaf(leaf, {}) is None


def test_exists_is_never_unknown():
    leaf = Leaf(name="country", match="exists", value=None)
    assert evaluate_leaf(leaf, {"country": "CA"}) is True
    assert evaluate_leaf(leaf, {"country": 0}) is True
    assert evaluate_leaf(leaf, {}) is False
    assert evaluate_leaf(leaf, {"country": None}) is False


def test_substring_match():
    leaf = Leaf(name="email", match="substring", value="@example.com")
    assert evaluate_leaf(leaf, {"email": "jo@example.com"}) is True
    assert evaluate_leaf(leaf, {"email": "jo@other.org"}) is False
    assert evaluate_leaf(leaf, {"email": 12}) is None


def test_numeric_comparisons():
    gt = Leaf(name="age", match="gt", value=17)
    lt = Leaf(name="age", match="lt", value=17)
    assert evaluate_leaf(gt, {"age": 18}) is True
    assert evaluate_leaf(gt, {"age": 17}) is False
    assert evaluate_leaf(lt, {"age": 16.5}) is True
    assert evaluate_leaf(gt, {"age": "18"}) is None
    assert evaluate_leaf(gt, {"age": True}) is None
    assert evaluate_leaf(gt, {"age": float("inf")}) is None


def test_unsupported_match_or_type_is_unknown():
    assert evaluate_leaf(Leaf(name="a", match="regex", value="x"), {"a": "x"}) is None
    leaf = Leaf(name="a", match="exact", value="x", type="third_party")
    assert evaluate_leaf(leaf, {"a": "x"}) is None


def test_is_number():
    assert is_number(3)
    assert is_number(-2.5)
    assert not is_number(True)
    assert not is_number(float("nan"))
    assert not is_number(2 ** 53 + 1)
    assert not is_number("3")


# ---------- Parsing ----------


def test_parse_string_conditions():
    tree = parse_conditions(
        '["and", ["or", {"name": "country", "type": "custom_attribute", "value": "CA"}]]'
    )
    assert tree == And(
        (Or((Leaf(name="country", match="exact", value="CA"),)),)
    )


def test_parse_defaults_to_or_and_aliases():
    tree = parse_conditions(
        [
            {"name": "age", "type": "custom_attribute", "match": "greater_than", "value": 3},
            ["not", {"name": "vip", "type": "custom_attribute", "match": "exists"}],
        ]
    )
    assert tree == Or(
        (
            Leaf(name="age", match="gt", value=3),
            Not(Leaf(name="vip", match="exists", value=None)),
        )
    )


def test_parse_rejects_garbage():
    with pytest.raises(ValueError):
        parse_conditions("not json")
    with pytest.raises(ValueError):
        parse_conditions(42)


def test_is_user_in_audience_collapses_unknown(config):
    experiment = config.get_experiment_from_key("audience_experiment")
    assert is_user_in_audience(experiment, {"country": "CA"}) is True
    assert is_user_in_audience(experiment, {"country": "US"}) is False
    assert is_user_in_audience(experiment, {}) is False
