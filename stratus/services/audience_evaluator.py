# StratusFlags/stratus/services/audience_evaluator.py
"""Audience condition evaluation for StratusFlags.

Conditions arrive in the datafile as loosely-typed nested lists such as::

    ["and", ["or", {"name": "country", "type": "custom_attribute",
                    "match": "exact", "value": "CA"}]]

They are parsed once (see :func:`parse_conditions`) into a small tagged
tree and evaluated against user attributes with three-valued logic:
``True``, ``False`` or ``None`` (unknown).
"""


from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


AND_OPERATOR = "and"
OR_OPERATOR = "or"
NOT_OPERATOR = "not"
OPERATORS = (AND_OPERATOR, OR_OPERATOR, NOT_OPERATOR)

CUSTOM_ATTRIBUTE_TYPE = "custom_attribute"

EXACT_MATCH = "exact"
EXISTS_MATCH = "exists"
SUBSTRING_MATCH = "substring"
GREATER_THAN_MATCH = "gt"
LESS_THAN_MATCH = "lt"

# Long-form spellings seen in older datafiles.
MATCH_ALIASES = {
    "greater_than": GREATER_THAN_MATCH,
    "less_than": LESS_THAN_MATCH,
}

# Largest integer a double can hold exactly; other SDKs reject beyond it.
MAX_SAFE_NUMBER = 2 ** 53


@dataclass(frozen=True)
class Leaf:
    name: str
    match: str
    value: Any
    type: str = CUSTOM_ATTRIBUTE_TYPE


@dataclass(frozen=True)
class And:
    children: Tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    child: Optional["Condition"]


@dataclass(frozen=True)
class Unknown:
    """Placeholder for a condition that can never be decided.

    Used for references to audiences missing from the datafile.
    """

    reason: str = ""


Condition = Union[And, Or, Not, Leaf, Unknown]


def parse_conditions(raw: Any) -> Condition:
    """Parse a raw condition structure into a :data:`Condition` tree.

    Args:
        raw: A JSON string, a list whose first element may be an operator
            (``"and"``, ``"or"``, ``"not"``), or a leaf dictionary.
            Lists without a leading operator are treated as ``"or"``.

    Returns:
        Condition: The parsed tree.

    Raises:
        ValueError: If ``raw`` is neither a list, a dict nor a JSON string
            encoding one of them.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid condition JSON: {exc.msg}") from exc

    if isinstance(raw, dict):
        return _parse_leaf(raw)

    if not isinstance(raw, list):
        raise ValueError(f"Unsupported condition node: {raw!r}")

    operator = OR_OPERATOR
    operands = raw
    if raw and isinstance(raw[0], str) and raw[0] in OPERATORS:
        operator = raw[0]
        operands = raw[1:]

    children = tuple(parse_conditions(item) for item in operands)

    if operator == AND_OPERATOR:
        return And(children)
    if operator == NOT_OPERATOR:
        return Not(children[0] if children else None)
    return Or(children)


def _parse_leaf(raw: dict) -> Leaf:
    match = raw.get("match") or EXACT_MATCH
    return Leaf(
        name=raw.get("name", ""),
        match=MATCH_ALIASES.get(match, match),
        value=raw.get("value"),
        type=raw.get("type", CUSTOM_ATTRIBUTE_TYPE),
    )


def is_number(value: Any) -> bool:
    """Return True for finite ints/floats within the safe range.

    Booleans are excluded even though ``bool`` subclasses ``int``.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return abs(value) <= MAX_SAFE_NUMBER


def _same_kind(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return True
    if isinstance(left, bool) and isinstance(right, bool):
        return True
    return is_number(left) and is_number(right)


def evaluate_leaf(leaf: Leaf, attributes: Mapping[str, Any]) -> Optional[bool]:
    """Evaluate a single attribute comparison.

    Returns:
        Optional[bool]: ``None`` when the comparison cannot be decided
        (missing attribute, type mismatch, unsupported match type).
    """
    if leaf.type != CUSTOM_ATTRIBUTE_TYPE:
        logger.warning(
            "Condition type '%s' is not supported; treating as unknown.",
            leaf.type,
        )
        return None

    if leaf.match == EXISTS_MATCH:
        return attributes.get(leaf.name) is not None

    if leaf.name not in attributes:
        logger.debug(
            "Attribute '%s' is missing; condition is unknown.", leaf.name
        )
        return None

    actual = attributes[leaf.name]
    expected = leaf.value

    if leaf.match == EXACT_MATCH:
        if not _same_kind(actual, expected):
            return None
        return actual == expected

    if leaf.match == SUBSTRING_MATCH:
        if not isinstance(actual, str) or not isinstance(expected, str):
            return None
        return expected in actual

    if leaf.match in (GREATER_THAN_MATCH, LESS_THAN_MATCH):
        if not is_number(actual) or not is_number(expected):
            return None
        if leaf.match == GREATER_THAN_MATCH:
            return actual > expected
        return actual < expected

    logger.warning(
        "Match type '%s' is not supported; treating as unknown.", leaf.match
    )
    return None


def evaluate(
    tree: Optional[Condition], attributes: Optional[Mapping[str, Any]]
) -> Optional[bool]:
    """Evaluate a condition tree with Kleene three-valued logic.

    Args:
        tree: The parsed condition tree. ``None`` means "no restriction"
            and evaluates to ``True``.
        attributes: User attributes; ``None`` is treated as empty.

    Returns:
        Optional[bool]: ``True``, ``False``, or ``None`` for unknown.
    """
    if tree is None:
        return True

    attributes = attributes or {}

    if isinstance(tree, Leaf):
        return evaluate_leaf(tree, attributes)

    if isinstance(tree, And):
        saw_unknown = False
        for child in tree.children:
            result = evaluate(child, attributes)
            if result is False:
                return False
            if result is None:
                saw_unknown = True
        return None if saw_unknown else True

    if isinstance(tree, Or):
        saw_unknown = False
        for child in tree.children:
            result = evaluate(child, attributes)
            if result is True:
                return True
            if result is None:
                saw_unknown = True
        return None if saw_unknown else False

    if isinstance(tree, Not):
        if tree.child is None:
            return None
        result = evaluate(tree.child, attributes)
        return None if result is None else not result

    # Unknown
    return None


def is_user_in_audience(
    experiment: Any, attributes: Optional[Mapping[str, Any]]
) -> bool:
    """Return True only when the experiment's audience tree is satisfied.

    An unknown result at the top level counts as not matched.

    Args:
        experiment: Any object exposing a ``conditions`` tree (an
            experiment or a rollout rule).
        attributes: User attributes.
    """
    return evaluate(experiment.conditions, attributes) is True
