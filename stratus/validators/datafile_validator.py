# StratusFlags/stratus/validators/datafile_validator.py
"""
Validator for datafiles using JSON Schema.

The schema catches shape errors. A second pass checks what a schema
cannot express: traffic allocation tables must be increasing and stay
within 10000, every variation id or key they (or a whitelist)
reference must exist in the owning experiment, variation ids must be
unique across the datafile, and audience conditions must parse.
"""


from pathlib import Path
import json
from typing import Any, Iterable, List

from jsonschema import validate as js_validate, ValidationError
from stratus.errors.handlers import BadRequest
from stratus.services.audience_evaluator import OPERATORS, parse_conditions


MAX_TRAFFIC_VALUE = 10000

# Resolve schema path
SCHEMA_PATH = (
    Path(__file__).resolve().parent.parent / "schemas" / "datafile.schema.json"
)

# Load schema
with SCHEMA_PATH.open("r", encoding="utf-8") as f:
    DATAFILE_SCHEMA = json.load(f)


def validate_datafile(payload: dict) -> None:
    """
    Validate a decoded datafile before it is indexed.

    Args:
        payload: Parsed JSON datafile.

    Raises:
        BadRequest: If the payload is not an object, violates the schema,
            carries inconsistent traffic allocations or whitelists,
            reuses a variation id, or has unparsable audience conditions.
    """
    if not isinstance(payload, dict):
        raise BadRequest("Datafile must be a JSON object.")

    try:
        js_validate(instance=payload, schema=DATAFILE_SCHEMA)
    except ValidationError as e:
        msg = getattr(e, "message", None) or str(e)
        raise BadRequest(f"Invalid datafile: {msg}")

    problems = list(_allocation_problems(payload))
    problems.extend(_variation_id_problems(payload))
    problems.extend(_audience_problems(payload))
    if problems:
        raise BadRequest("Invalid datafile: " + "; ".join(problems))


def _check_allocation(
    owner: str, allocation: List[dict], known_ids: Iterable[str]
) -> List[str]:
    problems = []
    known = set(known_ids)
    previous = -1
    for entry in allocation:
        end = entry["endOfRange"]
        if end < previous:
            problems.append(f"traffic allocation of '{owner}' is not increasing")
        if end > MAX_TRAFFIC_VALUE:
            problems.append(
                f"traffic allocation of '{owner}' exceeds {MAX_TRAFFIC_VALUE}"
            )
        entity_id = entry["entityId"]
        if entity_id and entity_id not in known:
            problems.append(
                f"traffic allocation of '{owner}' references unknown id '{entity_id}'"
            )
        previous = end
    return problems


def _check_experiment(experiment: dict) -> List[str]:
    key = experiment["key"]
    variations = experiment.get("variations") or []
    problems = _check_allocation(
        key, experiment.get("trafficAllocation") or [], (v["id"] for v in variations)
    )
    variation_keys = {v["key"] for v in variations}
    for user_id, variation_key in (experiment.get("forcedVariations") or {}).items():
        if variation_key not in variation_keys:
            problems.append(
                f"user '{user_id}' is whitelisted into unknown variation "
                f"'{variation_key}' of '{key}'"
            )
    return problems


def _allocation_problems(payload: dict) -> Iterable[str]:
    for experiment in payload.get("experiments") or []:
        yield from _check_experiment(experiment)

    for group in payload.get("groups") or []:
        members = group.get("experiments") or []
        for experiment in members:
            yield from _check_experiment(experiment)
        yield from _check_allocation(
            f"group {group['id']}",
            group.get("trafficAllocation") or [],
            (e["id"] for e in members),
        )

    for rollout in payload.get("rollouts") or []:
        for rule in rollout.get("experiments") or []:
            yield from _check_experiment(rule)


def _all_experiments(payload: dict) -> Iterable[dict]:
    yield from payload.get("experiments") or []
    for group in payload.get("groups") or []:
        yield from group.get("experiments") or []
    for rollout in payload.get("rollouts") or []:
        yield from rollout.get("experiments") or []


def _variation_id_problems(payload: dict) -> Iterable[str]:
    # Variable overrides are indexed by variation id alone.
    owners = {}
    for experiment in _all_experiments(payload):
        for variation in experiment.get("variations") or []:
            owner = owners.setdefault(variation["id"], experiment["key"])
            if owner != experiment["key"]:
                yield (
                    f"variation id '{variation['id']}' is used by both "
                    f"'{owner}' and '{experiment['key']}'"
                )


def _audience_condition_nodes_valid(node: Any) -> bool:
    if isinstance(node, str):
        return True
    if not isinstance(node, list):
        return False
    operands = node[1:] if node and node[0] in OPERATORS else node
    return all(_audience_condition_nodes_valid(item) for item in operands)


def _audience_problems(payload: dict) -> Iterable[str]:
    for audience in list(payload.get("audiences") or []) + list(
        payload.get("typedAudiences") or []
    ):
        try:
            parse_conditions(audience["conditions"])
        except ValueError as exc:
            yield f"audience '{audience['id']}' has invalid conditions: {exc}"

    for experiment in _all_experiments(payload):
        audience_conditions = experiment.get("audienceConditions")
        if audience_conditions is None:
            continue
        if not _audience_condition_nodes_valid(audience_conditions):
            yield f"audienceConditions of '{experiment['key']}' are malformed"
