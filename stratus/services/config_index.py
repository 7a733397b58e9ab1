# StratusFlags/stratus/services/config_index.py
"""Immutable, indexed view over a parsed datafile.

A :class:`ConfigIndex` is built once from a validated datafile and never
mutated afterwards. A configuration reload builds a new index and
publishes it in place of the old one (see
``repositories.memory_repo.ConfigSnapshotHolder``).

Every lookup is total: a missing key or id yields ``None`` (or an empty
mapping) and the caller decides what to log.
"""


from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from stratus.errors.handlers import UnsupportedDatafileVersion
from stratus.services.audience_evaluator import (
    AND_OPERATOR,
    NOT_OPERATOR,
    OPERATORS,
    OR_OPERATOR,
    And,
    Condition,
    Not,
    Or,
    Unknown,
    parse_conditions,
)

logger = logging.getLogger(__name__)


SUPPORTED_VERSIONS = ("2", "3", "4")

RUNNING_STATUS = "Running"

RANDOM_POLICY = "random"
OVERLAPPING_POLICY = "overlapping"

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class Variation:
    id: str
    key: str
    feature_enabled: bool = False
    # variable id -> raw string value
    variables: Mapping[str, str] = field(default_factory=lambda: _EMPTY)


@dataclass(frozen=True)
class TrafficAllocation:
    entity_id: str
    end_of_range: int


@dataclass(frozen=True)
class Experiment:
    """An A/B experiment, or a rule of a rollout."""

    id: str
    key: str
    status: str
    layer_id: str
    audience_ids: Tuple[str, ...]
    conditions: Optional[Condition]
    traffic_allocation: Tuple[TrafficAllocation, ...]
    variations: Tuple[Variation, ...]
    forced_variations: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    group_id: Optional[str] = None
    group_policy: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == RUNNING_STATUS

    @property
    def in_random_group(self) -> bool:
        return self.group_id is not None and self.group_policy == RANDOM_POLICY


@dataclass(frozen=True)
class Group:
    id: str
    policy: str
    experiment_ids: Tuple[str, ...]
    traffic_allocation: Tuple[TrafficAllocation, ...]


@dataclass(frozen=True)
class Audience:
    id: str
    name: str
    conditions: Condition


@dataclass(frozen=True)
class FeatureVariable:
    id: str
    key: str
    type: str
    default_value: str


@dataclass(frozen=True)
class FeatureFlag:
    id: str
    key: str
    experiment_ids: Tuple[str, ...]
    rollout_id: Optional[str]
    variables: Tuple[FeatureVariable, ...]


@dataclass(frozen=True)
class Rollout:
    id: str
    rules: Tuple[Experiment, ...]


def _freeze(mapping: Dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


def _parse_allocation(raw: List[dict]) -> Tuple[TrafficAllocation, ...]:
    return tuple(
        TrafficAllocation(
            entity_id=str(entry.get("entityId") or ""),
            end_of_range=int(entry["endOfRange"]),
        )
        for entry in raw or []
    )


def _parse_variation(raw: dict) -> Variation:
    return Variation(
        id=str(raw["id"]),
        key=raw["key"],
        feature_enabled=bool(raw.get("featureEnabled", False)),
        variables=_freeze(
            {str(usage["id"]): usage.get("value") for usage in raw.get("variables") or []}
        ),
    )


class ConfigIndex:
    """Read-only snapshot of a datafile with O(1) lookups.

    Args:
        datafile: The decoded datafile. It is expected to have passed
            ``validators.datafile_validator.validate_datafile`` already.

    Raises:
        UnsupportedDatafileVersion: If ``datafile["version"]`` is not one
            of :data:`SUPPORTED_VERSIONS`.
    """

    def __init__(self, datafile: dict) -> None:
        version = str(datafile.get("version", ""))
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedDatafileVersion(
                f"Datafile version '{version}' is not supported."
            )

        self.version = version
        self.revision = str(datafile.get("revision", ""))
        self.project_id = str(datafile.get("projectId", ""))

        self._audiences = _freeze(self._build_audiences(datafile))

        groups: Dict[str, Group] = {}
        experiments: List[Experiment] = [
            self._build_experiment(raw) for raw in datafile.get("experiments") or []
        ]
        for raw_group in datafile.get("groups") or []:
            group_id = str(raw_group["id"])
            policy = raw_group.get("policy", RANDOM_POLICY)
            members = [
                self._build_experiment(raw, group_id=group_id, group_policy=policy)
                for raw in raw_group.get("experiments") or []
            ]
            experiments.extend(members)
            groups[group_id] = Group(
                id=group_id,
                policy=policy,
                experiment_ids=tuple(exp.id for exp in members),
                traffic_allocation=_parse_allocation(
                    raw_group.get("trafficAllocation")
                ),
            )
        self._groups = _freeze(groups)
        self._experiment_key_map = _freeze({exp.key: exp for exp in experiments})
        self._experiment_id_map = _freeze({exp.id: exp for exp in experiments})

        rollouts: Dict[str, Rollout] = {}
        rules: Dict[str, Experiment] = {}
        for raw_rollout in datafile.get("rollouts") or []:
            rollout_rules = tuple(
                self._build_experiment(raw)
                for raw in raw_rollout.get("experiments") or []
            )
            rollout_id = str(raw_rollout["id"])
            rollouts[rollout_id] = Rollout(id=rollout_id, rules=rollout_rules)
            rules.update({rule.id: rule for rule in rollout_rules})
        self._rollouts = _freeze(rollouts)
        self._rollout_rule_map = _freeze(rules)

        self._variation_id_map = _freeze(
            {
                exp.id: _freeze({var.id: var for var in exp.variations})
                for exp in list(experiments) + list(rules.values())
            }
        )
        self._variation_key_map = _freeze(
            {
                exp.key: _freeze({var.key: var for var in exp.variations})
                for exp in experiments
            }
        )
        # Variation ids are unique across a datafile (checked by the validator).
        self._variable_usage_map = _freeze(
            {
                var.id: var.variables
                for exp in list(experiments) + list(rules.values())
                for var in exp.variations
            }
        )

        features = tuple(
            FeatureFlag(
                id=str(raw.get("id", "")),
                key=raw["key"],
                experiment_ids=tuple(str(i) for i in raw.get("experimentIds") or []),
                rollout_id=str(raw["rolloutId"]) if raw.get("rolloutId") else None,
                variables=tuple(
                    FeatureVariable(
                        id=str(var["id"]),
                        key=var["key"],
                        type=var["type"],
                        default_value=var.get("defaultValue"),
                    )
                    for var in raw.get("variables") or []
                ),
            )
            for raw in datafile.get("featureFlags") or []
        )
        self.feature_flags: Tuple[FeatureFlag, ...] = features
        self._feature_key_map = _freeze({flag.key: flag for flag in features})
        self._feature_variable_map = _freeze(
            {
                flag.key: _freeze({var.key: var for var in flag.variables})
                for flag in features
            }
        )

    # ------------------------------------------------------------------
    # Construction helpers

    @staticmethod
    def _build_audiences(datafile: dict) -> Dict[str, Audience]:
        audiences: Dict[str, Audience] = {}
        # typedAudiences carry decoded conditions and win over the legacy
        # string-encoded entry with the same id.
        for raw in list(datafile.get("audiences") or []) + list(
            datafile.get("typedAudiences") or []
        ):
            audience_id = str(raw["id"])
            audiences[audience_id] = Audience(
                id=audience_id,
                name=raw.get("name", ""),
                conditions=parse_conditions(raw.get("conditions")),
            )
        return audiences

    def _audience_tree(self, raw: dict, experiment_key: str) -> Optional[Condition]:
        audience_conditions = raw.get("audienceConditions")
        if audience_conditions is not None:
            if isinstance(audience_conditions, list) and not audience_conditions:
                return None
            return self._inline_audiences(audience_conditions, experiment_key)

        audience_ids = [str(i) for i in raw.get("audienceIds") or []]
        if not audience_ids:
            return None
        return Or(
            tuple(self._audience_ref(i, experiment_key) for i in audience_ids)
        )

    def _inline_audiences(self, node: Any, experiment_key: str) -> Condition:
        if isinstance(node, (str, int)) and str(node) not in OPERATORS:
            return self._audience_ref(str(node), experiment_key)

        if not isinstance(node, list):
            logger.error(
                "Unsupported audience condition %r in experiment '%s'.",
                node,
                experiment_key,
            )
            return Unknown(reason="malformed audience condition")

        operator = OR_OPERATOR
        operands = node
        if node and node[0] in OPERATORS:
            operator, operands = node[0], node[1:]
        children = tuple(self._inline_audiences(item, experiment_key) for item in operands)

        if operator == AND_OPERATOR:
            return And(children)
        if operator == NOT_OPERATOR:
            return Not(children[0] if children else None)
        return Or(children)

    def _audience_ref(self, audience_id: str, experiment_key: str) -> Condition:
        audience = self._audiences.get(audience_id)
        if audience is None:
            logger.error(
                "Audience '%s' referenced by '%s' is not in the datafile.",
                audience_id,
                experiment_key,
            )
            return Unknown(reason=f"missing audience {audience_id}")
        return audience.conditions

    def _build_experiment(
        self,
        raw: dict,
        group_id: Optional[str] = None,
        group_policy: Optional[str] = None,
    ) -> Experiment:
        key = raw["key"]
        return Experiment(
            id=str(raw["id"]),
            key=key,
            status=raw.get("status", ""),
            layer_id=str(raw.get("layerId", "")),
            audience_ids=tuple(str(i) for i in raw.get("audienceIds") or []),
            conditions=self._audience_tree(raw, key),
            traffic_allocation=_parse_allocation(raw.get("trafficAllocation")),
            variations=tuple(_parse_variation(v) for v in raw.get("variations") or []),
            forced_variations=_freeze(raw.get("forcedVariations") or {}),
            group_id=group_id,
            group_policy=group_policy,
        )

    # ------------------------------------------------------------------
    # Lookups

    def get_experiment_from_key(self, experiment_key: str) -> Optional[Experiment]:
        return self._experiment_key_map.get(experiment_key)

    def get_experiment_from_id(self, experiment_id: str) -> Optional[Experiment]:
        return self._experiment_id_map.get(experiment_id)

    def get_group_from_id(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def get_audience_from_id(self, audience_id: str) -> Optional[Audience]:
        return self._audiences.get(audience_id)

    def get_feature_flag_from_key(self, feature_key: str) -> Optional[FeatureFlag]:
        return self._feature_key_map.get(feature_key)

    def get_rollout_from_id(self, rollout_id: str) -> Optional[Rollout]:
        return self._rollouts.get(rollout_id)

    def get_rollout_rule_from_id(self, rule_id: str) -> Optional[Experiment]:
        return self._rollout_rule_map.get(rule_id)

    def get_variation_from_id(
        self, experiment_key: str, variation_id: str
    ) -> Optional[Variation]:
        """Look up a variation by id within an experiment given by key."""
        experiment = self._experiment_key_map.get(experiment_key)
        if experiment is None:
            return None
        return self._variation_id_map[experiment.id].get(variation_id)

    def get_variation_by_experiment_id(
        self, experiment_id: str, variation_id: str
    ) -> Optional[Variation]:
        """Look up a variation by id within an experiment or rollout rule id."""
        return self._variation_id_map.get(experiment_id, _EMPTY).get(variation_id)

    def get_variation_from_key(
        self, experiment_key: str, variation_key: str
    ) -> Optional[Variation]:
        return self._variation_key_map.get(experiment_key, _EMPTY).get(variation_key)

    def get_variable_overrides(self, variation_id: str) -> Mapping[str, str]:
        """Return the variable id -> value overrides of a variation."""
        return self._variable_usage_map.get(variation_id, _EMPTY)

    def get_feature_variable(
        self, feature_key: str, variable_key: str
    ) -> Optional[FeatureVariable]:
        return self._feature_variable_map.get(feature_key, _EMPTY).get(variable_key)

    @property
    def experiments(self) -> Tuple[Experiment, ...]:
        return tuple(self._experiment_key_map.values())

    def summary(self) -> dict:
        """Small JSON-safe description of this snapshot."""
        return {
            "version": self.version,
            "revision": self.revision,
            "project_id": self.project_id,
            "experiments": sorted(self._experiment_key_map),
            "feature_flags": [flag.key for flag in self.feature_flags],
            "groups": sorted(self._groups),
            "rollouts": sorted(self._rollouts),
        }
