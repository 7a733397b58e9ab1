# StratusFlags/stratus/services/flag_service.py
"""Flag evaluation facade for StratusFlags.

:class:`FlagClient` owns the live configuration snapshot and the
collaborators (forced variations, sticky bucketing) and exposes the
public SDK surface: experiment variations, feature enablement and typed
feature variables. Each call reads the snapshot once, so a concurrent
reload never mixes two datafiles inside one decision.
"""


from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from flask import current_app

from stratus.errors.handlers import DatafileNotLoaded, ProfileStoreUnavailable
from stratus.repositories.memory_repo import (
    ConfigSnapshotHolder,
    InMemoryForcedVariationStore,
)
from stratus.services.config_index import ConfigIndex, FeatureVariable
from stratus.services.decision_service import (
    Decision,
    DecisionService,
    ForcedVariationStore,
    UserProfileService,
)
from stratus.validators.datafile_validator import validate_datafile

logger = logging.getLogger(__name__)


STRING_TYPE = "string"
BOOLEAN_TYPE = "boolean"
INTEGER_TYPE = "integer"
DOUBLE_TYPE = "double"
VARIABLE_TYPES = (STRING_TYPE, BOOLEAN_TYPE, INTEGER_TYPE, DOUBLE_TYPE)


def cast_variable_value(value: Optional[str], variable_type: str) -> Any:
    """Cast a raw datafile variable value to its declared type.

    Args:
        value: The raw string value from the datafile.
        variable_type: One of :data:`VARIABLE_TYPES`.

    Returns:
        The typed value, or ``None`` if it cannot be cast.
    """
    if value is None:
        return None

    try:
        if variable_type == BOOLEAN_TYPE:
            return str(value).lower() == "true"
        if variable_type == INTEGER_TYPE:
            return int(value)
        if variable_type == DOUBLE_TYPE:
            return float(value)
    except (TypeError, ValueError):
        logger.error(
            "Unable to cast value '%s' to type '%s'.", value, variable_type
        )
        return None

    return value


def _valid_key(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


class FlagClient:
    """Public decision API over a swappable configuration snapshot.

    Args:
        datafile: Optional decoded datafile to load immediately.
        user_profile_service: Optional sticky-bucketing collaborator.
        forced_variations: Forced-variation store; an in-memory store is
            created when omitted.
    """

    def __init__(
        self,
        datafile: Optional[dict] = None,
        user_profile_service: Optional[UserProfileService] = None,
        forced_variations: Optional[ForcedVariationStore] = None,
    ) -> None:
        self.user_profile_service = user_profile_service
        self.forced_variations = (
            forced_variations
            if forced_variations is not None
            else InMemoryForcedVariationStore()
        )
        self._snapshot = ConfigSnapshotHolder()

        if datafile is not None:
            self.reload(datafile)

    # ------------------------------------------------------------------
    # Configuration

    @property
    def config(self) -> Optional[ConfigIndex]:
        """The current snapshot, or ``None`` if no datafile is loaded."""
        return self._snapshot.current()

    def reload(self, datafile: dict) -> ConfigIndex:
        """Validate ``datafile`` and publish it as the new snapshot.

        The previous snapshot stays in place if validation or indexing
        fails.

        Returns:
            ConfigIndex: The newly published snapshot.

        Raises:
            BadRequest: If the datafile is invalid.
            UnsupportedDatafileVersion: If its version is not supported.
        """
        validate_datafile(datafile)
        config = ConfigIndex(datafile)
        self._snapshot.publish(config)
        logger.info(
            "Published datafile revision '%s' (version %s).",
            config.revision,
            config.version,
        )
        return config

    def _decision_service(self) -> Optional[DecisionService]:
        config = self._snapshot.current()
        if config is None:
            logger.error("No datafile loaded; returning no decision.")
            return None
        return DecisionService(config, self.forced_variations)

    @staticmethod
    def _inputs_valid(
        attributes: Optional[Mapping[str, Any]], **keys: Any
    ) -> bool:
        for name, value in keys.items():
            if not _valid_key(value):
                logger.error("Provided '%s' is in an invalid format.", name)
                return False
        if attributes is not None and not isinstance(attributes, Mapping):
            logger.error("Provided attributes are in an invalid format.")
            return False
        return True

    # ------------------------------------------------------------------
    # Experiments

    def get_variation(
        self,
        experiment_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """Return the key of the variation a user is bucketed into.

        Returns:
            Optional[str]: The variation key, or ``None`` if the user does
            not qualify for the experiment.
        """
        if not self._inputs_valid(
            attributes, experiment_key=experiment_key, user_id=user_id
        ):
            return None

        service = self._decision_service()
        if service is None:
            return None

        decision = service.decide_experiment(
            experiment_key, user_id, attributes, self.user_profile_service
        )
        return decision.variation.key if decision else None

    def set_forced_variation(
        self, experiment_key: str, user_id: str, variation_key: Optional[str]
    ) -> bool:
        """Force a user into a variation for the lifetime of this client.

        Args:
            experiment_key: Key of the experiment.
            user_id: The user to force.
            variation_key: Key of the variation, or ``None`` to clear.

        Returns:
            bool: ``False`` if the experiment or the variation is unknown.
        """
        if not self._inputs_valid(None, experiment_key=experiment_key, user_id=user_id):
            return False

        config = self.config
        if config is None or config.get_experiment_from_key(experiment_key) is None:
            logger.error("Experiment key '%s' is not in the datafile.", experiment_key)
            return False

        if variation_key is not None:
            if config.get_variation_from_key(experiment_key, variation_key) is None:
                logger.error(
                    "Variation key '%s' is not in experiment '%s'.",
                    variation_key,
                    experiment_key,
                )
                return False

        stored = self.forced_variations.set(experiment_key, user_id, variation_key)
        if stored:
            if variation_key is None:
                logger.debug(
                    "Cleared forced variation of user '%s' in experiment '%s'.",
                    user_id,
                    experiment_key,
                )
            else:
                logger.debug(
                    "Set variation '%s' for user '%s' in experiment '%s'.",
                    variation_key,
                    user_id,
                    experiment_key,
                )
        return stored

    def get_forced_variation(self, experiment_key: str, user_id: str) -> Optional[str]:
        """Return the forced variation key of a user, if one is set."""
        if not self._inputs_valid(None, experiment_key=experiment_key, user_id=user_id):
            return None
        return self.forced_variations.get(experiment_key, user_id)

    def clear_user_profile(self, user_id: str) -> bool:
        """Forget every sticky bucketing decision stored for a user.

        Returns:
            bool: ``False`` when no profile service is configured or the
            service cannot clear profiles.

        Raises:
            ProfileStoreUnavailable: If the store fails to clear the profile.
        """
        clear = getattr(self.user_profile_service, "clear", None)
        if clear is None:
            return False

        try:
            clear(user_id)
        except RuntimeError as exc:
            logger.warning("Unable to clear user profile for '%s': %s", user_id, exc)
            raise ProfileStoreUnavailable() from exc
        return True

    # ------------------------------------------------------------------
    # Features

    def decide_feature(
        self,
        feature_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Decision]:
        if not self._inputs_valid(attributes, feature_key=feature_key, user_id=user_id):
            return None

        service = self._decision_service()
        if service is None:
            return None
        return service.decide_feature(
            feature_key, user_id, attributes, self.user_profile_service
        )

    def is_feature_enabled(
        self,
        feature_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Return True if the feature is on for this user."""
        decision = self.decide_feature(feature_key, user_id, attributes)
        enabled = bool(decision and decision.variation.feature_enabled)
        logger.info(
            "Feature '%s' is %s for user '%s'.",
            feature_key,
            "enabled" if enabled else "not enabled",
            user_id,
        )
        return enabled

    def get_enabled_features(
        self, user_id: str, attributes: Optional[Mapping[str, Any]] = None
    ) -> List[str]:
        """Return the keys of every feature enabled for this user."""
        if not self._inputs_valid(attributes, user_id=user_id):
            return []

        service = self._decision_service()
        if service is None:
            return []

        enabled = []
        for flag in service.config.feature_flags:
            decision = service.decide_feature(
                flag.key, user_id, attributes, self.user_profile_service
            )
            if decision and decision.variation.feature_enabled:
                enabled.append(flag.key)
        return enabled

    def get_feature_variable(
        self,
        feature_key: str,
        variable_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
        variable_type: Optional[str] = None,
    ) -> Any:
        """Return the typed value of a feature variable for a user.

        The variable's default is used unless the user is bucketed into a
        variation that overrides it.

        Args:
            variable_type: Expected type; ``None`` accepts the declared one.

        Returns:
            The typed value, or ``None`` if the feature or variable is
            unknown or the requested type does not match.
        """
        if not self._inputs_valid(
            attributes,
            feature_key=feature_key,
            variable_key=variable_key,
            user_id=user_id,
        ):
            return None

        config = self.config
        if config is None:
            logger.error("No datafile loaded; returning no variable value.")
            return None

        variable = config.get_feature_variable(feature_key, variable_key)
        if variable is None:
            logger.error(
                "Variable '%s' is not in feature flag '%s'.", variable_key, feature_key
            )
            return None

        if variable_type is not None and variable.type != variable_type:
            logger.warning(
                "Requested variable as type '%s' but variable '%s' is of type '%s'.",
                variable_type,
                variable_key,
                variable.type,
            )
            return None

        decision = DecisionService(config, self.forced_variations).decide_feature(
            feature_key, user_id, attributes, self.user_profile_service
        )
        raw_value = self._variable_value(config, variable, decision, user_id)
        return cast_variable_value(raw_value, variable.type)

    @staticmethod
    def _variable_value(
        config: ConfigIndex,
        variable: FeatureVariable,
        decision: Optional[Decision],
        user_id: str,
    ) -> Optional[str]:
        if decision is None:
            logger.info(
                "User '%s' is not bucketed for variable '%s'; using its default.",
                user_id,
                variable.key,
            )
            return variable.default_value

        overrides = config.get_variable_overrides(decision.variation.id)
        if variable.id not in overrides:
            logger.debug(
                "Variable '%s' is not used in variation '%s'; using its default.",
                variable.key,
                decision.variation.key,
            )
            return variable.default_value
        return overrides[variable.id]

    def get_feature_variable_string(self, feature_key, variable_key, user_id, attributes=None):
        return self.get_feature_variable(
            feature_key, variable_key, user_id, attributes, STRING_TYPE
        )

    def get_feature_variable_boolean(self, feature_key, variable_key, user_id, attributes=None):
        return self.get_feature_variable(
            feature_key, variable_key, user_id, attributes, BOOLEAN_TYPE
        )

    def get_feature_variable_integer(self, feature_key, variable_key, user_id, attributes=None):
        return self.get_feature_variable(
            feature_key, variable_key, user_id, attributes, INTEGER_TYPE
        )

    def get_feature_variable_double(self, feature_key, variable_key, user_id, attributes=None):
        return self.get_feature_variable(
            feature_key, variable_key, user_id, attributes, DOUBLE_TYPE
        )

    def evaluate_flag(
        self,
        feature_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Evaluate a feature flag and resolve all of its variables at once.

        Returns:
            A dict in the spirit of the feature decide response::

                {
                    "feature_key": <str>,
                    "enabled": <bool>,
                    "source": "experiment" | "rollout" | None,
                    "variation_key": <str or None>,
                    "variables": {<variable key>: <typed value>},
                }
        """
        config = self.config
        if config is None or not self._inputs_valid(
            attributes, feature_key=feature_key, user_id=user_id
        ):
            return {
                "feature_key": feature_key,
                "enabled": False,
                "source": None,
                "variation_key": None,
                "variables": {},
            }

        decision = DecisionService(config, self.forced_variations).decide_feature(
            feature_key, user_id, attributes, self.user_profile_service
        )

        feature = config.get_feature_flag_from_key(feature_key)
        variables = {}
        if feature is not None:
            for variable in feature.variables:
                raw_value = self._variable_value(config, variable, decision, user_id)
                variables[variable.key] = cast_variable_value(raw_value, variable.type)

        return {
            "feature_key": feature_key,
            "enabled": bool(decision and decision.variation.feature_enabled),
            "source": decision.source if decision else None,
            "variation_key": decision.variation.key if decision else None,
            "variables": variables,
        }


def get_flag_client() -> FlagClient:
    """Return the :class:`FlagClient` attached to the current Flask app."""
    return current_app.extensions["flag_client"]


def require_config(client: FlagClient) -> ConfigIndex:
    """Return the client's current snapshot.

    Raises:
        DatafileNotLoaded: If no datafile has been published yet.
    """
    config = client.config
    if config is None:
        raise DatafileNotLoaded()
    return config
