# StratusFlags/stratus/services/decision_service.py
"""Decision orchestration for experiments and feature flags.

A :class:`DecisionService` is bound to a single configuration snapshot,
so a decision in flight never observes a half-applied reload. The only
side effects are reads from the injected forced-variation store and
reads/writes on the optional sticky-bucketing (user profile) service.

Experiment decision order:
    1. runtime forced variation
    2. whitelist embedded in the datafile
    3. mutual exclusion group ("random" policy)
    4. audience conditions
    5. sticky bucketing lookup
    6. bucketing
    7. sticky bucketing save
"""


from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from stratus.services import bucketer
from stratus.services.audience_evaluator import is_user_in_audience
from stratus.services.config_index import (
    ConfigIndex,
    Experiment,
    FeatureFlag,
    Variation,
)

logger = logging.getLogger(__name__)


BUCKETING_ID_ATTRIBUTE = "$opt_bucketing_id"


class DecisionSource:
    EXPERIMENT = "experiment"
    ROLLOUT = "rollout"


@dataclass(frozen=True)
class Decision:
    """Outcome of a decision.

    ``experiment`` is the experiment the variation belongs to; for
    rollout decisions it is the matched rollout rule.
    """

    variation: Variation
    source: str
    experiment: Optional[Experiment] = None


class ForcedVariationStore(Protocol):
    def set(
        self, experiment_key: str, user_id: str, variation_key: Optional[str]
    ) -> bool:
        ...

    def get(self, experiment_key: str, user_id: str) -> Optional[str]:
        ...


class UserProfileService(Protocol):
    def lookup(self, user_id: str) -> Optional[Mapping[str, str]]:
        ...

    def save(self, user_id: str, experiment_id: str, variation_id: str) -> bool:
        ...


def get_bucketing_id(
    user_id: str, attributes: Optional[Mapping[str, Any]]
) -> str:
    """Return the id to hash on: ``$opt_bucketing_id`` if set, else the user id."""
    if attributes:
        bucketing_id = attributes.get(BUCKETING_ID_ATTRIBUTE)
        if bucketing_id is not None:
            if isinstance(bucketing_id, str):
                return bucketing_id
            logger.warning("Bucketing ID attribute is not a string. Defaulted to user ID.")
    return user_id


class DecisionService:
    """Decide variations against one :class:`ConfigIndex` snapshot.

    Args:
        config: The snapshot to evaluate against.
        forced_variations: Optional runtime forced-variation store.
    """

    def __init__(
        self,
        config: ConfigIndex,
        forced_variations: Optional[ForcedVariationStore] = None,
    ) -> None:
        self.config = config
        self.forced_variations = forced_variations

    # ------------------------------------------------------------------
    # Experiments

    def decide_experiment(
        self,
        experiment_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
        profile_service: Optional[UserProfileService] = None,
    ) -> Optional[Decision]:
        """Decide which variation of an experiment a user sees.

        Args:
            experiment_key: Key of the experiment.
            user_id: The user id.
            attributes: User attributes used for audiences and the
                bucketing id override.
            profile_service: Optional sticky-bucketing collaborator.

        Returns:
            Optional[Decision]: A decision with ``source="experiment"``, or
            ``None`` when the user gets no variation.
        """
        experiment = self.config.get_experiment_from_key(experiment_key)
        if experiment is None:
            logger.info("Experiment key '%s' is not in the datafile.", experiment_key)
            return None
        return self._decide(experiment, user_id, attributes, profile_service)

    def _decide(
        self,
        experiment: Experiment,
        user_id: str,
        attributes: Optional[Mapping[str, Any]],
        profile_service: Optional[UserProfileService],
    ) -> Optional[Decision]:
        if not experiment.is_running:
            logger.info("Experiment '%s' is not running.", experiment.key)
            return None

        variation = self._forced_variation(experiment, user_id)
        if variation is None:
            variation = self._whitelisted_variation(experiment, user_id)
        if variation is not None:
            return Decision(variation, DecisionSource.EXPERIMENT, experiment)

        bucketing_id = get_bucketing_id(user_id, attributes)

        if experiment.in_random_group and not self._in_group_slot(
            experiment, bucketing_id, user_id
        ):
            return None

        if not is_user_in_audience(experiment, attributes):
            logger.info(
                "User '%s' does not meet the conditions to be in experiment '%s'.",
                user_id,
                experiment.key,
            )
            return None

        if profile_service is not None:
            variation = self._stored_variation(profile_service, experiment, user_id)
            if variation is not None:
                return Decision(variation, DecisionSource.EXPERIMENT, experiment)

        variation_id = bucketer.bucket(experiment, bucketing_id)
        variation = (
            self.config.get_variation_by_experiment_id(experiment.id, variation_id)
            if variation_id
            else None
        )
        if variation is None:
            logger.info(
                "User '%s' is in no variation of experiment '%s'.",
                user_id,
                experiment.key,
            )
            return None

        logger.info(
            "User '%s' is in variation '%s' of experiment '%s'.",
            user_id,
            variation.key,
            experiment.key,
        )
        if profile_service is not None:
            self._save_variation(profile_service, experiment, user_id, variation)
        return Decision(variation, DecisionSource.EXPERIMENT, experiment)

    def _forced_variation(
        self, experiment: Experiment, user_id: str
    ) -> Optional[Variation]:
        if self.forced_variations is None:
            return None

        variation_key = self.forced_variations.get(experiment.key, user_id)
        if variation_key is None:
            return None

        variation = self.config.get_variation_from_key(experiment.key, variation_key)
        if variation is None:
            logger.error(
                "Forced variation '%s' is not in experiment '%s'; ignoring it.",
                variation_key,
                experiment.key,
            )
            return None

        logger.info(
            "Variation '%s' is forced for user '%s' in experiment '%s'.",
            variation_key,
            user_id,
            experiment.key,
        )
        return variation

    def _whitelisted_variation(
        self, experiment: Experiment, user_id: str
    ) -> Optional[Variation]:
        variation_key = experiment.forced_variations.get(user_id)
        if variation_key is None:
            return None

        variation = self.config.get_variation_from_key(experiment.key, variation_key)
        if variation is None:
            logger.info(
                "User '%s' is whitelisted into variation '%s', which is not "
                "in experiment '%s'.",
                user_id,
                variation_key,
                experiment.key,
            )
            return None

        logger.info("User '%s' is forced in variation '%s'.", user_id, variation_key)
        return variation

    def _in_group_slot(
        self, experiment: Experiment, bucketing_id: str, user_id: str
    ) -> bool:
        group = self.config.get_group_from_id(experiment.group_id)
        if group is None:
            logger.error(
                "Group '%s' of experiment '%s' is not in the datafile.",
                experiment.group_id,
                experiment.key,
            )
            return False

        experiment_id = bucketer.bucket_group(group, bucketing_id)
        if experiment_id is None:
            logger.info("User '%s' is in no experiment of group '%s'.", user_id, group.id)
            return False
        if experiment_id != experiment.id:
            logger.info(
                "User '%s' is not in experiment '%s' of group '%s'.",
                user_id,
                experiment.key,
                group.id,
            )
            return False
        return True

    def _stored_variation(
        self,
        profile_service: UserProfileService,
        experiment: Experiment,
        user_id: str,
    ) -> Optional[Variation]:
        try:
            profile = profile_service.lookup(user_id)
        except Exception as exc:  # collaborator failure, bucket afresh
            logger.warning(
                "Unable to look up user profile for '%s': %s", user_id, exc
            )
            return None

        if not profile:
            return None

        variation_id = profile.get(experiment.id)
        if variation_id is None:
            return None

        variation = self.config.get_variation_by_experiment_id(experiment.id, variation_id)
        if variation is None:
            logger.info(
                "User '%s' was previously bucketed into variation id '%s' of "
                "experiment '%s', which is no longer in the datafile.",
                user_id,
                variation_id,
                experiment.key,
            )
            return None

        logger.info(
            "Found stored variation '%s' of experiment '%s' for user '%s'.",
            variation.key,
            experiment.key,
            user_id,
        )
        return variation

    def _save_variation(
        self,
        profile_service: UserProfileService,
        experiment: Experiment,
        user_id: str,
        variation: Variation,
    ) -> None:
        try:
            saved = profile_service.save(user_id, experiment.id, variation.id)
        except Exception as exc:  # collaborator failure, decision stands
            logger.warning("Unable to save user profile for '%s': %s", user_id, exc)
            return

        if not saved:
            logger.warning("User profile for '%s' was not saved.", user_id)
            return
        logger.debug(
            "Saved variation '%s' of experiment '%s' for user '%s'.",
            variation.id,
            experiment.id,
            user_id,
        )

    # ------------------------------------------------------------------
    # Features

    def decide_feature(
        self,
        feature_key: str,
        user_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
        profile_service: Optional[UserProfileService] = None,
    ) -> Optional[Decision]:
        """Decide the variation serving a feature flag for a user.

        Feature tests are tried first, in declared order; the rollout is
        consulted only if none of them yields a variation.

        Returns:
            Optional[Decision]: The decision, or ``None``.
        """
        feature = self.config.get_feature_flag_from_key(feature_key)
        if feature is None:
            logger.error("Feature flag key '%s' is not in the datafile.", feature_key)
            return None

        decision = self._decide_feature_tests(feature, user_id, attributes, profile_service)
        if decision is not None:
            return decision

        decision = self._decide_rollout(feature, user_id, attributes)
        if decision is None:
            logger.info(
                "User '%s' is not bucketed into a rollout for feature flag '%s'.",
                user_id,
                feature.key,
            )
        return decision

    def _decide_feature_tests(
        self,
        feature: FeatureFlag,
        user_id: str,
        attributes: Optional[Mapping[str, Any]],
        profile_service: Optional[UserProfileService],
    ) -> Optional[Decision]:
        for experiment_id in feature.experiment_ids:
            experiment = self.config.get_experiment_from_id(experiment_id)
            if experiment is None:
                logger.error(
                    "Experiment id '%s' of feature flag '%s' is not in the datafile.",
                    experiment_id,
                    feature.key,
                )
                continue

            decision = self._decide(experiment, user_id, attributes, profile_service)
            if decision is not None:
                logger.info(
                    "User '%s' is in experiment '%s' of feature '%s'.",
                    user_id,
                    experiment.key,
                    feature.key,
                )
                return decision

        logger.info(
            "User '%s' is not in any experiment of feature '%s'.", user_id, feature.key
        )
        return None

    def _decide_rollout(
        self,
        feature: FeatureFlag,
        user_id: str,
        attributes: Optional[Mapping[str, Any]],
    ) -> Optional[Decision]:
        if not feature.rollout_id:
            logger.debug("Feature flag '%s' is not used in a rollout.", feature.key)
            return None

        rollout = self.config.get_rollout_from_id(feature.rollout_id)
        if rollout is None:
            logger.error(
                "Rollout '%s' of feature flag '%s' is not in the datafile.",
                feature.rollout_id,
                feature.key,
            )
            return None

        if not rollout.rules:
            return None

        bucketing_id = get_bucketing_id(user_id, attributes)
        last_index = len(rollout.rules) - 1

        for index, rule in enumerate(rollout.rules):
            if not is_user_in_audience(rule, attributes):
                logger.debug(
                    "User '%s' does not meet the conditions of rollout rule %s.",
                    user_id,
                    index + 1,
                )
                if index == last_index:
                    return None
                continue

            variation_id = bucketer.bucket(rule, bucketing_id)
            variation = (
                self.config.get_variation_by_experiment_id(rule.id, variation_id)
                if variation_id
                else None
            )
            if variation is None:
                # Matched the audience but not the traffic: excluded.
                logger.debug(
                    "User '%s' is outside the traffic of rollout rule %s.",
                    user_id,
                    index + 1,
                )
                return None

            logger.debug(
                "User '%s' is in variation '%s' of rollout rule %s.",
                user_id,
                variation.key,
                index + 1,
            )
            return Decision(variation, DecisionSource.ROLLOUT, rule)

        return None
