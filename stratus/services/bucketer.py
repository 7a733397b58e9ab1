# StratusFlags/stratus/services/bucketer.py
"""Deterministic hash bucketing.

The bucket value must match every other SDK in the family bit for bit:
MurmurHash3 (x86, 32-bit) with seed 1 over ``bucketing_id + entity_id``,
read as an unsigned 32-bit integer and scaled onto ``[0, 10000)``.
"""


from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import mmh3

from stratus.services.config_index import Experiment, Group, TrafficAllocation

logger = logging.getLogger(__name__)


HASH_SEED = 1
MAX_HASH_VALUE = 2 ** 32
UNSIGNED_MAX_32_BIT_VALUE = 0xFFFFFFFF
MAX_TRAFFIC_VALUE = 10000


def bucket_value(bucketing_id: str, entity_id: str) -> int:
    """Map a (bucketing id, entity id) pair onto ``[0, 10000)``.

    Args:
        bucketing_id: Usually the user id.
        entity_id: Experiment id, rollout rule id, or group id.

    Returns:
        int: The bucket value.
    """
    bucketing_key = f"{bucketing_id}{entity_id}"
    hash_code = mmh3.hash(bucketing_key, HASH_SEED) & UNSIGNED_MAX_32_BIT_VALUE
    ratio = float(hash_code) / MAX_HASH_VALUE
    return math.floor(ratio * MAX_TRAFFIC_VALUE)


def find_bucket(
    value: int, allocations: Sequence[TrafficAllocation]
) -> Optional[str]:
    """Resolve a bucket value against a sorted traffic allocation table.

    Returns:
        Optional[str]: The entity id of the first entry whose
        ``end_of_range`` exceeds ``value``, or ``None`` when the value
        falls in the unallocated remainder (or on an empty entity id).
    """
    for entry in allocations:
        if value < entry.end_of_range:
            return entry.entity_id or None
    return None


def bucket(experiment: Experiment, bucketing_id: str) -> Optional[str]:
    """Bucket into one of an experiment's (or rollout rule's) variations.

    Returns:
        Optional[str]: The variation id, or ``None`` if unallocated.
    """
    value = bucket_value(bucketing_id, experiment.id)
    logger.debug(
        "Assigned bucket %s to bucketing id '%s' for '%s'.",
        value,
        bucketing_id,
        experiment.key,
    )
    return find_bucket(value, experiment.traffic_allocation)


def bucket_group(group: Group, bucketing_id: str) -> Optional[str]:
    """Bucket into one member experiment of a mutual exclusion group.

    Returns:
        Optional[str]: The member experiment id, or ``None``.
    """
    value = bucket_value(bucketing_id, group.id)
    logger.debug(
        "Assigned bucket %s to bucketing id '%s' for group '%s'.",
        value,
        bucketing_id,
        group.id,
    )
    return find_bucket(value, group.traffic_allocation)
