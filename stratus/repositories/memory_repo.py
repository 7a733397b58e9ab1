# StratusFlags/stratus/repositories/memory_repo.py
"""In-memory collaborators for StratusFlags.

Holds the live configuration snapshot, runtime forced variations and an
in-process sticky-bucketing store. Nothing here is persisted; it is the
default wiring for local runs and tests.
"""


from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from stratus.services.config_index import ConfigIndex


class ConfigSnapshotHolder:
    """Holds the current :class:`ConfigIndex` snapshot.

    A reload publishes a whole new snapshot; readers grab the reference
    once and keep using it for the rest of their call.
    """

    def __init__(self, config: Optional[ConfigIndex] = None) -> None:
        self._config = config

    def publish(self, config: ConfigIndex) -> None:
        """Replace the current snapshot with ``config``."""
        self._config = config

    def current(self) -> Optional[ConfigIndex]:
        """Return the current snapshot, or ``None`` if none was published."""
        return self._config


class InMemoryForcedVariationStore:
    """Runtime forced variations keyed by ``(experiment_key, user_id)``."""

    def __init__(self) -> None:
        self._forced: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def set(
        self, experiment_key: str, user_id: str, variation_key: Optional[str]
    ) -> bool:
        """Force a user into a variation, or clear it when ``variation_key`` is None.

        Returns:
            bool: Always ``True``; this store cannot fail.
        """
        with self._lock:
            if variation_key is None:
                self._forced.pop((experiment_key, user_id), None)
            else:
                self._forced[(experiment_key, user_id)] = variation_key
        return True

    def get(self, experiment_key: str, user_id: str) -> Optional[str]:
        return self._forced.get((experiment_key, user_id))


class InMemoryUserProfileService:
    """Sticky bucketing kept in process memory.

    Profiles map a user id to ``{experiment_id: variation_id}``.
    """

    def __init__(self) -> None:
        self._profiles: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def lookup(self, user_id: str) -> Optional[Dict[str, str]]:
        """Return a copy of the user's experiment bucket map, if any."""
        profile = self._profiles.get(user_id)
        return dict(profile) if profile is not None else None

    def save(self, user_id: str, experiment_id: str, variation_id: str) -> bool:
        """Record a bucketing decision. Last write wins."""
        with self._lock:
            self._profiles.setdefault(user_id, {})[experiment_id] = variation_id
        return True

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._profiles.pop(user_id, None)
