# StratusFlags/stratus/repositories/postgres_profiles_repo.py
"""PostgreSQL-backed sticky bucketing for StratusFlags.

Stores one row per ``(user_id, experiment_id)`` in the ``user_profiles``
table so that a user keeps their variation across datafile reloads.
"""


from typing import Dict, Optional

from psycopg import DatabaseError

from .db import get_connection


class PostgresUserProfileService:
    """User profile service persisting bucketing decisions in Postgres.

    Errors are raised as ``RuntimeError``; the decision service treats
    them as a collaborator failure and carries on without sticky
    bucketing.
    """

    def lookup(self, user_id: str) -> Optional[Dict[str, str]]:
        """Fetch the experiment -> variation map stored for a user.

        Args:
            user_id: The user id.

        Returns:
            A dict mapping experiment ids to variation ids, or ``None`` if
            nothing is stored for this user.

        Raises:
            RuntimeError: If the underlying database operation fails.
        """
        sql = """
            SELECT experiment_id, variation_id
            FROM user_profiles
            WHERE user_id = %(user_id)s;
        """

        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, {"user_id": user_id})
                    rows = cur.fetchall()
        except DatabaseError as exc:
            raise RuntimeError("Failed to look up user profile.") from exc

        if not rows:
            return None
        return {row["experiment_id"]: row["variation_id"] for row in rows}

    def save(self, user_id: str, experiment_id: str, variation_id: str) -> bool:
        """Insert or update the stored variation for a user and experiment.

        Behaviour:
            - If ``(user_id, experiment_id)`` does not exist: insert it.
            - If it exists: overwrite ``variation_id`` and ``updated_at``
              (last write wins).

        Returns:
            bool: ``True`` once the row is written.

        Raises:
            RuntimeError: If the underlying database operation fails.
        """
        sql = """
            INSERT INTO user_profiles (
                user_id,
                experiment_id,
                variation_id
            )
            VALUES (
                %(user_id)s,
                %(experiment_id)s,
                %(variation_id)s
            )
            ON CONFLICT (user_id, experiment_id)
            DO UPDATE SET
                variation_id = EXCLUDED.variation_id,
                updated_at = NOW();
        """

        params = {
            "user_id": user_id,
            "experiment_id": experiment_id,
            "variation_id": variation_id,
        }

        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
        except DatabaseError as exc:
            raise RuntimeError("Failed to save user profile.") from exc
        return True

    def clear(self, user_id: str) -> None:
        """Delete every stored decision for a user.

        The operation is idempotent.

        Raises:
            RuntimeError: If the underlying database operation fails.
        """
        sql = """
            DELETE FROM user_profiles
            WHERE user_id = %(user_id)s;
        """

        try:
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, {"user_id": user_id})
        except DatabaseError as exc:
            raise RuntimeError("Failed to clear user profile.") from exc
