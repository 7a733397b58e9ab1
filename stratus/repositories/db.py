# StratusFlags/stratus/repositories/db.py
"""Database connection utilities for StratusFlags.

Sticky bucketing can be backed by PostgreSQL. This module exposes a small
helper to obtain psycopg connections with dict-style rows. The database
is optional: it is only touched when ``DATABASE_URL`` is configured.
"""


from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from dotenv import load_dotenv


load_dotenv()


def get_database_url() -> Optional[str]:
    """Return ``DATABASE_URL`` from the environment, or ``None``."""
    return os.getenv("DATABASE_URL") or None


@contextmanager
def get_connection() -> Iterator[psycopg.Connection]:
    """Yield a psycopg connection configured with dict-style rows.

    The connection is committed on success and always closed, even if an
    exception occurs.

    Yields:
        psycopg.Connection: An open database connection.

    Raises:
        RuntimeError: If ``DATABASE_URL`` is not set or the connection
            cannot be established.
    """
    database_url = get_database_url()
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. Make sure .env is configured."
        )

    try:
        with psycopg.connect(database_url, row_factory=dict_row) as conn:
            yield conn
    except psycopg.OperationalError as exc:
        raise RuntimeError("Database connection failed.") from exc
