# StratusFlags/stratus/services/auth_service.py

"""
Authentication helpers and decorators.

Admin endpoints (datafile publication, forced variations, sticky profile
resets) are guarded by a shared secret:

    - Header: ``X-Admin-Token``
    - Configured through ``ADMIN_TOKEN`` (``app.config["ADMIN_TOKEN"]``).

Decide endpoints are public.
"""

from __future__ import annotations

import hmac
from functools import wraps
from typing import Callable, Optional, TypeVar, cast

from flask import current_app, jsonify, request


F = TypeVar("F", bound=Callable[..., object])

ADMIN_TOKEN_HEADER = "X-Admin-Token"


def admin_token_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    """Compare tokens in constant time.

    Returns:
        bool: ``False`` when either token is empty.
    """
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin_token(func: F) -> F:
    """Flask view decorator that enforces admin token authentication.

    Behaviour:
        - Reads the ``X-Admin-Token`` header from the request.
        - If no admin token is configured, every call is rejected.
        - If invalid or missing -> returns ``401`` with a JSON error.
        - If valid -> calls the wrapped view.

    Args:
        func: The view function to wrap.

    Returns:
        F: The wrapped view function.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        provided = request.headers.get(ADMIN_TOKEN_HEADER, "").strip()
        expected = current_app.config.get("ADMIN_TOKEN")

        if not admin_token_matches(provided, expected):
            response = jsonify(
                {
                    "error": "Invalid or missing admin token",
                    "code": "auth.admin_token_invalid",
                }
            )
            return response, 401

        return func(*args, **kwargs)

    return cast(F, wrapper)
