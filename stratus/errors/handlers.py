# StratusFlags/stratus/errors/handlers.py
"""Centralized JSON error handling for the StratusFlags service.

Defines the exceptions raised outside the decision core (request and
datafile validation, missing resources) and registers Flask error
handlers so that errors are returned as consistent JSON payloads.

The decision core itself never raises for missing experiments, features
or variations: those resolve to "no decision".
"""


from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    """Exception raised for bad requests (HTTP 400).

    Attributes:
        detail: Human-readable description of the error.
    """

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(Exception):
    """Exception raised for missing resources (HTTP 404).

    Attributes:
        detail: Human-readable description of the error.
    """

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class UnsupportedDatafileVersion(BadRequest):
    """Raised when a datafile declares a version this service cannot read."""


class DatafileNotLoaded(Exception):
    """Raised when a decision is requested before any datafile is published (HTTP 503)."""

    def __init__(self, detail: str = "No datafile has been loaded.") -> None:
        super().__init__(detail)
        self.detail = detail


class ProfileStoreUnavailable(Exception):
    """Raised when the sticky bucketing store cannot be reached (HTTP 503)."""

    def __init__(self, detail: str = "The user profile store is unavailable.") -> None:
        super().__init__(detail)
        self.detail = detail


def register_error_handlers(app: Flask) -> None:
    """Register JSON error handlers for common HTTP errors.

    Args:
        app: The Flask application instance to configure.
    """

    @app.errorhandler(BadRequest)
    def _on_bad_request(err: BadRequest) -> tuple[Any, int]:
        """Return HTTP 400 for validation/contract issues."""
        return jsonify({"error": type(err).__name__, "detail": err.detail}), 400

    @app.errorhandler(NotFound)
    def _on_not_found(err: NotFound) -> tuple[Any, int]:
        """Return HTTP 404 for missing resources."""
        return jsonify({"error": "NotFound", "detail": err.detail}), 404

    @app.errorhandler(DatafileNotLoaded)
    def _on_datafile_not_loaded(err: DatafileNotLoaded) -> tuple[Any, int]:
        return jsonify({"error": "DatafileNotLoaded", "detail": err.detail}), 503

    @app.errorhandler(ProfileStoreUnavailable)
    def _on_profile_store_unavailable(err: ProfileStoreUnavailable) -> tuple[Any, int]:
        return jsonify({"error": "ProfileStoreUnavailable", "detail": err.detail}), 503

    @app.errorhandler(HTTPException)
    def _on_http_exception(err: HTTPException) -> tuple[Any, int]:
        """Fallback for other HTTP errors (for example 405)."""
        code = err.code or 500
        name = err.name or "HTTPException"
        return jsonify({"error": name, "detail": err.description}), code

    @app.errorhandler(Exception)
    def _on_unexpected(exc: Exception) -> tuple[Any, int]:
        """Last-resort handler to avoid HTML stack traces."""
        logger.exception("Unhandled error: %s", exc)
        return (
            jsonify(
                {
                    "error": "InternalServerError",
                    "detail": "An unexpected error occurred.",
                }
            ),
            500,
        )
