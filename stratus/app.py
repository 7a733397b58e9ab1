# StratusFlags/stratus/app.py

"""StratusFlags service entrypoint.

This module creates and configures the Flask application: it loads the
initial datafile, wires the sticky bucketing store, and applies
development-time CORS settings for local frontends.
It then starts the HTTP server using environment-based configuration.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

from stratus.blueprints.admin.datafile_admin import datafile_admin_bp
from stratus.blueprints.admin.overrides_admin import overrides_admin_bp
from stratus.blueprints.decide.decide import decide_bp
from stratus.blueprints.system.health import health_bp
from stratus.errors.handlers import register_error_handlers
from stratus.repositories.db import get_database_url
from stratus.repositories.memory_repo import InMemoryUserProfileService
from stratus.repositories.postgres_profiles_repo import PostgresUserProfileService
from stratus.services.decision_service import UserProfileService
from stratus.services.flag_service import FlagClient

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Send log records to stderr at ``LOG_LEVEL`` (default INFO)."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def load_datafile(path: str) -> dict:
    """Read a JSON datafile from disk.

    Raises:
        RuntimeError: If the file is missing or is not valid JSON.
    """
    datafile_path = Path(path)
    try:
        with datafile_path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise RuntimeError(f"Unable to read datafile '{datafile_path}'.") from exc


def _default_user_profile_service() -> UserProfileService:
    # Postgres when configured, process memory otherwise.
    if get_database_url():
        return PostgresUserProfileService()
    return InMemoryUserProfileService()


def create_app(
    datafile: Optional[dict] = None,
    admin_token: Optional[str] = None,
    user_profile_service: Optional[UserProfileService] = None,
) -> Flask:
    """Create and configure the StratusFlags Flask application instance.

    This factory loads environment variables, builds the FlagClient,
    registers blueprints, and applies global error handlers.

    Args:
        datafile: Initial datafile; defaults to the JSON file at
            ``DATAFILE_PATH`` when that variable is set.
        admin_token: Shared secret for admin endpoints; defaults to
            ``ADMIN_TOKEN``.
        user_profile_service: Sticky bucketing store; defaults to
            Postgres if ``DATABASE_URL`` is set, else in memory.

    Returns:
        Flask: A configured Flask application instance.
    """
    load_dotenv()
    configure_logging()
    app = Flask(__name__)

    app.config["ADMIN_TOKEN"] = admin_token or os.getenv("ADMIN_TOKEN", "")

    if datafile is None and os.getenv("DATAFILE_PATH"):
        datafile = load_datafile(os.environ["DATAFILE_PATH"])

    app.extensions["flag_client"] = FlagClient(
        datafile=datafile,
        user_profile_service=(
            user_profile_service
            if user_profile_service is not None
            else _default_user_profile_service()
        ),
    )
    if datafile is None:
        logger.warning("Starting without a datafile; decisions return 503.")

    # Register JSON error handlers (400/404/503/500, etc.).
    register_error_handlers(app)

    # System & health
    app.register_blueprint(health_bp)           # /health/

    # Public decision endpoints (SDK / runtime)
    app.register_blueprint(decide_bp)           # /decide/*

    # Admin APIs (datafile publication, overrides)
    app.register_blueprint(datafile_admin_bp)   # /admin/datafile/
    app.register_blueprint(overrides_admin_bp)  # /admin/forced-variations/, /admin/user-profiles/

    return app


if __name__ == "__main__":
    app = create_app()

    # Allow local frontends to call this API directly.
    # In production, CORS should be enforced at the reverse proxy layer.
    CORS(
        app,
        resources={
            r"/*": {
                "origins": [
                    "http://localhost:3000",
                    "http://localhost:5173",
                ],
            },
        },
        supports_credentials=False,
        allow_headers=["Content-Type", "X-Admin-Token"],
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    )

    # HTTP server configuration derived from environment variables.
    port = int(os.getenv("BACKEND_PORT", "8000"))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    app.run(
        host="0.0.0.0",
        port=port,
        debug=debug,
    )
