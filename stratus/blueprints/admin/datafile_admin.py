# StratusFlags/stratus/blueprints/admin/datafile_admin.py
"""Admin-facing datafile endpoints for StratusFlags.

Publishes a new configuration snapshot and describes the current one.
Publishing replaces the whole snapshot; it never edits entries in place.
"""


from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from stratus.services.auth_service import require_admin_token
from stratus.services.flag_service import get_flag_client, require_config


datafile_admin_bp = Blueprint(
    "datafile_admin", __name__, url_prefix="/admin/datafile"
)


@datafile_admin_bp.post("/")
@require_admin_token
def post_publish_datafile() -> tuple[Any, int]:
    """Validate and publish a new datafile.

    - Requires a valid X-Admin-Token header.
    - Validates the payload against datafile.schema.json plus the
      traffic allocation checks (400 on failure; the previous snapshot
      stays live).
    - Builds a new ConfigIndex and swaps it in.

    Returns:
        tuple: (JSON snapshot summary, HTTP status code).
    """
    payload = request.get_json(silent=True)

    config = get_flag_client().reload(payload)

    return jsonify(config.summary()), 200


@datafile_admin_bp.get("/")
@require_admin_token
def get_datafile_summary() -> tuple[Any, int]:
    """Describe the live snapshot (version, revision, keys).

    Returns:
        tuple: (JSON snapshot summary, HTTP status code).
               Returns 503 if no datafile is loaded.
    """
    config = require_config(get_flag_client())
    return jsonify(config.summary()), 200
