# StratusFlags/stratus/blueprints/admin/overrides_admin.py
"""Admin-facing override endpoints for StratusFlags.

Runtime forced variations and sticky bucketing resets. Both are mutable
state living outside the configuration snapshot and are only changed
through these explicit operations.
"""


from __future__ import annotations

from typing import Any

from flask import Blueprint, Response, jsonify, request

from stratus.errors.handlers import BadRequest, NotFound
from stratus.services.auth_service import require_admin_token
from stratus.services.flag_service import get_flag_client, require_config
from stratus.validators.decide_validator import validate_forced_variation_payload


overrides_admin_bp = Blueprint("overrides_admin_bp", __name__, url_prefix="/admin")


@overrides_admin_bp.put("/forced-variations/")
@require_admin_token
def put_forced_variation() -> tuple[Any, int]:
    """Force (or clear, with ``variation_key: null``) a user's variation.

    Body JSON (ForcedVariationRequest):
    {
        "experiment_key": "string",
        "user_id": "string",
        "variation_key": "string" | null
    }

    Returns:
        tuple: (JSON response, HTTP status code). 400 when the experiment
        or the variation does not exist in the current datafile.
    """
    payload = request.get_json(silent=True) or {}
    validate_forced_variation_payload(payload)

    client = get_flag_client()
    require_config(client)

    stored = client.set_forced_variation(
        payload["experiment_key"],
        payload["user_id"],
        payload["variation_key"],
    )
    if not stored:
        raise BadRequest(
            f"Cannot force variation '{payload['variation_key']}' "
            f"in experiment '{payload['experiment_key']}'."
        )

    return jsonify(payload), 200


@overrides_admin_bp.get("/forced-variations/<string:experiment_key>/<string:user_id>")
@require_admin_token
def get_forced_variation(experiment_key: str, user_id: str) -> tuple[Any, int]:
    """Return the forced variation of a user in an experiment.

    Returns:
        tuple: (JSON response, HTTP status code). 404 when nothing is forced.
    """
    variation_key = get_flag_client().get_forced_variation(experiment_key, user_id)
    if variation_key is None:
        raise NotFound(
            f"No forced variation for user '{user_id}' in '{experiment_key}'."
        )

    return (
        jsonify(
            {
                "experiment_key": experiment_key,
                "user_id": user_id,
                "variation_key": variation_key,
            }
        ),
        200,
    )


@overrides_admin_bp.delete("/user-profiles/<string:user_id>")
@require_admin_token
def delete_user_profile(user_id: str) -> Response | tuple[str, int]:
    """Forget the sticky bucketing decisions stored for a user.

    Behaviour:
        - Idempotent: 204 even if nothing was stored.
        - 404 if sticky bucketing is not configured.
        - 503 if the sticky bucketing store cannot be reached.

    Returns:
        tuple: ("", 204) on success.
    """
    if not get_flag_client().clear_user_profile(user_id):
        raise NotFound("Sticky bucketing is not configured.")

    return "", 204
