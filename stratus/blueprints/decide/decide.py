"""Runtime decision endpoints for StratusFlags.

This blueprint exposes the public `/decide/` API used by client
applications to ask which variation a user sees and whether a feature
is enabled for a given user context.
"""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from stratus.errors.handlers import NotFound
from stratus.services.flag_service import get_flag_client, require_config
from stratus.validators.decide_validator import validate_decide_payload


decide_bp = Blueprint("decide_bp", __name__, url_prefix="/decide")


@decide_bp.post("/experiment")
def post_decide_experiment() -> tuple[Any, int]:
    """Decide the variation of an experiment for a user.

    Request JSON body (DecideRequest):
        {
            "experiment_key": "string",
            "user_id": "string",
            "attributes": { ... }
        }

    Behaviour:
        - Returns 503 if no datafile is loaded.
        - Returns 200 with ``variation_key: null`` when the user gets no
          variation (unknown experiment, audience mismatch, excluded...).

    Returns:
        tuple: (JSON response, HTTP status code).
    """
    payload = request.get_json(silent=True) or {}
    validate_decide_payload(payload, "experiment_key")

    client = get_flag_client()
    require_config(client)

    variation_key = client.get_variation(
        payload["experiment_key"],
        payload["user_id"],
        payload.get("attributes"),
    )

    return (
        jsonify(
            {
                "experiment_key": payload["experiment_key"],
                "user_id": payload["user_id"],
                "variation_key": variation_key,
            }
        ),
        200,
    )


@decide_bp.post("/feature")
def post_decide_feature() -> tuple[Any, int]:
    """Evaluate a feature flag for a user.

    Request JSON body (DecideRequest):
        {
            "feature_key": "string",
            "user_id": "string",
            "attributes": { ... }
        }

    Behaviour:
        - Returns 404 with {"error": "NotFound"} if the feature does not
          exist in the current datafile.
        - Otherwise returns 200 with the flag evaluation (enabled flag,
          decision source, variation key and typed variables).

    Returns:
        tuple: (JSON response, HTTP status code).
    """
    payload = request.get_json(silent=True) or {}
    validate_decide_payload(payload, "feature_key")

    client = get_flag_client()
    config = require_config(client)

    feature_key = payload["feature_key"]
    if config.get_feature_flag_from_key(feature_key) is None:
        raise NotFound(f"Feature flag '{feature_key}' does not exist.")

    result = client.evaluate_flag(
        feature_key,
        payload["user_id"],
        payload.get("attributes"),
    )

    return jsonify(result), 200


@decide_bp.post("/features")
def post_enabled_features() -> tuple[Any, int]:
    """List every feature enabled for a user.

    Request JSON body: ``{"user_id": "string", "attributes": { ... }}``.

    Returns:
        tuple: (JSON response, HTTP status code).
    """
    payload = request.get_json(silent=True) or {}
    validate_decide_payload(payload)

    client = get_flag_client()
    require_config(client)

    enabled = client.get_enabled_features(
        payload["user_id"], payload.get("attributes")
    )

    return jsonify({"user_id": payload["user_id"], "enabled_features": enabled}), 200
