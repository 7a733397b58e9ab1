"""
Validators for /decide/ and forced-variation requests using JSON Schema.

Schemas are loaded once at import time; helpers raise BadRequest on error.
"""


from pathlib import Path
import json
from jsonschema import validate as js_validate, ValidationError
from stratus.errors.handlers import BadRequest


SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


def _load(name: str) -> dict:
    with (SCHEMAS_DIR / name).open("r", encoding="utf-8") as f:
        return json.load(f)


DECIDE_REQUEST_SCHEMA = _load("DecideRequest.schema.json")
FORCED_VARIATION_REQUEST_SCHEMA = _load("ForcedVariationRequest.schema.json")


def _validate(payload: dict, schema: dict, name: str) -> None:
    if not isinstance(payload, dict):
        raise BadRequest("Payload must be a JSON object.")

    try:
        js_validate(instance=payload, schema=schema)
    except ValidationError as e:
        msg = getattr(e, "message", None) or str(e)
        raise BadRequest(f"Invalid {name}: {msg}")


def validate_decide_payload(payload: dict, *required: str) -> None:
    """
    Validate a decide request body.

    Args:
        payload: Parsed JSON body.
        required: Extra keys the endpoint needs (e.g. ``"feature_key"``).

    Raises:
        BadRequest: If payload is not JSON, doesn't match the schema, or
            misses one of ``required``.
    """
    _validate(payload, DECIDE_REQUEST_SCHEMA, "DecideRequest")

    missing = [key for key in required if key not in payload]
    if missing:
        raise BadRequest(
            f"Invalid DecideRequest: '{missing[0]}' is a required property"
        )


def validate_forced_variation_payload(payload: dict) -> None:
    """
    Validate a forced-variation request body.

    Raises:
        BadRequest: If payload is not JSON or doesn't match the schema.
    """
    _validate(payload, FORCED_VARIATION_REQUEST_SCHEMA, "ForcedVariationRequest")
