from flask import Blueprint, jsonify

from stratus.services.flag_service import get_flag_client

health_bp = Blueprint("health_bp", __name__, url_prefix="/health")

@health_bp.get("/")
def health() -> jsonify:
    """
    Health probe.

    Returns:
        {"status": "ok", "datafile_loaded": bool, "revision": str | null}
    """
    config = get_flag_client().config
    return jsonify(
        {
            "status": "ok",
            "datafile_loaded": config is not None,
            "revision": config.revision if config is not None else None,
        }
    )
