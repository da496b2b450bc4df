from __future__ import annotations

from flask import Blueprint, jsonify, request, g, current_app

from ..decorators import require_actor, require_role
from ..services import settings_service
from ..services.exceptions import PosCoreError
from ..validation import require_json_object
from .errors import domain_error_response, internal_error_response


settings_bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@settings_bp.get("")
@require_actor
def get_settings_route():
    try:
        return jsonify({"settings": settings_service.get_settings()}), 200
    except Exception:
        current_app.logger.exception("Failed to read settings")
        return internal_error_response()


@settings_bp.put("")
@require_actor
@require_role("admin")
def update_settings_route():
    """
    Body: {"tax_rate_bps": 1600, "mpesa_shortcode": "174379", ...}

    All keys are validated before any is written.
    """
    try:
        payload = require_json_object(request.get_json(silent=True))
        settings = settings_service.update_settings(payload, actor_id=g.actor_id)
        current_app.logger.info("Settings updated by %s: %s", g.actor_id, sorted(payload))
        return jsonify({"settings": settings}), 200
    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update settings")
        return internal_error_response()
