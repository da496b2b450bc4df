# Overview: M-Pesa provider webhook.

"""
The provider retries callbacks it considers undelivered. This endpoint
always acknowledges with ResultCode 0 once the payload is read; unknown,
duplicate and malformed callbacks are logged by the adapter.

No actor headers: the caller is the provider, not a till.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import mpesa_service


mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/api/mpesa")

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


@mpesa_bp.post("/callback")
def callback_route():
    try:
        mpesa_service.handle_callback(request.get_json(silent=True))
    except Exception:
        current_app.logger.exception("Failed to apply M-Pesa callback")
    return jsonify(ACCEPTED), 200
