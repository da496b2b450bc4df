# Overview: Flask API routes for loyalty member lookups.

from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_actor
from ..services import loyalty_service, settings_service
from ..services.exceptions import PosCoreError
from ..validation import coerce_int
from .errors import domain_error_response, internal_error_response


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")


@loyalty_bp.get("/customers/<int:customer_id>")
@require_actor
def get_member_route(customer_id: int):
    """
    Points balance, tier and recent point history for a customer.

    Query params:
        total_cents: pre-discount sale total; when given, the response
            includes max_redeemable_points for that total
    """
    try:
        member = loyalty_service.get_member(customer_id)

        total_cents = coerce_int("total_cents", request.args.get("total_cents"), required=False, minimum=0)
        if total_cents is not None:
            member["max_redeemable_points"] = loyalty_service.max_redeemable_points(
                customer_id, total_cents, settings_service.load_config()
            )

        return jsonify({"member": member}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get loyalty member")
        return internal_error_response()
