# Overview: Flask API routes for sales checkout; parses input and returns JSON responses.

# backend/app/routes/sales.py
"""
Sales Checkout API Routes

WHY: A sale is opened with priced lines, paid through the payments routes,
then completed (stock out, loyalty in) or cancelled.

DESIGN:
- Prices and tax rates are snapshotted by the service, never sent by the client
- Completion requires a fully paid settlement
- Completing twice answers 200 with already_processed=true

SECURITY:
- Any identified actor (cashier, manager, admin) may open, complete or cancel
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..services import sales_service, settings_service
from ..services.exceptions import AlreadyProcessedError, PosCoreError
from ..validation import coerce_int, coerce_list, coerce_str, require_json_object
from .errors import domain_error_response, internal_error_response


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


# =============================================================================
# SALE CREATION
# =============================================================================

@sales_bp.post("")
@require_actor
def create_sale_route():
    """
    Open a PENDING sale.

    Request body:
    {
        "lines": [{"product_id": 1, "quantity": 2}],
        "customer_id": 7,  (optional)
        "manual_discount_cents": 0,  (optional)
        "points_to_redeem": 0  (optional, requires customer_id)
    }

    Returns:
        201: Sale with lines and settlement fields
        400: Invalid input or redemption above the cap
        404: Unknown product or customer
        409: Insufficient stock
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        sale = sales_service.create_sale(
            cashier_id=g.actor_id,
            lines=coerce_list("lines", data.get("lines")),
            config=settings_service.load_config(),
            customer_id=coerce_int("customer_id", data.get("customer_id"), required=False),
            manual_discount_cents=coerce_int(
                "manual_discount_cents", data.get("manual_discount_cents", 0), minimum=0
            ),
            points_to_redeem=coerce_int("points_to_redeem", data.get("points_to_redeem", 0), minimum=0),
        )

        return jsonify({"sale": sales_service.sale_to_dict(sale)}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return internal_error_response()


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    """Sale with lines."""
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"sale": sales_service.sale_to_dict(sale)}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return internal_error_response()


# =============================================================================
# LIFECYCLE
# =============================================================================

@sales_bp.post("/<int:sale_id>/complete")
@require_actor
def complete_sale_route(sale_id: int):
    """
    Complete a fully paid sale.

    Returns:
        200: Sale COMPLETED (includes points_awarded), or already_processed
        409: Not fully paid, mobile request pending, insufficient stock
    """
    try:
        sale = sales_service.complete_sale(
            sale_id, actor_id=g.actor_id, config=settings_service.load_config()
        )
        return jsonify({"sale": sale}), 200

    except AlreadyProcessedError as e:
        sale = sales_service.get_sale(sale_id)
        return domain_error_response(e, sale=sales_service.sale_to_dict(sale))
    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete sale")
        return internal_error_response()


@sales_bp.post("/<int:sale_id>/cancel")
@require_actor
def cancel_sale_route(sale_id: int):
    """
    Cancel a pending sale.

    Request body (optional):
    {
        "reason": "Customer walked away"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.cancel_sale(
            sale_id,
            actor_id=g.actor_id,
            reason=coerce_str("reason", data.get("reason"), required=False, max_length=255),
        )
        return jsonify({"sale": sale}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel sale")
        return internal_error_response()
