# Overview: Flask API routes for payment settlement; parses input and returns JSON responses.

# backend/app/routes/payments.py
"""
Payment Settlement API Routes

WHY: Enable sales to be paid in cash, by M-Pesa, or a mix of both.

DESIGN:
- Cash tenders apply immediately; over-tender shows up as change
- M-Pesa pushes prompt the customer's phone; the amount is credited only
  when the provider confirms through /api/mpesa/callback
- The summary endpoint expires stale pushes before answering

ERRORS:
- 502: provider refused the push (nothing charged)
- 503: provider unreachable (nothing charged, safe to retry)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..services import settings_service, settlement_service
from ..services.exceptions import PosCoreError
from ..validation import coerce_int, coerce_str, require_json_object
from .errors import domain_error_response, internal_error_response


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# TENDERS
# =============================================================================

@payments_bp.post("/sales/<int:sale_id>/cash")
@require_actor
def add_cash_route(sale_id: int):
    """
    Add a cash tender to a sale.

    Request body:
    {
        "amount_cents": 10000
    }

    Returns:
        200: Settlement summary
        400: Invalid amount
        409: Sale not pending or already paid
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        amount_cents = coerce_int("amount_cents", data.get("amount_cents"), minimum=1)

        summary = settlement_service.add_cash_payment(sale_id, amount_cents, actor_id=g.actor_id)
        return jsonify({"settlement": summary}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add cash payment")
        return internal_error_response()


@payments_bp.post("/sales/<int:sale_id>/mpesa")
@require_actor
def mpesa_push_route(sale_id: int):
    """
    Start an M-Pesa STK push for part or all of the remaining balance.

    Request body:
    {
        "phone": "0712345678",
        "amount_cents": 50000  (optional, defaults to the remaining balance)
    }

    Returns:
        202: Push accepted; settlement shows mpesa_pending
        400: Bad phone or amount
        409: A push is already pending, or the sale is paid / not pending
        502 / 503: Provider refused / unreachable
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        phone = coerce_str("phone", data.get("phone"))

        amount_cents = coerce_int("amount_cents", data.get("amount_cents"), required=False, minimum=1)
        if amount_cents is None:
            amount_cents = settlement_service.get_settlement_summary(sale_id)["remaining_cents"]

        summary = settlement_service.initiate_mobile_push(
            sale_id,
            phone=phone,
            amount_cents=amount_cents,
            actor_id=g.actor_id,
            config=settings_service.load_config(),
        )
        return jsonify({"settlement": summary}), 202

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to start M-Pesa payment")
        return internal_error_response()


# =============================================================================
# SUMMARY
# =============================================================================

@payments_bp.get("/sales/<int:sale_id>")
@require_actor
def settlement_summary_route(sale_id: int):
    """Settlement summary with tender and M-Pesa transaction history."""
    try:
        return jsonify({"settlement": settlement_service.get_settlement_summary(sale_id)}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get settlement summary")
        return internal_error_response()
