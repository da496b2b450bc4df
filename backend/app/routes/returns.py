# Overview: Flask API routes for returns operations; parses input and returns JSON responses.

# backend/app/routes/returns.py
"""
Return Processing API Routes

WHY: Enable product returns via REST API with admin approval workflow.

DESIGN:
- Create returns referencing the original (completed) sale
- Admin approval restores stock and records the refund exactly once
- Admin rejection closes the return without touching stock or money

SECURITY:
- Any identified actor may create and view returns
- Admin role required for approve/reject
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, require_role
from ..services import return_service
from ..services.exceptions import AlreadyProcessedError, PosCoreError
from ..validation import coerce_int, coerce_list, coerce_str, require_json_object
from .errors import domain_error_response, internal_error_response


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


# =============================================================================
# RETURN CREATION
# =============================================================================

@returns_bp.post("")
@require_actor
def create_return_route():
    """
    Create a new return document (status: PENDING).

    Request body:
    {
        "sale_id": 123,
        "items": [{"product_id": 1, "quantity": 1}],
        "reason": "Damaged on arrival",
        "refund_method": "CASH"  (CASH | MPESA | STORE_CREDIT)
    }

    Returns:
        201: Return created with PENDING status
        400: Invalid input or quantity above what is still returnable
        409: Sale not completed
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        return_doc = return_service.create_return(
            sale_id=coerce_int("sale_id", data.get("sale_id")),
            items=coerce_list("items", data.get("items")),
            reason=coerce_str("reason", data.get("reason")),
            refund_method=coerce_str("refund_method", data.get("refund_method")),
            actor_id=g.actor_id,
        )

        return jsonify({"return": return_doc.to_dict()}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create return")
        return internal_error_response()


@returns_bp.get("/<int:return_id>")
@require_actor
def get_return_route(return_id: int):
    try:
        return jsonify({"return": return_service.get_return(return_id).to_dict()}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get return")
        return internal_error_response()


# =============================================================================
# APPROVAL WORKFLOW
# =============================================================================

@returns_bp.post("/<int:return_id>/approve")
@require_actor
@require_role("admin")
def approve_return_route(return_id: int):
    """
    Approve a pending return: stock back in, refund recorded.

    Returns:
        200: Return COMPLETED, or already_processed (nothing written)
        403: Not an admin
    """
    try:
        return_doc = return_service.approve_return(return_id, actor_id=g.actor_id)
        return jsonify({"return": return_doc.to_dict()}), 200

    except AlreadyProcessedError as e:
        return domain_error_response(e, **{"return": return_service.get_return(return_id).to_dict()})
    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve return")
        return internal_error_response()


@returns_bp.post("/<int:return_id>/reject")
@require_actor
@require_role("admin")
def reject_return_route(return_id: int):
    """
    Reject a pending return.

    Request body (optional):
    {
        "rejection_reason": "Outside return window"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        return_doc = return_service.reject_return(
            return_id,
            actor_id=g.actor_id,
            rejection_reason=coerce_str("rejection_reason", data.get("rejection_reason"), required=False),
        )
        return jsonify({"return": return_doc.to_dict()}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject return")
        return internal_error_response()
