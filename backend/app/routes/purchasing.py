# Overview: Flask API routes for purchase orders and goods received notes.

# backend/app/routes/purchasing.py
"""
Purchasing API Routes

WHY: Replenish stock from vendors with a full audit trail: purchase order,
delivery (GRN), verification, completion.

DESIGN:
- Receiving is all-or-nothing per request; an over-receipt on any line
  rejects the whole delivery
- "post_stock": false on receive defers ledger entries to GRN completion
- Completing a GRN twice answers 200 with already_processed=true

SECURITY:
- Manager or admin for every write
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, require_role
from ..extensions import db
from ..models import DeliveryNote
from ..services import receive_service
from ..services.exceptions import AlreadyProcessedError, PosCoreError
from ..validation import coerce_int, coerce_list, coerce_str, require_json_object
from .errors import domain_error_response, internal_error_response


purchasing_bp = Blueprint("purchasing", __name__, url_prefix="/api")


# =============================================================================
# PURCHASE ORDERS
# =============================================================================

@purchasing_bp.post("/purchase-orders")
@require_actor
@require_role("manager", "admin")
def create_purchase_order_route():
    """
    Create a DRAFT purchase order.

    Request body:
    {
        "vendor_id": 1,
        "items": [{"product_id": 1, "quantity": 50, "unit_cost_cents": 300}],
        "notes": "Weekly restock"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        po = receive_service.create_purchase_order(
            vendor_id=coerce_int("vendor_id", data.get("vendor_id")),
            items=coerce_list("items", data.get("items")),
            actor_id=g.actor_id,
            notes=coerce_str("notes", data.get("notes"), required=False),
        )
        return jsonify({"purchase_order": receive_service.get_purchase_order(po.id)}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create purchase order")
        return internal_error_response()


@purchasing_bp.get("/purchase-orders/<int:po_id>")
@require_actor
def get_purchase_order_route(po_id: int):
    """Purchase order with items and delivery notes."""
    try:
        return jsonify({"purchase_order": receive_service.get_purchase_order(po_id)}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get purchase order")
        return internal_error_response()


@purchasing_bp.post("/purchase-orders/<int:po_id>/send")
@require_actor
@require_role("manager", "admin")
def send_purchase_order_route(po_id: int):
    try:
        receive_service.send_purchase_order(po_id, actor_id=g.actor_id)
        return jsonify({"purchase_order": receive_service.get_purchase_order(po_id)}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to send purchase order")
        return internal_error_response()


@purchasing_bp.post("/purchase-orders/<int:po_id>/cancel")
@require_actor
@require_role("manager", "admin")
def cancel_purchase_order_route(po_id: int):
    """
    Request body (optional):
    {
        "reason": "Vendor out of stock"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        receive_service.cancel_purchase_order(
            po_id,
            actor_id=g.actor_id,
            reason=coerce_str("reason", data.get("reason"), required=False, max_length=255),
        )
        return jsonify({"purchase_order": receive_service.get_purchase_order(po_id)}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel purchase order")
        return internal_error_response()


# =============================================================================
# RECEIVING
# =============================================================================

@purchasing_bp.post("/purchase-orders/<int:po_id>/receive")
@require_actor
@require_role("manager", "admin")
def receive_route(po_id: int):
    """
    Record a delivery against a purchase order.

    Request body:
    {
        "lines": [
            {
                "po_item_id": 7,
                "received_quantity": 20,
                "rejected_quantity": 2,  (optional)
                "rejection_reason": "Crushed cartons",  (required when rejecting)
                "batch_number": "B-1029",  (optional)
                "expiry_date": "2027-03-31"  (optional)
            }
        ],
        "notes": "Driver: J. Otieno",  (optional)
        "post_stock": true  (optional, default true)
    }

    Returns:
        201: Delivery note with items
        400: Malformed line or over-receipt (nothing written)
        409: PO not open for receiving
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        post_stock = data.get("post_stock", True)
        if not isinstance(post_stock, bool):
            return jsonify({"error": "post_stock must be a boolean", "retry_safe": True}), 400

        note = receive_service.receive(
            po_id,
            lines=coerce_list("lines", data.get("lines")),
            actor_id=g.actor_id,
            notes=coerce_str("notes", data.get("notes"), required=False),
            post_stock=post_stock,
        )
        return jsonify({"delivery_note": receive_service.delivery_note_to_dict(note)}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive purchase order")
        return internal_error_response()


# =============================================================================
# DELIVERY NOTES
# =============================================================================

@purchasing_bp.post("/delivery-notes/<int:note_id>/verify")
@require_actor
@require_role("manager", "admin")
def verify_delivery_note_route(note_id: int):
    try:
        note = receive_service.verify_delivery_note(note_id, actor_id=g.actor_id)
        return jsonify({"delivery_note": receive_service.delivery_note_to_dict(note)}), 200

    except AlreadyProcessedError as e:
        note = db.session.get(DeliveryNote, note_id)
        return domain_error_response(e, delivery_note=receive_service.delivery_note_to_dict(note))
    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify delivery note")
        return internal_error_response()


@purchasing_bp.post("/delivery-notes/<int:note_id>/complete")
@require_actor
@require_role("manager", "admin")
def complete_delivery_note_route(note_id: int):
    """
    Complete a verified delivery note. Posts stock if receive deferred it.

    Returns:
        200: Delivery note COMPLETED, or already_processed
        409: Note not verified yet
    """
    try:
        note = receive_service.complete_delivery_note(note_id, actor_id=g.actor_id)
        return jsonify({"delivery_note": receive_service.delivery_note_to_dict(note)}), 200

    except AlreadyProcessedError as e:
        note = db.session.get(DeliveryNote, note_id)
        return domain_error_response(e, delivery_note=receive_service.delivery_note_to_dict(note))
    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete delivery note")
        return internal_error_response()
