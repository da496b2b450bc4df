# Overview: Flask API routes for the stock ledger and location transfers.

# backend/app/routes/stock.py
"""
Stock Ledger API Routes

WHY: Expose the movement history, manual adjustments, low-stock feed and
location transfers. Sales, receipts and returns move stock through their
own documents, never through these endpoints.

SECURITY:
- Reads: any identified actor
- Adjustments and transfers: manager or admin
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, require_role
from ..extensions import db
from ..models import InventoryTransfer
from ..services import stock_ledger_service, transfer_service
from ..services.exceptions import AlreadyProcessedError, PosCoreError
from ..validation import coerce_int, coerce_str, require_json_object
from .errors import domain_error_response, internal_error_response


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


# =============================================================================
# LEDGER READS
# =============================================================================

@stock_bp.get("/products/<int:product_id>/movements")
@require_actor
def list_movements_route(product_id: int):
    """
    Chronological movement history for a product.

    Query params:
        limit: max rows (default 200, capped at 1000)
        verify: "1" to include a chain audit
    """
    try:
        limit = coerce_int("limit", request.args.get("limit"), required=False, minimum=1) or 200
        body = {
            "product_id": product_id,
            "stock_on_hand": stock_ledger_service.get_stock_on_hand(product_id),
            "movements": stock_ledger_service.list_movements(product_id, limit=limit),
        }
        if request.args.get("verify") == "1":
            body["chain"] = stock_ledger_service.verify_chain(product_id)
        return jsonify(body), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list stock movements")
        return internal_error_response()


@stock_bp.get("/low")
@require_actor
def low_stock_route():
    """Active products at or below their reorder level."""
    try:
        products = stock_ledger_service.low_stock_products()
        return jsonify({"products": products, "count": len(products)}), 200

    except Exception:
        current_app.logger.exception("Failed to list low stock products")
        return internal_error_response()


# =============================================================================
# ADJUSTMENTS
# =============================================================================

@stock_bp.post("/adjustments")
@require_actor
@require_role("manager", "admin")
def adjust_stock_route():
    """
    Manual stock correction.

    Request body:
    {
        "product_id": 1,
        "movement_type": "damaged",  (adjustment_in | adjustment_out | damaged | expired)
        "quantity": 2,  (always positive; the type decides the direction)
        "notes": "Crushed in storage",  (required for removals)
        "location_id": 3  (optional)
    }

    Returns:
        201: The movement written
        400: Invalid input
        409: Insufficient stock or counter conflict
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        movement = stock_ledger_service.adjust_stock(
            product_id=coerce_int("product_id", data.get("product_id")),
            movement_type=coerce_str("movement_type", data.get("movement_type")),
            quantity=coerce_int("quantity", data.get("quantity"), minimum=1),
            actor_id=g.actor_id,
            notes=coerce_str("notes", data.get("notes"), required=False, max_length=255),
            location_id=coerce_int("location_id", data.get("location_id"), required=False),
        )
        return jsonify({"movement": movement}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return internal_error_response()


# =============================================================================
# TRANSFERS
# =============================================================================

@stock_bp.post("/transfers")
@require_actor
@require_role("manager", "admin")
def create_transfer_route():
    """
    Request a location-to-location transfer (PENDING, nothing moves yet).

    Request body:
    {
        "product_id": 1,
        "from_location_id": 1,
        "to_location_id": 2,
        "quantity": 5,
        "notes": "Restock front counter"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        transfer = transfer_service.create_transfer(
            product_id=coerce_int("product_id", data.get("product_id")),
            from_location_id=coerce_int("from_location_id", data.get("from_location_id")),
            to_location_id=coerce_int("to_location_id", data.get("to_location_id")),
            quantity=coerce_int("quantity", data.get("quantity"), minimum=1),
            actor_id=g.actor_id,
            notes=coerce_str("notes", data.get("notes"), required=False, max_length=255),
        )
        return jsonify({"transfer": transfer.to_dict()}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create transfer")
        return internal_error_response()


@stock_bp.post("/transfers/<int:transfer_id>/complete")
@require_actor
@require_role("manager", "admin")
def complete_transfer_route(transfer_id: int):
    try:
        transfer = transfer_service.complete_transfer(transfer_id, actor_id=g.actor_id)
        return jsonify({"transfer": transfer.to_dict()}), 200

    except AlreadyProcessedError as e:
        transfer = db.session.get(InventoryTransfer, transfer_id)
        return domain_error_response(e, transfer=transfer.to_dict())
    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete transfer")
        return internal_error_response()


@stock_bp.post("/transfers/<int:transfer_id>/cancel")
@require_actor
@require_role("manager", "admin")
def cancel_transfer_route(transfer_id: int):
    try:
        transfer = transfer_service.cancel_transfer(transfer_id, actor_id=g.actor_id)
        return jsonify({"transfer": transfer.to_dict()}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel transfer")
        return internal_error_response()
