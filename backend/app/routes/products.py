# Overview: Flask API routes for the minimal catalog (products and stock locations).

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor, require_role
from ..services import products_service
from ..services.exceptions import PosCoreError
from ..validation import coerce_int, coerce_str, require_json_object
from .errors import domain_error_response, internal_error_response


products_bp = Blueprint("products", __name__, url_prefix="/api")


@products_bp.post("/products")
@require_actor
@require_role("manager", "admin")
def create_product_route():
    """
    Create a product. A positive initial_stock is posted to the ledger as
    an initial_stock movement.

    Request body:
    {
        "sku": "MILK-500",
        "name": "Milk 500ml",
        "retail_price_cents": 6500,
        "unit_cost_cents": 5000,  (optional)
        "tax_rate_bps": 1600,  (optional, default: store rate)
        "reorder_level": 10,  (optional)
        "initial_stock": 48,  (optional)
        "location_id": 1  (optional, where the opening stock sits)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))

        product = products_service.create_product(
            sku=coerce_str("sku", data.get("sku"), max_length=64),
            name=coerce_str("name", data.get("name"), max_length=255),
            retail_price_cents=coerce_int("retail_price_cents", data.get("retail_price_cents"), minimum=0),
            actor_id=g.actor_id,
            unit_cost_cents=coerce_int("unit_cost_cents", data.get("unit_cost_cents", 0), minimum=0),
            tax_rate_bps=coerce_int("tax_rate_bps", data.get("tax_rate_bps"), required=False, minimum=0),
            reorder_level=coerce_int("reorder_level", data.get("reorder_level", 0), minimum=0),
            initial_stock=coerce_int("initial_stock", data.get("initial_stock", 0), minimum=0),
            barcode=coerce_str("barcode", data.get("barcode"), required=False, max_length=64),
            location_id=coerce_int("location_id", data.get("location_id"), required=False),
        )
        return jsonify({"product": product.to_dict()}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return internal_error_response()


@products_bp.get("/products/<int:product_id>")
@require_actor
def get_product_route(product_id: int):
    try:
        return jsonify({"product": products_service.get_product(product_id).to_dict()}), 200

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get product")
        return internal_error_response()


@products_bp.post("/locations")
@require_actor
@require_role("admin")
def create_location_route():
    """Body: {"code": "BACK", "name": "Back store"}"""
    try:
        data = require_json_object(request.get_json(silent=True))
        location = products_service.create_location(
            code=coerce_str("code", data.get("code"), max_length=32),
            name=coerce_str("name", data.get("name"), max_length=128),
        )
        return jsonify({"location": location.to_dict()}), 201

    except PosCoreError as e:
        return domain_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create location")
        return internal_error_response()
