# backend/app/services/products_service.py
"""
Catalog collaborator (minimal).

The core only needs to read price, tax rate and stock for a product, and
to create products with an opening balance. stock_on_hand is never set
here directly: the opening balance goes through the stock ledger as an
initial_stock movement.
"""
from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, Location
from ..validation import MAX_PRICE_CENTS
from .exceptions import NotFoundError, StateError, ValidationError
from .settings_service import ConfigSnapshot
from . import stock_ledger_service


def _require_non_negative_int(name: str, value, *, maximum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < 0:
        raise ValidationError(f"{name} must be >= 0")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{name} must be <= {maximum}")
    return value


def create_product(
    *,
    sku: str,
    name: str,
    retail_price_cents: int,
    actor_id: str,
    unit_cost_cents: int = 0,
    tax_rate_bps: int | None = None,
    reorder_level: int = 0,
    initial_stock: int = 0,
    barcode: str | None = None,
    location_id: int | None = None,
) -> Product:
    sku = (sku or "").strip()
    name = (name or "").strip()
    if not sku:
        raise ValidationError("sku is required")
    if not name:
        raise ValidationError("name is required")
    _require_non_negative_int("retail_price_cents", retail_price_cents, maximum=MAX_PRICE_CENTS)
    _require_non_negative_int("unit_cost_cents", unit_cost_cents, maximum=MAX_PRICE_CENTS)
    _require_non_negative_int("reorder_level", reorder_level)
    _require_non_negative_int("initial_stock", initial_stock)
    if tax_rate_bps is not None:
        _require_non_negative_int("tax_rate_bps", tax_rate_bps, maximum=10000)

    product = Product(
        sku=sku,
        name=name,
        barcode=barcode,
        retail_price_cents=retail_price_cents,
        unit_cost_cents=unit_cost_cents,
        tax_rate_bps=tax_rate_bps,
        reorder_level=reorder_level,
        stock_on_hand=0,
    )
    db.session.add(product)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise StateError(f"SKU already exists: {sku}")

    try:
        stock_ledger_service.set_initial_stock_inner(
            product, initial_stock, actor_id=actor_id, location_id=location_id
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(product)
    return product


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def effective_tax_rate_bps(product: Product, config: ConfigSnapshot) -> int:
    """Product override, else the store default."""
    if product.tax_rate_bps is not None:
        return product.tax_rate_bps
    return config.tax_rate_bps


def create_location(*, code: str, name: str) -> Location:
    code = (code or "").strip().upper()
    name = (name or "").strip()
    if not code or not name:
        raise ValidationError("code and name are required")
    location = Location(code=code, name=name)
    db.session.add(location)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise StateError(f"Location code already exists: {code}")
    return location
