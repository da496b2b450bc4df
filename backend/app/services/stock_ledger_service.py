# Overview: The stock ledger; the only writer of product and location stock counters.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Product, LocationStock, StockMovement
from ..signals import stock_below_reorder_level
from .concurrency import run_with_retry
from .exceptions import (
    ConcurrentStockConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
"""
STOCK LEDGER INVARIANTS

- Every quantity change is one StockMovement row:
    quantity_after = quantity_before + quantity_delta
- Per product, ordered by id, movements chain:
    movement[n].quantity_after == movement[n+1].quantity_before
- products.stock_on_hand is a cache of the running total. It is written
  only here, via compare-and-set on products.version_id, in the same unit
  of work as the movement row. The hot path never sums history.
- Outbound movements may not take a counter below zero. Inbound movements
  (receipts, returns, transfer_in, adjustment_in, initial stock) never fail
  that check.

Functions ending in `_inner` join the caller's unit of work and never
commit. Public wrappers commit and retry lock/stale failures.
"""


INBOUND_TYPES = frozenset({
    "sale_return",
    "purchase_receipt",
    "adjustment_in",
    "transfer_in",
    "initial_stock",
})

OUTBOUND_TYPES = frozenset({
    "sale",
    "adjustment_out",
    "transfer_out",
    "damaged",
    "expired",
})

MOVEMENT_TYPES = INBOUND_TYPES | OUTBOUND_TYPES

# transfer_out is always paired with a transfer_in that restores the product total
LOW_STOCK_ALERT_TYPES = OUTBOUND_TYPES - {"transfer_out"}

# Movement types a user may post by hand through adjust_stock
ADJUSTMENT_TYPES = frozenset({"adjustment_in", "adjustment_out", "damaged", "expired"})


def _validate_delta(movement_type: str, delta: int) -> None:
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type}")
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("quantity delta must be an integer")
    if delta == 0:
        raise ValidationError("quantity delta must be non-zero")
    if movement_type in INBOUND_TYPES and delta < 0:
        raise ValidationError(f"{movement_type} movements must increase stock")
    if movement_type in OUTBOUND_TYPES and delta > 0:
        raise ValidationError(f"{movement_type} movements must decrease stock")


def _read_product(product_id: int) -> Product:
    # populate_existing: each attempt must see the committed counter, not the identity-map copy
    product = (
        db.session.query(Product)
        .filter_by(id=product_id)
        .populate_existing()
        .first()
    )
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _compare_and_set(product_id: int, expected_version: int, new_quantity: int) -> bool:
    """Single-row atomic write of the counter. False means another writer got there first."""
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.version_id == expected_version)
        .values(stock_on_hand=new_quantity, version_id=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _apply_location_delta(product_id: int, location_id: int, delta: int, movement_type: str) -> None:
    row = (
        db.session.query(LocationStock)
        .filter_by(product_id=product_id, location_id=location_id)
        .with_for_update()
        .first()
    )
    if row is None:
        row = LocationStock(product_id=product_id, location_id=location_id, quantity=0)
        db.session.add(row)

    new_qty = (row.quantity or 0) + delta
    if new_qty < 0 and movement_type in OUTBOUND_TYPES:
        raise InsufficientStockError(
            f"Insufficient stock at location {location_id} for product {product_id}: "
            f"available {row.quantity or 0}, requested {-delta}",
            product_id=product_id,
            available=row.quantity or 0,
        )
    row.quantity = new_qty


def apply_movement_inner(
    product_id: int,
    movement_type: str,
    delta: int,
    *,
    reference_type: str,
    reference_id=None,
    actor_id: str,
    notes: str | None = None,
    unit_cost_cents: int | None = None,
    location_id: int | None = None,
) -> StockMovement:
    """
    Append one movement and move the product counter with it (no commit).

    Compare-and-set on version_id; a lost race re-reads and tries again up
    to STOCK_CAS_ATTEMPTS times, then raises ConcurrentStockConflictError.
    """
    _validate_delta(movement_type, delta)
    if not actor_id:
        raise ValidationError("actor is required")

    attempts = int(current_app.config.get("STOCK_CAS_ATTEMPTS", 3))
    for _attempt in range(attempts):
        product = _read_product(product_id)
        before = product.stock_on_hand
        after = before + delta

        if after < 0 and movement_type in OUTBOUND_TYPES:
            raise InsufficientStockError(
                f"Insufficient stock for {product.sku}: available {before}, requested {-delta}",
                product_id=product_id,
                available=before,
            )

        if _compare_and_set(product_id, product.version_id, after):
            break
    else:
        current_app.logger.warning(
            "Stock counter conflict on product %s after %s attempts (%s %s)",
            product_id, attempts, movement_type, delta,
        )
        raise ConcurrentStockConflictError(
            f"Stock for product {product_id} changed concurrently; retry the operation"
        )

    if location_id is not None:
        _apply_location_delta(product_id, location_id, delta, movement_type)

    movement = StockMovement(
        product_id=product_id,
        location_id=location_id,
        movement_type=movement_type,
        quantity_delta=delta,
        quantity_before=before,
        quantity_after=after,
        reference_type=reference_type,
        reference_id=None if reference_id is None else str(reference_id),
        unit_cost_cents=unit_cost_cents,
        notes=notes,
        actor_id=str(actor_id),
    )
    db.session.add(movement)
    db.session.flush()

    # The identity-map copy is stale after the Core update
    db.session.expire(product, ["stock_on_hand", "version_id"])

    if movement_type in LOW_STOCK_ALERT_TYPES and after <= product.reorder_level:
        stock_below_reorder_level.send(
            product,
            stock_on_hand=after,
            reorder_level=product.reorder_level,
        )

    return movement


def apply_movement(product_id: int, movement_type: str, delta: int, **kwargs) -> dict:
    """Public, self-committing version of apply_movement_inner."""
    def _op():
        movement = apply_movement_inner(product_id, movement_type, delta, **kwargs)
        db.session.commit()
        return movement.to_dict()

    return run_with_retry(_op)


# =============================================================================
# ADJUSTMENTS
# =============================================================================

def adjust_stock(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    actor_id: str,
    notes: str | None = None,
    location_id: int | None = None,
) -> dict:
    """
    Manual stock correction. `quantity` is always positive; the movement
    type decides the direction (adjustment_in adds, the rest remove).
    """
    if movement_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"movement_type must be one of: {', '.join(sorted(ADJUSTMENT_TYPES))}"
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    if movement_type != "adjustment_in" and not (notes or "").strip():
        raise ValidationError("notes are required for stock removals")

    delta = quantity if movement_type == "adjustment_in" else -quantity
    return apply_movement(
        product_id,
        movement_type,
        delta,
        reference_type="adjustment",
        reference_id=None,
        actor_id=actor_id,
        notes=notes,
        location_id=location_id,
    )


def set_initial_stock_inner(product: Product, quantity: int, *, actor_id: str, location_id: int | None = None):
    """Opening balance for a newly created product (no commit)."""
    if quantity <= 0:
        return None
    return apply_movement_inner(
        product.id,
        "initial_stock",
        quantity,
        reference_type="product",
        reference_id=product.id,
        actor_id=actor_id,
        unit_cost_cents=product.unit_cost_cents,
        notes="Opening balance",
        location_id=location_id,
    )


# =============================================================================
# READ MODELS
# =============================================================================

def get_stock_on_hand(product_id: int) -> int:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product.stock_on_hand


def list_movements(product_id: int, *, limit: int = 200) -> list[dict]:
    """Chronological audit view for one product."""
    if db.session.get(Product, product_id) is None:
        raise NotFoundError(f"Product {product_id} not found")
    limit = max(1, min(limit, 1000))
    rows = (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.asc())
        .limit(limit)
        .all()
    )
    return [m.to_dict() for m in rows]


def verify_chain(product_id: int) -> dict:
    """
    Audit the ledger for one product.

    Reports the first movement whose quantity_before does not match its
    predecessor's quantity_after (or whose own arithmetic is off), and
    whether the cached counter equals the last quantity_after.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")

    movements = (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.asc())
        .all()
    )

    previous_after = 0
    broken_at = None
    for m in movements:
        if m.quantity_before != previous_after or m.quantity_after != m.quantity_before + m.quantity_delta:
            broken_at = m.id
            break
        previous_after = m.quantity_after

    counter_matches = broken_at is None and previous_after == product.stock_on_hand
    return {
        "product_id": product_id,
        "movements_checked": len(movements),
        "ok": broken_at is None and counter_matches,
        "broken_at_movement_id": broken_at,
        "stock_on_hand": product.stock_on_hand,
        "ledger_total": previous_after,
        "counter_matches": counter_matches,
    }


def low_stock_products() -> list[dict]:
    """Active products at or below their reorder level (alert feed)."""
    rows = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_on_hand <= Product.reorder_level)
        .order_by(Product.stock_on_hand.asc(), Product.id.asc())
        .all()
    )
    return [p.to_dict() for p in rows]
