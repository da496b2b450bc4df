"""
Returns Processor

WHY: A return reverses part of a completed sale through both the stock
ledger (goods come back) and the payment ledger (money goes out). Both
must happen exactly once.

DESIGN PRINCIPLES:
- Returns reference the original Sale for traceability
- Refund amount uses the sale's unit price snapshot, never the catalog
- Cumulative returned quantity per sale line (across non-rejected returns)
  never exceeds the quantity sold; later returns of other items are fine
- Admin approval restores stock and records the refund in one unit of work
- Approval is idempotent: a second approval, or approving a rejected
  return, reports AlreadyProcessed and writes nothing

LIFECYCLE:
1. Create return (PENDING)
2. Approve (PENDING -> COMPLETED, stock_restored false -> true) or
   Reject (PENDING -> REJECTED, ledger untouched)
"""

from flask import current_app

from ..extensions import db
from ..models import PaymentTransaction, Return, ReturnItem, Sale
from app.time_utils import utcnow
from .concurrency import get_locked, run_with_retry
from .document_service import next_document_number
from .exceptions import AlreadyProcessedError, NotFoundError, StateError, ValidationError
from .stock_ledger_service import apply_movement_inner


# =============================================================================
# RETURN STATUS CONSTANTS
# =============================================================================

RETURN_STATUS_PENDING = "PENDING"
RETURN_STATUS_COMPLETED = "COMPLETED"
RETURN_STATUS_REJECTED = "REJECTED"

VALID_REFUND_METHODS = ("CASH", "MPESA", "STORE_CREDIT")


def _already_returned(sale_line_item_id: int) -> int:
    """Quantity of a sale line on PENDING or COMPLETED returns."""
    total = (
        db.session.query(db.func.coalesce(db.func.sum(ReturnItem.quantity), 0))
        .join(Return, Return.id == ReturnItem.return_id)
        .filter(
            ReturnItem.sale_line_item_id == sale_line_item_id,
            Return.status.in_([RETURN_STATUS_PENDING, RETURN_STATUS_COMPLETED]),
        )
        .scalar()
    )
    return int(total or 0)


# =============================================================================
# RETURN CREATION
# =============================================================================

def create_return(
    *,
    sale_id: int,
    items,
    reason: str,
    refund_method: str,
    actor_id: str,
) -> Return:
    """
    Create a PENDING return against a completed sale.

    items: [{"product_id": 3, "quantity": 1}, ...]

    Raises:
        ValidationError: bad items, product not on the sale, quantity above
            what is still returnable, unknown refund method
        StateError: sale not completed
    """
    if not (reason or "").strip():
        raise ValidationError("reason is required")
    refund_method = (refund_method or "").strip().upper()
    if refund_method not in VALID_REFUND_METHODS:
        raise ValidationError(f"refund_method must be one of {', '.join(VALID_REFUND_METHODS)}")
    if not isinstance(items, list) or not items:
        raise ValidationError("A return needs at least one item")

    requested: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object")
        product_id = raw.get("product_id")
        quantity = raw.get("quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Return quantity must be positive")
        requested[product_id] = requested.get(product_id, 0) + quantity

    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")
        if sale.status != "COMPLETED":
            raise StateError(f"Only completed sales can be returned (sale is {sale.status})")

        lines_by_product = {line.product_id: line for line in sale.lines}

        planned = []
        for product_id, quantity in requested.items():
            line = lines_by_product.get(product_id)
            if line is None:
                raise ValidationError(f"Product {product_id} was not sold on {sale.document_number}")
            returned = _already_returned(line.id)
            available = line.quantity - returned
            if quantity > available:
                raise ValidationError(
                    f"Cannot return {quantity} units of product {product_id}. "
                    f"Original quantity: {line.quantity}, already returned: {returned}, available: {available}"
                )
            planned.append((line, quantity))

        return_doc = Return(
            document_number=next_document_number("RETURN"),
            sale_id=sale.id,
            status=RETURN_STATUS_PENDING,
            reason=reason.strip(),
            refund_method=refund_method,
            return_amount_cents=sum(line.unit_price_cents * qty for line, qty in planned),
            stock_restored=False,
            created_by=actor_id,
            created_at=utcnow(),
        )
        db.session.add(return_doc)
        db.session.flush()

        for line, quantity in planned:
            db.session.add(ReturnItem(
                return_id=return_doc.id,
                sale_line_item_id=line.id,
                product_id=line.product_id,
                quantity=quantity,
                unit_price_cents=line.unit_price_cents,
                line_refund_cents=line.unit_price_cents * quantity,
            ))

        db.session.commit()
        return return_doc

    return run_with_retry(_op)


# =============================================================================
# APPROVAL / REJECTION
# =============================================================================

def approve_return(return_id: int, *, actor_id: str) -> Return:
    """
    Approve (admin): restore stock and record the refund, exactly once.

    Raises:
        AlreadyProcessedError: return already completed or rejected
    """
    def _op():
        return_doc = get_locked(Return, return_id, label="Return")

        if return_doc.status != RETURN_STATUS_PENDING or return_doc.stock_restored:
            current_app.logger.info(
                "Return %s already processed (%s)", return_doc.document_number, return_doc.status
            )
            raise AlreadyProcessedError(
                f"Return {return_doc.document_number} already processed ({return_doc.status})"
            )

        for item in return_doc.items:
            apply_movement_inner(
                item.product_id,
                "sale_return",
                item.quantity,
                reference_type="return",
                reference_id=return_doc.id,
                actor_id=actor_id,
                notes=f"Return {return_doc.document_number}",
            )

        sale = get_locked(Sale, return_doc.sale_id, label="Sale")
        now = utcnow()
        db.session.add(PaymentTransaction(
            sale_id=sale.id,
            transaction_type="REFUND",
            tender_type=return_doc.refund_method,
            amount_cents=-return_doc.return_amount_cents,
            reference=return_doc.document_number,
            return_id=return_doc.id,
            actor_id=actor_id,
            occurred_at=now,
        ))
        sale.refunded_cents += return_doc.return_amount_cents

        return_doc.stock_restored = True
        return_doc.status = RETURN_STATUS_COMPLETED
        return_doc.processed_by = actor_id
        return_doc.processed_at = now
        db.session.commit()
        return return_doc

    return run_with_retry(_op)


def reject_return(return_id: int, *, actor_id: str, rejection_reason: str | None = None) -> Return:
    """Reject (admin): PENDING -> REJECTED. Never touches the ledger."""
    def _op():
        return_doc = get_locked(Return, return_id, label="Return")

        if return_doc.status != RETURN_STATUS_PENDING:
            raise AlreadyProcessedError(
                f"Return {return_doc.document_number} already processed ({return_doc.status})"
            )

        return_doc.status = RETURN_STATUS_REJECTED
        return_doc.processed_by = actor_id
        return_doc.processed_at = utcnow()
        return_doc.rejection_reason = rejection_reason
        db.session.commit()
        return return_doc

    return run_with_retry(_op)


def get_return(return_id: int) -> Return:
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise NotFoundError(f"Return {return_id} not found")
    return return_doc


def get_sale_returns(sale_id: int) -> list[Return]:
    return db.session.query(Return).filter_by(sale_id=sale_id).order_by(Return.id.asc()).all()
