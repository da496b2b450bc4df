# backend/app/services/transfer_service.py
"""
Location-to-location stock transfers.

LIFECYCLE:
1. PENDING: transfer requested, nothing moved
2. COMPLETED: transfer_out at the source and transfer_in at the destination,
   written in one unit of work
3. CANCELLED: abandoned before completion

The product-level total is unchanged by a completed transfer (out then in);
only the per-location counters move. The source location may not go
negative.
"""
from __future__ import annotations

from flask import current_app

from app.extensions import db
from app.models import InventoryTransfer, Location, Product
from app.services.concurrency import get_locked, run_with_retry
from app.services.document_service import next_document_number
from app.services.exceptions import AlreadyProcessedError, NotFoundError, StateError, ValidationError
from app.services.stock_ledger_service import apply_movement_inner
from app.time_utils import utcnow


TRANSFER_STATUS_PENDING = "PENDING"
TRANSFER_STATUS_COMPLETED = "COMPLETED"
TRANSFER_STATUS_CANCELLED = "CANCELLED"


def _require_location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None:
        raise NotFoundError(f"Location {location_id} not found")
    if not location.is_active:
        raise StateError(f"Location {location.code} is inactive")
    return location


def create_transfer(
    *,
    product_id: int,
    from_location_id: int,
    to_location_id: int,
    quantity: int,
    actor_id: str,
    notes: str | None = None,
) -> InventoryTransfer:
    """Create a PENDING transfer. No stock moves yet."""
    def _op():
        if from_location_id == to_location_id:
            raise ValidationError("Cannot transfer to the same location")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        if db.session.get(Product, product_id) is None:
            raise NotFoundError(f"Product {product_id} not found")
        _require_location(from_location_id)
        _require_location(to_location_id)

        transfer = InventoryTransfer(
            document_number=next_document_number("TRANSFER"),
            product_id=product_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            quantity=quantity,
            status=TRANSFER_STATUS_PENDING,
            notes=notes,
            requested_by=actor_id,
        )
        db.session.add(transfer)
        db.session.commit()
        return transfer

    return run_with_retry(_op)


def complete_transfer(transfer_id: int, *, actor_id: str) -> InventoryTransfer:
    """
    Move the stock: transfer_out at the source, transfer_in at the destination.

    Raises:
        AlreadyProcessedError: transfer already completed
        StateError: transfer cancelled
        InsufficientStockError: source location (or product) lacks stock
    """
    def _op():
        transfer = get_locked(InventoryTransfer, transfer_id, label="Transfer")

        if transfer.status == TRANSFER_STATUS_COMPLETED:
            current_app.logger.info("Transfer %s already completed", transfer.document_number)
            raise AlreadyProcessedError(f"Transfer {transfer.document_number} already completed")
        if transfer.status != TRANSFER_STATUS_PENDING:
            raise StateError(f"Cannot complete transfer in {transfer.status} status")

        common = dict(
            reference_type="transfer",
            reference_id=transfer.id,
            actor_id=actor_id,
            notes=transfer.notes,
        )
        apply_movement_inner(
            transfer.product_id, "transfer_out", -transfer.quantity,
            location_id=transfer.from_location_id, **common,
        )
        apply_movement_inner(
            transfer.product_id, "transfer_in", transfer.quantity,
            location_id=transfer.to_location_id, **common,
        )

        transfer.status = TRANSFER_STATUS_COMPLETED
        transfer.completed_by = actor_id
        transfer.completed_at = utcnow()
        db.session.commit()
        return transfer

    return run_with_retry(_op)


def cancel_transfer(transfer_id: int, *, actor_id: str) -> InventoryTransfer:
    def _op():
        transfer = get_locked(InventoryTransfer, transfer_id, label="Transfer")

        if transfer.status == TRANSFER_STATUS_CANCELLED:
            raise AlreadyProcessedError(f"Transfer {transfer.document_number} already cancelled")
        if transfer.status != TRANSFER_STATUS_PENDING:
            raise StateError(
                f"Cannot cancel transfer in {transfer.status} status. "
                f"Transfers can only be cancelled before completion."
            )

        transfer.status = TRANSFER_STATUS_CANCELLED
        transfer.cancelled_by = actor_id
        transfer.cancelled_at = utcnow()
        db.session.commit()
        return transfer

    return run_with_retry(_op)
