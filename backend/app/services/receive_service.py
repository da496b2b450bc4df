# Overview: Purchase orders, goods receiving and GRN (delivery note) lifecycle.

"""
Purchase Receiving & GRN Processor

PURCHASE ORDER LIFECYCLE:
DRAFT -> SENT -> PARTIALLY_RECEIVED -> RECEIVED
SENT / PARTIALLY_RECEIVED -> CANCELLED

RECEIVING (all-or-nothing per call):
1. Every line is validated first:
   received + rejected <= ordered - already_received
   One bad line rejects the whole call with no GRN, no ledger entries and
   no PO item change.
2. A GRN number is allocated and the DeliveryNote + items are written.
3. Received quantities go to the stock ledger (purchase_receipt), unless
   posting is deferred to GRN completion.
4. PO items accumulate received_quantity; the PO status is recomputed.

Rejected quantities are kept on the GRN for audit and never reach the ledger.

DELIVERY NOTE LIFECYCLE: PENDING -> VERIFIED -> COMPLETED
Completion posts stock only when the note has not posted yet
(stock_posted=False). Completing twice is AlreadyProcessed.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import DeliveryNote, DeliveryNoteItem, POItem, Product, PurchaseOrder, Vendor
from ..signals import purchase_order_sent
from ..validation import MAX_PRICE_CENTS
from app.time_utils import parse_iso_date, utcnow
from .concurrency import get_locked, run_with_retry
from .document_service import next_document_number
from .exceptions import AlreadyProcessedError, NotFoundError, StateError, ValidationError
from .stock_ledger_service import apply_movement_inner


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

PO_DRAFT = "DRAFT"
PO_SENT = "SENT"
PO_PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"
PO_RECEIVED = "RECEIVED"
PO_CANCELLED = "CANCELLED"

RECEIVABLE_PO_STATUSES = {PO_SENT, PO_PARTIALLY_RECEIVED}

GRN_PENDING = "PENDING"
GRN_VERIFIED = "VERIFIED"
GRN_COMPLETED = "COMPLETED"


def _positive_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def _non_negative_int(name: str, value) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


# =============================================================================
# PURCHASE ORDERS
# =============================================================================

def create_purchase_order(*, vendor_id: int, items, actor_id: str, notes: str | None = None) -> PurchaseOrder:
    """
    Create a DRAFT purchase order.

    items: [{"product_id": 1, "quantity": 10, "unit_cost_cents": 250}, ...]
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("A purchase order needs at least one item")

    parsed = []
    seen = set()
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object")
        product_id = raw.get("product_id")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer")
        if product_id in seen:
            raise ValidationError(f"Product {product_id} appears more than once")
        seen.add(product_id)
        quantity = _positive_int("quantity", raw.get("quantity"))
        unit_cost = _non_negative_int("unit_cost_cents", raw.get("unit_cost_cents"))
        if unit_cost > MAX_PRICE_CENTS:
            raise ValidationError(f"unit_cost_cents must be <= {MAX_PRICE_CENTS}")
        parsed.append((product_id, quantity, unit_cost))

    def _op():
        vendor = db.session.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError(f"Vendor {vendor_id} not found")
        if not vendor.is_active:
            raise StateError(f"Vendor {vendor.name} is inactive")

        for product_id, _qty, _cost in parsed:
            if db.session.get(Product, product_id) is None:
                raise NotFoundError(f"Product {product_id} not found")

        po = PurchaseOrder(
            po_number=next_document_number("PURCHASE_ORDER"),
            vendor_id=vendor_id,
            status=PO_DRAFT,
            total_cents=sum(qty * cost for _pid, qty, cost in parsed),
            notes=notes,
            created_by=actor_id,
            created_at=utcnow(),
        )
        db.session.add(po)
        db.session.flush()

        for product_id, quantity, unit_cost in parsed:
            db.session.add(POItem(
                po_id=po.id,
                product_id=product_id,
                quantity=quantity,
                unit_cost_cents=unit_cost,
                received_quantity=0,
            ))

        db.session.commit()
        return po

    return run_with_retry(_op)


def send_purchase_order(po_id: int, *, actor_id: str) -> PurchaseOrder:
    """DRAFT -> SENT. Fires purchase_order_sent for the e-mail collaborator."""
    def _op():
        po = get_locked(PurchaseOrder, po_id, label="Purchase order")
        if po.status == PO_SENT:
            raise AlreadyProcessedError(f"Purchase order {po.po_number} already sent")
        if po.status != PO_DRAFT:
            raise StateError(f"Cannot send purchase order in {po.status} status")

        po.status = PO_SENT
        po.sent_at = utcnow()
        db.session.commit()
        return po

    po = run_with_retry(_op)
    purchase_order_sent.send(po, actor_id=actor_id)
    return po


def cancel_purchase_order(po_id: int, *, actor_id: str, reason: str | None = None) -> PurchaseOrder:
    """SENT / PARTIALLY_RECEIVED -> CANCELLED. Stock already received stays."""
    def _op():
        po = get_locked(PurchaseOrder, po_id, label="Purchase order")
        if po.status == PO_CANCELLED:
            raise AlreadyProcessedError(f"Purchase order {po.po_number} already cancelled")
        if po.status not in RECEIVABLE_PO_STATUSES:
            raise StateError(f"Cannot cancel purchase order in {po.status} status")

        po.status = PO_CANCELLED
        po.cancelled_at = utcnow()
        po.cancellation_reason = reason
        current_app.logger.info("Purchase order %s cancelled by %s", po.po_number, actor_id)
        db.session.commit()
        return po

    return run_with_retry(_op)


def _recompute_po_status(po: PurchaseOrder) -> None:
    items = po.items
    if items and all(item.received_quantity >= item.quantity for item in items):
        po.status = PO_RECEIVED
    elif any(item.received_quantity > 0 for item in items):
        po.status = PO_PARTIALLY_RECEIVED


# =============================================================================
# RECEIVING
# =============================================================================

def _post_note_stock(note: DeliveryNote, *, actor_id: str) -> None:
    for item in note.items:
        if item.received_quantity <= 0:
            continue
        apply_movement_inner(
            item.product_id,
            "purchase_receipt",
            item.received_quantity,
            reference_type="delivery_note",
            reference_id=note.id,
            actor_id=actor_id,
            unit_cost_cents=item.unit_cost_cents,
            notes=f"GRN {note.grn_number}",
        )
    note.stock_posted = True


def receive(
    po_id: int,
    *,
    lines,
    actor_id: str,
    notes: str | None = None,
    post_stock: bool = True,
) -> DeliveryNote:
    """
    Record one delivery against a purchase order.

    lines: [{"po_item_id": 7, "received_quantity": 20, "rejected_quantity": 0,
             "rejection_reason": null, "batch_number": null, "expiry_date": null}]

    post_stock=False defers the ledger entries to complete_delivery_note.

    Raises:
        ValidationError: any line over-receives or is malformed (nothing written)
        StateError: PO not SENT / PARTIALLY_RECEIVED
    """
    if not isinstance(lines, list) or not lines:
        raise ValidationError("At least one receiving line is required")

    def _op():
        po = get_locked(PurchaseOrder, po_id, label="Purchase order")
        if po.status not in RECEIVABLE_PO_STATUSES:
            raise StateError(f"Cannot receive against purchase order in {po.status} status")

        items_by_id = {item.id: item for item in po.items}

        # Validate every line before writing anything
        validated = []
        seen = set()
        for raw in lines:
            if not isinstance(raw, dict):
                raise ValidationError("Each line must be an object")
            po_item_id = raw.get("po_item_id")
            item = items_by_id.get(po_item_id)
            if item is None:
                raise ValidationError(f"PO item {po_item_id} is not on purchase order {po.po_number}")
            if po_item_id in seen:
                raise ValidationError(f"PO item {po_item_id} appears more than once")
            seen.add(po_item_id)

            received = _non_negative_int("received_quantity", raw.get("received_quantity"))
            rejected = _non_negative_int("rejected_quantity", raw.get("rejected_quantity"))
            remaining = item.quantity - item.received_quantity
            if received + rejected > remaining:
                raise ValidationError(
                    f"Over-receipt on PO item {item.id}: received {received} + rejected {rejected} "
                    f"exceeds remaining {remaining}"
                )
            if rejected and not (raw.get("rejection_reason") or "").strip():
                raise ValidationError("rejection_reason is required when rejecting quantity")

            try:
                expiry = parse_iso_date(raw.get("expiry_date"))
            except (TypeError, ValueError):
                raise ValidationError("expiry_date must be YYYY-MM-DD")

            validated.append((item, received, rejected, raw, expiry))

        if not any(received or rejected for _item, received, rejected, _raw, _exp in validated):
            raise ValidationError("Nothing to receive: all quantities are zero")

        note = DeliveryNote(
            grn_number=next_document_number("GRN"),
            po_id=po.id,
            vendor_id=po.vendor_id,
            status=GRN_PENDING,
            stock_posted=False,
            notes=notes,
            received_by=actor_id,
            delivery_date=utcnow(),
        )
        db.session.add(note)
        db.session.flush()

        total_items = 0
        total_value = 0
        for item, received, rejected, raw, expiry in validated:
            line_total = received * item.unit_cost_cents
            db.session.add(DeliveryNoteItem(
                delivery_note_id=note.id,
                po_item_id=item.id,
                product_id=item.product_id,
                ordered_quantity=item.quantity,
                received_quantity=received,
                rejected_quantity=rejected,
                rejection_reason=raw.get("rejection_reason"),
                unit_cost_cents=item.unit_cost_cents,
                line_total_cents=line_total,
                batch_number=raw.get("batch_number"),
                expiry_date=expiry,
            ))
            item.received_quantity += received
            total_items += received
            total_value += line_total

        note.total_items = total_items
        note.total_value_cents = total_value
        db.session.flush()

        if post_stock:
            _post_note_stock(note, actor_id=actor_id)

        _recompute_po_status(po)
        db.session.commit()
        return note

    return run_with_retry(_op)


# =============================================================================
# DELIVERY NOTE LIFECYCLE
# =============================================================================

def verify_delivery_note(note_id: int, *, actor_id: str) -> DeliveryNote:
    """PENDING -> VERIFIED."""
    def _op():
        note = get_locked(DeliveryNote, note_id, label="Delivery note")
        if note.status in (GRN_VERIFIED, GRN_COMPLETED):
            raise AlreadyProcessedError(f"Delivery note {note.grn_number} already {note.status.lower()}")

        note.status = GRN_VERIFIED
        note.verified_by = actor_id
        note.verified_at = utcnow()
        db.session.commit()
        return note

    return run_with_retry(_op)


def complete_delivery_note(note_id: int, *, actor_id: str) -> DeliveryNote:
    """
    VERIFIED -> COMPLETED, posting stock only if the note never posted.

    Raises:
        AlreadyProcessedError: already completed (no ledger entries written)
        StateError: note not verified yet
    """
    def _op():
        note = get_locked(DeliveryNote, note_id, label="Delivery note")
        if note.status == GRN_COMPLETED:
            current_app.logger.info("Delivery note %s already completed", note.grn_number)
            raise AlreadyProcessedError(f"Delivery note {note.grn_number} already completed")
        if note.status != GRN_VERIFIED:
            raise StateError(f"Delivery note {note.grn_number} must be verified before completion")

        if not note.stock_posted:
            _post_note_stock(note, actor_id=actor_id)

        note.status = GRN_COMPLETED
        note.completed_by = actor_id
        note.completed_at = utcnow()
        db.session.commit()
        return note

    return run_with_retry(_op)


# =============================================================================
# READ MODELS
# =============================================================================

def get_purchase_order(po_id: int) -> dict:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise NotFoundError(f"Purchase order {po_id} not found")
    data = po.to_dict()
    data["items"] = [item.to_dict() for item in po.items]
    data["delivery_notes"] = [delivery_note_to_dict(n) for n in sorted(po.delivery_notes, key=lambda n: n.id)]
    return data


def delivery_note_to_dict(note: DeliveryNote) -> dict:
    data = note.to_dict()
    data["items"] = [item.to_dict() for item in note.items]
    return data
