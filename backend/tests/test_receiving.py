"""
Purchase receiving tests.

Verifies over-receipt rejection is all-or-nothing, PO status progression,
rejected quantities staying off the ledger and deferred GRN posting.
"""

import pytest

from app.extensions import db
from app.models import DeliveryNote, POItem, StockMovement
from app.services import receive_service, stock_ledger_service
from app.services.exceptions import AlreadyProcessedError, StateError, ValidationError
from app.signals import purchase_order_sent


@pytest.fixture
def sent_po(vendor, make_product):
    """A SENT purchase order for 100 units of a product with no stock."""
    product = make_product(stock=0, unit_cost_cents=2500)
    po = receive_service.create_purchase_order(
        vendor_id=vendor.id,
        items=[{"product_id": product.id, "quantity": 100, "unit_cost_cents": 2500}],
        actor_id="manager-1",
    )
    receive_service.send_purchase_order(po.id, actor_id="manager-1")
    item = db.session.query(POItem).filter_by(po_id=po.id).one()
    return po.id, item.id, product.id


def _receipt_movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id, movement_type="purchase_receipt")
        .all()
    )


def test_partial_then_over_then_exact_receipt(sent_po):
    po_id, item_id, product_id = sent_po

    note = receive_service.receive(
        po_id, lines=[{"po_item_id": item_id, "received_quantity": 80}], actor_id="clerk-1"
    )
    assert note.grn_number.startswith("GRN-")
    po = receive_service.get_purchase_order(po_id)
    assert po["status"] == "PARTIALLY_RECEIVED"
    assert po["items"][0]["received_quantity"] == 80
    assert stock_ledger_service.get_stock_on_hand(product_id) == 80

    with pytest.raises(ValidationError):
        receive_service.receive(
            po_id, lines=[{"po_item_id": item_id, "received_quantity": 25}], actor_id="clerk-1"
        )

    # The failed call wrote nothing
    assert db.session.query(DeliveryNote).count() == 1
    assert len(_receipt_movements(product_id)) == 1
    po = receive_service.get_purchase_order(po_id)
    assert po["status"] == "PARTIALLY_RECEIVED"
    assert po["items"][0]["received_quantity"] == 80

    receive_service.receive(
        po_id, lines=[{"po_item_id": item_id, "received_quantity": 20}], actor_id="clerk-1"
    )
    po = receive_service.get_purchase_order(po_id)
    assert po["status"] == "RECEIVED"
    assert po["items"][0]["remaining_quantity"] == 0
    assert stock_ledger_service.get_stock_on_hand(product_id) == 100
    assert len(po["delivery_notes"]) == 2

    with pytest.raises(StateError):
        receive_service.receive(
            po_id, lines=[{"po_item_id": item_id, "received_quantity": 1}], actor_id="clerk-1"
        )


def test_one_bad_line_rejects_whole_delivery(vendor, make_product):
    a = make_product(stock=0)
    b = make_product(stock=0)
    po = receive_service.create_purchase_order(
        vendor_id=vendor.id,
        items=[
            {"product_id": a.id, "quantity": 10, "unit_cost_cents": 100},
            {"product_id": b.id, "quantity": 5, "unit_cost_cents": 100},
        ],
        actor_id="manager-1",
    )
    receive_service.send_purchase_order(po.id, actor_id="manager-1")
    items = {i.product_id: i.id for i in db.session.query(POItem).filter_by(po_id=po.id)}

    with pytest.raises(ValidationError):
        receive_service.receive(
            po.id,
            lines=[
                {"po_item_id": items[a.id], "received_quantity": 10},
                {"po_item_id": items[b.id], "received_quantity": 6},
            ],
            actor_id="clerk-1",
        )

    assert stock_ledger_service.get_stock_on_hand(a.id) == 0
    assert stock_ledger_service.get_stock_on_hand(b.id) == 0
    assert receive_service.get_purchase_order(po.id)["status"] == "SENT"


def test_rejected_quantity_needs_reason_and_skips_ledger(sent_po):
    po_id, item_id, product_id = sent_po

    with pytest.raises(ValidationError):
        receive_service.receive(
            po_id,
            lines=[{"po_item_id": item_id, "received_quantity": 90, "rejected_quantity": 10}],
            actor_id="clerk-1",
        )

    note = receive_service.receive(
        po_id,
        lines=[{
            "po_item_id": item_id,
            "received_quantity": 90,
            "rejected_quantity": 10,
            "rejection_reason": "Crushed cartons",
        }],
        actor_id="clerk-1",
    )

    data = receive_service.delivery_note_to_dict(note)
    assert data["items"][0]["rejected_quantity"] == 10
    assert data["items"][0]["rejection_reason"] == "Crushed cartons"
    assert data["total_items"] == 90
    assert data["total_value_cents"] == 90 * 2500
    assert stock_ledger_service.get_stock_on_hand(product_id) == 90

    # Rejected units do not count as received
    po = receive_service.get_purchase_order(po_id)
    assert po["status"] == "PARTIALLY_RECEIVED"
    assert po["items"][0]["received_quantity"] == 90


def test_deferred_posting_happens_once_on_completion(sent_po):
    po_id, item_id, product_id = sent_po

    note = receive_service.receive(
        po_id,
        lines=[{"po_item_id": item_id, "received_quantity": 40, "batch_number": "B-17", "expiry_date": "2027-03-31"}],
        actor_id="clerk-1",
        post_stock=False,
    )
    assert note.stock_posted is False
    assert stock_ledger_service.get_stock_on_hand(product_id) == 0

    with pytest.raises(StateError):
        receive_service.complete_delivery_note(note.id, actor_id="manager-1")

    receive_service.verify_delivery_note(note.id, actor_id="manager-1")
    with pytest.raises(AlreadyProcessedError):
        receive_service.verify_delivery_note(note.id, actor_id="manager-1")

    completed = receive_service.complete_delivery_note(note.id, actor_id="manager-1")
    assert completed.status == "COMPLETED"
    assert completed.stock_posted is True
    assert stock_ledger_service.get_stock_on_hand(product_id) == 40

    with pytest.raises(AlreadyProcessedError):
        receive_service.complete_delivery_note(note.id, actor_id="manager-1")

    assert len(_receipt_movements(product_id)) == 1
    assert stock_ledger_service.get_stock_on_hand(product_id) == 40


def test_completing_an_already_posted_note_adds_no_stock(sent_po):
    po_id, item_id, product_id = sent_po
    note = receive_service.receive(
        po_id, lines=[{"po_item_id": item_id, "received_quantity": 30}], actor_id="clerk-1"
    )

    receive_service.verify_delivery_note(note.id, actor_id="manager-1")
    receive_service.complete_delivery_note(note.id, actor_id="manager-1")

    assert stock_ledger_service.get_stock_on_hand(product_id) == 30
    assert len(_receipt_movements(product_id)) == 1


def test_receipt_movements_carry_unit_cost_and_grn_reference(sent_po):
    po_id, item_id, product_id = sent_po
    note = receive_service.receive(
        po_id, lines=[{"po_item_id": item_id, "received_quantity": 12}], actor_id="clerk-1"
    )

    movement = _receipt_movements(product_id)[0]
    assert movement.unit_cost_cents == 2500
    assert movement.reference_type == "delivery_note"
    assert movement.reference_id == str(note.id)
    assert movement.actor_id == "clerk-1"


def test_purchase_order_lifecycle_guards(vendor, make_product):
    product = make_product(stock=0)
    po = receive_service.create_purchase_order(
        vendor_id=vendor.id,
        items=[{"product_id": product.id, "quantity": 3, "unit_cost_cents": 500}],
        actor_id="manager-1",
    )
    item_id = db.session.query(POItem).filter_by(po_id=po.id).one().id
    assert receive_service.get_purchase_order(po.id)["total_cents"] == 1500

    # Drafts cannot be received or cancelled
    with pytest.raises(StateError):
        receive_service.receive(po.id, lines=[{"po_item_id": item_id, "received_quantity": 1}], actor_id="c")
    with pytest.raises(StateError):
        receive_service.cancel_purchase_order(po.id, actor_id="manager-1")

    sent = []

    def listener(sender, **kwargs):
        sent.append((sender.id, kwargs.get("actor_id")))

    with purchase_order_sent.connected_to(listener):
        receive_service.send_purchase_order(po.id, actor_id="manager-1")
    assert sent == [(po.id, "manager-1")]

    with pytest.raises(AlreadyProcessedError):
        receive_service.send_purchase_order(po.id, actor_id="manager-1")

    cancelled = receive_service.cancel_purchase_order(po.id, actor_id="manager-1", reason="Supplier out")
    assert cancelled.status == "CANCELLED"
    with pytest.raises(AlreadyProcessedError):
        receive_service.cancel_purchase_order(po.id, actor_id="manager-1")


@pytest.mark.parametrize("items", [
    [],
    [{"product_id": 1, "quantity": 0, "unit_cost_cents": 100}],
    [{"product_id": "1", "quantity": 1, "unit_cost_cents": 100}],
    [{"product_id": 1, "quantity": 1, "unit_cost_cents": -1}],
])
def test_create_purchase_order_validates_items(vendor, items):
    with pytest.raises(ValidationError):
        receive_service.create_purchase_order(vendor_id=vendor.id, items=items, actor_id="manager-1")
