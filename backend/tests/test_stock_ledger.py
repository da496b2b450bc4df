import pytest
from sqlalchemy import update

from app.extensions import db
from app.models import LocationStock, Product, StockMovement
from app.services import stock_ledger_service
from app.services.exceptions import (
    ConcurrentStockConflictError,
    InsufficientStockError,
    ValidationError,
)
from app.signals import stock_below_reorder_level


def _movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.asc())
        .all()
    )


def test_initial_stock_is_a_ledger_movement(make_product):
    product = make_product(stock=12)

    movements = _movements(product.id)
    assert len(movements) == 1
    assert movements[0].movement_type == "initial_stock"
    assert movements[0].quantity_before == 0
    assert movements[0].quantity_after == 12
    assert product.stock_on_hand == 12


def test_sell_to_zero_then_insufficient_stock(make_product):
    product = make_product(stock=5)

    stock_ledger_service.apply_movement(
        product.id, "sale", -5, reference_type="sale", reference_id=1, actor_id="cashier-1"
    )
    assert stock_ledger_service.get_stock_on_hand(product.id) == 0

    with pytest.raises(InsufficientStockError) as exc:
        stock_ledger_service.apply_movement(
            product.id, "sale", -1, reference_type="sale", reference_id=2, actor_id="cashier-1"
        )

    assert exc.value.available == 0
    assert exc.value.retry_safe is True
    assert stock_ledger_service.get_stock_on_hand(product.id) == 0
    assert len(_movements(product.id)) == 2


def test_chain_links_every_movement(make_product):
    product = make_product(stock=10)

    stock_ledger_service.apply_movement(product.id, "sale", -3, reference_type="sale", actor_id="u")
    stock_ledger_service.apply_movement(product.id, "purchase_receipt", 20, reference_type="grn", actor_id="u")
    stock_ledger_service.apply_movement(product.id, "damaged", -2, reference_type="adjustment", actor_id="u")
    stock_ledger_service.apply_movement(product.id, "sale_return", 1, reference_type="return", actor_id="u")

    movements = _movements(product.id)
    for earlier, later in zip(movements, movements[1:]):
        assert earlier.quantity_after == later.quantity_before
    for m in movements:
        assert m.quantity_after == m.quantity_before + m.quantity_delta

    assert movements[-1].quantity_after == 26
    assert stock_ledger_service.get_stock_on_hand(product.id) == 26

    audit = stock_ledger_service.verify_chain(product.id)
    assert audit["ok"] is True
    assert audit["movements_checked"] == 5
    assert audit["broken_at_movement_id"] is None


def test_verify_chain_reports_tampered_movement(make_product):
    product = make_product(stock=10)
    stock_ledger_service.apply_movement(product.id, "sale", -4, reference_type="sale", actor_id="u")
    second = _movements(product.id)[1]

    second.quantity_before = 99
    db.session.commit()

    audit = stock_ledger_service.verify_chain(product.id)
    assert audit["ok"] is False
    assert audit["broken_at_movement_id"] == second.id


@pytest.mark.parametrize("movement_type,delta", [
    ("sale", 3),
    ("purchase_receipt", -3),
    ("sale_return", 0),
    ("teleport", 1),
])
def test_wrong_signed_or_unknown_movements_are_rejected(make_product, movement_type, delta):
    product = make_product(stock=10)

    with pytest.raises(ValidationError):
        stock_ledger_service.apply_movement(
            product.id, movement_type, delta, reference_type="test", actor_id="u"
        )

    assert stock_ledger_service.get_stock_on_hand(product.id) == 10
    assert len(_movements(product.id)) == 1


def test_lost_compare_and_set_surfaces_conflict(make_product, monkeypatch):
    product = make_product(stock=10)
    calls = []

    def always_lose(product_id, expected_version, new_quantity):
        calls.append(expected_version)
        return False

    monkeypatch.setattr(stock_ledger_service, "_compare_and_set", always_lose)

    with pytest.raises(ConcurrentStockConflictError):
        stock_ledger_service.apply_movement(product.id, "sale", -1, reference_type="sale", actor_id="u")

    assert len(calls) == 3
    monkeypatch.undo()
    assert stock_ledger_service.get_stock_on_hand(product.id) == 10
    assert len(_movements(product.id)) == 1


def test_compare_and_set_recovers_after_one_lost_race(make_product, monkeypatch):
    product = make_product(stock=10)
    real = stock_ledger_service._compare_and_set
    attempts = []

    def lose_once(product_id, expected_version, new_quantity):
        attempts.append(expected_version)
        if len(attempts) == 1:
            # Another writer sells 2 units between our read and our write
            db.session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(stock_on_hand=Product.stock_on_hand - 2, version_id=Product.version_id + 1)
                .execution_options(synchronize_session=False)
            )
            return False
        return real(product_id, expected_version, new_quantity)

    monkeypatch.setattr(stock_ledger_service, "_compare_and_set", lose_once)

    movement = stock_ledger_service.apply_movement(
        product.id, "sale", -1, reference_type="sale", actor_id="u"
    )

    assert len(attempts) == 2
    assert movement["quantity_before"] == 8
    assert movement["quantity_after"] == 7
    assert stock_ledger_service.get_stock_on_hand(product.id) == 7


def test_adjust_stock_requires_notes_for_removals(make_product):
    product = make_product(stock=10)

    with pytest.raises(ValidationError):
        stock_ledger_service.adjust_stock(
            product_id=product.id, movement_type="damaged", quantity=2, actor_id="mgr"
        )

    movement = stock_ledger_service.adjust_stock(
        product_id=product.id, movement_type="damaged", quantity=2, actor_id="mgr", notes="Dropped crate"
    )
    assert movement["quantity_delta"] == -2
    assert movement["reference_type"] == "adjustment"

    movement = stock_ledger_service.adjust_stock(
        product_id=product.id, movement_type="adjustment_in", quantity=5, actor_id="mgr"
    )
    assert movement["quantity_after"] == 13


def test_location_counter_cannot_go_negative(make_product, location_pair):
    main, back = location_pair
    product = make_product(stock=6, location_id=main.id)

    with pytest.raises(InsufficientStockError):
        stock_ledger_service.apply_movement(
            product.id, "transfer_out", -1, reference_type="transfer", actor_id="u", location_id=back.id
        )

    row = db.session.query(LocationStock).filter_by(product_id=product.id, location_id=main.id).one()
    assert row.quantity == 6
    assert stock_ledger_service.get_stock_on_hand(product.id) == 6


def test_low_stock_signal_and_feed(make_product):
    product = make_product(stock=5, reorder_level=3)
    other = make_product(stock=50, reorder_level=3)
    received = []

    def listener(sender, **kwargs):
        received.append((sender.id, kwargs["stock_on_hand"], kwargs["reorder_level"]))

    with stock_below_reorder_level.connected_to(listener):
        stock_ledger_service.apply_movement(product.id, "sale", -1, reference_type="sale", actor_id="u")
        stock_ledger_service.apply_movement(product.id, "sale", -1, reference_type="sale", actor_id="u")
        stock_ledger_service.apply_movement(other.id, "sale", -1, reference_type="sale", actor_id="u")

    assert received == [(product.id, 3, 3)]
    low = stock_ledger_service.low_stock_products()
    assert [p["id"] for p in low] == [product.id]
