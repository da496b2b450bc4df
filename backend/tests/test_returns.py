"""
Returns tests: quantity limits, approval idempotence and the refund record.
"""

import pytest

from app.extensions import db
from app.models import PaymentTransaction, Sale, StockMovement
from app.services import return_service, sales_service, stock_ledger_service
from app.services.exceptions import AlreadyProcessedError, StateError, ValidationError


def _return_movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id, movement_type="sale_return")
        .all()
    )


def test_approve_twice_restores_stock_once(make_product, completed_sale):
    product = make_product(price_cents=1500, stock=10)
    sale_id = completed_sale([{"product_id": product.id, "quantity": 3}])
    assert stock_ledger_service.get_stock_on_hand(product.id) == 7

    ret = return_service.create_return(
        sale_id=sale_id,
        items=[{"product_id": product.id, "quantity": 2}],
        reason="Wrong size",
        refund_method="CASH",
        actor_id="cashier-1",
    )
    assert ret.status == "PENDING"
    assert ret.return_amount_cents == 3000
    assert ret.document_number.startswith("RET-")

    approved = return_service.approve_return(ret.id, actor_id="admin-1")
    assert approved.status == "COMPLETED"
    assert approved.stock_restored is True

    with pytest.raises(AlreadyProcessedError) as exc:
        return_service.approve_return(ret.id, actor_id="admin-1")
    assert exc.value.http_status == 200

    assert stock_ledger_service.get_stock_on_hand(product.id) == 9
    assert len(_return_movements(product.id)) == 1

    refunds = db.session.query(PaymentTransaction).filter_by(return_id=ret.id).all()
    assert len(refunds) == 1
    assert refunds[0].transaction_type == "REFUND"
    assert refunds[0].tender_type == "CASH"
    assert refunds[0].amount_cents == -3000
    assert db.session.get(Sale, sale_id).refunded_cents == 3000


def test_refund_uses_sale_price_snapshot(make_product, completed_sale):
    product = make_product(price_cents=2000, stock=5)
    sale_id = completed_sale([{"product_id": product.id, "quantity": 1}])

    product.retail_price_cents = 9999
    db.session.commit()

    ret = return_service.create_return(
        sale_id=sale_id,
        items=[{"product_id": product.id, "quantity": 1}],
        reason="Defective",
        refund_method="MPESA",
        actor_id="cashier-1",
    )
    assert ret.return_amount_cents == 2000


def test_cumulative_returns_cannot_exceed_quantity_sold(make_product, completed_sale):
    product = make_product(price_cents=1000, stock=10)
    sale_id = completed_sale([{"product_id": product.id, "quantity": 3}])

    return_service.create_return(
        sale_id=sale_id, items=[{"product_id": product.id, "quantity": 2}],
        reason="Changed mind", refund_method="CASH", actor_id="cashier-1",
    )

    # Pending returns already count against the line
    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sale_id, items=[{"product_id": product.id, "quantity": 2}],
            reason="Changed mind", refund_method="CASH", actor_id="cashier-1",
        )

    last = return_service.create_return(
        sale_id=sale_id, items=[{"product_id": product.id, "quantity": 1}],
        reason="Changed mind", refund_method="CASH", actor_id="cashier-1",
    )
    assert last.status == "PENDING"
    assert len(return_service.get_sale_returns(sale_id)) == 2


def test_rejected_return_frees_quantity_and_touches_nothing(make_product, completed_sale):
    product = make_product(price_cents=1000, stock=10)
    sale_id = completed_sale([{"product_id": product.id, "quantity": 2}])

    ret = return_service.create_return(
        sale_id=sale_id, items=[{"product_id": product.id, "quantity": 2}],
        reason="Damaged", refund_method="CASH", actor_id="cashier-1",
    )
    rejected = return_service.reject_return(ret.id, actor_id="admin-1", rejection_reason="Used item")
    assert rejected.status == "REJECTED"
    assert rejected.rejection_reason == "Used item"

    with pytest.raises(AlreadyProcessedError):
        return_service.approve_return(ret.id, actor_id="admin-1")
    with pytest.raises(AlreadyProcessedError):
        return_service.reject_return(ret.id, actor_id="admin-1")

    assert stock_ledger_service.get_stock_on_hand(product.id) == 8
    assert _return_movements(product.id) == []
    assert db.session.query(PaymentTransaction).filter_by(transaction_type="REFUND").count() == 0

    again = return_service.create_return(
        sale_id=sale_id, items=[{"product_id": product.id, "quantity": 2}],
        reason="Damaged", refund_method="CASH", actor_id="cashier-1",
    )
    assert again.status == "PENDING"


def test_only_completed_sales_can_be_returned(make_product, config):
    product = make_product(price_cents=1000, stock=10)
    sale = sales_service.create_sale(
        cashier_id="cashier-1", lines=[{"product_id": product.id, "quantity": 1}], config=config
    )

    with pytest.raises(StateError):
        return_service.create_return(
            sale_id=sale.id, items=[{"product_id": product.id, "quantity": 1}],
            reason="Nope", refund_method="CASH", actor_id="cashier-1",
        )


def test_product_not_on_sale_is_refused(make_product, completed_sale):
    sold = make_product(price_cents=1000, stock=10)
    other = make_product(price_cents=1000, stock=10)
    sale_id = completed_sale([{"product_id": sold.id, "quantity": 1}])

    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sale_id, items=[{"product_id": other.id, "quantity": 1}],
            reason="Mixed up", refund_method="CASH", actor_id="cashier-1",
        )


@pytest.mark.parametrize("kwargs", [
    {"reason": "", "refund_method": "CASH"},
    {"reason": "Broken", "refund_method": "CHEQUE"},
])
def test_reason_and_refund_method_are_validated(make_product, completed_sale, kwargs):
    product = make_product(price_cents=1000, stock=10)
    sale_id = completed_sale([{"product_id": product.id, "quantity": 1}])

    with pytest.raises(ValidationError):
        return_service.create_return(
            sale_id=sale_id, items=[{"product_id": product.id, "quantity": 1}],
            actor_id="cashier-1", **kwargs,
        )


def test_multi_line_return_restores_each_product(make_product, completed_sale):
    a = make_product(price_cents=1000, stock=10)
    b = make_product(price_cents=500, stock=10)
    sale_id = completed_sale([
        {"product_id": a.id, "quantity": 2},
        {"product_id": b.id, "quantity": 4},
    ])

    ret = return_service.create_return(
        sale_id=sale_id,
        items=[{"product_id": a.id, "quantity": 1}, {"product_id": b.id, "quantity": 4}],
        reason="Duplicate purchase",
        refund_method="STORE_CREDIT",
        actor_id="cashier-1",
    )
    assert ret.return_amount_cents == 1000 + 2000

    return_service.approve_return(ret.id, actor_id="admin-1")

    assert stock_ledger_service.get_stock_on_hand(a.id) == 9
    assert stock_ledger_service.get_stock_on_hand(b.id) == 10
    assert stock_ledger_service.verify_chain(a.id)["ok"] is True
    assert stock_ledger_service.verify_chain(b.id)["ok"] is True
