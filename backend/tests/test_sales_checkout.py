"""
Checkout tests: pricing snapshot, completion and cancellation.
"""

import pytest

from app.extensions import db
from app.models import SaleLineItem, StockMovement
from app.services import sales_service, settlement_service, stock_ledger_service
from app.services.exceptions import (
    AlreadyProcessedError,
    InsufficientStockError,
    NotFoundError,
    StateError,
    ValidationError,
)


def _sell(config, lines, **kwargs):
    return sales_service.create_sale(cashier_id="cashier-1", lines=lines, config=config, **kwargs)


def test_sale_is_priced_from_catalog_with_tax_override(make_product, config):
    taxed = make_product(price_cents=10_000, tax_rate_bps=1600)
    untaxed = make_product(price_cents=2_550)

    sale = _sell(config, [
        {"product_id": taxed.id, "quantity": 2},
        {"product_id": untaxed.id, "quantity": 1},
    ])

    assert sale.status == "PENDING"
    assert sale.document_number.startswith("SAL-")
    assert sale.subtotal_cents == 22_550
    assert sale.tax_cents == 3_200
    assert sale.total_cents == 25_750
    assert sale.remaining_cents == 25_750
    assert sale.payment_status == "PENDING"

    lines = {line.product_id: line for line in db.session.query(SaleLineItem).filter_by(sale_id=sale.id)}
    assert lines[taxed.id].tax_rate_bps == 1600
    assert lines[taxed.id].line_tax_cents == 3_200
    assert lines[untaxed.id].tax_rate_bps == 0


def test_duplicate_lines_are_merged(make_product, config):
    product = make_product(price_cents=1_000, stock=5)

    sale = _sell(config, [
        {"product_id": product.id, "quantity": 2},
        {"product_id": product.id, "quantity": 1},
    ])

    lines = db.session.query(SaleLineItem).filter_by(sale_id=sale.id).all()
    assert [(line.product_id, line.quantity) for line in lines] == [(product.id, 3)]


def test_creating_a_sale_moves_no_stock(make_product, config):
    product = make_product(stock=4)
    _sell(config, [{"product_id": product.id, "quantity": 4}])
    assert stock_ledger_service.get_stock_on_hand(product.id) == 4


@pytest.mark.parametrize("lines", [
    [],
    None,
    [{"product_id": 1}],
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": "1", "quantity": 1}],
    ["not-a-line"],
])
def test_malformed_lines_are_rejected(config, lines):
    with pytest.raises(ValidationError):
        _sell(config, lines)


def test_unknown_product_and_short_stock(make_product, config):
    product = make_product(stock=2)

    with pytest.raises(NotFoundError):
        _sell(config, [{"product_id": product.id + 1000, "quantity": 1}])

    with pytest.raises(InsufficientStockError) as exc:
        _sell(config, [{"product_id": product.id, "quantity": 3}])
    assert exc.value.available == 2


def test_manual_discount_cannot_exceed_subtotal(make_product, config):
    product = make_product(price_cents=1_000)

    with pytest.raises(ValidationError):
        _sell(config, [{"product_id": product.id, "quantity": 1}], manual_discount_cents=1_001)

    sale = _sell(config, [{"product_id": product.id, "quantity": 1}], manual_discount_cents=250)
    assert sale.total_cents == 750


def test_redemption_requires_a_customer(make_product, config):
    product = make_product()
    with pytest.raises(ValidationError):
        _sell(config, [{"product_id": product.id, "quantity": 1}], points_to_redeem=10)


def test_complete_requires_full_payment_and_is_idempotent(make_product, config):
    product = make_product(price_cents=5_000, stock=10)
    sale = _sell(config, [{"product_id": product.id, "quantity": 2}])

    with pytest.raises(StateError):
        sales_service.complete_sale(sale.id, actor_id="cashier-1", config=config)

    settlement_service.add_cash_payment(sale.id, 10_000, actor_id="cashier-1")
    completed = sales_service.complete_sale(sale.id, actor_id="cashier-1", config=config)
    assert completed["status"] == "COMPLETED"
    assert completed["completed_at"] is not None

    with pytest.raises(AlreadyProcessedError):
        sales_service.complete_sale(sale.id, actor_id="cashier-1", config=config)

    assert stock_ledger_service.get_stock_on_hand(product.id) == 8
    movements = db.session.query(StockMovement).filter_by(
        product_id=product.id, movement_type="sale"
    ).all()
    assert len(movements) == 1
    assert movements[0].reference_id == str(sale.id)
    assert movements[0].quantity_delta == -2


def test_completion_debits_all_lines_or_none(make_product, config, completed_sale):
    plenty = make_product(price_cents=1_000, stock=10)
    scarce = make_product(price_cents=1_000, stock=1)

    sale = _sell(config, [
        {"product_id": plenty.id, "quantity": 3},
        {"product_id": scarce.id, "quantity": 1},
    ])
    settlement_service.add_cash_payment(sale.id, sale.total_cents, actor_id="cashier-1")

    # Another till sells the last scarce unit first
    completed_sale([{"product_id": scarce.id, "quantity": 1}], actor="cashier-2")

    with pytest.raises(InsufficientStockError):
        sales_service.complete_sale(sale.id, actor_id="cashier-1", config=config)

    assert stock_ledger_service.get_stock_on_hand(plenty.id) == 10
    assert stock_ledger_service.get_stock_on_hand(scarce.id) == 0
    assert sales_service.get_sale(sale.id).status == "PENDING"


def test_cancel_is_idempotent_and_final(make_product, config):
    product = make_product()
    sale = _sell(config, [{"product_id": product.id, "quantity": 1}])

    cancelled = sales_service.cancel_sale(sale.id, actor_id="cashier-1", reason="Voided")
    assert cancelled["status"] == "CANCELLED"
    assert cancelled["cancel_reason"] == "Voided"

    with pytest.raises(AlreadyProcessedError):
        sales_service.cancel_sale(sale.id, actor_id="cashier-1")
    with pytest.raises(StateError):
        sales_service.complete_sale(sale.id, actor_id="cashier-1", config=config)


def test_completed_sale_cannot_be_cancelled(make_product, config, completed_sale):
    product = make_product()
    sale_id = completed_sale([{"product_id": product.id, "quantity": 1}])

    with pytest.raises(StateError):
        sales_service.cancel_sale(sale_id, actor_id="cashier-1")


def test_sale_dict_includes_lines(make_product, config):
    product = make_product(price_cents=1_234)
    sale = _sell(config, [{"product_id": product.id, "quantity": 2}])

    data = sales_service.sale_to_dict(sales_service.get_sale(sale.id))
    assert data["total_cents"] == 2_468
    assert [line["quantity"] for line in data["lines"]] == [2]
