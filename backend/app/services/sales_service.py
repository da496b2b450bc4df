"""
Sales checkout: price snapshot, settlement, stock debit, loyalty.

LIFECYCLE:
1. create_sale: lines priced from the catalog (price and tax snapshots),
   discounts applied, redeemed points taken, settlement initialized.
   Status PENDING. No stock moves yet.
2. Payments arrive through settlement_service (cash, mobile money).
3. complete_sale: requires PAID. Debits the stock ledger for every line
   and awards loyalty in one unit of work. Status COMPLETED.
   or cancel_sale: PENDING only. Redeemed points are given back.
"""

from flask import current_app

from ..extensions import db
from ..models import Customer, Product, Sale, SaleLineItem, PaymentTransaction
from ..money import percent_of_bps
from app.time_utils import utcnow
from . import loyalty_service, mpesa_service, settlement_service
from .concurrency import get_locked, run_with_retry
from .document_service import next_document_number
from .exceptions import (
    AlreadyProcessedError,
    InsufficientStockError,
    NotFoundError,
    StateError,
    ValidationError,
)
from .products_service import effective_tax_rate_bps
from .settings_service import ConfigSnapshot
from .stock_ledger_service import apply_movement_inner


SALE_STATUS_PENDING = "PENDING"
SALE_STATUS_COMPLETED = "COMPLETED"
SALE_STATUS_CANCELLED = "CANCELLED"


def _normalize_lines(lines) -> dict[int, int]:
    """Merge duplicate products; keep first-seen order."""
    if not isinstance(lines, list) or not lines:
        raise ValidationError("A sale needs at least one line")

    merged: dict[int, int] = {}
    for raw in lines:
        if not isinstance(raw, dict):
            raise ValidationError("Each line must be an object")
        product_id = raw.get("product_id")
        quantity = raw.get("quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def create_sale(
    *,
    cashier_id: str,
    lines,
    config: ConfigSnapshot,
    customer_id: int | None = None,
    manual_discount_cents: int = 0,
    points_to_redeem: int = 0,
) -> Sale:
    """
    Price and open a sale.

    Raises:
        ValidationError: bad lines, discounts above the subtotal, redemption above the cap
        NotFoundError: unknown product or customer
        InsufficientStockError: a line exceeds current stock (nothing written)
    """
    merged = _normalize_lines(lines)
    if isinstance(manual_discount_cents, bool) or not isinstance(manual_discount_cents, int) or manual_discount_cents < 0:
        raise ValidationError("manual_discount_cents must be a non-negative integer")
    if isinstance(points_to_redeem, bool) or not isinstance(points_to_redeem, int) or points_to_redeem < 0:
        raise ValidationError("points_to_redeem must be a non-negative integer")
    if points_to_redeem and customer_id is None:
        raise ValidationError("Loyalty redemption requires a customer")

    def _op():
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise NotFoundError(f"Customer {customer_id} not found")

        priced = []
        subtotal = 0
        tax_total = 0
        for product_id, quantity in merged.items():
            product = db.session.get(Product, product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            if not product.is_active:
                raise StateError(f"Product {product.sku} is inactive")
            if product.stock_on_hand < quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for {product.sku}: available {product.stock_on_hand}, requested {quantity}",
                    product_id=product.id,
                    available=product.stock_on_hand,
                )

            tax_rate = effective_tax_rate_bps(product, config)
            line_total = product.retail_price_cents * quantity
            line_tax = percent_of_bps(line_total, tax_rate)
            subtotal += line_total
            tax_total += line_tax
            priced.append((product, quantity, tax_rate, line_total, line_tax))

        if manual_discount_cents > subtotal:
            raise ValidationError("Discount cannot exceed the subtotal")

        pre_discount_total = subtotal + tax_total
        loyalty_discount = 0
        if points_to_redeem:
            allowed = loyalty_service.max_redeemable_points(customer_id, pre_discount_total, config)
            if points_to_redeem > allowed:
                raise ValidationError(
                    f"Can redeem at most {allowed} points on this sale "
                    f"({config.loyalty_max_redeem_percent}% of the total, limited by balance)"
                )
            loyalty_discount = loyalty_service.points_to_discount_cents(points_to_redeem, config)

        discount = manual_discount_cents + loyalty_discount
        if discount > subtotal:
            raise ValidationError("Combined discounts cannot exceed the subtotal")

        sale = Sale(
            document_number=next_document_number("SALE"),
            status=SALE_STATUS_PENDING,
            cashier_id=cashier_id,
            customer_id=customer_id,
            subtotal_cents=subtotal,
            tax_cents=tax_total,
            manual_discount_cents=manual_discount_cents,
            loyalty_discount_cents=loyalty_discount,
            discount_cents=discount,
            total_cents=subtotal - discount + tax_total,
            points_redeemed=points_to_redeem,
            created_at=utcnow(),
        )
        settlement_service.initialize(sale)
        db.session.add(sale)
        db.session.flush()

        for product, quantity, tax_rate, line_total, line_tax in priced:
            db.session.add(SaleLineItem(
                sale_id=sale.id,
                product_id=product.id,
                quantity=quantity,
                unit_price_cents=product.retail_price_cents,
                tax_rate_bps=tax_rate,
                line_total_cents=line_total,
                line_tax_cents=line_tax,
            ))

        if points_to_redeem:
            loyalty_service.redeem_inner(
                customer_id,
                points_to_redeem,
                sale_id=sale.id,
                actor_id=cashier_id,
                reason=f"Redeemed on {sale.document_number}",
            )

        db.session.commit()
        return sale

    return run_with_retry(_op)


def complete_sale(sale_id: int, *, actor_id: str, config: ConfigSnapshot) -> dict:
    """
    Finalize a fully paid sale: stock out for every line, loyalty in.

    All lines are debited in one unit of work; one InsufficientStockError
    aborts them all.

    Raises:
        AlreadyProcessedError: sale already completed
        StateError: cancelled, not fully paid, or a mobile push still pending
    """
    mpesa_service.expire_pending_transactions(sale_id=sale_id)

    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")

        if sale.status == SALE_STATUS_COMPLETED:
            current_app.logger.info("Sale %s already completed", sale.document_number)
            raise AlreadyProcessedError(f"Sale {sale.document_number} already completed")
        if sale.status != SALE_STATUS_PENDING:
            raise StateError(f"Cannot complete a {sale.status} sale")
        if sale.payment_status != settlement_service.STATUS_PAID:
            raise StateError(
                f"Sale {sale.document_number} is not fully paid (remaining {sale.remaining_cents})"
            )
        if sale.mpesa_pending:
            raise StateError("A mobile-money request is still awaiting confirmation")

        for line in sale.lines:
            apply_movement_inner(
                line.product_id,
                "sale",
                -line.quantity,
                reference_type="sale",
                reference_id=sale.id,
                actor_id=actor_id,
                notes=f"Sale {sale.document_number}",
            )

        points_awarded = 0
        if sale.customer_id is not None:
            result = loyalty_service.award_inner(
                sale.customer_id,
                sale.total_cents,
                config=config,
                sale_id=sale.id,
                actor_id=actor_id,
            )
            points_awarded = result["points_awarded"]

        sale.status = SALE_STATUS_COMPLETED
        sale.completed_at = utcnow()
        db.session.commit()

        data = sale_to_dict(sale)
        data["points_awarded"] = points_awarded
        return data

    return run_with_retry(_op)


def cancel_sale(sale_id: int, *, actor_id: str, reason: str | None = None) -> dict:
    """
    Abandon a pending sale.

    Tendered money is written back as REFUND transactions and redeemed
    points are reversed.

    Raises:
        AlreadyProcessedError: sale already cancelled
        StateError: completed, or a mobile push still pending
    """
    mpesa_service.expire_pending_transactions(sale_id=sale_id)

    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")

        if sale.status == SALE_STATUS_CANCELLED:
            raise AlreadyProcessedError(f"Sale {sale.document_number} already cancelled")
        if sale.status != SALE_STATUS_PENDING:
            raise StateError(f"Cannot cancel a {sale.status} sale")
        if sale.mpesa_pending:
            raise StateError("Cannot cancel while a mobile-money request is awaiting confirmation")

        now = utcnow()
        for tender, amount in (("CASH", sale.cash_cents), ("MPESA", sale.mpesa_cents)):
            if amount > 0:
                db.session.add(PaymentTransaction(
                    sale_id=sale.id,
                    transaction_type="REFUND",
                    tender_type=tender,
                    amount_cents=-amount,
                    reference=f"Cancelled {sale.document_number}",
                    actor_id=actor_id,
                    occurred_at=now,
                ))
                sale.refunded_cents += amount

        if sale.points_redeemed and sale.customer_id is not None:
            loyalty_service.reverse_redemption_inner(
                sale.customer_id, sale.points_redeemed, sale_id=sale.id, actor_id=actor_id
            )

        sale.status = SALE_STATUS_CANCELLED
        sale.cancelled_at = now
        sale.cancel_reason = reason
        db.session.commit()
        return sale_to_dict(sale)

    return run_with_retry(_op)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def sale_to_dict(sale: Sale) -> dict:
    data = sale.to_dict()
    data["lines"] = [line.to_dict() for line in sale.lines]
    return data
