from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


class Sale(db.Model):
    """
    Sale header plus its payment settlement state.

    INVARIANTS:
    - total_cents = subtotal_cents - discount_cents + tax_cents
    - remaining_cents = max(0, total_cents - cash_cents - mpesa_cents)
    - change_cents = max(0, cash_cents + mpesa_cents - total_cents)
    - payment_status == PAID <=> remaining_cents == 0
    - at most one outstanding mobile-money request (checkout_request_id)

    LIFECYCLE:
    PENDING -> COMPLETED (stock debited, loyalty awarded)
    PENDING -> CANCELLED

    Once COMPLETED only refunded_cents may change.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_sales_docnum"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "SAL-000123")
    document_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    cashier_id = db.Column(db.String(64), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # Totals (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    manual_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    points_redeemed = db.Column(db.Integer, nullable=False, default=0)

    # CASH, MPESA, HYBRID (set as tenders arrive)
    payment_method = db.Column(db.String(16), nullable=True)

    # Settlement state
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    cash_cents = db.Column(db.Integer, nullable=False, default=0)
    mpesa_cents = db.Column(db.Integer, nullable=False, default=0)
    remaining_cents = db.Column(db.Integer, nullable=False, default=0)
    change_cents = db.Column(db.Integer, nullable=False, default=0)
    mpesa_pending = db.Column(db.Boolean, nullable=False, default=False)
    checkout_request_id = db.Column(db.String(128), nullable=True, index=True)

    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total_paid_cents(self) -> int:
        return self.cash_cents + self.mpesa_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "status": self.status,
            "cashier_id": self.cashier_id,
            "customer_id": self.customer_id,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "manual_discount_cents": self.manual_discount_cents,
            "loyalty_discount_cents": self.loyalty_discount_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "points_redeemed": self.points_redeemed,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "cash_cents": self.cash_cents,
            "mpesa_cents": self.mpesa_cents,
            "remaining_cents": self.remaining_cents,
            "change_cents": self.change_cents,
            "mpesa_pending": self.mpesa_pending,
            "checkout_request_id": self.checkout_request_id,
            "refunded_cents": self.refunded_cents,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "version_id": self.version_id,
        }


class SaleLineItem(db.Model):
    """
    Line item on a sale. Never mutated after creation.

    unit_price_cents and tax_rate_bps are snapshots of the catalog at checkout.
    """
    __tablename__ = "sale_line_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)
    line_tax_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("lines", lazy=True, order_by="SaleLineItem.id"))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "line_total_cents": self.line_total_cents,
            "line_tax_cents": self.line_tax_cents,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentTransaction(db.Model):
    """
    Append-only ledger of money movements on a sale.

    TRANSACTION TYPES:
    - PAYMENT: cash tendered or mobile-money confirmed (positive)
    - REFUND: money returned after an approved return (negative)

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_txns_sale_occurred", "sale_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)  # PAYMENT, REFUND
    tender_type = db.Column(db.String(32), nullable=False, index=True)  # CASH, MPESA, ...

    # Positive for payments, negative for refunds
    amount_cents = db.Column(db.Integer, nullable=False)

    # Provider receipt code, return document number, ...
    reference = db.Column(db.String(128), nullable=True)

    mpesa_transaction_id = db.Column(db.Integer, db.ForeignKey("mpesa_transactions.id"), nullable=True, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True, index=True)

    actor_id = db.Column(db.String(64), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    sale = db.relationship("Sale", backref=db.backref("payment_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "transaction_type": self.transaction_type,
            "tender_type": self.tender_type,
            "amount_cents": self.amount_cents,
            "reference": self.reference,
            "mpesa_transaction_id": self.mpesa_transaction_id,
            "return_id": self.return_id,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class MpesaTransaction(db.Model):
    """
    One row per STK Push attempt.

    Created only after the provider accepts the push (PENDING).
    Mutated exactly once by the callback or the timeout sweep
    (COMPLETED / FAILED). Retries create a new row with a new
    checkout_request_id.
    """
    __tablename__ = "mpesa_transactions"
    __table_args__ = (
        db.UniqueConstraint("checkout_request_id", name="uq_mpesa_checkout_request"),
        db.Index("ix_mpesa_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    phone_number = db.Column(db.String(16), nullable=False)

    # Whole currency units as submitted to the provider
    amount_units = db.Column(db.Integer, nullable=False)

    checkout_request_id = db.Column(db.String(128), nullable=False)
    merchant_request_id = db.Column(db.String(128), nullable=True)
    account_reference = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    mpesa_receipt_number = db.Column(db.String(64), nullable=True)
    result_code = db.Column(db.Integer, nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)

    callback_received = db.Column(db.Boolean, nullable=False, default=False)
    callback_data = db.Column(db.JSON, nullable=True)

    initiated_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sale = db.relationship("Sale", backref=db.backref("mpesa_transactions", lazy=True))

    @property
    def amount_cents(self) -> int:
        return self.amount_units * 100

    @property
    def is_terminal(self) -> bool:
        return self.status in ("COMPLETED", "FAILED")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "phone_number": self.phone_number,
            "amount_units": self.amount_units,
            "amount_cents": self.amount_cents,
            "checkout_request_id": self.checkout_request_id,
            "merchant_request_id": self.merchant_request_id,
            "account_reference": self.account_reference,
            "status": self.status,
            "mpesa_receipt_number": self.mpesa_receipt_number,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "callback_received": self.callback_received,
            "initiated_by": self.initiated_by,
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at) if self.settled_at else None,
        }
