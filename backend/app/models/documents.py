from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z


class Return(db.Model):
    """
    Product return against a completed sale.

    LIFECYCLE:
    1. PENDING: created, refund amount computed from the sale's price snapshots
    2. COMPLETED: admin approved; stock restored and refund recorded together
    3. REJECTED: admin rejected; ledger untouched

    INVARIANT: stock_restored flips false -> true exactly once, in the same
    unit of work as the sale_return stock movements and PENDING -> COMPLETED.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_returns_docnum"),
        db.Index("ix_returns_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "RET-000012")
    document_number = db.Column(db.String(64), nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, COMPLETED, REJECTED

    reason = db.Column(db.Text, nullable=False)
    refund_method = db.Column(db.String(16), nullable=False)  # CASH, MPESA, STORE_CREDIT

    return_amount_cents = db.Column(db.Integer, nullable=False)
    stock_restored = db.Column(db.Boolean, nullable=False, default=False)

    created_by = db.Column(db.String(64), nullable=False)
    processed_by = db.Column(db.String(64), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "sale_id": self.sale_id,
            "status": self.status,
            "reason": self.reason,
            "refund_method": self.refund_method,
            "return_amount_cents": self.return_amount_cents,
            "stock_restored": self.stock_restored,
            "created_by": self.created_by,
            "processed_by": self.processed_by,
            "rejection_reason": self.rejection_reason,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "items": [item.to_dict() for item in self.items],
            "version_id": self.version_id,
        }


class ReturnItem(db.Model):
    """
    Returned quantity of one sale line.

    unit_price_cents is copied from the original sale line, never the catalog.
    """
    __tablename__ = "return_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_line_item_id = db.Column(db.Integer, db.ForeignKey("sale_line_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_refund_cents = db.Column(db.Integer, nullable=False)

    return_doc = db.relationship("Return", backref=db.backref("items", lazy=True, order_by="ReturnItem.id"))
    sale_line_item = db.relationship("SaleLineItem", backref=db.backref("return_items", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_line_item_id": self.sale_line_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_refund_cents": self.line_refund_cents,
        }


class DocumentSequence(db.Model):
    """
    Per-document-type number allocator.

    next_number is the number the next allocation will hand out.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_document_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
