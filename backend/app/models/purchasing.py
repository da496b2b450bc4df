from __future__ import annotations

from ..extensions import db
from app.time_utils import to_utc_z, iso_date


class PurchaseOrder(db.Model):
    """
    Purchase order sent to a vendor.

    LIFECYCLE:
    DRAFT -> SENT -> PARTIALLY_RECEIVED -> RECEIVED
    SENT / PARTIALLY_RECEIVED -> CANCELLED

    Status after a receipt is derived from cumulative received vs ordered
    across all items; it is never set by hand.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("po_number", name="uq_purchase_orders_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(64), nullable=False)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default="DRAFT", index=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    vendor = db.relationship("Vendor", backref=db.backref("purchase_orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "po_number": self.po_number,
            "vendor_id": self.vendor_id,
            "status": self.status,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "sent_at": to_utc_z(self.sent_at) if self.sent_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
            "version_id": self.version_id,
        }


class POItem(db.Model):
    """Ordered quantity of one product on a purchase order."""
    __tablename__ = "po_items"
    __table_args__ = (
        db.UniqueConstraint("po_id", "product_id", name="uq_po_items_po_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    po_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)

    # Cumulative across all delivery notes
    received_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    purchase_order = db.relationship("PurchaseOrder", backref=db.backref("items", lazy=True, order_by="POItem.id"))
    product = db.relationship("Product")

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.quantity - (self.received_quantity or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "po_id": self.po_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "received_quantity": self.received_quantity,
            "remaining_quantity": self.remaining_quantity,
        }


class DeliveryNote(db.Model):
    """
    Goods-Received Note: one receiving event against a purchase order.

    LIFECYCLE: PENDING -> VERIFIED -> COMPLETED

    IMMUTABLE: items and quantities never change after creation.
    `stock_posted` guards the ledger: movements for a note are written once.
    """
    __tablename__ = "delivery_notes"
    __table_args__ = (
        db.UniqueConstraint("grn_number", name="uq_delivery_notes_grn"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    grn_number = db.Column(db.String(64), nullable=False)
    po_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    stock_posted = db.Column(db.Boolean, nullable=False, default=False)

    total_items = db.Column(db.Integer, nullable=False, default=0)
    total_value_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    received_by = db.Column(db.String(64), nullable=False)
    verified_by = db.Column(db.String(64), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)

    delivery_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    purchase_order = db.relationship("PurchaseOrder", backref=db.backref("delivery_notes", lazy=True))
    vendor = db.relationship("Vendor")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "grn_number": self.grn_number,
            "po_id": self.po_id,
            "vendor_id": self.vendor_id,
            "status": self.status,
            "stock_posted": self.stock_posted,
            "total_items": self.total_items,
            "total_value_cents": self.total_value_cents,
            "notes": self.notes,
            "received_by": self.received_by,
            "verified_by": self.verified_by,
            "completed_by": self.completed_by,
            "delivery_date": to_utc_z(self.delivery_date),
            "verified_at": to_utc_z(self.verified_at) if self.verified_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }


class DeliveryNoteItem(db.Model):
    """Per-item received/rejected quantities on a GRN."""
    __tablename__ = "delivery_note_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    delivery_note_id = db.Column(db.Integer, db.ForeignKey("delivery_notes.id"), nullable=False, index=True)
    po_item_id = db.Column(db.Integer, db.ForeignKey("po_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    ordered_quantity = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    rejected_quantity = db.Column(db.Integer, nullable=False, default=0)
    rejection_reason = db.Column(db.String(255), nullable=True)

    unit_cost_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    delivery_note = db.relationship("DeliveryNote", backref=db.backref("items", lazy=True, order_by="DeliveryNoteItem.id"))
    po_item = db.relationship("POItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delivery_note_id": self.delivery_note_id,
            "po_item_id": self.po_item_id,
            "product_id": self.product_id,
            "ordered_quantity": self.ordered_quantity,
            "received_quantity": self.received_quantity,
            "rejected_quantity": self.rejected_quantity,
            "rejection_reason": self.rejection_reason,
            "unit_cost_cents": self.unit_cost_cents,
            "line_total_cents": self.line_total_cents,
            "batch_number": self.batch_number,
            "expiry_date": iso_date(self.expiry_date),
        }
