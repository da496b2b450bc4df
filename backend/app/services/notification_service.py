from __future__ import annotations

from flask import current_app


def on_stock_below_reorder_level(product, *, stock_on_hand: int, reorder_level: int, **_extra) -> None:
    """Low-stock alert. Logged for now; alerting channels subscribe to the same signal."""
    current_app.logger.warning(
        "Low stock: %s (%s) at %s, reorder level %s",
        product.sku, product.name, stock_on_hand, reorder_level,
    )


def on_purchase_order_sent(po, *, actor_id: str | None = None, **_extra) -> None:
    current_app.logger.info(
        "Purchase order %s sent to vendor %s by %s (total %s)",
        po.po_number, po.vendor_id, actor_id, po.total_cents,
    )
