# Overview: In-process events between the core engines and their collaborators.

"""
Signals are dispatched with blinker, the same mechanism Flask uses for its
own request signals. Senders never wait on receivers for anything other
than the synchronous call itself; receivers that talk to the outside world
(mail, alerting) must hand off quickly.

mpesa_transaction_settled
    sender: the MpesaTransaction that just reached COMPLETED or FAILED.
    kwargs: sale_id, checkout_request_id, succeeded, amount_cents.
    Receiver: settlement_service.apply_mobile_settlement (wired in
    create_app). Runs inside the adapter's unit of work, so the row flip and
    the settlement update commit together.

stock_below_reorder_level
    sender: the Product after an outbound movement left it at or below its
    reorder level. kwargs: stock_on_hand, reorder_level.

purchase_order_sent
    sender: the PurchaseOrder that moved DRAFT -> SENT.
"""

from blinker import Namespace

pos_signals = Namespace()

mpesa_transaction_settled = pos_signals.signal("mpesa-transaction-settled")
stock_below_reorder_level = pos_signals.signal("stock-below-reorder-level")
purchase_order_sent = pos_signals.signal("purchase-order-sent")
