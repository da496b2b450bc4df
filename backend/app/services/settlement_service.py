# Overview: Payment settlement engine; cash tenders and mobile-money confirmations against a sale.

"""
Payment Settlement Engine

Settlement state lives on the Sale row and is recomputed from the freshly
locked totals on every mutation:

    remaining = max(0, total - cash - mpesa)
    change    = max(0, cash + mpesa - total)

STATUS:
- PENDING: nothing paid
- PARTIALLY_PAID: 0 < paid < total
- PAID: paid >= total. Sticky: never regresses within one sale.
- FAILED: a mobile-money failure arrived while nothing was paid. Any later
  tender recomputes from totals, so FAILED never blocks payment.

PENDING MOBILE REQUEST:
At most one outstanding STK push per sale. The slot is reserved (under
the sale lock) before the provider is called and released on rejection,
confirmation, failure or timeout.
"""

from flask import current_app

from ..extensions import db
from ..models import MpesaTransaction, Sale, PaymentTransaction
from app.time_utils import utcnow
from . import mpesa_service
from .concurrency import get_locked, run_with_retry
from .exceptions import NotFoundError, StateError, ValidationError
from .settings_service import ConfigSnapshot


# =============================================================================
# CONSTANTS
# =============================================================================

STATUS_PENDING = "PENDING"
STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
STATUS_PAID = "PAID"
STATUS_FAILED = "FAILED"

TENDER_CASH = "CASH"
TENDER_MPESA = "MPESA"

METHOD_CASH = "CASH"
METHOD_MPESA = "MPESA"
METHOD_HYBRID = "HYBRID"


# =============================================================================
# STATE COMPUTATION
# =============================================================================

def recompute(sale: Sale, *, mobile_failed: bool = False) -> None:
    """Derive remaining, change, status and method from the sale's current totals."""
    paid = sale.cash_cents + sale.mpesa_cents
    sale.remaining_cents = max(0, sale.total_cents - paid)
    sale.change_cents = max(0, paid - sale.total_cents)

    if sale.payment_status == STATUS_PAID or sale.remaining_cents == 0:
        sale.payment_status = STATUS_PAID
    elif paid > 0:
        sale.payment_status = STATUS_PARTIALLY_PAID
    elif mobile_failed:
        sale.payment_status = STATUS_FAILED
    else:
        sale.payment_status = STATUS_PENDING

    if sale.cash_cents > 0 and sale.mpesa_cents > 0:
        sale.payment_method = METHOD_HYBRID
    elif sale.mpesa_cents > 0:
        sale.payment_method = METHOD_MPESA
    elif sale.cash_cents > 0:
        sale.payment_method = METHOD_CASH


def initialize(sale: Sale) -> None:
    """Fresh settlement for a new sale: total due = sale total."""
    sale.cash_cents = 0
    sale.mpesa_cents = 0
    sale.mpesa_pending = False
    sale.checkout_request_id = None
    sale.payment_status = STATUS_PENDING
    recompute(sale)


def _require_open_sale(sale: Sale) -> None:
    if sale.status != "PENDING":
        raise StateError(f"Cannot take payment on a {sale.status} sale")


def _log_payment(sale: Sale, *, tender_type: str, amount_cents: int, actor_id: str | None,
                 reference: str | None = None, mpesa_transaction_id: int | None = None) -> PaymentTransaction:
    txn = PaymentTransaction(
        sale_id=sale.id,
        transaction_type="PAYMENT",
        tender_type=tender_type,
        amount_cents=amount_cents,
        reference=reference,
        mpesa_transaction_id=mpesa_transaction_id,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    db.session.add(txn)
    return txn


# =============================================================================
# CASH
# =============================================================================

def add_cash_payment(sale_id: int, amount_cents: int, *, actor_id: str) -> dict:
    """
    Add a cash tender.

    Over-tender is allowed; the excess shows up as change.

    Raises:
        ValidationError: non-positive amount
        StateError: sale not pending, or already fully paid
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("Cash amount must be a positive integer (cents)")

    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")
        _require_open_sale(sale)
        if sale.payment_status == STATUS_PAID:
            raise StateError("Sale is already fully paid")

        sale.cash_cents += amount_cents
        _log_payment(sale, tender_type=TENDER_CASH, amount_cents=amount_cents, actor_id=actor_id)
        recompute(sale)
        db.session.commit()
        return summarize(sale)

    return run_with_retry(_op)


# =============================================================================
# MOBILE MONEY
# =============================================================================

def _reserve_mobile_slot(sale_id: int, amount_cents: int) -> None:
    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")
        _require_open_sale(sale)
        if sale.payment_status == STATUS_PAID:
            raise StateError("Sale is already fully paid")
        if sale.mpesa_pending:
            raise StateError("A mobile-money request is already awaiting confirmation for this sale")
        if amount_cents > sale.remaining_cents:
            raise ValidationError(
                f"Mobile-money amount {amount_cents} exceeds remaining balance {sale.remaining_cents}"
            )
        sale.mpesa_pending = True
        sale.checkout_request_id = None
        db.session.commit()

    run_with_retry(_op)


def _release_mobile_slot(sale_id: int) -> None:
    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")
        sale.mpesa_pending = False
        sale.checkout_request_id = None
        db.session.commit()

    run_with_retry(_op)


def _attach_checkout_id(sale_id: int, txn_id: int) -> Sale:
    """Point the sale's pending slot at an accepted push, unless its callback already landed."""
    def _op():
        sale = get_locked(Sale, sale_id, label="Sale")
        txn = db.session.get(MpesaTransaction, txn_id, populate_existing=True)
        if sale.mpesa_pending and sale.checkout_request_id is None and not txn.is_terminal:
            sale.checkout_request_id = txn.checkout_request_id
        db.session.commit()
        return sale

    return run_with_retry(_op)


def initiate_mobile_push(
    sale_id: int,
    *,
    phone,
    amount_cents: int,
    actor_id: str,
    config: ConfigSnapshot,
    client=None,
) -> dict:
    """
    Start an STK push for part or all of the remaining balance.

    The provider call happens outside any row lock. If the provider rejects
    the push or cannot be reached, the pending flag is cleared and the
    error propagates; nothing was charged and no MpesaTransaction exists.

    Once the provider accepts, the MpesaTransaction is committed on its own
    before the sale is touched, so a concurrent tender on the sale can never
    roll back the record the callback will look for.

    Raises:
        ValidationError: bad phone, bad amount, amount above remaining
        StateError: sale not pending, already paid, or a push already pending
        GatewayRejectedError / GatewayUnavailableError: provider refused / unreachable
    """
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")

    phone, amount_units = mpesa_service.prepare_push(phone, amount_cents)
    mpesa_service.expire_pending_transactions(sale_id=sale_id)
    _reserve_mobile_slot(sale_id, amount_cents)

    try:
        txn = mpesa_service.push_inner(
            sale_id=sale_id,
            phone=phone,
            amount_units=amount_units,
            config=config,
            actor_id=actor_id,
            account_reference=sale.document_number,
            client=client,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        _release_mobile_slot(sale_id)
        raise

    sale = _attach_checkout_id(sale_id, txn.id)

    data = summarize(sale)
    data["mpesa_transaction"] = txn.to_dict()
    return data


def apply_mobile_settlement(sender, *, sale_id: int, checkout_request_id: str, succeeded: bool,
                            amount_cents: int = 0, **_extra) -> None:
    """
    Receiver for mpesa_transaction_settled. Joins the adapter's unit of work.

    Success credits the confirmed amount. Failure credits nothing. Both clear
    the pending flag and correlation id, then recompute from totals.
    """
    sale = get_locked(Sale, sale_id, label="Sale")

    if sale.checkout_request_id and sale.checkout_request_id != checkout_request_id:
        current_app.logger.warning(
            "Settlement for sale %s got %s while tracking %s",
            sale.document_number, checkout_request_id, sale.checkout_request_id,
        )
    else:
        sale.mpesa_pending = False
        sale.checkout_request_id = None

    if succeeded and amount_cents > 0:
        sale.mpesa_cents += amount_cents
        _log_payment(
            sale,
            tender_type=TENDER_MPESA,
            amount_cents=amount_cents,
            actor_id=getattr(sender, "initiated_by", None),
            reference=getattr(sender, "mpesa_receipt_number", None),
            mpesa_transaction_id=getattr(sender, "id", None),
        )
        if sale.status != "PENDING":
            current_app.logger.warning(
                "M-Pesa payment of %s confirmed on %s sale %s", amount_cents, sale.status, sale.document_number
            )

    recompute(sale, mobile_failed=not succeeded)
    db.session.flush()


# =============================================================================
# READ MODEL
# =============================================================================

def summarize(sale: Sale) -> dict:
    return {
        "sale_id": sale.id,
        "document_number": sale.document_number,
        "total_due_cents": sale.total_cents,
        "cash_cents": sale.cash_cents,
        "mpesa_cents": sale.mpesa_cents,
        "total_paid_cents": sale.total_paid_cents,
        "remaining_cents": sale.remaining_cents,
        "change_cents": sale.change_cents,
        "payment_status": sale.payment_status,
        "payment_method": sale.payment_method,
        "mpesa_pending": sale.mpesa_pending,
        "checkout_request_id": sale.checkout_request_id,
    }


def get_settlement_summary(sale_id: int) -> dict:
    """
    Current settlement view. Expires this sale's stale pushes first so a
    lost callback never leaves the sale waiting forever.
    """
    if db.session.get(Sale, sale_id) is None:
        raise NotFoundError(f"Sale {sale_id} not found")

    mpesa_service.expire_pending_transactions(sale_id=sale_id)

    sale = db.session.get(Sale, sale_id)
    data = summarize(sale)
    data["transactions"] = [
        t.to_dict()
        for t in db.session.query(PaymentTransaction)
        .filter_by(sale_id=sale_id)
        .order_by(PaymentTransaction.id.asc())
        .all()
    ]
    data["mpesa_transactions"] = [t.to_dict() for t in sorted(sale.mpesa_transactions, key=lambda t: t.id)]
    return data
