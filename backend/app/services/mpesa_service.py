# Overview: Mobile-money gateway adapter (STK Push): outbound push, inbound callback, timeout sweep.

from __future__ import annotations

import base64
import re
from datetime import datetime, timedelta

import httpx
from flask import current_app

from ..extensions import db
from ..models import MpesaTransaction
from ..money import cents_to_whole_units, units_to_cents
from ..signals import mpesa_transaction_settled
from ..time_utils import mpesa_timestamp, utcnow
from .concurrency import lock_for_update, run_with_retry
from .exceptions import GatewayRejectedError, GatewayUnavailableError, ValidationError
from .settings_service import ConfigSnapshot
"""
MOBILE-MONEY ADAPTER

Outbound: push() validates the phone and amount pre-flight, asks the
provider to prompt the customer, and on acceptance records a PENDING
MpesaTransaction keyed by the provider's CheckoutRequestID. Rejections
never create a row.

Inbound: handle_callback() flips the PENDING row to COMPLETED or FAILED
exactly once. Duplicates and unknown ids are logged no-ops. The flip is
announced on the mpesa_transaction_settled signal inside the same unit of
work, so the settlement update commits with it.

Timeout: expire_pending_transactions() fails PENDING rows older than
MPESA_PENDING_TIMEOUT_SECONDS. A callback arriving afterwards finds a
terminal row and is ignored.
"""

STATUS_PENDING = "PENDING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

TIMEOUT_RESULT_DESC = "Timed out awaiting confirmation"

PHONE_RE = re.compile(r"^254\d{9}$")


def normalize_phone(raw) -> str:
    """
    Normalize to the provider's 2547XXXXXXXX form.

    "0712 345 678" -> "254712345678", "+254712345678" -> "254712345678",
    "712345678" -> "254712345678".
    """
    if raw is None:
        raise ValidationError("phone number is required")
    phone = re.sub(r"[\s\-]+", "", str(raw)).replace("+", "")
    if phone.startswith("0"):
        phone = "254" + phone[1:]
    elif not phone.startswith("254"):
        phone = "254" + phone
    if not PHONE_RE.match(phone):
        raise ValidationError(f"Invalid phone number: {raw}")
    return phone


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


# =============================================================================
# PROVIDER CLIENT
# =============================================================================

class MpesaClient:
    """
    Thin httpx wrapper around the Daraja OAuth and STK Push endpoints.

    `transport` lets tests swap in httpx.MockTransport.
    """

    def __init__(
        self,
        *,
        base_url: str,
        consumer_key: str | None,
        consumer_secret: str | None,
        passkey: str | None,
        callback_url: str,
        transaction_type: str = "CustomerBuyGoodsOnline",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.callback_url = callback_url
        self.transaction_type = transaction_type
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_config(cls, config: dict, *, transport: httpx.BaseTransport | None = None) -> "MpesaClient":
        return cls(
            base_url=config["MPESA_BASE_URL"],
            consumer_key=config.get("MPESA_CONSUMER_KEY"),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET"),
            passkey=config.get("MPESA_PASSKEY"),
            callback_url=config["MPESA_CALLBACK_URL"],
            transaction_type=config.get("MPESA_TRANSACTION_TYPE", "CustomerBuyGoodsOnline"),
            timeout=config.get("MPESA_HTTP_TIMEOUT_SECONDS", 30.0),
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret and self.passkey)

    def _http(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _access_token(self, http: httpx.Client) -> str:
        response = http.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        if response.status_code >= 400:
            current_app.logger.error("M-Pesa OAuth token error: %s %s", response.status_code, response.text)
            raise GatewayRejectedError("Failed to authenticate with M-Pesa")
        token = response.json().get("access_token")
        if not token:
            raise GatewayRejectedError("M-Pesa OAuth response had no access token")
        return token

    def stk_push(
        self,
        *,
        shortcode: str,
        phone: str,
        amount_units: int,
        account_reference: str,
        description: str,
        now: datetime | None = None,
    ) -> dict:
        """
        Send one STK Push. Returns the provider's response body on acceptance.

        Raises:
            GatewayRejectedError: non-2xx or ResponseCode != "0"
            GatewayUnavailableError: transport failure or timeout
        """
        timestamp = mpesa_timestamp(now)
        payload = {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": amount_units,
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        try:
            with self._http() as http:
                token = self._access_token(http)
                response = http.post(
                    "/mpesa/stkpush/v1/processrequest",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as exc:
            current_app.logger.warning("M-Pesa push timed out: %s", exc)
            raise GatewayUnavailableError("M-Pesa did not respond in time; nothing was charged")
        except httpx.TransportError as exc:
            current_app.logger.warning("M-Pesa push transport error: %s", exc)
            raise GatewayUnavailableError("M-Pesa is unreachable; nothing was charged")

        try:
            body = response.json()
        except ValueError:
            body = {}

        current_app.logger.info("M-Pesa push response %s: %s", response.status_code, body)

        if response.status_code >= 400:
            message = body.get("errorMessage") or body.get("ResponseDescription") or response.text
            raise GatewayRejectedError(f"M-Pesa rejected the request: {message}")

        if str(body.get("ResponseCode")) != "0":
            message = body.get("ResponseDescription") or body.get("errorMessage") or "Unknown error"
            raise GatewayRejectedError(f"M-Pesa rejected the request: {message}")

        if not body.get("CheckoutRequestID"):
            raise GatewayRejectedError("M-Pesa response had no CheckoutRequestID")

        return body


def get_client() -> MpesaClient:
    """The app's configured client; tests may pre-seed app.extensions["mpesa_client"]."""
    client = current_app.extensions.get("mpesa_client")
    if client is None:
        client = MpesaClient.from_config(current_app.config)
        current_app.extensions["mpesa_client"] = client
    return client


# =============================================================================
# OUTBOUND PUSH
# =============================================================================

def prepare_push(phone, amount_cents: int) -> tuple[str, int]:
    """Pre-flight checks. Nothing touches the network if these fail."""
    normalized = normalize_phone(phone)
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount must be a positive integer (cents)")
    amount_units = cents_to_whole_units(amount_cents)
    if amount_units < 1:
        raise ValidationError("amount must be at least 1 whole currency unit")
    return normalized, amount_units


def push_inner(
    *,
    sale_id: int,
    phone: str,
    amount_units: int,
    config: ConfigSnapshot,
    actor_id: str | None = None,
    account_reference: str | None = None,
    client: MpesaClient | None = None,
) -> MpesaTransaction:
    """
    Ask the provider to prompt the customer, then record the PENDING row (no commit).

    `phone` must already be normalized (see prepare_push).
    """
    client = client or get_client()
    if not client.is_configured:
        raise GatewayUnavailableError("M-Pesa API credentials are not configured")
    if not config.mpesa_shortcode:
        raise ValidationError("M-Pesa Till Number not configured. Set mpesa_shortcode in settings.")

    reference = account_reference or "POS Sale"
    current_app.logger.info(
        "M-Pesa push: sale=%s phone=%s amount=%s", sale_id, phone, amount_units
    )

    body = client.stk_push(
        shortcode=config.mpesa_shortcode,
        phone=phone,
        amount_units=amount_units,
        account_reference=reference,
        description=f"Payment for sale {sale_id}",
    )

    txn = MpesaTransaction(
        sale_id=sale_id,
        phone_number=phone,
        amount_units=amount_units,
        checkout_request_id=body["CheckoutRequestID"],
        merchant_request_id=body.get("MerchantRequestID"),
        account_reference=reference,
        status=STATUS_PENDING,
        initiated_by=actor_id,
        created_at=utcnow(),
    )
    db.session.add(txn)
    db.session.flush()
    return txn


# =============================================================================
# INBOUND CALLBACK
# =============================================================================

def _metadata_items(stk_callback: dict) -> dict:
    items = (stk_callback.get("CallbackMetadata") or {}).get("Item") or []
    result = {}
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            result[item["Name"]] = item.get("Value")
    return result


def _settle_inner(txn: MpesaTransaction, *, succeeded: bool, result_code, result_desc: str | None,
                  receipt: str | None = None, amount_units=None, callback_data=None) -> None:
    txn.status = STATUS_COMPLETED if succeeded else STATUS_FAILED
    txn.result_code = result_code
    txn.result_desc = result_desc
    txn.settled_at = utcnow()
    if callback_data is not None:
        txn.callback_received = True
        txn.callback_data = callback_data

    amount_cents = 0
    if succeeded:
        txn.mpesa_receipt_number = receipt
        amount_cents = units_to_cents(amount_units) if amount_units is not None else txn.amount_cents

    db.session.flush()

    mpesa_transaction_settled.send(
        txn,
        sale_id=txn.sale_id,
        checkout_request_id=txn.checkout_request_id,
        succeeded=succeeded,
        amount_cents=amount_cents,
    )


def handle_callback(payload) -> dict:
    """
    Apply a provider completion notice. Idempotent.

    Returns {"status": "applied" | "duplicate" | "unknown" | "ignored", ...}.
    The webhook answers "Accepted" whatever the outcome so the provider
    does not retry.
    """
    stk_callback = None
    if isinstance(payload, dict):
        stk_callback = (payload.get("Body") or {}).get("stkCallback")
    if not isinstance(stk_callback, dict) or not stk_callback.get("CheckoutRequestID"):
        current_app.logger.warning("Malformed M-Pesa callback ignored: %s", payload)
        return {"status": "ignored"}

    checkout_request_id = stk_callback["CheckoutRequestID"]
    try:
        result_code = int(stk_callback.get("ResultCode"))
    except (TypeError, ValueError):
        current_app.logger.warning("M-Pesa callback with bad ResultCode ignored: %s", stk_callback)
        return {"status": "ignored", "checkout_request_id": checkout_request_id}
    result_desc = stk_callback.get("ResultDesc")

    current_app.logger.info(
        "M-Pesa callback: checkout=%s code=%s desc=%s", checkout_request_id, result_code, result_desc
    )

    def _op():
        txn = lock_for_update(
            db.session.query(MpesaTransaction).filter_by(checkout_request_id=checkout_request_id)
        ).first()

        if txn is None:
            current_app.logger.warning("M-Pesa callback for unknown checkout id %s", checkout_request_id)
            return {"status": "unknown", "checkout_request_id": checkout_request_id}

        if txn.is_terminal:
            current_app.logger.info(
                "Duplicate M-Pesa callback for %s (already %s)", checkout_request_id, txn.status
            )
            return {"status": "duplicate", "checkout_request_id": checkout_request_id, "transaction_status": txn.status}

        succeeded = result_code == 0
        metadata = _metadata_items(stk_callback) if succeeded else {}
        _settle_inner(
            txn,
            succeeded=succeeded,
            result_code=result_code,
            result_desc=result_desc,
            receipt=metadata.get("MpesaReceiptNumber"),
            amount_units=metadata.get("Amount"),
            callback_data=payload,
        )
        db.session.commit()
        return {"status": "applied", "checkout_request_id": checkout_request_id, "transaction_status": txn.status}

    return run_with_retry(_op)


# =============================================================================
# TIMEOUT POLICY
# =============================================================================

def expire_pending_transactions(*, sale_id: int | None = None, now: datetime | None = None) -> int:
    """
    Fail PENDING pushes older than MPESA_PENDING_TIMEOUT_SECONDS.

    The settlement is notified exactly as for a provider failure.
    Returns the number of transactions expired.
    """
    timeout = int(current_app.config.get("MPESA_PENDING_TIMEOUT_SECONDS", 90))
    cutoff = (now or utcnow()) - timedelta(seconds=timeout)

    def _op():
        query = db.session.query(MpesaTransaction).filter(
            MpesaTransaction.status == STATUS_PENDING,
            MpesaTransaction.created_at <= cutoff,
        )
        if sale_id is not None:
            query = query.filter(MpesaTransaction.sale_id == sale_id)

        expired = 0
        for txn in lock_for_update(query.order_by(MpesaTransaction.id.asc())).all():
            current_app.logger.warning(
                "M-Pesa push %s for sale %s timed out after %ss", txn.checkout_request_id, txn.sale_id, timeout
            )
            _settle_inner(txn, succeeded=False, result_code=None, result_desc=TIMEOUT_RESULT_DESC)
            expired += 1

        if expired:
            db.session.commit()
        return expired

    return run_with_retry(_op)


def get_transaction(checkout_request_id: str) -> MpesaTransaction | None:
    return db.session.query(MpesaTransaction).filter_by(checkout_request_id=checkout_request_id).first()
