"""
Pytest fixtures for the POS core tests.

Provides an in-memory database app, per-test table reset, a stubbed M-Pesa
provider (httpx.MockTransport) and small factories for catalog data.
"""

import itertools

import httpx
import pytest

from app import create_app
from app.extensions import db
from app.models import Customer, LoyaltyMember, Vendor
from app.services import products_service, sales_service, settings_service, settlement_service
from app.services.mpesa_service import MpesaClient


TEST_SHORTCODE = "174379"


class FakeDaraja:
    """
    In-process stand-in for the provider's OAuth + STK Push endpoints.

    mode:
    - "accept": ResponseCode "0" with a fresh CheckoutRequestID
    - "reject": ResponseCode "1" (e.g. unknown subscriber)
    - "http_error": HTTP 500
    - "timeout": the push request times out

    on_push, when set, is called with each push request before it is answered.
    """

    def __init__(self):
        self.mode = "accept"
        self.push_requests = []
        self.on_push = None
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            self.push_requests.append(request)
            if self.on_push is not None:
                self.on_push(request)
            if self.mode == "timeout":
                raise httpx.ReadTimeout("provider timed out", request=request)
            if self.mode == "http_error":
                return httpx.Response(500, json={"errorMessage": "Internal Server Error"})
            if self.mode == "reject":
                return httpx.Response(200, json={
                    "ResponseCode": "1",
                    "ResponseDescription": "The initiator information is invalid.",
                })
            n = next(self._ids)
            return httpx.Response(200, json={
                "MerchantRequestID": f"29115-{n}",
                "CheckoutRequestID": f"ws_CO_TEST_{n:04d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })

        return httpx.Response(404, json={"errorMessage": "not found"})


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'MPESA_BASE_URL': 'https://sandbox.test',
        'MPESA_CONSUMER_KEY': 'key',
        'MPESA_CONSUMER_SECRET': 'secret',
        'MPESA_PASSKEY': 'passkey',
        'MPESA_CALLBACK_URL': 'https://pos.test/api/mpesa/callback',
        'MPESA_PENDING_TIMEOUT_SECONDS': 90,
        'STOCK_CAS_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(autouse=True)
def db_session(app):
    """Fresh data for each test (schema kept)."""
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


@pytest.fixture
def daraja(app):
    """Stubbed provider installed as the app's M-Pesa client."""
    fake = FakeDaraja()
    app.extensions["mpesa_client"] = MpesaClient.from_config(
        app.config, transport=httpx.MockTransport(fake.handler)
    )
    yield fake
    app.extensions.pop("mpesa_client", None)


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def config(db_session):
    """Runtime settings with a till number; flat 0% tax keeps totals round."""
    settings_service.update_settings(
        {"mpesa_shortcode": TEST_SHORTCODE, "tax_rate_bps": 0},
        actor_id="test-admin",
    )
    return settings_service.load_config()


@pytest.fixture
def headers():
    def _headers(role="cashier", actor="user-1"):
        return {"X-Actor-Id": actor, "X-Actor-Role": role}
    return _headers


@pytest.fixture
def make_product(db_session):
    counter = itertools.count(1)

    def _make(price_cents=10000, stock=10, reorder_level=0, tax_rate_bps=None, unit_cost_cents=0,
              location_id=None, sku=None):
        n = next(counter)
        return products_service.create_product(
            sku=sku or f"SKU-{n:03d}",
            name=f"Product {n}",
            retail_price_cents=price_cents,
            unit_cost_cents=unit_cost_cents,
            tax_rate_bps=tax_rate_bps,
            reorder_level=reorder_level,
            initial_stock=stock,
            location_id=location_id,
            actor_id="setup",
        )
    return _make


@pytest.fixture
def make_location(db_session):
    def _make(code, name=None):
        return products_service.create_location(code=code, name=name or code.title())
    return _make


@pytest.fixture
def vendor(db_session):
    v = Vendor(name="Bidco Distributors", email="orders@bidco.test")
    db_session.add(v)
    db_session.commit()
    return v


@pytest.fixture
def customer(db_session):
    c = Customer(name="Wanjiku Kamau", phone="254712345678")
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture
def make_member(db_session):
    """Existing loyalty member with a given balance and lifetime spend (cents)."""
    def _make(customer, points_balance=0, lifetime_spend_cents=0, tier="Bronze"):
        member = LoyaltyMember(
            customer_id=customer.id,
            points_balance=points_balance,
            lifetime_spend_cents=lifetime_spend_cents,
            lifetime_points_earned=points_balance,
            lifetime_points_redeemed=0,
            tier=tier,
        )
        db_session.add(member)
        db_session.commit()
        return member
    return _make


@pytest.fixture
def completed_sale(config):
    """Open, pay in cash and complete a sale; returns the sale id."""
    def _make(lines, customer_id=None, actor="cashier-1"):
        sale = sales_service.create_sale(
            cashier_id=actor, lines=lines, config=config, customer_id=customer_id
        )
        settlement_service.add_cash_payment(sale.id, sale.total_cents, actor_id=actor)
        sales_service.complete_sale(sale.id, actor_id=actor, config=config)
        return sale.id
    return _make


@pytest.fixture
def stk_callback():
    """Provider callback payload for a checkout id."""
    def _payload(checkout_request_id, result_code=0, amount=None, receipt="QKJ4ABC123",
                 result_desc=None):
        callback = {
            "MerchantRequestID": "29115-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc or (
                "The service request is processed successfully." if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {"Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261019120000},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]}
        return {"Body": {"stkCallback": callback}}
    return _payload


@pytest.fixture
def location_pair(make_location):
    return make_location("MAIN", "Main store"), make_location("BACK", "Back store")


