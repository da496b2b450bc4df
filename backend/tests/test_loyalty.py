from decimal import Decimal

import pytest

from app.extensions import db
from app.models import LoyaltyMember, LoyaltyTransaction
from app.services import loyalty_service, sales_service, settlement_service
from app.services.exceptions import ValidationError
from app.services.settings_service import ConfigSnapshot


def test_award_crosses_silver_threshold(customer, make_member, config):
    make_member(customer, points_balance=0, lifetime_spend_cents=4_900_000)

    result = loyalty_service.award(customer.id, 200_000, config=config)

    assert result["points_awarded"] == 20
    member = result["member"]
    assert member["points_balance"] == 20
    assert member["lifetime_spend_cents"] == 5_100_000
    assert member["tier"] == "Silver"


@pytest.mark.parametrize("spend_cents,tier", [
    (0, "Bronze"),
    (4_999_999, "Bronze"),
    (5_000_000, "Silver"),
    (15_000_000, "Gold"),
    (29_999_999, "Gold"),
    (30_000_000, "Platinum"),
])
def test_tier_thresholds(spend_cents, tier):
    assert loyalty_service.calculate_tier(spend_cents, ConfigSnapshot()) == tier


def test_points_are_floored(config):
    assert loyalty_service.calculate_points(19_999, config) == 1
    assert loyalty_service.calculate_points(9_999, config) == 0
    custom = ConfigSnapshot(loyalty_points_rate=Decimal("1.5"))
    assert loyalty_service.calculate_points(100_000, custom) == 15


def test_zero_point_award_is_a_no_op(customer, config):
    result = loyalty_service.award(customer.id, 9_999, config=config)

    assert result == {"points_awarded": 0, "member": None}
    assert db.session.query(LoyaltyMember).count() == 0
    assert db.session.query(LoyaltyTransaction).count() == 0


def test_first_award_enrolls_member(customer, config):
    result = loyalty_service.award(customer.id, 50_000, config=config, sale_id=None, actor_id="cashier-1")

    assert result["points_awarded"] == 5
    info = loyalty_service.get_member(customer.id)
    assert info["is_member"] is True
    assert info["tier"] == "Bronze"
    assert [t["transaction_type"] for t in info["transactions"]] == ["EARN"]


def test_non_member_view(customer):
    info = loyalty_service.get_member(customer.id)
    assert info["is_member"] is False
    assert info["points_balance"] == 0


def test_redeem_cannot_exceed_balance(customer, make_member):
    make_member(customer, points_balance=30)

    with pytest.raises(ValidationError):
        loyalty_service.redeem(customer.id, 31, actor_id="cashier-1")

    member = loyalty_service.redeem(customer.id, 30, actor_id="cashier-1")
    assert member["points_balance"] == 0
    assert member["lifetime_spend_cents"] == 0

    with pytest.raises(ValidationError):
        loyalty_service.redeem(customer.id, 1, actor_id="cashier-1")


def test_redeem_without_membership_is_refused(customer):
    with pytest.raises(ValidationError):
        loyalty_service.redeem(customer.id, 1)


def test_checkout_redemption_is_capped_at_half_the_total(customer, make_member, make_product, config):
    make_member(customer, points_balance=100)
    product = make_product(price_cents=10_000, stock=5)
    lines = [{"product_id": product.id, "quantity": 1}]

    assert loyalty_service.max_redeemable_points(customer.id, 10_000, config) == 50

    with pytest.raises(ValidationError):
        sales_service.create_sale(
            cashier_id="cashier-1", lines=lines, config=config,
            customer_id=customer.id, points_to_redeem=51,
        )
    assert db.session.query(LoyaltyMember).one().points_balance == 100

    sale = sales_service.create_sale(
        cashier_id="cashier-1", lines=lines, config=config,
        customer_id=customer.id, points_to_redeem=50,
    )
    assert sale.loyalty_discount_cents == 5_000
    assert sale.total_cents == 5_000
    assert db.session.query(LoyaltyMember).one().points_balance == 50


def test_cancelled_sale_gives_points_back(customer, make_member, make_product, config):
    make_member(customer, points_balance=100)
    product = make_product(price_cents=10_000, stock=5)

    sale = sales_service.create_sale(
        cashier_id="cashier-1",
        lines=[{"product_id": product.id, "quantity": 1}],
        config=config,
        customer_id=customer.id,
        points_to_redeem=30,
    )
    assert loyalty_service.get_member(customer.id)["points_balance"] == 70

    sales_service.cancel_sale(sale.id, actor_id="cashier-1")

    info = loyalty_service.get_member(customer.id)
    assert info["points_balance"] == 100
    assert [t["transaction_type"] for t in info["transactions"]] == ["REDEEM", "REVERSAL"]


def test_completed_sale_awards_on_amount_paid(customer, make_product, config):
    product = make_product(price_cents=250_000, stock=5)
    sale = sales_service.create_sale(
        cashier_id="cashier-1",
        lines=[{"product_id": product.id, "quantity": 1}],
        config=config,
        customer_id=customer.id,
    )
    settlement_service.add_cash_payment(sale.id, 250_000, actor_id="cashier-1")

    completed = sales_service.complete_sale(sale.id, actor_id="cashier-1", config=config)

    assert completed["points_awarded"] == 25
    info = loyalty_service.get_member(customer.id)
    assert info["points_balance"] == 25
    assert info["lifetime_spend_cents"] == 250_000
