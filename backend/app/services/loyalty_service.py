# Overview: Loyalty accrual and redemption; points balance and tier per customer.

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Customer, LoyaltyMember, LoyaltyTransaction
from .concurrency import lock_for_update, run_with_retry
from .exceptions import NotFoundError, ValidationError
from .settings_service import ConfigSnapshot
"""
LOYALTY RULES

- points = floor(amount / points_per_amount * points_rate), amount in
  currency units. Fractional points are never awarded.
- tier is recomputed from lifetime spend on every award, highest threshold
  first: Platinum, Gold, Silver, else Bronze.
- points_balance never goes negative; redeem rejects over-redemption.
- Redemption does not touch lifetime spend.
- The 50% redemption cap is the caller's job (checkout), see
  max_redeemable_points.
"""

TIER_BRONZE = "Bronze"

TXN_EARN = "EARN"
TXN_REDEEM = "REDEEM"
TXN_REVERSAL = "REVERSAL"


def calculate_points(amount_cents: int, config: ConfigSnapshot) -> int:
    amount = Decimal(amount_cents) / Decimal(100)
    raw = amount / config.loyalty_points_per_amount * config.loyalty_points_rate
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def calculate_tier(lifetime_spend_cents: int, config: ConfigSnapshot) -> str:
    for tier, minimum_cents in config.tier_thresholds_cents():
        if lifetime_spend_cents >= minimum_cents:
            return tier
    return TIER_BRONZE


def points_to_discount_cents(points: int, config: ConfigSnapshot) -> int:
    return int((Decimal(points) * config.loyalty_points_value * 100).to_integral_value(rounding=ROUND_FLOOR))


def _get_member_locked(customer_id: int) -> LoyaltyMember | None:
    return lock_for_update(
        db.session.query(LoyaltyMember).filter_by(customer_id=customer_id)
    ).first()


def _require_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    return customer


def _get_or_create_member(customer_id: int) -> LoyaltyMember:
    member = _get_member_locked(customer_id)
    if member is not None:
        return member

    member = LoyaltyMember(
        customer_id=customer_id,
        points_balance=0,
        lifetime_spend_cents=0,
        lifetime_points_earned=0,
        lifetime_points_redeemed=0,
        tier=TIER_BRONZE,
    )
    try:
        with db.session.begin_nested():
            db.session.add(member)
    except IntegrityError:
        # Created concurrently; use theirs
        member = _get_member_locked(customer_id)
    return member


def award_inner(
    customer_id: int,
    amount_cents: int,
    *,
    config: ConfigSnapshot,
    sale_id: int | None = None,
    actor_id: str | None = None,
) -> dict:
    """
    Credit points and lifetime spend for a settled sale (no commit).

    A zero-point award is a successful no-op: no member row, no ledger row.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents < 0:
        raise ValidationError("amount must be a non-negative integer")
    _require_customer(customer_id)

    points = calculate_points(amount_cents, config)
    if points <= 0:
        return {"points_awarded": 0, "member": None}

    member = _get_or_create_member(customer_id)
    member.points_balance += points
    member.lifetime_points_earned += points
    member.lifetime_spend_cents += amount_cents
    member.tier = calculate_tier(member.lifetime_spend_cents, config)

    db.session.add(LoyaltyTransaction(
        member=member,
        transaction_type=TXN_EARN,
        points=points,
        sale_id=sale_id,
        amount_cents=amount_cents,
        actor_id=actor_id,
    ))
    db.session.flush()

    return {"points_awarded": points, "member": member}


def award(customer_id: int, amount_cents: int, *, config: ConfigSnapshot, sale_id=None, actor_id=None) -> dict:
    def _op():
        result = award_inner(customer_id, amount_cents, config=config, sale_id=sale_id, actor_id=actor_id)
        db.session.commit()
        member = result["member"]
        return {
            "points_awarded": result["points_awarded"],
            "member": member.to_dict() if member else None,
        }

    return run_with_retry(_op)


def redeem_inner(
    customer_id: int,
    points: int,
    *,
    sale_id: int | None = None,
    actor_id: str | None = None,
    reason: str | None = None,
) -> LoyaltyMember:
    """Spend points (no commit). Rejects when points exceed the balance."""
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise ValidationError("points must be a positive integer")

    member = _get_member_locked(customer_id)
    balance = member.points_balance if member else 0
    if member is None or points > balance:
        raise ValidationError(f"Insufficient loyalty points: balance {balance}, requested {points}")

    member.points_balance -= points
    member.lifetime_points_redeemed += points
    db.session.add(LoyaltyTransaction(
        member=member,
        transaction_type=TXN_REDEEM,
        points=-points,
        sale_id=sale_id,
        actor_id=actor_id,
        reason=reason,
    ))
    db.session.flush()
    return member


def redeem(customer_id: int, points: int, *, actor_id: str | None = None, reason: str | None = None) -> dict:
    def _op():
        member = redeem_inner(customer_id, points, actor_id=actor_id, reason=reason)
        db.session.commit()
        return member.to_dict()

    return run_with_retry(_op)


def reverse_redemption_inner(customer_id: int, points: int, *, sale_id: int, actor_id: str | None = None) -> None:
    """Give back points redeemed on a sale that never completed (no commit)."""
    if points <= 0:
        return
    member = _get_member_locked(customer_id)
    if member is None:
        current_app.logger.warning(
            "Cannot reverse %s points for customer %s: no loyalty member", points, customer_id
        )
        return
    member.points_balance += points
    member.lifetime_points_redeemed = max(0, member.lifetime_points_redeemed - points)
    db.session.add(LoyaltyTransaction(
        member=member,
        transaction_type=TXN_REVERSAL,
        points=points,
        sale_id=sale_id,
        actor_id=actor_id,
        reason="Sale cancelled",
    ))
    db.session.flush()


def max_redeemable_points(customer_id: int, pre_discount_total_cents: int, config: ConfigSnapshot) -> int:
    """
    Largest redemption checkout will accept: the member's balance, capped so
    the discount stays within loyalty_max_redeem_percent of the total.
    """
    member = db.session.query(LoyaltyMember).filter_by(customer_id=customer_id).first()
    if member is None or member.points_balance <= 0:
        return 0

    cap_cents = pre_discount_total_cents * config.loyalty_max_redeem_percent // 100
    point_value_cents = points_to_discount_cents(1, config)
    if point_value_cents <= 0:
        return 0
    return min(member.points_balance, cap_cents // point_value_cents)


def get_member(customer_id: int) -> dict:
    customer = _require_customer(customer_id)
    member = customer.loyalty_member
    if member is None:
        return {
            "customer_id": customer_id,
            "is_member": False,
            "points_balance": 0,
            "lifetime_spend_cents": 0,
            "tier": TIER_BRONZE,
            "transactions": [],
        }
    data = member.to_dict()
    data["is_member"] = True
    data["transactions"] = [t.to_dict() for t in member.transactions[-50:]]
    return data
