from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from ..extensions import db
from ..models import Setting
from .exceptions import ValidationError


# key -> (type, default). Tier minimums and point values are in currency units.
SETTING_DEFINITIONS: dict[str, tuple[str, Any]] = {
    "tax_rate_bps": ("int", 1600),
    "loyalty_points_rate": ("decimal", Decimal("1")),
    "loyalty_points_per_amount": ("decimal", Decimal("100")),
    "loyalty_points_value": ("decimal", Decimal("1")),
    "loyalty_tier_silver_min": ("int", 50000),
    "loyalty_tier_gold_min": ("int", 150000),
    "loyalty_tier_platinum_min": ("int", 300000),
    "loyalty_max_redeem_percent": ("int", 50),
    "mpesa_shortcode": ("shortcode", None),
}


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable view of runtime settings, loaded once per operation.

    Engines receive this instead of querying the settings table so a
    setting edited mid-checkout cannot change the math halfway through.
    """
    tax_rate_bps: int = 1600
    loyalty_points_rate: Decimal = Decimal("1")
    loyalty_points_per_amount: Decimal = Decimal("100")
    loyalty_points_value: Decimal = Decimal("1")
    loyalty_tier_silver_min: int = 50000
    loyalty_tier_gold_min: int = 150000
    loyalty_tier_platinum_min: int = 300000
    loyalty_max_redeem_percent: int = 50
    mpesa_shortcode: str | None = None

    def tier_thresholds_cents(self) -> list[tuple[str, int]]:
        """Tier minimums in cents, highest first."""
        return [
            ("Platinum", self.loyalty_tier_platinum_min * 100),
            ("Gold", self.loyalty_tier_gold_min * 100),
            ("Silver", self.loyalty_tier_silver_min * 100),
        ]


def _parse(key: str, raw: Any) -> Any:
    kind, _default = SETTING_DEFINITIONS[key]

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if kind == "shortcode":
            return None
        raise ValidationError(f"{key} is required")

    if kind == "int":
        if isinstance(raw, bool) or isinstance(raw, float):
            raise ValidationError(f"{key} must be an integer")
        try:
            value = int(str(raw).strip())
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
        if value < 0:
            raise ValidationError(f"{key} must be >= 0")
        if key == "loyalty_max_redeem_percent" and value > 100:
            raise ValidationError(f"{key} must be between 0 and 100")
        return value

    if kind == "decimal":
        try:
            value = Decimal(str(raw).strip())
        except InvalidOperation:
            raise ValidationError(f"{key} must be a number")
        if not value.is_finite() or value < 0:
            raise ValidationError(f"{key} must be a non-negative number")
        if key == "loyalty_points_per_amount" and value == 0:
            raise ValidationError(f"{key} must be greater than zero")
        return value

    value = str(raw).strip()
    if not value.isdigit():
        raise ValidationError(f"{key} must contain digits only")
    return value


def load_config() -> ConfigSnapshot:
    """Read the settings table once and overlay it on the defaults."""
    values = {key: default for key, (_kind, default) in SETTING_DEFINITIONS.items()}
    for row in db.session.query(Setting).filter(Setting.key.in_(SETTING_DEFINITIONS.keys())).all():
        if row.value is None:
            continue
        values[row.key] = _parse(row.key, row.value)
    return ConfigSnapshot(**values)


def get_settings() -> dict:
    cfg = load_config()
    return {key: _serialize(getattr(cfg, key)) for key in SETTING_DEFINITIONS}


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


def update_settings(values: dict, *, actor_id: str) -> dict:
    """
    Validate then upsert a batch of settings. All-or-nothing.
    """
    if not isinstance(values, dict) or not values:
        raise ValidationError("settings payload must be a non-empty object")

    unknown = sorted(set(values) - set(SETTING_DEFINITIONS))
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(unknown)}")

    parsed = {key: _parse(key, raw) for key, raw in values.items()}

    existing = {
        row.key: row
        for row in db.session.query(Setting).filter(Setting.key.in_(parsed.keys())).all()
    }
    for key, value in parsed.items():
        text = None if value is None else str(value)
        row = existing.get(key)
        if row is None:
            db.session.add(Setting(key=key, value=text, updated_by=actor_id))
        else:
            row.value = text
            row.updated_by = actor_id
    db.session.commit()

    return get_settings()


def seed_defaults() -> int:
    """Insert any missing setting rows with their default. Returns rows added."""
    present = {key for (key,) in db.session.query(Setting.key).all()}
    added = 0
    for key, (_kind, default) in SETTING_DEFINITIONS.items():
        if key in present:
            continue
        db.session.add(Setting(key=key, value=None if default is None else str(default), updated_by="system"))
        added += 1
    db.session.commit()
    return added
