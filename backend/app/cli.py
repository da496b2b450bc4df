# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/app/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: default settings rows and the MAIN stock location.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Settings:
# - python -m flask settings show
#   Print the effective runtime settings.
# - python -m flask settings set tax_rate_bps 1600
#   Update one setting (validated like PUT /api/settings).
#
# Mobile money:
# - python -m flask mpesa expire-pending
#   Fail STK pushes older than MPESA_PENDING_TIMEOUT_SECONDS (run from cron).
#
# Stock ledger:
# - python -m flask stock low
#   List active products at or below their reorder level.
# - python -m flask stock verify 12
#   Audit the movement chain and cached counter for one product (--all for every product).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Location, Product
from .services import mpesa_service, settings_service, stock_ledger_service
from .services.exceptions import PosCoreError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the POS core: default settings and a MAIN stock location.

    Safe to run repeatedly; existing rows are left alone.
    """
    click.echo("START Initializing POS core...")

    added = settings_service.seed_defaults()
    click.echo(f"PASS Settings: {added} default(s) added")

    location = db.session.query(Location).filter_by(code="MAIN").first()
    if location is None:
        location = Location(code="MAIN", name="Main store")
        db.session.add(location)
        db.session.commit()
        click.echo(f"PASS Created location: {location.code} (ID: {location.id})")
    else:
        click.echo(f"PASS Using existing location: {location.code} (ID: {location.id})")

    if not settings_service.load_config().mpesa_shortcode:
        click.echo("WARN mpesa_shortcode is not set; M-Pesa payments will be refused until it is.")

    click.echo("DONE POS core initialized.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('settings')
def settings_group():
    """Runtime settings inspection and updates."""


@settings_group.command('show')
@with_appcontext
def show_settings():
    for key, value in settings_service.get_settings().items():
        click.echo(f"{key:<30} {value if value is not None else '-'}")


@settings_group.command('set')
@click.argument('key')
@click.argument('value')
@click.option('--actor', default='cli', show_default=True, help='Recorded as updated_by')
@with_appcontext
def set_setting(key, value, actor):
    try:
        settings_service.update_settings({key: value}, actor_id=actor)
    except PosCoreError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {key} = {value}")


@click.group('mpesa')
def mpesa_group():
    """Mobile-money maintenance."""


@mpesa_group.command('expire-pending')
@with_appcontext
def expire_pending_cli():
    """
    Fail pending STK pushes that outlived the confirmation window.

    Each expiry releases the sale's pending slot exactly like a provider failure.
    """
    expired = mpesa_service.expire_pending_transactions()
    click.echo(f"Expired {expired} pending M-Pesa transaction(s).")


@click.group('stock')
def stock_group():
    """Stock ledger inspection."""


@stock_group.command('low')
@with_appcontext
def low_stock_cli():
    products = stock_ledger_service.low_stock_products()
    if not products:
        click.echo("No products at or below reorder level.")
        return
    for p in products:
        click.echo(f"{p['sku']:<20} {p['name']:<40} on hand {p['stock_on_hand']:>6}  reorder {p['reorder_level']:>6}")


@stock_group.command('verify')
@click.argument('product_id', type=int, required=False)
@click.option('--all', 'verify_all', is_flag=True, help='Verify every product')
@with_appcontext
def verify_stock_cli(product_id, verify_all):
    """
    Audit the movement chain for one product (or all with --all).

    Exits non-zero when any chain is broken or a counter disagrees with its ledger.
    """
    if verify_all:
        product_ids = [pid for (pid,) in db.session.query(Product.id).order_by(Product.id.asc()).all()]
    elif product_id is not None:
        product_ids = [product_id]
    else:
        raise click.UsageError("Give a PRODUCT_ID or --all")

    failures = 0
    for pid in product_ids:
        try:
            result = stock_ledger_service.verify_chain(pid)
        except PosCoreError as e:
            raise click.ClickException(str(e))

        if result["ok"]:
            click.echo(f"PASS product {pid}: {result['movements_checked']} movements, on hand {result['stock_on_hand']}")
            continue

        failures += 1
        if result["broken_at_movement_id"] is not None:
            click.echo(f"FAIL product {pid}: chain broken at movement {result['broken_at_movement_id']}")
        else:
            click.echo(
                f"FAIL product {pid}: counter {result['stock_on_hand']} != ledger total {result['ledger_total']}"
            )

    if failures:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(settings_group)
    app.cli.add_command(mpesa_group)
    app.cli.add_command(stock_group)
