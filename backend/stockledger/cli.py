# Overview: Flask CLI command groups for bootstrap, ledger inspection, and sequence inspection.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migration-managed databases).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed [--merchant "Demo Merchant"] [--shops 2]
#   Create a demo merchant with shops and a few inventory items.
#
# Ledger inspection:
# - python -m flask ledger verify [--shop-id 1]
#   Compare every stock account with the sum of its ledger; exits 1 on mismatch.
# - python -m flask ledger history --shop-id 1 --item-id 3 [--limit 20]
#   Print recent movements for one item in one shop.
#
# Sequences:
# - python -m flask sequences show [--scope INV-2026]
#   List counters and their last issued value.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import InventoryItem, Merchant, SequenceCounter, Shop
from .services import movement_ledger_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed' for demo data.")


DEMO_ITEMS = [
    ("Espresso Beans 1kg", "BEAN-1KG", 2499, 5),
    ("Paper Cups (50)", "CUP-50", 650, 10),
    ("Oat Milk 1L", "OAT-1L", 329, 12),
    ("Gift Card", "GIFT", None, None),
]


@system_group.command('seed')
@click.option('--merchant', 'merchant_name', default='Demo Merchant', help='Merchant name')
@click.option('--shops', 'shop_count', type=int, default=2, help='Number of shops to create')
@with_appcontext
def seed(merchant_name, shop_count):
    """
    Create a demo merchant, its shops, and a small catalog.

    Idempotent: existing rows with the same names/SKUs are reused. Stock is
    not seeded; receive it through the API so the ledger stays complete.
    """
    merchant = db.session.query(Merchant).filter_by(name=merchant_name).first()
    if not merchant:
        merchant = Merchant(name=merchant_name, is_active=True)
        db.session.add(merchant)
        db.session.commit()
        click.echo(f"PASS Created merchant: {merchant.name} (ID: {merchant.id})")
    else:
        click.echo(f"PASS Using existing merchant: {merchant.name} (ID: {merchant.id})")

    for number in range(1, shop_count + 1):
        name = f"Shop {number}"
        shop = db.session.query(Shop).filter_by(merchant_id=merchant.id, name=name).first()
        if shop:
            click.echo(f"WARN  Shop '{name}' already exists, skipping...")
            continue
        shop = Shop(merchant_id=merchant.id, name=name, is_active=True)
        db.session.add(shop)
        db.session.commit()
        click.echo(f"PASS Created shop: {shop.name} (ID: {shop.id})")

    for name, sku, price_cents, threshold in DEMO_ITEMS:
        item = db.session.query(InventoryItem).filter_by(merchant_id=merchant.id, sku=sku).first()
        if item:
            click.echo(f"WARN  Item '{sku}' already exists, skipping...")
            continue
        item = InventoryItem(
            merchant_id=merchant.id,
            name=name,
            sku=sku,
            price_cents=price_cents,
            low_stock_threshold=threshold,
        )
        db.session.add(item)
        db.session.commit()
        click.echo(f"PASS Created item: {item.name} (ID: {item.id}, SKU: {item.sku})")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection commands."""


@ledger_group.command('verify')
@click.option('--shop-id', type=int, help='Only check one shop')
@with_appcontext
def verify_ledger(shop_id):
    """Check that every stock account equals the sum of its ledger entries."""
    mismatches = movement_ledger_service.verify_integrity(shop_id=shop_id)
    if not mismatches:
        click.echo("PASS Ledger and stock accounts agree.")
        return

    click.echo(f"FAIL {len(mismatches)} mismatch(es):")
    for row in mismatches:
        click.echo(
            f"  shop {row['shop_id']} item {row['item_id']}: "
            f"account={row['account_quantity']} ledger={row['ledger_quantity']}"
        )
    raise SystemExit(1)


@ledger_group.command('history')
@click.option('--shop-id', type=int, required=True, help='Shop ID')
@click.option('--item-id', type=int, required=True, help='Inventory item ID')
@click.option('--limit', type=int, default=20, help='Number of entries to show')
@with_appcontext
def ledger_history(shop_id, item_id, limit):
    """Print the most recent movements for one item in one shop."""
    result = movement_ledger_service.history(shop_id, item_id, page=1, per_page=limit)
    entries = result["items"]
    if not entries:
        click.echo("No movements recorded.")
        return

    click.echo(f"\n{'ID':<8} {'When':<22} {'Kind':<14} {'Delta':>7} {'Result':>7}  {'Actor':<16} Reason")
    click.echo("-" * 100)
    for entry in entries:
        when = entry.occurred_at.strftime("%Y-%m-%d %H:%M:%S") if entry.occurred_at else "-"
        click.echo(
            f"{entry.id:<8} {when:<22} {entry.kind:<14} {entry.quantity_delta:>7} "
            f"{entry.resulting_quantity:>7}  {entry.actor_id:<16} {entry.reason or ''}"
        )
    click.echo(f"\nShowing {len(entries)} of {result['pagination']['total']} movement(s).")


@click.group('sequences')
def sequences_group():
    """Sequence counter inspection commands."""


@sequences_group.command('show')
@click.option('--scope', help='Only show one scope key (e.g. INV-2026)')
@with_appcontext
def show_sequences(scope):
    """List sequence counters and their last issued value."""
    query = db.session.query(SequenceCounter).order_by(SequenceCounter.scope_key.asc())
    if scope:
        query = query.filter_by(scope_key=scope)
    counters = query.all()
    if not counters:
        click.echo("No sequence counters found.")
        return

    for counter in counters:
        click.echo(f"{counter.scope_key:<20} last_issued={counter.last_issued}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(sequences_group)
