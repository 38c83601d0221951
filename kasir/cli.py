# Overview: Flask CLI command groups for bootstrap, nightly jobs and ledger checks.

# Commands Legend:
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask db upgrade
#   Create or migrate the schema.
# - python -m flask system init [--name "Toko Utama"] [--timezone Asia/Jakarta] [--create-tables]
#   Idempotent bootstrap: default store plus the system expense categories.
# - python -m flask system seed-demo [--store-id 1]
#   DEV only: demo products with opening stock.
#
# Nightly jobs:
# - python -m flask sales lock-day [--store-id 1] [--date 2024-05-01]
#   Lock every COMPLETED sale of a business day (default: previous day, all stores).
# - python -m flask cash sync-sales [--store-id 1]
#   Back-fill cash INCOME entries for completed sales that have none (idempotent).
#
# Ledger checks:
# - python -m flask stock verify [--store-id 1]
#   Replay every product's stock movements and report broken balance chains.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import LedgerError
from .models import Product, Store
from .models.enums import MovementType, ReferenceType
from .services import cash_service, sales_service, stock_service
from .validation import coerce_date


def _stores(store_id: int | None) -> list[Store]:
    query = db.session.query(Store).filter(Store.is_active.is_(True))
    if store_id is not None:
        query = query.filter(Store.id == store_id)
    stores = query.order_by(Store.id.asc()).all()
    if store_id is not None and not stores:
        raise click.ClickException(f"Store {store_id} not found")
    return stores


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--name', default='Main Store', help='Default store name')
@click.option('--code', default='MAIN', help='Default store code')
@click.option('--timezone', 'tz_name', default=None, help='IANA time zone (default: BUSINESS_TIMEZONE)')
@click.option('--create-tables', is_flag=True, help='Create tables directly instead of via migrations')
@with_appcontext
def init_system(name, code, tz_name, create_tables):
    """
    Initialize the ledger: default store and system expense categories.

    Safe to run repeatedly.
    """
    from flask import current_app

    if create_tables:
        db.create_all()
        click.echo("PASS Tables created")

    store = db.session.query(Store).order_by(Store.id.asc()).first()
    if not store:
        store = Store(
            name=name,
            code=code,
            timezone=tz_name or current_app.config["BUSINESS_TIMEZONE"],
        )
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created default store: {store.name} (ID: {store.id}, TZ: {store.timezone})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    for category_code in cash_service.SYSTEM_CATEGORIES:
        cash_service.ensure_expense_category(store.id, category_code)
    db.session.commit()
    click.echo(f"PASS System expense categories: {', '.join(cash_service.SYSTEM_CATEGORIES)}")


DEMO_PRODUCTS = [
    # sku, name, price, cost, opening qty, min stock
    ("IDM-001", "Indomie Goreng", 3500, 2800, 120, 24),
    ("AQU-600", "Aqua 600ml", 4000, 2900, 96, 24),
    ("TEH-350", "Teh Botol Sosro 350ml", 5000, 3800, 48, 12),
    ("GLA-BIS", "Gula Pasir 1kg", 17500, 15200, 20, 5),
    ("BRS-5KG", "Beras Premium 5kg", 78000, 69000, 8, 3),
]


@system_group.command('seed-demo')
@click.option('--store-id', type=int, default=None, help='Store to seed (default: first store)')
@with_appcontext
def seed_demo(store_id):
    """DEV only: create demo products and post their opening stock through the ledger."""
    stores = _stores(store_id)
    if not stores:
        raise click.ClickException("No store found; run `flask system init` first")
    store = stores[0]

    created = 0
    for sku, name, price, cost, qty, min_stock in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(store_id=store.id, sku=sku).first():
            continue
        product = Product(store_id=store.id, sku=sku, name=name, price_cents=price, min_stock=min_stock)
        db.session.add(product)
        db.session.commit()
        stock_service.record_movement(
            store.id,
            product.id,
            MovementType.IN,
            qty,
            ReferenceType.MANUAL,
            cost_per_unit_cents=cost,
            notes="Opening stock",
        )
        created += 1

    click.echo(f"PASS Seeded {created} demo products in store {store.id}")


@click.group('sales')
def sales_group():
    """Sale lifecycle jobs."""


@sales_group.command('lock-day')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@click.option('--date', 'day', default=None, help='Business date YYYY-MM-DD (default: previous business day)')
@with_appcontext
def lock_day(store_id, day):
    """Lock every COMPLETED sale of a business day (the nightly auto-lock)."""
    try:
        business_day = coerce_date(day, "date")
    except LedgerError as e:
        raise click.BadParameter(e.message, param_hint="--date")

    total = 0
    for store in _stores(store_id):
        count = sales_service.lock_sales_for_day(store.id, business_day)
        total += count
        click.echo(f"Store {store.id}: locked {count} sales")
    click.echo(f"PASS Locked {total} sales")


@click.group('cash')
def cash_group():
    """Cash ledger maintenance."""


@cash_group.command('sync-sales')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def sync_sales(store_id):
    """Back-fill INCOME entries for completed sales that are missing one."""
    stores = _stores(store_id)
    synced = 0
    failed = 0
    for store in stores:
        for sale in cash_service.find_unsynced_sales(store.id):
            try:
                entry = cash_service.sync_sale(store.id, sale.id)
            except LedgerError as e:
                failed += 1
                click.echo(f"FAIL {sale.transaction_number}: {e.message}", err=True)
                continue
            synced += 1
            click.echo(f"Synced {sale.transaction_number} -> {entry.transaction_number}")

    click.echo(f"PASS Synced {synced} sales ({failed} failed)")
    if failed:
        raise SystemExit(1)


@click.group('stock')
def stock_group():
    """Stock ledger checks."""


@stock_group.command('verify')
@click.option('--store-id', type=int, default=None, help='Limit to one store')
@with_appcontext
def verify_stock(store_id):
    """Replay every product's movements; exit 1 when any balance chain is broken."""
    broken = 0
    checked = 0
    for store in _stores(store_id):
        products = db.session.query(Product).filter_by(store_id=store.id).order_by(Product.id.asc()).all()
        for product in products:
            report = stock_service.replay_product_ledger(store.id, product.id)
            checked += 1
            if not report["consistent"]:
                broken += 1
                click.echo(
                    f"FAIL {product.sku}: ledger={report['ledger_qty']} product={report['product_qty']} "
                    f"issues={len(report['issues'])}",
                    err=True,
                )

    if broken:
        click.echo(f"FAIL {broken} of {checked} products inconsistent", err=True)
        raise SystemExit(1)
    click.echo(f"PASS {checked} products consistent")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sales_group)
    app.cli.add_command(cash_group)
    app.cli.add_command(stock_group)
