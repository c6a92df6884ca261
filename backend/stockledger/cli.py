# Overview: Flask CLI command groups for bootstrap, reconciliation and legacy-data repair.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to stockledger (PowerShell: $env:FLASK_APP="stockledger").
# - Use: python -m flask ledger <command> [options]
#
# Bootstrap:
# - python -m flask ledger init-db
#   Create all tables (idempotent). Use `flask db upgrade` for migrated deployments.
#
# Reconciliation:
# - python -m flask ledger audit [--product-id 3] [--category-id 1] [--json]
#   Read-only audit of the accounting identity; exits 1 when anything diverges.
#
# Legacy data:
# - python -m flask ledger backfill-links [--dry-run]
#   Store product_id on stock-ins that only carry a free-text natural key.
#
# Categories:
# - python -m flask ledger categories list
# - python -m flask ledger categories create --name "T-Shirts" --sizes S,M,L

import json

import click
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db


@click.group('ledger')
def ledger_group():
    """Stock ledger bootstrap, audit and repair commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401

    db.create_all()
    click.echo("PASS Database tables created.")


@ledger_group.command('audit')
@click.option('--product-id', type=int, help='Audit a single product')
@click.option('--category-id', type=int, help='Audit one category')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@with_appcontext
def audit(product_id, category_id, as_json):
    """
    Run the reconciliation auditor.

    Never writes. Exit code 1 when any product diverges or references are broken.
    """
    from .services.audit_service import audit_all, audit_product

    ctx = click.get_current_context()
    try:
        if product_id is not None:
            report = audit_product(product_id)
        else:
            report = audit_all(category_id=category_id)
    except LedgerError as e:
        click.echo(f"FAIL {e}", err=True)
        ctx.exit(2)

    if as_json:
        click.echo(json.dumps(report, default=str, indent=2, sort_keys=True))
    elif product_id is not None:
        _echo_product_report(report)
    else:
        for product_report in report["products"]:
            _echo_product_report(product_report)
        for failure in report["failures"]:
            click.echo(f"FAIL product {failure['product_id']}: {failure['error']}")
        if report["orphaned_sales"]:
            click.echo(f"FAIL sales referencing missing products: {report['orphaned_sales']}")
        for item in report["unresolved_stock_ins"]:
            click.echo(f"FAIL stock-in {item['stock_in_id']} does not resolve ({item['reason']})")
        click.echo(
            f"{'PASS' if report['consistent'] else 'FAIL'} {report['product_count']} products audited, "
            f"{len(report['inconsistent_product_ids'])} inconsistent"
        )

    if not report["consistent"]:
        ctx.exit(1)


def _echo_product_report(report: dict) -> None:
    details = report["details"]
    label = f"product {report['product_id']} ({details['product_name']}"
    if details["variant"]:
        label += f" / {details['variant']}"
    label += ")"
    if report["consistent"]:
        click.echo(f"PASS {label}")
        return
    click.echo(f"FAIL {label}: divergence {report['divergence']}")
    for issue in details["issues"]:
        click.echo(f"  - {issue}")


@ledger_group.command('backfill-links')
@click.option('--dry-run', is_flag=True, help='Report what would be linked without writing')
@with_appcontext
def backfill_links(dry_run):
    """Link legacy stock-in rows to their products by normalized natural key."""
    from .services.variant_resolver import backfill_stock_in_links

    result = backfill_stock_in_links(dry_run=dry_run)
    prefix = "DRY-RUN" if dry_run else "PASS"
    click.echo(f"{prefix} linked {len(result['linked'])} stock-in rows")
    if result["orphaned"]:
        click.echo(f"WARN orphaned stock-ins (no matching product): {result['orphaned']}")
    for item in result["ambiguous"]:
        click.echo(f"WARN stock-in {item['stock_in_id']} matches several products: {item['candidate_ids']}")


@click.group('categories')
def categories_group():
    """Category management."""


@categories_group.command('list')
@with_appcontext
def list_categories_cmd():
    from .services.inventory_service import list_categories

    categories = list_categories()
    if not categories:
        click.echo("No categories found.")
        return

    click.echo(f"{'ID':<5} {'Name':<30} {'Sizes'}")
    for category in categories:
        sizes = ", ".join(category.sizes or []) or "(size-less)"
        click.echo(f"{category.id:<5} {category.name:<30} {sizes}")


@categories_group.command('create')
@click.option('--name', required=True, help='Category name')
@click.option('--sizes', default='', help='Comma-separated sizes; omit for a size-less category')
@with_appcontext
def create_category_cmd(name, sizes):
    from .services.inventory_service import create_category

    size_list = [s.strip() for s in sizes.split(",") if s.strip()]
    try:
        category = create_category(name=name, sizes=size_list)
    except LedgerError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created category {category.name} (ID: {category.id})")


ledger_group.add_command(categories_group)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
