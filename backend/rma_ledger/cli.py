# Overview: Flask CLI command groups for bootstrap, ledger maintenance and return reporting.

# backend/rma_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use flask db upgrade for migrations).
#
# Organization management (MULTI-TENANT):
# - python -m flask orgs list
#   List all organizations.
# - python -m flask orgs create --name "Green Leaf" --code "GL" --license "C10-0000001-LIC"
#   Create a new organization (tenant).
#
# Store credit:
# - python -m flask credits sweep-expired [--org-id 1]
#   Mark spendable credits past their expiry as expired (safe to run repeatedly).
# - python -m flask credits balance --org-id 1 --customer-id 42
#   Show a customer's spendable store credit.
#
# Returns:
# - python -m flask returns stats --org-id 1
#   Status counts, last-30-day resolved totals, reasons and top returned products.
#
# Disposal reporting:
# - python -m flask disposal test-connection
#   Check the configured regulator reporting backend.
# - python -m flask disposal retry-pending --org-id 1 --operator-id 1
#   Re-send disposal reports that previously failed.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import ExternalServiceError, RmaLedgerError
from .extensions import db
from .models import Organization
from .services import reporting_service, return_service, store_credit_service
from .services.disposal_service import get_disposal_reporter


def _money(cents: int) -> str:
    return f"{cents / 100:.2f}"


# =============================================================================
# SYSTEM COMMANDS
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (idempotent; existing tables are left alone)."""
    db.create_all()
    click.echo("PASS Database tables created")


# =============================================================================
# ORGANIZATION COMMANDS
# =============================================================================

@click.group('orgs')
def orgs_group():
    """Organization (tenant) management commands."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    """List all organizations."""
    orgs = db.session.query(Organization).order_by(Organization.id).all()

    if not orgs:
        click.echo("No organizations found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active':<8} {'License'}")
    click.echo("="*80)

    for org in orgs:
        active_str = "Yes" if org.is_active else "No"
        click.echo(f"{org.id:<5} {org.name:<30} {org.code or '-':<15} {active_str:<8} {org.license_number or '-'}")

    click.echo("="*80 + "\n")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--license', 'license_number', default=None, help='State license number')
@with_appcontext
def create_org_cli(name, code, license_number):
    """Create a new organization (tenant)."""
    existing = db.session.query(Organization).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Organization with code '{code}' already exists")
        return

    org = Organization(name=name, code=code, license_number=license_number, is_active=True)
    db.session.add(org)
    db.session.commit()

    click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")


# =============================================================================
# STORE CREDIT COMMANDS
# =============================================================================

@click.group('credits')
def credits_group():
    """Store credit ledger maintenance."""


@credits_group.command('sweep-expired')
@click.option('--org-id', type=int, default=None, help='Limit to one organization')
@with_appcontext
def sweep_expired_cli(org_id):
    """Expire spendable credits whose expiry has passed."""
    count = store_credit_service.sweep_expired(org_id=org_id)
    click.echo(f"PASS Expired {count} store credit entries")


@credits_group.command('balance')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--customer-id', type=int, required=True, help='Customer ID')
@with_appcontext
def balance_cli(org_id, customer_id):
    """Show a customer's spendable store credit."""
    try:
        balance = store_credit_service.customer_balance(org_id, customer_id)
    except RmaLedgerError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"Customer {customer_id}: {_money(balance['total_balance_cents'])} available")
    for credit in balance["credits"]:
        expires = credit["expires_at"] or "never"
        click.echo(
            f"  {credit['credit_memo_number']:<18} {_money(credit['remaining_balance_cents']):>10}"
            f"  {credit['status']:<15} expires {expires}"
        )


# =============================================================================
# RETURN COMMANDS
# =============================================================================

@click.group('returns')
def returns_group():
    """Return request reporting."""


@returns_group.command('stats')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--top', type=int, default=5, help='Number of top returned products')
@with_appcontext
def stats_cli(org_id, top):
    """Status counts, recent resolved value, reasons and top returned products."""
    stats = reporting_service.return_stats(org_id)

    click.echo("\n" + "="*60)
    click.echo("STATUS")
    click.echo("="*60)
    for status, count in stats["status_counts"].items():
        click.echo(f"{status:<20} {count}")

    recent = stats["last_30_days"]
    click.echo(f"\nResolved (last 30 days): {recent['count']} returns, {_money(recent['total_value_cents'])}")

    reasons = reporting_service.reason_breakdown(org_id)
    if reasons:
        click.echo("\nREASONS")
        for row in reasons:
            click.echo(f"{row['reason']:<20} {row['count']:<6} {_money(row['total_value_cents'])}")

    products = reporting_service.top_returned_products(org_id, limit=top)
    if products:
        click.echo("\nTOP RETURNED PRODUCTS")
        for row in products:
            click.echo(f"{row['product_name']:<30} qty {row['quantity']:<6} in {row['return_count']} returns")
    click.echo("")


# =============================================================================
# DISPOSAL COMMANDS
# =============================================================================

@click.group('disposal')
def disposal_group():
    """Regulatory disposal reporting."""


@disposal_group.command('test-connection')
@with_appcontext
def test_connection_cli():
    """Check the configured disposal reporting backend."""
    kind = current_app.config.get("DISPOSAL_REPORTER") or "mock"
    try:
        reporter = get_disposal_reporter()
        kind = reporter.name
        result = reporter.test_connection()
    except ExternalServiceError as e:
        click.echo(f"FAIL {kind}: {e}")
        return
    click.echo(f"PASS {reporter.name}: {result.get('message') or 'connected'} ({result.get('environment')})")


@disposal_group.command('retry-pending')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--operator-id', type=int, required=True, help='User recorded as re-sending the reports')
@with_appcontext
def retry_pending_cli(org_id, operator_id):
    """Re-send disposal reports flagged for manual reporting."""
    pending = return_service.pending_manual_reports(org_id)
    if not pending:
        click.echo("No disposal reports pending.")
        return

    for return_request in pending:
        rma_number = return_request.rma_number
        result = return_service.retry_disposal_report(org_id, return_request.id, operator_id)
        if result.metrc_reported:
            click.echo(f"PASS {rma_number}: reported ({result.message})")
        else:
            click.echo(f"FAIL {rma_number}: {result.error}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orgs_group)  # Multi-tenant organization management
    app.cli.add_command(credits_group)
    app.cli.add_command(returns_group)
    app.cli.add_command(disposal_group)
