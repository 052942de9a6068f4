"""
CLI Commands for ledger maintenance.

These commands can be run manually or via cron jobs:

# Points expiration (when the in-process scheduler is disabled)
* * * * * cd /app && flask ledger expire-due

# Nightly consistency check
0 3 * * * cd /app && flask ledger verify
"""
import click
from flask.cli import with_appcontext

from ..services import get_ledger_engine
from ..utils.exceptions import LedgerError


@click.group('ledger')
def ledger_cli():
    """Points ledger commands."""
    pass


@ledger_cli.command('expire-due')
@click.option('--now', 'now', type=click.DateTime(), default=None,
              help='Expire lots due before this UTC time (default: current time)')
@click.option('--batch-size', type=int, default=None, help='Max users to process')
@with_appcontext
def expire_due(now, batch_size):
    """
    Expire active lots whose valid_until has passed.

    Safe to run at any cadence.
    """
    engine = get_ledger_engine()
    try:
        summary = engine.expire_due(now=now, batch_size=batch_size)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(f"Users processed: {summary.users_processed}")
    click.echo(f"Lots expired: {summary.lots_expired}")
    click.echo(f"Points expired: {summary.points_expired}")

    if summary.errors:
        click.echo(f"Errors: {len(summary.errors)}")
        for error in summary.errors[:5]:
            click.echo(f"  - User {error['user_id']}: [{error['code']}] {error['message']}")
        raise click.exceptions.Exit(1)


@ledger_cli.command('balance')
@click.argument('user_id', type=int)
@with_appcontext
def show_balance(user_id):
    """Show a user's balance and lifetime totals."""
    engine = get_ledger_engine()
    try:
        summary = engine.balance_summary(user_id)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(f"User {user_id}:")
    click.echo(f"  Balance: {summary.balance}")
    click.echo(f"  Lifetime earned: {summary.lifetime_earned}")
    click.echo(f"  Lifetime redeemed: {summary.lifetime_redeemed}")
    click.echo(f"  Lifetime expired: {summary.lifetime_expired}")
    click.echo(f"  Expiring within {summary.expiring_within_days} days: {summary.expiring_soon}")


@ledger_cli.command('verify')
@click.option('--user-id', type=int, default=None, help='Check a single user')
@with_appcontext
def verify(user_id):
    """
    Check every cached balance against the sum of active lots.

    Exits non-zero when any user is out of sync.
    """
    engine = get_ledger_engine()
    try:
        mismatches = engine.reconcile(user_id=user_id)
    except LedgerError as e:
        raise click.ClickException(e.message)

    if not mismatches:
        click.echo("All balances match their active lots")
        return

    click.echo(f"{len(mismatches)} users out of sync:")
    for m in mismatches[:20]:
        click.echo(
            f"  User {m.user_id}: cached {m.cached_balance}, lots {m.lot_total} "
            f"(difference {m.difference:+d})"
        )
    raise click.exceptions.Exit(1)


def init_app(app):
    """Register CLI commands with the Flask app."""
    app.cli.add_command(ledger_cli)
