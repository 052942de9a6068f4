"""
CLI Commands for the points ledger.

Usage:
    flask ledger expire-due                     # Expire overdue lots now
    flask ledger expire-due --now 2025-01-01    # Expire as of a given time
    flask ledger balance 42                     # Show a user's balance
    flask ledger verify                         # Check balances against lots
"""
from .ledger import init_app as init_ledger_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_ledger_commands(app)
