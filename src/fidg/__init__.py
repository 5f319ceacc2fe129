"""Fidg - custodial Safe wallets with a savings ledger."""

__version__ = "0.1.0"
