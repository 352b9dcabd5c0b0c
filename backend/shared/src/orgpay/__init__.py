"""Idempotent payments and Stripe webhook reconciliation for organizations."""

__version__ = "0.1.0"
