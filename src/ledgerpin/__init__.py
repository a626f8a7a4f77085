"""LedgerPin: payment-gated, wallet-authenticated content publishing."""

__version__ = "0.1.0"
