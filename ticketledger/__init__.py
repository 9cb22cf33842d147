"""Ticket revocation service with on-chain reconciliation."""

__version__ = "0.1.0"
