"""Ticket domain models, persistence and revocation."""
