"""Keeping local ticket state and the ledger in agreement."""
