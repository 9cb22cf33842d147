"""Access to the on-chain ticket revocation contract."""

from .client import LedgerClient, LedgerGateway, LedgerReceipt
from .errors import (
    InsufficientBalanceError,
    LedgerConfigurationError,
    LedgerError,
    LedgerTimeoutError,
    LedgerTransactionError,
)

__all__ = [
    "InsufficientBalanceError",
    "LedgerClient",
    "LedgerConfigurationError",
    "LedgerError",
    "LedgerGateway",
    "LedgerReceipt",
    "LedgerTimeoutError",
    "LedgerTransactionError",
]
