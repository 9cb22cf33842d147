class LedgerError(RuntimeError):
    """Base error for ledger interaction failures."""


class LedgerConfigurationError(LedgerError):
    """Raised when the ledger client is missing RPC, contract or key settings."""


class InsufficientBalanceError(LedgerError):
    """Raised when the signing wallet cannot pay for a transaction."""


class LedgerTransactionError(LedgerError):
    """Raised when a transaction reverts or its receipt reports failure."""

    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class LedgerTimeoutError(LedgerError):
    """Raised when a submitted transaction is not confirmed in time."""

    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
