from __future__ import annotations

from enum import Enum, IntEnum


class TicketStatus(str, Enum):
    """Local lifecycle of a ticket."""

    VALID = "valid"
    REVOKED = "revoked"


class MintStatus(str, Enum):
    """Progress of the ticket's token registration on the ledger."""

    UNSET = "unset"
    PENDING = "pending"
    MINTED = "minted"
    FAILED = "failed"


class LedgerStatus(str, Enum):
    """Ledger outcome recorded on a revocation audit entry."""

    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    """States of a revocation queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerStatusCode(IntEnum):
    """Values returned by the contract's ``getTicketStatus`` view."""

    UNREGISTERED = 0
    REGISTERED = 1
    REVOKED = 2

    @classmethod
    def describe(cls, code: int) -> str:
        try:
            return cls(code).name.capitalize()
        except ValueError:
            return f"Unknown ({code})"


class VerificationMode(str, Enum):
    """Ticket selection used by the verification job."""

    ALL = "all"
    REGISTERED_ONLY = "registered_only"
    FLAGGED_ONLY = "flagged_only"


class LedgerTicketFilter(str, Enum):
    """Ledger state filter for the admin ticket listing."""

    REGISTERED = "registered"
    REVOKED = "revoked"
    PENDING = "pending"
    FAILED = "failed"


class TicketStateMachine:
    """Validate ticket lifecycle transitions. Revocation is one-way."""

    _TRANSITIONS: dict[TicketStatus, set[TicketStatus]] = {
        TicketStatus.VALID: {TicketStatus.REVOKED},
        TicketStatus.REVOKED: set(),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.VALID

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, set())

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {new.value}")


class QueueStateMachine:
    """Transitions of a revocation queue item.

    ``pending -> processing`` happens when the worker claims the item. A processing
    item either completes, goes back to ``pending`` for another attempt, or becomes
    ``failed`` once the retry ceiling is reached. ``completed`` and ``failed`` are
    terminal.
    """

    MAX_RETRIES = 3

    _TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
        QueueStatus.PENDING: {QueueStatus.PROCESSING},
        QueueStatus.PROCESSING: {QueueStatus.COMPLETED, QueueStatus.PENDING, QueueStatus.FAILED},
        QueueStatus.COMPLETED: set(),
        QueueStatus.FAILED: set(),
    }

    @classmethod
    def can_transition(cls, current: QueueStatus, new: QueueStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, status: QueueStatus) -> bool:
        return not cls._TRANSITIONS.get(status)

    @classmethod
    def after_failure(cls, retry_count: int, *, max_retries: int | None = None) -> tuple[QueueStatus, int]:
        """Return the next status and retry count for an item whose attempt failed."""

        ceiling = cls.MAX_RETRIES if max_retries is None else max_retries
        attempts = retry_count + 1
        if attempts >= ceiling:
            return QueueStatus.FAILED, attempts
        return QueueStatus.PENDING, attempts
