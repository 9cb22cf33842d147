import pytest

from ticketledger.tickets.state import (
    LedgerStatusCode,
    QueueStateMachine,
    QueueStatus,
    TicketStateMachine,
    TicketStatus,
)


def test_ticket_revocation_is_one_way():
    assert TicketStateMachine.can_transition(TicketStatus.VALID, TicketStatus.REVOKED)
    assert not TicketStateMachine.can_transition(TicketStatus.REVOKED, TicketStatus.VALID)
    assert not TicketStateMachine.can_transition(TicketStatus.REVOKED, TicketStatus.REVOKED)
    with pytest.raises(ValueError):
        TicketStateMachine.assert_transition(TicketStatus.REVOKED, TicketStatus.VALID)


def test_queue_item_transitions():
    assert QueueStateMachine.can_transition(QueueStatus.PENDING, QueueStatus.PROCESSING)
    assert QueueStateMachine.can_transition(QueueStatus.PROCESSING, QueueStatus.PENDING)
    assert not QueueStateMachine.can_transition(QueueStatus.PENDING, QueueStatus.COMPLETED)
    assert QueueStateMachine.is_terminal(QueueStatus.COMPLETED)
    assert QueueStateMachine.is_terminal(QueueStatus.FAILED)
    assert not QueueStateMachine.is_terminal(QueueStatus.PROCESSING)


def test_after_failure_stops_at_ceiling():
    assert QueueStateMachine.after_failure(0) == (QueueStatus.PENDING, 1)
    assert QueueStateMachine.after_failure(1) == (QueueStatus.PENDING, 2)
    assert QueueStateMachine.after_failure(2) == (QueueStatus.FAILED, 3)
    assert QueueStateMachine.after_failure(0, max_retries=1) == (QueueStatus.FAILED, 1)


def test_ledger_status_code_description():
    assert LedgerStatusCode.describe(0) == "Unregistered"
    assert LedgerStatusCode.describe(2) == "Revoked"
    assert LedgerStatusCode.describe(7) == "Unknown (7)"
