"""
Tests for the transaction state machine.

Ensures monotonic lifecycle transitions, terminal states and exchange status mapping.
"""

import pytest

from core import events
from core.exceptions import InvalidTransition
from core.models import Transaction, TransactionStatus
from core.order_state import TransactionStateMachine, map_exchange_status


@pytest.fixture
def tx(store):
    return store.upsert_transaction(Transaction(advertisement_id="ad-1", account_id="acc-1", order_id="order-1"))


class TestExchangeStatusMapping:
    @pytest.mark.parametrize("code,status", [
        (10, TransactionStatus.WAITING_PAYMENT),
        (20, TransactionStatus.PAYMENT_RECEIVED),
        (40, TransactionStatus.COMPLETED),
        (50, TransactionStatus.CANCELLED),
        (30, TransactionStatus.FAILED),
        (12345, TransactionStatus.PENDING),
    ])
    def test_mapping(self, code, status):
        assert map_exchange_status(code) is status


class TestTransitions:
    """Test transition validation"""

    def test_forward_transition_applies(self, state_machine, store, tx, events_log):
        assert state_machine.transition(tx.id, TransactionStatus.WAITING_PAYMENT)

        assert store.get_transaction(tx.id).status == "waiting_payment"
        name, payload = events_log[-1]
        assert name == events.TRANSACTION_STATUS_CHANGED
        assert payload["old_status"] == "pending"
        assert payload["new_status"] == "waiting_payment"
        assert payload["order_id"] == "order-1"

    def test_forward_skip_allowed(self, state_machine, store, tx):
        assert state_machine.transition(tx.id, TransactionStatus.PAYMENT_RECEIVED)
        assert store.get_transaction(tx.id).status == "payment_received"

    def test_backwards_rejected(self, state_machine, store, tx):
        state_machine.transition(tx.id, TransactionStatus.PAYMENT_RECEIVED)
        assert not state_machine.transition(tx.id, TransactionStatus.WAITING_PAYMENT)
        assert store.get_transaction(tx.id).status == "payment_received"

    def test_same_status_is_noop(self, state_machine, tx, events_log):
        assert not state_machine.transition(tx.id, TransactionStatus.PENDING)
        assert events_log == []

    @pytest.mark.parametrize("terminal", [
        TransactionStatus.COMPLETED,
        TransactionStatus.CANCELLED,
        TransactionStatus.FAILED,
    ])
    def test_terminal_accepts_nothing(self, state_machine, store, tx, terminal):
        state_machine.transition(tx.id, terminal)
        for target in TransactionStatus:
            assert not state_machine.transition(tx.id, target)
        assert store.get_transaction(tx.id).status == terminal.value

    def test_cancel_records_reason_and_time(self, state_machine, store, tx):
        state_machine.transition(tx.id, TransactionStatus.CANCELLED, "order timeout")
        stored = store.get_transaction(tx.id)
        assert stored.failure_reason == "order timeout"
        assert stored.completed_at is not None

    def test_require_raises_on_invalid(self, state_machine, tx):
        state_machine.transition(tx.id, TransactionStatus.COMPLETED)
        with pytest.raises(InvalidTransition):
            state_machine.require(tx.id, TransactionStatus.PENDING)

    def test_require_accepts_already_there(self, state_machine, tx):
        state_machine.transition(tx.id, TransactionStatus.WAITING_PAYMENT)
        state_machine.require(tx.id, TransactionStatus.WAITING_PAYMENT)

    def test_can_transition_classmethod(self):
        assert TransactionStateMachine.can_transition("pending", "completed")
        assert not TransactionStateMachine.can_transition("completed", "cancelled")


class TestAdvanceTo:
    def test_completion_passes_through_payment_received(self, state_machine, store, tx, events_log):
        state_machine.transition(tx.id, TransactionStatus.WAITING_PAYMENT)

        assert state_machine.advance_to(tx.id, TransactionStatus.COMPLETED, "evidence e-1")

        steps = [payload["new_status"] for name, payload in events_log]
        assert steps == ["waiting_payment", "payment_received", "completed"]
        assert store.get_transaction(tx.id).status == "completed"

    def test_advance_from_cancelled_fails(self, state_machine, tx):
        state_machine.transition(tx.id, TransactionStatus.CANCELLED)
        assert not state_machine.advance_to(tx.id, TransactionStatus.COMPLETED)


class TestSummary:
    def test_summary_counts(self, state_machine, store, tx):
        other = store.upsert_transaction(Transaction(advertisement_id="ad-2", account_id="acc-1", order_id="order-2"))
        state_machine.transition(other.id, TransactionStatus.COMPLETED)

        summary = state_machine.get_summary()

        assert summary["total_transactions"] == 2
        assert summary["active_transactions"] == 1
        assert summary["status_breakdown"]["completed"] == 1
        assert summary["status_breakdown"]["pending"] == 1
