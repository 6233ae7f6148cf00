"""
P2P Engine Core: Transaction State Machine

Explicit transaction lifecycle with monotonic transitions.

States: pending → waiting_payment → payment_received → completed
        any non-terminal → cancelled | failed

Provides:
- Transition validation (forward skips allowed, never backwards)
- Terminal states accept nothing
- One transition at a time per transaction (keyed locks)
- Lifecycle timestamps
- Status-change events
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from core import events
from core.exceptions import InvalidTransition
from core.models import TransactionStatus, utcnow

logger = logging.getLogger(__name__)


_P = TransactionStatus.PENDING
_W = TransactionStatus.WAITING_PAYMENT
_R = TransactionStatus.PAYMENT_RECEIVED
_C = TransactionStatus.COMPLETED
_X = TransactionStatus.CANCELLED
_F = TransactionStatus.FAILED


# Exchange order status code → transaction status
EXCHANGE_ORDER_STATUS = {
    5: _P,      # waiting for chain (token orders)
    10: _W,     # waiting for buyer to pay
    20: _R,     # buyer marked paid, waiting for release
    30: _F,     # appealing
    40: _C,     # finished on exchange
    50: _X,     # cancelled
    60: _X,     # cancelled by system
    70: _X,     # cancelled after appeal
    100: _F,    # objectioning
    110: _F,    # waiting for objection
}


def map_exchange_status(code: int) -> TransactionStatus:
    return EXCHANGE_ORDER_STATUS.get(int(code), _P)


class TransactionStateMachine:
    """
    Transaction state machine with transition validation and telemetry.

    Only valid forward state changes are applied; everything else is logged
    and rejected.
    """

    # Valid state transitions
    VALID_TRANSITIONS = {
        _P: {_W, _R, _C, _X, _F},
        _W: {_R, _C, _X, _F},
        _R: {_C, _X, _F},
        # Terminal states have no outbound transitions
        _C: set(),
        _X: set(),
        _F: set(),
    }

    def __init__(self, store, event_bus=None, metrics=None):
        self.store = store
        self.event_bus = event_bus
        self.metrics = metrics
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        logger.info("TransactionStateMachine initialized")

    @contextmanager
    def locked(self, transaction_id: str) -> Iterator[None]:
        """Serialize all work on one transaction."""
        with self._locks_guard:
            lock = self._locks.setdefault(transaction_id, threading.RLock())
        with lock:
            yield

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        return TransactionStatus(new) in cls.VALID_TRANSITIONS.get(TransactionStatus(current), set())

    def transition(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Move a transaction to a new status.

        Args:
            transaction_id: Transaction id
            new_status: Target status
            reason: Failure/cancel reason (stored on the transaction)

        Returns:
            True if the transition was applied; False if it was a no-op or invalid
        """
        with self.locked(transaction_id):
            tx = self.store.get_transaction(transaction_id)
            current = TransactionStatus(tx.status)

            if current == new_status:
                logger.debug(f"Transaction {transaction_id} already {new_status.value}")
                return False

            if new_status not in self.VALID_TRANSITIONS.get(current, set()):
                logger.warning(
                    f"Invalid transition for {transaction_id}: "
                    f"{current.value} → {new_status.value}"
                )
                return False

            old_status = tx.status
            tx.status = new_status.value
            now = utcnow()
            if new_status in (_C, _X, _F):
                tx.completed_at = now
            if reason and new_status in (_X, _F):
                tx.failure_reason = reason
            self.store.upsert_transaction(tx)

        logger.info(
            f"Transaction {transaction_id} (order {tx.order_id}) transitioned: "
            f"{old_status} → {new_status.value}"
        )
        if self.metrics is not None:
            self.metrics.record_transaction_counts(self.store.transaction_counts())
        if self.event_bus is not None:
            self.event_bus.emit(events.TRANSACTION_STATUS_CHANGED, {
                "transaction_id": tx.id,
                "order_id": tx.order_id,
                "old_status": old_status,
                "new_status": new_status.value,
                "reason": reason,
            })
        return True

    def require(self, transaction_id: str, new_status: TransactionStatus, reason: Optional[str] = None) -> None:
        """Like transition() but raises InvalidTransition instead of returning False."""
        if not self.transition(transaction_id, new_status, reason):
            tx = self.store.get_transaction(transaction_id)
            if tx.status != new_status.value:
                raise InvalidTransition(f"{transaction_id}: {tx.status} → {new_status.value}")

    def advance_to(self, transaction_id: str, target: TransactionStatus, reason: Optional[str] = None) -> bool:
        """
        Walk forward through intermediate states to ``target``.

        Used where each step should be observable (e.g. payment_received
        before completed). Returns True if the transaction ended at target.
        """
        path = [_W, _R, _C]
        with self.locked(transaction_id):
            tx = self.store.get_transaction(transaction_id)
            if target in (_X, _F) or target not in path:
                self.transition(transaction_id, target, reason)
            else:
                for step in path[: path.index(target) + 1]:
                    if self.can_transition(tx.status, step.value) and step in (_R, target):
                        self.transition(transaction_id, step, reason)
                        tx = self.store.get_transaction(transaction_id)
            return self.store.get_transaction(transaction_id).status == target.value

    def get_summary(self) -> Dict[str, Any]:
        counts = self.store.transaction_counts()
        active = self.store.active_transactions()
        return {
            "total_transactions": sum(counts.values()),
            "active_transactions": len(active),
            "status_breakdown": {s.value: counts.get(s.value, 0) for s in TransactionStatus},
            "oldest_active_age": max((tx.age_seconds() for tx in active), default=0),
        }
