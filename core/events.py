"""
Logical event emission for the push channel.

Transport is not our concern; subscribers are plain callables receiving
``(event_name, payload)``. A failing subscriber is logged and skipped.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

TRANSACTION_STATUS_CHANGED = "transaction.statusChanged"
ADVERTISEMENT_CREATED = "advertisement.created"
ADVERTISEMENT_TOGGLED = "advertisement.toggled"
ADVERTISEMENT_DELETED = "advertisement.deleted"
CHAT_MESSAGE = "chat.message"
EVIDENCE_UNMATCHED = "evidence.unmatched"
EVIDENCE_AMBIGUOUS = "evidence.ambiguous"
PAYOUT_BLACKLISTED = "payout.blacklisted"

Subscriber = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """In-process publish/subscribe with a short replay buffer."""

    def __init__(self, history_size: int = 200):
        self._subscribers: List[Subscriber] = []
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns an unsubscribe callable."""
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        record = {"event": event, "at": datetime.now(timezone.utc).isoformat(), "payload": payload}
        with self._lock:
            self._history.append(record)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event, payload)
            except Exception as exc:
                logger.error(f"Event subscriber failed on {event}: {exc}", exc_info=True)

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history)[-limit:]
