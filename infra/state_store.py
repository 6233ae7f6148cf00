"""
P2P Engine Infrastructure: Trade Store

Durable store for transactions, advertisements, payouts, chat history and the
blacklist, with atomic JSON persistence.

Features:
- Atomic writes (temp file + rename)
- Upserts keyed by natural ids (exchange order id, exchange message id)
- Thread-safe operations (single re-entrant lock)
- In-memory mode when no path is configured (tests, dry runs)
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
import logging

from core.exceptions import UnknownEntity
from core.models import (
    Advertisement,
    AdStatus,
    BlacklistedTransaction,
    ChatMessage,
    ChatSender,
    Payout,
    PayoutStatus,
    TemplateUsage,
    Transaction,
    TERMINAL_TRANSACTION_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1

_COLLECTIONS = {
    "transactions": Transaction,
    "advertisements": Advertisement,
    "payouts": Payout,
    "chat_messages": ChatMessage,
    "blacklist": BlacklistedTransaction,
}


class TradeStore:
    """
    Persistent trade storage using a JSON file.

    Every mutation is flushed immediately when a path is configured.
    """

    MAX_TEMPLATE_USAGE = 1000

    def __init__(self, state_file: Optional[str] = None, autosave: bool = True):
        """
        Initialize trade store.

        Args:
            state_file: Path to JSON file; None keeps everything in memory
            autosave: Flush to disk after each mutation
        """
        self.state_file = Path(state_file) if state_file else None
        self.autosave = autosave
        self._lock = threading.RLock()

        self._transactions: Dict[str, Transaction] = {}
        self._advertisements: Dict[str, Advertisement] = {}
        self._payouts: Dict[str, Payout] = {}
        self._chat_messages: Dict[str, ChatMessage] = {}
        self._blacklist: Dict[str, BlacklistedTransaction] = {}
        self._template_usage: List[TemplateUsage] = []

        # Natural-key indexes
        self._tx_by_order: Dict[str, str] = {}
        self._msg_by_exchange_id: Dict[str, str] = {}

        if self.state_file:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.load()
        logger.info(f"Initialized TradeStore at {self.state_file or '<memory>'}")

    # ----- persistence -----

    def _tables(self) -> Dict[str, Dict[str, Any]]:
        return {
            "transactions": self._transactions,
            "advertisements": self._advertisements,
            "payouts": self._payouts,
            "chat_messages": self._chat_messages,
            "blacklist": self._blacklist,
        }

    def load(self) -> None:
        """Load state from file (missing file means empty store)."""
        if not self.state_file or not self.state_file.exists():
            logger.debug("No trade store file found, starting empty")
            return

        with open(self.state_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Invalid trade store format in {self.state_file}")

        with self._lock:
            tables = self._tables()
            for name, model in _COLLECTIONS.items():
                table = tables[name]
                table.clear()
                for raw in data.get(name, []):
                    record = model.from_dict(raw)
                    table[record.id] = record
            self._template_usage = [TemplateUsage.from_dict(raw) for raw in data.get("template_usage", [])]
            self._rebuild_indexes()
        logger.info(
            f"Loaded trade store: {len(self._transactions)} transactions, "
            f"{len(self._payouts)} payouts, {len(self._blacklist)} blacklist entries"
        )

    def _rebuild_indexes(self) -> None:
        self._tx_by_order = {tx.order_id: tx.id for tx in self._transactions.values() if tx.order_id}
        self._msg_by_exchange_id = {
            msg.message_id: msg.id for msg in self._chat_messages.values() if msg.message_id
        }

    def save(self) -> None:
        """Write state to file atomically."""
        if not self.state_file:
            return
        with self._lock:
            payload = {name: [r.to_dict() for r in table.values()] for name, table in self._tables().items()}
            payload["template_usage"] = [u.to_dict() for u in self._template_usage]
            payload["schema_version"] = SCHEMA_VERSION
            payload["saved_at"] = utcnow().isoformat()

            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".trades_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                os.replace(temp_path, self.state_file)
            except OSError:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        logger.debug("Saved trade store to file")

    def _changed(self) -> None:
        if self.autosave:
            self.save()

    # ----- generic helpers -----

    def _get(self, table: Dict[str, T], kind: str, record_id: str) -> T:
        with self._lock:
            record = table.get(record_id)
        if record is None:
            raise UnknownEntity(f"{kind} {record_id}")
        return record

    def _select(self, table: Dict[str, T], predicate: Callable[[T], bool]) -> List[T]:
        with self._lock:
            return [r for r in table.values() if predicate(r)]

    # ----- transactions -----

    def upsert_transaction(self, tx: Transaction) -> Transaction:
        with self._lock:
            existing = self._transactions.get(tx.id)
            if existing is not None and existing.order_id and tx.order_id != existing.order_id:
                raise ValueError(f"order_id of transaction {tx.id} is immutable ({existing.order_id})")
            if tx.order_id:
                owner = self._tx_by_order.get(tx.order_id)
                if owner is not None and owner != tx.id:
                    raise ValueError(f"order {tx.order_id} already belongs to transaction {owner}")
                self._tx_by_order[tx.order_id] = tx.id
            tx.updated_at = utcnow()
            self._transactions[tx.id] = tx
            self._changed()
        return tx

    def insert_transaction_for_order(self, tx: Transaction) -> Tuple[Transaction, bool]:
        """
        Insert keyed on ``order_id``; returns the existing record if present.

        Returns:
            (transaction, created)
        """
        if not tx.order_id:
            raise ValueError("insert_transaction_for_order requires order_id")
        with self._lock:
            owner = self._tx_by_order.get(tx.order_id)
            if owner is not None:
                return self._transactions[owner], False
            self.upsert_transaction(tx)
            return tx, True

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self._get(self._transactions, "transaction", transaction_id)

    def find_transaction_by_order(self, order_id: str) -> Optional[Transaction]:
        with self._lock:
            tx_id = self._tx_by_order.get(order_id)
            return self._transactions.get(tx_id) if tx_id else None

    def transactions_by_status(self, *statuses: str) -> List[Transaction]:
        wanted = set(statuses)
        return sorted(
            self._select(self._transactions, lambda tx: tx.status in wanted),
            key=lambda tx: tx.created_at,
        )

    def active_transactions(self) -> List[Transaction]:
        return sorted(
            self._select(self._transactions, lambda tx: tx.status not in TERMINAL_TRANSACTION_STATUSES),
            key=lambda tx: tx.created_at,
        )

    def transactions_for_advertisement(self, advertisement_id: str) -> List[Transaction]:
        return self._select(self._transactions, lambda tx: tx.advertisement_id == advertisement_id)

    def transaction_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for tx in self._transactions.values():
                counts[tx.status] = counts.get(tx.status, 0) + 1
        return counts

    # ----- advertisements -----

    def upsert_advertisement(self, ad: Advertisement) -> Advertisement:
        with self._lock:
            ad.updated_at = utcnow()
            self._advertisements[ad.id] = ad
            self._changed()
        return ad

    def get_advertisement(self, advertisement_id: str) -> Advertisement:
        return self._get(self._advertisements, "advertisement", advertisement_id)

    def find_advertisement_by_exchange_id(self, ad_id: str) -> Optional[Advertisement]:
        matches = self._select(self._advertisements, lambda ad: ad.ad_id == ad_id)
        return matches[0] if matches else None

    def advertisements_by_status(self, *statuses: str) -> List[Advertisement]:
        wanted = set(statuses)
        return self._select(self._advertisements, lambda ad: ad.status in wanted)

    def live_advertisements(self, account_id: Optional[str] = None) -> List[Advertisement]:
        return self._select(
            self._advertisements,
            lambda ad: ad.status == AdStatus.ONLINE.value and (account_id is None or ad.account_id == account_id),
        )

    # ----- payouts -----

    def upsert_payout(self, payout: Payout) -> Payout:
        with self._lock:
            self._payouts[payout.id] = payout
            self._changed()
        return payout

    def get_payout(self, payout_id: str) -> Payout:
        return self._get(self._payouts, "payout", payout_id)

    def payouts(self) -> List[Payout]:
        with self._lock:
            return list(self._payouts.values())

    def open_payouts(self) -> List[Payout]:
        """Payouts not yet settled (pending or linked to a live transaction)."""
        open_statuses = {PayoutStatus.PENDING.value, PayoutStatus.LINKED.value}
        return sorted(
            self._select(self._payouts, lambda p: p.status in open_statuses),
            key=lambda p: p.created_at,
        )

    # ----- chat -----

    def upsert_chat_message(self, message: ChatMessage) -> Tuple[ChatMessage, bool]:
        """
        Insert a chat message, keyed on exchange ``message_id`` when present.

        Existing messages are immutable; a repeated upsert returns the stored copy.

        Returns:
            (message, created)
        """
        with self._lock:
            if message.message_id:
                existing_id = self._msg_by_exchange_id.get(message.message_id)
                if existing_id is not None:
                    return self._chat_messages[existing_id], False
                self._msg_by_exchange_id[message.message_id] = message.id
            elif message.id in self._chat_messages:
                return self._chat_messages[message.id], False
            self._chat_messages[message.id] = message
            self._changed()
            return message, True

    def claim_outgoing_message(self, transaction_id: str, content: str, message_id: str) -> Optional[ChatMessage]:
        """
        Bind an exchange message id to our locally recorded copy of a message
        we sent (same transaction, same text, not yet bound).
        """
        with self._lock:
            if message_id in self._msg_by_exchange_id:
                return self._chat_messages[self._msg_by_exchange_id[message_id]]
            for message in sorted(self._chat_messages.values(), key=lambda m: m.created_at):
                if (
                    message.transaction_id == transaction_id
                    and message.sender == ChatSender.US.value
                    and message.message_id is None
                    and message.content.strip() == (content or "").strip()
                ):
                    message.message_id = message_id
                    self._msg_by_exchange_id[message_id] = message.id
                    self._changed()
                    return message
        return None

    def mark_message_processed(self, message_id: str) -> None:
        message = self._get(self._chat_messages, "chat message", message_id)
        with self._lock:
            if not message.is_processed:
                message.is_processed = True
                self._changed()

    def messages_for_transaction(self, transaction_id: str) -> List[ChatMessage]:
        return sorted(
            self._select(self._chat_messages, lambda m: m.transaction_id == transaction_id),
            key=lambda m: m.created_at,
        )

    def unprocessed_chat_messages(self, transaction_ids: Optional[Iterable[str]] = None) -> List[ChatMessage]:
        wanted = set(transaction_ids) if transaction_ids is not None else None
        return sorted(
            self._select(
                self._chat_messages,
                lambda m: (
                    not m.is_processed
                    and m.sender == ChatSender.COUNTERPARTY.value
                    and (wanted is None or m.transaction_id in wanted)
                ),
            ),
            key=lambda m: m.created_at,
        )

    def record_template_usage(self, usage: TemplateUsage) -> None:
        with self._lock:
            self._template_usage.append(usage)
            del self._template_usage[:-self.MAX_TEMPLATE_USAGE]
            self._changed()

    def template_usage(self, transaction_id: Optional[str] = None) -> List[TemplateUsage]:
        with self._lock:
            return [u for u in self._template_usage if transaction_id is None or u.transaction_id == transaction_id]

    # ----- blacklist -----

    def add_blacklist(self, entry: BlacklistedTransaction) -> BlacklistedTransaction:
        with self._lock:
            self._blacklist[entry.id] = entry
            self._changed()
        return entry

    def get_blacklist(self, blacklist_id: str) -> BlacklistedTransaction:
        return self._get(self._blacklist, "blacklist entry", blacklist_id)

    def blacklist(self, include_resolved: bool = True) -> List[BlacklistedTransaction]:
        return sorted(
            self._select(self._blacklist, lambda b: include_resolved or not b.resolved),
            key=lambda b: b.created_at,
        )

    def update_blacklist(self, entry: BlacklistedTransaction) -> BlacklistedTransaction:
        with self._lock:
            if entry.id not in self._blacklist:
                raise UnknownEntity(f"blacklist entry {entry.id}")
            self._blacklist[entry.id] = entry
            self._changed()
        return entry

    def is_blacklisted(self, payout_id: str) -> bool:
        return bool(self._select(self._blacklist, lambda b: b.payout_id == payout_id and not b.resolved))

    # ----- summary -----

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "transactions": len(self._transactions),
                "transactions_by_status": self.transaction_counts(),
                "advertisements_online": len(self.live_advertisements()),
                "payouts_open": len(self.open_payouts()),
                "chat_messages": len(self._chat_messages),
                "blacklist_open": len(self.blacklist(include_resolved=False)),
            }
