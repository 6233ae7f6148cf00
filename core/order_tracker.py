"""
P2P Engine Core: Order Tracker

Polls every active account's pending orders, keeps one Transaction per
exchange order, mirrors exchange status into the transaction state machine
and syncs order chat into the store.

Exchange "finished" (40) is only advanced to payment_received here;
completion belongs to the evidence matcher.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from core import events
from core.exceptions import ErrorKind, ExchangeAPIError, UnknownEntity
from core.models import (
    AdStatus,
    ChatMessage,
    ChatSender,
    MessageType,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    utcnow,
)
from core.order_state import map_exchange_status
from core.p2p_schemas import P2PMessage, P2POrder

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

MAX_ORDER_PAGES = 20

_CONTENT_TYPES = {
    "str": MessageType.TEXT,
    "pic": MessageType.IMAGE,
    "pdf": MessageType.FILE,
    "video": MessageType.FILE,
}


class OrderTracker:
    """
    Order polling and transaction bookkeeping.

    All per-transaction work runs under ``state_machine.locked(tx_id)``.
    """

    def __init__(
        self,
        pool,
        store,
        state_machine,
        ads,
        chat=None,
        event_bus=None,
        metrics=None,
        config: Optional[Dict[str, Any]] = None,
    ):
        cfg = config or {}
        self.pool = pool
        self.store = store
        self.state_machine = state_machine
        self.ads = ads
        self.chat = chat
        self.event_bus = event_bus
        self.metrics = metrics
        self.order_timeout_minutes = float(cfg.get("order_timeout_minutes", 30))
        self.max_workers = int(cfg.get("max_workers", 8))
        self.page_size = int(cfg.get("page_size", 30))
        self._link_lock = threading.Lock()

    # ----- polling -----

    def poll_orders(self) -> Dict[str, Dict[str, Any]]:
        """
        Poll all active accounts in parallel, then run timeout and cleanup sweeps.

        Returns:
            account_id → {"ok": bool, "orders": int, "error": str|None}
        """
        accounts = self.pool.active_accounts()
        outcome: Dict[str, Dict[str, Any]] = {}
        listed: Set[str] = set()
        polled: Set[str] = set()

        if accounts:
            workers = max(1, min(len(accounts), self.max_workers))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="order-poll") as executor:
                futures = {
                    executor.submit(self._poll_account, account.account_id): account.account_id
                    for account in accounts
                }
                for future in as_completed(futures):
                    account_id = futures[future]
                    try:
                        order_ids = future.result()
                    except Exception as exc:
                        logger.error(f"Order poll for {account_id} failed: {exc}", exc_info=True)
                        outcome[account_id] = {"ok": False, "orders": 0, "error": str(exc)}
                        continue
                    if order_ids is None:
                        outcome[account_id] = {"ok": False, "orders": 0,
                                               "error": self.pool.get_account(account_id).last_error}
                        continue
                    listed.update(order_ids)
                    polled.add(account_id)
                    outcome[account_id] = {"ok": True, "orders": len(order_ids), "error": None}

        self.check_timeouts(listed, polled)
        self.cleanup_terminal()
        return outcome

    def _poll_account(self, account_id: str) -> Optional[List[str]]:
        """Ingest every page of pending orders; None if any page is unavailable."""
        order_ids: List[str] = []
        seen: Set[str] = set()
        for page in range(1, MAX_ORDER_PAGES + 1):
            result = self.pool.execute(account_id, "list_pending_orders", page, self.page_size)
            if not result.ok:
                logger.warning(f"Pending orders page {page} unavailable for {account_id}: {result.error}")
                return None
            fresh = [order for order in result.value if order.order_id not in seen]
            for order in fresh:
                seen.add(order.order_id)
                order_ids.append(order.order_id)
                self.ingest_order(account_id, order)
            if len(result.value) < self.page_size or not fresh:
                return order_ids
        # listing incomplete: unseen orders must not be treated as vanished
        logger.warning(f"{account_id}: more than {MAX_ORDER_PAGES} pages of pending orders; skipping timeouts")
        return None

    def ingest_order(self, account_id: str, order: P2POrder) -> Optional[Transaction]:
        """
        Create or update the Transaction for an exchange order. Idempotent.

        Returns:
            The transaction, or None when the order is not on one of our ads
        """
        tx = self.store.find_transaction_by_order(order.order_id)
        if tx is None:
            tx = self._create_transaction(account_id, order)
            if tx is None:
                return None

        with self.state_machine.locked(tx.id):
            tx = self.store.get_transaction(tx.id)
            if tx.is_terminal():
                return tx
            if not tx.counterparty_id and order.target_user_id:
                tx.counterparty_id = order.target_user_id
                tx.counterparty_name = order.target_nick_name
                self.store.upsert_transaction(tx)
            self._apply_exchange_status(tx, order.status)
            tx = self.store.get_transaction(tx.id)
            if not tx.is_terminal():
                self.sync_chat(tx)
        return self.store.get_transaction(tx.id)

    def _create_transaction(self, account_id: str, order: P2POrder) -> Optional[Transaction]:
        ad = self.store.find_advertisement_by_exchange_id(order.item_id) if order.item_id else None
        if ad is None or not ad.is_live():
            logger.debug(f"Ignoring order {order.order_id}: item {order.item_id or '-'} is not one of our live ads")
            return None

        tx = Transaction(
            advertisement_id=ad.id,
            account_id=account_id,
            order_id=order.order_id,
            counterparty_id=order.target_user_id,
            counterparty_name=order.target_nick_name,
            amount=order.amount,
        )
        if order.created_at is not None:
            tx.created_at = order.created_at
        tx, created = self.store.insert_transaction_for_order(tx)
        if not created:
            return tx

        self._link_payout(tx, ad.payout_id)
        logger.info(
            f"New transaction {tx.id} for order {order.order_id} on ad {ad.ad_id} "
            f"({order.amount:.2f} {ad.fiat}, counterparty {order.target_nick_name or order.target_user_id})"
        )
        if self.event_bus is not None:
            self.event_bus.emit(events.TRANSACTION_STATUS_CHANGED, {
                "transaction_id": tx.id,
                "order_id": tx.order_id,
                "old_status": None,
                "new_status": tx.status,
                "reason": "order observed",
            })
        if self.metrics is not None:
            self.metrics.record_transaction_counts(self.store.transaction_counts())
        if self.chat is not None:
            self.chat.start_automation(tx.id)
        return tx

    def _link_payout(self, tx: Transaction, payout_id: Optional[str]) -> None:
        if not payout_id:
            return
        with self._link_lock:
            try:
                payout = self.store.get_payout(payout_id)
            except UnknownEntity:
                logger.warning(f"Advertisement {tx.advertisement_id} references missing payout {payout_id}")
                return
            if payout.status != PayoutStatus.PENDING.value or self.store.is_blacklisted(payout.id):
                logger.warning(
                    f"Payout {payout.id} is {payout.status}"
                    f"{' (blacklisted)' if self.store.is_blacklisted(payout.id) else ''}; "
                    f"transaction {tx.id} left unlinked"
                )
                return
            payout.status = PayoutStatus.LINKED.value
            payout.transaction_id = tx.id
            self.store.upsert_payout(payout)
            tx.payout_id = payout.id
            self.store.upsert_transaction(tx)

    def _apply_exchange_status(self, tx: Transaction, code: int) -> None:
        target = map_exchange_status(code)
        if target is TransactionStatus.COMPLETED:
            target = TransactionStatus.PAYMENT_RECEIVED
        current = TransactionStatus(tx.status)
        if current == target or not self.state_machine.can_transition(current.value, target.value):
            return

        reason = f"exchange order status {code}"
        if self.state_machine.transition(tx.id, target, reason):
            if target is TransactionStatus.WAITING_PAYMENT and self.chat is not None:
                self.chat.send_payment_details(tx.id)

    # ----- chat sync -----

    def _classify_sender(self, tx: Transaction, message: P2PMessage) -> ChatSender:
        if not message.user_id or message.user_id == "0":
            return ChatSender.SYSTEM
        if tx.counterparty_id is None or message.user_id == tx.counterparty_id:
            return ChatSender.COUNTERPARTY
        return ChatSender.US

    def sync_chat(self, tx: Transaction) -> int:
        """
        Pull the order's chat into the store.

        Our own messages bind to the copy recorded at send time; anything we
        sent that automation did not record is stored as a manual message.

        Returns:
            Number of newly stored messages
        """
        if not tx.order_id:
            return 0
        result = self.pool.execute(tx.account_id, "list_messages", tx.order_id)
        if not result.ok:
            logger.warning(f"Chat sync for transaction {tx.id} failed: {result.error}")
            return 0

        stored = 0
        with self.state_machine.locked(tx.id):
            for remote in sorted(result.value, key=lambda m: m.created_at or _EPOCH):
                sender = self._classify_sender(tx, remote)
                if sender is ChatSender.US or (sender is not ChatSender.SYSTEM and tx.counterparty_id is None):
                    if self.store.claim_outgoing_message(tx.id, remote.message, remote.message_id) is not None:
                        continue

                if sender is ChatSender.SYSTEM:
                    message_type = MessageType.SYSTEM
                else:
                    message_type = _CONTENT_TYPES.get(remote.content_type, MessageType.TEXT)
                message = ChatMessage(
                    transaction_id=tx.id,
                    sender=sender.value,
                    content=remote.message,
                    message_id=remote.message_id,
                    message_type=message_type.value,
                    is_auto_reply=False,
                    is_processed=sender is not ChatSender.COUNTERPARTY,
                    created_at=remote.created_at or utcnow(),
                )
                message, created = self.store.upsert_chat_message(message)
                if not created:
                    continue
                stored += 1
                if self.event_bus is not None:
                    self.event_bus.emit(events.CHAT_MESSAGE, message.to_dict())
        if stored:
            logger.debug(f"Stored {stored} new chat message(s) for transaction {tx.id}")
        return stored

    # ----- timeouts and cleanup -----

    def check_timeouts(self, listed_order_ids: Set[str], polled_accounts: Set[str]) -> List[str]:
        """
        Resolve stale transactions whose order dropped off the pending list.

        Only accounts polled successfully this cycle are considered. A
        business error from the order lookup (order gone) cancels the
        transaction; transient errors wait for the next cycle.

        Returns:
            Ids of transactions cancelled by timeout
        """
        cancelled = []
        timeout_seconds = self.order_timeout_minutes * 60
        for tx in self.store.active_transactions():
            if tx.account_id not in polled_accounts or tx.order_id in listed_order_ids:
                continue
            if tx.age_seconds() < timeout_seconds:
                continue

            result = self.pool.execute(tx.account_id, "get_order", tx.order_id)
            if result.ok:
                with self.state_machine.locked(tx.id):
                    self._apply_exchange_status(self.store.get_transaction(tx.id), result.value.status)
                continue
            if result.error_kind in (ErrorKind.TRANSIENT, ErrorKind.CLOCK_DRIFT):
                logger.warning(f"Timeout check for transaction {tx.id} deferred: {result.error}")
                continue
            reason = f"order timeout after {self.order_timeout_minutes:g} min ({result.error})"
            if self.state_machine.transition(tx.id, TransactionStatus.CANCELLED, reason):
                cancelled.append(tx.id)
        return cancelled

    def cleanup_terminal(self) -> int:
        """
        Withdraw ads of finished transactions and release cancelled payouts.

        Idempotent; a withdrawal that fails transiently is retried next cycle.

        Returns:
            Number of transactions cleaned up this call
        """
        terminal = self.store.transactions_by_status(
            TransactionStatus.COMPLETED.value,
            TransactionStatus.CANCELLED.value,
            TransactionStatus.FAILED.value,
        )
        cleaned = 0
        for tx in terminal:
            try:
                ad = self.store.get_advertisement(tx.advertisement_id)
            except UnknownEntity:
                continue
            if ad.status == AdStatus.DELETED.value:
                continue
            with self.state_machine.locked(tx.id):
                self._release_payout(tx)
                try:
                    self.ads.withdraw(ad.id, reason=f"transaction {tx.id} {tx.status}")
                except ExchangeAPIError as exc:
                    logger.warning(f"Withdraw of ad {ad.ad_id} for transaction {tx.id} deferred: {exc}")
                    continue
                if tx.status == TransactionStatus.COMPLETED.value and self.chat is not None:
                    self.chat.send_final_message(tx.id)
            cleaned += 1
        return cleaned

    def _release_payout(self, tx: Transaction) -> None:
        if tx.status == TransactionStatus.COMPLETED.value or not tx.payout_id:
            return
        with self._link_lock:
            try:
                payout = self.store.get_payout(tx.payout_id)
            except UnknownEntity:
                return
            if payout.status != PayoutStatus.LINKED.value or payout.transaction_id != tx.id:
                return
            payout.status = PayoutStatus.PENDING.value
            payout.transaction_id = None
            self.store.upsert_payout(payout)
        logger.info(f"Payout {payout.id} released from {tx.status} transaction {tx.id}")

    def status(self) -> Dict[str, Any]:
        return {
            "active_transactions": len(self.store.active_transactions()),
            "order_timeout_minutes": self.order_timeout_minutes,
        }
