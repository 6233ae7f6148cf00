"""
P2P Engine Core: Chat Automation

Keyword-driven replies to counterparty chat messages.

Flow per cycle:
1. Collect unprocessed counterparty messages of active transactions
2. Per transaction, in creation order: match against active templates
   (priority desc, then name), reply, then mark processed
3. A failed send leaves the message unprocessed and stops that
   transaction for this cycle so replies never go out of order

Operator takeover: a message we sent that automation did not write suspends
automation for the transaction until resume_automation().
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

from core import events
from core.exceptions import ErrorKind, ExchangeAPIError, UnknownEntity
from core.models import (
    ChatMessage,
    ChatSender,
    ChatTemplate,
    MessageType,
    ResponseGroup,
    TemplateUsage,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)

GREETING_GROUP = "greeting"

DEFAULT_PAYMENT_DETAILS = (
    "Реквизиты для оплаты:\n"
    "Банк: {bank}\n"
    "Кошелек: {wallet}\n"
    "Сумма: {amount} {currency}"
)


class _TemplateVars(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


_SAMPLE_VARS = {"amount": "1000", "currency": "RUB", "wallet": "+79990000000", "bank": "Bank", "recipient": "Name"}


def template_error(text: str) -> Optional[str]:
    """Why ``text`` cannot be rendered as a template, or None if it can."""
    try:
        text.format_map(_TemplateVars(_SAMPLE_VARS))
    except (ValueError, IndexError, AttributeError, TypeError) as exc:
        return f"{type(exc).__name__}: {exc}"
    return None


class ChatAutomation:
    """Template replies, greetings and payment-details messages."""

    def __init__(
        self,
        pool,
        store,
        state_machine,
        response_groups: Iterable[ResponseGroup] = (),
        event_bus=None,
        metrics=None,
        config: Optional[Dict[str, Any]] = None,
    ):
        cfg = config or {}
        self.pool = pool
        self.store = store
        self.state_machine = state_machine
        self.event_bus = event_bus
        self.metrics = metrics
        self.greeting_group = cfg.get("greeting_group", GREETING_GROUP)
        self.greeting_text: Optional[str] = cfg.get("greeting_text")
        self.payment_details_template: str = cfg.get("payment_details_template") or DEFAULT_PAYMENT_DETAILS
        self.final_message: Optional[str] = cfg.get("final_message")
        self._groups: List[ResponseGroup] = []
        self._ranked: List[ChatTemplate] = []
        self.set_response_groups(response_groups)

    # ----- templates -----

    def set_response_groups(self, groups: Iterable[ResponseGroup]) -> None:
        self._groups = list(groups)
        templates = [
            t for g in self._groups if g.name != self.greeting_group
            for t in g.templates if t.is_active
        ]
        self._ranked = sorted(templates, key=lambda t: (-t.priority, t.name))
        logger.info(f"Chat automation loaded {len(self._ranked)} reply template(s) in {len(self._groups)} group(s)")

    def match_template(self, text: str) -> Optional[ChatTemplate]:
        for template in self._ranked:
            if template.matches(text):
                return template
        return None

    def _greeting(self) -> Optional[ChatTemplate]:
        for group in self._groups:
            if group.name == self.greeting_group:
                active = sorted((t for t in group.templates if t.is_active), key=lambda t: (-t.priority, t.name))
                if active:
                    return active[0]
        if self.greeting_text:
            return ChatTemplate(name="greeting", message=self.greeting_text, id="greeting")
        return None

    def render(self, text: str, tx: Transaction) -> str:
        """Fill {amount}/{wallet}/{bank}/{currency} from the transaction's payout."""
        variables = _TemplateVars(amount=f"{tx.amount:g}" if tx.amount else "", currency="", wallet="", bank="")
        if tx.payout_id:
            try:
                payout = self.store.get_payout(tx.payout_id)
            except UnknownEntity:
                payout = None
            if payout is not None:
                variables.update(
                    amount=f"{payout.amount:g}",
                    currency=payout.currency,
                    wallet=payout.wallet,
                    bank=payout.bank,
                    recipient=payout.recipient_name or "",
                )
        try:
            return text.format_map(variables)
        except (ValueError, IndexError, AttributeError, TypeError) as exc:
            # stray braces are literal text; send the template as written
            logger.warning(f"Template {text[:40]!r} not renderable ({exc}); sending it verbatim")
            return text

    # ----- sending -----

    def _send(self, tx: Transaction, text: str, template: Optional[ChatTemplate] = None) -> ChatMessage:
        """
        Send through the account pool and persist our copy.

        Raises:
            ExchangeAPIError: send failed after pool retries
        """
        if not tx.order_id:
            raise ExchangeAPIError(ErrorKind.BUSINESS, f"transaction {tx.id} has no exchange order")
        self.pool.execute(tx.account_id, "send_message", tx.order_id, text).unwrap()
        message = ChatMessage(
            transaction_id=tx.id,
            sender=ChatSender.US.value,
            content=text,
            message_type=MessageType.TEXT.value,
            is_auto_reply=True,
            is_processed=True,
        )
        self.store.upsert_chat_message(message)
        if template is not None:
            self.store.record_template_usage(TemplateUsage(template_id=template.id, transaction_id=tx.id))
        if self.event_bus is not None:
            self.event_bus.emit(events.CHAT_MESSAGE, message.to_dict())
        return message

    def start_automation(self, transaction_id: str) -> bool:
        """Send the greeting if the conversation has not started yet."""
        with self.state_machine.locked(transaction_id):
            tx = self.store.get_transaction(transaction_id)
            if tx.is_terminal() or self.store.messages_for_transaction(tx.id):
                return False
            greeting = self._greeting()
            if greeting is None:
                return False
            try:
                self._send(tx, self.render(greeting.message, tx), greeting)
            except ExchangeAPIError as exc:
                logger.warning(f"Greeting for transaction {tx.id} not sent: {exc}")
                return False
        logger.info(f"Chat automation started for transaction {transaction_id}")
        return True

    def send_payment_details(self, transaction_id: str) -> bool:
        """Send payout requisites once per transaction."""
        with self.state_machine.locked(transaction_id):
            tx = self.store.get_transaction(transaction_id)
            if tx.payment_details_sent or tx.is_terminal() or not tx.payout_id:
                return False
            try:
                self._send(tx, self.render(self.payment_details_template, tx))
            except ExchangeAPIError as exc:
                logger.warning(f"Payment details for transaction {tx.id} not sent: {exc}")
                return False
            tx.payment_details_sent = True
            tx.payment_sent_at = utcnow()
            self.store.upsert_transaction(tx)
        logger.info(f"Payment details sent for transaction {transaction_id}")
        return True

    def send_final_message(self, transaction_id: str) -> bool:
        if not self.final_message:
            return False
        tx = self.store.get_transaction(transaction_id)
        try:
            self._send(tx, self.render(self.final_message, tx))
        except ExchangeAPIError as exc:
            logger.warning(f"Final message for transaction {tx.id} not sent: {exc}")
            return False
        return True

    # ----- operator takeover -----

    def _operator_took_over(self, tx: Transaction) -> bool:
        if tx.automation_suspended:
            return True
        for message in self.store.messages_for_transaction(tx.id):
            if message.sender != ChatSender.US.value or message.is_auto_reply:
                continue
            if tx.automation_resumed_at and message.created_at <= tx.automation_resumed_at:
                continue
            tx.automation_suspended = True
            self.store.upsert_transaction(tx)
            logger.warning(f"Operator message on transaction {tx.id}; automation suspended")
            return True
        return False

    def resume_automation(self, transaction_id: str) -> None:
        with self.state_machine.locked(transaction_id):
            tx = self.store.get_transaction(transaction_id)
            tx.automation_suspended = False
            tx.automation_resumed_at = utcnow()
            self.store.upsert_transaction(tx)
        logger.info(f"Chat automation resumed for transaction {transaction_id}")

    # ----- processing -----

    def process_unprocessed_messages(self) -> Dict[str, int]:
        """
        Reply to every pending counterparty message.

        Returns:
            Outcome counts: replied, unmatched, suspended, failed
        """
        outcome = {"replied": 0, "unmatched": 0, "suspended": 0, "failed": 0}
        active_ids = [tx.id for tx in self.store.active_transactions()]
        by_tx: "OrderedDict[str, List[ChatMessage]]" = OrderedDict()
        for message in self.store.unprocessed_chat_messages(active_ids):
            by_tx.setdefault(message.transaction_id, []).append(message)

        for transaction_id, messages in by_tx.items():
            with self.state_machine.locked(transaction_id):
                tx = self.store.get_transaction(transaction_id)
                if self._operator_took_over(tx):
                    for message in messages:
                        self.store.mark_message_processed(message.id)
                        self._count(outcome, "suspended")
                    continue

                for message in messages:
                    template = self.match_template(message.content)
                    if template is None:
                        logger.info(f"Unmatched message on transaction {tx.id}: {message.content[:80]!r}")
                        self.store.mark_message_processed(message.id)
                        self._count(outcome, "unmatched")
                        continue
                    try:
                        self._send(tx, self.render(template.message, tx), template)
                    except ExchangeAPIError as exc:
                        logger.warning(
                            f"Reply to message {message.id} on transaction {tx.id} failed, "
                            f"will retry next cycle: {exc}"
                        )
                        self._count(outcome, "failed")
                        break
                    self.store.mark_message_processed(message.id)
                    self._count(outcome, "replied")
                    logger.info(f"Replied on transaction {tx.id} with template '{template.name}'")

        if any(outcome.values()):
            logger.debug(f"Chat cycle: {outcome}")
        return outcome

    def _count(self, outcome: Dict[str, int], key: str) -> None:
        outcome[key] += 1
        if self.metrics is not None:
            self.metrics.record_chat_reply(key)
