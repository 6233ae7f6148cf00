"""
Tests for keyword chat automation
"""
import pytest

from core.chat_automation import template_error
from core.exceptions import ErrorKind, ExchangeAPIError
from core.models import ChatSender, ResponseGroup, Transaction, TransactionStatus
from tests.helpers.fake_exchange import OUR_USER_ID


@pytest.fixture
def session(exchange):
    return exchange.session("acc-1")


@pytest.fixture
def live_tx(tracker, store, session, ads, make_payout):
    """A waiting_payment transaction whose greeting and requisites are already out"""
    payout = make_payout(amount=1000.0, wallet="+79161234567", bank="Т-Банк")
    ad = ads.create_for_payout(payout)
    order = session.add_order(ad.ad_id, 1000.0, status=10)
    tracker.poll_orders()
    return store.find_transaction_by_order(order.order_id)


def _say(tracker, session, tx, text, **kwargs):
    session.add_message(tx.order_id, text, **kwargs)
    tracker.poll_orders()


class TestTemplates:
    def test_priority_wins(self, chat):
        assert chat.match_template("Оплатил, где реквизиты?").id == "paid"

    def test_case_insensitive(self, chat):
        assert chat.match_template("PAID already").id == "paid"

    def test_greeting_group_never_matches_replies(self, chat):
        assert chat.match_template("hello") is None

    def test_render_fills_payout_fields(self, chat, live_tx):
        assert chat.render("Кошелек: {wallet}, сумма: {amount}", live_tx) == "Кошелек: +79161234567, сумма: 1000"

    def test_render_keeps_unknown_placeholders(self, chat, live_tx):
        assert chat.render("{foo} {amount} {currency}", live_tx) == "{foo} 1000 RUB"

    @pytest.mark.parametrize("text", ["Спасибо :-{ проверяем", "Сумма {}", "Карта {wallet.number}", "{0}"])
    def test_render_falls_back_to_raw_text(self, chat, live_tx, text):
        assert chat.render(text, live_tx) == text

    def test_template_error_reports_bad_braces(self):
        assert template_error("Сумма {amount} {unknown}") is None
        assert "ValueError" in template_error("Спасибо :-{")


class TestReplies:
    """Test processing of counterparty messages"""

    def test_payment_claim_gets_reply(self, chat, tracker, store, session, live_tx):
        _say(tracker, session, live_tx, "я оплатил")

        outcome = chat.process_unprocessed_messages()

        assert outcome == {"replied": 1, "unmatched": 0, "suspended": 0, "failed": 0}
        assert session.sent[-1] == (live_tx.order_id, "Спасибо, проверяем платеж")
        assert store.unprocessed_chat_messages() == []
        used = [u.template_id for u in store.template_usage(live_tx.id)]
        assert used == ["hello", "paid"]

    def test_reply_renders_requisites(self, chat, tracker, session, live_tx):
        _say(tracker, session, live_tx, "Скиньте реквизиты")

        chat.process_unprocessed_messages()

        assert session.sent[-1][1] == "Кошелек: +79161234567, сумма: 1000"

    def test_reply_is_recorded_as_auto(self, chat, tracker, store, session, live_tx):
        _say(tracker, session, live_tx, "paid")
        chat.process_unprocessed_messages()
        tracker.poll_orders()

        ours = [m for m in store.messages_for_transaction(live_tx.id) if m.sender == ChatSender.US.value]
        assert [m.content for m in ours][-1] == "Спасибо, проверяем платеж"
        assert all(m.is_auto_reply for m in ours)
        assert all(m.message_id for m in ours)

    def test_unmatched_message_is_marked_processed(self, chat, tracker, store, session, live_tx):
        sent_before = len(session.sent)
        _say(tracker, session, live_tx, "добрый день")

        outcome = chat.process_unprocessed_messages()

        assert outcome["unmatched"] == 1
        assert len(session.sent) == sent_before
        assert store.unprocessed_chat_messages() == []

    def test_each_message_answered_once(self, chat, tracker, session, live_tx):
        _say(tracker, session, live_tx, "я оплатил")
        chat.process_unprocessed_messages()
        sent_after_first = len(session.sent)

        outcome = chat.process_unprocessed_messages()

        assert outcome == {"replied": 0, "unmatched": 0, "suspended": 0, "failed": 0}
        assert len(session.sent) == sent_after_first

    def test_unrenderable_reply_is_sent_verbatim_once(self, chat, tracker, store, session, live_tx):
        """A reply with stray braces still goes out and the message does not loop"""
        chat.set_response_groups([ResponseGroup.from_dict({
            "name": "payment",
            "templates": [{"id": "paid", "name": "paid", "keywords": ["оплатил"],
                           "message": "Спасибо :-{ проверяем"}],
        })])
        _say(tracker, session, live_tx, "я оплатил")

        first = chat.process_unprocessed_messages()
        second = chat.process_unprocessed_messages()

        assert first["replied"] == 1
        assert second == {"replied": 0, "unmatched": 0, "suspended": 0, "failed": 0}
        assert session.sent[-1] == (live_tx.order_id, "Спасибо :-{ проверяем")
        assert store.unprocessed_chat_messages() == []

    def test_send_failure_keeps_order(self, chat, tracker, store, session, live_tx):
        session.add_message(live_tx.order_id, "я оплатил")
        session.add_message(live_tx.order_id, "реквизиты?")
        tracker.poll_orders()
        session.fail("send_message", ExchangeAPIError(ErrorKind.TRANSIENT, "503"), times=3)

        outcome = chat.process_unprocessed_messages()

        assert outcome["failed"] == 1
        assert outcome["replied"] == 0
        assert [m.content for m in store.unprocessed_chat_messages()] == ["я оплатил", "реквизиты?"]

        outcome = chat.process_unprocessed_messages()

        assert outcome["replied"] == 2
        assert [text for _, text in session.sent[-2:]] == [
            "Спасибо, проверяем платеж",
            "Кошелек: +79161234567, сумма: 1000",
        ]

    def test_terminal_transactions_are_skipped(self, chat, tracker, store, session, state_machine, live_tx):
        _say(tracker, session, live_tx, "я оплатил")
        state_machine.transition(live_tx.id, TransactionStatus.CANCELLED, "test")

        outcome = chat.process_unprocessed_messages()

        assert outcome["replied"] == 0


class TestOperatorTakeover:
    def test_manual_message_suspends_until_resume(self, chat, tracker, store, session, live_tx):
        _say(tracker, session, live_tx, "Сейчас проверю вручную", user_id=OUR_USER_ID)
        _say(tracker, session, live_tx, "я оплатил")
        sent_before = len(session.sent)

        outcome = chat.process_unprocessed_messages()

        assert outcome["suspended"] == 1
        assert len(session.sent) == sent_before
        assert store.get_transaction(live_tx.id).automation_suspended

        chat.resume_automation(live_tx.id)
        _say(tracker, session, live_tx, "paid")
        outcome = chat.process_unprocessed_messages()

        assert outcome["replied"] == 1
        assert not store.get_transaction(live_tx.id).automation_suspended


class TestLifecycleMessages:
    def test_greeting_only_once(self, chat, live_tx):
        assert chat.start_automation(live_tx.id) is False

    def test_payment_details_only_once(self, chat, live_tx):
        assert chat.send_payment_details(live_tx.id) is False

    def test_payment_details_need_payout(self, chat, store):
        tx = store.upsert_transaction(Transaction(advertisement_id="ad", account_id="acc-1", order_id="o-1"))
        assert chat.send_payment_details(tx.id) is False

    def test_final_message_disabled_without_text(self, pool, store, state_machine, live_tx):
        from core.chat_automation import ChatAutomation

        quiet = ChatAutomation(pool, store, state_machine)
        assert quiet.send_final_message(live_tx.id) is False

    def test_final_message_failure_is_reported(self, chat, session, live_tx):
        session.fail("send_message", ExchangeAPIError(ErrorKind.BUSINESS, "chat closed"))
        assert chat.send_final_message(live_tx.id) is False
