"""
Pytest configuration and fixtures for the P2P engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.account_pool import AccountPool, RetryPolicy
from core.advertisements import AdvertisementManager
from core.chat_automation import ChatAutomation
from core.events import EventBus
from core.exchange_rate import ExchangeRateManager
from core.models import ExchangeAccount, Payout, ResponseGroup
from core.order_state import TransactionStateMachine
from core.order_tracker import OrderTracker
from infra.state_store import TradeStore
from tests.helpers.fake_exchange import FakeClock, FakeExchange


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def store():
    """In-memory trade store"""
    return TradeStore()


@pytest.fixture
def events_log():
    return []


@pytest.fixture
def event_bus(events_log):
    bus = EventBus()
    bus.subscribe(lambda name, payload: events_log.append((name, payload)))
    return bus


@pytest.fixture
def pool(exchange, clock):
    """Pool with one active account (cap 2) on the fake exchange, no backoff sleeps"""
    accounts = [ExchangeAccount(account_id="acc-1", api_key="key", api_secret="secret", max_active_ads=2)]
    return AccountPool(
        accounts,
        clock,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
        session_factory=exchange,
    )


@pytest.fixture
def state_machine(store, event_bus):
    return TransactionStateMachine(store, event_bus)


@pytest.fixture
def ads(pool, store, event_bus):
    return AdvertisementManager(pool, store, ExchangeRateManager(constant_rate=90.0), event_bus)


@pytest.fixture
def response_groups():
    return [
        ResponseGroup.from_dict({
            "name": "greeting",
            "templates": [{"id": "hello", "name": "hello", "message": "Здравствуйте!"}],
        }),
        ResponseGroup.from_dict({
            "name": "payment",
            "templates": [
                {"id": "paid", "name": "paid", "keywords": ["оплатил", "paid"],
                 "message": "Спасибо, проверяем платеж", "priority": 10},
                {"id": "requisites", "name": "requisites", "keywords": ["реквизиты"],
                 "message": "Кошелек: {wallet}, сумма: {amount}", "priority": 5},
            ],
        }),
    ]


@pytest.fixture
def chat(pool, store, state_machine, event_bus, response_groups):
    return ChatAutomation(
        pool, store, state_machine, response_groups, event_bus,
        config={"payment_details_template": "Банк: {bank}\nКошелек: {wallet}\nСумма: {amount} {currency}",
                "final_message": "Спасибо за сделку!"},
    )


@pytest.fixture
def tracker(pool, store, state_machine, ads, chat, event_bus):
    return OrderTracker(pool, store, state_machine, ads, chat, event_bus=event_bus,
                        config={"order_timeout_minutes": 30, "max_workers": 2})


@pytest.fixture
def make_payout(store):
    """Factory storing a payout created ``minutes_ago`` minutes in the past"""

    def _make(amount: float = 1000.0, wallet: str = "+79161234567", bank: str = "Т-Банк",
              minutes_ago: float = 10.0, **kwargs) -> Payout:
        payout = Payout(amount=amount, wallet=wallet, bank=bank, **kwargs)
        payout.created_at = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
        return store.upsert_payout(payout)

    return _make
