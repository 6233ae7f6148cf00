"""
Tests for the advertisement lifecycle manager

Covers capacity-safe account selection, payment method alternation, pricing,
idempotent withdrawal and counter reconciliation.
"""
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from core import events
from core.account_pool import AccountPool, RetryPolicy
from core.advertisements import AdvertisementManager, build_payment_map, classify_payment_method
from core.exceptions import AdCreationError, CapacityError, ErrorKind, ExchangeAPIError
from core.exchange_rate import ExchangeRateManager
from core.models import AdStatus, ExchangeAccount, Payout
from core.p2p_schemas import PaymentMethod


def _pool(exchange, clock, *caps):
    accounts = [
        ExchangeAccount(account_id=f"acc-{i + 1}", api_key="k", api_secret="s", max_active_ads=cap)
        for i, cap in enumerate(caps)
    ]
    return AccountPool(accounts, clock, retry_policy=RetryPolicy(2, 0.0, 0.0), session_factory=exchange)


class TestPaymentMethods:
    """Test exchange payment method classification"""

    def test_classify_by_name_type_and_phone(self):
        assert classify_payment_method(PaymentMethod.model_validate({"id": "1", "paymentName": "СБП"})) == "SBP"
        assert classify_payment_method(PaymentMethod.model_validate({"id": "2", "paymentType": "75"})) == "Tinkoff"
        assert classify_payment_method(
            PaymentMethod.model_validate({"id": "3", "accountNo": "+7 916 123-45-67"})
        ) == "SBP"
        assert classify_payment_method(PaymentMethod.model_validate({"id": "4", "paymentType": "999"})) is None

    def test_build_map_skips_internal_balance(self):
        mapping = build_payment_map([
            PaymentMethod.model_validate({"id": "-1", "paymentName": "Balance"}),
            PaymentMethod.model_validate({"id": "10", "bankName": "Tinkoff Bank"}),
        ])
        assert mapping["Tinkoff"] == "10"
        assert mapping["tinkoff"] == "10"
        assert "Balance" not in mapping


class TestCreate:
    """Test advertisement creation"""

    def test_creates_online_ad_with_payout_limits(self, ads, store, exchange, events_log):
        payout = store.upsert_payout(Payout(amount=4500.0, wallet="+79161234567", bank="Сбер"))

        ad = ads.create_for_payout(payout)

        assert ad.status == AdStatus.ONLINE.value
        assert ad.payout_id == payout.id
        assert ad.min_amount == ad.max_amount == 4500.0
        assert ad.price == 90.0
        params = exchange.session("acc-1").created_params[0]
        assert params["minAmount"] == params["maxAmount"] == "4500.00"
        assert params["price"] == "90.00"
        assert params["side"] == "1"
        # 4500 / 90 + default buffer of 5
        assert params["quantity"] == "55.00"
        assert store.get_advertisement(ad.id) is ad
        assert [name for name, _ in events_log] == [events.ADVERTISEMENT_CREATED]

    def test_existing_live_ad_is_reused(self, ads, store, exchange):
        payout = store.upsert_payout(Payout(amount=1000.0, wallet="1234"))
        first = ads.create_for_payout(payout)
        second = ads.create_for_payout(payout)
        assert first.id == second.id
        assert len(exchange.session("acc-1").created_params) == 1

    def test_second_ad_alternates_payment_method(self, ads, store):
        first = ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        second = ads.create_for_payout(store.upsert_payout(Payout(amount=2000.0, wallet="5678")))
        assert first.payment_method == "SBP"
        assert second.payment_method == "Tinkoff"
        assert first.payment_ids == ["101"]
        assert second.payment_ids == ["102"]

    def test_float_pricing_uses_premium(self, pool, store, exchange):
        manager = AdvertisementManager(
            pool, store, ExchangeRateManager(constant_rate=100.0),
            config={"price_mode": "FLOAT", "float_offset_pct": 2.5},
        )
        ad = manager.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        params = exchange.session("acc-1").created_params[0]
        assert ad.price == 102.5
        assert params["priceType"] == "1"
        assert params["premium"] == "2.5"


class TestCapacity:
    """Test per-account caps and round-robin selection"""

    def test_cap_of_one_allows_exactly_one_ad(self, exchange, clock, store):
        """Two payouts on a single account with cap 1: one ad, one capacity error"""
        alerts = Mock()
        manager = AdvertisementManager(_pool(exchange, clock, 1), store, ExchangeRateManager(), alerts=alerts)

        manager.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1111")))
        with pytest.raises(CapacityError):
            manager.create_for_payout(store.upsert_payout(Payout(amount=2000.0, wallet="2222")))

        assert len(store.live_advertisements()) == 1
        assert manager.pool.get_account("acc-1").active_ad_count == 1
        alerts.notify.assert_called_once()

    def test_round_robin_across_accounts(self, exchange, clock, store):
        manager = AdvertisementManager(_pool(exchange, clock, 2, 2), store, ExchangeRateManager())
        used = [
            manager.create_for_payout(store.upsert_payout(Payout(amount=100.0 * (i + 1), wallet="1111"))).account_id
            for i in range(4)
        ]
        assert used == ["acc-1", "acc-2", "acc-1", "acc-2"]

    def test_concurrent_creation_never_exceeds_cap(self, exchange, clock, store):
        manager = AdvertisementManager(_pool(exchange, clock, 2, 1), store, ExchangeRateManager())
        payouts = [store.upsert_payout(Payout(amount=100.0 + i, wallet="1111")) for i in range(8)]

        def attempt(payout):
            try:
                return manager.create_for_payout(payout)
            except CapacityError:
                return None

        with ThreadPoolExecutor(max_workers=8) as executor:
            created = [ad for ad in executor.map(attempt, payouts) if ad is not None]

        assert len(created) == 3
        for account in manager.pool.accounts():
            live = store.live_advertisements(account.account_id)
            assert len(live) == account.active_ad_count <= account.max_active_ads

    def test_inactive_accounts_are_skipped(self, exchange, clock, store):
        pool = _pool(exchange, clock, 2, 2)
        pool.deactivate("acc-1", "revoked")
        manager = AdvertisementManager(pool, store, ExchangeRateManager())
        ad = manager.create_for_payout(store.upsert_payout(Payout(amount=100.0, wallet="1111")))
        assert ad.account_id == "acc-2"

    def test_business_rejection_releases_slot(self, ads, store, exchange, pool):
        exchange.session("acc-1").fail("create_ad", ExchangeAPIError(ErrorKind.BUSINESS, "insufficient balance"))
        payout = store.upsert_payout(Payout(amount=1000.0, wallet="1234"))

        with pytest.raises(AdCreationError) as excinfo:
            ads.create_for_payout(payout)

        assert excinfo.value.account_id == "acc-1"
        assert excinfo.value.kind is ErrorKind.BUSINESS
        assert pool.get_account("acc-1").active_ad_count == 0
        assert store.live_advertisements() == []

    def test_unexpected_failure_releases_slot(self, exchange, clock, store):
        """A cap-1 account stays usable after a pricing failure nobody classified"""
        rates = Mock()
        rates.get_rate.side_effect = RuntimeError("rate feed down")
        manager = AdvertisementManager(_pool(exchange, clock, 1), store, rates)
        payout = store.upsert_payout(Payout(amount=1000.0, wallet="1234"))

        with pytest.raises(RuntimeError):
            manager.create_for_payout(payout)
        assert manager.pool.get_account("acc-1").active_ad_count == 0

        rates.get_rate.side_effect = None
        rates.get_rate.return_value = 90.0
        ad = manager.create_for_payout(payout)
        assert ad.account_id == "acc-1"
        assert manager.pool.get_account("acc-1").active_ad_count == 1

    def test_missing_payment_method_is_creation_error(self, ads, store, exchange, pool):
        exchange.session("acc-1").payment_methods = []
        with pytest.raises(AdCreationError):
            ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        assert pool.get_account("acc-1").active_ad_count == 0


class TestToggleAndWithdraw:
    def test_withdraw_is_idempotent(self, ads, store, exchange, pool, events_log):
        ad = ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))

        ads.withdraw(ad.id, reason="completed")
        ads.withdraw(ad.id, reason="completed")

        assert store.get_advertisement(ad.id).status == AdStatus.DELETED.value
        assert pool.get_account("acc-1").active_ad_count == 0
        assert exchange.session("acc-1").calls.count("cancel_ad") == 1
        assert [name for name, _ in events_log].count(events.ADVERTISEMENT_DELETED) == 1

    def test_withdraw_of_missing_exchange_ad_still_deletes(self, ads, store, exchange, pool):
        ad = ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        exchange.session("acc-1").ads.clear()

        ads.withdraw(ad.id)

        assert store.get_advertisement(ad.id).status == AdStatus.DELETED.value

    def test_transient_withdraw_failure_raises(self, ads, store, exchange):
        ad = ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        exchange.session("acc-1").fail("cancel_ad", ExchangeAPIError(ErrorKind.TRANSIENT, "503"), times=5)

        with pytest.raises(ExchangeAPIError):
            ads.withdraw(ad.id)

        assert store.get_advertisement(ad.id).status == AdStatus.ONLINE.value

    def test_toggle_offline_and_back(self, ads, store, pool, events_log):
        ad = ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))

        ads.set_online(ad.id, False)
        assert store.get_advertisement(ad.id).status == AdStatus.OFFLINE.value
        assert pool.get_account("acc-1").active_ad_count == 0

        ads.set_online(ad.id, True)
        assert store.get_advertisement(ad.id).status == AdStatus.ONLINE.value
        assert pool.get_account("acc-1").active_ad_count == 1
        assert [name for name, _ in events_log].count(events.ADVERTISEMENT_TOGGLED) == 2

    def test_deleted_ad_cannot_be_toggled(self, ads, store):
        ad = ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        ads.withdraw(ad.id)
        with pytest.raises(ValueError):
            ads.set_online(ad.id, True)


class TestReconcile:
    def test_counts_follow_exchange_but_never_drop_below_store(self, ads, store, exchange, pool):
        ads.create_for_payout(store.upsert_payout(Payout(amount=1000.0, wallet="1234")))
        session = exchange.session("acc-1")

        # Exchange reports an extra online ad created outside the engine
        session.create_ad({"price": "90", "quantity": "10"})
        assert ads.reconcile_counts() == {"acc-1": 2}

        # Exchange lists nothing; the store still knows one live ad
        session.ads.clear()
        assert ads.reconcile_counts() == {"acc-1": 1}
