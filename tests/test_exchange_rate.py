"""
Tests for ExchangeRateManager and market price discovery
"""
from unittest.mock import MagicMock

import pytest

from core.exchange_rate import MODE_AUTOMATIC, MODE_CONSTANT, ExchangeRateManager, median_price


class TestConstantMode:
    def test_default_rate(self):
        assert ExchangeRateManager().get_rate() == 85.0

    def test_set_rate_notifies_listeners(self):
        rates = ExchangeRateManager(constant_rate=90.0)
        seen = []
        rates.on_rate_update(seen.append)

        rates.set_rate(92.5)

        assert rates.get_rate() == 92.5
        assert seen == [92.5]

    def test_failing_listener_does_not_block_update(self):
        rates = ExchangeRateManager()
        rates.on_rate_update(MagicMock(side_effect=RuntimeError("listener down")))

        rates.set_rate(91.0)

        assert rates.get_rate() == 91.0

    @pytest.mark.parametrize("rate", [0, -5])
    def test_rejects_non_positive(self, rate):
        with pytest.raises(ValueError):
            ExchangeRateManager(constant_rate=rate)
        with pytest.raises(ValueError):
            ExchangeRateManager().set_rate(rate)

    def test_float_price(self):
        assert ExchangeRateManager(constant_rate=100.0).float_price(2.5) == 102.5


class TestAutomaticMode:
    def test_requires_source(self):
        with pytest.raises(ValueError):
            ExchangeRateManager(mode=MODE_AUTOMATIC)
        with pytest.raises(ValueError):
            ExchangeRateManager(mode="manual")

    def test_source_result_is_cached(self):
        source = MagicMock(return_value=95.0)
        rates = ExchangeRateManager(mode=MODE_AUTOMATIC, source=source, cache_seconds=300)

        assert rates.get_rate() == 95.0
        assert rates.get_rate() == 95.0
        assert source.call_count == 1

    def test_failure_falls_back_to_last_known(self):
        source = MagicMock(side_effect=[96.0, RuntimeError("exchange down")])
        rates = ExchangeRateManager(mode=MODE_AUTOMATIC, constant_rate=85.0, source=source, cache_seconds=0)

        assert rates.get_rate() == 96.0
        assert rates.get_rate() == 96.0

    def test_failure_without_history_uses_constant(self):
        rates = ExchangeRateManager(mode=MODE_AUTOMATIC, constant_rate=85.0,
                                    source=MagicMock(return_value=0.0), cache_seconds=0)

        assert rates.get_rate() == 85.0

    def test_switch_back_to_constant(self):
        rates = ExchangeRateManager(mode=MODE_AUTOMATIC, source=lambda: 99.0)
        rates.set_mode(MODE_CONSTANT)

        assert rates.get_rate() == 85.0
        assert rates.status()["mode"] == MODE_CONSTANT


class TestMedianPrice:
    def test_median_of_best(self):
        assert median_price([90.0, 91.0, 95.0, 200.0], take=3) == 91.0

    def test_ignores_zero_prices(self):
        assert median_price([0.0, 90.0, 92.0]) == 91.0

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            median_price([])
