"""
Exchange rate source for advertisement pricing.

Modes:
- constant: operator-set rate (default 85.0 fiat per asset unit)
- automatic: market rate from a pluggable source, cached; falls back to the
  last known (or constant) rate when the source fails
"""

import logging
import statistics
import threading
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

MODE_CONSTANT = "constant"
MODE_AUTOMATIC = "automatic"

RateSource = Callable[[], float]
RateListener = Callable[[float], None]


class ExchangeRateManager:
    """Current fiat/asset rate used to price advertisements."""

    def __init__(
        self,
        mode: str = MODE_CONSTANT,
        constant_rate: float = 85.0,
        source: Optional[RateSource] = None,
        cache_seconds: float = 300.0,
    ):
        if constant_rate <= 0:
            raise ValueError("Exchange rate must be positive")
        self._mode = MODE_CONSTANT
        self._constant_rate = float(constant_rate)
        self._source = source
        self._cache_seconds = cache_seconds
        self._cached_rate: Optional[float] = None
        self._cached_at: Optional[float] = None
        self._listeners: List[RateListener] = []
        self._lock = threading.Lock()
        self.set_mode(mode)

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        if mode not in (MODE_CONSTANT, MODE_AUTOMATIC):
            raise ValueError(f"Invalid mode: {mode}. Must be '{MODE_CONSTANT}' or '{MODE_AUTOMATIC}'")
        if mode == MODE_AUTOMATIC and self._source is None:
            raise ValueError("automatic mode requires a rate source")
        previous = self._mode
        self._mode = mode
        if previous != mode:
            logger.info(f"Exchange rate mode changed from {previous} to {mode}")

    def set_source(self, source: RateSource) -> None:
        with self._lock:
            self._source = source
            self._cached_at = None

    def set_rate(self, rate: float) -> None:
        """Set the constant rate and notify listeners."""
        if rate <= 0:
            raise ValueError("Exchange rate must be positive")
        with self._lock:
            self._constant_rate = float(rate)
            listeners = list(self._listeners)
        logger.info(f"Exchange rate updated to {rate}")
        for listener in listeners:
            try:
                listener(rate)
            except Exception as exc:
                logger.error(f"Rate listener failed: {exc}")

    def on_rate_update(self, listener: RateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def get_rate(self) -> float:
        if self._mode == MODE_CONSTANT:
            return self._constant_rate

        with self._lock:
            fresh = self._cached_at is not None and (time.monotonic() - self._cached_at) < self._cache_seconds
            if fresh and self._cached_rate:
                return self._cached_rate
            source = self._source

        try:
            rate = float(source())
            if rate <= 0:
                raise ValueError(f"non-positive market rate {rate}")
        except Exception as exc:
            fallback = self._cached_rate or self._constant_rate
            logger.warning(f"Automatic rate fetch failed ({exc}); using {fallback}")
            return fallback

        with self._lock:
            self._cached_rate = rate
            self._cached_at = time.monotonic()
        logger.debug(f"Market rate refreshed: {rate}")
        return rate

    def float_price(self, offset_pct: float) -> float:
        """Market rate adjusted by a premium/discount percentage"""
        return round(self.get_rate() * (1 + offset_pct / 100.0), 2)

    def status(self) -> dict:
        return {
            "mode": self._mode,
            "constant_rate": self._constant_rate,
            "cached_rate": self._cached_rate,
        }


def median_price(prices: List[float], take: int = 5) -> float:
    """Median of the best ``take`` prices; raises ValueError when empty."""
    usable = [p for p in prices if p and p > 0][:take]
    if not usable:
        raise ValueError("no market prices available")
    return float(statistics.median(usable))
