"""Prometheus-backed metrics hooks for polling tasks, exchange calls and reconciliation."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "p2p_"


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Plain in-process counters are kept alongside so ``snapshot()`` works
    even when the exporter is disabled.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._last_cycle_seconds: Dict[str, float] = {}
        self.__class__._initialized = True

        if not self._enabled:
            self._cycle_counter = None
            self._cycle_summary = None
            self._api_latency_summary = None
            self._api_errors_counter = None
            self._transactions_gauge = None
            self._evidence_counter = None
            self._chat_replies_counter = None
            self._active_ads_gauge = None
            self._clock_offset_gauge = None
            return

        self._cycle_counter = Counter(
            "p2p_poll_cycles_total",
            "Polling task cycles by task and outcome",
            labelnames=("task", "status"),
        )
        self._cycle_summary = Summary(
            "p2p_poll_cycle_duration_seconds",
            "Duration of a polling task cycle",
            labelnames=("task",),
        )
        self._api_latency_summary = Summary(
            "p2p_exchange_api_latency_seconds",
            "Latency of exchange API calls",
            labelnames=("endpoint", "status"),
        )
        self._api_errors_counter = Counter(
            "p2p_exchange_api_errors_total",
            "Exchange API failures by error kind",
            labelnames=("kind",),
        )
        self._transactions_gauge = Gauge(
            "p2p_transactions",
            "Transactions currently in each status",
            labelnames=("status",),
        )
        self._evidence_counter = Counter(
            "p2p_evidence_total",
            "Payment evidence processed by outcome",
            labelnames=("outcome",),
        )
        self._chat_replies_counter = Counter(
            "p2p_chat_replies_total",
            "Incoming chat messages by automation outcome",
            labelnames=("outcome",),
        )
        self._active_ads_gauge = Gauge(
            "p2p_active_ads",
            "Active advertisements per account",
            labelnames=("account",),
        )
        self._clock_offset_gauge = Gauge(
            "p2p_clock_offset_ms",
            "Exchange clock offset in milliseconds",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2]
        for port in ports_to_try:
            try:
                start_http_server(port)
            except OSError:
                logger.debug("Port %s in use, trying next port...", port)
                continue
            self._started = True
            if port != self._port:
                logger.warning("Port %s in use, bound metrics exporter to %s instead", self._port, port)
                self._port = port
            logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
            return

        self._enabled = False
        logger.error("Metrics exporter disabled: ports %s all in use", ports_to_try)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, family: str, label: str) -> None:
        with self._lock:
            self._counts[family][label] += 1

    def record_cycle(self, task: str, status: str, duration: float) -> None:
        self._bump("cycles", f"{task}:{status}")
        with self._lock:
            self._last_cycle_seconds[task] = duration
        if self._cycle_counter is not None:
            self._cycle_counter.labels(task=task, status=status).inc()
            self._cycle_summary.labels(task=task).observe(max(duration, 0.0))

    def record_api_call(self, endpoint: str, duration: float, status: str) -> None:
        if self._api_latency_summary is not None:
            self._api_latency_summary.labels(endpoint=endpoint, status=status).observe(max(duration, 0.0))

    def record_api_error(self, kind: str) -> None:
        self._bump("api_errors", kind)
        if self._api_errors_counter is not None:
            self._api_errors_counter.labels(kind=kind).inc()

    def record_transaction_counts(self, counts: Dict[str, int]) -> None:
        if self._transactions_gauge is None:
            return
        for status, count in counts.items():
            self._transactions_gauge.labels(status=status).set(count)

    def record_evidence(self, outcome: str) -> None:
        self._bump("evidence", outcome)
        if self._evidence_counter is not None:
            self._evidence_counter.labels(outcome=outcome).inc()

    def record_chat_reply(self, outcome: str) -> None:
        self._bump("chat", outcome)
        if self._chat_replies_counter is not None:
            self._chat_replies_counter.labels(outcome=outcome).inc()

    def record_active_ads(self, account_id: str, count: int) -> None:
        if self._active_ads_gauge is not None:
            self._active_ads_gauge.labels(account=account_id).set(count)

    def record_clock_offset(self, offset_ms: int) -> None:
        if self._clock_offset_gauge is not None:
            self._clock_offset_gauge.set(offset_ms)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            data = {family: dict(values) for family, values in self._counts.items()}
            data["last_cycle_seconds"] = dict(self._last_cycle_seconds)
        return data
