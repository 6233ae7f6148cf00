"""
P2P Engine Runner: Main Loop

Owns the polling schedules and the operator control surface.

Tasks (each on its own thread and interval):
1. orders     - poll pending orders per account, ingest, sync chats, time out
2. chat       - answer unprocessed counterparty messages
3. evidence   - match submitted payment evidence, drain the retry queue
4. ads        - post advertisements for payouts still waiting for one
5. clock      - resync the exchange clock offset
6. reconcile  - refresh per-account active-ad counters from the exchange

A failing cycle is logged, counted and stored as the task's last error; it
never stops the task or the process.
"""

import logging
import queue
import signal
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from core.account_pool import AccountPool, RetryPolicy
from core.advertisements import AdvertisementManager
from core.audit_log import AuditLogger
from core.chat_automation import ChatAutomation
from core.events import EventBus
from core.evidence_matcher import EvidenceMatcher, MatchResult
from core.exceptions import AdCreationError, CapacityError, ErrorKind
from core.exchange_p2p import SIDE_BUY, SIDE_SELL
from core.exchange_rate import MODE_AUTOMATIC, ExchangeRateManager, median_price
from core.models import (
    AdSide,
    AdStatus,
    ExchangeAccount,
    Payout,
    PaymentEvidence,
    PayoutStatus,
    ResponseGroup,
)
from core.order_state import TransactionStateMachine
from core.order_tracker import OrderTracker
from infra.alerting import AlertService, AlertSeverity
from infra.clock_sync import ClockSync
from infra.healthcheck import HealthServer
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.rate_limiter import RateLimiter
from infra.state_store import TradeStore
from tools.config_validator import AppSchema, load_app_config, validate_config

logger = logging.getLogger(__name__)

EvidenceSource = Callable[[], Iterable[Union[Dict[str, Any], PaymentEvidence]]]

TASK_ORDER = ("clock", "reconcile", "orders", "chat", "evidence", "ads")


class PeriodicTask:
    """
    One polling schedule on its own daemon thread.

    ``run_once`` is also callable directly (``--once`` mode and tests).
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], Any], metrics: Optional[MetricsRecorder] = None):
        self.name = name
        self.interval = float(interval)
        self.fn = fn
        self.metrics = metrics

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_lock = threading.Lock()
        self.runs = 0
        self.failures = 0
        self.last_run: Optional[datetime] = None
        self.last_duration: Optional[float] = None
        self.last_error: Optional[str] = None
        self.last_result: Any = None

    def run_once(self) -> bool:
        """Run one cycle; returns False if it raised."""
        with self._cycle_lock:
            started = time.monotonic()
            status = "ok"
            try:
                self.last_result = self.fn()
                self.last_error = None
            except Exception as exc:
                status = "error"
                self.failures += 1
                self.last_error = f"{type(exc).__name__}: {exc}"
                logger.error(f"Task {self.name} cycle failed: {exc}", exc_info=True)
            finally:
                duration = time.monotonic() - started
                self.runs += 1
                self.last_run = datetime.now(timezone.utc)
                self.last_duration = duration
                if self.metrics is not None:
                    self.metrics.record_cycle(self.name, status, duration)
            return status == "ok"

    def _loop(self) -> None:
        logger.info(f"Task {self.name} started (interval={self.interval}s)")
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval)
        logger.info(f"Task {self.name} stopped")

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the in-flight cycle to finish; True if the thread exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"Task {self.name} did not stop within {timeout}s")
            return False
        self._thread = None
        return True

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def set_interval(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"Interval for {self.name} must be positive")
        self.interval = float(interval)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "interval_seconds": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_duration_seconds": round(self.last_duration, 3) if self.last_duration is not None else None,
            "last_error": self.last_error,
        }


def configure_logging(log_cfg: Optional[Dict[str, Any]]) -> None:
    log_cfg = log_cfg or {}
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = log_cfg.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class Orchestrator:
    """
    P2P engine orchestrator.

    Responsibilities:
    - Wire the account pool, managers and matcher from one config dict
    - Run the periodic tasks and stop them cleanly
    - Expose the operator control surface (status, config, manual resolution)
    """

    def __init__(
        self,
        config: Dict[str, Any],
        session_factory=None,
        clock: Optional[ClockSync] = None,
        evidence_source: Optional[EvidenceSource] = None,
    ):
        """
        Args:
            config: Raw app config (validated and defaulted through AppSchema)
            session_factory: ExchangeAccount -> session; defaults to P2PSession
            clock: Shared clock; built from config when omitted
            evidence_source: Callable polled by the evidence task
        """
        self.config = AppSchema.model_validate(config).model_dump()
        cfg = self.config
        monitoring = cfg["monitoring"]

        self.metrics = MetricsRecorder(enabled=monitoring["metrics_enabled"], port=monitoring["metrics_port"])
        self.alerts = AlertService.from_config(monitoring["alerts"])
        self.event_bus = EventBus()
        self.store = TradeStore(state_file=cfg["store"]["state_file"])
        self.audit = AuditLogger(audit_file=cfg["store"]["audit_file"])

        exchange = cfg["exchange"]
        self.clock = clock or ClockSync(
            base_url=exchange["base_url"],
            timeout=cfg["clock"]["timeout_seconds"],
            resync_seconds=cfg["clock"]["resync_seconds"],
        )
        retry = cfg["retry"]
        self.pool = AccountPool(
            [ExchangeAccount(**account) for account in cfg["accounts"]],
            self.clock,
            base_url=exchange["base_url"],
            recv_window=exchange["recv_window_ms"],
            timeout=exchange["timeout_seconds"],
            retry_policy=RetryPolicy(retry["max_attempts"], retry["base_delay_seconds"], retry["max_delay_seconds"]),
            rate_limiter=RateLimiter(cfg["rate_limit"]["requests_per_second"], cfg["rate_limit"]["burst"]),
            alerts=self.alerts,
            metrics=self.metrics,
            session_factory=session_factory,
        )

        rates = cfg["rates"]
        self.rates = ExchangeRateManager(
            mode=rates["mode"],
            constant_rate=rates["constant_rate"],
            source=self._market_rate if rates["mode"] == MODE_AUTOMATIC else None,
            cache_seconds=rates["cache_seconds"],
        )
        self.state_machine = TransactionStateMachine(self.store, self.event_bus, self.metrics)
        self.ads = AdvertisementManager(
            self.pool, self.store, self.rates, self.event_bus, self.alerts, self.metrics, cfg["advertisements"]
        )
        self.chat = ChatAutomation(
            self.pool,
            self.store,
            self.state_machine,
            response_groups=self._response_groups(cfg["chat"]),
            event_bus=self.event_bus,
            metrics=self.metrics,
            config=cfg["chat"],
        )
        self.tracker = OrderTracker(
            self.pool, self.store, self.state_machine, self.ads, self.chat,
            event_bus=self.event_bus, metrics=self.metrics, config=cfg["orders"],
        )
        self.matcher = EvidenceMatcher(
            self.store,
            self.state_machine,
            pool=self.pool,
            audit=self.audit,
            alerts=self.alerts,
            event_bus=self.event_bus,
            metrics=self.metrics,
            config=cfg["matching"],
        )

        self._evidence_queue: "queue.Queue[PaymentEvidence]" = queue.Queue()
        self._evidence_source = evidence_source
        self._lifecycle_lock = threading.Lock()
        self._shutdown_event = threading.Event()
        self._running = False
        self._started_at: Optional[datetime] = None
        self.health_server: Optional[HealthServer] = None
        self.instance_lock: Optional[SingleInstanceLock] = None

        self.tasks: Dict[str, PeriodicTask] = self._build_tasks(cfg["intervals"])
        logger.info(
            f"Initialized Orchestrator: {len(self.pool.accounts())} accounts "
            f"({len(self.pool.active_accounts())} active), rate mode={self.rates.mode}"
        )

    @classmethod
    def from_config_dir(cls, config_dir: str = "config", **kwargs) -> "Orchestrator":
        """Validate, configure logging, take the instance lock and build."""
        validation_errors = validate_config(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        config = load_app_config(config_dir)
        configure_logging(config.get("logging"))
        logger.info(f"Starting P2P engine with config from {config_dir}")

        instance_lock = SingleInstanceLock("p2p-engine", lock_dir="data")
        if not instance_lock.acquire():
            logger.error("=" * 80)
            logger.error("ANOTHER INSTANCE IS ALREADY RUNNING")
            logger.error("=" * 80)
            logger.error("Two engines on the same accounts would double every chat reply.")
            logger.error(f"If no other instance is running, remove {instance_lock.lock_file}")
            logger.error("=" * 80)
            raise RuntimeError("Another P2P engine instance is already running")
        logger.info("✅ Single-instance lock acquired")

        orchestrator = cls(config, **kwargs)
        orchestrator.instance_lock = instance_lock
        return orchestrator

    # ----- wiring -----

    @staticmethod
    def _response_groups(chat_cfg: Dict[str, Any]) -> List[ResponseGroup]:
        groups = []
        for raw in chat_cfg.get("response_groups") or []:
            templates = [
                {**t, "id": t.get("id") or f"{raw['name']}/{t['name']}"} for t in raw.get("templates") or []
            ]
            groups.append(ResponseGroup.from_dict({**raw, "id": raw.get("id") or raw["name"], "templates": templates}))
        return groups

    def _build_tasks(self, intervals: Dict[str, float]) -> Dict[str, PeriodicTask]:
        handlers = {
            "clock": self._clock_cycle,
            "reconcile": self.ads.reconcile_counts,
            "orders": self._orders_cycle,
            "chat": self.chat.process_unprocessed_messages,
            "evidence": self._evidence_cycle,
            "ads": self.advertise_pending_payouts,
        }
        return {
            name: PeriodicTask(name, intervals[f"{name}_seconds"], handlers[name], self.metrics)
            for name in TASK_ORDER
        }

    def _market_rate(self) -> float:
        """Median of the best competing market prices on the first active account."""
        active = self.pool.active_accounts()
        if not active:
            raise ValueError("no active account for market rate discovery")
        side = SIDE_SELL if self.ads.side == AdSide.SELL.value else SIDE_BUY
        items = self.pool.execute(
            active[0].account_id, "list_online_ads", self.ads.asset, self.ads.fiat, side
        ).unwrap()
        return median_price([item.price for item in items], take=self.config["rates"]["market_sample_size"])

    # ----- cycles -----

    def _clock_cycle(self) -> Dict[str, Any]:
        if not self.clock.force_sync():
            raise RuntimeError(f"clock sync failed: {self.clock.status()['last_error']}")
        offset = self.clock.get_offset()
        self.metrics.record_clock_offset(offset)
        return {"offset_ms": offset}

    def _orders_cycle(self) -> Dict[str, Dict[str, Any]]:
        results = self.tracker.poll_orders()
        self.metrics.record_transaction_counts(self.store.transaction_counts())
        failed = [account_id for account_id, r in results.items() if not r["ok"]]
        if results and len(failed) == len(results):
            raise RuntimeError(f"order polling failed on every account: {', '.join(failed)}")
        return results

    def _evidence_cycle(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        if self._evidence_source is not None:
            for item in self._evidence_source() or []:
                self.submit_evidence(item)
        failed: List[PaymentEvidence] = []
        while True:
            try:
                evidence = self._evidence_queue.get_nowait()
            except queue.Empty:
                break
            try:
                result = self.matcher.match(evidence)
            except Exception as exc:
                logger.error(f"Matching evidence {evidence.evidence_id} failed; requeued: {exc}", exc_info=True)
                self.audit.record("error", evidence, reason=f"{type(exc).__name__}: {exc}")
                failed.append(evidence)
                counts["error"] = counts.get("error", 0) + 1
                continue
            counts[result.status] = counts.get(result.status, 0) + 1
        for evidence in failed:
            self._evidence_queue.put(evidence)
        for key, value in self.matcher.process_retry_queue().items():
            counts[f"retry_{key}"] = value
        return counts

    def advertise_pending_payouts(self) -> Dict[str, int]:
        """
        Post an advertisement for every pending payout that has none.

        Stops at the first CapacityError; a business rejection is retried once
        on the remaining accounts.
        """
        counts = {"created": 0, "failed": 0, "capacity": 0}
        advertised = {
            ad.payout_id
            for ad in self.store.advertisements_by_status(AdStatus.ONLINE.value, AdStatus.OFFLINE.value)
            if ad.payout_id
        }
        for payout in self.store.open_payouts():
            if payout.status != PayoutStatus.PENDING.value or payout.id in advertised:
                continue
            if self.store.is_blacklisted(payout.id):
                continue
            exclude: List[str] = []
            while True:
                try:
                    self.ads.create_for_payout(payout, exclude=exclude)
                    counts["created"] += 1
                    break
                except CapacityError as exc:
                    logger.warning(f"Advertising paused: {exc}")
                    counts["capacity"] += 1
                    return counts
                except AdCreationError as exc:
                    if exc.kind == ErrorKind.BUSINESS and exc.account_id not in exclude:
                        exclude.append(exc.account_id)
                        logger.info(f"Retrying payout {payout.id} without {exc.account_id}: {exc.reason}")
                        continue
                    logger.warning(f"Advertisement for payout {payout.id} failed: {exc}")
                    counts["failed"] += 1
                    break
        return counts

    # ----- lifecycle -----

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._running:
                logger.debug("Orchestrator already running")
                return
            if not self.clock.force_sync(verbose=True):
                logger.warning("Initial clock sync failed; signed calls will use a zero offset until resync")
            self.metrics.start()
            self._start_health_server()
            for name in TASK_ORDER:
                self.tasks[name].start()
            self._running = True
            self._started_at = datetime.now(timezone.utc)
            self._shutdown_event.clear()
        logger.info("Orchestrator started")

    def stop(self, timeout: float = 30.0) -> bool:
        """
        Stop every task, wait for in-flight cycles, then close exchange sessions.

        Returns:
            True if every task exited within the timeout
        """
        with self._lifecycle_lock:
            if not self._running:
                return True
            for task in self.tasks.values():
                task.request_stop()
            deadline = time.monotonic() + timeout
            clean = True
            for task in self.tasks.values():
                clean = task.join(max(deadline - time.monotonic(), 0.0)) and clean
            self.pool.close()
            self.store.save()
            self._running = False
        if clean:
            logger.info("Orchestrator stopped")
        else:
            logger.warning("Orchestrator stopped with tasks still running")
        return clean

    def restart(self, timeout: float = 30.0) -> None:
        logger.info("Restarting orchestrator")
        self.stop(timeout)
        self.start()

    def shutdown(self) -> None:
        """Stop tasks and release process-level resources."""
        self.stop()
        self.pool.close()
        if self.health_server is not None:
            self.health_server.stop()
            self.health_server = None
        self.clock.close()
        if self.instance_lock is not None:
            self.instance_lock.release()
        self._shutdown_event.set()

    def run_once(self) -> Dict[str, Dict[str, Any]]:
        """Run every task once in dependency order."""
        for name in TASK_ORDER:
            self.tasks[name].run_once()
        return {name: self.tasks[name].status() for name in TASK_ORDER}

    def is_running(self) -> bool:
        return self._running

    def _start_health_server(self) -> None:
        monitoring = self.config["monitoring"]
        if not monitoring["healthcheck_enabled"] or self.health_server is not None:
            return
        server = HealthServer(monitoring["healthcheck_port"], self.health, self.status)
        try:
            server.start()
        except OSError as exc:
            logger.error(f"Health server failed to start on port {monitoring['healthcheck_port']}: {exc}")
            return
        self.health_server = server

    # ----- control surface -----

    def health(self) -> Dict[str, Any]:
        issues = []
        if not self._running:
            issues.append("orchestrator stopped")
        if not self.pool.active_accounts():
            issues.append("no active accounts")
        if not self.clock.is_synchronized():
            issues.append("clock not synchronized")
        return {
            "ok": not issues,
            "issues": issues,
            "tasks": {name: task.last_error is None for name, task in self.tasks.items()},
        }

    def status(self) -> Dict[str, Any]:
        return {
            "ok": self._running,
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "tasks": {name: task.status() for name, task in self.tasks.items()},
            "accounts": self.pool.status(),
            "clock": self.clock.status(),
            "rates": self.rates.status(),
            "transactions": self.state_machine.get_summary(),
            "orders": self.tracker.status(),
            "matching": self.matcher.status(),
            "store": self.store.summary(),
            "alerts": self.alerts.recent(),
            "metrics": self.metrics.snapshot(),
        }

    def update_config(
        self,
        intervals: Optional[Dict[str, float]] = None,
        matching: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Change polling intervals (``{"orders_seconds": 5}`` or ``{"orders": 5}``)
        and matching parameters at runtime.
        """
        for key, value in (intervals or {}).items():
            name = key[: -len("_seconds")] if key.endswith("_seconds") else key
            if name not in self.tasks:
                raise ValueError(f"Unknown polling task: {key}")
            self.tasks[name].set_interval(float(value))
            self.config["intervals"][f"{name}_seconds"] = float(value)
            logger.info(f"Interval for {name} set to {value}s")
        if matching:
            self.matcher.configure(matching)
            self.config["matching"].update(matching)

    def resolve_ambiguous(self, evidence_id: str, payout_id: str) -> MatchResult:
        return self.matcher.resolve_ambiguous(evidence_id, payout_id)

    def resolve_blacklist(self, blacklist_id: str, note: str = ""):
        return self.matcher.resolve_blacklist(blacklist_id, note)

    def resume_chat_automation(self, transaction_id: str) -> None:
        self.chat.resume_automation(transaction_id)

    def add_payout(
        self,
        amount: float,
        wallet: str,
        bank: str = "",
        currency: str = "RUB",
        recipient_name: Optional[str] = None,
    ) -> Payout:
        """Register a payout; the ads task advertises it on its next cycle."""
        if amount <= 0:
            raise ValueError("Payout amount must be positive")
        if not wallet:
            raise ValueError("Payout wallet is required")
        payout = self.store.upsert_payout(
            Payout(amount=float(amount), wallet=wallet, bank=bank, currency=currency, recipient_name=recipient_name)
        )
        logger.info(f"Payout {payout.id} added: {payout.amount:.2f} {currency} to {bank or '?'}")
        return payout

    def submit_evidence(self, evidence: Union[Dict[str, Any], PaymentEvidence]) -> str:
        """Queue evidence for the next evidence cycle; returns its evidence_id."""
        if not isinstance(evidence, PaymentEvidence):
            evidence = PaymentEvidence.from_dict(evidence)
        self._evidence_queue.put(evidence)
        return evidence.evidence_id

    def set_evidence_source(self, source: Optional[EvidenceSource]) -> None:
        self._evidence_source = source

    # ----- process -----

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after in-flight cycles")
        logger.warning("=" * 80)
        self._shutdown_event.set()

    def run_forever(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)
        self.start()
        try:
            self._shutdown_event.wait()
        finally:
            self.shutdown()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="P2P trade lifecycle and reconciliation engine")
    parser.add_argument("--once", action="store_true", help="Run every task once and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    orchestrator = Orchestrator.from_config_dir(args.config_dir)

    if args.once:
        orchestrator.clock.force_sync(verbose=True)
        for name, task in orchestrator.run_once().items():
            mark = "✅" if task["last_error"] is None else "❌"
            logger.info(f"{mark} {name}: {task['last_error'] or 'ok'}")
        orchestrator.shutdown()
    else:
        orchestrator.run_forever()


if __name__ == "__main__":
    main()
