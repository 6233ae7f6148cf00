"""
P2P Engine Core: Account Pool

Owns one warm signed session per exchange account and executes calls with
per-kind failure handling:

- TRANSIENT: exponential backoff with full jitter, bounded attempts
- CLOCK_DRIFT: one forced clock resync, then exactly one retry
- FATAL: account marked inactive, operator alerted, never retried
- BUSINESS: returned to the caller untouched

Accounts execute independently; a failing account never blocks another.
Per-account ordering (e.g. create-then-read) is the caller's responsibility,
``account_lock()`` is provided for it.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.exceptions import AccountUnavailable, ErrorKind, ExchangeAPIError, UnknownEntity
from core.exchange_p2p import P2PSession
from core.models import ExchangeAccount
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Outcome of a pooled exchange call."""
    ok: bool
    value: Any = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    code: Optional[int] = None
    attempts: int = 0

    def unwrap(self) -> Any:
        """Return the value or raise the failure as ExchangeAPIError"""
        if self.ok:
            return self.value
        raise ExchangeAPIError(self.error_kind or ErrorKind.BUSINESS, self.error or "failed", code=self.code)


class RetryPolicy:
    """
    Pure retry decisions: which kinds retry, how many times, how long to wait.

    Backoff uses full jitter: sleep = random(0, min(cap, base * 2^attempt)).
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0, max_delay: float = 30.0):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)

    def should_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """
        Args:
            kind: Failure kind of the attempt that just failed
            attempt: Attempts made so far (1-based)
        """
        return kind is ErrorKind.TRANSIENT and attempt < self.max_attempts

    def backoff_ceiling(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    def backoff(self, attempt: int) -> float:
        return random.uniform(0, self.backoff_ceiling(attempt))


SessionFactory = Callable[[ExchangeAccount], Any]


class AccountPool:
    """
    Pool of exchange accounts with lazily created, long-lived sessions.

    Usage:
        pool = AccountPool(accounts, clock)
        result = pool.execute("acc-1", "list_pending_orders")
        if result.ok:
            orders = result.value
    """

    def __init__(
        self,
        accounts: Iterable[ExchangeAccount],
        clock,
        base_url: str = "https://api.bybit.com",
        recv_window: int = 5000,
        timeout: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter=None,
        alerts=None,
        metrics=None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.clock = clock
        self.base_url = base_url
        self.recv_window = recv_window
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.alerts = alerts
        self.metrics = metrics
        self._session_factory = session_factory or self._default_session

        self._accounts: Dict[str, ExchangeAccount] = {}
        self._sessions: Dict[str, Any] = {}
        self._account_locks: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

        for account in accounts:
            self.add_account(account)

    def _default_session(self, account: ExchangeAccount) -> P2PSession:
        return P2PSession(
            api_key=account.api_key,
            api_secret=account.api_secret,
            clock=self.clock,
            base_url=self.base_url,
            recv_window=self.recv_window,
            timeout=self.timeout,
            proxy=account.proxy,
            metrics=self.metrics,
        )

    # ----- management -----

    def add_account(self, account: ExchangeAccount) -> None:
        with self._lock:
            if account.account_id in self._accounts:
                raise ValueError(f"Duplicate account id: {account.account_id}")
            self._accounts[account.account_id] = account
            self._account_locks[account.account_id] = threading.RLock()
        logger.info(f"Registered account {account.account_id} (active={account.is_active})")

    def get_account(self, account_id: str) -> ExchangeAccount:
        with self._lock:
            account = self._accounts.get(account_id)
        if account is None:
            raise UnknownEntity(f"account {account_id}")
        return account

    def accounts(self) -> List[ExchangeAccount]:
        with self._lock:
            return list(self._accounts.values())

    def active_accounts(self) -> List[ExchangeAccount]:
        return [a for a in self.accounts() if a.is_active]

    def account_lock(self, account_id: str) -> threading.RLock:
        with self._lock:
            lock = self._account_locks.get(account_id)
        if lock is None:
            raise UnknownEntity(f"account {account_id}")
        return lock

    def deactivate(self, account_id: str, reason: str) -> None:
        """Take an account out of rotation (credentials rejected)."""
        account = self.get_account(account_id)
        with self._lock:
            was_active = account.is_active
            account.is_active = False
            account.last_error = reason
            session = self._sessions.pop(account_id, None)
        if session is not None:
            session.close()
        if not was_active:
            return
        logger.error(f"Account {account_id} deactivated: {reason}")
        if self.alerts is not None:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Exchange account deactivated",
                f"{account_id}: {reason}",
                {"account_id": account_id},
            )

    def session_for(self, account_id: str):
        """Return the account's session, creating it on first use."""
        account = self.get_account(account_id)
        with self._lock:
            session = self._sessions.get(account_id)
            if session is None:
                session = self._session_factory(account)
                self._sessions[account_id] = session
                logger.debug(f"Opened session for {account_id}")
            return session

    # ----- execution -----

    def execute(self, account_id: str, operation: str, *args, **kwargs) -> ExecResult:
        """
        Run a session operation with retry/resync/deactivation handling.

        Args:
            account_id: Account to use
            operation: P2PSession method name (e.g. "create_ad")

        Returns:
            ExecResult; never raises for exchange failures
        """
        account = self.get_account(account_id)
        if not account.is_active:
            return ExecResult(ok=False, error_kind=ErrorKind.FATAL,
                              error=f"account {account_id} is inactive", attempts=0)

        session = self.session_for(account_id)
        call = getattr(session, operation)

        attempt = 0
        resynced = False
        while True:
            attempt += 1
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(account_id)
            try:
                value = call(*args, **kwargs)
            except ExchangeAPIError as exc:
                if self.metrics is not None:
                    self.metrics.record_api_error(exc.kind.value)

                if exc.kind is ErrorKind.CLOCK_DRIFT:
                    if not resynced:
                        resynced = True
                        logger.warning(f"{account_id}.{operation}: clock drift, forcing resync and retrying once")
                        self.clock.force_sync(verbose=True)
                        continue
                    return self._failure(account, exc, attempt)

                if exc.kind is ErrorKind.FATAL:
                    self.deactivate(account_id, str(exc))
                    return self._failure(account, exc, attempt)

                if self.retry_policy.should_retry(exc.kind, attempt):
                    delay = self.retry_policy.backoff(attempt - 1)
                    logger.warning(
                        f"{account_id}.{operation} failed ({exc}), "
                        f"attempt {attempt}/{self.retry_policy.max_attempts}; retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    continue

                if exc.kind is ErrorKind.TRANSIENT:
                    logger.error(f"{account_id}.{operation}: all {attempt} attempts failed: {exc}")
                return self._failure(account, exc, attempt)

            account.last_sync = datetime.now(timezone.utc)
            return ExecResult(ok=True, value=value, attempts=attempt)

    def _failure(self, account: ExchangeAccount, exc: ExchangeAPIError, attempts: int) -> ExecResult:
        if exc.kind is not ErrorKind.BUSINESS:
            account.last_error = str(exc)
        return ExecResult(
            ok=False,
            error_kind=exc.kind,
            error=exc.message,
            code=exc.code,
            attempts=attempts,
        )

    def require_active(self, account_id: str) -> ExchangeAccount:
        account = self.get_account(account_id)
        if not account.is_active:
            raise AccountUnavailable(f"account {account_id} is inactive")
        return account

    # ----- lifecycle -----

    def status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            connected = set(self._sessions)
            accounts = list(self._accounts.values())
        return {
            a.account_id: {**a.public_view(), "connected": a.account_id in connected}
            for a in accounts
        }

    def close(self) -> None:
        with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
        for account_id, session in sessions:
            try:
                session.close()
            except Exception as exc:  # pragma: no cover - best-effort shutdown
                logger.warning(f"Failed closing session for {account_id}: {exc}")
        logger.info(f"Closed {len(sessions)} exchange session(s)")
