"""
Exchange Clock Sync

Keeps a millisecond offset between the local clock and the exchange server
clock so signed requests carry timestamps inside the exchange recv window.

Usage:
    clock = ClockSync(base_url="https://api.bybit.com")
    clock.force_sync()

    # Signers read the corrected time
    ts = clock.now_ms()

    # Periodic task
    clock.sync_if_stale()

Semantics:
- offset_ms = server_ms - local_ms, measured against the midpoint of the request
  round trip
- Concurrent syncs are allowed; last writer wins
- A failed sync keeps the previous offset and reports not-synchronized only
  if no sync ever succeeded
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from core.p2p_schemas import ApiEnvelope, ServerTime

logger = logging.getLogger(__name__)


class ClockSync:
    """
    Exchange clock offset tracker.

    One instance is shared by every account session; it is injected, never
    looked up globally.
    """

    TIME_PATH = "/v5/market/time"
    TIMEOUT_SECONDS = 5.0
    RESYNC_SECONDS = 60.0

    def __init__(
        self,
        base_url: str = "https://api.bybit.com",
        timeout: float = TIMEOUT_SECONDS,
        resync_seconds: float = RESYNC_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.resync_seconds = resync_seconds
        self._session = session or requests.Session()

        self._lock = threading.Lock()
        self._offset_ms = 0
        self._round_trip_ms: Optional[float] = None
        self._synchronized = False
        self._last_sync_monotonic: Optional[float] = None
        self._last_sync_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._sync_count = 0
        self._failure_count = 0

    def _fetch_server_ms(self) -> int:
        """
        Query the exchange server time.

        Raises:
            requests.RequestException, ValueError, ValidationError
        """
        response = self._session.get(f"{self.base_url}{self.TIME_PATH}", timeout=self.timeout)
        response.raise_for_status()
        envelope = ApiEnvelope.model_validate(response.json())
        if not envelope.ok:
            raise ValueError(f"server time rejected: retCode={envelope.ret_code} {envelope.ret_msg}")
        return ServerTime.model_validate(envelope.result or {}).to_ms()

    def force_sync(self, verbose: bool = False) -> bool:
        """
        Query the exchange time now and replace the offset.

        Args:
            verbose: Log the measured offset at INFO instead of DEBUG

        Returns:
            True if the sync succeeded
        """
        started_ms = time.time() * 1000.0
        try:
            server_ms = self._fetch_server_ms()
        except (requests.RequestException, ValueError, ValidationError) as exc:
            with self._lock:
                self._last_error = str(exc)
                self._failure_count += 1
                keep = self._offset_ms
            logger.warning(f"Clock sync failed, keeping offset {keep}ms: {exc}")
            return False

        finished_ms = time.time() * 1000.0
        local_mid = (started_ms + finished_ms) / 2.0
        offset = int(round(server_ms - local_mid))
        round_trip = finished_ms - started_ms

        with self._lock:
            self._offset_ms = offset
            self._round_trip_ms = round_trip
            self._synchronized = True
            self._last_sync_monotonic = time.monotonic()
            self._last_sync_at = datetime.now(timezone.utc)
            self._last_error = None
            self._sync_count += 1

        log = logger.info if verbose else logger.debug
        log(f"Clock synced: offset={offset}ms round_trip={round_trip:.1f}ms")
        return True

    def sync_if_stale(self, max_age_seconds: Optional[float] = None) -> bool:
        """Re-sync only if the last successful sync is older than the window."""
        max_age = self.resync_seconds if max_age_seconds is None else max_age_seconds
        with self._lock:
            last = self._last_sync_monotonic
        if last is not None and (time.monotonic() - last) < max_age:
            return True
        return self.force_sync()

    def get_offset(self) -> int:
        with self._lock:
            return self._offset_ms

    def is_synchronized(self) -> bool:
        with self._lock:
            return self._synchronized

    def now_ms(self) -> int:
        """Local time corrected by the current offset, in epoch milliseconds"""
        return int(time.time() * 1000) + self.get_offset()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "synchronized": self._synchronized,
                "offset_ms": self._offset_ms,
                "round_trip_ms": round(self._round_trip_ms, 1) if self._round_trip_ms is not None else None,
                "last_sync": self._last_sync_at.isoformat() if self._last_sync_at else None,
                "last_error": self._last_error,
                "sync_count": self._sync_count,
                "failure_count": self._failure_count,
            }

    def close(self) -> None:
        self._session.close()
