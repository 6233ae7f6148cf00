"""Operator alerts (webhook) for events that need a human: deactivated accounts,
ambiguous or conflicting payment evidence, blacklisted payouts, exhausted ad capacity."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: Optional[str], default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        try:
            return cls[(value or "").strip().upper()]
        except KeyError:
            return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


@dataclass
class _Suppression:
    """Dedupe window of one alert fingerprint."""
    opened_at: float  # time.monotonic()
    suppressed: int = 0


class AlertService:
    """
    Webhook notifier for conditions the engine will not resolve on its own.

    Every notify() lands in the in-memory history served by /status, even
    when delivery is disabled or filtered. Identical alerts (severity, title
    and message) are delivered once per dedupe window.
    """

    HISTORY_LIMIT = 50

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._windows: Dict[str, _Suppression] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=self.HISTORY_LIMIT)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        """Build from the ``monitoring.alerts`` config section."""
        raw_config = raw_config or {}
        webhook_url = os.path.expandvars(raw_config.get("webhook_url") or "")
        if not webhook_url or "${" in webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env") or "ALERT_WEBHOOK_URL", "")

        return cls(AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record an alert and deliver it unless filtered or deduplicated.

        Returns:
            True if the alert was dispatched (posted or dry-run logged)
        """
        with self._lock:
            self._history.append({
                "severity": severity.name,
                "title": title,
                "message": message,
                "context": dict(context or {}),
                "at": time.time(),
            })

        if not self._enabled or severity.value < self._config.min_severity.value:
            return False
        if not self._open_window(self._fingerprint(severity, title, message), title):
            return False

        self._deliver(severity, title, message, context)
        return True

    def recent(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history)

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        return hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()

    def _open_window(self, fingerprint: str, title: str) -> bool:
        """False while an identical alert's dedupe window is still open."""
        now = time.monotonic()
        with self._lock:
            window = self._windows.get(fingerprint)
            if window is not None and now - window.opened_at <= self._config.dedupe_seconds:
                window.suppressed += 1
                logger.debug(f"Alert deduped: {title} ({window.suppressed} suppressed)")
                return False
            if window is not None and window.suppressed:
                logger.info(f"Alert '{title}' repeated {window.suppressed} time(s) in the last window")
            self._windows[fingerprint] = _Suppression(opened_at=now)
            expired = [fp for fp, w in self._windows.items() if now - w.opened_at > 2 * self._config.dedupe_seconds]
            for fp in expired:
                del self._windows[fp]
        return True

    def _deliver(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        body = json.dumps(self._build_payload(severity, title, message, context)).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=body,
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        parts = [f"[{severity.name}] {title}"]
        if message:
            parts.append(message)
        if context:
            try:
                parts.append("context=" + json.dumps(context, sort_keys=True, ensure_ascii=False))
            except TypeError:
                parts.append(f"context={context}")
        return {"text": " | ".join(parts)}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
