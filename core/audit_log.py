"""
P2P Engine Core: Reconciliation Audit Logger

Structured trail of every evidence decision for operator review.

Output format: JSONL (one JSON object per line)
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs every reconciliation decision:
    - matched / unmatched / ambiguous / conflict evidence
    - retry queue drops
    - blacklist entries and their resolution
    - operator overrides
    """

    def __init__(self, audit_file: Optional[str] = None, keep_recent: int = 100):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/reconcile_audit.jsonl)
            keep_recent: Entries kept in memory for the status endpoint
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/reconcile_audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=keep_recent)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def record(self, decision: str, evidence: Optional[Any] = None, **details: Any) -> Dict[str, Any]:
        """
        Append one decision.

        Args:
            decision: Outcome label (matched, unmatched, ambiguous, ...)
            evidence: PaymentEvidence (or dict) the decision is about
            details: Extra fields (payout_id, transaction_id, candidates, reason)
        """
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "decision": decision,
        }
        if evidence is not None:
            entry["evidence"] = evidence.to_dict() if hasattr(evidence, "to_dict") else dict(evidence)
        entry.update({k: v for k, v in details.items() if v is not None})

        with self._lock:
            self._recent.append(entry)
            try:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

        logger.debug(f"Audited {decision}: {details.get('reason') or ''}")
        return entry

    def recent(self, n: int = 20) -> List[Dict[str, Any]]:
        """Most recent in-memory entries, newest first"""
        with self._lock:
            return list(reversed(list(self._recent)[-n:]))

    def read_entries(self, n: int = 50) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries from disk.

        Returns:
            List of entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in lines[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(entries))
