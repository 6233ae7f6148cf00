"""
P2P Engine Core: Evidence Matcher

Correlates bank-side payment evidence (receipts, SMS, push) with open payouts
and completes the linked transaction on a unique match.

A payout matches when:
- |evidence.amount - payout.amount| <= amount_tolerance
- wallet suffix or bank matches (skipped if the evidence carries neither hint)
- payout.created_at <= evidence.timestamp <= payout.created_at + window

Outcomes: matched, unmatched, ambiguous, conflict. Nothing ambiguous is ever
auto-linked; conflicts land in the blacklist for operator review.
"""

import logging
import re
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from core import events
from core.exceptions import UnknownEntity
from core.models import (
    BlacklistedTransaction,
    Payout,
    PayoutStatus,
    PaymentEvidence,
    TransactionStatus,
    utcnow,
)
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

# Canonical bank code → spellings seen on receipts and in payout data
BANK_ALIASES = {
    "alfabank": ["альфа", "alfa", "альфа-банк", "alfa-bank", "альфабанк", "альфа банк"],
    "yandexbank": ["яндекс", "yandex", "яндекс банк", "yandex bank", "я.банк"],
    "ozonbank": ["озон", "ozon", "озон банк", "ozon bank", "озонбанк"],
    "tbank": ["т-банк", "t-bank", "тинькофф", "tinkoff", "т банк", "тбанк"],
    "sberbank": ["сбер", "sber", "сбербанк", "sberbank", "сбер банк"],
    "vtb": ["втб", "vtb", "втб банк", "vtb bank"],
}

UNMATCHED_DISCARD = "discard"
UNMATCHED_RETRY = "retry"

MATCHED = "matched"
UNMATCHED = "unmatched"
AMBIGUOUS = "ambiguous"
CONFLICT = "conflict"

_DIGITS_RE = re.compile(r"\D")


def normalize_bank(text: Optional[str]) -> Optional[str]:
    """Canonical bank code for a free-form bank name, or None."""
    lowered = (text or "").strip().lower()
    if not lowered:
        return None
    if lowered in BANK_ALIASES:
        return lowered
    for code, aliases in BANK_ALIASES.items():
        if any(alias in lowered for alias in aliases):
            return code
    return None


def bank_matches(payout_bank: Optional[str], hint: Optional[str]) -> bool:
    if not payout_bank or not hint:
        return False
    payout_code = normalize_bank(payout_bank)
    hint_code = normalize_bank(hint)
    if payout_code and hint_code:
        return payout_code == hint_code
    return payout_bank.strip().lower() in hint.strip().lower()


def wallet_matches(wallet: Optional[str], hint: Optional[str]) -> bool:
    """Phones compare the last 10 digits, cards (or masked hints) the last 4."""
    wallet_digits = _DIGITS_RE.sub("", wallet or "")
    hint_digits = _DIGITS_RE.sub("", hint or "")
    if not wallet_digits or not hint_digits:
        return False
    if len(wallet_digits) in (10, 11) and len(hint_digits) >= 10:
        return wallet_digits[-10:] == hint_digits[-10:]
    if len(hint_digits) < 4 or len(wallet_digits) < 4:
        return wallet_digits == hint_digits
    return wallet_digits[-4:] == hint_digits[-4:]


@dataclass
class MatchResult:
    status: str
    evidence_id: str
    payout_id: Optional[str] = None
    transaction_id: Optional[str] = None
    candidates: List[str] = field(default_factory=list)
    blacklisted: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "evidence_id": self.evidence_id,
            "payout_id": self.payout_id,
            "transaction_id": self.transaction_id,
            "candidates": list(self.candidates),
            "blacklisted": list(self.blacklisted),
            "reason": self.reason,
        }


class EvidenceMatcher:
    """
    Evidence reconciliation with ambiguity review and a bounded retry queue.

    Usage:
        matcher = EvidenceMatcher(store, state_machine, pool, audit)
        result = matcher.match(PaymentEvidence.from_dict(payload))
    """

    MAX_REMEMBERED_EVIDENCE = 1000

    def __init__(
        self,
        store,
        state_machine,
        pool=None,
        audit=None,
        alerts=None,
        event_bus=None,
        metrics=None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.pool = pool
        self.audit = audit
        self.alerts = alerts
        self.event_bus = event_bus
        self.metrics = metrics

        self._lock = threading.RLock()
        self._retry_queue: Deque[Tuple[PaymentEvidence, int]] = deque()
        self._pending_review: Dict[str, Tuple[PaymentEvidence, List[str]]] = {}
        self._decided: "OrderedDict[str, MatchResult]" = OrderedDict()
        self.configure(config or {})

    def configure(self, config: Dict[str, Any]) -> None:
        """Apply matching settings (used at startup and for live updates)."""
        with self._lock:
            self.amount_tolerance = float(config.get("amount_tolerance", getattr(self, "amount_tolerance", 1.0)))
            self.window_minutes = float(config.get("window_minutes", getattr(self, "window_minutes", 30)))
            policy = config.get("unmatched_policy", getattr(self, "unmatched_policy", UNMATCHED_DISCARD))
            if policy not in (UNMATCHED_DISCARD, UNMATCHED_RETRY):
                raise ValueError(f"Unknown unmatched_policy: {policy}")
            self.unmatched_policy = policy
            self.retry_attempts = int(config.get("retry_attempts", getattr(self, "retry_attempts", 5)))
            self.retry_queue_size = int(config.get("retry_queue_size", getattr(self, "retry_queue_size", 200)))
            self.release_on_match = bool(config.get("release_on_match", getattr(self, "release_on_match", False)))
        logger.info(
            f"Evidence matching: tolerance={self.amount_tolerance:g} window={self.window_minutes:g}min "
            f"unmatched={self.unmatched_policy} release_on_match={self.release_on_match}"
        )

    # ----- candidate selection -----

    def _in_window(self, payout: Payout, evidence: PaymentEvidence) -> bool:
        return payout.created_at <= evidence.timestamp <= payout.created_at + timedelta(minutes=self.window_minutes)

    def _identity_matches(self, payout: Payout, evidence: PaymentEvidence) -> bool:
        if not evidence.wallet_hint and not evidence.bank_hint:
            return True
        return wallet_matches(payout.wallet, evidence.wallet_hint) or bank_matches(payout.bank, evidence.bank_hint)

    def is_candidate(self, payout: Payout, evidence: PaymentEvidence) -> bool:
        return (
            abs(evidence.amount - payout.amount) <= self.amount_tolerance
            and self._identity_matches(payout, evidence)
            and self._in_window(payout, evidence)
        )

    def find_candidates(self, evidence: PaymentEvidence) -> List[Payout]:
        return [
            payout for payout in self.store.open_payouts()
            if not self.store.is_blacklisted(payout.id) and self.is_candidate(payout, evidence)
        ]

    def _settled_same_wallet(self, evidence: PaymentEvidence) -> List[Payout]:
        """Completed payouts to the hinted wallet inside the window."""
        if not evidence.wallet_hint:
            return []
        return [
            payout for payout in self.store.payouts()
            if payout.status == PayoutStatus.COMPLETED.value
            and wallet_matches(payout.wallet, evidence.wallet_hint)
            and self._in_window(payout, evidence)
        ]

    # ----- matching -----

    def match(self, evidence: PaymentEvidence) -> MatchResult:
        """
        Reconcile one evidence record.

        Re-submitting an evidence id that already reached a final decision
        returns that decision unchanged.
        """
        with self._lock:
            previous = self._decided.get(evidence.evidence_id)
            if previous is not None:
                logger.info(f"Evidence {evidence.evidence_id} already decided: {previous.status}")
                return previous

            result = self._evaluate(evidence)
            if result.status == UNMATCHED:
                self._handle_unmatched(evidence, result, attempts_left=self.retry_attempts)
            else:
                self._remember(result)
        self._record(result, evidence)
        return result

    def _evaluate(self, evidence: PaymentEvidence) -> MatchResult:
        candidates = self.find_candidates(evidence)
        settled = self._settled_same_wallet(evidence)

        if not candidates:
            return self._check_settled_conflict(evidence, settled)

        if len(candidates) > 1:
            return self._ambiguous(evidence, candidates, settled)

        payout = candidates[0]
        if not payout.transaction_id:
            return MatchResult(UNMATCHED, evidence.evidence_id, payout_id=payout.id,
                               candidates=[payout.id], reason="payout has no transaction yet")
        return self._settle(evidence, payout)

    def _check_settled_conflict(self, evidence: PaymentEvidence, settled: List[Payout]) -> MatchResult:
        """Evidence only resembling already-completed payouts is a conflict."""
        if not settled:
            return MatchResult(UNMATCHED, evidence.evidence_id, reason="no candidate payout")

        blacklisted = []
        for payout in settled:
            if abs(evidence.amount - payout.amount) > self.amount_tolerance:
                reason = (f"amount mismatch: evidence {evidence.amount:g} vs completed payout "
                          f"{payout.amount:g} to the same wallet")
            else:
                reason = "duplicate payment evidence for a completed payout (double-spend risk)"
            self._blacklist(payout, evidence, reason)
            blacklisted.append(payout.id)
        return MatchResult(CONFLICT, evidence.evidence_id, candidates=[p.id for p in settled],
                           blacklisted=blacklisted, reason="evidence conflicts with completed payout")

    def _ambiguous(self, evidence: PaymentEvidence, candidates: List[Payout], settled: List[Payout]) -> MatchResult:
        candidate_ids = [p.id for p in candidates]
        blacklisted = []
        for payout in candidates:
            duplicates = [
                s for s in settled
                if s.amount == evidence.amount and wallet_matches(s.wallet, payout.wallet)
            ]
            if duplicates:
                self._blacklist(payout, evidence, f"duplicates completed payout {duplicates[0].id}")
                blacklisted.append(payout.id)

        self._pending_review[evidence.evidence_id] = (evidence, candidate_ids)
        logger.warning(
            f"Ambiguous evidence {evidence.evidence_id} ({evidence.amount:g} {evidence.currency}): "
            f"{len(candidates)} candidate payouts, operator review required"
        )
        if self.alerts is not None:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Ambiguous payment evidence",
                f"{evidence.amount:g} {evidence.currency} matches {len(candidates)} payouts",
                {"evidence_id": evidence.evidence_id, "candidates": candidate_ids},
            )
        if self.event_bus is not None:
            self.event_bus.emit(events.EVIDENCE_AMBIGUOUS, {
                "evidence": evidence.to_dict(),
                "candidates": candidate_ids,
            })
        return MatchResult(AMBIGUOUS, evidence.evidence_id, candidates=candidate_ids,
                           blacklisted=blacklisted, reason=f"{len(candidates)} candidate payouts")

    def _settle(self, evidence: PaymentEvidence, payout: Payout, reason: Optional[str] = None) -> MatchResult:
        """Complete the payout's transaction for this evidence."""
        payout = self.store.get_payout(payout.id)
        transaction_id = payout.transaction_id
        if not transaction_id:
            return MatchResult(UNMATCHED, evidence.evidence_id, payout_id=payout.id,
                               candidates=[payout.id], reason="payout has no transaction yet")
        with self.state_machine.locked(transaction_id):
            # the tracker releases payouts of cancelled transactions under this lock
            payout = self.store.get_payout(payout.id)
            if payout.transaction_id != transaction_id:
                logger.warning(f"Payout {payout.id} was released from transaction {transaction_id} "
                               f"while evidence {evidence.evidence_id} was being matched")
                return MatchResult(UNMATCHED, evidence.evidence_id, payout_id=payout.id,
                                   candidates=[payout.id], reason="payout released from its transaction")
            tx = self.store.get_transaction(transaction_id)
            if tx.is_terminal() and tx.status != TransactionStatus.COMPLETED.value:
                logger.error(f"Evidence {evidence.evidence_id} matched payout {payout.id} "
                             f"but transaction {tx.id} is {tx.status}")
                self._blacklist(payout, evidence, f"payment evidence for {tx.status} transaction {tx.id}")
                return MatchResult(CONFLICT, evidence.evidence_id, payout_id=payout.id, transaction_id=tx.id,
                                   candidates=[payout.id], blacklisted=[payout.id],
                                   reason=f"transaction is {tx.status}")

            self.state_machine.advance_to(tx.id, TransactionStatus.COMPLETED,
                                          reason or f"evidence {evidence.evidence_id}")
            payout.status = PayoutStatus.COMPLETED.value
            payout.completed_at = utcnow()
            self.store.upsert_payout(payout)

        logger.info(
            f"Evidence {evidence.evidence_id} matched payout {payout.id} "
            f"({payout.amount:g} {payout.currency}); transaction {transaction_id} completed"
        )
        if self.release_on_match:
            self._release_assets(tx.account_id, tx.order_id)
        return MatchResult(MATCHED, evidence.evidence_id, payout_id=payout.id,
                           transaction_id=transaction_id, candidates=[payout.id], reason=reason)

    def _release_assets(self, account_id: str, order_id: Optional[str]) -> None:
        if self.pool is None or not order_id:
            return
        result = self.pool.execute(account_id, "release_assets", order_id)
        if result.ok:
            logger.info(f"Released assets for order {order_id}")
            return
        logger.error(f"Asset release for order {order_id} failed: {result.error}")
        if self.alerts is not None:
            self.alerts.notify(AlertSeverity.CRITICAL, "Asset release failed",
                               f"order {order_id}: {result.error}",
                               {"account_id": account_id, "order_id": order_id})

    # ----- unmatched handling -----

    def _handle_unmatched(self, evidence: PaymentEvidence, result: MatchResult, attempts_left: int) -> None:
        if self.unmatched_policy == UNMATCHED_RETRY and attempts_left > 0:
            if len(self._retry_queue) >= self.retry_queue_size:
                dropped, _ = self._retry_queue.popleft()
                logger.warning(f"Evidence retry queue full; dropped {dropped.evidence_id}")
                self._audit("dropped", dropped, reason="retry queue full")
            self._retry_queue.append((evidence, attempts_left))
            logger.info(f"Evidence {evidence.evidence_id} unmatched ({result.reason}); "
                        f"queued for retry ({attempts_left} left)")
            return
        logger.info(f"Evidence {evidence.evidence_id} unmatched ({result.reason}); discarded")
        if self.event_bus is not None:
            self.event_bus.emit(events.EVIDENCE_UNMATCHED, {"evidence": evidence.to_dict(), "reason": result.reason})

    def process_retry_queue(self) -> Dict[str, int]:
        """Re-evaluate queued unmatched evidence once; returns outcome counts."""
        outcome: Dict[str, int] = {}
        with self._lock:
            pending = list(self._retry_queue)
            self._retry_queue.clear()
            results = []
            for evidence, attempts_left in pending:
                result = self._evaluate(evidence)
                if result.status == UNMATCHED:
                    if attempts_left - 1 > 0:
                        self._retry_queue.append((evidence, attempts_left - 1))
                        outcome["requeued"] = outcome.get("requeued", 0) + 1
                        continue
                    logger.warning(f"Evidence {evidence.evidence_id} dropped after "
                                   f"{self.retry_attempts} unmatched attempts")
                    result.reason = f"retries exhausted ({result.reason})"
                    if self.event_bus is not None:
                        self.event_bus.emit(events.EVIDENCE_UNMATCHED,
                                            {"evidence": evidence.to_dict(), "reason": result.reason})
                else:
                    self._remember(result)
                results.append((evidence, result))
                outcome[result.status] = outcome.get(result.status, 0) + 1
        for evidence, result in results:
            self._record(result, evidence)
        return outcome

    def retry_queue_size_now(self) -> int:
        with self._lock:
            return len(self._retry_queue)

    # ----- operator actions -----

    def pending_review(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"evidence": ev.to_dict(), "candidates": list(candidates)}
                for ev, candidates in self._pending_review.values()
            ]

    def resolve_ambiguous(self, evidence_id: str, payout_id: str) -> MatchResult:
        """
        Link ambiguous evidence to the payout an operator picked.

        Raises:
            UnknownEntity: evidence not awaiting review
            ValueError: payout is not open or has no transaction
        """
        with self._lock:
            pending = self._pending_review.get(evidence_id)
            if pending is None:
                raise UnknownEntity(f"evidence {evidence_id} is not awaiting review")
            evidence, _candidates = pending
            payout = self.store.get_payout(payout_id)
            if payout.status not in (PayoutStatus.PENDING.value, PayoutStatus.LINKED.value):
                raise ValueError(f"payout {payout_id} is {payout.status}")
            if not payout.transaction_id:
                raise ValueError(f"payout {payout_id} has no transaction")
            result = self._settle(evidence, payout, reason="resolved by operator")
            if result.status == UNMATCHED:
                raise ValueError(f"payout {payout_id}: {result.reason}")
            del self._pending_review[evidence_id]
            self._remember(result)
        self._audit("operator_resolved", evidence, payout_id=payout_id, transaction_id=result.transaction_id)
        return result

    def resolve_blacklist(self, blacklist_id: str, note: str = "") -> BlacklistedTransaction:
        """Mark a blacklist entry reviewed; the record itself is kept."""
        entry = self.store.get_blacklist(blacklist_id)
        if entry.resolved:
            return entry
        entry.resolved = True
        entry.resolution = note or "resolved"
        entry.resolved_at = utcnow()
        self.store.update_blacklist(entry)

        try:
            payout = self.store.get_payout(entry.payout_id)
        except UnknownEntity:
            payout = None
        if payout is not None and payout.status == PayoutStatus.BLACKLISTED.value \
                and not self.store.is_blacklisted(payout.id):
            payout.status = PayoutStatus.LINKED.value if payout.transaction_id else PayoutStatus.PENDING.value
            self.store.upsert_payout(payout)
        logger.info(f"Blacklist entry {blacklist_id} for payout {entry.payout_id} resolved: {entry.resolution}")
        self._audit("blacklist_resolved", None, blacklist_id=blacklist_id,
                    payout_id=entry.payout_id, reason=entry.resolution)
        return entry

    # ----- bookkeeping -----

    def _blacklist(self, payout: Payout, evidence: PaymentEvidence, reason: str) -> BlacklistedTransaction:
        entry = BlacklistedTransaction(
            payout_id=payout.id,
            reason=reason,
            wallet=payout.wallet,
            amount=payout.amount,
            evidence_id=evidence.evidence_id,
        )
        self.store.add_blacklist(entry)
        if payout.status in (PayoutStatus.PENDING.value, PayoutStatus.LINKED.value):
            payout.status = PayoutStatus.BLACKLISTED.value
            self.store.upsert_payout(payout)
        logger.warning(f"Payout {payout.id} blacklisted: {reason}")
        if self.alerts is not None:
            self.alerts.notify(AlertSeverity.CRITICAL, "Payout blacklisted", f"{payout.id}: {reason}",
                               {"payout_id": payout.id, "evidence_id": evidence.evidence_id})
        if self.event_bus is not None:
            self.event_bus.emit(events.PAYOUT_BLACKLISTED, entry.to_dict())
        self._audit("blacklisted", evidence, payout_id=payout.id, reason=reason)
        return entry

    def _remember(self, result: MatchResult) -> None:
        self._decided[result.evidence_id] = result
        while len(self._decided) > self.MAX_REMEMBERED_EVIDENCE:
            self._decided.popitem(last=False)

    def _record(self, result: MatchResult, evidence: Optional[PaymentEvidence] = None) -> None:
        if self.metrics is not None:
            self.metrics.record_evidence(result.status)
        self._audit(result.status, evidence, **{k: v for k, v in result.to_dict().items()
                                                if k not in ("status", "evidence_id") and v})

    def _audit(self, decision: str, evidence: Optional[PaymentEvidence], **details: Any) -> None:
        if self.audit is not None:
            self.audit.record(decision, evidence, **details)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "amount_tolerance": self.amount_tolerance,
                "window_minutes": self.window_minutes,
                "unmatched_policy": self.unmatched_policy,
                "retry_queue": len(self._retry_queue),
                "pending_review": len(self._pending_review),
                "blacklist_open": len(self.store.blacklist(include_resolved=False)),
            }
