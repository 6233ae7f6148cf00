"""
P2P Engine Core: Data Model

Entities persisted by the trade store and passed between components.

Entities:
- ExchangeAccount: credentials + live ad counter for one exchange account
- Advertisement: a P2P ad posted for a single payout
- Transaction: one counterparty order against an advertisement
- Payout: money we owe a recipient (the reason an ad exists)
- ChatMessage / ChatTemplate / ResponseGroup / TemplateUsage: chat automation
- PaymentEvidence: transient proof of an incoming bank payment
- BlacklistedTransaction: payouts frozen for operator review

Statuses are stored as their string values so the JSON store stays readable.
"""

import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse ISO strings or epoch values into aware UTC datetimes.

    Epoch values above 1e11 are treated as milliseconds (exchange format).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        ts = float(value)
        if ts > 1e11:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class AdSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class PriceMode(Enum):
    FIXED = "FIXED"
    FLOAT = "FLOAT"


class AdStatus(Enum):
    """Advertisement lifecycle states"""
    DRAFT = "DRAFT"        # Built locally, never persisted
    ONLINE = "ONLINE"      # Accepting orders on the exchange
    OFFLINE = "OFFLINE"    # Paused or fully consumed
    DELETED = "DELETED"    # Withdrawn, terminal


class TransactionStatus(Enum):
    """Transaction lifecycle states"""
    PENDING = "pending"
    WAITING_PAYMENT = "waiting_payment"
    PAYMENT_RECEIVED = "payment_received"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.COMPLETED.value,
    TransactionStatus.CANCELLED.value,
    TransactionStatus.FAILED.value,
})


class PayoutStatus(Enum):
    PENDING = "pending"
    LINKED = "linked"
    COMPLETED = "completed"
    BLACKLISTED = "blacklisted"


class ChatSender(Enum):
    US = "us"
    COUNTERPARTY = "counterparty"
    SYSTEM = "system"


class MessageType(Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


class _Record:
    """Shared JSON (de)serialization for store records."""

    _DATETIME_FIELDS: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in self._DATETIME_FIELDS:
            value = data.get(name)
            data[name] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in cls._DATETIME_FIELDS:
            if name in kwargs:
                kwargs[name] = parse_datetime(kwargs[name])
        return cls(**kwargs)


@dataclass
class ExchangeAccount(_Record):
    """
    Exchange account credentials and live counters.

    Only ``is_active``, ``active_ad_count`` and ``last_error`` are touched by
    automation; everything else comes from configuration.
    """
    account_id: str
    api_key: str
    api_secret: str = field(repr=False, default="")
    is_active: bool = True
    proxy: Optional[str] = None
    max_active_ads: int = 2
    active_ad_count: int = 0
    last_error: Optional[str] = None
    last_sync: Optional[datetime] = None

    _DATETIME_FIELDS = ("last_sync",)

    def has_capacity(self) -> bool:
        return self.is_active and self.active_ad_count < self.max_active_ads

    def public_view(self) -> Dict[str, Any]:
        """Account fields safe to expose on status endpoints"""
        return {
            "account_id": self.account_id,
            "is_active": self.is_active,
            "active_ad_count": self.active_ad_count,
            "max_active_ads": self.max_active_ads,
            "last_error": self.last_error,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
        }


@dataclass
class Advertisement(_Record):
    account_id: str
    side: str = AdSide.SELL.value
    asset: str = "USDT"
    fiat: str = "RUB"
    price_mode: str = PriceMode.FIXED.value
    price: float = 0.0
    float_offset_pct: float = 0.0
    quantity: float = 0.0
    min_amount: float = 0.0
    max_amount: float = 0.0
    payment_method: str = ""
    payment_ids: List[str] = field(default_factory=list)
    status: str = AdStatus.DRAFT.value
    ad_id: Optional[str] = None
    payout_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    _DATETIME_FIELDS = ("created_at", "updated_at")

    def is_live(self) -> bool:
        return self.status in (AdStatus.ONLINE.value, AdStatus.OFFLINE.value)


@dataclass
class Transaction(_Record):
    """
    One counterparty order placed against one of our advertisements.

    ``order_id`` is immutable once set; status only moves forward
    (see core.order_state).
    """
    advertisement_id: str
    account_id: str
    order_id: Optional[str] = None
    payout_id: Optional[str] = None
    status: str = TransactionStatus.PENDING.value
    counterparty_id: Optional[str] = None
    counterparty_name: Optional[str] = None
    amount: float = 0.0
    automation_suspended: bool = False
    payment_details_sent: bool = False
    last_error: Optional[str] = None
    failure_reason: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    payment_sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    automation_resumed_at: Optional[datetime] = None

    _DATETIME_FIELDS = ("created_at", "updated_at", "payment_sent_at", "completed_at", "automation_resumed_at")

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES

    def age_seconds(self) -> float:
        return (utcnow() - self.created_at).total_seconds()


@dataclass
class Payout(_Record):
    amount: float
    wallet: str
    bank: str = ""
    currency: str = "RUB"
    recipient_name: Optional[str] = None
    status: str = PayoutStatus.PENDING.value
    transaction_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    _DATETIME_FIELDS = ("created_at", "completed_at")


@dataclass
class ChatMessage(_Record):
    """Persisted chat line. Immutable once stored except ``is_processed``."""
    transaction_id: str
    sender: str
    content: str
    message_id: Optional[str] = None
    message_type: str = MessageType.TEXT.value
    is_auto_reply: bool = False
    is_processed: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    _DATETIME_FIELDS = ("created_at",)


@dataclass
class ChatTemplate(_Record):
    name: str
    message: str
    keywords: List[str] = field(default_factory=list)
    priority: int = 0
    group_id: Optional[str] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def matches(self, text: str) -> bool:
        """Case-insensitive keyword containment"""
        if not self.is_active or not self.keywords:
            return False
        lowered = (text or "").lower()
        return any(kw.lower() in lowered for kw in self.keywords if kw)


@dataclass
class ResponseGroup(_Record):
    name: str
    description: str = ""
    templates: List[ChatTemplate] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "templates": [t.to_dict() for t in self.templates],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseGroup":
        group = cls(
            name=data["name"],
            description=data.get("description", ""),
            id=data.get("id") or new_id(),
        )
        for raw in data.get("templates") or []:
            template = ChatTemplate.from_dict({**raw, "group_id": raw.get("group_id") or group.id})
            group.templates.append(template)
        return group


@dataclass
class TemplateUsage(_Record):
    template_id: str
    transaction_id: str
    used_at: datetime = field(default_factory=utcnow)

    _DATETIME_FIELDS = ("used_at",)


@dataclass
class PaymentEvidence:
    """Proof of an incoming bank payment (receipt, SMS, push). Not persisted."""
    amount: float
    timestamp: datetime
    currency: str = "RUB"
    bank_hint: Optional[str] = None
    wallet_hint: Optional[str] = None
    source: str = "receipt"
    evidence_id: str = field(default_factory=new_id)
    raw: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentEvidence":
        """Build from the producer payload (camelCase or snake_case keys)."""
        timestamp = parse_datetime(data.get("timestamp")) or utcnow()
        return cls(
            amount=float(data["amount"]),
            timestamp=timestamp,
            currency=data.get("currency") or "RUB",
            bank_hint=data.get("bankHint", data.get("bank_hint")),
            wallet_hint=data.get("walletHint", data.get("wallet_hint")),
            source=data.get("source") or "receipt",
            evidence_id=data.get("evidenceId", data.get("evidence_id")) or new_id(),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "amount": self.amount,
            "currency": self.currency,
            "timestamp": self.timestamp.isoformat(),
            "bank_hint": self.bank_hint,
            "wallet_hint": self.wallet_hint,
            "source": self.source,
        }


@dataclass
class BlacklistedTransaction(_Record):
    """Payout frozen for operator review. Records are never deleted."""
    payout_id: str
    reason: str
    wallet: Optional[str] = None
    amount: Optional[float] = None
    evidence_id: Optional[str] = None
    resolved: bool = False
    resolution: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    _DATETIME_FIELDS = ("created_at", "resolved_at")
