"""Shared exception types for the P2P engine."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """How a failed exchange call should be handled by the caller."""
    TRANSIENT = "transient"        # Timeouts, 429/5xx, exchange throttling: retry with backoff
    CLOCK_DRIFT = "clock_drift"    # Timestamp outside recv window: resync once, retry once
    BUSINESS = "business"          # Exchange refused the request: caller decides
    FATAL = "fatal"                # Credentials revoked/invalid: deactivate account


class P2PError(Exception):
    """Base class for engine errors."""


class ExchangeAPIError(P2PError):
    """Raised by the exchange session for any failed call."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: Optional[int] = None,
        http_status: Optional[int] = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.http_status = http_status
        self.endpoint = endpoint

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}]"]
        if self.endpoint:
            parts.append(self.endpoint)
        if self.code is not None:
            parts.append(f"retCode={self.code}")
        if self.http_status is not None:
            parts.append(f"http={self.http_status}")
        parts.append(self.message)
        return " ".join(parts)


class CapacityError(P2PError):
    """Every active account is at its advertisement cap."""


class AdCreationError(P2PError):
    """The exchange refused or failed to create an advertisement."""

    def __init__(self, account_id: str, reason: str, kind: Optional[ErrorKind] = None):
        super().__init__(f"{account_id}: {reason}")
        self.account_id = account_id
        self.reason = reason
        self.kind = kind


class AccountUnavailable(P2PError):
    """Account is unknown or deactivated."""


class InvalidTransition(P2PError):
    """Transaction status change that would move backwards or leave a terminal state."""


class UnknownEntity(P2PError, KeyError):
    """Lookup by id found nothing in the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown entity"
