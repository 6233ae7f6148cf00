"""
P2P Engine Core: Advertisement Lifecycle Manager

Posts one counter-advertisement per pending payout and keeps per-account ad
counters consistent with the exchange.

States: DRAFT → ONLINE → OFFLINE → DELETED (terminal)

Provides:
- Round-robin account selection under the per-account cap
- Atomic slot reservation (cap check + counter increment under one lock)
- Payment method alternation (second ad on an account uses the other method)
- Fixed or floating pricing from the exchange rate manager
- Idempotent withdrawal
- Counter reconciliation against the exchange "my ads" list
"""

import logging
import re
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core import events
from core.exceptions import AdCreationError, CapacityError, ErrorKind, ExchangeAPIError
from core.exchange_p2p import PRICE_TYPE_FIXED, PRICE_TYPE_FLOAT, SIDE_BUY, SIDE_SELL
from core.models import AdSide, AdStatus, Advertisement, ExchangeAccount, Payout, PriceMode
from core.p2p_schemas import PaymentMethod
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

# Exchange payment type ids seen for each logical method
PAYMENT_TYPE_IDS = {
    "Tinkoff": {"59", "75", "14"},
    "SBP": {"65", "71", "581"},
    "Raiffeisenbank": {"64"},
    "Sberbank": {"28"},
    "Alfa-Bank": {"32"},
}

# Substrings in payment/bank names identifying each logical method
PAYMENT_NAME_KEYWORDS = {
    "Tinkoff": ("tinkoff", "тинькофф", "t-bank", "т-банк"),
    "SBP": ("sbp", "fast payment", "система быстрых платежей", "сбп"),
    "Raiffeisenbank": ("raiffeisen", "райффайзен"),
    "Sberbank": ("sber", "сбер"),
    "Alfa-Bank": ("alfa", "альфа"),
}

_PHONE_RE = re.compile(r"^[78]\d{10}$")


def classify_payment_method(method: PaymentMethod) -> Optional[str]:
    """Map an exchange payment method to a logical name (SBP, Tinkoff, ...)."""
    for text in (method.payment_name, method.bank_name):
        lowered = (text or "").lower()
        if not lowered:
            continue
        for name, keywords in PAYMENT_NAME_KEYWORDS.items():
            if any(kw in lowered for kw in keywords):
                return name
    if method.payment_type:
        for name, type_ids in PAYMENT_TYPE_IDS.items():
            if method.payment_type in type_ids:
                return name
    digits = re.sub(r"\D", "", method.account_no or "")
    if digits and _PHONE_RE.match(digits):
        return "SBP"
    return None


def build_payment_map(methods: Iterable[PaymentMethod]) -> Dict[str, str]:
    """Logical method name (and lowercase alias) → exchange payment id."""
    mapping: Dict[str, str] = {}
    for method in methods:
        if not method.payment_id or method.payment_id == "-1":
            continue  # internal balance
        name = classify_payment_method(method)
        if name:
            mapping.setdefault(name, method.payment_id)
            mapping.setdefault(name.lower(), method.payment_id)
        if method.payment_name:
            mapping.setdefault(method.payment_name, method.payment_id)
    return mapping


class AdvertisementManager:
    """
    Advertisement lifecycle with capacity-safe account selection.

    The cap lock guards every read-modify-write of ``active_ad_count``.
    """

    PAYMENT_METHODS_TTL_SECONDS = 3600.0

    def __init__(
        self,
        pool,
        store,
        rates,
        event_bus=None,
        alerts=None,
        metrics=None,
        config: Optional[Dict[str, Any]] = None,
    ):
        cfg = config or {}
        self.pool = pool
        self.store = store
        self.rates = rates
        self.event_bus = event_bus
        self.alerts = alerts
        self.metrics = metrics

        self.asset = cfg.get("asset", "USDT")
        self.fiat = cfg.get("fiat", "RUB")
        self.side = AdSide(cfg.get("side", AdSide.SELL.value)).value
        self.price_mode = PriceMode(cfg.get("price_mode", PriceMode.FIXED.value)).value
        self.float_offset_pct = float(cfg.get("float_offset_pct", 0.0))
        self.quantity_buffer = float(cfg.get("quantity_buffer", 5.0))
        self.payment_methods: List[str] = list(cfg.get("payment_methods") or ["SBP", "Tinkoff"])
        self.payment_period_minutes = int(cfg.get("payment_period_minutes", 15))
        self.remark = cfg.get("remark", "")

        self._cap_lock = threading.Lock()
        self._rr_cursor = 0
        self._payment_cache: Dict[str, Tuple[float, Dict[str, str]]] = {}
        self._payment_lock = threading.Lock()

    # ----- capacity -----

    def _reserve_slot(self, exclude: Sequence[str] = ()) -> ExchangeAccount:
        """Pick the next account with capacity (round-robin) and count the ad now."""
        with self._cap_lock:
            accounts = sorted(self.pool.accounts(), key=lambda a: a.account_id)
            if accounts:
                for offset in range(len(accounts)):
                    account = accounts[(self._rr_cursor + offset) % len(accounts)]
                    if account.account_id in exclude or not account.has_capacity():
                        continue
                    account.active_ad_count += 1
                    self._rr_cursor = (self._rr_cursor + offset + 1) % len(accounts)
                    self._record_count(account)
                    return account
        raise CapacityError("all active accounts are at their advertisement cap")

    def _release_slot(self, account: ExchangeAccount) -> None:
        with self._cap_lock:
            account.active_ad_count = max(0, account.active_ad_count - 1)
            self._record_count(account)

    def _record_count(self, account: ExchangeAccount) -> None:
        if self.metrics is not None:
            self.metrics.record_active_ads(account.account_id, account.active_ad_count)

    # ----- payment methods -----

    def payment_methods_for(self, account_id: str) -> Dict[str, str]:
        """Cached logical-name → payment id map for an account."""
        now = time.monotonic()
        with self._payment_lock:
            cached = self._payment_cache.get(account_id)
            if cached and (now - cached[0]) < self.PAYMENT_METHODS_TTL_SECONDS:
                return cached[1]

        result = self.pool.execute(account_id, "list_payment_methods")
        mapping = build_payment_map(result.unwrap())
        with self._payment_lock:
            self._payment_cache[account_id] = (now, mapping)
        logger.debug(f"Payment methods for {account_id}: {sorted(mapping)}")
        return mapping

    def clear_payment_methods_cache(self, account_id: Optional[str] = None) -> None:
        with self._payment_lock:
            if account_id is None:
                self._payment_cache.clear()
            else:
                self._payment_cache.pop(account_id, None)

    def _choose_payment_method(self, account_id: str) -> str:
        used = {ad.payment_method for ad in self.store.live_advertisements(account_id)}
        if used:
            for name in self.payment_methods:
                if name not in used:
                    return name
        return self.payment_methods[0]

    # ----- pricing -----

    def _price(self) -> float:
        if self.price_mode == PriceMode.FLOAT.value:
            return self.rates.float_price(self.float_offset_pct)
        return round(self.rates.get_rate(), 2)

    def build_ad_params(self, payout: Payout, price: float, payment_id: str) -> Dict[str, Any]:
        """Exchange create payload for a payout: min = max = payout amount."""
        if price <= 0:
            raise ValueError(f"Invalid price {price}")
        if payout.amount <= 0:
            raise ValueError(f"Invalid payout amount {payout.amount}")
        quantity = round(payout.amount / price + self.quantity_buffer, 2)
        is_float = self.price_mode == PriceMode.FLOAT.value
        return {
            "tokenId": self.asset,
            "currencyId": self.fiat,
            "side": SIDE_SELL if self.side == AdSide.SELL.value else SIDE_BUY,
            "priceType": PRICE_TYPE_FLOAT if is_float else PRICE_TYPE_FIXED,
            "premium": f"{self.float_offset_pct:g}" if is_float else "",
            "price": f"{price:.2f}",
            "minAmount": f"{payout.amount:.2f}",
            "maxAmount": f"{payout.amount:.2f}",
            "quantity": f"{quantity:.2f}",
            "paymentIds": [payment_id],
            "remark": self.remark,
            "paymentPeriod": str(self.payment_period_minutes),
            "itemType": "ORIGIN",
            "tradingPreferenceSet": {},
        }

    # ----- lifecycle -----

    def create_for_payout(self, payout: Payout, exclude: Sequence[str] = ()) -> Advertisement:
        """
        Post an advertisement for a payout.

        Args:
            payout: Payout the ad should collect payment for
            exclude: Account ids not to use (e.g. after a business rejection)

        Returns:
            Persisted ONLINE advertisement

        Raises:
            CapacityError: every active account is at cap
            AdCreationError: exchange refused or failed; nothing persisted
        """
        for ad in self.store.live_advertisements():
            if ad.payout_id == payout.id:
                logger.debug(f"Payout {payout.id} already advertised by {ad.id}")
                return ad

        try:
            account = self._reserve_slot(exclude)
        except CapacityError:
            if self.alerts is not None:
                self.alerts.notify(AlertSeverity.WARNING, "Advertisement capacity exhausted",
                                   "all active accounts are at their ad cap")
            raise

        account_id = account.account_id
        try:
            with self.pool.account_lock(account_id):
                payment_method = self._choose_payment_method(account_id)
                payment_id = self.payment_methods_for(account_id).get(payment_method)
                if not payment_id:
                    raise AdCreationError(account_id, f"payment method {payment_method} not configured on account",
                                          ErrorKind.BUSINESS)
                price = self._price()
                params = self.build_ad_params(payout, price, payment_id)
                result = self.pool.execute(account_id, "create_ad", params)
                if not result.ok:
                    raise AdCreationError(account_id, result.error or "create failed", result.error_kind)
        except ExchangeAPIError as exc:
            self._release_slot(account)
            raise AdCreationError(account_id, str(exc), exc.kind) from exc
        except Exception:
            # any failure before the exchange accepted the ad frees the slot
            self._release_slot(account)
            raise

        ad = Advertisement(
            account_id=account_id,
            side=self.side,
            asset=self.asset,
            fiat=self.fiat,
            price_mode=self.price_mode,
            price=price,
            float_offset_pct=self.float_offset_pct,
            quantity=float(params["quantity"]),
            min_amount=payout.amount,
            max_amount=payout.amount,
            payment_method=payment_method,
            payment_ids=[payment_id],
            status=AdStatus.ONLINE.value,
            ad_id=result.value,
            payout_id=payout.id,
        )
        self.store.upsert_advertisement(ad)
        logger.info(
            f"Advertisement {ad.ad_id} online on {account_id}: {payout.amount:.2f} {self.fiat} "
            f"@ {price:.2f} via {payment_method} (payout {payout.id})"
        )
        self._emit(events.ADVERTISEMENT_CREATED, ad)
        return ad

    def set_online(self, advertisement_id: str, online: bool) -> Advertisement:
        """Toggle an ad between ONLINE and OFFLINE on the exchange."""
        ad = self.store.get_advertisement(advertisement_id)
        target = AdStatus.ONLINE.value if online else AdStatus.OFFLINE.value
        if ad.status == AdStatus.DELETED.value:
            raise ValueError(f"Advertisement {advertisement_id} is deleted")
        if ad.status == target:
            return ad

        account = self.pool.get_account(ad.account_id)
        if online:
            with self._cap_lock:
                if not account.has_capacity():
                    raise CapacityError(f"account {account.account_id} is at its advertisement cap")
                account.active_ad_count += 1
                self._record_count(account)
            result = self.pool.execute(ad.account_id, "update_ad", {"id": ad.ad_id, "actionType": "ACTIVE"})
            if not result.ok:
                self._release_slot(account)
                result.unwrap()
        else:
            self.pool.execute(ad.account_id, "cancel_ad", ad.ad_id).unwrap()
            self._release_slot(account)

        ad.status = target
        self.store.upsert_advertisement(ad)
        logger.info(f"Advertisement {ad.ad_id} set {target}")
        self._emit(events.ADVERTISEMENT_TOGGLED, ad)
        return ad

    def withdraw(self, advertisement_id: str, reason: str = "") -> Advertisement:
        """
        Remove an ad from the exchange and mark it DELETED. Idempotent.

        A business rejection (already closed / not found) or a dead account
        still marks the ad DELETED; transient failures raise so the caller
        retries on its next cycle.
        """
        ad = self.store.get_advertisement(advertisement_id)
        if ad.status == AdStatus.DELETED.value:
            return ad

        was_online = ad.status == AdStatus.ONLINE.value
        if ad.ad_id and ad.status != AdStatus.OFFLINE.value:
            result = self.pool.execute(ad.account_id, "cancel_ad", ad.ad_id)
            if not result.ok:
                if result.error_kind in (ErrorKind.TRANSIENT, ErrorKind.CLOCK_DRIFT):
                    result.unwrap()
                logger.warning(f"Cancel of ad {ad.ad_id} returned {result.error_kind.value}: {result.error}")

        ad.status = AdStatus.DELETED.value
        self.store.upsert_advertisement(ad)
        if was_online:
            self._release_slot(self.pool.get_account(ad.account_id))
        logger.info(f"Advertisement {ad.ad_id} withdrawn ({reason or 'no reason'})")
        self._emit(events.ADVERTISEMENT_DELETED, ad, reason=reason)
        return ad

    def reconcile_counts(self) -> Dict[str, int]:
        """
        Refresh counters from the exchange; counts never drop below what the
        store knows is online.
        """
        counts: Dict[str, int] = {}
        for account in self.pool.active_accounts():
            result = self.pool.execute(account.account_id, "list_my_ads")
            if not result.ok:
                logger.warning(f"Ad count reconcile skipped for {account.account_id}: {result.error}")
                continue
            exchange_online = sum(1 for item in result.value if item.is_online)
            with self._cap_lock:
                store_online = len(self.store.live_advertisements(account.account_id))
                account.active_ad_count = max(store_online, exchange_online)
                self._record_count(account)
                counts[account.account_id] = account.active_ad_count
            logger.debug(
                f"{account.account_id} ad count: store={store_online} exchange={exchange_online}"
            )
        return counts

    def _emit(self, event: str, ad: Advertisement, **extra: Any) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event, {**ad.to_dict(), **extra})
