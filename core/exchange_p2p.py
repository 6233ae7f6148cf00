"""
P2P Engine Core: Exchange Connector (Bybit v5 P2P)

Signed session for one exchange account. Each account owns its own
``requests.Session`` (connection pool, optional proxy); sessions are never
shared between accounts.

Signing:
- sign = HMAC_SHA256(secret, timestamp + api_key + recv_window + payload)
- payload is the JSON body for POST, the sorted query string for GET
- timestamp comes from the injected ClockSync (server-corrected)

Every call makes exactly one HTTP attempt and raises ExchangeAPIError with a
classified ErrorKind on failure; retry policy lives in the account pool.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from pydantic import ValidationError

from core.exceptions import ErrorKind, ExchangeAPIError
from core.p2p_schemas import (
    ApiEnvelope,
    P2PAdItem,
    P2PMessage,
    P2POrder,
    PaymentMethod,
    parse_list,
)

logger = logging.getLogger(__name__)

BYBIT_BASE = "https://api.bybit.com"
DEFAULT_RECV_WINDOW = 5000

# retCode classification
CLOCK_DRIFT_RET_CODES = {10002}                            # timestamp outside recv_window
FATAL_RET_CODES = {10003, 10004, 10005, 10007, 33004}      # bad key, bad sign, no permission, expired key
TRANSIENT_RET_CODES = {10006, 10016, 10018}                # throttled, server error, IP rate limit

# Exchange ad side / price type wire values
SIDE_BUY = "0"
SIDE_SELL = "1"
PRICE_TYPE_FIXED = "0"
PRICE_TYPE_FLOAT = "1"


def classify_ret_code(code: int) -> ErrorKind:
    if code in CLOCK_DRIFT_RET_CODES:
        return ErrorKind.CLOCK_DRIFT
    if code in FATAL_RET_CODES:
        return ErrorKind.FATAL
    if code in TRANSIENT_RET_CODES:
        return ErrorKind.TRANSIENT
    return ErrorKind.BUSINESS


def classify_http_status(status: int) -> ErrorKind:
    if status in (401, 403):
        return ErrorKind.FATAL
    if status == 429 or status >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.BUSINESS


class P2PSession:
    """
    Signed P2P API session for a single account.

    Supports:
    - Account info and payment methods
    - Advertisements (create, update, cancel, list, info, online market)
    - Orders (pending list, info, release)
    - Order chat (list, send)
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        clock,
        base_url: str = BYBIT_BASE,
        recv_window: int = DEFAULT_RECV_WINDOW,
        timeout: float = 20.0,
        proxy: Optional[str] = None,
        metrics=None,
        session: Optional[requests.Session] = None,
    ):
        if not api_key or not api_secret:
            raise ValueError("api_key and api_secret are required")
        self.api_key = api_key
        self._api_secret = api_secret
        self.clock = clock
        self.base_url = base_url.rstrip("/")
        self.recv_window = int(recv_window)
        self.timeout = timeout
        self.metrics = metrics

        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if proxy:
            self._session.proxies.update({"http": proxy, "https": proxy})

    # ----- signing -----

    def _sign(self, timestamp: str, payload: str) -> str:
        prehash = f"{timestamp}{self.api_key}{self.recv_window}{payload}"
        return hmac.new(self._api_secret.encode(), prehash.encode(), hashlib.sha256).hexdigest()

    def _headers(self, payload: str) -> Dict[str, str]:
        timestamp = str(self.clock.now_ms())
        return {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": str(self.recv_window),
            "X-BAPI-SIGN": self._sign(timestamp, payload),
            "X-BAPI-SIGN-TYPE": "2",
        }

    # ----- transport -----

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make one signed request and return the ``result`` payload.

        Raises:
            ExchangeAPIError: classified failure (transport, HTTP or retCode)
        """
        method = method.upper()
        url = f"{self.base_url}{path}"
        data: Optional[str] = None

        if method == "GET":
            payload = urlencode(sorted((query or {}).items()), doseq=True)
            if payload:
                url = f"{url}?{payload}"
        else:
            payload = json.dumps(body, separators=(",", ":")) if body else ""
            data = payload or None

        started = time.monotonic()
        status_label = "ok"
        try:
            try:
                response = self._session.request(
                    method, url, headers=self._headers(payload), data=data, timeout=self.timeout
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                status_label = "network"
                raise ExchangeAPIError(ErrorKind.TRANSIENT, f"network error: {exc}", endpoint=path) from exc
            except requests.exceptions.RequestException as exc:
                # broken chunked body, bad encoding, redirect loops
                status_label = "transport"
                raise ExchangeAPIError(ErrorKind.TRANSIENT, f"transport error: {exc}", endpoint=path) from exc

            if response.status_code >= 400:
                status_label = str(response.status_code)
                kind = classify_http_status(response.status_code)
                raise ExchangeAPIError(
                    kind,
                    (response.text or "")[:200] or response.reason or "http error",
                    http_status=response.status_code,
                    endpoint=path,
                )

            try:
                envelope = ApiEnvelope.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                status_label = "malformed"
                raise ExchangeAPIError(ErrorKind.TRANSIENT, f"malformed response: {exc}", endpoint=path) from exc

            if not envelope.ok:
                status_label = f"ret_{envelope.ret_code}"
                raise ExchangeAPIError(
                    classify_ret_code(envelope.ret_code),
                    envelope.ret_msg or "rejected",
                    code=envelope.ret_code,
                    endpoint=path,
                )
            return envelope.result
        finally:
            if self.metrics is not None:
                self.metrics.record_api_call(path, time.monotonic() - started, status_label)

    def _parse(self, path: str, fn, *args):
        try:
            return fn(*args)
        except ValidationError as exc:
            raise ExchangeAPIError(ErrorKind.BUSINESS, f"unexpected payload: {exc}", endpoint=path) from exc

    # ----- account -----

    def get_account_info(self) -> Dict[str, Any]:
        return self._request("POST", "/v5/p2p/user/personal/info") or {}

    def list_payment_methods(self) -> List[PaymentMethod]:
        path = "/v5/p2p/user/payment/list"
        result = self._request("POST", path)
        return self._parse(path, parse_list, PaymentMethod, result, "items", "list")

    # ----- advertisements -----

    def create_ad(self, params: Dict[str, Any]) -> str:
        """
        Create an advertisement.

        Args:
            params: Exchange ad fields (tokenId, currencyId, side, priceType,
                price, premium, minAmount, maxAmount, quantity, paymentIds, ...)

        Returns:
            Exchange item id
        """
        path = "/v5/p2p/item/create"
        result = self._request("POST", path, body=params)
        item_id = None
        if isinstance(result, dict):
            item_id = result.get("itemId") or result.get("id")
        if not item_id:
            raise ExchangeAPIError(ErrorKind.BUSINESS, "create returned no itemId", endpoint=path)
        return str(item_id)

    def update_ad(self, params: Dict[str, Any]) -> Any:
        return self._request("POST", "/v5/p2p/item/update", body=params)

    def cancel_ad(self, ad_id: str) -> Any:
        return self._request("POST", "/v5/p2p/item/cancel", body={"itemId": ad_id})

    def get_ad(self, ad_id: str) -> P2PAdItem:
        path = "/v5/p2p/item/info"
        result = self._request("POST", path, body={"itemId": ad_id}) or {}
        return self._parse(path, P2PAdItem.model_validate, result)

    def list_my_ads(self) -> List[P2PAdItem]:
        path = "/v5/p2p/item/personal/list"
        result = self._request("POST", path, body={})
        return self._parse(path, parse_list, P2PAdItem, result, "items", "list")

    def list_online_ads(self, token_id: str, currency_id: str, side: str, size: int = 10) -> List[P2PAdItem]:
        """Public market ads, used for automatic rate discovery"""
        path = "/v5/p2p/item/online"
        body = {"tokenId": token_id, "currencyId": currency_id, "side": side, "page": "1", "size": str(size)}
        result = self._request("POST", path, body=body)
        return self._parse(path, parse_list, P2PAdItem, result, "items", "list")

    # ----- orders -----

    def list_pending_orders(self, page: int = 1, size: int = 30) -> List[P2POrder]:
        path = "/v5/p2p/order/pending/simplifyList"
        result = self._request("POST", path, body={"page": page, "size": size})
        return self._parse(path, parse_list, P2POrder, result, "items", "list")

    def list_orders(self, page: int = 1, size: int = 30, status: Optional[int] = None) -> List[P2POrder]:
        path = "/v5/p2p/order/simplifyList"
        body: Dict[str, Any] = {"page": page, "size": size}
        if status is not None:
            body["status"] = status
        result = self._request("POST", path, body=body)
        return self._parse(path, parse_list, P2POrder, result, "items", "list")

    def get_order(self, order_id: str) -> P2POrder:
        path = "/v5/p2p/order/info"
        result = self._request("POST", path, body={"orderId": order_id}) or {}
        return self._parse(path, P2POrder.model_validate, result)

    def release_assets(self, order_id: str) -> Any:
        return self._request("POST", "/v5/p2p/order/finish", body={"orderId": order_id})

    # ----- chat -----

    def list_messages(self, order_id: str, page: int = 1, size: int = 50) -> List[P2PMessage]:
        path = "/v5/p2p/order/message/listpage"
        result = self._request("POST", path, body={"orderId": order_id, "page": page, "size": size})
        return self._parse(path, parse_list, P2PMessage, result, "result", "items", "list")

    def send_message(self, order_id: str, message: str, content_type: str = "str") -> Any:
        return self._request(
            "POST",
            "/v5/p2p/order/message/send",
            body={"orderId": order_id, "message": message, "contentType": content_type},
        )

    def close(self) -> None:
        self._session.close()
