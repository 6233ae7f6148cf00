"""
In-memory stand-in for P2PSession.

Keeps ads, orders and chats in plain dicts and returns the same pydantic
models the real session parses, so components under test see production
types. Failures are scripted per operation:

    session.fail("create_ad", ExchangeAPIError(ErrorKind.BUSINESS, "rejected"))
"""

import itertools
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.exceptions import ErrorKind, ExchangeAPIError
from core.models import ExchangeAccount
from core.p2p_schemas import AD_STATUS_OFFLINE, AD_STATUS_ONLINE, P2PAdItem, P2PMessage, P2POrder, PaymentMethod

OUR_USER_ID = "900"
COUNTERPARTY_ID = "555"


def ms(dt: datetime) -> str:
    """Exchange-style epoch milliseconds string"""
    return str(int(dt.timestamp() * 1000))


class FakeClock:
    """ClockSync double with a fixed zero offset"""

    def __init__(self):
        self.sync_calls = 0
        self.synchronized = True

    def force_sync(self, verbose: bool = False) -> bool:
        self.sync_calls += 1
        return self.synchronized

    def sync_if_stale(self, max_age_seconds: Optional[float] = None) -> bool:
        return self.synchronized

    def get_offset(self) -> int:
        return 0

    def is_synchronized(self) -> bool:
        return self.synchronized

    def now_ms(self) -> int:
        return int(datetime.now(timezone.utc).timestamp() * 1000)

    def status(self) -> Dict[str, Any]:
        return {"synchronized": self.synchronized, "offset_ms": 0, "last_error": None}

    def close(self) -> None:
        pass


class FakeP2PSession:
    """Scriptable exchange session for one account."""

    _ids = itertools.count(1)

    def __init__(self, account: Optional[ExchangeAccount] = None, user_id: str = OUR_USER_ID):
        self.account = account
        self.user_id = user_id
        self.ads: Dict[str, P2PAdItem] = {}
        self.created_params: List[Dict[str, Any]] = []
        self.orders: Dict[str, P2POrder] = {}
        self.pending_order_ids: List[str] = []
        self.messages: Dict[str, List[P2PMessage]] = defaultdict(list)
        self.sent: List[tuple] = []
        self.released: List[str] = []
        self.market_prices: List[float] = []
        self.payment_methods = [
            PaymentMethod.model_validate({"id": "101", "paymentType": "65", "paymentConfigVo": {"paymentName": "SBP"}}),
            PaymentMethod.model_validate({"id": "102", "paymentType": "75", "bankName": "Tinkoff"}),
        ]
        self.calls: List[str] = []
        self.closed = False
        self._failures: Dict[str, List[ExchangeAPIError]] = defaultdict(list)

    # ----- scripting -----

    def fail(self, operation: str, error: ExchangeAPIError, times: int = 1) -> None:
        self._failures[operation].extend([error] * times)

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def add_order(
        self,
        item_id: str,
        amount: float,
        status: int = 10,
        order_id: Optional[str] = None,
        target_user_id: str = COUNTERPARTY_ID,
        created_at: Optional[datetime] = None,
    ) -> P2POrder:
        order_id = order_id or f"order-{next(self._ids)}"
        order = P2POrder.model_validate({
            "id": order_id,
            "itemId": item_id,
            "status": status,
            "amount": str(amount),
            "targetUserId": target_user_id,
            "targetNickName": f"user{target_user_id}",
            "createDate": ms(created_at or datetime.now(timezone.utc)),
        })
        self.orders[order_id] = order
        if order_id not in self.pending_order_ids:
            self.pending_order_ids.append(order_id)
        return order

    def set_order_status(self, order_id: str, status: int) -> None:
        self.orders[order_id] = self.orders[order_id].model_copy(update={"status": status})

    def add_message(self, order_id: str, text: str, user_id: str = COUNTERPARTY_ID,
                    message_id: Optional[str] = None, created_at: Optional[datetime] = None) -> P2PMessage:
        message = P2PMessage.model_validate({
            "id": message_id or f"msg-{next(self._ids)}",
            "message": text,
            "userId": user_id,
            "contentType": "str",
            "createDate": ms(created_at or datetime.now(timezone.utc)),
        })
        self.messages[order_id].append(message)
        return message

    # ----- P2PSession surface -----

    def get_account_info(self) -> Dict[str, Any]:
        self._call("get_account_info")
        return {"userId": self.user_id}

    def list_payment_methods(self) -> List[PaymentMethod]:
        self._call("list_payment_methods")
        return list(self.payment_methods)

    def create_ad(self, params: Dict[str, Any]) -> str:
        self._call("create_ad")
        item_id = f"item-{next(self._ids)}"
        self.created_params.append(params)
        self.ads[item_id] = P2PAdItem.model_validate({
            "id": item_id, "status": AD_STATUS_ONLINE, "price": params["price"], "quantity": params["quantity"],
        })
        return item_id

    def update_ad(self, params: Dict[str, Any]) -> Any:
        self._call("update_ad")
        item = self.ads[params["id"]]
        self.ads[params["id"]] = item.model_copy(update={"status": AD_STATUS_ONLINE})
        return {}

    def cancel_ad(self, ad_id: str) -> Any:
        self._call("cancel_ad")
        item = self.ads.get(ad_id)
        if item is None:
            raise ExchangeAPIError(ErrorKind.BUSINESS, "ad not found", code=912100)
        self.ads[ad_id] = item.model_copy(update={"status": AD_STATUS_OFFLINE})
        return {}

    def list_my_ads(self) -> List[P2PAdItem]:
        self._call("list_my_ads")
        return list(self.ads.values())

    def list_online_ads(self, token_id: str, currency_id: str, side: str, size: int = 10) -> List[P2PAdItem]:
        self._call("list_online_ads")
        return [
            P2PAdItem.model_validate({"id": f"market-{i}", "status": AD_STATUS_ONLINE, "price": price})
            for i, price in enumerate(self.market_prices)
        ]

    def list_pending_orders(self, page: int = 1, size: int = 30) -> List[P2POrder]:
        self._call("list_pending_orders")
        start = (page - 1) * size
        return [self.orders[order_id] for order_id in self.pending_order_ids[start:start + size]]

    def get_order(self, order_id: str) -> P2POrder:
        self._call("get_order")
        order = self.orders.get(order_id)
        if order is None:
            raise ExchangeAPIError(ErrorKind.BUSINESS, "order not found", code=912000)
        return order

    def release_assets(self, order_id: str) -> Any:
        self._call("release_assets")
        self.released.append(order_id)
        return {}

    def list_messages(self, order_id: str, page: int = 1, size: int = 50) -> List[P2PMessage]:
        self._call("list_messages")
        return list(self.messages[order_id])

    def send_message(self, order_id: str, message: str, content_type: str = "str") -> Any:
        self._call("send_message")
        self.sent.append((order_id, message))
        self.add_message(order_id, message, user_id=self.user_id)
        return {}

    def close(self) -> None:
        self.closed = True


class FakeExchange:
    """session_factory for AccountPool: one FakeP2PSession per account id."""

    def __init__(self):
        self.sessions: Dict[str, FakeP2PSession] = {}

    def session(self, account_id: str) -> FakeP2PSession:
        if account_id not in self.sessions:
            self.sessions[account_id] = FakeP2PSession()
        return self.sessions[account_id]

    def __call__(self, account: ExchangeAccount) -> FakeP2PSession:
        session = self.session(account.account_id)
        session.account = account
        session.closed = False
        return session
