"""
Response schemas for the exchange P2P API.

Validated with pydantic; unknown fields are ignored so new exchange fields
never break parsing. Ids arrive as strings or ints and are normalized to str.
"""

from datetime import datetime
from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from core.models import parse_datetime

# Exchange advertisement status codes
AD_STATUS_ONLINE = 10
AD_STATUS_OFFLINE = 20
AD_STATUS_COMPLETED = 30


def _as_str(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


ExchangeId = Annotated[str, BeforeValidator(_as_str)]
OptionalExchangeId = Annotated[Optional[str], BeforeValidator(_as_str)]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _ExchangeModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ApiEnvelope(_ExchangeModel):
    """Common wrapper: ``retCode``/``retMsg`` (or legacy snake_case) + ``result``."""
    ret_code: int = Field(default=0, validation_alias=_alias("retCode", "ret_code"))
    ret_msg: str = Field(default="", validation_alias=_alias("retMsg", "ret_msg"))
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.ret_code == 0


class ServerTime(_ExchangeModel):
    time_second: OptionalExchangeId = Field(default=None, validation_alias=_alias("timeSecond", "time_second"))
    time_nano: OptionalExchangeId = Field(default=None, validation_alias=_alias("timeNano", "time_nano"))

    def to_ms(self) -> int:
        if self.time_nano:
            return int(self.time_nano) // 1_000_000
        if self.time_second:
            return int(self.time_second) * 1000
        raise ValueError("server time response carries neither timeNano nor timeSecond")


class P2POrder(_ExchangeModel):
    order_id: ExchangeId = Field(validation_alias=_alias("id", "orderId"))
    item_id: ExchangeId = Field(default="", validation_alias=_alias("itemId", "item_id"))
    status: int = 0
    amount: float = 0.0
    price: float = 0.0
    quantity: float = 0.0
    user_id: OptionalExchangeId = Field(default=None, validation_alias=_alias("userId", "user_id"))
    target_user_id: OptionalExchangeId = Field(default=None, validation_alias=_alias("targetUserId", "target_user_id"))
    target_nick_name: Optional[str] = Field(default=None, validation_alias=_alias("targetNickName", "target_nick_name"))
    create_date: OptionalExchangeId = Field(default=None, validation_alias=_alias("createDate", "create_date"))

    @property
    def created_at(self) -> Optional[datetime]:
        return parse_datetime(self.create_date)


class P2PMessage(_ExchangeModel):
    message_id: ExchangeId = Field(validation_alias=_alias("id", "msgUuid", "msg_uuid"))
    message: str = ""
    user_id: OptionalExchangeId = Field(default=None, validation_alias=_alias("userId", "user_id"))
    content_type: str = Field(default="str", validation_alias=_alias("contentType", "content_type"))
    create_date: OptionalExchangeId = Field(default=None, validation_alias=_alias("createDate", "create_date"))

    @property
    def created_at(self) -> Optional[datetime]:
        return parse_datetime(self.create_date)


class P2PAdItem(_ExchangeModel):
    item_id: ExchangeId = Field(validation_alias=_alias("id", "itemId"))
    status: int = 0
    price: float = 0.0
    quantity: float = 0.0
    last_quantity: float = Field(default=0.0, validation_alias=_alias("lastQuantity", "last_quantity"))
    token_id: Optional[str] = Field(default=None, validation_alias=_alias("tokenId", "token_id"))
    currency_id: Optional[str] = Field(default=None, validation_alias=_alias("currencyId", "currency_id"))

    @property
    def is_online(self) -> bool:
        return self.status == AD_STATUS_ONLINE


class PaymentMethod(_ExchangeModel):
    payment_id: ExchangeId = Field(validation_alias=_alias("id", "paymentId"))
    payment_type: OptionalExchangeId = Field(default=None, validation_alias=_alias("paymentType", "payment_type"))
    bank_name: str = Field(default="", validation_alias=_alias("bankName", "bank_name"))
    account_no: str = Field(default="", validation_alias=_alias("accountNo", "account_no"))
    real_name: str = Field(default="", validation_alias=_alias("realName", "real_name"))
    payment_name: str = Field(default="", validation_alias=_alias("paymentName", "payment_name"))

    @model_validator(mode="before")
    @classmethod
    def lift_payment_config(cls, data: Any) -> Any:
        # Payment display name lives under paymentConfigVo on the list endpoint
        if isinstance(data, dict) and not data.get("paymentName"):
            config = data.get("paymentConfigVo") or {}
            if isinstance(config, dict) and config.get("paymentName"):
                data = {**data, "paymentName": config["paymentName"]}
        return data

    def label(self) -> str:
        return " ".join(filter(None, [self.payment_name, self.bank_name])).strip()


def parse_list(model: type, result: Any, *keys: str) -> List[Any]:
    """
    Extract a list of ``model`` from a result payload.

    The exchange wraps lists under varying keys (``items``, ``list``) or returns
    them bare; ``keys`` names the candidates in priority order.
    """
    if result is None:
        return []
    rows: Any = result
    if isinstance(result, dict):
        rows = []
        for key in keys or ("items", "list"):
            if isinstance(result.get(key), list):
                rows = result[key]
                break
    return [model.model_validate(row) for row in rows or []]
