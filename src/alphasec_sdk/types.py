"""
types.py – Pydantic v2 models for the AlphaSec exchange API.

Maps to the JSON shapes served under ``/api/v1`` by AlphaSec.  The API
uses camelCase keys; every model here exposes snake_case attributes and
accepts either spelling on input.

All monetary values (price, quantity, fee) are strings in the API to
preserve precision; this SDK keeps that convention and stores them as
str – convert with Decimal for arithmetic.

Deserialisation
---------------
Use Model.model_validate(raw_dict) to parse API responses:

    ticker = Ticker.model_validate(raw["result"][0])
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum, unique
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidParameters


# ---------------------------------------------------------------------------
# Chain identifiers
# ---------------------------------------------------------------------------

KAIA_MAINNET_CHAIN_ID: int = 8217
KAIA_KAIROS_CHAIN_ID:  int = 1001

# AlphaSec L2 chain id, used when signing trading transactions.
ALPHASEC_CHAIN_ID: int = 41001

# Token id of the chain's native token (KAIA).
NATIVE_TOKEN_ID: str = "1"


@unique
class Network(str, Enum):
    """AlphaSec deployment network."""
    KAIROS  = "kairos"
    MAINNET = "mainnet"

    @classmethod
    def parse(cls, value: "Network | str") -> "Network":
        if isinstance(value, Network):
            return value
        if not isinstance(value, str):
            raise InvalidParameters(
                f"invalid network {value!r}, use 'mainnet' or 'kairos'"
            )
        try:
            return cls(value.lower())
        except ValueError:
            raise InvalidParameters(
                f"invalid network {value!r}, use 'mainnet' or 'kairos'"
            ) from None

    @property
    def label(self) -> str:
        return self.value

    @property
    def settlement_chain_id(self) -> int:
        """Chain id of the Kaia settlement layer (EIP-712 session domain)."""
        if self is Network.MAINNET:
            return KAIA_MAINNET_CHAIN_ID
        return KAIA_KAIROS_CHAIN_ID

    @property
    def chain_id(self) -> int:
        """Chain id of the AlphaSec trading layer."""
        return ALPHASEC_CHAIN_ID


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

@unique
class OrderSide(IntEnum):
    BUY  = 0
    SELL = 1


@unique
class OrderType(IntEnum):
    LIMIT  = 0
    MARKET = 1


@unique
class OrderMode(IntEnum):
    """Which asset the order quantity is denominated in."""
    BASE  = 0
    QUOTE = 1


@unique
class OrderStatus(str, Enum):
    NEW              = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED           = "FILLED"
    CANCELED         = "CANCELED"
    REJECTED         = "REJECTED"
    EXPIRED          = "EXPIRED"


@unique
class DexCommand(IntEnum):
    """Leading byte of every command payload carried in a transaction."""
    SESSION        = 0x01
    TRANSFER       = 0x02
    TOKEN_TRANSFER = 0x11
    ORDER          = 0x21
    CANCEL     = 0x22
    CANCEL_ALL = 0x23
    MODIFY     = 0x24
    STOP_ORDER = 0x25


@unique
class SessionCommand(IntEnum):
    CREATE = 1
    UPDATE = 2
    DELETE = 3


# ---------------------------------------------------------------------------
# Shared validator helpers
# ---------------------------------------------------------------------------

def _validate_decimal_string(v: str, field: str = "value") -> str:
    """Reject empty strings and non-parseable decimals."""
    if not v or not v.strip():
        raise ValueError(f"{field} must be a non-empty decimal string")
    try:
        Decimal(v)
    except InvalidOperation:
        raise ValueError(f"{field} '{v}' is not a valid decimal string")
    return v


class _ApiModel(BaseModel):
    # Ids and amounts arrive as either JSON numbers or strings.
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
        coerce_numbers_to_str=True,
    )


# ---------------------------------------------------------------------------
# Session (local record)
# ---------------------------------------------------------------------------

class Session(BaseModel):
    """
    Local bookkeeping for a session credential registered by this agent.

    session_id     : caller-chosen name of the session
    wallet_address : address of the session (trading-layer) wallet
    created_at     : caller-supplied timestamp (ms) of the last create/update
    expires_at     : expiry timestamp (ms); must be after created_at
    metadata       : opaque bytes attached to the session
    signature      : last EIP-712 registration signature (0x hex)
    """
    session_id:     str
    wallet_address: str
    created_at:     int
    expires_at:     int
    metadata:       bytes = b""
    signature:      str

    model_config = ConfigDict(validate_assignment=True)

    @model_validator(mode="after")
    def validate_window(self) -> "Session":
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"expires_at {self.expires_at} must be after created_at {self.created_at}"
            )
        return self

    def is_valid(self, now: int) -> bool:
        """True while ``now`` is before the expiry timestamp."""
        return now < self.expires_at


# ---------------------------------------------------------------------------
# API envelope
# ---------------------------------------------------------------------------

class ApiResponse(BaseModel):
    """Envelope returned by every AlphaSec endpoint: {code, result, errMsg}."""
    code:   Optional[int] = None
    result: Any           = None
    error:  Optional[str] = Field(default=None, alias="errMsg")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def success(self) -> bool:
        return self.code == 200

    def result_string(self) -> str:
        """Result as a plain string (no JSON quoting for string values)."""
        if isinstance(self.result, str):
            return self.result
        if self.result is not None:
            return str(self.result)
        return ""


# ---------------------------------------------------------------------------
# Market data models
# ---------------------------------------------------------------------------

class Token(_ApiModel):
    token_id:   str
    l1_symbol:  str
    l1_address: str = ""
    decimals:   int = Field(default=18, alias="l1Decimal")
    is_active:  bool = False


class Market(_ApiModel):
    market_id:      str
    base_token_id:  str
    quote_token_id: str
    ticker:         str = ""
    description:    str = ""
    exchange:       str = ""
    market_type:    str = Field(default="", alias="type")
    listed:         bool = False
    taker_fee:      str = "0"
    maker_fee:      str = "0"


class Ticker(_ApiModel):
    market_id:        str
    base_token_id:    str = ""
    quote_token_id:   str = ""
    price:            str
    open_24h:         str = Field(default="0", alias="open24h")
    high_24h:         str = Field(default="0", alias="high24h")
    low_24h:          str = Field(default="0", alias="low24h")
    volume_24h:       str = Field(default="0", alias="volume24h")
    quote_volume_24h: str = Field(default="0", alias="quoteVolume24h")

    @field_validator("price")
    @classmethod
    def validate_decimal(cls, v: str) -> str:
        return _validate_decimal_string(v, "price")


class Trade(_ApiModel):
    """A single public trade."""
    trade_id:       str
    market_id:      str
    price:          str
    quantity:       str
    buy_order_id:   str = ""
    sell_order_id:  str = ""
    created_at:     int = 0
    is_buyer_maker: bool = False

    @field_validator("price", "quantity")
    @classmethod
    def validate_decimal(cls, v: str) -> str:
        return _validate_decimal_string(v)


# ---------------------------------------------------------------------------
# Account models
# ---------------------------------------------------------------------------

class Balance(_ApiModel):
    token_id: str
    locked:   Optional[str] = None
    unlocked: Optional[str] = None

    def available(self, decimals: int) -> Optional[Decimal]:
        """Unlocked balance converted from base units."""
        if self.unlocked is None:
            return None
        return Decimal(self.unlocked) / (Decimal(10) ** decimals)


class SessionInfo(_ApiModel):
    """Session as reported by /api/v1/wallet/session."""
    name:            str
    session_address: str
    owner_address:   str
    expiry:          int
    applied:         bool = False


class OrderInfo(_ApiModel):
    """Order as reported by the read endpoints."""
    order_id:           str
    account_address:    str = ""
    market_id:          str
    side:               str
    order_type:         str
    price:              str
    orig_qty:           str
    orig_quote_order_qty: str = "0"
    status:             OrderStatus
    tx_hash:            str = ""
    created_at:         int = 0
    updated_at:         int = 0
    executed_qty:       str = "0"
    executed_quote_qty: str = "0"

    @property
    def is_active(self) -> bool:
        return self.status in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)


# ---------------------------------------------------------------------------
# Token metadata
# ---------------------------------------------------------------------------

class TokenMetadata:
    """Symbol <-> token id lookups built from the token list."""

    def __init__(self, tokens: list[Token]) -> None:
        self.symbol_to_id: dict[str, str] = {t.l1_symbol: t.token_id for t in tokens}
        self.id_to_symbol: dict[str, str] = {t.token_id: t.l1_symbol for t in tokens}
        self.id_to_address: dict[str, str] = {t.token_id: t.l1_address for t in tokens}

    def token_id(self, symbol: str) -> str:
        try:
            return self.symbol_to_id[symbol]
        except KeyError:
            raise InvalidParameters(f"unknown token symbol {symbol!r}") from None

    def token_address(self, token_id: str) -> str:
        """Settlement-layer contract address of a token ('' if unknown)."""
        return self.id_to_address.get(token_id, "")

    def split_market(self, market: str) -> tuple[str, str]:
        """'KAIA/USDT' -> (base token id, quote token id)."""
        parts = market.split("/")
        if len(parts) != 2 or not all(parts):
            raise InvalidParameters(
                f"invalid market format {market!r}, expected BASE/QUOTE"
            )
        return self.token_id(parts[0]), self.token_id(parts[1])

    def market_to_market_id(self, market: str) -> str:
        base, quote = self.split_market(market)
        return f"{base}_{quote}"

    def market_id_to_market(self, market_id: str) -> str:
        parts = market_id.split("_")
        if len(parts) != 2:
            raise InvalidParameters(f"invalid market id {market_id!r}")
        try:
            return f"{self.id_to_symbol[parts[0]]}/{self.id_to_symbol[parts[1]]}"
        except KeyError as exc:
            raise InvalidParameters(f"unknown token id {exc.args[0]!r}") from None
