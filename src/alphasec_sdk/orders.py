"""
orders.py – Trading command payloads signed on the trading layer.

Every trading action is a command byte followed by compact JSON, carried in
the ``data`` field of an EIP-1559 transaction (see signing.sign_transaction):

  0x02  transfer       {l1owner, to, value}
  0x11  token transfer {l1owner, to, value, token}
  0x21  place          {l1owner, baseToken, quoteToken, side, price, quantity,
                        orderType, orderMode, tpsl?}
  0x22  cancel         {l1owner, orderId}
  0x23  cancel-all     {l1owner}
  0x24  modify         {l1owner, orderId, newPrice, newQty, orderMode}
  0x25  stop           {l1owner, baseToken, quoteToken, stopPrice, price,
                        quantity, side, orderType, orderMode}

Commands are signed with the trading key, or with the settlement key when
the account neither trades through a session wallet nor has a trading key
(CredentialStore.trading_account).

Withdrawals are not command payloads: they are contract calls on the L2
system contract (native token) or the gateway router (other tokens),
always signed by the settlement key that receives the funds.

Prices and quantities are truncated to the precision the matching engine
accepts before they are encoded (normalize_price_quantity).  All validation
happens here, before a transaction is signed, so a malformed order never
reaches the network.

Usage
-----
    signer = OrderSigner(credentials, l1_owner=config.l1_address,
                         chain_id=config.trading_chain_id)
    order  = Order(market="KAIA/USDT", side=OrderSide.BUY,
                   price="1", quantity="5")
    tx     = signer.sign_order(order, base_token="1", quote_token="2",
                               nonce=now_ms)
"""

from __future__ import annotations

import json
import logging
import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Optional, Union

from eth_abi import encode as abi_encode
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from pydantic import BaseModel, ConfigDict

from .credentials import CredentialStore, KeyRole
from .errors import InvalidParameters
from .signing import (
    GATEWAY_ROUTER_CONTRACT_ADDR,
    SYSTEM_CONTRACT_ADDR,
    SignedTransaction,
    sign_transaction,
)
from .types import NATIVE_TOKEN_ID, DexCommand, OrderMode, OrderSide, OrderType

logger = logging.getLogger(__name__)

# Anything accepted where a price or quantity is expected.
Numeric = Union[Decimal, int, float, str]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Every token uses 18 decimals on the trading layer.
_TOKEN_DECIMALS = 18

_WITHDRAW_ETH_SELECTOR      = function_signature_to_4byte_selector("withdrawEth(address)")
_OUTBOUND_TRANSFER_SELECTOR = function_signature_to_4byte_selector(
    "outboundTransfer(address,address,uint256,bytes)"
)

# Extra data forwarded with a router withdrawal.
_OUTBOUND_DATA = b"0x"


# ---------------------------------------------------------------------------
# Order record
# ---------------------------------------------------------------------------

class Order(BaseModel):
    """
    An order as placed through the SDK.

    ``order_id`` is filled in with the correlation id (transaction hash)
    once the exchange accepts the submission.
    """
    market:     str
    side:       OrderSide
    price:      Numeric
    quantity:   Numeric
    order_type: OrderType = OrderType.LIMIT
    order_mode: OrderMode = OrderMode.BASE
    tp_limit:   Optional[Numeric] = None
    sl_trigger: Optional[Numeric] = None
    sl_limit:   Optional[Numeric] = None
    order_id:   Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)


# ---------------------------------------------------------------------------
# Precision rules
# ---------------------------------------------------------------------------

# (lower bound, decimal places) checked top-down; the last entry catches < 1.
_PRICE_PRECISION: list[tuple[Decimal, int]] = [
    (Decimal(10000), 0),
    (Decimal(1000),  1),
    (Decimal(100),   2),
    (Decimal(10),    3),
    (Decimal(1),     4),
    (Decimal(0),     8),
]

_QUANTITY_PRECISION: list[tuple[Decimal, int]] = [
    (Decimal(10000), 5),
    (Decimal(1000),  4),
    (Decimal(100),   3),
    (Decimal(10),    2),
    (Decimal(1),     1),
    (Decimal(0),     5),
]


def to_decimal(value: Numeric, field: str = "value") -> Decimal:
    """Convert a caller-supplied number to Decimal or raise InvalidParameters."""
    if isinstance(value, bool):
        raise InvalidParameters(f"{field} must be a number, got {value!r}")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidParameters(f"{field} {value!r} is not a valid number") from None
    if not dec.is_finite():
        raise InvalidParameters(f"{field} must be finite, got {value!r}")
    return dec


def _precision_for(value: Decimal, table: list[tuple[Decimal, int]]) -> int:
    for bound, places in table:
        if value >= bound:
            return places
    return table[-1][1]


def _truncate(value: Decimal, places: int) -> Decimal:
    try:
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)
    except InvalidOperation:
        raise InvalidParameters(f"{value} is too large to encode") from None


def format_decimal(value: Decimal) -> str:
    """Plain decimal notation without trailing zeros: 112400.0 -> '112400'."""
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def normalize_price_quantity(price: Numeric, quantity: Numeric) -> tuple[Decimal, Decimal]:
    """
    Truncate ``price`` and ``quantity`` to the precision the exchange accepts.

    Precision depends on magnitude: prices of 10000 and above are whole
    numbers, 1000+ keep one decimal, 100+ two, 10+ three, 1+ four and
    anything smaller eight.  Quantities keep five decimals at 10000+, four
    at 1000+, three at 100+, two at 10+, one at 1+ and five below one.
    Values are truncated, never rounded up.

    Raises
    ------
    InvalidParameters if either value is negative or not a number.
    """
    p = to_decimal(price, "price")
    q = to_decimal(quantity, "quantity")
    if p < 0:
        raise InvalidParameters("price cannot be negative")
    if q < 0:
        raise InvalidParameters("quantity cannot be negative")
    return (
        _truncate(p, _precision_for(p, _PRICE_PRECISION)),
        _truncate(q, _precision_for(q, _QUANTITY_PRECISION)),
    )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _positive(value: Numeric, field: str) -> Decimal:
    dec = to_decimal(value, field)
    if dec <= 0:
        raise InvalidParameters(f"{field} must be positive, got {value!r}")
    return dec


def _require_order_id(order_id: str) -> str:
    if not isinstance(order_id, str) or not order_id.strip():
        raise InvalidParameters("order_id must be a non-empty string")
    return order_id


def _require_token(token: str, field: str) -> str:
    if not isinstance(token, str) or not token:
        raise InvalidParameters(f"{field} must be a non-empty token id")
    return token


def _require_address(address: str, field: str) -> str:
    if not isinstance(address, str) or not _ADDRESS_RE.match(address):
        raise InvalidParameters(f"{field} {address!r} is not a 0x-prefixed 20-byte address")
    return address


def to_base_units(value: Numeric, field: str = "value") -> int:
    """
    Convert a token amount to 18-decimal base units, truncating dust.

    Raises InvalidParameters unless the result is positive.
    """
    scaled = _positive(value, field).scaleb(_TOKEN_DECIMALS)
    units  = int(scaled.to_integral_value(rounding=ROUND_DOWN))
    if units <= 0:
        raise InvalidParameters(f"{field} {value!r} is below the smallest token unit")
    return units


def _tpsl(
    tp_limit:   Optional[Numeric],
    sl_trigger: Optional[Numeric],
    sl_limit:   Optional[Numeric],
) -> Optional[dict[str, str]]:
    """Build the optional take-profit / stop-loss block."""
    if sl_limit is not None and sl_trigger is None:
        raise InvalidParameters("sl_limit requires sl_trigger")

    block: dict[str, str] = {}
    if tp_limit is not None:
        block["tpLimit"] = format_decimal(_positive(tp_limit, "tp_limit"))
    if sl_trigger is not None:
        block["slTrigger"] = format_decimal(_positive(sl_trigger, "sl_trigger"))
    if sl_limit is not None:
        block["slLimit"] = format_decimal(_positive(sl_limit, "sl_limit"))
    return block or None


def validate_order(order: Order) -> tuple[Decimal, Decimal, Optional[dict[str, str]]]:
    """
    Check an order locally and return its normalized (price, quantity, tpsl).

    A market order still needs a positive placeholder price.
    """
    _positive(order.price, "price")
    _positive(order.quantity, "quantity")
    tpsl = _tpsl(order.tp_limit, order.sl_trigger, order.sl_limit)
    price, quantity = normalize_price_quantity(order.price, order.quantity)
    if quantity == 0:
        raise InvalidParameters(
            f"quantity {order.quantity!r} truncates to zero at the exchange precision"
        )
    return price, quantity, tpsl


def validate_stop_order(
    stop_price: Numeric, price: Numeric, quantity: Numeric,
) -> tuple[Decimal, Decimal, Decimal]:
    """Return normalized (stop_price, price, quantity) for a stop order."""
    _positive(stop_price, "stop_price")
    _positive(price, "price")
    _positive(quantity, "quantity")
    norm_price, norm_qty = normalize_price_quantity(price, quantity)
    norm_stop, _         = normalize_price_quantity(stop_price, quantity)
    return norm_stop, norm_price, norm_qty


def encode_command(command: DexCommand, body: dict[str, Any]) -> bytes:
    """Command byte followed by compact JSON (no whitespace)."""
    return bytes([int(command)]) + json.dumps(body, separators=(",", ":")).encode()


# ---------------------------------------------------------------------------
# Order signer
# ---------------------------------------------------------------------------

class OrderSigner:
    """
    Builds and signs trading commands.

    Parameters
    ----------
    credentials     : CredentialStore supplying the signing account
    l1_owner        : Account address the orders are placed for
    chain_id        : Trading-layer chain id (Config.trading_chain_id)
    session_enabled : Trade through a session wallet (Config.session_enabled);
                      when False and there is no trading key, commands are
                      signed with the settlement key
    """

    def __init__(
        self,
        credentials:     CredentialStore,
        l1_owner:        str,
        chain_id:        int,
        session_enabled: bool = False,
    ) -> None:
        self._credentials     = credentials
        self._l1_owner        = l1_owner
        self._chain_id        = chain_id
        self._session_enabled = session_enabled

    @property
    def l1_owner(self) -> str:
        return self._l1_owner

    def wallet(self) -> LocalAccount:
        """The account trading commands are signed with (KeyMissing if none)."""
        return self._credentials.trading_account(self._session_enabled)

    def check_signer(self) -> None:
        """Raise KeyMissing now if no account can sign trading commands."""
        self.wallet()

    # ------------------------------------------------------------------
    # Payload builders
    # ------------------------------------------------------------------

    def order_payload(self, order: Order, base_token: str, quote_token: str) -> bytes:
        """Validate ``order`` and return its 0x21 command payload."""
        price, quantity, tpsl = validate_order(order)

        body: dict[str, Any] = {
            "l1owner":    self._l1_owner,
            "baseToken":  _require_token(base_token, "base_token"),
            "quoteToken": _require_token(quote_token, "quote_token"),
            "side":       int(order.side),
            "price":      format_decimal(price),
            "quantity":   format_decimal(quantity),
            "orderType":  int(order.order_type),
            "orderMode":  int(order.order_mode),
        }
        if tpsl is not None:
            body["tpsl"] = tpsl
        return encode_command(DexCommand.ORDER, body)

    def cancel_payload(self, order_id: str) -> bytes:
        return encode_command(DexCommand.CANCEL, {
            "l1owner": self._l1_owner,
            "orderId": _require_order_id(order_id),
        })

    def cancel_all_payload(self) -> bytes:
        return encode_command(DexCommand.CANCEL_ALL, {"l1owner": self._l1_owner})

    def modify_payload(
        self,
        order_id:   str,
        new_price:  Numeric,
        new_qty:    Numeric,
        order_mode: OrderMode = OrderMode.BASE,
    ) -> bytes:
        _require_order_id(order_id)
        _positive(new_price, "new_price")
        _positive(new_qty, "new_qty")
        price, quantity = normalize_price_quantity(new_price, new_qty)
        return encode_command(DexCommand.MODIFY, {
            "l1owner":   self._l1_owner,
            "orderId":   order_id,
            "newPrice":  format_decimal(price),
            "newQty":    format_decimal(quantity),
            "orderMode": int(OrderMode(order_mode)),
        })

    def stop_order_payload(
        self,
        base_token:  str,
        quote_token: str,
        stop_price:  Numeric,
        price:       Numeric,
        quantity:    Numeric,
        side:        OrderSide,
        order_type:  OrderType = OrderType.LIMIT,
        order_mode:  OrderMode = OrderMode.BASE,
    ) -> bytes:
        norm_stop, norm_price, norm_qty = validate_stop_order(stop_price, price, quantity)
        return encode_command(DexCommand.STOP_ORDER, {
            "l1owner":    self._l1_owner,
            "baseToken":  _require_token(base_token, "base_token"),
            "quoteToken": _require_token(quote_token, "quote_token"),
            "stopPrice":  format_decimal(norm_stop),
            "price":      format_decimal(norm_price),
            "quantity":   format_decimal(norm_qty),
            "side":       int(OrderSide(side)),
            "orderType":  int(OrderType(order_type)),
            "orderMode":  int(OrderMode(order_mode)),
        })

    def transfer_payload(self, to: str, value: Numeric) -> bytes:
        """0x02 native token transfer to another trading-layer account."""
        return encode_command(DexCommand.TRANSFER, {
            "l1owner": self._l1_owner,
            "to":      _require_address(to, "to"),
            "value":   format_decimal(_positive(value, "value")),
        })

    def token_transfer_payload(self, to: str, value: Numeric, token_id: str) -> bytes:
        """0x11 transfer of ``token_id`` to another trading-layer account."""
        return encode_command(DexCommand.TOKEN_TRANSFER, {
            "l1owner": self._l1_owner,
            "to":      _require_address(to, "to"),
            "value":   format_decimal(_positive(value, "value")),
            "token":   _require_token(token_id, "token_id"),
        })

    def withdraw_call(
        self, token_id: str, value: Numeric, token_l1_address: str = "",
    ) -> tuple[str, int, bytes]:
        """
        Build the contract call that withdraws ``value`` of ``token_id`` to
        the account's settlement-layer address.

        Returns (destination contract, transaction value, call data).  The
        native token goes through the system contract with the amount as
        transaction value; every other token goes through the gateway
        router and needs its settlement-layer contract address.
        """
        token_id = _require_token(token_id, "token_id")
        amount   = to_base_units(value)
        owner    = to_checksum_address(_require_address(self._l1_owner, "l1_owner"))

        if token_id == NATIVE_TOKEN_ID:
            data = _WITHDRAW_ETH_SELECTOR + abi_encode(["address"], [owner])
            return SYSTEM_CONTRACT_ADDR, amount, data

        token_address = to_checksum_address(_require_address(token_l1_address, "token_l1_address"))
        data = _OUTBOUND_TRANSFER_SELECTOR + abi_encode(
            ["address", "address", "uint256", "bytes"],
            [token_address, owner, amount, _OUTBOUND_DATA],
        )
        return GATEWAY_ROUTER_CONTRACT_ADDR, 0, data

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, payload: bytes, nonce: int) -> SignedTransaction:
        """Sign ``payload`` with the trading wallet (KeyMissing if absent)."""
        tx = sign_transaction(self.wallet(), payload, self._chain_id, nonce)
        logger.debug(
            "Signed command 0x%02x nonce=%d tx_hash=%s", payload[0], nonce, tx.tx_hash,
        )
        return tx

    def sign_order(
        self, order: Order, base_token: str, quote_token: str, nonce: int,
    ) -> SignedTransaction:
        return self.sign(self.order_payload(order, base_token, quote_token), nonce)

    def sign_cancel(self, order_id: str, nonce: int) -> SignedTransaction:
        return self.sign(self.cancel_payload(order_id), nonce)

    def sign_cancel_all(self, nonce: int) -> SignedTransaction:
        return self.sign(self.cancel_all_payload(), nonce)

    def sign_modify(
        self,
        order_id:   str,
        new_price:  Numeric,
        new_qty:    Numeric,
        order_mode: OrderMode,
        nonce:      int,
    ) -> SignedTransaction:
        return self.sign(self.modify_payload(order_id, new_price, new_qty, order_mode), nonce)

    def sign_stop_order(
        self,
        base_token:  str,
        quote_token: str,
        stop_price:  Numeric,
        price:       Numeric,
        quantity:    Numeric,
        side:        OrderSide,
        order_type:  OrderType,
        order_mode:  OrderMode,
        nonce:       int,
    ) -> SignedTransaction:
        payload = self.stop_order_payload(
            base_token, quote_token, stop_price, price, quantity, side, order_type, order_mode,
        )
        return self.sign(payload, nonce)

    def sign_transfer(self, to: str, value: Numeric, nonce: int) -> SignedTransaction:
        return self.sign(self.transfer_payload(to, value), nonce)

    def sign_token_transfer(
        self, to: str, value: Numeric, token_id: str, nonce: int,
    ) -> SignedTransaction:
        return self.sign(self.token_transfer_payload(to, value, token_id), nonce)

    def sign_withdraw(
        self,
        token_id:         str,
        value:            Numeric,
        nonce:            int,
        token_l1_address: str = "",
    ) -> SignedTransaction:
        """Sign a withdrawal with the settlement key (KeyMissing if absent)."""
        to, amount, data = self.withdraw_call(token_id, value, token_l1_address)
        signer = self._credentials.signer(KeyRole.SETTLEMENT)
        tx     = sign_transaction(signer, data, self._chain_id, nonce, to=to, value=amount)
        logger.debug("Signed withdrawal of token %s nonce=%d tx_hash=%s", token_id, nonce, tx.tx_hash)
        return tx
