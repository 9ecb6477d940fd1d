"""
messages.py – Typed stream frames for the AlphaSec websocket.

The server speaks a JSON-RPC-like protocol:

  client → {"method": "subscribe",   "params": {"channels": ["trade@1_2"]}, "id": 1}
  client → {"method": "unsubscribe", "params": {"channels": ["trade@1_2"]}, "id": 2}
  server → {"id": 1, "result": ...}                                   (ack)
  server → {"method": "subscription",
            "params": {"channel": "trade@1_2", "result": ...}}       (data)

Channels are ``<type>@<target>``: trade, ticker and depth take a market id
(``<baseTokenId>_<quoteTokenId>``), userEvent takes an account address.

decode_frame() turns a raw frame into SubscriptionAck, one of the
StreamMessage variants, or None for frames that carry nothing for the
caller.  A data frame whose payload does not match its channel type is
delivered as UnknownMessage rather than dropped.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from .types import Ticker, Trade, _ApiModel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Channel names
# ---------------------------------------------------------------------------

CHANNEL_TRADE      = "trade"
CHANNEL_TICKER     = "ticker"
CHANNEL_DEPTH      = "depth"
CHANNEL_USER_EVENT = "userEvent"

CHANNEL_TYPES = (CHANNEL_TRADE, CHANNEL_TICKER, CHANNEL_DEPTH, CHANNEL_USER_EVENT)


def split_channel(channel: str) -> tuple[str, str]:
    """'trade@1_2' -> ('trade', '1_2'); a channel without '@' has no target."""
    kind, _, target = channel.partition("@")
    return kind, target


def subscribe_frame(channel: str, request_id: int) -> str:
    return json.dumps({
        "method": "subscribe",
        "params": {"channels": [channel]},
        "id":     request_id,
    })


def unsubscribe_frame(channel: str, request_id: int) -> str:
    return json.dumps({
        "method": "unsubscribe",
        "params": {"channels": [channel]},
        "id":     request_id,
    })


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------

class DepthUpdate(_ApiModel):
    """Order book delta; each level is [price, quantity]."""
    market_id: str
    bids:      list[list[str]] = []
    asks:      list[list[str]] = []
    first_id:  int = 0
    final_id:  int = 0
    time:      int = 0


class _UserEventBase(_ApiModel):
    topic:           str
    event_type:      str = ""
    event_time:      int = 0
    block_number:    int = 0
    account_address: str = ""
    tx_hash:         str = ""


class OrderEvent(_UserEventBase):
    order_id:             str
    market_id:            str
    side:                 str = ""
    order_type:           str = ""
    order_mode:           int = 0
    orig_price:           str = "0"
    orig_qty:             str = "0"
    orig_quote_order_qty: str = "0"
    status:               str = ""
    created_at:           int = 0
    executed_qty:         str = "0"
    executed_quote_qty:   str = "0"
    last_price:           str = "0"
    last_qty:             str = "0"
    fee:                  str = "0"
    fee_token_id:         Optional[str] = None
    trade_id:             str = ""
    is_maker:             bool = False


class AccountEvent(_UserEventBase):
    token_id:     str
    amount:       str
    from_address: Optional[str] = None
    to_address:   Optional[str] = None


UserEvent = Union[OrderEvent, AccountEvent]

_USER_EVENTS: dict[str, type[BaseModel]] = {
    "ORDER":   OrderEvent,
    "ACCOUNT": AccountEvent,
}


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

class SubscriptionAck(BaseModel):
    """Server reply to a subscribe / unsubscribe request."""
    id:     int
    result: Any = None
    error:  Any = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StreamMessage(BaseModel):
    """Base class of every message delivered to the consumer."""
    channel: str

    @property
    def stream_type(self) -> str:
        return split_channel(self.channel)[0]

    @property
    def market(self) -> str:
        """Channel target: market id for market streams, address for userEvent."""
        return split_channel(self.channel)[1]


class TradeMessage(StreamMessage):
    trades: list[Trade]


class TickerMessage(StreamMessage):
    tickers: list[Ticker]


class DepthMessage(StreamMessage):
    depth: DepthUpdate


class UserEventMessage(StreamMessage):
    event: UserEvent

    @property
    def topic(self) -> str:
        return self.event.topic.upper()


class UnknownMessage(StreamMessage):
    """A frame the SDK could not map onto a known channel type."""
    raw: dict[str, Any]


Frame = Union[SubscriptionAck, StreamMessage]


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

def _as_list(result: Any) -> list[Any]:
    if result is None:
        return []
    return result if isinstance(result, list) else [result]


def _decode_data(channel: str, result: Any) -> StreamMessage:
    kind, _ = split_channel(channel)

    if kind == CHANNEL_TRADE:
        return TradeMessage(
            channel=channel,
            trades=[Trade.model_validate(t) for t in _as_list(result)],
        )
    if kind == CHANNEL_TICKER:
        return TickerMessage(
            channel=channel,
            tickers=[Ticker.model_validate(t) for t in _as_list(result)],
        )
    if kind == CHANNEL_DEPTH:
        data = dict(result)
        for side in ("bids", "asks"):
            if data.get(side) is None:
                data[side] = []
        return DepthMessage(channel=channel, depth=DepthUpdate.model_validate(data))
    if kind == CHANNEL_USER_EVENT:
        topic = str(result.get("topic", "")).upper()
        model = _USER_EVENTS.get(topic)
        if model is None:
            raise ValueError(f"unknown user event topic {topic!r}")
        return UserEventMessage(channel=channel, event=model.model_validate(result))

    raise ValueError(f"unknown channel type {kind!r}")


def decode_frame(raw: Union[str, bytes]) -> Optional[Frame]:
    """
    Decode one websocket frame.

    Returns
    -------
    SubscriptionAck   for replies carrying an ``id``
    StreamMessage     for subscription data
    None              for frames that are neither (e.g. server notices)

    Raises
    ------
    ValueError if the frame is not a JSON object.
    """
    msg = json.loads(raw)
    if not isinstance(msg, dict):
        raise ValueError(f"expected a JSON object, got {type(msg).__name__}")

    if "id" in msg and msg.get("id") is not None and "method" not in msg:
        return SubscriptionAck.model_validate(msg)

    params = msg.get("params")
    if msg.get("method") != "subscription" or not isinstance(params, dict):
        logger.debug("Ignoring frame without subscription data: %s", msg)
        return None

    channel = str(params.get("channel", ""))
    try:
        return _decode_data(channel, params.get("result"))
    except (ValidationError, ValueError, TypeError, AttributeError) as exc:
        logger.debug("Could not decode %s payload (%s); delivering raw", channel, exc)
        return UnknownMessage(channel=channel, raw=msg)
