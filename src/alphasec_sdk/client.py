"""
client.py – Unified Agent façade.

Single entry point that owns the credential store, the async REST client,
the order signer, the session manager and the stream hub, all wired to one
Config so keys and endpoints are configured once.

Usage
-----
    import asyncio
    from alphasec_sdk import Agent, Config, OrderSide

    async def main() -> None:
        config = Config.from_env()
        async with Agent(config) as agent:
            await agent.initialize()

            # Trading (signed with the trading-layer key)
            order_id = await agent.order("KAIA/USDT", OrderSide.BUY, price="0.1", quantity="50")
            await agent.cancel(order_id)

            # Real-time data
            await agent.start()
            await agent.subscribe("trade@KAIA/USDT")
            async for msg in agent.take_message_receiver():
                print(msg.channel, msg)

    asyncio.run(main())
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Optional

from pydantic import ValidationError

from .config import Config
from .credentials import CredentialStore, KeyLike, KeyRole
from .errors import InvalidParameters
from .messages import CHANNEL_TYPES, CHANNEL_USER_EVENT, split_channel
from .orders import (
    Numeric,
    Order,
    OrderSigner,
    to_base_units,
    validate_order,
    validate_stop_order,
)
from .registry import SubscriptionRegistry
from .rest import AsyncAlphaSecRestClient
from .session import SessionManager
from .types import (
    Balance,
    Market,
    OrderInfo,
    OrderMode,
    OrderSide,
    OrderType,
    Session,
    SessionInfo,
    Ticker,
    Token,
    TokenMetadata,
    Trade,
)
from .ws import MessageReceiver, StreamConfig, StreamHub

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class Agent:
    """
    Unified façade for the AlphaSec SDK.

    Parameters
    ----------
    config        : Config (network, URLs, optional L1 / L2 keys)
    stream_config : Overrides for the stream hub (reconnect, queue size)
    rest          : Pre-built REST client (mainly for tests)
    hub           : Pre-built StreamHub (mainly for tests)

    An agent whose Config carries no keys is read-only: trading and session
    operations raise KeyMissing before anything is signed or sent.
    """

    def __init__(
        self,
        config: Config,
        *,
        stream_config: Optional[StreamConfig] = None,
        rest: Optional[AsyncAlphaSecRestClient] = None,
        hub: Optional[StreamHub] = None,
    ) -> None:
        self.config      = config
        self.credentials = CredentialStore.from_config(config)
        self.rest        = rest or AsyncAlphaSecRestClient(config)
        self.orders      = OrderSigner(
            self.credentials,
            config.l1_address,
            config.trading_chain_id,
            session_enabled=config.session_enabled,
        )
        self.sessions    = SessionManager(
            self.credentials,
            self.rest,
            l1_owner=config.l1_address,
            settlement_chain_id=config.settlement_chain_id,
            trading_chain_id=config.trading_chain_id,
        )
        self.hub = hub or StreamHub(stream_config or StreamConfig(url=config.ws_url))

        self._metadata:      Optional[TokenMetadata] = None
        self._metadata_lock  = asyncio.Lock()
        self._last_nonce     = 0

    def __repr__(self) -> str:
        return (
            f"Agent(network={self.config.network.value}, account={self.config.l1_address}, "
            f"credentials={self.credentials!r})"
        )

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "Agent":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the stream (if running) and close the REST session."""
        await self.hub.stop()
        await self.rest.close()

    # ------------------------------------------------------------------
    # Token metadata
    # ------------------------------------------------------------------

    async def initialize(self) -> TokenMetadata:
        """Load the token list so market symbols can be resolved."""
        async with self._metadata_lock:
            tokens = await self.rest.get_tokens()
            self._metadata = TokenMetadata(tokens)
            logger.info("Loaded metadata for %d tokens", len(tokens))
            return self._metadata

    async def token_metadata(self) -> TokenMetadata:
        if self._metadata is None:
            return await self.initialize()
        return self._metadata

    async def _market_id(self, market: str) -> str:
        """'KAIA/USDT' -> '<base>_<quote>'; anything without '/' passes through."""
        if "/" not in market:
            return market
        metadata = await self.token_metadata()
        return metadata.market_to_market_id(market)

    def _next_nonce(self) -> int:
        """Millisecond timestamp, bumped so consecutive transactions never share one."""
        now = time.time_ns() // 1_000_000
        self._last_nonce = max(now, self._last_nonce + 1)
        return self._last_nonce

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    @property
    def registry(self) -> SubscriptionRegistry:
        return self.hub.registry

    async def start(self) -> None:
        await self.hub.start()

    async def stop(self) -> None:
        await self.hub.stop()

    async def subscribe(self, channel: str) -> int:
        """
        Subscribe to ``<type>@<target>`` and return the handle.

        ``type`` is one of trade, ticker, depth, userEvent.  Market targets
        may be given as symbols ("trade@KAIA/USDT") or market ids
        ("trade@1_2"); userEvent takes an account address.
        """
        kind, target = split_channel(channel)
        if "@" not in channel or not target:
            raise InvalidParameters(f"invalid channel {channel!r}, expected <type>@<target>")
        if kind not in CHANNEL_TYPES:
            raise InvalidParameters(
                f"unknown stream type {kind!r}, expected one of {', '.join(CHANNEL_TYPES)}"
            )

        if kind == CHANNEL_USER_EVENT:
            if not _ADDRESS_RE.match(target):
                raise InvalidParameters(f"userEvent target must be an address, got {target!r}")
        else:
            target = await self._market_id(target)

        return await self.hub.subscribe(f"{kind}@{target}")

    async def unsubscribe(self, handle: int) -> bool:
        return await self.hub.unsubscribe(handle)

    def take_message_receiver(self) -> MessageReceiver:
        return self.hub.take_message_receiver()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes = b"",
    ) -> Session:
        """Register a session wallet (signed by the settlement key)."""
        return await self.sessions.create(session_id, session_key, now, expires, metadata)

    async def update_session(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes = b"",
    ) -> Optional[Session]:
        return await self.sessions.update(session_id, session_key, now, expires, metadata)

    async def delete_session(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
    ) -> None:
        await self.sessions.delete(session_id, session_key, now)

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def order(
        self,
        market:     str,
        side:       OrderSide,
        price:      Numeric,
        quantity:   Numeric,
        order_type: OrderType = OrderType.LIMIT,
        order_mode: OrderMode = OrderMode.BASE,
        tp_limit:   Optional[Numeric] = None,
        sl_trigger: Optional[Numeric] = None,
        sl_limit:   Optional[Numeric] = None,
    ) -> str:
        """
        Place an order and return its correlation id.

        The id is the exchange's result when it returns one, else the
        transaction hash; either can be passed to cancel() / modify().
        """
        try:
            order = Order(
                market=market,
                side=side,
                price=price,
                quantity=quantity,
                order_type=order_type,
                order_mode=order_mode,
                tp_limit=tp_limit,
                sl_trigger=sl_trigger,
                sl_limit=sl_limit,
            )
        except ValidationError as exc:
            raise InvalidParameters(f"invalid order: {exc}") from exc

        # Local checks first so bad input never costs a network round trip.
        self.orders.check_signer()
        validate_order(order)

        metadata    = await self.token_metadata()
        base, quote = metadata.split_market(market)
        tx          = self.orders.sign_order(order, base, quote, self._next_nonce())
        order_id    = await self.rest.submit_order(tx)
        order.order_id = order_id
        logger.info(
            "Placed %s %s %s @ %s on %s -> %s",
            order.order_type.name, order.side.name, order.quantity, order.price, market, order_id,
        )
        return order_id

    async def cancel(self, order_id: str) -> str:
        tx     = self.orders.sign_cancel(order_id, self._next_nonce())
        result = await self.rest.submit_cancel(tx)
        logger.info("Cancelled order %s", order_id)
        return result

    async def cancel_all(self) -> str:
        tx     = self.orders.sign_cancel_all(self._next_nonce())
        result = await self.rest.submit_cancel_all(tx)
        logger.info("Cancelled all orders for %s", self.config.l1_address)
        return result

    async def modify(
        self,
        order_id:   str,
        new_price:  Numeric,
        new_qty:    Numeric,
        order_mode: OrderMode = OrderMode.BASE,
    ) -> str:
        tx     = self.orders.sign_modify(order_id, new_price, new_qty, order_mode, self._next_nonce())
        result = await self.rest.submit_modify(tx)
        logger.info("Modified order %s -> %s @ %s", order_id, new_qty, new_price)
        return result

    async def stop_order(
        self,
        market:     str,
        stop_price: Numeric,
        price:      Numeric,
        quantity:   Numeric,
        side:       OrderSide,
        order_type: OrderType = OrderType.LIMIT,
        order_mode: OrderMode = OrderMode.BASE,
    ) -> str:
        """Place a stop order that triggers at ``stop_price``."""
        self.orders.check_signer()
        validate_stop_order(stop_price, price, quantity)
        metadata    = await self.token_metadata()
        base, quote = metadata.split_market(market)
        tx = self.orders.sign_stop_order(
            base, quote, stop_price, price, quantity, side, order_type, order_mode, self._next_nonce(),
        )
        result = await self.rest.submit_stop_order(tx)
        logger.info("Placed stop order on %s at %s -> %s", market, stop_price, result)
        return result

    # ------------------------------------------------------------------
    # Transfers and withdrawals
    # ------------------------------------------------------------------

    async def native_transfer(self, to: str, value: Numeric) -> str:
        """Send ``value`` of the native token to another trading-layer account."""
        tx     = self.orders.sign_transfer(to, value, self._next_nonce())
        result = await self.rest.submit_transfer(tx)
        logger.info("Transferred %s native to %s -> %s", value, to, result)
        return result

    async def token_transfer(self, to: str, value: Numeric, token: str) -> str:
        """Send ``value`` of the token with symbol ``token`` to ``to``."""
        # Validate before the metadata round trip.
        self.orders.check_signer()
        self.orders.transfer_payload(to, value)
        metadata = await self.token_metadata()
        tx       = self.orders.sign_token_transfer(to, value, metadata.token_id(token), self._next_nonce())
        result   = await self.rest.submit_transfer(tx)
        logger.info("Transferred %s %s to %s -> %s", value, token, to, result)
        return result

    async def withdraw_token(self, token: str, value: Numeric) -> str:
        """
        Withdraw ``value`` of ``token`` to the account's settlement-layer
        address.  Always signed with the settlement key.
        """
        self.credentials.signer(KeyRole.SETTLEMENT)  # KeyMissing before any request
        to_base_units(value)
        metadata = await self.token_metadata()
        token_id = metadata.token_id(token)
        tx = self.orders.sign_withdraw(
            token_id, value, self._next_nonce(), token_l1_address=metadata.token_address(token_id),
        )
        result = await self.rest.submit_withdraw(tx)
        logger.info("Withdrew %s %s to %s -> %s", value, token, self.config.l1_address, result)
        return result

    # ------------------------------------------------------------------
    # Read-only wrappers
    # ------------------------------------------------------------------

    async def get_markets(self) -> list[Market]:
        return await self.rest.get_markets()

    async def get_tickers(self, market: Optional[str] = None) -> list[Ticker]:
        market_id = await self._market_id(market) if market else None
        return await self.rest.get_tickers(market_id)

    async def get_tokens(self) -> list[Token]:
        return await self.rest.get_tokens()

    async def get_trades(self, market: str, limit: Optional[int] = None) -> list[Trade]:
        return await self.rest.get_trades(await self._market_id(market), limit)

    async def get_balance(self, address: Optional[str] = None) -> list[Balance]:
        return await self.rest.get_balance(address or self.config.l1_address)

    async def get_sessions(self, address: Optional[str] = None) -> list[SessionInfo]:
        return await self.rest.get_sessions(address or self.config.l1_address)

    async def get_open_orders(
        self,
        address: Optional[str] = None,
        market:  Optional[str] = None,
        limit:   Optional[int] = None,
    ) -> list[OrderInfo]:
        market_id = await self._market_id(market) if market else None
        return await self.rest.get_open_orders(address or self.config.l1_address, market_id, limit)

    async def get_order(self, order_id: str) -> Optional[OrderInfo]:
        return await self.rest.get_order(order_id)
