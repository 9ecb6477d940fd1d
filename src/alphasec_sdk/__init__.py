"""
AlphaSec SDK – Python SDK for the AlphaSec orderbook exchange.

Provides:
  - Unified façade                     (client.py      → Agent)
  - Immutable configuration            (config.py      → Config)
  - Role-tagged signing keys           (credentials.py → CredentialStore)
  - EIP-712 / EIP-1559 signing         (signing.py     → sign_typed_data, sign_transaction)
  - Session wallet management          (session.py     → SessionManager)
  - Order / cancel / modify payloads   (orders.py      → OrderSigner)
  - Typed Pydantic v2 models           (types.py, messages.py)
  - Async + sync REST clients          (rest.py        → AsyncAlphaSecRestClient, AlphaSecRestClient)
  - Multiplexed websocket stream       (ws.py          → StreamHub)

Quickstart
----------
    import asyncio
    from alphasec_sdk import Agent, Config, Network

    async def main() -> None:
        config = Config(network=Network.KAIROS, l1_address="0x...")
        async with Agent(config) as agent:
            print(await agent.get_tickers("KAIA/USDT"))

            await agent.start()
            await agent.subscribe("ticker@KAIA/USDT")
            async for msg in agent.take_message_receiver():
                print(msg)

    asyncio.run(main())
"""

from .errors import (
    AlphaSecError,
    KeyMissing,
    InvalidParameters,
    InvalidExpiry,
    EncodingError,
    SubmissionRejected,
    OrderNotFound,
    SessionNotFound,
    ConnectionLost,
    ReceiverAlreadyTaken,
)
from .types import (
    # Networks
    Network,
    ALPHASEC_CHAIN_ID,
    KAIA_MAINNET_CHAIN_ID,
    KAIA_KAIROS_CHAIN_ID,
    NATIVE_TOKEN_ID,
    # Enums
    OrderSide,
    OrderType,
    OrderMode,
    OrderStatus,
    DexCommand,
    SessionCommand,
    # Records
    Session,
    ApiResponse,
    # Market / account data
    Token,
    TokenMetadata,
    Market,
    Ticker,
    Trade,
    Balance,
    SessionInfo,
    OrderInfo,
)
from .config import Config
from .credentials import CredentialStore, KeyRole
from .signing import (
    SignedMessage,
    SignedTransaction,
    build_eip712_domain,
    sign_typed_data,
    recover_typed_signer,
    sign_transaction,
)
from .orders import Order, OrderSigner, normalize_price_quantity
from .session import SessionManager, SignedSessionRequest
from .registry import Subscription, SubscriptionRegistry, SubscriptionState
from .messages import (
    StreamMessage,
    TradeMessage,
    TickerMessage,
    DepthMessage,
    DepthUpdate,
    UserEventMessage,
    OrderEvent,
    AccountEvent,
    UnknownMessage,
    decode_frame,
)
from .rest import AlphaSecRestClient, AsyncAlphaSecRestClient, AlphaSecAPIError
from .ws import ConnectionState, ConnectionStats, MessageReceiver, StreamConfig, StreamHub
from .client import Agent

__all__ = [
    # Errors
    "AlphaSecError",
    "KeyMissing",
    "InvalidParameters",
    "InvalidExpiry",
    "EncodingError",
    "SubmissionRejected",
    "OrderNotFound",
    "SessionNotFound",
    "ConnectionLost",
    "ReceiverAlreadyTaken",
    # Networks
    "Network",
    "ALPHASEC_CHAIN_ID",
    "KAIA_MAINNET_CHAIN_ID",
    "KAIA_KAIROS_CHAIN_ID",
    "NATIVE_TOKEN_ID",
    # Enums
    "OrderSide",
    "OrderType",
    "OrderMode",
    "OrderStatus",
    "DexCommand",
    "SessionCommand",
    # Records
    "Session",
    "ApiResponse",
    "Order",
    # Market / account data
    "Token",
    "TokenMetadata",
    "Market",
    "Ticker",
    "Trade",
    "Balance",
    "SessionInfo",
    "OrderInfo",
    # Config / keys
    "Config",
    "CredentialStore",
    "KeyRole",
    # Signing
    "SignedMessage",
    "SignedTransaction",
    "build_eip712_domain",
    "sign_typed_data",
    "recover_typed_signer",
    "sign_transaction",
    "OrderSigner",
    "normalize_price_quantity",
    # Sessions
    "SessionManager",
    "SignedSessionRequest",
    # Streaming
    "Subscription",
    "SubscriptionRegistry",
    "SubscriptionState",
    "StreamMessage",
    "TradeMessage",
    "TickerMessage",
    "DepthMessage",
    "DepthUpdate",
    "UserEventMessage",
    "OrderEvent",
    "AccountEvent",
    "UnknownMessage",
    "decode_frame",
    "ConnectionState",
    "ConnectionStats",
    "MessageReceiver",
    "StreamConfig",
    "StreamHub",
    # REST
    "AlphaSecRestClient",
    "AsyncAlphaSecRestClient",
    "AlphaSecAPIError",
    # Unified façade
    "Agent",
]

__version__ = "0.1.0"
