"""
tests/conftest.py – Shared fixtures and offline fakes.

Provides:
  1. The --integration flag (live tests are skipped without it).
  2. Deterministic test keys (Hardhat dev accounts, DO NOT use with real funds).
  3. FakeRest – records signed submissions instead of sending them.
  4. FakeConnection / FakeConnector – scripted websocket for StreamHub tests.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from eth_account import Account

from alphasec_sdk import Config, SignedTransaction, Token
from alphasec_sdk.types import ApiResponse


# ---------------------------------------------------------------------------
# pytest plugin: --integration flag + skip logic
# ---------------------------------------------------------------------------

def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="Run integration tests against the AlphaSec testnet",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--integration"):
        return
    skip_integration = pytest.mark.skip(reason="pass --integration to run against testnet")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

SETTLEMENT_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TRADING_KEY    = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
SESSION_KEY    = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"

SETTLEMENT_ADDRESS = Account.from_key(SETTLEMENT_KEY).address
TRADING_ADDRESS    = Account.from_key(TRADING_KEY).address
SESSION_ADDRESS    = Account.from_key(SESSION_KEY).address

USDT_L1_ADDRESS = "0x" + "22" * 20

TOKENS = [
    Token(token_id="1", l1_symbol="KAIA"),
    Token(token_id="2", l1_symbol="USDT", l1_address=USDT_L1_ADDRESS),
    Token(token_id="3", l1_symbol="BTC"),
]


@pytest.fixture
def full_config() -> Config:
    """Both keys present: sessions and trading work."""
    return Config(l1_private_key=SETTLEMENT_KEY, l2_private_key=TRADING_KEY)


@pytest.fixture
def trading_config() -> Config:
    """Trading key only: settlement operations must fail with KeyMissing."""
    return Config(l1_address=SETTLEMENT_ADDRESS, l2_private_key=TRADING_KEY)


@pytest.fixture
def read_only_config() -> Config:
    return Config(l1_address=SETTLEMENT_ADDRESS)


# ---------------------------------------------------------------------------
# REST fake
# ---------------------------------------------------------------------------

class FakeRest:
    """
    Stand-in for AsyncAlphaSecRestClient.

    Every submission is appended to ``calls`` as (endpoint, args).  Set
    ``errors[endpoint]`` to an exception to make that endpoint raise it.
    """

    def __init__(self) -> None:
        self.calls:  list[tuple[str, tuple[Any, ...]]] = []
        self.errors: dict[str, Exception] = {}
        self.closed = False

    def _record(self, endpoint: str, *args: Any) -> None:
        self.calls.append((endpoint, args))
        error = self.errors.get(endpoint)
        if error is not None:
            raise error

    def endpoints(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def close(self) -> None:
        self.closed = True

    async def get_tokens(self) -> list[Token]:
        self._record("get_tokens")
        return list(TOKENS)

    async def submit_order(self, tx: SignedTransaction) -> str:
        self._record("submit_order", tx)
        return tx.tx_hash

    async def submit_cancel(self, tx: SignedTransaction) -> str:
        self._record("submit_cancel", tx)
        return tx.tx_hash

    async def submit_cancel_all(self, tx: SignedTransaction) -> str:
        self._record("submit_cancel_all", tx)
        return tx.tx_hash

    async def submit_modify(self, tx: SignedTransaction) -> str:
        self._record("submit_modify", tx)
        return tx.tx_hash

    async def submit_stop_order(self, tx: SignedTransaction) -> str:
        self._record("submit_stop_order", tx)
        return tx.tx_hash

    async def submit_transfer(self, tx: SignedTransaction) -> str:
        self._record("submit_transfer", tx)
        return tx.tx_hash

    async def submit_withdraw(self, tx: SignedTransaction) -> str:
        self._record("submit_withdraw", tx)
        return tx.tx_hash

    async def submit_session_create(self, session_id: str, tx: SignedTransaction) -> ApiResponse:
        self._record("submit_session_create", session_id, tx)
        return ApiResponse(code=200, result=tx.tx_hash)

    async def submit_session_update(self, session_id: str, tx: SignedTransaction) -> ApiResponse:
        self._record("submit_session_update", session_id, tx)
        return ApiResponse(code=200, result=tx.tx_hash)

    async def submit_session_delete(self, tx: SignedTransaction) -> ApiResponse:
        self._record("submit_session_delete", tx)
        return ApiResponse(code=200, result=tx.tx_hash)


@pytest.fixture
def fake_rest() -> FakeRest:
    return FakeRest()


# ---------------------------------------------------------------------------
# Websocket fakes
# ---------------------------------------------------------------------------

# Pushed into a FakeConnection's inbox to end iteration (server closed).
_CLOSE = object()


class FakeConnection:
    """Scripted websocket: records sent frames, yields pushed frames."""

    def __init__(self) -> None:
        self.sent:   list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, frame: str) -> None:
        self.sent.append(json.loads(frame))

    async def close(self) -> None:
        self.closed = True

    def push(self, frame: Any) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server closing the socket."""
        self._inbox.put_nowait(_CLOSE)

    def sent_methods(self) -> list[tuple[str, list[str], int]]:
        return [(f["method"], f["params"]["channels"], f["id"]) for f in self.sent]

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """
    Connector for StreamHub.  Each call returns a fresh FakeConnection,
    unless ``fail_next`` is positive, in which case it raises OSError.
    """

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.fail_next   = 0
        self.attempts    = 0

    async def __call__(self, url: str) -> FakeConnection:
        self.attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionRefusedError(f"refused {url}")
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    @property
    def current(self) -> FakeConnection:
        return self.connections[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop     = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


def data_frame(channel: str, result: Any) -> dict[str, Any]:
    return {"method": "subscription", "params": {"channel": channel, "result": result}}


def trade_result(trade_id: str = "7", market_id: str = "1_2") -> list[dict[str, Any]]:
    return [{
        "tradeId":      trade_id,
        "marketId":     market_id,
        "price":        "0.1",
        "quantity":     "50",
        "buyOrderId":   "0xb",
        "sellOrderId":  "0xs",
        "createdAt":    1_700_000_000_000,
        "isBuyerMaker": False,
    }]


