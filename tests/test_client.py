"""
tests/test_client.py – Unit tests for the Agent façade.

All tests run offline: the REST client is replaced by FakeRest and the
stream hub by a StreamHub on a FakeConnector.
They verify:
  1. A trading-only agent can order and cancel but not manage sessions.
  2. A read-only agent fails with KeyMissing before any request is made.
  3. Create then update session yields an updated record.
  4. Market symbols are translated to market ids for subscriptions.
  5. Nonces are strictly increasing.
  6. Without sessions a settlement-only agent signs orders with its L1 key.
  7. Transfers sign with the trading wallet, withdrawals with the L1 key.
"""

from __future__ import annotations

import json

import pytest
from eth_account import Account

from alphasec_sdk import (
    Agent,
    Config,
    InvalidParameters,
    KeyMissing,
    OrderSide,
    StreamConfig,
    StreamHub,
)
from conftest import (
    SESSION_KEY,
    SETTLEMENT_ADDRESS,
    SETTLEMENT_KEY,
    TRADING_ADDRESS,
    TRADING_KEY,
    FakeConnector,
    FakeRest,
    wait_until,
)


NOW     = 1_700_000_000_000
EXPIRES = NOW + 3_600_000

RECIPIENT = "0x" + "ab" * 20


def _agent(config: Config, rest: FakeRest, connector: FakeConnector | None = None) -> Agent:
    hub = StreamHub(
        StreamConfig(url=config.ws_url, reconnect_delay=0.0, max_reconnect_delay=0.0),
        connector=connector or FakeConnector(),
    )
    return Agent(config, rest=rest, hub=hub)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Construction / lifecycle
# ---------------------------------------------------------------------------

class TestAgentConstruction:
    def test_wires_one_config(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        assert agent.orders.l1_owner == full_config.l1_address
        assert agent.rest is fake_rest

    def test_repr_hides_keys(self, full_config: Config, fake_rest: FakeRest) -> None:
        text = repr(_agent(full_config, fake_rest))
        assert TRADING_KEY[2:] not in text
        assert "settlement, trading" in text

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, full_config: Config, fake_rest: FakeRest) -> None:
        async with _agent(full_config, fake_rest) as agent:
            assert isinstance(agent, Agent)
        assert fake_rest.closed

    def test_nonces_increase(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        nonces = [agent._next_nonce() for _ in range(5)]
        assert nonces == sorted(set(nonces))


# ---------------------------------------------------------------------------
# Key roles
# ---------------------------------------------------------------------------

class TestTradingOnlyAgent:
    @pytest.mark.asyncio
    async def test_session_ops_need_settlement_key(
        self, trading_config: Config, fake_rest: FakeRest,
    ) -> None:
        agent = _agent(trading_config, fake_rest)
        with pytest.raises(KeyMissing):
            await agent.create_session("s1", None, NOW, EXPIRES)
        with pytest.raises(KeyMissing):
            await agent.delete_session("s1", None, NOW)
        assert fake_rest.calls == []

    @pytest.mark.asyncio
    async def test_order_then_cancel(self, trading_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(trading_config, fake_rest)
        order_id = await agent.order("KAIA/USDT", OrderSide.BUY, price="0.1", quantity="50")
        result   = await agent.cancel(order_id)

        assert fake_rest.endpoints() == ["get_tokens", "submit_order", "submit_cancel"]
        order_tx  = fake_rest.calls[1][1][0]
        cancel_tx = fake_rest.calls[2][1][0]
        assert order_id == order_tx.tx_hash
        assert result == cancel_tx.tx_hash
        assert Account.recover_transaction(order_tx.raw_transaction) == TRADING_ADDRESS
        assert cancel_tx.nonce > order_tx.nonce


class TestReadOnlyAgent:
    @pytest.mark.asyncio
    async def test_order_fails_before_network(
        self, read_only_config: Config, fake_rest: FakeRest,
    ) -> None:
        agent = _agent(read_only_config, fake_rest)
        with pytest.raises(KeyMissing):
            await agent.order("KAIA/USDT", OrderSide.BUY, price="1", quantity="1")
        with pytest.raises(KeyMissing):
            await agent.cancel_all()
        assert fake_rest.calls == []


class TestSettlementOnlyAgent:
    @pytest.mark.asyncio
    async def test_orders_signed_with_settlement_key(self, fake_rest: FakeRest) -> None:
        agent = _agent(Config(l1_private_key=SETTLEMENT_KEY), fake_rest)
        await agent.order("KAIA/USDT", OrderSide.BUY, price="0.1", quantity="50")
        order_tx = fake_rest.calls[1][1][0]
        assert Account.recover_transaction(order_tx.raw_transaction) == SETTLEMENT_ADDRESS

    @pytest.mark.asyncio
    async def test_session_flag_selects_trading_key(self, fake_rest: FakeRest) -> None:
        config = Config(l1_private_key=SETTLEMENT_KEY, l2_private_key=TRADING_KEY, session_enabled=True)
        await _agent(config, fake_rest).cancel_all()
        tx = fake_rest.calls[0][1][0]
        assert Account.recover_transaction(tx.raw_transaction) == TRADING_ADDRESS


# ---------------------------------------------------------------------------
# Trading
# ---------------------------------------------------------------------------

class TestTrading:
    @pytest.mark.asyncio
    async def test_invalid_quantity_fails_before_network(
        self, full_config: Config, fake_rest: FakeRest,
    ) -> None:
        agent = _agent(full_config, fake_rest)
        with pytest.raises(InvalidParameters):
            await agent.order("KAIA/USDT", OrderSide.BUY, price="1", quantity="abc")
        assert fake_rest.calls == []

    @pytest.mark.asyncio
    async def test_invalid_side(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        with pytest.raises(InvalidParameters):
            await agent.order("KAIA/USDT", 7, price="1", quantity="1")  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_unknown_market(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        with pytest.raises(InvalidParameters):
            await agent.order("DOGE/USDT", OrderSide.SELL, price="1", quantity="1")
        assert "submit_order" not in fake_rest.endpoints()

    @pytest.mark.asyncio
    async def test_metadata_loaded_once(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        await agent.order("KAIA/USDT", OrderSide.BUY, price="1", quantity="1")
        await agent.order("BTC/USDT", OrderSide.SELL, price="60000", quantity="0.01")
        assert fake_rest.endpoints().count("get_tokens") == 1

    @pytest.mark.asyncio
    async def test_modify_stop_and_cancel_all(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        await agent.modify("0xabc", "1.2", "5")
        await agent.stop_order("KAIA/USDT", "0.9", "0.89", "10", OrderSide.SELL)
        await agent.cancel_all()
        assert fake_rest.endpoints() == [
            "submit_modify", "get_tokens", "submit_stop_order", "submit_cancel_all",
        ]


class TestTransfers:
    @pytest.mark.asyncio
    async def test_native_transfer(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent  = _agent(full_config, fake_rest)
        result = await agent.native_transfer(RECIPIENT, "2.5")
        assert fake_rest.endpoints() == ["submit_transfer"]
        tx = fake_rest.calls[0][1][0]
        assert result == tx.tx_hash
        assert Account.recover_transaction(tx.raw_transaction) == TRADING_ADDRESS

    @pytest.mark.asyncio
    async def test_token_transfer_resolves_symbol(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        await agent.token_transfer(RECIPIENT, "3", "USDT")
        assert fake_rest.endpoints() == ["get_tokens", "submit_transfer"]
        payload = json.dumps({"to": RECIPIENT, "value": "3", "token": "2"}, separators=(",", ":"))
        assert payload[1:-1].encode().hex() in fake_rest.calls[1][1][0].raw_transaction

    @pytest.mark.asyncio
    async def test_bad_recipient_fails_before_network(
        self, full_config: Config, fake_rest: FakeRest,
    ) -> None:
        with pytest.raises(InvalidParameters):
            await _agent(full_config, fake_rest).token_transfer("0x12", "3", "USDT")
        assert fake_rest.calls == []

    @pytest.mark.asyncio
    async def test_withdraw_signed_with_settlement_key(
        self, full_config: Config, fake_rest: FakeRest,
    ) -> None:
        agent = _agent(full_config, fake_rest)
        await agent.withdraw_token("USDT", "4")
        assert fake_rest.endpoints() == ["get_tokens", "submit_withdraw"]
        tx = fake_rest.calls[1][1][0]
        assert Account.recover_transaction(tx.raw_transaction) == SETTLEMENT_ADDRESS

    @pytest.mark.asyncio
    async def test_withdraw_needs_settlement_key(
        self, trading_config: Config, fake_rest: FakeRest,
    ) -> None:
        with pytest.raises(KeyMissing):
            await _agent(trading_config, fake_rest).withdraw_token("KAIA", "1")
        assert fake_rest.calls == []

    @pytest.mark.asyncio
    async def test_withdraw_token_without_l1_address(
        self, full_config: Config, fake_rest: FakeRest,
    ) -> None:
        with pytest.raises(InvalidParameters):
            await _agent(full_config, fake_rest).withdraw_token("BTC", "1")
        assert "submit_withdraw" not in fake_rest.endpoints()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class TestAgentSessions:
    @pytest.mark.asyncio
    async def test_create_then_update(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent   = _agent(full_config, fake_rest)
        created = await agent.create_session("s1", SESSION_KEY, NOW, EXPIRES)
        updated = await agent.update_session("s1", SESSION_KEY, NOW + 10, EXPIRES * 2)
        assert updated is not None
        assert updated.expires_at == EXPIRES * 2
        assert updated.signature != created.signature
        assert agent.sessions.get("s1") == updated

    @pytest.mark.asyncio
    async def test_delete(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        await agent.create_session("s1", None, NOW, EXPIRES)
        await agent.delete_session("s1", None, NOW + 1)
        assert agent.sessions.sessions() == []


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestAgentSubscribe:
    @pytest.mark.asyncio
    async def test_symbol_translated_to_market_id(
        self, full_config: Config, fake_rest: FakeRest,
    ) -> None:
        agent  = _agent(full_config, fake_rest)
        handle = await agent.subscribe("trade@KAIA/USDT")
        again  = await agent.subscribe("trade@1_2")
        assert handle == again
        assert "trade@1_2" in agent.registry

    @pytest.mark.asyncio
    async def test_user_event_address(self, full_config: Config, fake_rest: FakeRest) -> None:
        agent = _agent(full_config, fake_rest)
        await agent.subscribe(f"userEvent@{TRADING_ADDRESS}")
        assert f"userEvent@{TRADING_ADDRESS}" in agent.registry
        assert fake_rest.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("channel", ["trade", "trade@", "kline@1_2", "userEvent@KAIA/USDT"])
    async def test_invalid_channel(
        self, full_config: Config, fake_rest: FakeRest, channel: str,
    ) -> None:
        with pytest.raises(InvalidParameters):
            await _agent(full_config, fake_rest).subscribe(channel)

    @pytest.mark.asyncio
    async def test_stream_through_agent(self, full_config: Config, fake_rest: FakeRest) -> None:
        connector = FakeConnector()
        agent = _agent(full_config, fake_rest, connector)
        await agent.start()
        try:
            await wait_until(lambda: agent.hub.is_connected)
            handle = await agent.subscribe("ticker@1_2")
            assert connector.current.sent_methods() == [("subscribe", ["ticker@1_2"], handle)]
            assert await agent.unsubscribe(handle)
        finally:
            await agent.close()
