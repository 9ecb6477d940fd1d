"""
tests/test_session.py – Unit tests for session wallet registration.

All tests run offline against FakeRest.
They verify:
  1. An expiry not after the timestamp raises InvalidExpiry with no submission.
  2. The registration is signed by the settlement key, the transaction by
     the session wallet.
  3. The session payload is 0x01 followed by sorted compact JSON.
  4. Create then update yields an updated record with a new signature.
  5. Delete always clears the local record; an unknown session is not fatal.
  6. A signed request can be resubmitted unchanged.
  7. Expired local records are left out of the active set and flagged on update.
"""

from __future__ import annotations

import base64
import json

import pytest
from eth_account import Account

from alphasec_sdk import (
    ALPHASEC_CHAIN_ID,
    KAIA_KAIROS_CHAIN_ID,
    CredentialStore,
    InvalidExpiry,
    InvalidParameters,
    KeyMissing,
    SessionCommand,
    SessionManager,
    SessionNotFound,
    SignedSessionRequest,
    SubmissionRejected,
    recover_typed_signer,
)
from alphasec_sdk.session import session_payload
from conftest import (
    SESSION_ADDRESS,
    SESSION_KEY,
    SETTLEMENT_ADDRESS,
    SETTLEMENT_KEY,
    TRADING_ADDRESS,
    TRADING_KEY,
    FakeRest,
)


NOW     = 1_700_000_000_000
EXPIRES = NOW + 3_600_000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _manager(
    rest: FakeRest,
    settlement: bool = True,
    trading: bool = True,
) -> SessionManager:
    creds = CredentialStore(
        settlement_key=SETTLEMENT_KEY if settlement else None,
        trading_key=TRADING_KEY if trading else None,
    )
    return SessionManager(
        creds,
        rest,
        l1_owner=SETTLEMENT_ADDRESS,
        settlement_chain_id=KAIA_KAIROS_CHAIN_ID,
        trading_chain_id=ALPHASEC_CHAIN_ID,
    )


def _payload_body(request: SignedSessionRequest, metadata: bytes = b"") -> tuple[int, dict]:
    """Rebuild the session payload and check the transaction carries it."""
    payload = session_payload(
        request.command,
        request.wallet_address,
        request.expires_at,
        request.created_at,
        SETTLEMENT_ADDRESS,
        request.registration.signature_bytes,
        metadata,
    )
    assert payload.hex() in request.transaction.raw_transaction
    return payload[0], json.loads(payload[1:])


# ---------------------------------------------------------------------------
# Validation before signing
# ---------------------------------------------------------------------------

class TestSessionValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("expires", [NOW, NOW - 1, 0])
    async def test_expiry_not_after_now(self, fake_rest: FakeRest, expires: int) -> None:
        manager = _manager(fake_rest)
        with pytest.raises(InvalidExpiry) as exc_info:
            await manager.create("s1", None, NOW, expires)
        assert exc_info.value.now == NOW
        assert fake_rest.calls == []
        assert manager.get("s1") is None

    @pytest.mark.asyncio
    async def test_update_expiry_checked(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        with pytest.raises(InvalidExpiry):
            await manager.update("s1", None, NOW, NOW)
        assert fake_rest.calls == []

    def test_invalid_expiry_is_invalid_parameters(self) -> None:
        assert issubclass(InvalidExpiry, InvalidParameters)

    def test_empty_session_id(self, fake_rest: FakeRest) -> None:
        with pytest.raises(InvalidParameters):
            _manager(fake_rest).build_create("", None, NOW, EXPIRES)

    @pytest.mark.parametrize("now", [-1, 1.5, True])
    def test_bad_timestamp(self, fake_rest: FakeRest, now: object) -> None:
        with pytest.raises(InvalidParameters):
            _manager(fake_rest).build_create("s1", None, now, EXPIRES)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_missing_settlement_key(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest, settlement=False)
        with pytest.raises(KeyMissing) as exc_info:
            await manager.create("s1", None, NOW, EXPIRES)
        assert exc_info.value.role == "settlement"
        assert fake_rest.calls == []

    def test_no_wallet_key(self, fake_rest: FakeRest) -> None:
        with pytest.raises(KeyMissing):
            _manager(fake_rest, trading=False).build_create("s1", None, NOW, EXPIRES)

    def test_alternate_key_without_trading_key(self, fake_rest: FakeRest) -> None:
        request = _manager(fake_rest, trading=False).build_create("s1", SESSION_KEY, NOW, EXPIRES)
        assert request.wallet_address == SESSION_ADDRESS


# ---------------------------------------------------------------------------
# Signed request contents
# ---------------------------------------------------------------------------

class TestSignedSessionRequest:
    def test_registration_signed_by_settlement_key(self, fake_rest: FakeRest) -> None:
        request = _manager(fake_rest).build_create("s1", None, NOW, EXPIRES)
        assert recover_typed_signer(request.registration) == SETTLEMENT_ADDRESS
        assert request.registration.domain["chainId"] == KAIA_KAIROS_CHAIN_ID
        assert request.registration.message == {
            "sessionWallet": TRADING_ADDRESS,
            "expiry":        EXPIRES,
            "nonce":         NOW,
        }

    def test_transaction_signed_by_session_wallet(self, fake_rest: FakeRest) -> None:
        request = _manager(fake_rest).build_create("s1", SESSION_KEY, NOW, EXPIRES)
        assert Account.recover_transaction(request.transaction.raw_transaction) == SESSION_ADDRESS
        assert request.transaction.chain_id == ALPHASEC_CHAIN_ID
        assert request.transaction.nonce == NOW

    def test_payload_shape(self, fake_rest: FakeRest) -> None:
        request = _manager(fake_rest).build_create("s1", None, NOW, EXPIRES, metadata=b"bot-1")
        command, body = _payload_body(request, b"bot-1")
        assert command == 0x01
        assert list(body) == sorted(body)
        assert body["type"] == 1
        assert body["publickey"] == TRADING_ADDRESS
        assert body["expiresAt"] == EXPIRES
        assert body["nonce"] == NOW
        assert body["l1owner"] == SETTLEMENT_ADDRESS
        assert base64.b64decode(body["l1signature"]) == request.registration.signature_bytes
        assert base64.b64decode(body["metadata"]) == b"bot-1"

    def test_payload_omits_empty_metadata(self) -> None:
        payload = session_payload(
            SessionCommand.DELETE, TRADING_ADDRESS, 0, NOW, SETTLEMENT_ADDRESS, b"\x01" * 65,
        )
        body = json.loads(payload[1:])
        assert "metadata" not in body
        assert body["type"] == 3
        assert b" " not in payload

    def test_deterministic(self, fake_rest: FakeRest) -> None:
        one = _manager(fake_rest).build_create("s1", None, NOW, EXPIRES)
        two = _manager(fake_rest).build_create("s1", None, NOW, EXPIRES)
        assert one.signature == two.signature
        assert one.transaction.raw_transaction == two.transaction.raw_transaction

    def test_delete_uses_zero_expiry(self, fake_rest: FakeRest) -> None:
        request = _manager(fake_rest).build_delete("s1", None, NOW)
        assert request.command is SessionCommand.DELETE
        assert request.registration.message["expiry"] == 0


# ---------------------------------------------------------------------------
# Submission and local records
# ---------------------------------------------------------------------------

class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_create_records_session(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        session = await manager.create("s1", None, NOW, EXPIRES)
        assert session.session_id == "s1"
        assert session.wallet_address == TRADING_ADDRESS
        assert session.created_at == NOW
        assert session.expires_at == EXPIRES
        assert session.is_valid(NOW)
        assert not session.is_valid(EXPIRES)
        assert manager.get("s1") == session
        assert fake_rest.endpoints() == ["submit_session_create"]
        assert fake_rest.calls[0][1][0] == "s1"

    @pytest.mark.asyncio
    async def test_create_then_update(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        created = await manager.create("s1", None, NOW, EXPIRES)
        updated = await manager.update("s1", None, NOW + 1_000, EXPIRES + 7_200_000)

        assert updated is not None
        assert updated.expires_at == EXPIRES + 7_200_000
        assert updated.created_at == NOW + 1_000
        assert updated.signature != created.signature
        assert manager.get("s1") == updated
        assert fake_rest.endpoints() == ["submit_session_create", "submit_session_update"]

    @pytest.mark.asyncio
    async def test_active_sessions_filters_expired(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        short = await manager.create("short", None, NOW, NOW + 1_000)
        long_ = await manager.create("long", SESSION_KEY, NOW, EXPIRES)
        assert manager.active_sessions(NOW) == [short, long_]
        assert manager.active_sessions(NOW + 1_000) == [long_]
        assert manager.active_sessions(EXPIRES) == []
        assert len(manager.sessions()) == 2

    @pytest.mark.asyncio
    async def test_update_after_local_expiry_warns(
        self, fake_rest: FakeRest, caplog: pytest.LogCaptureFixture,
    ) -> None:
        manager = _manager(fake_rest)
        await manager.create("s1", None, NOW, NOW + 1_000)
        with caplog.at_level("WARNING", logger="alphasec_sdk.session"):
            updated = await manager.update("s1", None, NOW + 5_000, EXPIRES)
        assert updated is not None
        assert updated.is_valid(NOW + 5_000)
        assert "expired" in caplog.text

    @pytest.mark.asyncio
    async def test_update_unknown_session_is_not_fatal(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        await manager.create("s1", None, NOW, EXPIRES)
        fake_rest.errors["submit_session_update"] = SessionNotFound("session not found", 404)
        assert await manager.update("s1", None, NOW + 1, EXPIRES + 1) is None
        assert manager.get("s1") is None

    @pytest.mark.asyncio
    async def test_rejected_update_keeps_record(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        created = await manager.create("s1", None, NOW, EXPIRES)
        fake_rest.errors["submit_session_update"] = SubmissionRejected("rate limited", 429)
        with pytest.raises(SubmissionRejected):
            await manager.update("s1", None, NOW + 1, EXPIRES + 1)
        assert manager.get("s1") == created

    @pytest.mark.asyncio
    async def test_rejected_create_records_nothing(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        fake_rest.errors["submit_session_create"] = SubmissionRejected("duplicate session", 400)
        with pytest.raises(SubmissionRejected) as exc_info:
            await manager.create("s1", None, NOW, EXPIRES)
        assert exc_info.value.reason == "duplicate session"
        assert manager.sessions() == []

    @pytest.mark.asyncio
    async def test_delete_clears_record(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        await manager.create("s1", None, NOW, EXPIRES)
        assert await manager.delete("s1", None, NOW + 5) is None
        assert manager.get("s1") is None
        assert fake_rest.endpoints()[-1] == "submit_session_delete"

    @pytest.mark.asyncio
    async def test_delete_unknown_session_is_not_fatal(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        await manager.create("s1", None, NOW, EXPIRES)
        fake_rest.errors["submit_session_delete"] = SessionNotFound("session not found", 404)
        await manager.delete("s1", None, NOW + 5)
        assert manager.get("s1") is None

    @pytest.mark.asyncio
    async def test_delete_rejection_propagates_but_clears(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        await manager.create("s1", None, NOW, EXPIRES)
        fake_rest.errors["submit_session_delete"] = SubmissionRejected("internal error", 500)
        with pytest.raises(SubmissionRejected):
            await manager.delete("s1", None, NOW + 5)
        assert manager.get("s1") is None

    @pytest.mark.asyncio
    async def test_resubmit_same_request(self, fake_rest: FakeRest) -> None:
        manager = _manager(fake_rest)
        request = manager.build_create("s1", None, NOW, EXPIRES)
        fake_rest.errors["submit_session_create"] = SubmissionRejected("bad gateway", 502)
        with pytest.raises(SubmissionRejected):
            await manager.submit(request)

        del fake_rest.errors["submit_session_create"]
        session = await manager.submit(request)
        assert session is not None
        assert session.signature == request.signature
        sent = [args[1] for name, args in fake_rest.calls]
        assert sent[0] == sent[1]
