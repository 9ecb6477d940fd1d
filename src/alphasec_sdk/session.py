"""
session.py – Session wallet registration for AlphaSec.

A session lets a secondary (trading-layer) wallet sign orders on behalf of
the account without exposing the settlement key.  Registering one is a
two-signature flow:

1. The settlement (L1) key signs an EIP-712 ``RegisterSessionWallet``
   message binding the session wallet address, its expiry and a nonce
   (the caller's timestamp in ms).
2. That signature is embedded, base64 encoded, in a session command
   payload (0x01 ‖ JSON) which the session wallet itself signs as an
   EIP-1559 transaction.

Create, update and delete share this shape and differ only in the
``type`` field (1, 2, 3).  Building a request is separate from submitting
it: signatures are deterministic, so a SignedSessionRequest may be handed
to submit() again after a transient failure without re-signing.

Usage
-----
    manager = SessionManager(credentials, rest, l1_owner=config.l1_address,
                             settlement_chain_id=config.settlement_chain_id,
                             trading_chain_id=config.trading_chain_id)

    session = await manager.create("s1", None, now=now_ms,
                                   expires=now_ms + 3_600_000)
    await manager.delete("s1", None, now=later_ms)

The SDK has no clock of its own: ``now`` is always supplied by the caller.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Optional, Protocol, cast

from pydantic import BaseModel, ConfigDict

from .credentials import CredentialStore, KeyLike, KeyRole
from .errors import InvalidExpiry, InvalidParameters, SessionNotFound
from .signing import (
    SignedMessage,
    SignedTransaction,
    build_eip712_domain,
    sign_transaction,
    sign_typed_data,
)
from .types import DexCommand, Session, SessionCommand

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# EIP-712 schema
# ---------------------------------------------------------------------------

SESSION_PRIMARY_TYPE = "RegisterSessionWallet"

SESSION_TYPES: dict[str, list[dict[str, str]]] = {
    SESSION_PRIMARY_TYPE: [
        {"name": "sessionWallet", "type": "address"},
        {"name": "expiry",        "type": "uint64"},
        {"name": "nonce",         "type": "uint64"},
    ],
}


class SessionTransport(Protocol):
    """The submission endpoints SessionManager needs (AsyncAlphaSecRestClient)."""

    async def submit_session_create(self, session_id: str, tx: SignedTransaction) -> Any: ...
    async def submit_session_update(self, session_id: str, tx: SignedTransaction) -> Any: ...
    async def submit_session_delete(self, tx: SignedTransaction) -> Any: ...


# ---------------------------------------------------------------------------
# Signed request
# ---------------------------------------------------------------------------

class SignedSessionRequest(BaseModel):
    """A fully signed session command, ready to submit (or resubmit)."""
    command:        SessionCommand
    session_id:     str
    wallet_address: str
    created_at:     int
    expires_at:     int
    metadata:       bytes = b""
    registration:   SignedMessage
    transaction:    SignedTransaction

    model_config = ConfigDict(frozen=True)

    @property
    def signature(self) -> str:
        """The settlement key's EIP-712 registration signature."""
        return self.registration.signature


def session_payload(
    command:   SessionCommand,
    wallet:    str,
    expires:   int,
    nonce:     int,
    l1_owner:  str,
    signature: bytes,
    metadata:  bytes = b"",
) -> bytes:
    """
    Encode a session command: 0x01 followed by compact JSON.

    Keys are emitted in sorted order; ``metadata`` is omitted when empty.
    """
    body: dict[str, Any] = {
        "type":        int(command),
        "publickey":   wallet,
        "expiresAt":   expires,
        "nonce":       nonce,
        "l1owner":     l1_owner,
        "l1signature": base64.b64encode(signature).decode("ascii"),
    }
    if metadata:
        body["metadata"] = base64.b64encode(metadata).decode("ascii")
    encoded = json.dumps(body, separators=(",", ":"), sort_keys=True)
    return bytes([int(DexCommand.SESSION)]) + encoded.encode()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class SessionManager:
    """
    Creates, renews and deletes session wallets and keeps a local record of
    the sessions this agent registered.

    Parameters
    ----------
    credentials         : CredentialStore (SETTLEMENT signs registrations,
                          TRADING is the default session wallet)
    transport           : Object exposing the session submission endpoints
    l1_owner            : Account address that owns the sessions
    settlement_chain_id : Kaia chain id used in the EIP-712 domain
    trading_chain_id    : AlphaSec chain id used for the transaction

    Concurrency
    -----------
    submit() holds an asyncio.Lock across the network call and the record
    update, so concurrent create/update/delete calls cannot interleave their
    expiry bookkeeping.
    """

    def __init__(
        self,
        credentials:         CredentialStore,
        transport:           SessionTransport,
        *,
        l1_owner:            str,
        settlement_chain_id: int,
        trading_chain_id:    int,
    ) -> None:
        self._credentials         = credentials
        self._transport           = transport
        self._l1_owner            = l1_owner
        self._settlement_chain_id = settlement_chain_id
        self._trading_chain_id    = trading_chain_id
        self._sessions:  dict[str, Session] = {}
        self._lock       = asyncio.Lock()

    # ------------------------------------------------------------------
    # Local records
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def active_sessions(self, now: int) -> list[Session]:
        """Sessions still usable for signing at ``now`` (caller's clock, ms)."""
        return [s for s in self._sessions.values() if s.is_valid(now)]

    # ------------------------------------------------------------------
    # Request builders
    # ------------------------------------------------------------------

    def _build(
        self,
        command:     SessionCommand,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes,
    ) -> SignedSessionRequest:
        if not session_id:
            raise InvalidParameters("session_id must be a non-empty string")
        if isinstance(now, bool) or not isinstance(now, int) or now < 0:
            raise InvalidParameters(f"now must be a non-negative integer timestamp, got {now!r}")
        if command is not SessionCommand.DELETE and expires <= now:
            raise InvalidExpiry(now, expires)

        wallet  = self._credentials.resolve(session_key)
        l1_key  = self._credentials.signer(KeyRole.SETTLEMENT)

        registration = sign_typed_data(
            build_eip712_domain(self._settlement_chain_id),
            SESSION_TYPES,
            SESSION_PRIMARY_TYPE,
            {"sessionWallet": wallet.address, "expiry": expires, "nonce": now},
            l1_key,
        )
        payload = session_payload(
            command,
            wallet.address,
            expires,
            now,
            self._l1_owner,
            registration.signature_bytes,
            metadata,
        )
        tx = sign_transaction(wallet, payload, self._trading_chain_id, now)

        return SignedSessionRequest(
            command=command,
            session_id=session_id,
            wallet_address=wallet.address,
            created_at=now,
            expires_at=expires,
            metadata=bytes(metadata),
            registration=registration,
            transaction=tx,
        )

    def build_create(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes = b"",
    ) -> SignedSessionRequest:
        """
        Sign a session registration.

        Raises
        ------
        InvalidExpiry     if ``expires <= now`` (checked before any signing)
        KeyMissing        if there is no settlement key, or no session key and
                          no trading key
        """
        return self._build(SessionCommand.CREATE, session_id, session_key, now, expires, metadata)

    def build_update(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes = b"",
    ) -> SignedSessionRequest:
        return self._build(SessionCommand.UPDATE, session_id, session_key, now, expires, metadata)

    def build_delete(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
    ) -> SignedSessionRequest:
        return self._build(SessionCommand.DELETE, session_id, session_key, now, 0, b"")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: SignedSessionRequest) -> Optional[Session]:
        """
        Submit a signed request and update the local record.

        Returns the resulting Session for create/update, ``None`` for delete
        and for an update the exchange reports as unknown.  Any other
        rejection propagates as SubmissionRejected and leaves the local
        record untouched (except for delete, which always clears it).
        """
        async with self._lock:
            if request.command is SessionCommand.CREATE:
                await self._transport.submit_session_create(request.session_id, request.transaction)
                return self._record(request)

            if request.command is SessionCommand.UPDATE:
                current = self._sessions.get(request.session_id)
                if current is None:
                    logger.info(
                        "Updating session %r with no local record; the exchange decides",
                        request.session_id,
                    )
                elif not current.is_valid(request.created_at):
                    logger.warning(
                        "Session %r expired at %d, before this update at %d",
                        request.session_id, current.expires_at, request.created_at,
                    )
                try:
                    await self._transport.submit_session_update(request.session_id, request.transaction)
                except SessionNotFound as exc:
                    logger.warning(
                        "Exchange does not know session %r (%s); dropping local record",
                        request.session_id, exc.reason,
                    )
                    self._sessions.pop(request.session_id, None)
                    return None
                return self._record(request)

            try:
                await self._transport.submit_session_delete(request.transaction)
            except SessionNotFound as exc:
                logger.warning(
                    "Exchange does not know session %r (%s); treating as deleted",
                    request.session_id, exc.reason,
                )
            finally:
                self._sessions.pop(request.session_id, None)
            logger.info("Session %r deleted", request.session_id)
            return None

    def _record(self, request: SignedSessionRequest) -> Session:
        session = Session(
            session_id=request.session_id,
            wallet_address=request.wallet_address,
            created_at=request.created_at,
            expires_at=request.expires_at,
            metadata=request.metadata,
            signature=request.signature,
        )
        self._sessions[request.session_id] = session
        logger.info(
            "Session %r %s for wallet %s, expires at %d",
            request.session_id,
            "registered" if request.command is SessionCommand.CREATE else "renewed",
            request.wallet_address,
            request.expires_at,
        )
        return session

    # ------------------------------------------------------------------
    # Build + submit
    # ------------------------------------------------------------------

    async def create(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes = b"",
    ) -> Session:
        request = self.build_create(session_id, session_key, now, expires, metadata)
        return cast(Session, await self.submit(request))

    async def update(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
        expires:     int,
        metadata:    bytes = b"",
    ) -> Optional[Session]:
        request = self.build_update(session_id, session_key, now, expires, metadata)
        return await self.submit(request)

    async def delete(
        self,
        session_id:  str,
        session_key: Optional[KeyLike],
        now:         int,
    ) -> None:
        request = self.build_delete(session_id, session_key, now)
        await self.submit(request)
