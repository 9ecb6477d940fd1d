"""
credentials.py – Role-tagged signing keys.

An AlphaSec account can hold two keys:

  SETTLEMENT  the L1 (Kaia) account key; signs session registrations
  TRADING     the L2 session wallet key; signs trading transactions

Either may be absent.  An account configured without session trading and
without a trading key signs its trading transactions with the settlement
key instead (trading_account).  Every signing path asks the store for a specific
role up front, so a missing key surfaces as KeyMissing before any payload
is built.  Callers receive eth_account LocalAccount objects, which sign
without handing out the raw key bytes.
"""

from __future__ import annotations

import logging
from enum import Enum, unique
from typing import Optional, Union

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .config import Config
from .errors import InvalidParameters, KeyMissing

logger = logging.getLogger(__name__)

# Anything the SDK accepts where an alternate signing key may be supplied.
KeyLike = Union[str, LocalAccount]


@unique
class KeyRole(str, Enum):
    SETTLEMENT = "settlement"
    TRADING    = "trading"


def load_account(key: KeyLike) -> LocalAccount:
    """Turn a hex private key (or an existing LocalAccount) into a LocalAccount."""
    if isinstance(key, LocalAccount):
        return key
    try:
        return Account.from_key(key)
    except (ValueError, TypeError) as exc:
        raise InvalidParameters("invalid private key") from exc


class CredentialStore:
    """
    Holds the optional settlement and trading accounts for one agent.

    Parameters
    ----------
    settlement_key : L1 private key (hex) or None
    trading_key    : L2 private key (hex) or None
    """

    def __init__(
        self,
        settlement_key: Optional[KeyLike] = None,
        trading_key:    Optional[KeyLike] = None,
    ) -> None:
        self._accounts: dict[KeyRole, LocalAccount] = {}
        if settlement_key is not None:
            self._accounts[KeyRole.SETTLEMENT] = load_account(settlement_key)
        if trading_key is not None:
            self._accounts[KeyRole.TRADING] = load_account(trading_key)

    @classmethod
    def from_config(cls, config: Config) -> "CredentialStore":
        return cls(settlement_key=config.l1_private_key, trading_key=config.l2_private_key)

    def __repr__(self) -> str:
        roles = ", ".join(sorted(role.value for role in self._accounts))
        return f"CredentialStore(roles=[{roles}])"

    def has(self, role: KeyRole) -> bool:
        return role in self._accounts

    def signer(self, role: KeyRole) -> LocalAccount:
        """Return the account for ``role`` or raise KeyMissing."""
        try:
            return self._accounts[role]
        except KeyError:
            raise KeyMissing(role.value) from None

    def address(self, role: KeyRole) -> str:
        return self.signer(role).address

    def resolve(self, alternate: Optional[KeyLike] = None) -> LocalAccount:
        """
        Pick the session wallet: an explicitly supplied key wins, otherwise
        the trading key is used.
        """
        if alternate is not None:
            return load_account(alternate)
        return self.signer(KeyRole.TRADING)

    def trading_account(self, session_enabled: bool) -> LocalAccount:
        """
        Pick the account that signs trading-layer transactions.

        The trading key whenever one is configured.  Without it, an account
        that does not trade through a session wallet signs with its
        settlement key.  KeyMissing("trading") if neither applies.
        """
        if self.has(KeyRole.TRADING) or session_enabled:
            return self.signer(KeyRole.TRADING)
        if self.has(KeyRole.SETTLEMENT):
            return self.signer(KeyRole.SETTLEMENT)
        raise KeyMissing(KeyRole.TRADING.value)
