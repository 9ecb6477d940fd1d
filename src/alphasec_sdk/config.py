"""
config.py – Immutable configuration for an AlphaSec agent.

A Config carries everything an Agent needs before it touches the network:
API / websocket URLs, the network tag, the account address and the two
optional private keys (settlement layer L1, trading layer L2).

Usage
-----
    from alphasec_sdk import Config, Network

    # Explicit
    config = Config(
        network=Network.KAIROS,
        l1_address="0x70dBb395AF2eDCC2833D803C03AbBe56ECe7c25c",
        l2_private_key="0x...",
        session_enabled=True,
    )

    # From ALPHASEC_* environment variables
    config = Config.from_env()

An agent with neither key is read-only.  Private keys are excluded from
repr() so configs can be logged safely.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Optional, Union
from urllib.parse import urlsplit, urlunsplit

from eth_account import Account
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidParameters
from .types import Network

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment base URLs
# ---------------------------------------------------------------------------

_ENDPOINTS: dict[str, str] = {
    "kairos":  "https://api-testnet.alphasec.trade",
    "mainnet": "https://api.alphasec.trade",
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

_ENV_PREFIX = "ALPHASEC_"


def derive_ws_url(api_url: str) -> str:
    """
    Convert an HTTP API URL into the websocket URL.

    https → wss, http → ws, and ``/ws`` is appended unless already present.
    """
    parts  = urlsplit(api_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme)
    if scheme is None:
        raise InvalidParameters(f"unsupported URL scheme in {api_url!r}")
    path = parts.path.rstrip("/")
    if not path.endswith("/ws"):
        path = f"{path}/ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


class Config(BaseModel):
    """
    Immutable AlphaSec SDK configuration.

    Parameters
    ----------
    network         : Network.KAIROS / Network.MAINNET (or "kairos" / "mainnet")
    l1_address      : Account address on the settlement layer.  Derived from
                      ``l1_private_key`` when that is given.
    l1_private_key  : Settlement-layer key (signs session registrations)
    l2_private_key  : Trading-layer key (signs orders and session transactions)
    session_enabled : Trade through a registered session wallet (needs L2 key)
    api_url         : REST base URL; defaults to the network's public endpoint
    ws_url          : Websocket URL; derived from api_url when omitted
    chain_id        : Override for the trading-layer chain id
    timeout_secs    : HTTP timeout for REST calls
    max_retries     : Retries for idempotent requests on 429/5xx
    """

    network:         Network        = Network.KAIROS
    l1_address:      str            = ""
    l1_private_key:  Optional[str]  = Field(default=None, repr=False)
    l2_private_key:  Optional[str]  = Field(default=None, repr=False)
    session_enabled: bool           = False
    api_url:         str            = ""
    ws_url:          str            = ""
    chain_id:        Optional[int]  = None
    timeout_secs:    float          = 30.0
    max_retries:     int            = 3

    model_config = ConfigDict(frozen=True)

    @field_validator("network", mode="before")
    @classmethod
    def parse_network(cls, v: Any) -> Network:
        return Network.parse(v)

    @field_validator("l1_private_key", "l2_private_key")
    @classmethod
    def validate_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        try:
            Account.from_key(v)
        except (ValueError, TypeError) as exc:
            raise ValueError("private key is not a valid secp256k1 key") from exc
        return v

    @field_validator("timeout_secs")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_secs must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be non-negative")
        return v

    @model_validator(mode="before")
    @classmethod
    def fill_derived(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        network = Network.parse(data.get("network") or Network.KAIROS)

        if not data.get("api_url"):
            data["api_url"] = _ENDPOINTS[network.label]
        if not data.get("ws_url"):
            data["ws_url"] = derive_ws_url(data["api_url"])

        # The key is authoritative for the address so the two cannot drift.
        l1_key = data.get("l1_private_key")
        if l1_key:
            try:
                data["l1_address"] = Account.from_key(l1_key).address
            except (ValueError, TypeError):
                pass  # reported by validate_key
        return data

    @model_validator(mode="after")
    def validate_account(self) -> "Config":
        if not _ADDRESS_RE.match(self.l1_address):
            raise ValueError(
                "invalid l1_address, expected 0x followed by 40 hex characters"
            )
        if self.session_enabled and self.l2_private_key is None:
            raise ValueError("session_enabled requires l2_private_key")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def trading_chain_id(self) -> int:
        return self.chain_id if self.chain_id is not None else self.network.chain_id

    @property
    def settlement_chain_id(self) -> int:
        return self.network.settlement_chain_id

    @property
    def read_only(self) -> bool:
        return self.l1_private_key is None and self.l2_private_key is None

    @property
    def is_mainnet(self) -> bool:
        return self.network is Network.MAINNET

    # ------------------------------------------------------------------
    # Environment loader
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None, **overrides: Any) -> "Config":
        """
        Build a Config from ``ALPHASEC_*`` environment variables.

        Recognised: API_URL, WS_URL, NETWORK, L1_ADDRESS, L1_PRIVATE_KEY,
        L2_PRIVATE_KEY, SESSION_ENABLED, CHAIN_ID, TIMEOUT_SECS, MAX_RETRIES.
        Keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(_ENV_PREFIX + name)
            return value if value else None

        values: dict[str, Union[str, int, float, bool, None]] = {
            "api_url":        get("API_URL"),
            "ws_url":         get("WS_URL"),
            "network":        get("NETWORK"),
            "l1_address":     get("L1_ADDRESS"),
            "l1_private_key": get("L1_PRIVATE_KEY"),
            "l2_private_key": get("L2_PRIVATE_KEY"),
            "chain_id":       get("CHAIN_ID"),
            "timeout_secs":   get("TIMEOUT_SECS"),
            "max_retries":    get("MAX_RETRIES"),
        }
        session = get("SESSION_ENABLED")
        if session is not None:
            values["session_enabled"] = session.strip().lower() in ("1", "true", "yes", "on")

        values = {k: v for k, v in values.items() if v is not None}
        values.update(overrides)
        logger.debug("Loading AlphaSec config from environment: %s", sorted(values))
        return cls(**values)
