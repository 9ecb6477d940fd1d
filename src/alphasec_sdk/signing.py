"""
signing.py – EIP-712 typed-data and transaction signing for AlphaSec.

AlphaSec authenticates two kinds of payload:

1. Session registrations are EIP-712 structured messages signed by the
   settlement-layer (L1) key.  The domain binds the signature to the Kaia
   chain id, the verifying contract and the schema name/version.
2. Trading commands (orders, cancels, session commands) are opaque command
   bytes carried in the ``data`` field of an EIP-1559 transaction signed by
   the trading-layer key.  The transaction hash becomes the correlation id
   the exchange hands back for later cancel/modify calls.

How typed signing works
-----------------------
1. Build the domain separator (name, version, chainId, verifyingContract).
2. Validate every message field against its declared EIP-712 type.
3. Hash the struct per EIP-712 and sign the 32-byte digest with
   eth_account – this produces an r, s, v signature recoverable to the
   signer's address.

Both schemes use RFC 6979 deterministic nonces, so signing the same input
twice yields byte-identical output and resubmitting a signed payload is
safe.

References
----------
- EIP-712  : https://eips.ethereum.org/EIPS/eip-712
- EIP-1559 : https://eips.ethereum.org/EIPS/eip-1559
"""

from __future__ import annotations

import re
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address
from pydantic import BaseModel, ConfigDict

from .errors import EncodingError

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

DOMAIN_NAME:        str = "DEXSignTransaction"
DOMAIN_VERSION:     str = "1"
VERIFYING_CONTRACT: str = "0x0000000000000000000000000000000000000000"

# L2 contract that receives every trading transaction.
ORDER_CONTRACT_ADDR: str = "0x00000000000000000000000000000000000000cc"

# L2 contracts that take withdrawals back to the settlement layer.
SYSTEM_CONTRACT_ADDR:         str = "0x0000000000000000000000000000000000000064"
GATEWAY_ROUTER_CONTRACT_ADDR: str = "0xD2b30f9548DEE14093CF903ec70866469EFff97A"

DEFAULT_GAS_LIMIT:                int = 1_000_000
DEFAULT_MAX_FEE_PER_GAS:          int = 0
DEFAULT_MAX_PRIORITY_FEE_PER_GAS: int = 0

_UINT64_MAX = 2 ** 64 - 1

_EIP712_DOMAIN_TYPE: list[dict[str, str]] = [
    {"name": "name",              "type": "string"},
    {"name": "version",           "type": "string"},
    {"name": "chainId",           "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_INT_RE     = re.compile(r"^(u?)int(\d*)$")
_BYTES_RE   = re.compile(r"^bytes(\d+)$")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SignedMessage(BaseModel):
    """An EIP-712 message together with its domain and signature."""
    domain:       dict[str, Any]
    primary_type: str
    types:        dict[str, list[dict[str, str]]]
    message:      dict[str, Any]
    digest:       str
    signature:    str
    r:            int
    s:            int
    v:            int

    model_config = ConfigDict(frozen=True)

    @property
    def signature_bytes(self) -> bytes:
        return bytes.fromhex(self.signature.removeprefix("0x"))


class SignedTransaction(BaseModel):
    """A signed EIP-1559 transaction carrying a command payload."""
    raw_transaction: str
    tx_hash:         str
    nonce:           int
    chain_id:        int

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def build_eip712_domain(
    chain_id: int,
    verifying_contract: str = VERIFYING_CONTRACT,
    name: str = DOMAIN_NAME,
    version: str = DOMAIN_VERSION,
) -> dict[str, Any]:
    """
    Construct the EIP-712 domain separator dict.

    Parameters
    ----------
    chain_id            : EVM chain ID (Config.settlement_chain_id for sessions)
    verifying_contract  : Address of the verifying contract
    name                : Domain name (default: "DEXSignTransaction")
    version             : Domain version (default: "1")
    """
    return {
        "name":              name,
        "version":           version,
        "chainId":           chain_id,
        "verifyingContract": verifying_contract,
    }


def _hex(value: Any) -> str:
    return "0x" + bytes(value).hex()


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

def _check_field(
    path: str,
    typ: str,
    value: Any,
    types: dict[str, list[dict[str, str]]],
) -> None:
    """Raise EncodingError if ``value`` cannot be encoded as EIP-712 ``typ``."""
    if typ.endswith("[]"):
        if not isinstance(value, (list, tuple)):
            raise EncodingError(f"{path}: expected a list for {typ}")
        for i, item in enumerate(value):
            _check_field(f"{path}[{i}]", typ[:-2], item, types)
        return

    if typ in types:
        if not isinstance(value, dict):
            raise EncodingError(f"{path}: expected a mapping for struct {typ}")
        _check_struct(path, typ, value, types)
        return

    int_match = _INT_RE.match(typ)
    if int_match:
        if isinstance(value, bool) or not isinstance(value, int):
            raise EncodingError(f"{path}: expected an integer for {typ}, got {value!r}")
        bits = int(int_match.group(2) or 256)
        if int_match.group(1):
            low, high = 0, 2 ** bits - 1
        else:
            low, high = -(2 ** (bits - 1)), 2 ** (bits - 1) - 1
        if not low <= value <= high:
            raise EncodingError(f"{path}: {value} does not fit in {typ}")
        return

    if typ == "address":
        if not isinstance(value, str) or not _ADDRESS_RE.match(value):
            raise EncodingError(f"{path}: {value!r} is not a 20-byte hex address")
        return

    if typ == "bool":
        if not isinstance(value, bool):
            raise EncodingError(f"{path}: expected a bool, got {value!r}")
        return

    if typ == "string":
        if not isinstance(value, str):
            raise EncodingError(f"{path}: expected a string, got {value!r}")
        return

    if typ == "bytes" or _BYTES_RE.match(typ):
        raw = value
        if isinstance(value, str):
            try:
                raw = bytes.fromhex(value.removeprefix("0x"))
            except ValueError:
                raise EncodingError(f"{path}: {value!r} is not hex") from None
        if not isinstance(raw, (bytes, bytearray)):
            raise EncodingError(f"{path}: expected bytes for {typ}")
        size_match = _BYTES_RE.match(typ)
        if size_match and len(raw) > int(size_match.group(1)):
            raise EncodingError(f"{path}: {len(raw)} bytes exceed {typ}")
        return

    raise EncodingError(f"{path}: unsupported EIP-712 type {typ!r}")


def _check_struct(
    path: str,
    primary_type: str,
    message: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
) -> None:
    declared = types[primary_type]
    names    = {f["name"] for f in declared}
    extra    = set(message) - names
    if extra:
        raise EncodingError(f"{path}: undeclared fields {sorted(extra)}")
    for field in declared:
        name = field["name"]
        if name not in message:
            raise EncodingError(f"{path}.{name}: missing value")
        _check_field(f"{path}.{name}", field["type"], message[name], types)


# ---------------------------------------------------------------------------
# Typed-data signing
# ---------------------------------------------------------------------------

def _encode(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    primary_type: str,
    message: dict[str, Any],
) -> Any:
    """
    Validate and encode a typed message into an eth_account SignableMessage.

    Shared by sign_typed_data() and recover_typed_signer() so both always
    hash identical encodings.
    """
    if primary_type not in types:
        raise EncodingError(f"primary type {primary_type!r} is not declared")
    _check_struct("domain", "EIP712Domain", domain, {"EIP712Domain": _EIP712_DOMAIN_TYPE})
    _check_struct(primary_type, primary_type, message, types)

    try:
        return encode_typed_data(full_message={
            "types":       {"EIP712Domain": _EIP712_DOMAIN_TYPE, **types},
            "primaryType": primary_type,
            "domain":      domain,
            "message":     message,
        })
    except (ValueError, TypeError) as exc:
        raise EncodingError(f"cannot encode {primary_type}: {exc}") from exc


def sign_typed_data(
    domain: dict[str, Any],
    types: dict[str, list[dict[str, str]]],
    primary_type: str,
    message: dict[str, Any],
    signer: LocalAccount,
) -> SignedMessage:
    """
    EIP-712 sign ``message`` and return a SignedMessage.

    Parameters
    ----------
    domain       : Domain dict from build_eip712_domain()
    types        : Struct definitions, without EIP712Domain
    primary_type : Name of the struct being signed
    message      : Field values for ``primary_type``
    signer       : Account obtained from CredentialStore.signer()

    Raises
    ------
    EncodingError if a value does not fit its declared type.
    """
    signable = _encode(domain, types, primary_type, message)
    signed   = signer.sign_message(signable)
    return SignedMessage(
        domain=dict(domain),
        primary_type=primary_type,
        types={k: list(v) for k, v in types.items()},
        message=dict(message),
        digest=_hex(signed.message_hash),
        signature=_hex(signed.signature),
        r=signed.r,
        s=signed.s,
        v=signed.v,
    )


def recover_typed_signer(signed: SignedMessage) -> str:
    """
    Recover the checksummed address that produced ``signed.signature``.

    Useful for verification / testing without submitting to the exchange.
    """
    signable = _encode(signed.domain, signed.types, signed.primary_type, signed.message)
    address: str = Account.recover_message(signable, signature=signed.signature_bytes)
    return address


# ---------------------------------------------------------------------------
# Transaction signing
# ---------------------------------------------------------------------------

def sign_transaction(
    signer: LocalAccount,
    data: bytes,
    chain_id: int,
    nonce: int,
    *,
    to: str = ORDER_CONTRACT_ADDR,
    value: int = 0,
) -> SignedTransaction:
    """
    Wrap a command payload in an EIP-1559 transaction and sign it.

    By default the transaction targets the AlphaSec order contract with zero
    value and zero fees; the exchange only reads ``data``.  Withdrawals pass
    a contract call in ``data`` and their own ``to`` / ``value``.  ``nonce``
    is the caller's millisecond timestamp and must fit a uint64.
    """
    if isinstance(nonce, bool) or not isinstance(nonce, int) or not 0 <= nonce <= _UINT64_MAX:
        raise EncodingError(f"nonce {nonce!r} does not fit in uint64")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise EncodingError(f"value {value!r} must be a non-negative integer")
    if not _ADDRESS_RE.match(to):
        raise EncodingError(f"invalid destination address {to!r}")

    tx = {
        "type":                 2,
        "chainId":              chain_id,
        "nonce":                nonce,
        "to":                   to_checksum_address(to),
        "value":                value,
        "gas":                  DEFAULT_GAS_LIMIT,
        "maxFeePerGas":         DEFAULT_MAX_FEE_PER_GAS,
        "maxPriorityFeePerGas": DEFAULT_MAX_PRIORITY_FEE_PER_GAS,
        "data":                 bytes(data),
    }
    try:
        signed = signer.sign_transaction(tx)
    except (ValueError, TypeError) as exc:
        raise EncodingError(f"cannot encode transaction: {exc}") from exc

    return SignedTransaction(
        raw_transaction=_hex(signed.raw_transaction),
        tx_hash=_hex(signed.hash),
        nonce=nonce,
        chain_id=chain_id,
    )
