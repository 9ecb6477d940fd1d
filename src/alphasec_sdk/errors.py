"""
errors.py – Exception hierarchy for the AlphaSec SDK.

Local validation failures (KeyMissing, InvalidParameters, EncodingError) are
raised before anything touches the network.  Server-side refusals are
surfaced as SubmissionRejected (or one of its "unknown id" subclasses) and
carry the server's code and reason verbatim.
"""

from __future__ import annotations

from typing import Optional


class AlphaSecError(Exception):
    """Base class for every error raised by the SDK."""


class KeyMissing(AlphaSecError):
    """No private key is configured for the requested signing role."""

    def __init__(self, role: str) -> None:
        self.role = role
        super().__init__(f"no {role} key configured for this agent")


class InvalidParameters(AlphaSecError, ValueError):
    """A caller-supplied value failed local validation."""


class InvalidExpiry(InvalidParameters):
    """Session expiry is not strictly after the supplied timestamp."""

    def __init__(self, now: int, expires: int) -> None:
        self.now     = now
        self.expires = expires
        super().__init__(f"session expiry {expires} must be greater than timestamp {now}")


class EncodingError(AlphaSecError):
    """A payload field cannot be represented in its declared type."""


class SubmissionRejected(AlphaSecError):
    """The exchange refused a signed submission."""

    def __init__(self, reason: str, code: Optional[int] = None) -> None:
        self.reason = reason
        self.code   = code
        prefix = f"[{code}] " if code is not None else ""
        super().__init__(f"submission rejected {prefix}{reason}")


class OrderNotFound(SubmissionRejected):
    """The exchange does not know the referenced order id."""


class SessionNotFound(SubmissionRejected):
    """The exchange does not know the referenced session."""


class ConnectionLost(AlphaSecError):
    """The stream gave up reconnecting; call start() again to resume."""


class ReceiverAlreadyTaken(AlphaSecError):
    """The stream's message receiver has already been handed out."""

    def __init__(self) -> None:
        super().__init__("message receiver can only be taken once")
