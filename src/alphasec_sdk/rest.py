"""
rest.py – REST clients (async and sync) for the AlphaSec exchange.

Every endpoint answers with the envelope ``{"code": 200, "result": ...,
"errMsg": ...}``; anything other than ``code == 200`` is a rejection.

HTTP errors raise AlphaSecAPIError (a SubmissionRejected).  Envelope
rejections raise SubmissionRejected, or OrderNotFound / SessionNotFound
when the exchange reports an unknown id on an endpoint that references one.

Retry policy
------------
GETs and session submissions are retried on 429/5xx with exponential
back-off.  Trading submissions (order, cancel, modify, stop, transfer,
withdraw) are never retried: resending a signed order could place it twice.

Usage – async
-------------
    async with AsyncAlphaSecRestClient(config) as client:
        tokens = await client.get_tokens()
        tx_id  = await client.submit_order(signed_tx)

Usage – sync (read-only endpoints)
----------------------------------
    client  = AlphaSecRestClient(config)
    tickers = client.get_tickers()
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, TypeVar

import aiohttp
import requests
from pydantic import BaseModel, ValidationError

from .config import Config
from .errors import OrderNotFound, SessionNotFound, SubmissionRejected
from .signing import SignedTransaction
from .types import ApiResponse, Balance, Market, OrderInfo, SessionInfo, Ticker, Token, Trade

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# ---------------------------------------------------------------------------
# Retry configuration
# ---------------------------------------------------------------------------

_RETRY_STATUSES = {429, 500, 502, 503, 504}
_RETRY_BASE_S   = 0.5   # initial back-off seconds
_RETRY_EXP      = 2.0

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

PATH_MARKETS        = "/api/v1/market"
PATH_TICKER         = "/api/v1/market/ticker"
PATH_TOKENS         = "/api/v1/market/tokens"
PATH_TRADES         = "/api/v1/market/trades"
PATH_BALANCE        = "/api/v1/wallet/balance"
PATH_SESSIONS       = "/api/v1/wallet/session"
PATH_OPEN_ORDERS    = "/api/v1/order/open"
PATH_ORDER          = "/api/v1/order"
PATH_CANCEL         = "/api/v1/wallet/order/cancel"
PATH_CANCEL_ALL     = "/api/v1/order/cancel/all"
PATH_MODIFY         = "/api/v1/wallet/order/modify"
PATH_STOP_ORDER     = "/api/v1/wallet/order/stop"
PATH_TRANSFER       = "/api/v1/wallet/transfer"
PATH_WITHDRAW       = "/api/v1/wallet/withdraw"
PATH_SESSION_CREATE = "/api/v1/wallet/session"
PATH_SESSION_UPDATE = "/api/v1/wallet/session/update"
PATH_SESSION_DELETE = "/api/v1/wallet/session/delete"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AlphaSecAPIError(SubmissionRejected):
    """Raised when the AlphaSec REST API returns a non-2xx response."""

    def __init__(self, status_code: int, body: str, method: str = "", path: str = "") -> None:
        self.status_code = status_code
        self.body        = body
        self.method      = method.upper()
        self.path        = path
        super().__init__(body, code=status_code)
        location = f" {self.method} {self.path}" if path else ""
        self.args = (f"AlphaSec API error [{status_code}]{location}: {body}",)


# ---------------------------------------------------------------------------
# Envelope helpers (shared by sync and async clients)
# ---------------------------------------------------------------------------

def _is_not_found(code: Optional[int], reason: str) -> bool:
    return code == 404 or "not found" in reason.lower()


def rejection(
    reason: str,
    code: Optional[int],
    not_found: Optional[type[SubmissionRejected]] = None,
) -> SubmissionRejected:
    """Map a refusal to SubmissionRejected or the given "unknown id" subclass."""
    if not_found is not None and _is_not_found(code, reason):
        return not_found(reason, code)
    return SubmissionRejected(reason, code)


def parse_envelope(
    raw: Any,
    not_found: Optional[type[SubmissionRejected]] = None,
) -> ApiResponse:
    """Validate the response envelope, raising on ``code != 200``."""
    if not isinstance(raw, dict):
        raise SubmissionRejected(f"unexpected response body: {raw!r}")
    resp = ApiResponse.model_validate(raw)
    if not resp.success:
        reason = resp.error or resp.result_string() or "unknown error"
        raise rejection(reason, resp.code, not_found)
    return resp


def _parse_list(raw: Any, model: type[M]) -> list[M]:
    result = parse_envelope(raw).result
    if result is None:
        return []
    if not isinstance(result, list):
        result = [result]
    try:
        return [model.model_validate(item) for item in result]
    except ValidationError as exc:
        raise SubmissionRejected(f"malformed {model.__name__} in response: {exc}") from exc


def _ticker_params(market_id: Optional[str]) -> Optional[dict[str, str]]:
    return {"marketId": market_id} if market_id else None


def _trade_params(market_id: str, limit: Optional[int]) -> dict[str, str]:
    params = {"marketId": market_id}
    if limit is not None:
        params["limit"] = str(limit)
    return params


def _order_params(address: str, market_id: Optional[str], limit: Optional[int]) -> dict[str, str]:
    params = {"address": address}
    if market_id:
        params["marketId"] = market_id
    if limit is not None:
        params["limit"] = str(limit)
    return params


# ---------------------------------------------------------------------------
# Async client
# ---------------------------------------------------------------------------

class AsyncAlphaSecRestClient:
    """
    Async REST client for AlphaSec (aiohttp-based).

    Covers both the read-only endpoints and the signed submission endpoints
    used by Agent, OrderSigner and SessionManager.

    Usage
    -----
        async with AsyncAlphaSecRestClient(config) as client:
            markets = await client.get_markets()
    """

    def __init__(self, config: Config) -> None:
        self._base_url    = config.api_url.rstrip("/")
        self._timeout     = config.timeout_secs
        self._max_retries = config.max_retries
        self._session: Optional[aiohttp.ClientSession] = None   # created on first use

    async def __aenter__(self) -> "AsyncAlphaSecRestClient":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Internal async request helper
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json:   Optional[dict] = None,
        params: Optional[dict] = None,
        retry:  bool = True,
    ) -> Any:
        """
        Send a request, retrying on retryable status codes when ``retry``.

        Parameters
        ----------
        method : HTTP method ("GET", "POST")
        path   : Path relative to the base URL
        json   : Request body (for POST)
        params : Query string parameters (for GET)
        retry  : False for requests that must never be sent twice
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

        url      = self._base_url + path
        attempts = self._max_retries if retry else 0
        backoff  = _RETRY_BASE_S

        for attempt in range(attempts + 1):
            logger.debug("%s %s  params=%s body=%s  attempt=%d", method.upper(), url, params, json, attempt)
            async with self._session.request(
                method, url,
                json=json,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                status = resp.status
                if status not in _RETRY_STATUSES or attempt == attempts:
                    if status >= 400:
                        body = await resp.text()
                        raise AlphaSecAPIError(status, body, method=method, path=path)
                    return await resp.json(content_type=None)

            logger.warning(
                "Retryable response %d from %s %s – retrying in %.1f s",
                status, method.upper(), path, backoff,
            )
            await asyncio.sleep(backoff)
            backoff *= _RETRY_EXP

    async def _submit(
        self,
        path: str,
        body: dict[str, Any],
        *,
        retry: bool,
        not_found: Optional[type[SubmissionRejected]] = None,
    ) -> ApiResponse:
        try:
            raw = await self._request("POST", path, json=body, retry=retry)
        except AlphaSecAPIError as exc:
            if not_found is not None and _is_not_found(exc.status_code, exc.body):
                raise not_found(exc.body, exc.status_code) from exc
            raise
        return parse_envelope(raw, not_found)

    async def _submit_tx(
        self,
        path: str,
        tx: SignedTransaction,
        not_found: Optional[type[SubmissionRejected]] = None,
    ) -> str:
        """POST a trading transaction; returns the correlation id."""
        resp   = await self._submit(path, {"tx": tx.raw_transaction}, retry=False, not_found=not_found)
        result = resp.result_string()
        return result or tx.tx_hash

    # ------------------------------------------------------------------
    # Trading submissions (never retried)
    # ------------------------------------------------------------------

    async def submit_order(self, tx: SignedTransaction) -> str:
        return await self._submit_tx(PATH_ORDER, tx)

    async def submit_cancel(self, tx: SignedTransaction) -> str:
        return await self._submit_tx(PATH_CANCEL, tx, not_found=OrderNotFound)

    async def submit_cancel_all(self, tx: SignedTransaction) -> str:
        return await self._submit_tx(PATH_CANCEL_ALL, tx)

    async def submit_modify(self, tx: SignedTransaction) -> str:
        return await self._submit_tx(PATH_MODIFY, tx, not_found=OrderNotFound)

    async def submit_stop_order(self, tx: SignedTransaction) -> str:
        return await self._submit_tx(PATH_STOP_ORDER, tx)

    async def submit_transfer(self, tx: SignedTransaction) -> str:
        """Native and token transfers share one endpoint."""
        return await self._submit_tx(PATH_TRANSFER, tx)

    async def submit_withdraw(self, tx: SignedTransaction) -> str:
        return await self._submit_tx(PATH_WITHDRAW, tx)

    # ------------------------------------------------------------------
    # Session submissions (identical signed payloads, safe to retry)
    # ------------------------------------------------------------------

    async def submit_session_create(self, session_id: str, tx: SignedTransaction) -> ApiResponse:
        body = {"sessionId": session_id, "tx": tx.raw_transaction}
        return await self._submit(PATH_SESSION_CREATE, body, retry=True)

    async def submit_session_update(self, session_id: str, tx: SignedTransaction) -> ApiResponse:
        body = {"sessionId": session_id, "tx": tx.raw_transaction}
        return await self._submit(PATH_SESSION_UPDATE, body, retry=True, not_found=SessionNotFound)

    async def submit_session_delete(self, tx: SignedTransaction) -> ApiResponse:
        body = {"tx": tx.raw_transaction}
        return await self._submit(PATH_SESSION_DELETE, body, retry=True, not_found=SessionNotFound)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_markets(self) -> list[Market]:
        return _parse_list(await self._request("GET", PATH_MARKETS), Market)

    async def get_tickers(self, market_id: Optional[str] = None) -> list[Ticker]:
        raw = await self._request("GET", PATH_TICKER, params=_ticker_params(market_id))
        return _parse_list(raw, Ticker)

    async def get_tokens(self) -> list[Token]:
        return _parse_list(await self._request("GET", PATH_TOKENS), Token)

    async def get_trades(self, market_id: str, limit: Optional[int] = None) -> list[Trade]:
        raw = await self._request("GET", PATH_TRADES, params=_trade_params(market_id, limit))
        return _parse_list(raw, Trade)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> list[Balance]:
        raw = await self._request("GET", PATH_BALANCE, params={"address": address})
        return _parse_list(raw, Balance)

    async def get_sessions(self, address: str) -> list[SessionInfo]:
        raw = await self._request("GET", PATH_SESSIONS, params={"address": address})
        return _parse_list(raw, SessionInfo)

    async def get_open_orders(
        self,
        address:   str,
        market_id: Optional[str] = None,
        limit:     Optional[int] = None,
    ) -> list[OrderInfo]:
        raw = await self._request("GET", PATH_OPEN_ORDERS, params=_order_params(address, market_id, limit))
        return _parse_list(raw, OrderInfo)

    async def get_order(self, order_id: str) -> Optional[OrderInfo]:
        """Fetch one order; None if the exchange does not know the id."""
        try:
            raw = await self._request("GET", f"{PATH_ORDER}/{order_id}")
        except AlphaSecAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        orders = _parse_list(raw, OrderInfo)
        return orders[0] if orders else None


# ---------------------------------------------------------------------------
# Synchronous client
# ---------------------------------------------------------------------------

class AlphaSecRestClient:
    """
    Synchronous client for the read-only AlphaSec endpoints.

    Handy for scripts and notebooks that only need market or account data.
    Signed submissions go through AsyncAlphaSecRestClient (via Agent).

    Parameters
    ----------
    config  : Config supplying api_url, timeout_secs and max_retries
    session : Optional requests.Session to reuse connections
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None) -> None:
        self._base_url    = config.api_url.rstrip("/")
        self._timeout     = config.timeout_secs
        self._max_retries = config.max_retries
        self._session     = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, *, params: Optional[dict] = None) -> Any:
        """Send a request with automatic retry on retryable status codes."""
        url     = self._base_url + path
        backoff = _RETRY_BASE_S

        for attempt in range(self._max_retries + 1):
            logger.debug("%s %s  params=%s  attempt=%d", method.upper(), url, params, attempt)
            resp = self._session.request(method, url, params=params, timeout=self._timeout)

            if resp.status_code not in _RETRY_STATUSES or attempt == self._max_retries:
                break

            logger.warning(
                "Retryable response %d from %s %s – retrying in %.1f s",
                resp.status_code, method.upper(), path, backoff,
            )
            time.sleep(backoff)
            backoff *= _RETRY_EXP

        if resp.status_code >= 400:
            raise AlphaSecAPIError(resp.status_code, resp.text, method=method, path=path)

        return resp.json()

    def get_markets(self) -> list[Market]:
        return _parse_list(self._request("GET", PATH_MARKETS), Market)

    def get_tickers(self, market_id: Optional[str] = None) -> list[Ticker]:
        return _parse_list(self._request("GET", PATH_TICKER, params=_ticker_params(market_id)), Ticker)

    def get_tokens(self) -> list[Token]:
        return _parse_list(self._request("GET", PATH_TOKENS), Token)

    def get_trades(self, market_id: str, limit: Optional[int] = None) -> list[Trade]:
        return _parse_list(self._request("GET", PATH_TRADES, params=_trade_params(market_id, limit)), Trade)

    def get_balance(self, address: str) -> list[Balance]:
        return _parse_list(self._request("GET", PATH_BALANCE, params={"address": address}), Balance)

    def get_sessions(self, address: str) -> list[SessionInfo]:
        return _parse_list(self._request("GET", PATH_SESSIONS, params={"address": address}), SessionInfo)

    def get_open_orders(
        self,
        address:   str,
        market_id: Optional[str] = None,
        limit:     Optional[int] = None,
    ) -> list[OrderInfo]:
        raw = self._request("GET", PATH_OPEN_ORDERS, params=_order_params(address, market_id, limit))
        return _parse_list(raw, OrderInfo)

    def get_order(self, order_id: str) -> Optional[OrderInfo]:
        try:
            raw = self._request("GET", f"{PATH_ORDER}/{order_id}")
        except AlphaSecAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        orders = _parse_list(raw, OrderInfo)
        return orders[0] if orders else None
