"""
Low level client for the rental backend REST API.

One ``ApiClient`` owns the session token and the registry of in-flight
requests. Requests issued under a logical key are mutually exclusive: a new
request cancels the pending one with the same key (last caller wins).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import AbortError, ApiClientError, ApiError, NetworkError, SessionExpiredError
from .token_store import MemoryTokenStore

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.avtoprokat-demo.ru/api/v1"


def log_notifier(message: str):
    logger.warning("API notification: %s", message)


def error_message(body: Any, status: int) -> str:
    """Human readable message of an error body, with a generic fallback."""
    if isinstance(body, dict):
        message = body.get("message")
        if not message and isinstance(body.get("detail"), str):
            message = body["detail"]
        if message:
            return str(message)
    return f"Server error: {status}"


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


class _InFlight:
    __slots__ = ("task", "aborted")

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.aborted = False

    def abort(self):
        self.aborted = True
        self.task.cancel()


class ApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token_store=None,
        notify: Optional[Callable[[str], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_store = token_store if token_store is not None else MemoryTokenStore()
        self.notify = notify or log_notifier
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_wait = retry_wait
        self._token: Optional[str] = self.token_store.get()
        self._in_flight: Dict[str, _InFlight] = {}
        self._http = httpx.AsyncClient(transport=transport, timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        for key in list(self._in_flight):
            self.cancel(key)
        await self._http.aclose()

    # ---------------- token ----------------

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: str):
        self._token = token
        self.token_store.set(token)
        logger.info("API token stored")

    def clear_token(self):
        if self._token is not None:
            logger.info("API token cleared")
        self._token = None
        self.token_store.clear()

    # ---------------- in-flight registry ----------------

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    def cancel(self, key: str):
        entry = self._in_flight.pop(key, None)
        if entry is not None:
            logger.debug("Cancelling in-flight request %r", key)
            entry.abort()

    # ---------------- requests ----------------

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if extra:
            headers.update(extra)
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def request(
        self,
        path: str,
        method: str = "GET",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        key: Optional[str] = None,
    ) -> Any:
        """
        Issue ``method path`` against the base endpoint and return the parsed JSON.

        Raises ``AbortError`` when superseded or cancelled (silently),
        ``SessionExpiredError`` on 401 (token already cleared), ``ApiError``
        on any other non-2xx status and ``NetworkError`` on transport
        failures. The last three are also passed to ``notify``.
        """
        method = method.upper()
        try:
            if key is None:
                return await self._send(method, path, json, headers)
            return await self._send_keyed(key, method, path, json, headers)
        except AbortError as exc:
            logger.debug("%s", exc)
            raise
        except (ApiError, NetworkError) as exc:
            logger.error("API error: %s %s -> %s", method, path, exc)
            self.notify(str(exc))
            raise

    async def _send_keyed(self, key, method, path, json, headers):
        self.cancel(key)
        entry = _InFlight(asyncio.ensure_future(self._send(method, path, json, headers)))
        self._in_flight[key] = entry
        try:
            result = await entry.task
        except asyncio.CancelledError:
            if entry.aborted:
                raise AbortError(key) from None
            # the caller itself is being torn down
            raise
        except ApiClientError as exc:
            if entry.aborted:
                raise AbortError(key) from exc
            raise
        finally:
            if self._in_flight.get(key) is entry:
                del self._in_flight[key]
        # the response may have landed just before a newer request superseded it
        if entry.aborted:
            raise AbortError(key)
        return result

    async def _perform(self, method, url, headers, payload) -> httpx.Response:
        attempts = self.retry_attempts if method == "GET" else 1
        if attempts == 1:
            return await self._http.request(method, url, headers=headers, json=payload)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                return await self._http.request(method, url, headers=headers, json=payload)

    async def _send(self, method, path, json, headers) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._perform(method, url, self._headers(headers), json)
        except httpx.RequestError as exc:
            raise NetworkError(f"Network error: {exc}") from exc

        status = response.status_code
        if not response.is_success:
            body = _json_or_empty(response)
            message = error_message(body, status)
            if status == 401:
                self.clear_token()
                raise SessionExpiredError(message, status, body)
            raise ApiError(message, status, body)

        # DELETE and friends may answer without a body
        if status == 204:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError("Invalid JSON from backend", status, response.text) from exc
