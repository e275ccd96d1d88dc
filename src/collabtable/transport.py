"""Client transports carrying a SyncRequest to the server and the SyncResponse back.

Two bindings implement the same ``sync`` contract: a unary HTTP call and a
real-time WebSocket round trip. ``FallbackSyncTransport`` tries the second and
falls back to the first on any failure.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Protocol

import httpx
from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from collabtable.errors import AuthenticationError, ServerError, SyncError, TransportError
from collabtable.models import MessageEnvelope, PollResponse, SyncRequest, SyncResponse

logger = logging.getLogger("collabtable.transport")

DEFAULT_TIMEOUT = 30.0
WS_UNAUTHORIZED = 1008


class SyncTransport(Protocol):
    async def sync(self, request: SyncRequest) -> SyncResponse: ...

    async def close(self) -> None: ...


def server_root(url: str) -> str:
    """``http://host:3000/api/`` -> ``http://host:3000``."""
    root = url.strip().rstrip("/")
    if root.endswith("/api"):
        root = root[: -len("/api")]
    return root


def websocket_url(url: str) -> str:
    root = server_root(url)
    if root.startswith("https://"):
        root = "wss://" + root[len("https://"):]
    elif root.startswith("http://"):
        root = "ws://" + root[len("http://"):]
    else:
        root = "ws://" + root
    return root + "/api/ws"


def auth_headers(password: str | None, device_id: str | None) -> dict[str, str]:
    headers = {}
    if password:
        headers["Authorization"] = f"Bearer {password}"
    if device_id:
        headers["X-Device-Id"] = device_id
    return headers


class HttpSyncTransport:
    """Unary JSON-over-HTTP binding, plus the other REST calls a client makes."""

    def __init__(
        self,
        base_url: str,
        password: str | None = None,
        device_id: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = server_root(base_url)
        self.password = password
        self.device_id = device_id
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_body: dict | None = None,
        params: dict | None = None,
        authenticated: bool = True,
    ) -> Any:
        client = await self._get_client()
        headers = auth_headers(self.password, self.device_id) if authenticated else {}
        try:
            response = await client.request(method, endpoint, json=json_body, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            detail = str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict):
                    detail = response_data.get("message") or response_data.get("error") or detail
            except ValueError:
                pass
            if e.response.status_code == 401:
                raise AuthenticationError(f"Unauthorized (401): {detail}") from e
            raise ServerError(e.response.status_code, detail, response_data=response_data) from e
        except httpx.RequestError as e:
            raise TransportError(f"Connection error to {self.base_url}{endpoint}: {e}") from e
        except ValueError as e:
            raise ServerError(response.status_code, "Failed to decode JSON response") from e

    async def sync(self, request: SyncRequest) -> SyncResponse:
        data = await self._request("POST", "/api/sync", json_body=request.to_wire())
        try:
            return SyncResponse.model_validate(data)
        except ValidationError as e:
            raise ServerError(200, f"Malformed sync response: {e}") from e

    async def poll_notifications(self, since: int) -> PollResponse:
        data = await self._request("GET", "/api/notifications/poll", params={"since": since})
        return PollResponse.model_validate(data)

    async def health(self) -> dict:
        return await self._request("GET", "/health", authenticated=False)

    async def get_lists(self) -> list[dict]:
        return await self._request("GET", "/api/lists")


class WebSocketSyncTransport:
    """One sync round trip over ``/api/ws``, bounded by ``timeout`` seconds."""

    def __init__(
        self,
        base_url: str,
        password: str | None = None,
        device_id: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect: Callable[..., Any] | None = None,
    ):
        self.url = websocket_url(base_url)
        self.password = password
        self.device_id = device_id
        self.timeout = timeout
        self._connect = connect or ws_connect

    async def close(self):
        pass

    async def sync(self, request: SyncRequest) -> SyncResponse:
        message_id = str(uuid.uuid4())
        try:
            return await asyncio.wait_for(self._round_trip(request, message_id), self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No syncResponse within {self.timeout:g}s") from e
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else None
            if code == WS_UNAUTHORIZED:
                raise AuthenticationError(f"Unauthorized (WS {WS_UNAUTHORIZED})") from e
            raise TransportError(f"WebSocket closed ({code}) before syncResponse") from e
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationError(f"Unauthorized (WS handshake {status})") from e
            raise TransportError(f"WebSocket handshake rejected with HTTP {status}") from e
        except (WebSocketException, OSError) as e:
            raise TransportError(f"WebSocket error: {e}") from e

    async def _round_trip(self, request: SyncRequest, message_id: str) -> SyncResponse:
        headers = auth_headers(self.password, self.device_id)
        async with self._connect(self.url, additional_headers=headers, open_timeout=self.timeout) as ws:
            envelope = MessageEnvelope(id=message_id, type="sync", payload=request.to_wire())
            await ws.send(json.dumps(envelope.to_wire()))
            while True:
                raw = await ws.recv()
                try:
                    frame = MessageEnvelope.model_validate_json(raw)
                except ValidationError as e:
                    raise TransportError(f"Malformed WebSocket frame: {e}") from e

                if frame.type == "syncResponse" and frame.id == message_id:
                    try:
                        return SyncResponse.model_validate(frame.payload or {})
                    except ValidationError as e:
                        raise TransportError(f"Malformed syncResponse: {e}") from e
                if frame.type == "error":
                    message = "WebSocket error"
                    if isinstance(frame.payload, dict):
                        message = frame.payload.get("message") or message
                    raise TransportError(message)
                logger.debug(f"Ignoring WS frame {frame.type!r} (id={frame.id})")


class FallbackSyncTransport:
    """Try ``primary`` first; on any sync failure repeat the request on ``fallback``."""

    def __init__(self, primary: SyncTransport, fallback: SyncTransport):
        self.primary = primary
        self.fallback = fallback

    async def sync(self, request: SyncRequest) -> SyncResponse:
        try:
            return await self.primary.sync(request)
        except SyncError as e:
            logger.warning(f"Falling back to HTTP sync: {e}")
        return await self.fallback.sync(request)

    async def close(self):
        await self.primary.close()
        await self.fallback.close()
