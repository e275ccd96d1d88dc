import asyncio
import json

import httpx
import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

from collabtable.errors import AuthenticationError, ServerError, TransportError
from collabtable.models import CollabList, SyncRequest, SyncResponse
from collabtable.transport import (
    FallbackSyncTransport,
    HttpSyncTransport,
    WebSocketSyncTransport,
    auth_headers,
    server_root,
    websocket_url,
)

SYNC_RESPONSE = {
    "lists": [{"id": "L1", "name": "Groceries", "createdAt": 1, "updatedAt": 2, "isDeleted": False}],
    "fields": [],
    "items": [],
    "itemValues": [],
    "serverTimestamp": 42,
}


def http_transport(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://server")
    return HttpSyncTransport("http://server/api/", client=client, **kwargs)


def test_url_helpers():
    assert server_root("http://host:3000/api/") == "http://host:3000"
    assert server_root("http://host:3000") == "http://host:3000"
    assert websocket_url("http://host:3000/api") == "ws://host:3000/api/ws"
    assert websocket_url("https://host") == "wss://host/api/ws"
    assert auth_headers("pw", "dev1") == {"Authorization": "Bearer pw", "X-Device-Id": "dev1"}
    assert auth_headers(None, None) == {}


@pytest.mark.asyncio
async def test_http_sync_sends_headers_and_body():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["device"] = request.headers.get("x-device-id")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=SYNC_RESPONSE)

    transport = http_transport(handler, password="pw", device_id="dev1")
    response = await transport.sync(SyncRequest(last_sync_timestamp=7))
    await transport.close()

    assert seen["path"] == "/api/sync"
    assert seen["auth"] == "Bearer pw"
    assert seen["device"] == "dev1"
    assert seen["body"]["lastSyncTimestamp"] == 7
    assert seen["body"]["itemValues"] == []
    assert response.server_timestamp == 42
    assert response.lists[0].name == "Groceries"


@pytest.mark.asyncio
async def test_http_error_mapping():
    unauthorized = http_transport(
        lambda r: httpx.Response(401, json={"error": "Unauthorized", "message": "Invalid password"})
    )
    with pytest.raises(AuthenticationError, match="Invalid password"):
        await unauthorized.sync(SyncRequest())

    failing = http_transport(lambda r: httpx.Response(500, json={"error": "Sync failed"}))
    with pytest.raises(ServerError) as exc_info:
        await failing.sync(SyncRequest())
    assert exc_info.value.status_code == 500
    assert exc_info.value.response_data == {"error": "Sync failed"}

    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    with pytest.raises(TransportError):
        await http_transport(refuse).sync(SyncRequest())


@pytest.mark.asyncio
async def test_http_health_is_unauthenticated():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"status": "ok", "timestamp": 1})

    transport = http_transport(handler, password="pw")
    assert (await transport.health())["status"] == "ok"
    assert seen["auth"] is None


class FakeSocket:
    """Replies to the first sent envelope with frames built by ``script``."""

    def __init__(self, script):
        self.script = script
        self.sent = []
        self.queue: asyncio.Queue = asyncio.Queue()

    async def send(self, data):
        envelope = json.loads(data)
        self.sent.append(envelope)
        for frame in self.script(envelope):
            self.queue.put_nowait(frame)

    async def recv(self):
        frame = await self.queue.get()
        if isinstance(frame, BaseException):
            raise frame
        return json.dumps(frame)


class FakeConnect:
    def __init__(self, script=None, error=None):
        self.socket = FakeSocket(script or (lambda envelope: []))
        self.error = error
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.socket

    async def __aexit__(self, *exc):
        return False


def ws_transport(connect, timeout=1.0):
    return WebSocketSyncTransport(
        "http://server:3000/api", password="pw", device_id="dev1", timeout=timeout, connect=connect
    )


@pytest.mark.asyncio
async def test_ws_sync_matches_correlation_id():
    def script(envelope):
        return [
            {"type": "pong", "id": "x"},
            {"type": "syncResponse", "id": "someone-else", "payload": {"serverTimestamp": 1}},
            {"type": "syncResponse", "id": envelope["id"], "payload": SYNC_RESPONSE},
        ]

    connect = FakeConnect(script)
    response = await ws_transport(connect).sync(SyncRequest(last_sync_timestamp=3))

    assert response.server_timestamp == 42
    url, kwargs = connect.calls[0]
    assert url == "ws://server:3000/api/ws"
    assert kwargs["additional_headers"] == {"Authorization": "Bearer pw", "X-Device-Id": "dev1"}
    sent = connect.socket.sent[0]
    assert sent["type"] == "sync"
    assert sent["payload"]["lastSyncTimestamp"] == 3


@pytest.mark.asyncio
async def test_ws_error_frame():
    connect = FakeConnect(lambda envelope: [{"type": "error", "payload": {"message": "Sync failed"}}])
    with pytest.raises(TransportError, match="Sync failed"):
        await ws_transport(connect).sync(SyncRequest())


@pytest.mark.asyncio
async def test_ws_timeout():
    connect = FakeConnect(lambda envelope: [{"type": "pong", "id": envelope["id"]}])
    with pytest.raises(TransportError, match="No syncResponse"):
        await ws_transport(connect, timeout=0.05).sync(SyncRequest())


@pytest.mark.asyncio
async def test_ws_policy_close_is_auth_failure():
    closed = ConnectionClosed(Close(1008, "Unauthorized"), None)
    connect = FakeConnect(lambda envelope: [closed])
    with pytest.raises(AuthenticationError):
        await ws_transport(connect).sync(SyncRequest())

    dropped = ConnectionClosed(Close(1011, "boom"), None)
    with pytest.raises(TransportError) as exc_info:
        await ws_transport(FakeConnect(lambda envelope: [dropped])).sync(SyncRequest())
    assert not isinstance(exc_info.value, AuthenticationError)


@pytest.mark.asyncio
async def test_ws_handshake_rejected():
    rejected = InvalidStatus(Response(403, "Forbidden", Headers()))
    with pytest.raises(AuthenticationError):
        await ws_transport(FakeConnect(error=rejected)).sync(SyncRequest())

    unavailable = InvalidStatus(Response(503, "Service Unavailable", Headers()))
    with pytest.raises(TransportError):
        await ws_transport(FakeConnect(error=unavailable)).sync(SyncRequest())

    with pytest.raises(TransportError):
        await ws_transport(FakeConnect(error=ConnectionRefusedError())).sync(SyncRequest())


class StaticTransport:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = 0
        self.closed = False

    async def sync(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_fallback_transport():
    response = SyncResponse(
        lists=[CollabList(id="L1", name="x", created_at=1, updated_at=1)], server_timestamp=9
    )

    primary = StaticTransport(response=response)
    fallback = StaticTransport(response=SyncResponse(server_timestamp=1))
    assert await FallbackSyncTransport(primary, fallback).sync(SyncRequest()) is response
    assert fallback.calls == 0

    primary = StaticTransport(error=AuthenticationError("Unauthorized (WS 1008)"))
    fallback = StaticTransport(response=response)
    transport = FallbackSyncTransport(primary, fallback)
    assert await transport.sync(SyncRequest()) is response
    assert (primary.calls, fallback.calls) == (1, 1)

    await transport.close()
    assert primary.closed and fallback.closed


@pytest.mark.asyncio
async def test_fallback_auth_failure_propagates():
    primary = StaticTransport(error=TransportError("WebSocket error"))
    fallback = StaticTransport(error=AuthenticationError("Unauthorized (401)"))
    with pytest.raises(AuthenticationError):
        await FallbackSyncTransport(primary, fallback).sync(SyncRequest())
