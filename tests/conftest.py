import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from burrow.config import RelaySettings
from burrow.pending import PendingRequestTable
from burrow.registry import TunnelRegistry
from burrow.server import RelayServer

from tests.fakes import FakeConnection, RecordingSink


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def table(clock: FakeClock) -> PendingRequestTable:
    return PendingRequestTable(clock=clock)


@pytest.fixture
def registry() -> TunnelRegistry:
    return TunnelRegistry()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest_asyncio.fixture
async def relay():
    """Relay application behind an in-process test server."""
    server = RelayServer(RelaySettings(request_timeout=0.5, websocket_heartbeat=30.0))
    client = TestClient(TestServer(server.create_app()))
    await client.start_server()
    yield server, client
    await client.close()


async def connect_agent(client: TestClient, name: str, tunnel_id: str = "tunnel-1"):
    """Open an agent WebSocket on the relay and register ``name``."""
    ws = await client.ws_connect("/__tunnel")
    await ws.send_json({"type": "register", "tunnelId": tunnel_id, "name": name})
    reply = await asyncio.wait_for(ws.receive_json(), timeout=2)
    assert reply == {"type": "registered", "success": True, "name": name, "error": None}
    return ws


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def local_service_app() -> web.Application:
    """Stand-in for the private service an agent exposes."""

    async def handle_json(request: web.Request) -> web.Response:
        return web.json_response({"a": 1})

    async def handle_broken_json(request: web.Request) -> web.Response:
        return web.Response(text="{not json", content_type="application/json")

    async def handle_echo(request: web.Request) -> web.Response:
        body = await request.read()
        return web.json_response(
            {
                "method": request.method,
                "path": request.path,
                "query": [list(item) for item in request.query.items()],
                "host": request.headers.get("Host"),
                "x_test": request.headers.get("X-Test"),
                "body": body.decode(),
            }
        )

    async def handle_missing(request: web.Request) -> web.Response:
        return web.json_response({"detail": "nope"}, status=404)

    async def handle_binary(request: web.Request) -> web.Response:
        return web.Response(body=b"\x89PNG\xff\x00", content_type="image/png")

    async def handle_plain(request: web.Request) -> web.Response:
        return web.Response(text="plain text")

    async def handle_events(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for part in ("data: a\n\n", "data: b\n\n", "data: c\n\n"):
            await response.write(part.encode())
            await asyncio.sleep(0)
        await response.write_eof()
        return response

    async def handle_ndjson(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "application/x-ndjson"})
        await response.prepare(request)
        await response.write(b'{"n": 1}\n')
        await response.write(b'{"n": 2}\n')
        await response.write_eof()
        return response

    async def handle_chunked_plain(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/plain"})
        response.enable_chunked_encoding()
        await response.prepare(request)
        await response.write("café ".encode())
        await response.write(b"ok")
        await response.write_eof()
        return response

    async def handle_slow_events(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(b"data: first\n\n")
        await asyncio.sleep(0.6)
        await response.write(b"data: second\n\n")
        await response.write_eof()
        return response

    async def handle_slow_json(request: web.Request) -> web.Response:
        await asyncio.sleep(1.0)
        return web.json_response({"late": True})

    async def handle_broken_stream(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(b"data: partial\n\n")
        await asyncio.sleep(0.1)
        request.transport.close()
        return response

    async def handle_latin1(request: web.Request) -> web.Response:
        return web.Response(
            body="café".encode("latin-1"),
            headers={"Content-Type": "text/plain; charset=iso-8859-1"},
        )

    async def handle_latin1_events(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream; charset=iso-8859-1"})
        await response.prepare(request)
        await response.write("data: café\n\n".encode("latin-1"))
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/json", handle_json)
    app.router.add_get("/broken-json", handle_broken_json)
    app.router.add_route("*", "/echo/{tail:.*}", handle_echo)
    app.router.add_get("/missing", handle_missing)
    app.router.add_get("/binary", handle_binary)
    app.router.add_get("/plain", handle_plain)
    app.router.add_get("/events", handle_events)
    app.router.add_get("/ndjson", handle_ndjson)
    app.router.add_get("/chunked", handle_chunked_plain)
    app.router.add_get("/slow-events", handle_slow_events)
    app.router.add_get("/slow-json", handle_slow_json)
    app.router.add_get("/broken-stream", handle_broken_stream)
    app.router.add_get("/latin1", handle_latin1)
    app.router.add_get("/latin1-events", handle_latin1_events)
    return app


@pytest_asyncio.fixture
async def local_service():
    server = TestServer(local_service_app())
    await server.start_server()
    yield server
    await server.close()
