"""HTTP and WebSocket request handlers."""

from typing import Any

from aiohttp import WSMsgType, web
from pydantic import ValidationError

from .config import RelaySettings
from .dispatcher import RelayDispatcher
from .exceptions import InvalidTunnelNameError, TunnelNotFoundError, TunnelUnavailableError
from .logging import get_logger
from .models import (
    DiscoveryResponse,
    HealthResponse,
    RegisteredMessage,
    RegisterMessage,
    TunnelNotFoundResponse,
)
from .pending import PendingRequestTable
from .registry import TunnelRegistry
from .replies import ReplyProcessor
from .sink import HttpResponseSink
from .transport import WebSocketConnection

logger = get_logger(__name__)


class RequestHandlers:
    """HTTP and WebSocket request handlers for the relay."""

    def __init__(
        self,
        registry: TunnelRegistry,
        table: PendingRequestTable,
        dispatcher: RelayDispatcher,
        replies: ReplyProcessor,
        settings: RelaySettings,
    ) -> None:
        self.registry = registry
        self.table = table
        self.dispatcher = dispatcher
        self.replies = replies
        self.settings = settings

    async def handle_tunnel_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle the WebSocket connection of an agent."""
        # Request bodies travel hex encoded, so frames are about twice the body size.
        ws = web.WebSocketResponse(
            heartbeat=self.settings.websocket_heartbeat,
            max_msg_size=self.settings.max_body_size * 3,
        )
        await ws.prepare(request)

        connection = WebSocketConnection(ws, peer=request.remote or "")
        logger.info(f"Agent connected: {connection.peer}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = msg.json()
                    except ValueError:
                        logger.warning(f"Non-JSON frame from {connection.peer}")
                        continue
                    if isinstance(data, dict):
                        await self._handle_tunnel_message(connection, data)
                    else:
                        logger.warning(f"Unexpected frame from {connection.peer}: {data!r}")
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
                    break
        finally:
            self.registry.unregister_by_connection(connection)
            logger.info(f"Agent disconnected: {connection.peer}")

        return ws

    async def _handle_tunnel_message(self, connection: WebSocketConnection, data: dict[str, Any]) -> None:
        """Handle messages from an agent: registrations and replies to proxied requests."""
        if data.get("type") == "register":
            await self._register(connection, data)
        else:
            self.replies.process_raw(data)

    async def _register(self, connection: WebSocketConnection, data: dict[str, Any]) -> None:
        try:
            message = RegisterMessage.model_validate(data)
            self.registry.register(message.name, message.tunnel_id, connection)
        except ValidationError as exc:
            logger.warning(f"Malformed registration from {connection.peer}: {exc}")
            reply = RegisteredMessage(success=False, error="Malformed registration")
        except InvalidTunnelNameError as exc:
            logger.warning(f"Rejected registration from {connection.peer}: {exc}")
            reply = RegisteredMessage(success=False, error=str(exc))
        else:
            reply = RegisteredMessage(success=True, name=message.name)

        await connection.send(reply)

    async def handle_proxied_request(self, request: web.Request) -> web.StreamResponse:
        """Handle HTTP requests that should be proxied through a tunnel."""
        tunnel_name = request.get("tunnel_name")
        if tunnel_name is None:
            return self._discovery_response(request)

        target_path = request["target_path"]
        body = await request.read()
        sink = HttpResponseSink()

        try:
            request_id = await self.dispatcher.dispatch(
                tunnel_name,
                request.method,
                target_path,
                list(request.rel_url.query.items()),
                list(request.headers.items()),
                body,
                sink,
            )
        except TunnelNotFoundError as exc:
            logger.info(f"Request for unknown tunnel {tunnel_name}")
            payload = TunnelNotFoundResponse(message=str(exc), available_tunnels=exc.available_tunnels)
            return web.json_response(payload.model_dump(), status=404)
        except TunnelUnavailableError:
            return web.json_response({"error": "Tunnel connection error"}, status=502)
        except Exception as exc:
            logger.exception(f"Request for tunnel {tunnel_name} failed due to unexpected error: {exc}")
            return web.json_response({"error": "Tunnel error"}, status=502)

        try:
            return await sink.deliver(request)
        finally:
            # No-op unless the caller left before the reply finished.
            self.table.abandon(request_id)

    def _discovery_response(self, request: web.Request) -> web.Response:
        names = self.registry.names()
        payload = DiscoveryResponse(
            available_tunnels=names,
            examples=[f"{request.scheme}://{request.host}/{name}/" for name in names],
        )
        return web.json_response(payload.model_dump())

    async def handle_health(self, request: web.Request) -> web.Response:
        """Return process status and active tunnels."""
        tunnels = self.registry.all()
        response = HealthResponse(
            active_tunnels=list(tunnels),
            tunnel_count=len(tunnels),
            tunnels=[tunnel.to_info() for tunnel in tunnels.values()],
        )
        return web.json_response(response.model_dump(mode="json"))
