"""
Burrow Relay - HTTP Tunneling Service
Exposes services behind NAT through agent-held WebSocket tunnels.
"""

import asyncio

import aiohttp_cors
import uvloop
from aiohttp import web

from .config import RelaySettings, get_settings
from .dispatcher import RelayDispatcher
from .handlers import RequestHandlers
from .logging import get_logger, setup_logging
from .middleware import tunnel_routing_middleware
from .pending import PendingRequestTable
from .registry import TunnelRegistry
from .replies import ReplyProcessor
from .transport import TUNNEL_PATH

logger = get_logger(__name__)

HEALTH_PATH = "/__health"


class RelayServer:
    """Main server class for managing tunnels and proxying requests."""

    def __init__(self, settings: RelaySettings | None = None) -> None:
        self.settings = settings or get_settings()
        self.registry = TunnelRegistry()
        self.table = PendingRequestTable()
        self.dispatcher = RelayDispatcher(self.registry, self.table, self.settings.request_timeout)
        self.replies = ReplyProcessor(self.table)
        self.handlers = RequestHandlers(
            self.registry, self.table, self.dispatcher, self.replies, self.settings
        )

    def setup_routes(self, app: web.Application) -> None:
        """Configure application routes."""
        app.router.add_get(HEALTH_PATH, self.handlers.handle_health)
        app.router.add_get(TUNNEL_PATH, self.handlers.handle_tunnel_connect)
        app.router.add_route("*", "/{tail:.*}", self.handlers.handle_proxied_request)

    def create_app(self) -> web.Application:
        """Build the aiohttp application."""
        app = web.Application(
            middlewares=[tunnel_routing_middleware],
            client_max_size=self.settings.max_body_size,
        )

        # Setup CORS
        cors = aiohttp_cors.setup(
            app,
            defaults={
                "*": aiohttp_cors.ResourceOptions(
                    allow_credentials=True,
                    expose_headers="*",
                    allow_headers="*",
                )
            },
        )

        self.setup_routes(app)

        # The wildcard route forwards OPTIONS to the agent, so it stays out of CORS handling
        for route in list(app.router.routes()):
            if route.method == "*":
                continue
            cors.add(route)

        app.on_shutdown.append(self._close_tunnels)
        return app

    async def _close_tunnels(self, app: web.Application) -> None:
        for tunnel in list(self.registry.all().values()):
            await tunnel.connection.close()

    async def start(self) -> None:
        """Start the relay and serve until interrupted."""
        runner = web.AppRunner(self.create_app())
        await runner.setup()

        site = web.TCPSite(runner, self.settings.host, self.settings.port)
        await site.start()

        logger.info(f"Burrow relay started on http://{self.settings.host}:{self.settings.port}")
        logger.info(f"Health check: http://{self.settings.host}:{self.settings.port}{HEALTH_PATH}")
        logger.info(f"Tunnel access: http://{self.settings.host}:{self.settings.port}/{{tunnel-name}}/")

        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()


def main() -> None:
    """Entry point for the relay."""
    settings = get_settings()
    setup_logging(settings.log_level)
    server = RelayServer(settings)

    try:
        uvloop.run(server.start())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    main()
