"""
Burrow agent.
Holds a tunnel to the relay and serves forwarded requests from a local service.
"""

import asyncio
import sys
from typing import Any

import aiohttp
import uvloop
from pydantic import ValidationError
from yarl import URL

from .config import AgentSettings, get_agent_settings
from .exceptions import RegistrationRejectedError
from .executor import INTERNAL_ERROR_STATUS, RequestExecutor
from .logging import get_logger, setup_logging
from .models import RegisteredMessage, RegisterMessage, RequestEnvelope, ResponseEnvelope
from .transport import TUNNEL_PATH, WebSocketConnection

logger = get_logger(__name__)


class TunnelAgent:
    """Agent that keeps a tunnel open and exposes a local service through it."""

    def __init__(self, settings: AgentSettings) -> None:
        self.settings = settings
        self.public_url: str | None = None
        self.registered = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def tunnel_url(self) -> str:
        return self.settings.relay_url.rstrip("/") + TUNNEL_PATH

    def _public_url(self, name: str) -> str:
        relay = URL(self.settings.relay_url)
        scheme = {"ws": "http", "wss": "https"}.get(relay.scheme, relay.scheme)
        return str(relay.with_scheme(scheme).with_path(f"/{name}/"))

    async def run(self) -> None:
        """Keep the tunnel up, reconnecting after every drop."""
        while True:
            try:
                await self.connect()
            except (aiohttp.ClientError, OSError) as exc:
                logger.error(f"Connection error: {exc}")

            self.registered.clear()
            logger.info(f"Reconnecting in {self.settings.reconnect_delay:.0f}s")
            await asyncio.sleep(self.settings.reconnect_delay)

    async def connect(self) -> None:
        """Open one tunnel session and serve it until the relay goes away."""
        # No socket read limit: streams may idle between chunks. The executor
        # bounds header waits and buffered reads with read_timeout instead.
        local_timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.settings.connect_timeout)

        async with (
            aiohttp.ClientSession(timeout=local_timeout) as local_session,
            aiohttp.ClientSession() as relay_session,
            relay_session.ws_connect(self.tunnel_url, heartbeat=30.0, max_msg_size=0) as ws,
        ):
            logger.info(f"Connected to relay: {self.settings.relay_url}")
            connection = WebSocketConnection(ws, peer=self.settings.relay_url)
            executor = RequestExecutor(self.settings.local_url, local_session, self.settings.read_timeout)

            await connection.send(RegisterMessage(tunnel_id=self.settings.tunnel_id, name=self.settings.name))

            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            data = msg.json()
                        except ValueError:
                            logger.warning("Non-JSON frame from relay")
                            continue
                        if isinstance(data, dict):
                            await self._handle_message(connection, executor, data)
                        else:
                            logger.warning(f"Unexpected frame from relay: {data!r}")
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.error(f"WebSocket error: {ws.exception()}")
                        break
            finally:
                tasks = list(self._tasks)
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Disconnected from relay")

    async def _handle_message(
        self, connection: WebSocketConnection, executor: RequestExecutor, data: dict[str, Any]
    ) -> None:
        """Handle messages from the relay."""
        msg_type = data.get("type")

        if msg_type == "registered":
            try:
                reply = RegisteredMessage.model_validate(data)
            except ValidationError as exc:
                logger.warning(f"Dropping malformed registration reply: {exc}")
                return
            if not reply.success:
                logger.error(f"Failed to register tunnel: {reply.error}")
                raise RegistrationRejectedError(reply.error or "registration refused")

            self.public_url = self._public_url(reply.name or self.settings.name)
            self.registered.set()
            logger.info("Tunnel active!")
            logger.info(f"Public URL: {self.public_url}")
            logger.info(f"Local service: {self.settings.local_url}")

        elif msg_type == "http_request":
            try:
                envelope = RequestEnvelope.model_validate(data)
            except ValidationError as exc:
                logger.warning(f"Dropping malformed request envelope: {exc}")
                return

            task = asyncio.create_task(self._serve(connection, executor, envelope))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        else:
            logger.debug(f"Ignoring message of type {msg_type!r}")

    async def _serve(
        self, connection: WebSocketConnection, executor: RequestExecutor, envelope: RequestEnvelope
    ) -> None:
        try:
            await executor.execute(envelope, connection.send)
        except ConnectionError as exc:
            logger.warning(f"Lost tunnel while answering {envelope.request_id}: {exc}")
        except ValidationError as exc:
            # The local reply could not be expressed as an envelope (e.g. a bogus status).
            logger.error(f"Unrelayable reply for {envelope.request_id}: {exc}")
            try:
                await connection.send(
                    ResponseEnvelope(
                        request_id=envelope.request_id,
                        status_code=INTERNAL_ERROR_STATUS,
                        error="Invalid response from local service",
                    )
                )
            except ConnectionError:
                logger.warning(f"Lost tunnel while reporting failure of {envelope.request_id}")


def main() -> None:
    """Entry point for the agent: ``burrow-agent [relay_url] [name] [local_url]``."""
    settings = get_agent_settings()
    overrides = dict(zip(("relay_url", "name", "local_url"), sys.argv[1:4]))
    if overrides:
        settings = settings.model_copy(update=overrides)

    setup_logging(settings.log_level)
    agent = TunnelAgent(settings)

    try:
        uvloop.run(agent.run())
    except RegistrationRejectedError as exc:
        logger.error(str(exc))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Agent stopped by user")


if __name__ == "__main__":
    main()
