"""Relay dispatcher: forwards public requests into tunnels."""

import asyncio
from uuid import uuid4

from .exceptions import TunnelUnavailableError
from .logging import get_logger
from .models import RequestEnvelope
from .pending import PendingRequestTable
from .registry import TunnelRegistry
from .sink import ResponseSink

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0


class RelayDispatcher:
    """
    Encapsulates the relay side of forwarding one HTTP request: tunnel lookup,
    pending entry creation, deadline timer and envelope delivery.
    """

    def __init__(
        self,
        registry: TunnelRegistry,
        table: PendingRequestTable,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.table = table
        self.request_timeout = request_timeout

    async def dispatch(
        self,
        name: str,
        method: str,
        path: str,
        query: list[tuple[str, str]],
        headers: list[tuple[str, str]],
        body: bytes,
        sink: ResponseSink,
    ) -> str:
        """
        Send a request to the tunnel ``name``; the reply reaches ``sink`` later.

        Args:
            name: Tunnel name
            method: HTTP method
            path: Target path with the tunnel prefix stripped
            query: Query parameters in order
            headers: Request headers in order
            body: Raw request body
            sink: Where the reply, timeout or error will be written

        Returns:
            The generated request id

        Raises:
            TunnelNotFoundError: If no tunnel is registered under ``name``
            TunnelUnavailableError: If the envelope could not be sent
        """
        connection = self.registry.resolve(name)
        tunnel = self.registry.get(name)
        if tunnel is not None:
            tunnel.request_count += 1

        request_id = str(uuid4())
        state = self.table.create(request_id, sink, self.request_timeout)

        loop = asyncio.get_running_loop()
        self.table.arm(request_id, loop.call_at(state.deadline, self.table.expire, request_id))

        envelope = RequestEnvelope(
            request_id=request_id,
            method=method,
            path=path,
            query=query,
            headers=headers,
            body=body,
        )

        try:
            await connection.send(envelope)
        except (ConnectionError, RuntimeError) as exc:
            self.table.abandon(request_id)
            logger.error(f"Failed to send request {request_id} to tunnel {name}: {exc}")
            raise TunnelUnavailableError(name, str(exc)) from exc

        logger.info(f"Forwarded {method} {path} to tunnel {name} as {request_id}")
        return request_id
