"""Tunnel connection abstraction and its WebSocket implementation."""

from abc import ABC, abstractmethod

from aiohttp import ClientWebSocketResponse, WSCloseCode, web

from .logging import get_logger
from .models import Envelope

logger = get_logger(__name__)

TUNNEL_PATH = "/__tunnel"


class TunnelConnection(ABC):
    """Abstract interface for one live relay <-> agent session."""

    @abstractmethod
    async def send(self, message: Envelope) -> None:
        """
        Send one envelope over the connection.

        Args:
            message: Envelope to serialize and send

        Raises:
            ConnectionError: If the underlying session is closed
        """

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the underlying session has gone away."""

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying session."""


class WebSocketConnection(TunnelConnection):
    """aiohttp WebSocket-based implementation of a tunnel connection."""

    def __init__(self, websocket: web.WebSocketResponse | ClientWebSocketResponse, peer: str = ""):
        """
        Wrap a prepared WebSocket.

        Args:
            websocket: Server-side or client-side aiohttp WebSocket
            peer: Remote address, used in log lines only
        """
        self._websocket = websocket
        self.peer = peer

    @property
    def closed(self) -> bool:
        return self._websocket.closed

    async def close(self) -> None:
        await self._websocket.close(code=WSCloseCode.GOING_AWAY, message=b"Tunnel closed")

    async def send(self, message: Envelope) -> None:
        if self._websocket.closed:
            raise ConnectionResetError(f"Tunnel connection to {self.peer or 'peer'} is closed")

        logger.debug(f"Sending {message.type} over tunnel", extra={"peer": self.peer})
        await self._websocket.send_str(message.to_wire())

    def __repr__(self) -> str:
        return f"<WebSocketConnection peer={self.peer!r} closed={self.closed}>"
