"""Tunnel registry: public names to live agent connections."""

import re
from collections.abc import Mapping
from types import MappingProxyType

from .exceptions import InvalidTunnelNameError, TunnelNotFoundError
from .logging import get_logger
from .models import Tunnel
from .transport import TunnelConnection

logger = get_logger(__name__)

TUNNEL_NAME_PATTERN = re.compile(r"[A-Za-z0-9._~-]+")


def validate_tunnel_name(name: str) -> str:
    """Return ``name`` if it can be routed as a single path segment."""
    if not TUNNEL_NAME_PATTERN.fullmatch(name) or name.startswith("__") or name in (".", ".."):
        raise InvalidTunnelNameError(name)
    return name


class TunnelRegistry:
    """Manages active tunnel registrations.

    Every method runs without suspending, so each call is atomic with respect
    to other tasks on the event loop.
    """

    def __init__(self) -> None:
        self._tunnels: dict[str, Tunnel] = {}

    def register(self, name: str, tunnel_id: str, connection: TunnelConnection) -> Tunnel:
        """Bind ``name`` to ``connection``. A later registration replaces an earlier one."""
        validate_tunnel_name(name)

        previous = self._tunnels.get(name)
        tunnel = Tunnel(name=name, tunnel_id=tunnel_id, connection=connection)
        self._tunnels[name] = tunnel

        if previous is not None and previous.connection is not connection:
            logger.warning(f"Tunnel {name} re-registered, replacing {previous.tunnel_id}")
        logger.info(f"Tunnel registered: {name} (ID: {tunnel_id})")
        return tunnel

    def resolve(self, name: str) -> TunnelConnection:
        """Get the connection serving ``name``.

        Raises:
            TunnelNotFoundError: If no tunnel is registered under ``name``
        """
        tunnel = self._tunnels.get(name)
        if tunnel is None:
            raise TunnelNotFoundError(name, self.names())
        return tunnel.connection

    def get(self, name: str) -> Tunnel | None:
        """Get tunnel by name."""
        return self._tunnels.get(name)

    def unregister_by_connection(self, connection: TunnelConnection) -> list[str]:
        """Remove every name still bound to ``connection``."""
        removed = [name for name, tunnel in self._tunnels.items() if tunnel.connection is connection]
        for name in removed:
            del self._tunnels[name]
            logger.info(f"Tunnel unregistered: {name}")
        return removed

    def names(self) -> list[str]:
        """Snapshot of the registered names."""
        return list(self._tunnels)

    def all(self) -> Mapping[str, Tunnel]:
        """Read-only view of all active tunnels."""
        return MappingProxyType(self._tunnels)

    def count(self) -> int:
        """Get count of active tunnels."""
        return len(self._tunnels)
