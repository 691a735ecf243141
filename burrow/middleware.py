"""Middleware for tunnel routing."""

from urllib.parse import unquote

from aiohttp import web
from aiohttp.typedefs import Handler

from .logging import get_logger

logger = get_logger(__name__)


def split_tunnel_path(raw_path: str) -> tuple[str | None, str]:
    """
    Split ``/{name}/{rest}`` into the tunnel name and the target path.

    The target path keeps its percent-encoding and is ``/`` when empty. A
    path without any segment yields no tunnel name.
    """
    stripped = raw_path.lstrip("/")
    if not stripped:
        return None, "/"

    name, _, rest = stripped.partition("/")
    return unquote(name), f"/{rest}"


@web.middleware
async def tunnel_routing_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Extract the tunnel name from the first path segment and attach it to the request."""
    tunnel_name, target_path = split_tunnel_path(request.rel_url.raw_path)

    request["tunnel_name"] = tunnel_name
    request["target_path"] = target_path

    logger.debug(f"Extracted tunnel name: {tunnel_name} from path: {request.rel_url.raw_path}")

    return await handler(request)
