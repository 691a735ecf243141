"""Header filtering for requests and replies crossing the tunnel."""

from collections.abc import Iterable

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# The agent recomputes framing for the local call, and the relay re-frames the
# reply body, so these never describe the bytes actually sent.
_REQUEST_DROP = HOP_BY_HOP_HEADERS | {"host", "content-length"}
_RESPONSE_DROP = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


def _without(headers: Iterable[tuple[str, str]], drop: frozenset[str]) -> list[tuple[str, str]]:
    return [(name, value) for name, value in headers if name.lower() not in drop]


def forwardable_request_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Headers to send to the local service."""
    return _without(headers, _REQUEST_DROP)


def relayable_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Headers to replay to the public caller."""
    return _without(headers, _RESPONSE_DROP)


def header_value(headers: Iterable[tuple[str, str]], name: str) -> str | None:
    """First value of ``name``, compared case-insensitively."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None
