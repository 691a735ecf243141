"""Response sinks: the write side of a public HTTP request."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from aiohttp import web
from multidict import CIMultiDict

from .logging import get_logger

logger = get_logger(__name__)


class ResponseSink(ABC):
    """Destination of one relayed reply.

    Implementations must treat every call made after the sink is closed as a
    no-op rather than an error.
    """

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the response is finished."""

    @property
    @abstractmethod
    def flushed(self) -> bool:
        """Whether any body bytes have been handed to the sink."""

    @abstractmethod
    def respond(self, status: int, headers: list[tuple[str, str]], body: bytes) -> None:
        """Send a complete buffered response and close."""

    @abstractmethod
    def start(self, status: int, headers: list[tuple[str, str]]) -> None:
        """Record status and headers of a streamed response."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Append body bytes to a streamed response."""

    @abstractmethod
    def close(self) -> None:
        """Finish a streamed response cleanly."""

    @abstractmethod
    def fail(self, status: int, payload: dict[str, Any]) -> None:
        """Answer with a JSON error and close."""

    @abstractmethod
    def abort(self) -> None:
        """Cut a stream whose body bytes already went out."""

    @abstractmethod
    def discard(self) -> None:
        """Close without writing anything."""


@dataclass(frozen=True)
class _Complete:
    status: int
    headers: list[tuple[str, str]]
    body: bytes


@dataclass(frozen=True)
class _Chunk:
    data: bytes


@dataclass(frozen=True)
class _End:
    pass


@dataclass(frozen=True)
class _Failure:
    status: int
    payload: dict[str, Any]


@dataclass(frozen=True)
class _Abort:
    pass


class HttpResponseSink(ResponseSink):
    """Queues reply events for the aiohttp handler that owns the public request.

    The handler awaits :meth:`deliver`, which is the only place that touches
    the network, so events are written in the order they were queued and the
    tunnel read loop never waits on a slow public client.
    """

    def __init__(self) -> None:
        self._events: asyncio.Queue[_Complete | _Chunk | _End | _Failure | _Abort] = asyncio.Queue()
        self._closed = False
        self._flushed = False
        self._status = 200
        self._headers: list[tuple[str, str]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def flushed(self) -> bool:
        return self._flushed

    def respond(self, status: int, headers: list[tuple[str, str]], body: bytes) -> None:
        if self._closed:
            return
        self._closed = True
        self._events.put_nowait(_Complete(status, headers, body))

    def start(self, status: int, headers: list[tuple[str, str]]) -> None:
        if self._closed:
            return
        self._status = status
        self._headers = headers

    def write(self, data: bytes) -> None:
        if self._closed or not data:
            return
        self._flushed = True
        self._events.put_nowait(_Chunk(data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._events.put_nowait(_End())

    def fail(self, status: int, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        self._closed = True
        self._events.put_nowait(_Failure(status, payload))

    def abort(self) -> None:
        if self._closed:
            return
        if not self._flushed:
            self.fail(500, {"error": "Internal server error"})
            return
        self._closed = True
        self._events.put_nowait(_Abort())

    def discard(self) -> None:
        self._closed = True

    async def deliver(self, request: web.Request) -> web.StreamResponse:
        """Turn queued events into the response for ``request``."""
        stream: web.StreamResponse | None = None

        while True:
            event = await self._events.get()

            if isinstance(event, _Complete):
                return web.Response(status=event.status, headers=CIMultiDict(event.headers), body=event.body)

            if isinstance(event, _Failure) and stream is None:
                return web.json_response(event.payload, status=event.status)

            if isinstance(event, (_Failure, _Abort)):
                # Headers are gone already; only a cut tells the caller it is truncated.
                logger.warning(f"Cutting {request.path} after partial output")
                if request.transport is not None:
                    request.transport.close()
                return stream

            try:
                if stream is None:
                    stream = web.StreamResponse(status=self._status, headers=CIMultiDict(self._headers))
                    await stream.prepare(request)

                if isinstance(event, _Chunk):
                    await stream.write(event.data)
                else:
                    await stream.write_eof()
                    return stream
            except ConnectionResetError:
                logger.info(f"Client went away while streaming {request.path}")
                self._closed = True
                if stream is None:
                    raise
                return stream
