"""Agent request executor: replays forwarded requests against the local service."""

import asyncio
import base64
import codecs
import json
import re
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from aiohttp import hdrs
from yarl import URL

from .headers import forwardable_request_headers
from .logging import get_logger
from .models import (
    Envelope,
    RequestEnvelope,
    ResponseEnvelope,
    StreamChunkEnvelope,
    StreamEndEnvelope,
    StreamErrorEnvelope,
    StreamStartEnvelope,
)

logger = get_logger(__name__)

Send = Callable[[Envelope], Awaitable[None]]

INTERNAL_ERROR_STATUS = 500

UTF8_CODEC_NAMES = frozenset({"utf-8", "ascii"})

_CHARSET_PARAM = re.compile(r"charset=[^;]*", re.IGNORECASE)

STREAMING_CONTENT_TYPES = frozenset(
    {
        "text/event-stream",
        "application/x-ndjson",
        "application/ndjson",
        "application/jsonl",
        "application/x-jsonlines",
    }
)


def is_streaming_response(content_type: str, transfer_encoding: str | None) -> bool:
    """Whether a local response should be relayed chunk by chunk."""
    content_type = content_type.lower()
    if content_type in STREAMING_CONTENT_TYPES:
        return True
    return content_type == "text/plain" and (transfer_encoding or "").lower() == "chunked"


def is_json_content_type(content_type: str) -> bool:
    content_type = content_type.lower()
    return content_type == "application/json" or content_type.endswith("+json")


def decode_body(payload: bytes, content_type: str, charset: str | None) -> tuple[Any, str | None]:
    """
    Turn a buffered local response body into something JSON can carry.

    Args:
        payload: Raw response bytes
        content_type: Response MIME type without parameters
        charset: Declared charset, if any

    Returns:
        The body (parsed JSON object/array, text, or base64 text) and the
        body encoding marker (``"base64"`` or None)
    """
    if is_json_content_type(content_type):
        try:
            parsed = json.loads(payload)
        except ValueError:
            pass
        else:
            # Scalars stay as text so the relay sends back the exact bytes.
            if isinstance(parsed, (dict, list)):
                return parsed, None

    # The relay re-encodes text as UTF-8, so any other charset travels as raw bytes.
    if is_utf8_charset(charset):
        try:
            return payload.decode("utf-8"), None
        except UnicodeDecodeError:
            pass
    return base64.b64encode(payload).decode("ascii"), "base64"


def is_utf8_charset(charset: str | None) -> bool:
    """Whether text in ``charset`` is byte-identical once re-encoded as UTF-8."""
    if charset is None:
        return True
    try:
        return codecs.lookup(charset).name in UTF8_CODEC_NAMES
    except LookupError:
        return False


def utf8_content_type(headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Rewrite the Content-Type charset to utf-8, matching re-encoded stream chunks."""
    return [
        (name, _CHARSET_PARAM.sub("charset=utf-8", value)) if name.lower() == "content-type" else (name, value)
        for name, value in headers
    ]


def _incremental_decoder(charset: str | None) -> codecs.IncrementalDecoder:
    try:
        factory = codecs.getincrementaldecoder(charset or "utf-8")
    except LookupError:
        factory = codecs.getincrementaldecoder("utf-8")
    return factory(errors="replace")


class RequestExecutor:
    """Executes request envelopes against one local base URL."""

    def __init__(
        self,
        local_url: str,
        session: aiohttp.ClientSession,
        read_timeout: float | None = None,
    ) -> None:
        """
        Args:
            local_url: Base URL of the local service, e.g. ``http://localhost:7860``
            session: Client session used for local calls
            read_timeout: Limit on waiting for response headers and on reading a
                buffered body; streams are never cut for being idle
        """
        self.local_url = local_url.rstrip("/")
        self.read_timeout = read_timeout
        self._session = session

    def build_url(self, envelope: RequestEnvelope) -> URL:
        """Local target URL; the path is already percent-encoded."""
        path = envelope.path if envelope.path.startswith("/") else f"/{envelope.path}"
        url = URL(self.local_url + path, encoded=True)
        if envelope.query:
            url = url.with_query(envelope.query)
        return url

    async def execute(self, envelope: RequestEnvelope, send: Send) -> None:
        """Run ``envelope`` and emit its reply envelope(s) through ``send``."""
        url = self.build_url(envelope)
        logger.info(f"{envelope.method} {url.path_qs}")

        try:
            async with asyncio.timeout(self.read_timeout):
                response = await self._session.request(
                    envelope.method,
                    url,
                    headers=forwardable_request_headers(envelope.headers),
                    data=envelope.body or None,
                )
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            logger.error(f"Error handling request {envelope.request_id}: {exc!r}")
            await send(
                ResponseEnvelope(
                    request_id=envelope.request_id,
                    status_code=INTERNAL_ERROR_STATUS,
                    error=str(exc) or type(exc).__name__,
                )
            )
            return

        async with response:
            if is_streaming_response(response.content_type, response.headers.get(hdrs.TRANSFER_ENCODING)):
                await self._relay_stream(envelope.request_id, response, send)
            else:
                await self._relay_buffered(envelope.request_id, response, send)

    async def _relay_buffered(self, request_id: str, response: aiohttp.ClientResponse, send: Send) -> None:
        try:
            async with asyncio.timeout(self.read_timeout):
                payload = await response.read()
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.error(f"Error reading response for {request_id}: {exc!r}")
            await send(
                ResponseEnvelope(
                    request_id=request_id,
                    status_code=INTERNAL_ERROR_STATUS,
                    error=str(exc) or type(exc).__name__,
                )
            )
            return

        body, body_encoding = decode_body(payload, response.content_type, response.charset)
        await send(
            ResponseEnvelope(
                request_id=request_id,
                status_code=response.status,
                headers=list(response.headers.items()),
                body=body,
                body_encoding=body_encoding,
            )
        )
        logger.info(f"Response sent: {response.status}")

    async def _relay_stream(self, request_id: str, response: aiohttp.ClientResponse, send: Send) -> None:
        headers = list(response.headers.items())
        if not is_utf8_charset(response.charset):
            headers = utf8_content_type(headers)
        await send(StreamStartEnvelope(request_id=request_id, status_code=response.status, headers=headers))

        decoder = _incremental_decoder(response.charset)
        try:
            async for data in response.content.iter_any():
                text = decoder.decode(data)
                if text:
                    await send(StreamChunkEnvelope(request_id=request_id, chunk=text))

            tail = decoder.decode(b"", final=True)
            if tail:
                await send(StreamChunkEnvelope(request_id=request_id, chunk=tail))
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.error(f"Stream for {request_id} broke: {exc!r}")
            await send(StreamErrorEnvelope(request_id=request_id, error=str(exc) or type(exc).__name__))
            return

        await send(StreamEndEnvelope(request_id=request_id))
        logger.info(f"Stream for {request_id} finished: {response.status}")
