"""Reply processor: drives pending requests from agent envelopes."""

import base64
import json
from typing import Any

from pydantic import ValidationError

from .headers import header_value, relayable_response_headers
from .logging import get_logger
from .models import (
    ReplyEnvelope,
    ResponseEnvelope,
    StreamChunkEnvelope,
    StreamEndEnvelope,
    StreamErrorEnvelope,
    StreamStartEnvelope,
    reply_adapter,
)
from .pending import PendingRequestTable

logger = get_logger(__name__)


def encode_body(envelope: ResponseEnvelope) -> tuple[bytes, list[tuple[str, str]]]:
    """Turn a buffered reply body back into bytes plus the headers to send."""
    headers = relayable_response_headers(envelope.headers)
    body = envelope.body

    if body is None:
        return b"", headers
    if envelope.body_encoding == "base64":
        return base64.b64decode(body, validate=True), headers
    if isinstance(body, str):
        return body.encode("utf-8"), headers

    if header_value(headers, "content-type") is None:
        headers.append(("Content-Type", "application/json; charset=utf-8"))
    return json.dumps(body).encode("utf-8"), headers


class ReplyProcessor:
    """Maps each reply envelope kind onto a pending table transition."""

    def __init__(self, table: PendingRequestTable) -> None:
        self.table = table

    def process(self, envelope: ReplyEnvelope) -> bool:
        """
        Apply one envelope.

        Returns:
            True if the envelope changed a pending request, False if it was
            stale (unknown or already finished request id) and got dropped
        """
        if isinstance(envelope, ResponseEnvelope):
            if envelope.error is not None:
                applied = self.table.fail(envelope.request_id, envelope.error)
            else:
                try:
                    body, headers = encode_body(envelope)
                except (ValueError, TypeError) as exc:
                    applied = self.table.fail(envelope.request_id, f"Undecodable body: {exc}")
                else:
                    applied = self.table.complete_buffered(
                        envelope.request_id, envelope.status_code, headers, body
                    )
        elif isinstance(envelope, StreamStartEnvelope):
            applied = self.table.start_stream(
                envelope.request_id,
                envelope.status_code,
                relayable_response_headers(envelope.headers),
            )
        elif isinstance(envelope, StreamChunkEnvelope):
            applied = self.table.write_chunk(envelope.request_id, envelope.chunk.encode("utf-8"))
        elif isinstance(envelope, StreamEndEnvelope):
            applied = self.table.end_stream(envelope.request_id)
        elif isinstance(envelope, StreamErrorEnvelope):
            applied = self.table.fail_stream(envelope.request_id, envelope.error)
        else:
            raise TypeError(f"Unsupported reply envelope: {type(envelope).__name__}")

        if not applied:
            logger.debug(f"Dropped stale {envelope.type} for request {envelope.request_id}")
        return applied

    def process_raw(self, data: dict[str, Any]) -> bool:
        """Validate a decoded JSON message and apply it."""
        try:
            envelope = reply_adapter.validate_python(data)
        except ValidationError as exc:
            logger.warning(f"Invalid reply envelope from tunnel: {exc}")
            return False
        return self.process(envelope)
