"""Tests for the agent request executor against an in-process local service."""

import json
from uuid import uuid4

import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import unused_port

from burrow.executor import RequestExecutor, decode_body, is_streaming_response
from burrow.models import (
    RequestEnvelope,
    ResponseEnvelope,
    StreamChunkEnvelope,
    StreamEndEnvelope,
    StreamErrorEnvelope,
    StreamStartEnvelope,
)


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as client_session:
        yield client_session


@pytest.fixture
def executor(local_service, session) -> RequestExecutor:
    return RequestExecutor(str(local_service.make_url("")), session)


def make_envelope(path: str, method: str = "GET", **kwargs) -> RequestEnvelope:
    return RequestEnvelope(request_id=str(uuid4()), method=method, path=path, **kwargs)


async def run(executor: RequestExecutor, envelope: RequestEnvelope) -> list:
    sent = []

    async def send(message) -> None:
        sent.append(message)

    await executor.execute(envelope, send)
    return sent


class TestClassification:
    @pytest.mark.parametrize(
        ("content_type", "transfer_encoding", "expected"),
        [
            ("text/event-stream", None, True),
            ("application/x-ndjson", None, True),
            ("application/ndjson", None, True),
            ("text/plain", "chunked", True),
            ("text/plain", None, False),
            ("application/json", "chunked", False),
            ("text/html", None, False),
        ],
    )
    def test_is_streaming_response(self, content_type, transfer_encoding, expected) -> None:
        assert is_streaming_response(content_type, transfer_encoding) is expected

    def test_json_object_is_parsed(self) -> None:
        assert decode_body(b'{"a": 1}', "application/json", None) == ({"a": 1}, None)

    def test_json_scalar_stays_text(self) -> None:
        assert decode_body(b'"hi"', "application/json", None) == ('"hi"', None)

    def test_broken_json_falls_back_to_text(self) -> None:
        assert decode_body(b"{oops", "application/json", None) == ("{oops", None)

    def test_binary_falls_back_to_base64(self) -> None:
        assert decode_body(b"\xff\x00", "image/png", None) == ("/wA=", "base64")

    def test_non_utf8_charset_travels_as_bytes(self) -> None:
        payload = "café".encode("latin-1")
        assert decode_body(payload, "text/plain", "iso-8859-1") == ("Y2Fm6Q==", "base64")

    def test_ascii_charset_stays_text(self) -> None:
        assert decode_body(b"plain", "text/plain", "us-ascii") == ("plain", None)


@pytest.mark.asyncio
class TestExecute:
    async def test_json_response_is_decoded(self, executor) -> None:
        envelope = make_envelope("/json")
        sent = await run(executor, envelope)

        assert len(sent) == 1
        reply = sent[0]
        assert isinstance(reply, ResponseEnvelope)
        assert reply.request_id == envelope.request_id
        assert reply.status_code == 200
        assert reply.body == {"a": 1}
        assert reply.error is None

    async def test_broken_json_is_relayed_as_text(self, executor) -> None:
        sent = await run(executor, make_envelope("/broken-json"))
        assert sent[0].body == "{not json"

    async def test_error_status_is_an_application_response(self, executor) -> None:
        sent = await run(executor, make_envelope("/missing"))

        assert sent[0].status_code == 404
        assert sent[0].error is None
        assert sent[0].body == {"detail": "nope"}

    async def test_request_is_rebuilt_for_local_service(self, executor, local_service) -> None:
        envelope = make_envelope(
            "/echo/items",
            method="POST",
            query=[("tag", "a"), ("tag", "b"), ("q", "x y")],
            headers=[("Host", "relay.example"), ("X-Test", "yes"), ("Content-Length", "4")],
            body=b"ping",
        )
        sent = await run(executor, envelope)
        echoed = sent[0].body

        assert echoed["method"] == "POST"
        assert echoed["path"] == "/echo/items"
        assert echoed["query"] == [["tag", "a"], ["tag", "b"], ["q", "x y"]]
        assert echoed["host"] == f"{local_service.host}:{local_service.port}"
        assert echoed["x_test"] == "yes"
        assert echoed["body"] == "ping"

    async def test_binary_response_is_base64(self, executor) -> None:
        sent = await run(executor, make_envelope("/binary"))

        assert sent[0].body_encoding == "base64"
        assert ("Content-Type", "image/png") in sent[0].headers

    async def test_plain_text_with_length_is_buffered(self, executor) -> None:
        sent = await run(executor, make_envelope("/plain"))

        assert len(sent) == 1
        assert sent[0].body == "plain text"

    async def test_event_stream_is_relayed_in_chunks(self, executor) -> None:
        envelope = make_envelope("/events")
        sent = await run(executor, envelope)

        assert isinstance(sent[0], StreamStartEnvelope)
        assert sent[0].status_code == 200
        assert isinstance(sent[-1], StreamEndEnvelope)
        chunks = sent[1:-1]
        assert chunks and all(isinstance(chunk, StreamChunkEnvelope) for chunk in chunks)
        assert "".join(chunk.chunk for chunk in chunks) == "data: a\n\ndata: b\n\ndata: c\n\n"
        assert {message.request_id for message in sent} == {envelope.request_id}

    async def test_ndjson_is_streamed(self, executor) -> None:
        sent = await run(executor, make_envelope("/ndjson"))

        text = "".join(message.chunk for message in sent if isinstance(message, StreamChunkEnvelope))
        assert [json.loads(line) for line in text.splitlines()] == [{"n": 1}, {"n": 2}]

    async def test_chunked_plain_text_is_streamed(self, executor) -> None:
        sent = await run(executor, make_envelope("/chunked"))

        assert isinstance(sent[0], StreamStartEnvelope)
        text = "".join(message.chunk for message in sent if isinstance(message, StreamChunkEnvelope))
        assert text == "café ok"

    async def test_non_utf8_text_keeps_its_bytes(self, executor) -> None:
        sent = await run(executor, make_envelope("/latin1"))

        assert sent[0].body_encoding == "base64"
        assert sent[0].body == "Y2Fm6Q=="

    async def test_non_utf8_stream_is_relabelled_utf8(self, executor) -> None:
        sent = await run(executor, make_envelope("/latin1-events"))

        assert dict(sent[0].headers)["Content-Type"] == "text/event-stream; charset=utf-8"
        text = "".join(message.chunk for message in sent if isinstance(message, StreamChunkEnvelope))
        assert text == "data: café\n\n"

    async def test_idle_stream_outlives_read_timeout(self, local_service, session) -> None:
        executor = RequestExecutor(str(local_service.make_url("")), session, read_timeout=0.3)

        sent = await run(executor, make_envelope("/slow-events"))

        assert isinstance(sent[0], StreamStartEnvelope)
        assert isinstance(sent[-1], StreamEndEnvelope)
        text = "".join(message.chunk for message in sent if isinstance(message, StreamChunkEnvelope))
        assert text == "data: first\n\ndata: second\n\n"

    async def test_read_timeout_bounds_buffered_replies(self, local_service, session) -> None:
        executor = RequestExecutor(str(local_service.make_url("")), session, read_timeout=0.3)

        sent = await run(executor, make_envelope("/slow-json"))

        assert len(sent) == 1
        assert sent[0].status_code == 500
        assert sent[0].error == "TimeoutError"

    async def test_stream_broken_midway_ends_with_stream_error(self, executor) -> None:
        envelope = make_envelope("/broken-stream")
        sent = await run(executor, envelope)

        assert [type(message) for message in sent] == [
            StreamStartEnvelope,
            StreamChunkEnvelope,
            StreamErrorEnvelope,
        ]
        assert sent[1].chunk == "data: partial\n\n"
        assert sent[2].error
        assert {message.request_id for message in sent} == {envelope.request_id}

    async def test_unreachable_service_reports_error(self, session) -> None:
        executor = RequestExecutor(f"http://127.0.0.1:{unused_port()}", session)
        envelope = make_envelope("/anything")

        sent = await run(executor, envelope)

        assert len(sent) == 1
        assert isinstance(sent[0], ResponseEnvelope)
        assert sent[0].status_code == 500
        assert sent[0].error


def test_build_url_keeps_encoding_and_base_path() -> None:
    executor = RequestExecutor("http://localhost:7860/api/", session=None)  # type: ignore[arg-type]
    envelope = make_envelope("/a%20b", query=[("x", "1"), ("x", "2")])

    assert str(executor.build_url(envelope)) == "http://localhost:7860/api/a%20b?x=1&x=2"
