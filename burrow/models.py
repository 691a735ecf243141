"""Data models for the Burrow tunnel protocol and HTTP surface."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from .transport import TunnelConnection


def _as_pairs(value: Any) -> Any:
    if isinstance(value, dict):
        return [(str(k), str(v)) for k, v in value.items()]
    return value


# Ordered (name, value) pairs; duplicates are kept in arrival order.
Pairs = Annotated[list[tuple[str, str]], BeforeValidator(_as_pairs)]


class Envelope(BaseModel):
    """Base for every JSON message exchanged over a tunnel connection."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> str:
        """Serialize with the camelCase keys used on the wire."""
        return self.model_dump_json(by_alias=True)


class RegisterMessage(Envelope):
    """Sent by the agent to claim a tunnel name."""

    type: Literal["register"] = "register"
    tunnel_id: Annotated[str, Field(description="Opaque registration token")]
    name: Annotated[str, Field(description="Public tunnel name")]


class RegisteredMessage(Envelope):
    """Relay answer to a registration attempt."""

    type: Literal["registered"] = "registered"
    success: bool
    name: str | None = None
    error: str | None = None


class RequestEnvelope(Envelope):
    """Public HTTP request forwarded from the relay to the agent."""

    type: Literal["http_request"] = "http_request"
    request_id: Annotated[str, Field(description="Unique request identifier")]
    method: Annotated[str, Field(description="HTTP method")]
    path: Annotated[str, Field(description="Target path with the tunnel prefix stripped")] = "/"
    query: Annotated[Pairs, Field(description="Query parameters in order")] = []
    headers: Annotated[Pairs, Field(description="HTTP headers in order")] = []
    body: Annotated[bytes, Field(description="Request body (hex encoded on the wire)")] = b""

    @field_validator("body", mode="before")
    @classmethod
    def _decode_body(cls, value: Any) -> Any:
        if isinstance(value, str):
            return bytes.fromhex(value)
        return value

    @field_serializer("body")
    def _encode_body(self, body: bytes) -> str:
        return body.hex()


class ResponseEnvelope(Envelope):
    """Buffered reply, or a failure reported before any headers existed."""

    type: Literal["response"] = "response"
    request_id: str
    status_code: Annotated[int, Field(ge=100, le=599, description="HTTP status code")] = 200
    headers: Pairs = []
    body: Any = None
    body_encoding: Literal["base64"] | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _check_encoded_body(self) -> ResponseEnvelope:
        if self.body_encoding == "base64" and self.body is not None and not isinstance(self.body, str):
            raise ValueError("base64 body must be a string")
        return self


class StreamStartEnvelope(Envelope):
    type: Literal["stream_start"] = "stream_start"
    request_id: str
    status_code: Annotated[int, Field(ge=100, le=599)] = 200
    headers: Pairs = []


class StreamChunkEnvelope(Envelope):
    type: Literal["stream_chunk"] = "stream_chunk"
    request_id: str
    chunk: str


class StreamEndEnvelope(Envelope):
    type: Literal["stream_end"] = "stream_end"
    request_id: str


class StreamErrorEnvelope(Envelope):
    type: Literal["stream_error"] = "stream_error"
    request_id: str
    error: str


ReplyEnvelope = Annotated[
    Union[
        ResponseEnvelope,
        StreamStartEnvelope,
        StreamChunkEnvelope,
        StreamEndEnvelope,
        StreamErrorEnvelope,
    ],
    Field(discriminator="type"),
]

reply_adapter: TypeAdapter[ReplyEnvelope] = TypeAdapter(ReplyEnvelope)


class TunnelInfo(BaseModel):
    """Public view of a registered tunnel."""

    name: str
    tunnel_id: str
    created_at: datetime
    request_count: int


class HealthResponse(BaseModel):
    status: str = "ok"
    active_tunnels: list[str]
    tunnel_count: int
    tunnels: list[TunnelInfo] = []
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DiscoveryResponse(BaseModel):
    message: str = "Tunneling Service"
    available_tunnels: list[str]
    usage: str = "Use /{tunnel-name}/path/to/endpoint"
    examples: list[str] = []


class TunnelNotFoundResponse(BaseModel):
    error: str = "Tunnel not found"
    message: str
    available_tunnels: list[str]
    usage: str = "Use /{tunnel-name}/path/to/endpoint"


@dataclass
class Tunnel:
    """A registered name bound to one live agent connection."""

    name: str
    tunnel_id: str
    connection: TunnelConnection
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_count: int = 0

    def to_info(self) -> TunnelInfo:
        return TunnelInfo(
            name=self.name,
            tunnel_id=self.tunnel_id,
            created_at=self.created_at,
            request_count=self.request_count,
        )
