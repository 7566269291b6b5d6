"""Wire protocol models for live-update messages.

Server to client messages are ``fileChange``, ``rebuild`` and ``hmr``; the only
client to server message is ``register``. Every message is one JSON object per
WebSocket frame, discriminated by its ``type`` field.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class RebuildStatus(str, Enum):
    """Rebuild lifecycle status."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class FileChangeMessage(BaseModel):
    """Informational notice listing changed project paths."""

    type: Literal["fileChange"] = "fileChange"
    paths: list[str] = Field(..., description="Project-relative changed paths")


class RebuildMessage(BaseModel):
    """Rebuild status notice."""

    type: Literal["rebuild"] = "rebuild"
    status: RebuildStatus = Field(..., description="started, completed or failed")
    error: str | None = Field(None, description="Diagnostic output of a failed rebuild")
    modules: list[str] | None = Field(None, description="Modules covered by a completed rebuild")


class HmrMessage(BaseModel):
    """Modules now applied and ready to hot swap."""

    type: Literal["hmr"] = "hmr"
    modules: list[str] = Field(..., description="Applied module identifiers")


class RegisterMessage(BaseModel):
    """Client registration sent right after the socket opens."""

    type: Literal["register"] = "register"
    url: str = Field(..., description="Path of the page the client runs in")


ServerMessage = Annotated[
    Union[FileChangeMessage, RebuildMessage, HmrMessage], Field(discriminator="type")
]
ClientMessage = RegisterMessage

_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)
_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def encode_message(message: BaseModel) -> str:
    """Serialize a message to its JSON frame, omitting unset optional fields."""
    return message.model_dump_json(exclude_none=True)


def parse_server_message(raw: str | bytes) -> FileChangeMessage | RebuildMessage | HmrMessage:
    """Parse a server frame.

    Raises:
        pydantic.ValidationError: If the frame is not a known server message
    """
    return _server_adapter.validate_json(raw)


def parse_client_message(raw: str | bytes) -> RegisterMessage:
    """Parse a client frame.

    Raises:
        pydantic.ValidationError: If the frame is not a known client message
    """
    return _client_adapter.validate_json(raw)
