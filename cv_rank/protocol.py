"""
Message protocol between the inference gateway and the model host.

Messages travel as plain dicts (so they pickle cheaply across a process
boundary) and are validated on receipt. Every message carries a `type`
discriminator; requests that expect a reply carry a `request_id` which the
host echoes back.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .schemas import ProgressEvent, ProgressStatus


def new_request_id() -> str:
    return uuid.uuid4().hex


class InitCommand(BaseModel):
    type: Literal["init"] = "init"
    request_id: str
    model_id: str


class GenerateCommand(BaseModel):
    type: Literal["generate"] = "generate"
    request_id: str
    text: str
    model_id: str


class ShutdownCommand(BaseModel):
    type: Literal["shutdown"] = "shutdown"


Command = Annotated[
    Union[InitCommand, GenerateCommand, ShutdownCommand],
    Field(discriminator="type"),
]


class InitComplete(BaseModel):
    type: Literal["init_complete"] = "init_complete"
    request_id: str
    model_id: str
    status: Literal["ready", "error"]
    device: Optional[str] = None
    message: Optional[str] = None


class DownloadProgress(BaseModel):
    type: Literal["download_progress"] = "download_progress"
    status: ProgressStatus
    file: str
    percent: float = 0.0
    model_id: Optional[str] = None

    def to_event(self) -> ProgressEvent:
        return ProgressEvent(
            status=self.status,
            file=self.file,
            percent=min(max(self.percent, 0.0), 100.0),
            model_id=self.model_id,
        )

    @classmethod
    def from_event(cls, event: ProgressEvent) -> "DownloadProgress":
        return cls(
            status=event.status,
            file=event.file,
            percent=event.percent,
            model_id=event.model_id,
        )


class GenerateComplete(BaseModel):
    type: Literal["generate_complete"] = "generate_complete"
    request_id: str
    vector: List[float]


class ErrorReply(BaseModel):
    type: Literal["error"] = "error"
    request_id: Optional[str] = None
    message: str


Reply = Annotated[
    Union[InitComplete, DownloadProgress, GenerateComplete, ErrorReply],
    Field(discriminator="type"),
]

_COMMAND_ADAPTER: TypeAdapter = TypeAdapter(Command)
_REPLY_ADAPTER: TypeAdapter = TypeAdapter(Reply)


def parse_command(message: Mapping[str, Any]):
    """Validate a raw command dict. Raises pydantic.ValidationError."""
    return _COMMAND_ADAPTER.validate_python(message)


def parse_reply(message: Mapping[str, Any]):
    """Validate a raw reply dict. Raises pydantic.ValidationError."""
    return _REPLY_ADAPTER.validate_python(message)


def encode(message: BaseModel) -> dict:
    return message.model_dump(mode="json")
