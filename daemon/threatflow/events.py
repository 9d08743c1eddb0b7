"""Canonical stream events.

Every backend's native stream is normalised into these four shapes before it
reaches a client. They are encoded as server-sent-event frames; ``done`` is
the literal ``[DONE]`` sentinel rather than a JSON object.
"""
import json
from typing import Literal, Protocol, Union

from pydantic import BaseModel

DONE_SENTINEL = "[DONE]"


class ProgressEvent(BaseModel):
    kind: Literal["progress"] = "progress"
    stage: str
    message: str

    def payload(self) -> str:
        return json.dumps({"type": "progress", "stage": self.stage, "message": self.message})


class ContentDelta(BaseModel):
    kind: Literal["content_delta"] = "content_delta"
    text: str

    def payload(self) -> str:
        return json.dumps({"type": "content_block_delta", "delta": {"text": self.text}})


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    message: str

    def payload(self) -> str:
        return json.dumps({"type": "error", "error": self.message})


class DoneEvent(BaseModel):
    kind: Literal["done"] = "done"

    def payload(self) -> str:
        return DONE_SENTINEL


StreamEvent = Union[ProgressEvent, ContentDelta, ErrorEvent, DoneEvent]


def encode_sse(event: StreamEvent) -> str:
    return f"data: {event.payload()}\n\n"


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, DoneEvent)


class EventSink(Protocol):
    """Receives canonical events from a provider, in order."""

    async def send(self, event: StreamEvent) -> None: ...

