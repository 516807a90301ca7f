"""Server-push events emitted while a rewrite task runs.

One model per event ``type``; ``RewriteEvent`` is the tagged union over all of
them so subscribers can dispatch on ``event.type`` and deserialize with
``parse_event``.
"""

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from artive.models.rewrite import RewriteResult


class _Event(BaseModel):
    model_config = {"frozen": True}

    def to_sse(self) -> str:
        """Render as one Server-Sent Events frame."""
        payload = self.model_dump(mode="json")
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

    @property
    def is_terminal(self) -> bool:
        return False


class StartEvent(_Event):
    type: Literal["start"] = "start"
    message: str


class StatusEvent(_Event):
    type: Literal["status"] = "status"
    status: Literal["processing"] = "processing"
    message: str


class ProgressEvent(_Event):
    type: Literal["progress"] = "progress"
    message: str


class ContentEvent(_Event):
    """Preview of the content recovered so far."""

    type: Literal["content"] = "content"
    content: str


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    status: Literal["completed"] = "completed"
    result: RewriteResult

    @property
    def is_terminal(self) -> bool:
        return True


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    status: Literal["failed"] = "failed"
    error: str

    @property
    def is_terminal(self) -> bool:
        return True


RewriteEvent = Annotated[
    Union[StartEvent, StatusEvent, ProgressEvent, ContentEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(RewriteEvent)


def parse_event(data: dict | str) -> RewriteEvent:
    """Deserialize an event from a dict or its JSON text."""
    if isinstance(data, str):
        return _event_adapter.validate_json(data)
    return _event_adapter.validate_python(data)
