"""Normalized event vocabulary consumed by the relay engine."""

from __future__ import annotations

from abc import ABC
from enum import Enum
from typing import ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict, Field


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Confidence(str, Enum):
    AUTHORITATIVE = "authoritative"
    DEGRADED = "degraded"


class EventKind(str, Enum):
    """Normalized event types, named ``domain.action``."""

    DELTA_RECEIVED = "transcript.delta"
    TURN_STARTED = "turn.started"
    TRANSCRIPTION_COMPLETED = "transcription.completed"
    TRANSCRIPTION_FAILED = "transcription.failed"
    RESPONSE_STARTED = "response.started"

    @property
    def domain(self) -> str:
        return str(self.value).split(".")[0]

    @property
    def action(self) -> str:
        return str(self.value).split(".")[1]


class BaseEvent(BaseModel, ABC):
    """Base class for all normalized events.

    Subclasses declare their ``event_kind``; instances are immutable.
    """

    event_kind: ClassVar[EventKind]

    model_config = ConfigDict(frozen=True)

    @classmethod
    def kind_value(cls) -> str:
        return str(cls.event_kind.value)


class DeltaReceived(BaseEvent):
    event_kind = EventKind.DELTA_RECEIVED
    speaker: Speaker
    text: str
    item_id: str | None = None


class TurnStarted(BaseEvent):
    event_kind = EventKind.TURN_STARTED
    speaker: Speaker
    item_id: str


class TranscriptionCompleted(BaseEvent):
    event_kind = EventKind.TRANSCRIPTION_COMPLETED
    item_id: str
    text: str = ""
    speaker: Speaker | None = Field(default=None, description="Speaker hint for items never seen before")


class TranscriptionFailed(BaseEvent):
    event_kind = EventKind.TRANSCRIPTION_FAILED
    item_id: str
    reason: str = "transcription failed"
    speaker: Speaker | None = None


class ResponseStarted(BaseEvent):
    event_kind = EventKind.RESPONSE_STARTED
    item_id: str | None = None


NormalizedEvent: TypeAlias = DeltaReceived | TurnStarted | TranscriptionCompleted | TranscriptionFailed | ResponseStarted
