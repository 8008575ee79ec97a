"""Map inbound protocol messages onto the normalized event vocabulary."""

from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any, TypeAlias

from loguru import logger
from pydantic import ValidationError

from voicerelay.errors import ProtocolAnomaly
from voicerelay.events import (
    DeltaReceived,
    NormalizedEvent,
    ResponseStarted,
    Speaker,
    TranscriptionCompleted,
    TranscriptionFailed,
    TurnStarted,
)

RawMessage: TypeAlias = Mapping[str, Any] | str | bytes
Parser: TypeAlias = Callable[[str, Mapping[str, Any]], NormalizedEvent | None]

_CONTROL_CHARS_RE = re.compile(r"[\x00\r]")

# Session lifecycle traffic that carries nothing for finalization.
IGNORED_TYPES = frozenset(
    {
        "session.created",
        "session.updated",
        "input_audio_buffer.speech_stopped",
        "input_audio_buffer.committed",
        "input_audio_buffer.cleared",
        "conversation.item.truncated",
        "response.done",
        "response.completed",
        "response.output_item.done",
        "response.content_part.added",
        "response.content_part.done",
        "response.audio.delta",
        "response.audio.done",
        "rate_limits.updated",
    }
)


def _field(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _clean(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _CONTROL_CHARS_RE.sub("", value)


def _require_id(message_type: str, payload: Mapping[str, Any], *keys: str) -> str:
    value = _field(payload, *keys)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolAnomaly(message_type, f"missing {keys[0]}")
    return value


def _optional_id(payload: Mapping[str, Any], *keys: str) -> str | None:
    value = _field(payload, *keys)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _speaker(message_type: str, value: Any) -> Speaker:
    try:
        return Speaker(str(value).lower())
    except ValueError:
        raise ProtocolAnomaly(message_type, f"unknown speaker {value!r}") from None


# Generic dialect: the abstract event shapes.


def _generic_delta(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return DeltaReceived(
        speaker=_speaker(message_type, _field(payload, "speaker")),
        text=_clean(_field(payload, "textFragment", "text_fragment", "text")),
        item_id=_optional_id(payload, "itemId", "item_id"),
    )


def _generic_turn_start(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return TurnStarted(
        speaker=_speaker(message_type, _field(payload, "speaker")),
        item_id=_require_id(message_type, payload, "itemId", "item_id"),
    )


def _generic_completion(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    speaker = _field(payload, "speaker")
    return TranscriptionCompleted(
        item_id=_require_id(message_type, payload, "itemId", "item_id"),
        text=_clean(_field(payload, "transcript", "text")),
        speaker=_speaker(message_type, speaker) if speaker is not None else None,
    )


def _generic_failure(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    speaker = _field(payload, "speaker")
    return TranscriptionFailed(
        item_id=_require_id(message_type, payload, "itemId", "item_id"),
        reason=str(_field(payload, "reason") or "transcription failed"),
        speaker=_speaker(message_type, speaker) if speaker is not None else None,
    )


def _generic_response_start(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return ResponseStarted(item_id=_optional_id(payload, "itemId", "item_id"))


# Realtime session dialect.


def _user_transcription_delta(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return DeltaReceived(
        speaker=Speaker.USER,
        text=_clean(_field(payload, "delta", "text")),
        item_id=_optional_id(payload, "item_id"),
    )


def _user_transcription_completed(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return TranscriptionCompleted(
        item_id=_require_id(message_type, payload, "item_id"),
        text=_clean(_field(payload, "transcript", "text")),
        speaker=Speaker.USER,
    )


def _user_transcription_failed(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    error = payload.get("error")
    reason = error.get("message") if isinstance(error, Mapping) else error
    return TranscriptionFailed(
        item_id=_require_id(message_type, payload, "item_id"),
        reason=str(reason or "transcription failed"),
        speaker=Speaker.USER,
    )


def _speech_started(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return TurnStarted(speaker=Speaker.USER, item_id=_require_id(message_type, payload, "item_id"))


def _item_created(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent | None:
    item = payload.get("item")
    if not isinstance(item, Mapping):
        raise ProtocolAnomaly(message_type, "missing item")
    role = str(item.get("role") or "").lower()
    if role not in {speaker.value for speaker in Speaker}:
        return None
    return TurnStarted(speaker=Speaker(role), item_id=_require_id(message_type, item, "id"))


def _response_created(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    response = payload.get("response")
    response_id = _optional_id(response, "id") if isinstance(response, Mapping) else None
    return ResponseStarted(item_id=response_id)


def _assistant_delta(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return DeltaReceived(
        speaker=Speaker.ASSISTANT,
        text=_clean(_field(payload, "delta", "text")),
        item_id=_optional_id(payload, "item_id"),
    )


def _assistant_done(message_type: str, payload: Mapping[str, Any]) -> NormalizedEvent:
    return TranscriptionCompleted(
        item_id=_require_id(message_type, payload, "item_id"),
        text=_clean(_field(payload, "transcript", "text")),
        speaker=Speaker.ASSISTANT,
    )


PARSERS: dict[str, Parser] = {
    "delta": _generic_delta,
    "turn_start": _generic_turn_start,
    "completion": _generic_completion,
    "failure": _generic_failure,
    "response_start": _generic_response_start,
    "conversation.item.input_audio_transcription.delta": _user_transcription_delta,
    "conversation.item.input_audio_transcription.completed": _user_transcription_completed,
    "conversation.item.input_audio_transcription.failed": _user_transcription_failed,
    "input_audio_buffer.speech_started": _speech_started,
    "conversation.item.created": _item_created,
    "response.output_item.added": _item_created,
    "response.created": _response_created,
    "response.audio_transcript.delta": _assistant_delta,
    "response.output_audio_transcript.delta": _assistant_delta,
    "response.output_text.delta": _assistant_delta,
    "response.text.delta": _assistant_delta,
    "response.audio_transcript.done": _assistant_done,
    "response.output_audio_transcript.done": _assistant_done,
    "response.output_text.done": _assistant_done,
    "response.text.done": _assistant_done,
}


def _lookup(message_type: str) -> Parser | None:
    parser = PARSERS.get(message_type)
    if parser is not None:
        return parser
    # Some transports namespace event types; match on the protocol suffix.
    for known, candidate in PARSERS.items():
        if "." in known and message_type.endswith(f".{known}"):
            return candidate
    return None


class EventNormalizer:
    """Translate raw protocol messages into normalized events.

    Never raises. Unknown types, ignored lifecycle types, and malformed messages
    are counted and dropped.
    """

    def __init__(self) -> None:
        self.accepted: Counter[str] = Counter()
        self.ignored: Counter[str] = Counter()
        self.dropped: Counter[str] = Counter()
        self.anomalies: Counter[str] = Counter()

    def normalize(self, message: RawMessage) -> NormalizedEvent | None:
        try:
            payload = self._decode(message)
            message_type = payload.get("type")
            if not isinstance(message_type, str) or not message_type.strip():
                raise ProtocolAnomaly("<missing>", "message has no type")
            message_type = message_type.strip().lower()
            if message_type in IGNORED_TYPES:
                self.ignored[message_type] += 1
                return None
            parser = _lookup(message_type)
            if parser is None:
                self.dropped[message_type] += 1
                logger.debug("normalizer.unrecognized type={}", message_type)
                return None
            event = parser(message_type, payload)
        except ProtocolAnomaly as exc:
            self.anomalies[exc.message_type] += 1
            logger.warning("normalizer.anomaly type={} reason={}", exc.message_type, exc.reason)
            return None
        except ValidationError as exc:
            self.anomalies[message_type] += 1
            logger.warning("normalizer.anomaly type={} reason={}", message_type, exc.errors()[0]["msg"])
            return None

        if event is None:
            self.ignored[message_type] += 1
            return None
        self.accepted[event.kind_value()] += 1
        return event

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            "accepted": dict(self.accepted),
            "ignored": dict(self.ignored),
            "dropped": dict(self.dropped),
            "anomalies": dict(self.anomalies),
        }

    @staticmethod
    def _decode(message: RawMessage) -> Mapping[str, Any]:
        if isinstance(message, Mapping):
            return message
        if isinstance(message, (str, bytes)):
            try:
                decoded = json.loads(message)
            except ValueError:
                raise ProtocolAnomaly("<undecodable>", "frame is not valid JSON") from None
            if isinstance(decoded, Mapping):
                return decoded
        raise ProtocolAnomaly("<undecodable>", f"unsupported frame {type(message).__name__}")
