from __future__ import annotations

import asyncio

import pytest
from support import NoSleep, RecordingBackend

from voicerelay.config import Settings
from voicerelay.errors import RelayRejectedError, TransientDeliveryError
from voicerelay.events import Confidence, Speaker
from voicerelay.relay import RelayDeduplicator, RelayOutcome, RelayPayload


def _payload(text: str = "hello", item_id: str | None = "A1", **kwargs) -> RelayPayload:
    return RelayPayload(speaker=Speaker.USER, text=text, timestamp_ms=1_000, item_id=item_id, **kwargs)


def test_payload_wire_format() -> None:
    payload = _payload(confidence=Confidence.DEGRADED)

    assert payload.degraded
    assert payload.to_wire() == {
        "role": "user",
        "text": "hello",
        "isFinal": True,
        "timestamp": 1_000,
        "itemId": "A1",
        "confidence": "degraded",
    }


@pytest.mark.asyncio
async def test_relay_once_per_key() -> None:
    backend = RecordingBackend()
    relay = RelayDeduplicator(backend)

    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.SENT
    assert await relay.relay_if_new("A1", _payload("other text")) is RelayOutcome.DUPLICATE
    assert await relay.relay_if_new("A2", _payload(item_id="A2")) is RelayOutcome.SENT

    assert [p.item_id for p in backend.calls] == ["A1", "A2"]
    assert relay.relayed == frozenset({"A1", "A2"})
    assert dict(relay.outcomes) == {"sent": 2, "duplicate": 1}


@pytest.mark.asyncio
async def test_empty_text_is_skipped_without_marking() -> None:
    backend = RecordingBackend()
    relay = RelayDeduplicator(backend)

    assert await relay.relay_if_new("A1", _payload("  ")) is RelayOutcome.EMPTY
    assert not relay.is_relayed("A1")
    assert await relay.relay_if_new("A1", _payload("later")) is RelayOutcome.SENT
    assert [p.text for p in backend.calls] == ["later"]


@pytest.mark.asyncio
async def test_concurrent_relay_for_same_key_is_blocked() -> None:
    gate = asyncio.Event()
    backend = RecordingBackend(gate=gate)
    relay = RelayDeduplicator(backend)

    first = asyncio.create_task(relay.relay_if_new("A1", _payload()))
    await asyncio.sleep(0)
    assert relay.is_claimed("A1")
    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.IN_FLIGHT

    gate.set()
    assert await first is RelayOutcome.SENT
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff() -> None:
    backend = RecordingBackend(failures=[TransientDeliveryError("503"), ConnectionResetError("reset")])
    sleep = NoSleep()
    relay = RelayDeduplicator(backend, max_attempts=3, retry_delays=[0.1, 0.2], sleep=sleep)

    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.SENT
    assert len(backend.calls) == 3
    assert sleep.delays == [0.1, 0.2]
    assert relay.errors == {}


@pytest.mark.asyncio
async def test_exhausted_retries_mark_key_lost() -> None:
    backend = RecordingBackend(failures=[TransientDeliveryError("down")] * 2)
    relay = RelayDeduplicator(backend, max_attempts=2, sleep=NoSleep())

    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.LOST
    assert relay.is_relayed("A1")
    assert relay.errors == {"A1": "down"}
    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.DUPLICATE
    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_rejected_relay_is_not_retried() -> None:
    backend = RecordingBackend(failures=[RelayRejectedError(400, "bad payload")])
    sleep = NoSleep()
    relay = RelayDeduplicator(backend, max_attempts=3, retry_delays=[0.1, 0.2], sleep=sleep)

    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.LOST
    assert len(backend.calls) == 1
    assert sleep.delays == []
    assert "400" in relay.errors["A1"]


@pytest.mark.asyncio
async def test_no_retry_after_shutdown_begins() -> None:
    backend = RecordingBackend(failures=[TransientDeliveryError("down")])
    relay = RelayDeduplicator(backend, max_attempts=3, sleep=NoSleep())
    relay.begin_shutdown()

    assert await relay.relay_if_new("A1", _payload()) is RelayOutcome.LOST
    assert len(backend.calls) == 1


def test_from_settings_uses_backoff_schedule() -> None:
    settings = Settings(_env_file=None, relay_max_attempts=4, relay_backoff_seconds=0.5, relay_backoff_multiplier=3)
    relay = RelayDeduplicator.from_settings(RecordingBackend(), settings)

    assert relay._max_attempts == 4
    assert relay._retry_delays == [0.5, 1.5, 4.5]


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RelayDeduplicator(RecordingBackend(), max_attempts=0)
