"""Test doubles and protocol message builders shared by the suite."""

from __future__ import annotations

import asyncio
from typing import Any

from voicerelay.relay import RelayPayload


class RecordingBackend:
    """Backend double that records every call and can fail or block on demand."""

    def __init__(self, failures: list[Exception] | None = None, gate: asyncio.Event | None = None) -> None:
        self.calls: list[RelayPayload] = []
        self.delivered: list[RelayPayload] = []
        self._failures = list(failures or [])
        self.gate = gate

    async def relay(self, payload: RelayPayload) -> None:
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self._failures:
            raise self._failures.pop(0)
        self.delivered.append(payload)

    def by_item(self) -> dict[str | None, list[RelayPayload]]:
        grouped: dict[str | None, list[RelayPayload]] = {}
        for payload in self.delivered:
            grouped.setdefault(payload.item_id, []).append(payload)
        return grouped


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class NoSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def delta(item_id: str | None, speaker: str, text: str) -> dict[str, Any]:
    message: dict[str, Any] = {"type": "delta", "speaker": speaker, "textFragment": text}
    if item_id is not None:
        message["itemId"] = item_id
    return message


def turn_start(item_id: str, speaker: str) -> dict[str, Any]:
    return {"type": "turn_start", "itemId": item_id, "speaker": speaker}


def completion(item_id: str, text: str, speaker: str | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"type": "completion", "itemId": item_id, "transcript": text}
    if speaker is not None:
        message["speaker"] = speaker
    return message


def failure(item_id: str, reason: str) -> dict[str, Any]:
    return {"type": "failure", "itemId": item_id, "reason": reason}


def response_start() -> dict[str, Any]:
    return {"type": "response_start"}


