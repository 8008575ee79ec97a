"""In-process plumbing: inbound protocol queue and finalization signal."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

from blinker import Signal
from loguru import logger

from voicerelay.events import Confidence, Speaker

NoticeHandler: TypeAlias = Callable[["FinalizationNotice"], None]

_CLOSED = object()


@dataclass(frozen=True)
class FinalizationNotice:
    """Best-effort notice for UI and conversation bookkeeping."""

    speaker: Speaker
    text: str
    confidence: Confidence
    item_id: str | None = None
    turn_index: int = 0


class InboundQueue:
    """Async queue of raw protocol messages delivered by the transport."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, message: Any) -> None:
        if self._closed:
            raise RuntimeError("inbound queue is closed")
        await self._queue.put(message)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def next(self, timeout_seconds: float | None = None) -> Any | None:
        """Next message, or ``None`` once closed or after ``timeout_seconds``."""
        try:
            if timeout_seconds is None:
                message = await self._queue.get()
            else:
                message = await asyncio.wait_for(self._queue.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None
        if message is _CLOSED:
            return None
        return message


class FinalizationSignal:
    """Fan finalization notices out to listeners through a blinker signal."""

    def __init__(self) -> None:
        self._signal = Signal("voicerelay.finalized")

    def connect(self, handler: NoticeHandler) -> Callable[[], None]:
        def _receiver(sender: Any, *, notice: FinalizationNotice) -> None:
            try:
                handler(notice)
            except Exception:
                logger.opt(exception=True).warning("notice.listener_failed speaker={}", notice.speaker.value)

        self._signal.connect(_receiver, weak=False)
        return lambda: self._signal.disconnect(_receiver)

    def publish(self, notice: FinalizationNotice) -> None:
        self._signal.send(self, notice=notice)
