"""Transcript finalization and relay engine."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterable, Awaitable, Callable, Coroutine
from typing import Any

from loguru import logger

from voicerelay.arbiter import FinalizationArbiter
from voicerelay.backend import build_backend
from voicerelay.bus import FinalizationSignal, InboundQueue, NoticeHandler
from voicerelay.config import Settings, get_settings
from voicerelay.coordinator import TurnBoundaryCoordinator
from voicerelay.events import (
    DeltaReceived,
    NormalizedEvent,
    ResponseStarted,
    Speaker,
    TranscriptionCompleted,
    TranscriptionFailed,
    TurnStarted,
)
from voicerelay.normalizer import EventNormalizer, RawMessage
from voicerelay.relay import BackendClient, RelayDeduplicator
from voicerelay.tracker import Utterance, UtteranceTracker


class TranscriptRelayEngine:
    """Consume protocol events and relay each finalized utterance at most once.

    Everything runs on one event loop. :meth:`handle` processes a message to
    completion without awaiting; backend calls run as separate tasks so new
    events keep flowing while a relay is outstanding.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        backend: BackendClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        if backend is None:
            backend = build_backend(self.settings)
        self.notices = FinalizationSignal()
        self.normalizer = EventNormalizer()
        self.tracker = UtteranceTracker(
            unavailable_text=self.settings.unavailable_text,
            rate_limited_text=self.settings.rate_limited_text,
            clock=clock,
        )
        self.relay: RelayDeduplicator | None = None
        if backend is not None and self.settings.backend_transcript_mode:
            self.relay = RelayDeduplicator.from_settings(backend, self.settings, sleep=sleep)
        self.arbiter = FinalizationArbiter(
            self.tracker,
            self.relay,
            self.notices,
            spawn=self._spawn,
            unavailable_text=self.settings.unavailable_text,
            clock=clock,
        )
        self.coordinator = TurnBoundaryCoordinator(self.tracker, self.arbiter)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._closing = False
        self.handler_errors = 0
        self._log = logger.bind(session=self.settings.session_id)

    async def __aenter__(self) -> TranscriptRelayEngine:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closing

    def on_finalized(self, handler: NoticeHandler) -> Callable[[], None]:
        """Subscribe to finalization notices; returns an unsubscribe callable."""
        return self.notices.connect(handler)

    def handle(self, message: RawMessage) -> NormalizedEvent | None:
        """Process one raw protocol message. Never raises.

        Must be called from the thread running the event loop.
        """

        if self._closing:
            self._log.warning("engine.closed_drop")
            return None
        event = self.normalizer.normalize(message)
        if event is None:
            return None
        try:
            self._dispatch(event)
        except Exception:
            self.handler_errors += 1
            self._log.opt(exception=True).error("engine.handler_failed kind={}", event.kind_value())
        return event

    def force_finalize(self, item_id: str) -> str | None:
        """Locally close ``item_id`` early; returns the provisional text."""
        return self.arbiter.force_finalize(item_id)

    async def run(self, source: InboundQueue | AsyncIterable[RawMessage], *, idle_timeout: float | None = None) -> None:
        """Consume ``source`` until it ends, then tear down."""

        try:
            if isinstance(source, InboundQueue):
                while True:
                    message = await source.next(timeout_seconds=idle_timeout)
                    if message is None:
                        break
                    self.handle(message)
            else:
                async for message in source:
                    self.handle(message)
        finally:
            await self.aclose()

    async def drain(self) -> None:
        """Wait until every scheduled relay has resolved."""
        while True:
            # Finished tasks stay in the set until their done callback runs.
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Flush every unsettled utterance through the relay, then stop."""

        if self._closing:
            await self.drain()
            return
        self._closing = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self.relay is not None:
            self.relay.begin_shutdown()
        flushed = self.coordinator.close_all()
        await self.drain()
        self._log.info("engine.closed flushed={} relayed={}", flushed, len(self.relay.relayed) if self.relay else 0)

    def diagnostics(self) -> dict[str, Any]:
        relay: dict[str, Any] = {}
        if self.relay is not None:
            relay = {"outcomes": dict(self.relay.outcomes), "errors": dict(self.relay.errors)}
        return {
            "turn_index": self.coordinator.turn_index,
            "events": self.normalizer.snapshot(),
            "utterances": self.tracker.counts(),
            "duplicates_ignored": self.arbiter.duplicates_ignored,
            "closed_out": self.coordinator.closed_out,
            "handler_errors": self.handler_errors,
            "relay": relay,
        }

    def _dispatch(self, event: NormalizedEvent) -> None:
        if isinstance(event, DeltaReceived):
            utterance = self.coordinator.on_delta(event)
            if utterance is not None and utterance.speaker is Speaker.USER:
                self._arm_timer(utterance)
        elif isinstance(event, TurnStarted):
            self.coordinator.on_turn_started(event)
        elif isinstance(event, (TranscriptionCompleted, TranscriptionFailed)):
            utterance = self.arbiter.on_authoritative(event)
            if utterance is not None:
                self._cancel_timer(utterance)
        elif isinstance(event, ResponseStarted):
            self.arbiter.on_response_started()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _arm_timer(self, utterance: Utterance) -> None:
        delay = self.settings.force_finalize_after_seconds
        if delay <= 0 or not utterance.is_open:
            return
        self._cancel_timer(utterance)
        loop = asyncio.get_running_loop()
        self._timers[utterance.local_id] = loop.call_later(delay, self._on_timer, utterance)

    def _cancel_timer(self, utterance: Utterance) -> None:
        handle = self._timers.pop(utterance.local_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timer(self, utterance: Utterance) -> None:
        self._timers.pop(utterance.local_id, None)
        if self._closing or not utterance.is_open:
            return
        self._log.warning("engine.delta_timeout key={}", utterance.key)
        try:
            self.arbiter.force_finalize(utterance)
        except Exception:
            self.handler_errors += 1
            self._log.opt(exception=True).error("engine.timer_failed key={}", utterance.key)
