"""At-most-once relay of finalized transcripts to the backend."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict

from voicerelay.errors import RelayRejectedError, TransientDeliveryError
from voicerelay.events import Confidence, Speaker

if TYPE_CHECKING:
    from voicerelay.config import Settings


class RelayPayload(BaseModel):
    """One finalized transcript as forwarded to the backend."""

    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    is_final: bool = True
    timestamp_ms: int
    item_id: str | None = None
    confidence: Confidence = Confidence.AUTHORITATIVE

    @property
    def degraded(self) -> bool:
        return self.confidence is Confidence.DEGRADED

    def to_wire(self) -> dict[str, Any]:
        return {
            "role": self.speaker.value,
            "text": self.text,
            "isFinal": self.is_final,
            "timestamp": self.timestamp_ms,
            "itemId": self.item_id,
            "confidence": self.confidence.value,
        }


class BackendClient(Protocol):
    """Backend collaborator that accepts relayed transcripts."""

    async def relay(self, payload: RelayPayload) -> None: ...


class RelayOutcome(str, Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    EMPTY = "empty"
    LOST = "lost"


class RelayDeduplicator:
    """Forward each relay key to the backend at most once.

    The relayed set is durable for the whole session and is never cleared.
    Claiming a key happens before the first suspension point, so two callers
    racing on the same key cannot both reach the backend.
    """

    def __init__(
        self,
        backend: BackendClient,
        *,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._backend = backend
        self._max_attempts = max_attempts
        self._retry_delays = list(retry_delays)
        self._sleep = sleep
        self._relayed: set[str] = set()
        self._in_flight: set[str] = set()
        self._shutting_down = False
        self.errors: dict[str, str] = {}
        self.outcomes: Counter[str] = Counter()

    @classmethod
    def from_settings(
        cls,
        backend: BackendClient,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> RelayDeduplicator:
        return cls(
            backend,
            max_attempts=settings.relay_max_attempts,
            retry_delays=settings.retry_delays(),
            sleep=sleep,
        )

    @property
    def relayed(self) -> frozenset[str]:
        return frozenset(self._relayed)

    def is_relayed(self, key: str) -> bool:
        return key in self._relayed

    def is_claimed(self, key: str) -> bool:
        return key in self._relayed or key in self._in_flight

    def begin_shutdown(self) -> None:
        """Stop retrying; calls already running may still finish."""
        self._shutting_down = True

    async def relay_if_new(self, key: str, payload: RelayPayload) -> RelayOutcome:
        outcome = self._claim(key, payload)
        if outcome is None:
            try:
                outcome = await self._deliver(key, payload)
            finally:
                self._in_flight.discard(key)
        self.outcomes[outcome.value] += 1
        return outcome

    def _claim(self, key: str, payload: RelayPayload) -> RelayOutcome | None:
        if not payload.text.strip():
            logger.debug("relay.skip_empty key={}", key)
            return RelayOutcome.EMPTY
        if key in self._relayed:
            logger.debug("relay.skip_duplicate key={}", key)
            return RelayOutcome.DUPLICATE
        if key in self._in_flight:
            logger.debug("relay.skip_in_flight key={}", key)
            return RelayOutcome.IN_FLIGHT
        self._in_flight.add(key)
        return None

    async def _deliver(self, key: str, payload: RelayPayload) -> RelayOutcome:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._backend.relay(payload)
            except RelayRejectedError as exc:
                last_error = exc
                break
            except TransientDeliveryError as exc:
                last_error = exc
                logger.warning("relay.attempt_failed key={} attempt={} error={}", key, attempt, exc)
            except Exception as exc:
                # Backend adapters may raise anything; treat it as transient.
                last_error = exc
                logger.opt(exception=True).warning("relay.attempt_error key={} attempt={}", key, attempt)
            else:
                self._relayed.add(key)
                logger.info(
                    "relay.sent key={} speaker={} confidence={} attempt={}",
                    key,
                    payload.speaker.value,
                    payload.confidence.value,
                    attempt,
                )
                return RelayOutcome.SENT

            if self._shutting_down or attempt == self._max_attempts:
                break
            await self._sleep(self._delay_for(attempt))

        # Exhausted or rejected: the key is still closed for the rest of the session.
        self._relayed.add(key)
        self.errors[key] = str(last_error)
        logger.error("relay.lost key={} speaker={} error={}", key, payload.speaker.value, last_error)
        return RelayOutcome.LOST

    def _delay_for(self, attempt: int) -> float:
        if not self._retry_delays:
            return 0.0
        return self._retry_delays[min(attempt, len(self._retry_delays)) - 1]
