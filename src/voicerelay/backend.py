"""Backend collaborators that receive relayed transcripts."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import requests
from loguru import logger

from voicerelay.config import Settings
from voicerelay.errors import RelayRejectedError, TransientDeliveryError
from voicerelay.relay import BackendClient, RelayPayload

RELAY_PATH = "/api/transcript/relay/{session_id}"


class HttpBackendClient:
    """POST relayed transcripts to the transcript relay endpoint.

    The blocking ``requests`` call runs in a worker thread so the event loop
    keeps consuming protocol events while a relay is outstanding.
    """

    def __init__(
        self,
        base_url: str,
        session_id: str,
        *,
        timeout_seconds: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = base_url.rstrip("/") + RELAY_PATH.format(session_id=session_id)
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    async def relay(self, payload: RelayPayload) -> None:
        await asyncio.to_thread(self._post, payload)

    def close(self) -> None:
        self._session.close()

    def _post(self, payload: RelayPayload) -> None:
        try:
            response = self._session.post(self.endpoint, json=payload.to_wire(), timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransientDeliveryError(f"relay request failed: {exc}") from exc

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransientDeliveryError(f"backend returned {status}")
        if status >= 400:
            raise RelayRejectedError(status, response.text[:200])
        logger.debug("backend.accepted status={} item_id={}", status, payload.item_id)


class EchoBackendClient:
    """Hand every payload to a callback; used for local replays."""

    def __init__(self, sink: Callable[[RelayPayload], None]) -> None:
        self._sink = sink
        self.sent: list[RelayPayload] = []

    async def relay(self, payload: RelayPayload) -> None:
        self.sent.append(payload)
        self._sink(payload)


def build_backend(settings: Settings) -> BackendClient | None:
    """HTTP client for ``settings.backend_url``, or ``None`` when relay is off."""

    if not settings.backend_transcript_mode or not settings.backend_url:
        return None
    return HttpBackendClient(
        settings.backend_url,
        settings.session_id,
        timeout_seconds=settings.relay_timeout_seconds,
    )
