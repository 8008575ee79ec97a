from __future__ import annotations

import pytest
from support import FakeClock, NoSleep, RecordingBackend

from voicerelay.config import Settings
from voicerelay.engine import TranscriptRelayEngine


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, session_id="sess-test", relay_backoff_seconds=0.0)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(settings: Settings, backend: RecordingBackend, clock: FakeClock) -> TranscriptRelayEngine:
    return TranscriptRelayEngine(settings, backend=backend, clock=clock, sleep=NoSleep())
