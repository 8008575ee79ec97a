"""voicerelay - finalize realtime transcripts and relay each one at most once."""

from .config import Settings, get_settings
from .engine import TranscriptRelayEngine
from .events import Confidence, Speaker
from .relay import RelayDeduplicator, RelayOutcome, RelayPayload

__version__ = "0.1.0"

__all__ = [
    "Confidence",
    "RelayDeduplicator",
    "RelayOutcome",
    "RelayPayload",
    "Settings",
    "Speaker",
    "TranscriptRelayEngine",
    "get_settings",
]
