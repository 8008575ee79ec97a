"""Exception types for the transcript relay engine."""

from __future__ import annotations


class VoiceRelayError(Exception):
    """Base exception for voicerelay."""


class ConfigurationError(VoiceRelayError):
    """Raised when settings fail validation."""


class DeliveryError(VoiceRelayError):
    """Base exception for backend relay failures."""


class TransientDeliveryError(DeliveryError):
    """Backend call failed in a way that may succeed on retry (network, 5xx)."""


class RelayRejectedError(DeliveryError):
    """Backend refused the payload; retrying will not help."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        super().__init__(f"backend rejected relay with status {status_code}: {detail}".rstrip(": "))
        self.status_code = status_code


class ProtocolAnomaly(VoiceRelayError):
    """Inbound protocol message is malformed or unusable."""

    def __init__(self, message_type: str, reason: str) -> None:
        super().__init__(f"{message_type}: {reason}")
        self.message_type = message_type
        self.reason = reason


class AuthoritativeFailure(VoiceRelayError):
    """Remote session reported that transcription of an item failed.

    This is a terminal outcome for the utterance, not a crash: it is recorded on
    the utterance and the sentinel text is still relayed as degraded.
    """

    def __init__(self, item_id: str, reason: str) -> None:
        super().__init__(f"transcription failed for {item_id}: {reason}")
        self.item_id = item_id
        self.reason = reason

    @property
    def rate_limited(self) -> bool:
        return "429" in self.reason or "too many requests" in self.reason.casefold()


class DuplicateAuthoritativeEvent(VoiceRelayError):
    """A second authoritative event arrived for an already finalized item."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"authoritative result already applied for {item_id}")
        self.item_id = item_id
