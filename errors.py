# errors.py - Error taxonomy for the voice chat engine
"""
Every failure the conversation engine can surface to the user.

ConversationManager is the single place where these are turned into the
``error`` state plus a human-readable message. NoInputError is the odd one
out: it signals an empty utterance and sends the engine back to ``idle``.
"""


class VoiceChatError(Exception):
    """Base class for all engine errors."""


class DevicePermissionError(VoiceChatError, PermissionError):
    """Microphone or speaker could not be opened (denied or unavailable)."""


class TransportError(VoiceChatError):
    """A stream or connection to a backend dropped or could not be opened."""


class BackendResponseError(VoiceChatError):
    """A language or speech backend answered with an error or an unusable payload."""


class ConfigurationError(VoiceChatError):
    """Required credentials or endpoints are missing."""


class NoInputError(VoiceChatError):
    """Speech recognition finished without any text."""


class InvalidTransitionError(VoiceChatError):
    """A state change that the conversation state machine does not allow."""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal transition: {current.value} -> {requested.value}")
