"""Error taxonomy for frame handling and moderation."""

from __future__ import annotations


class LobbyError(Exception):
    """Base class for errors recovered at the frame-handling boundary."""


class MalformedFrame(LobbyError):
    """The payload could not be decoded into a frame map."""


class UnknownFrameType(LobbyError):
    """The frame decoded, but its type is not one the hub handles."""


class ValidationError(LobbyError):
    """A required field is missing or has the wrong shape."""


class Blocked(LobbyError):
    """The actor or target client id is currently blocked."""


class Forbidden(LobbyError):
    """The acting principal lacks the capability for the command."""


class PersistenceFailure(LobbyError):
    """The durable block store failed or timed out."""
