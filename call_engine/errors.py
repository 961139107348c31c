from __future__ import annotations


class EngineError(Exception):
    """Base class for call engine failures."""


class TransportError(EngineError):
    """Connecting to or talking with the remote voice service failed.

    Fatal to the session: the call is torn down and the error is surfaced.
    """


class DecodeError(EngineError):
    """An audio chunk could not be decoded; the chunk is dropped."""


class CorrelationError(EngineError):
    """A transcript event could not be attached to any turn; the event is dropped."""


class DeviceError(EngineError):
    """The audio input/output device is unavailable or access was denied."""
