# models/errors.py


class SignalingServiceError(Exception):
    """Base exception for unified error handling across the call stack."""


class MediaAcquisitionError(SignalingServiceError):
    """Hardware capture is unavailable; recovered with synthetic media."""


class SignalingDecodeError(SignalingServiceError):
    """A signaling message could not be decoded and is dropped."""


class NegotiationProtocolError(SignalingServiceError):
    """An operation was attempted in a state that does not allow it."""

    def __init__(self, message: str, state=None, event=None):
        super().__init__(message)
        self.state = state
        self.event = event


class ConnectionTimeoutError(SignalingServiceError):
    """No connection was established before the deadline."""


class TransportError(SignalingServiceError):
    """Publishing to or reading from the signaling channel failed."""


class InvalidSessionIdError(SignalingServiceError, ValueError):
    """Session identifier has an invalid format."""
