"""Exceptions raised or reported by the serial bridge."""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class FrameError(BridgeError):
    """A problem while cutting the serial stream into frames."""


class FrameTimeoutError(FrameError):
    """A frame header or payload stalled past the configured timeout."""


class FrameTooLargeError(FrameError):
    """A length header announced more bytes than the allowed maximum."""


class InvalidTransition(BridgeError):
    """A state machine was asked to make a move its table does not allow."""


class SerialLinkError(BridgeError):
    """The serial read stream ended while the link was in use."""
