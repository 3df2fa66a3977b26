"""Read-side pipelines for the serial link: length-prefixed framing and pass-through."""

import asyncio
import logging
import struct
from typing import Callable, Optional

from serialbridge.errors import FrameError, FrameTimeoutError, FrameTooLargeError

HEADER = struct.Struct("<I")
MARKER_BYTE = 0xA5
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_MAX_FRAME_SIZE = 1 << 20

FrameHandler = Callable[[bytes], None]
ErrorHandler = Callable[[FrameError], None]


def encode_frame(payload: bytes, marker: bool = False) -> bytes:
    """Prefix `payload` with its little-endian 32-bit length (and the 0xA5 marker)."""
    header = HEADER.pack(len(payload))
    if marker:
        return bytes([MARKER_BYTE]) + header + bytes(payload)
    return header + bytes(payload)


def add_marker(frame: bytes) -> bytes:
    """Turn an already length-prefixed frame into the marker variant."""
    if len(frame) < HEADER.size:
        raise ValueError("frame is shorter than its length header")
    return bytes([MARKER_BYTE]) + bytes(frame)


class _TimedParser:
    """Listener registration and the one-shot inactivity timer shared by both parsers."""

    kind = "Parser"

    def __init__(
        self,
        name: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.timeout_ms = timeout_ms
        self.logger = logger or logging.getLogger(__name__)
        self._on_frame: Optional[FrameHandler] = None
        self._on_error: Optional[ErrorHandler] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    def attach(self, on_frame: FrameHandler, on_error: Optional[ErrorHandler] = None):
        """Register the single downstream listener, replacing any earlier one."""
        self._on_frame = on_frame
        self._on_error = on_error

    def detach(self):
        self._on_frame = None
        self._on_error = None

    def error_with_text(self, text: str, cls=FrameError) -> FrameError:
        whole = self.kind
        if self.name:
            whole += f" ({self.name})"
        return cls(f"{whole}: {text}")

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def clear_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def start_timer(self, error_text: str):
        """Arm the timeout; it reports `error_text` unless cleared or re-armed first."""
        self.clear_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Fed synchronously, outside any event loop: nothing can time out.
            self.logger.debug("No running event loop, timeout not armed")
            return
        self._timer = loop.call_later(
            self.timeout_ms / 1000, self._on_timeout, error_text
        )

    def _on_timeout(self, error_text: str):
        self._timer = None
        self._report(self.error_with_text("Timeout: " + error_text, FrameTimeoutError))

    def _emit(self, frame: bytes):
        if self._on_frame is not None:
            self._on_frame(frame)

    def _report(self, exc: FrameError):
        self.logger.debug("%s", exc)
        if self._on_error is not None:
            self._on_error(exc)

    def encode(self, frame: bytes) -> bytes:
        return bytes(frame)

    def reset(self):
        self.clear_timer()

    def flush(self):
        self.clear_timer()


class FrameParser(_TimedParser):
    """Cuts a chunked byte stream into length-prefixed frames.

    Wire format: ``[len0..len3][payload]`` with a little-endian unsigned
    length, or ``[0xA5][len0..len3][payload]`` when ``marker`` is set. In
    marker mode everything before a marker byte is idle noise and is skipped.
    Emitted frames carry only the payload; :meth:`encode` puts the header back
    on for the far side (with the marker if ``output_marker`` is set).
    """

    kind = "Frame"

    def __init__(
        self,
        name: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
        marker: bool = False,
        output_marker: Optional[bool] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(name=name, timeout_ms=timeout_ms, logger=logger)
        self.max_frame_size = max_frame_size
        self.marker = marker
        self.output_marker = marker if output_marker is None else output_marker
        self._buffer = bytearray()
        self._pos = 0
        self.collecting = False
        self.remaining = 0

    @property
    def buffered(self) -> int:
        """Bytes received but not yet handed out."""
        return len(self._buffer) - self._pos

    def encode(self, frame: bytes) -> bytes:
        return encode_frame(frame, marker=self.output_marker)

    def reset(self):
        self.clear_timer()
        self._buffer.clear()
        self._pos = 0
        self.collecting = False
        self.remaining = 0

    def feed(self, chunk: bytes):
        """Consume one chunk and emit every frame it completes, in order."""
        self.clear_timer()
        self._buffer += chunk
        while True:
            if not self.collecting:
                if not self._read_header():
                    break
            if self.buffered < self.remaining:
                break
            self.collecting = False
            end = self._pos + self.remaining
            frame = bytes(self._buffer[self._pos:end])
            self._pos = end
            self.remaining = self.buffered
            self._emit(frame)
        self._compact()
        if self.remaining > 0:
            self.start_timer("Too much time between two data chunks.")

    def _read_header(self) -> bool:
        header_size = HEADER.size
        if self.marker:
            start = self._buffer.find(MARKER_BYTE, self._pos)
            if start < 0:
                self._pos = len(self._buffer)
                self.remaining = 0
                return False
            self._pos = start
            header_size += 1
        if self.buffered < header_size:
            self.remaining = self.buffered
            return False
        (length,) = HEADER.unpack_from(self._buffer, self._pos + header_size - HEADER.size)
        if length > self.max_frame_size:
            exc = self.error_with_text(
                f"Frame length {length} exceeds maximum of {self.max_frame_size} bytes.",
                FrameTooLargeError,
            )
            self.reset()
            self._report(exc)
            return False
        self._pos += header_size
        self.remaining = length
        self.collecting = True
        return True

    def _compact(self):
        if self._pos:
            del self._buffer[: self._pos]
            self._pos = 0

    def flush(self):
        """End of stream: hand out whatever is left, complete or not."""
        self.clear_timer()
        if self.buffered:
            leftover = bytes(self._buffer[self._pos:])
            self.reset()
            self._emit(leftover)
        else:
            self.reset()


class PassthroughParser(_TimedParser):
    """Forwards each chunk unchanged as soon as it arrives."""

    kind = "Passthrough"

    def feed(self, chunk: bytes):
        self._emit(bytes(chunk))


def make_parser(
    mode: str,
    name: Optional[str] = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    add_marker: bool = False,
    logger: Optional[logging.Logger] = None,
):
    """Build the parser for a configured mode: framed, marker or passthrough."""
    if mode == "passthrough":
        return PassthroughParser(name=name, timeout_ms=timeout_ms, logger=logger)
    if mode in ("framed", "marker"):
        marker = mode == "marker"
        return FrameParser(
            name=name,
            timeout_ms=timeout_ms,
            max_frame_size=max_frame_size,
            marker=marker,
            output_marker=marker or add_marker,
            logger=logger,
        )
    raise ValueError(f"Unknown parser mode: {mode!r}")
