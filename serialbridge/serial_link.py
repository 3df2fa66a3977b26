"""Serial link lifecycle: open, quiet-period drain, steady relay, error and close."""

import asyncio
import logging
from typing import Callable, List, Optional

import serial

from serialbridge.errors import FrameError, SerialLinkError
from serialbridge.state import LinkState, link_state_machine

DEFAULT_DRAIN_MS = 100

DRIVER_ERRORS = (serial.SerialException, OSError)


class SerialDriver:
    """pyserial port driven from asyncio; blocking calls run in worker threads."""

    def __init__(self, port: str, baud: int, poll_interval: float = 0.01):
        self.port = port
        self.baud = baud
        self.poll_interval = poll_interval
        self._serial: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self):
        self._serial = await asyncio.to_thread(
            serial.Serial, port=self.port, baudrate=self.baud
        )

    async def read(self) -> bytes:
        """Wait for the next chunk; empty bytes once the port is gone."""
        while True:
            ser = self._serial
            if ser is None or not ser.is_open:
                return b""
            n = ser.in_waiting
            if n > 0:
                return await asyncio.to_thread(ser.read, n)
            await asyncio.sleep(self.poll_interval)

    async def write(self, data: bytes):
        if self._serial is None:
            raise serial.SerialException(f"{self.port} is not open")
        await asyncio.to_thread(self._serial.write, data)

    async def close(self):
        ser, self._serial = self._serial, None
        if ser is not None and ser.is_open:
            await asyncio.to_thread(ser.close)

    def __repr__(self):
        return f"<SerialDriver {self.port} @ {self.baud}>"


class SerialLink:
    """Owns one serial driver and relays its parsed output to a single listener.

    After the driver opens the link sits in DRAINING: inbound bytes are thrown
    away and outbound buffers are queued until no byte has arrived for
    ``drain_ms``. Then the queue is written in order and the link is OPEN.
    """

    def __init__(
        self,
        driver,
        drain_ms: int = DEFAULT_DRAIN_MS,
        logger: Optional[logging.Logger] = None,
    ):
        self.driver = driver
        self.drain_ms = drain_ms
        self.logger = logger or logging.getLogger(__name__)
        self._state = link_state_machine(f"serial {getattr(driver, 'port', '')}".strip())
        self._parser = None
        self._pending: Optional[List[bytes]] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._drain_timer: Optional[asyncio.TimerHandle] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._on_data: Optional[Callable[[bytes], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._on_close: Optional[Callable[[], None]] = None

    @property
    def state(self) -> LinkState:
        return self._state.current

    @property
    def parser(self):
        return self._parser

    def attach(self, on_data=None, on_error=None, on_close=None):
        """Register the single listener for data, error and close events."""
        self._on_data = on_data
        self._on_error = on_error
        self._on_close = on_close

    def detach(self):
        self.attach()

    def encode(self, frame: bytes) -> bytes:
        """Re-encode a frame for the far side the way the parser expects it."""
        if self._parser is None:
            return bytes(frame)
        return self._parser.encode(frame)

    async def open(self, parser) -> bool:
        """Open the driver with `parser` as read pipeline; False if it failed."""
        if self.state is not LinkState.CLOSED and self.state is not LinkState.ERROR:
            await self.close()
        elif self.state is LinkState.ERROR:
            await self._release()
        self._state.transition(LinkState.OPENING)
        self._parser = parser
        parser.reset()
        parser.attach(self._on_frame, self._on_parser_error)
        try:
            await self.driver.open()
        except DRIVER_ERRORS as exc:
            self.logger.error("Failed to open %s: %s", self.driver, exc)
            self._fail(exc)
            return False
        if self.state is not LinkState.OPENING:
            # Closed while the driver was still opening.
            self.logger.info("Serial %s closed during open", self.driver)
            await self.driver.close()
            return False
        self._state.transition(LinkState.DRAINING)
        self.logger.info("Serial opened: %s, draining", self.driver)
        self._pending = []
        self._outbox = asyncio.Queue()
        self._arm_drain_timer()
        self._reader_task = asyncio.create_task(self._read_loop())
        self._writer_task = asyncio.create_task(self._write_loop())
        return True

    def send(self, data: bytes) -> bool:
        """Queue `data` for the driver; held back while draining."""
        state = self.state
        if state is LinkState.DRAINING:
            self._pending.append(bytes(data))
            self.logger.debug("Queued %d bytes while draining", len(data))
            return True
        if state is LinkState.OPEN:
            self._outbox.put_nowait(bytes(data))
            return True
        self.logger.warning("Dropping %d bytes, serial link is %s", len(data), state.name)
        return False

    async def close(self):
        """Release the driver; a no-op when already closed."""
        if self.state is LinkState.CLOSED:
            return
        await self._release()
        self._state.transition(LinkState.CLOSED)
        self.logger.info("Serial closed: %s", self.driver)
        if self._on_close is not None:
            self._on_close()

    async def _release(self):
        self._cancel_drain_timer()
        if self._parser is not None:
            self._parser.clear_timer()
            self._parser.detach()
        self._pending = None
        tasks = [t for t in (self._reader_task, self._writer_task) if t is not None]
        self._reader_task = self._writer_task = None
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
        try:
            await self.driver.close()
        except DRIVER_ERRORS as exc:
            self.logger.warning("Error while closing %s: %s", self.driver, exc)

    def _arm_drain_timer(self):
        self._cancel_drain_timer()
        loop = asyncio.get_running_loop()
        self._drain_timer = loop.call_later(self.drain_ms / 1000, self._on_drained)

    def _cancel_drain_timer(self):
        if self._drain_timer is not None:
            self._drain_timer.cancel()
            self._drain_timer = None

    def _on_drained(self):
        self._drain_timer = None
        self._state.transition(LinkState.OPEN)
        pending, self._pending = self._pending, None
        for data in pending:
            self._outbox.put_nowait(data)
        self.logger.info("Serial link open, flushed %d queued buffer(s)", len(pending))

    def _on_chunk(self, data: bytes):
        if self.state is LinkState.DRAINING:
            self.logger.debug("Discarding %d bytes while draining", len(data))
            self._arm_drain_timer()
        elif self.state is LinkState.OPEN:
            self.logger.debug("Received %d bytes from serial", len(data))
            self._parser.feed(data)

    def _on_frame(self, frame: bytes):
        if self.state is LinkState.OPEN and self._on_data is not None:
            self._on_data(frame)

    def _on_parser_error(self, exc: FrameError):
        if self._on_error is not None:
            self._on_error(exc)

    def _fail(self, exc: Exception):
        if self.state in (LinkState.CLOSED, LinkState.ERROR):
            return
        self._cancel_drain_timer()
        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current:
                task.cancel()
        if self._parser is not None:
            self._parser.clear_timer()
        self._state.transition(LinkState.ERROR)
        if self._on_error is not None:
            self._on_error(exc)

    async def _read_loop(self):
        try:
            while True:
                data = await self.driver.read()
                if not data:
                    break
                self._on_chunk(data)
        except DRIVER_ERRORS as exc:
            self.logger.error("Serial read failed: %s", exc)
            self._fail(exc)
            return
        if self.state in (LinkState.CLOSED, LinkState.ERROR):
            return
        if self.state is LinkState.OPEN:
            self._parser.flush()
        self.logger.error("Serial port %s closed unexpectedly", self.driver)
        self._fail(SerialLinkError(f"{self.driver} closed unexpectedly"))

    async def _write_loop(self):
        while True:
            data = await self._outbox.get()
            try:
                await self.driver.write(data)
            except DRIVER_ERRORS as exc:
                self.logger.error("Serial write failed: %s", exc)
                self._fail(exc)
                return
            self.logger.debug("Sent %d bytes to serial", len(data))


def is_fatal(exc: Exception) -> bool:
    """Framing errors leave the link usable; everything else ends the session."""
    return not isinstance(exc, FrameError)
