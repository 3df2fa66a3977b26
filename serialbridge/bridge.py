"""Asyncio-based bridge between a serial link and a single TCP client."""

import asyncio
import logging
from typing import Callable, Optional

from serialbridge.config import Settings
from serialbridge.errors import InvalidTransition
from serialbridge.parser import make_parser
from serialbridge.serial_link import SerialDriver, SerialLink, is_fatal
from serialbridge.state import ConnectionState, LinkState, connection_state_machine

logger = logging.getLogger(__name__)

READ_SIZE = 4096
RELISTEN_DELAY = 0.01


class Bridge:
    """Single-tenant TCP listener relaying bytes to and from a SerialLink.

    ``listen()`` accepts exactly one client and then stops accepting. When
    that client goes away ``on_disconnect`` is called once; listening again is
    up to the caller (see :func:`serve`).
    """

    def __init__(
        self,
        port: int,
        link: SerialLink,
        host: str = "0.0.0.0",
        on_disconnect: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.port = port
        self.host = host
        self.link = link
        self.on_disconnect = on_disconnect
        self.on_error = on_error
        self.logger = logger or logging.getLogger(__name__)
        self.state = connection_state_machine(f"socket {port}")
        self._server: Optional[asyncio.AbstractServer] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._bound_port: Optional[int] = None
        link.attach(on_data=self._on_serial_data, on_error=self._on_serial_error)

    @classmethod
    async def start(cls, port: int, link: SerialLink, **kwargs) -> "Bridge":
        """Create a bridge and start listening right away."""
        bridge = cls(port, link, **kwargs)
        await bridge.listen()
        return bridge

    @property
    def bound_port(self) -> Optional[int]:
        return self._bound_port

    @property
    def connected(self) -> bool:
        return self._writer is not None

    async def listen(self):
        """Bind and wait for one client."""
        if self.state.current is not ConnectionState.CLOSED:
            raise InvalidTransition(f"{self.state.name}: already {self.state.current.name}")
        self._server = await asyncio.start_server(self._on_accept, self.host, self.port)
        self.state.transition(ConnectionState.CONNECTING)
        self._bound_port = self._server.sockets[0].getsockname()[1]
        self.logger.info("Waiting for connection on %s:%s", self.host, self._bound_port)

    async def close(self):
        """Stop listening and drop the current client, if any."""
        self._stop_listening()
        writer = self._writer
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass
        elif self.state.current is ConnectionState.CONNECTING:
            self.state.transition(ConnectionState.CLOSED)

    def _stop_listening(self):
        if self._server is not None:
            self._server.close()
            self._server = None

    async def _on_accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername", ("?", "?"))
        if self._writer is not None:
            self.logger.warning("Rejecting connection from %s:%s (single client only)", peer[0], peer[1])
            writer.close()
            return
        # No further incoming connections on this listener.
        self._stop_listening()
        self._writer = writer
        self.state.transition(ConnectionState.CONNECTED)
        self.logger.info("Socket connected: %s:%s", peer[0], peer[1])
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                self._on_socket_data(data)
        except OSError as exc:
            self.logger.error("Socket error: %s", exc)
        finally:
            await self._on_socket_close(writer)

    def _on_socket_data(self, data: bytes):
        self.link.send(data)
        self.logger.debug("Sent %d bytes from socket to serial", len(data))

    async def _on_socket_close(self, writer: asyncio.StreamWriter):
        self._writer = None
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass
        self.state.transition(ConnectionState.CLOSED)
        self.logger.info("Socket disconnected.")
        if self.on_disconnect is not None:
            self.on_disconnect()

    def _on_serial_data(self, frame: bytes):
        writer = self._writer
        if writer is None or writer.is_closing():
            self.logger.debug("No client, dropping %d bytes from serial", len(frame))
            return
        writer.write(self.link.encode(frame))
        self.logger.debug("Received %d bytes from serial", len(frame))

    def _on_serial_error(self, exc: Exception):
        if not is_fatal(exc):
            self.logger.warning("Serial framing error: %s", exc)
            return
        self.logger.error("Serial error: %s", exc)
        if self._writer is not None:
            # Drops the client; the read loop then takes the normal close path.
            self._writer.close()
        if self.on_error is not None:
            self.on_error(exc)


async def serve(settings: Settings, driver=None):
    """Keep a bridge alive: re-listen after every disconnect, reopen a failed link.

    A fatal serial error wakes the loop as well as a disconnect, so a link
    that dies while nobody is connected is reopened before the next client.
    """
    driver = driver or SerialDriver(settings.port, settings.baud)
    link = SerialLink(driver, drain_ms=settings.drain_ms)
    parser = make_parser(
        settings.mode,
        name="Serial",
        timeout_ms=settings.timeout_ms,
        max_frame_size=settings.max_frame_size,
        add_marker=settings.add_marker,
    )
    if not await link.open(parser):
        raise ConnectionError(f"Could not open serial port {settings.port}")
    wake = asyncio.Event()
    bridge = Bridge(
        settings.tcp_port,
        link,
        host=settings.listen,
        on_disconnect=wake.set,
        on_error=lambda exc: wake.set(),
    )
    try:
        await bridge.listen()
        while True:
            await wake.wait()
            wake.clear()
            await asyncio.sleep(RELISTEN_DELAY)
            if link.state is LinkState.ERROR:
                logger.info("Reopening serial port %s", settings.port)
                if not await link.open(parser):
                    raise ConnectionError(f"Could not reopen serial port {settings.port}")
            if bridge.state.current is ConnectionState.CLOSED:
                await bridge.listen()
    finally:
        await bridge.close()
        await link.close()


def run_bridge(settings: Settings):
    """Synchronous entry: run the asyncio bridge until interrupted."""
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass
