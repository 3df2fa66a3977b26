"""Interface checks run before bridging: socket port, serial port, loopback."""

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Optional

import serial

from serialbridge.parser import FrameParser, encode_frame
from serialbridge.serial_link import DEFAULT_DRAIN_MS, SerialLink, is_fatal

logger = logging.getLogger("serialbridge.checks")

CMD_LOOPBACK = 15
LOOPBACK_SEQ_NO = 1
RECEIVE_TIMEOUT = 1.0


def check_socket_port(port: int, host: str = "0.0.0.0") -> bool:
    """True when nothing else is bound to `port`."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            logger.info("Socket port %s is already in use: %s", port, exc)
            return False
    return True


async def check_serial(port: str, baud: int) -> bool:
    """True when the serial port opens at `baud`."""
    try:
        ser = await asyncio.to_thread(serial.Serial, port=port, baudrate=baud)
    except (serial.SerialException, OSError) as exc:
        logger.info("Serial interface %s @ %s baud error: %s", port, baud, exc)
        return False
    await asyncio.to_thread(ser.close)
    return True


@dataclass
class LoopbackStats:
    seconds: float
    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def bytes_per_ms(self) -> float:
        return self.bytes_received / (self.seconds * 1000) if self.seconds else 0.0

    @property
    def packets_per_second(self) -> float:
        return self.packets_received / self.seconds if self.seconds else 0.0

    def report(self) -> str:
        lines = [
            f"Bytes sent: {self.bytes_sent}",
            f"Bytes received: {self.bytes_received}",
            f"Bytes/ms: {self.bytes_per_ms:.3f}",
            f"Packets sent: {self.packets_sent}",
            f"Packets received: {self.packets_received}",
            f"Packets/s: {self.packets_per_second:.1f}",
        ]
        lines.append(self.error or "Successful. No error.")
        return "\n".join(lines)


class _Loopback:
    """Sends CMD_LOOPBACK frames with a running byte counter and checks the echo."""

    def __init__(self, link: SerialLink, stats: LoopbackStats, batch_size: int):
        self.link = link
        self.stats = stats
        self.batch_size = batch_size
        self.last_sent = 0
        self.last_received = 0
        self.batch_received = 0
        self.done = asyncio.Event()
        self._watchdog: Optional[asyncio.TimerHandle] = None

    def arm_watchdog(self, text: str):
        if self._watchdog is not None:
            self._watchdog.cancel()
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(RECEIVE_TIMEOUT, self.stop, text)

    def stop(self, error: Optional[str] = None):
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if error and self.stats.error is None:
            self.stats.error = error
        self.done.set()

    def send_batch(self):
        data = bytearray()
        for _ in range(self.batch_size):
            self.last_sent = (self.last_sent + 1) & 0xFF
            data.append(self.last_sent)
        self.link.send(encode_frame(bytes([LOOPBACK_SEQ_NO, CMD_LOOPBACK]) + data))
        self.stats.bytes_sent += self.batch_size
        self.stats.packets_sent += 1

    def on_data(self, payload: bytes):
        if self.done.is_set():
            return
        self.arm_watchdog("Timeout. No data received.")
        # The first byte is the sequence number.
        for value in payload[1:]:
            self.last_received = (self.last_received + 1) & 0xFF
            if value != self.last_received:
                self.stop(
                    f"Wrong data received after {self.stats.bytes_received} received bytes"
                )
                return
        self.stats.bytes_received += len(payload)
        self.batch_received += max(len(payload) - 1, 0)
        if self.batch_received >= self.batch_size:
            self.batch_received -= self.batch_size
            self.stats.packets_received += 1
            self.send_batch()

    def on_error(self, exc: Exception):
        if is_fatal(exc):
            self.stop(f"Serial error: {exc}")
        else:
            logger.warning("%s", exc)


async def run_loopback(
    driver, seconds: float, batch_size: int, drain_ms: int = DEFAULT_DRAIN_MS
) -> LoopbackStats:
    """Drive a loopback test over `driver` for `seconds` and return the numbers."""
    stats = LoopbackStats(seconds=seconds)
    link = SerialLink(driver, drain_ms=drain_ms)
    loopback = _Loopback(link, stats, batch_size)
    link.attach(on_data=loopback.on_data, on_error=loopback.on_error)
    loopback.arm_watchdog("Timeout. No connection.")
    try:
        if not await link.open(FrameParser(name="loopback")):
            loopback.stop(stats.error or "Could not open serial port")
            return stats
        # Queued until the drain period is over.
        loopback.send_batch()
        try:
            await asyncio.wait_for(loopback.done.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            loopback.stop()
    finally:
        loopback.stop()
        await link.close()
    return stats
