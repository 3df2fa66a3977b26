"""Configuration and command-line argument parsing for the serial bridge."""

import argparse
from dataclasses import dataclass

from serialbridge import __version__
from serialbridge.parser import DEFAULT_MAX_FRAME_SIZE, DEFAULT_TIMEOUT_MS
from serialbridge.serial_link import DEFAULT_DRAIN_MS

DEFAULT_PORT = "/dev/ttyUSB0"
DEFAULT_BAUD = 230400
DEFAULT_LISTEN = "0.0.0.0"
DEFAULT_TCP_PORT = 12000
DEFAULT_BATCH_SIZE = 256
MODES = ("passthrough", "framed", "marker")


@dataclass
class Settings:
    """Everything the bridge and the interface checks need to run."""

    port: str = DEFAULT_PORT
    baud: int = DEFAULT_BAUD
    listen: str = DEFAULT_LISTEN
    tcp_port: int = DEFAULT_TCP_PORT
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    drain_ms: int = DEFAULT_DRAIN_MS
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    mode: str = "passthrough"
    add_marker: bool = False
    verbose: bool = False
    debug: bool = False
    test_socket: bool = False
    test_serial: bool = False
    test_loopback: float = 0.0
    batch_size: int = DEFAULT_BATCH_SIZE

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Settings":
        return cls(**{name: getattr(args, name) for name in cls.__dataclass_fields__})

    @property
    def run_checks(self) -> bool:
        return self.test_socket or self.test_serial or self.test_loopback > 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serialbridge",
        description=(
            "Open a serial connection to a device and a TCP listener on the other "
            "side, so that a client can talk to the device through the socket."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--port",
        default=DEFAULT_PORT,
        help=f'Serial port, e.g. "/dev/ttyUSB0" or "COM1" (default: {DEFAULT_PORT})',
    )
    parser.add_argument(
        "--baud",
        type=int,
        default=DEFAULT_BAUD,
        help=f"Baud rate (default: {DEFAULT_BAUD})",
    )
    parser.add_argument(
        "--listen",
        default=DEFAULT_LISTEN,
        help=f"TCP listen address (default: {DEFAULT_LISTEN})",
    )
    parser.add_argument(
        "--tcp-port",
        type=int,
        default=DEFAULT_TCP_PORT,
        help=f"TCP listen port (default: {DEFAULT_TCP_PORT})",
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="passthrough",
        help="How serial input is cut before it is relayed (default: passthrough)",
    )
    parser.add_argument(
        "--add-marker",
        action="store_true",
        help="Put the 0xA5 start marker in front of frames relayed to the socket",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help=f"Max time between two chunks of one frame (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--drain-ms",
        type=int,
        default=DEFAULT_DRAIN_MS,
        help=f"Quiet period after opening the serial port (default: {DEFAULT_DRAIN_MS})",
    )
    parser.add_argument(
        "--max-frame-size",
        type=int,
        default=DEFAULT_MAX_FRAME_SIZE,
        help=f"Largest accepted frame length (default: {DEFAULT_MAX_FRAME_SIZE})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (connection events, errors)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Also log every relayed chunk",
    )
    checks = parser.add_argument_group("interface checks")
    checks.add_argument(
        "--test-socket",
        action="store_true",
        help="Check that the TCP port is free, then exit",
    )
    checks.add_argument(
        "--test-serial",
        action="store_true",
        help="Check that the serial port can be opened, then exit",
    )
    checks.add_argument(
        "--test-loopback",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="Run a loopback test against the device for SECONDS, then exit",
    )
    checks.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Payload bytes per loopback frame (default: {DEFAULT_BATCH_SIZE})",
    )
    return parser


def parse_args(argv=None) -> Settings:
    """Parse command-line arguments and return validated settings."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_args(args)
    _validate(settings)
    return settings


def _validate(settings: Settings):
    """Validate settings; raise ValueError on invalid values."""
    if not (settings.port and settings.port.strip()):
        raise ValueError("Serial port (--port) must be non-empty")
    if settings.baud <= 0:
        raise ValueError("Baud rate (--baud) must be positive")
    if not (1 <= settings.tcp_port <= 65535):
        raise ValueError("TCP port (--tcp-port) must be between 1 and 65535")
    if settings.timeout_ms <= 0:
        raise ValueError("Frame timeout (--timeout-ms) must be positive")
    if settings.drain_ms < 0:
        raise ValueError("Drain period (--drain-ms) must not be negative")
    if settings.max_frame_size <= 0:
        raise ValueError("Maximum frame size (--max-frame-size) must be positive")
    if settings.test_loopback < 0:
        raise ValueError("Loopback duration (--test-loopback) must not be negative")
    if settings.batch_size <= 0:
        raise ValueError("Loopback batch size (--batch-size) must be positive")
