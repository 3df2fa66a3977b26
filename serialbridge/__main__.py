"""Entry point: parse config, run interface checks or the bridge with graceful shutdown."""

import asyncio
import logging
import sys

from serialbridge.bridge import run_bridge
from serialbridge.checks import check_serial, check_socket_port, run_loopback
from serialbridge.config import Settings, parse_args
from serialbridge.serial_link import SerialDriver


def setup_logging(settings: Settings):
    if not (settings.verbose or settings.debug):
        return
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run_checks(settings: Settings) -> int:
    """Run the requested interface checks; return the process exit status."""
    status = 0
    if settings.test_socket:
        if check_socket_port(settings.tcp_port, settings.listen):
            print(f"Socket port {settings.tcp_port} OK.")
        else:
            print(f"Socket port {settings.tcp_port} is already in use. Choose another port.")
            status = 1
    if settings.test_serial:
        if asyncio.run(check_serial(settings.port, settings.baud)):
            print(f"Serial interface {settings.port} @{settings.baud} baud OK.")
        else:
            print(f"Serial interface {settings.port} @{settings.baud} baud error.")
            status = 1
    if settings.test_loopback > 0:
        driver = SerialDriver(settings.port, settings.baud)
        stats = asyncio.run(
            run_loopback(
                driver,
                settings.test_loopback,
                settings.batch_size,
                drain_ms=settings.drain_ms,
            )
        )
        print(f"Serial interface '{settings.port}' @{settings.baud} baud.")
        print(stats.report())
        if not stats.ok:
            status = 1
    return status


def main():
    try:
        settings = parse_args()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(settings)
    if settings.run_checks:
        try:
            sys.exit(run_checks(settings))
        except KeyboardInterrupt:
            sys.exit(1)
    print(
        f"Using socket={settings.tcp_port}, serial={settings.port}, "
        f"baudrate={settings.baud}, mode={settings.mode}"
    )
    try:
        run_bridge(settings)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
