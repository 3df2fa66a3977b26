"""Serial bridge: expose a serial device to a single TCP client, with optional framing."""

import logging

__version__ = "1.0.0"

logging.getLogger("serialbridge").addHandler(logging.NullHandler())

from serialbridge.bridge import Bridge, run_bridge, serve  # noqa: E402
from serialbridge.parser import FrameParser, PassthroughParser  # noqa: E402
from serialbridge.serial_link import SerialDriver, SerialLink  # noqa: E402

__all__ = [
    "Bridge",
    "FrameParser",
    "PassthroughParser",
    "SerialDriver",
    "SerialLink",
    "run_bridge",
    "serve",
]
