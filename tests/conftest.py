import asyncio

import pytest
import serial


class FakeDriver:
    """Stands in for a serial port: chunks are injected, writes are recorded."""

    port = "fake"

    def __init__(self, open_error=None, write_error=None):
        self.open_error = open_error
        self.write_error = write_error
        self.written = []
        self.opened = 0
        self.closed = 0
        self._chunks = None

    @property
    def is_open(self):
        return self._chunks is not None

    async def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        self._chunks = asyncio.Queue()

    async def read(self):
        item = await self._chunks.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data):
        if self.write_error is not None:
            raise self.write_error
        self.written.append(bytes(data))

    async def close(self):
        self.closed += 1
        self._chunks = None

    @property
    def pending_chunks(self):
        return self._chunks.qsize() if self._chunks is not None else 0

    def inject(self, data):
        self._chunks.put_nowait(bytes(data))

    def hang_up(self):
        self._chunks.put_nowait(b"")

    def fail_read(self, message="device unplugged"):
        self._chunks.put_nowait(serial.SerialException(message))


@pytest.fixture
def driver():
    return FakeDriver()


def run(coro):
    return asyncio.run(coro)
