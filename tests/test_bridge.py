import asyncio
import socket

import pytest
import serial

from serialbridge import bridge as bridge_module
from serialbridge.bridge import Bridge, serve
from serialbridge.config import Settings
from serialbridge.errors import InvalidTransition
from serialbridge.parser import FrameParser, PassthroughParser, encode_frame
from serialbridge.serial_link import SerialLink
from serialbridge.state import ConnectionState, LinkState
from tests.conftest import FakeDriver, run

DRAIN_MS = 20
HOST = "127.0.0.1"


async def open_link(driver, parser=None):
    link = SerialLink(driver, drain_ms=DRAIN_MS)
    await link.open(parser or PassthroughParser())
    while link.state is not LinkState.OPEN:
        await asyncio.sleep(0.005)
    return link


async def start_bridge(link, **kwargs):
    return await Bridge.start(0, link, host=HOST, **kwargs)


def test_relays_both_directions(driver):
    async def scenario():
        link = await open_link(driver)
        bridge = await start_bridge(link)
        assert bridge.state.current is ConnectionState.CONNECTING
        reader, writer = await asyncio.open_connection(HOST, bridge.bound_port)
        writer.write(b"\x01\x02\x03")
        await writer.drain()
        await asyncio.sleep(0.05)
        state = bridge.state.current
        driver.inject(b"from device")
        received = await asyncio.wait_for(reader.readexactly(11), 1)
        writer.close()
        await bridge.close()
        await link.close()
        return state, received

    state, received = run(scenario())
    assert state is ConnectionState.CONNECTED
    assert driver.written == [b"\x01\x02\x03"]
    assert received == b"from device"


def test_framed_mode_reencodes_frames(driver):
    async def scenario():
        link = await open_link(driver, FrameParser(output_marker=True))
        bridge = await start_bridge(link)
        reader, writer = await asyncio.open_connection(HOST, bridge.bound_port)
        await asyncio.sleep(0.02)
        stream = encode_frame(b"ab") + encode_frame(b"")
        driver.inject(stream[:3])
        driver.inject(stream[3:])
        expected = encode_frame(b"ab", marker=True) + encode_frame(b"", marker=True)
        received = await asyncio.wait_for(reader.readexactly(len(expected)), 1)
        writer.close()
        await bridge.close()
        await link.close()
        return expected, received

    expected, received = run(scenario())
    assert received == expected


def test_disconnect_is_signalled_once_and_listener_is_closed(driver):
    async def scenario():
        link = await open_link(driver)
        disconnects = []
        bridge = await start_bridge(link, on_disconnect=lambda: disconnects.append(1))
        port = bridge.bound_port
        _, writer = await asyncio.open_connection(HOST, port)
        await asyncio.sleep(0.02)
        writer.close()
        await writer.wait_closed()
        await asyncio.sleep(0.05)
        with pytest.raises(OSError):
            await asyncio.open_connection(HOST, port)
        state = bridge.state.current
        # Nothing is relayed once the client is gone.
        driver.inject(b"late")
        await asyncio.sleep(0.02)
        await link.close()
        return disconnects, state, bridge.connected

    disconnects, state, connected = run(scenario())
    assert disconnects == [1]
    assert state is ConnectionState.CLOSED
    assert not connected


def test_relisten_after_disconnect(driver):
    async def scenario():
        link = await open_link(driver)
        disconnected = asyncio.Event()
        bridge = await start_bridge(link, on_disconnect=disconnected.set)
        _, writer = await asyncio.open_connection(HOST, bridge.bound_port)
        writer.close()
        await disconnected.wait()
        disconnected.clear()
        await bridge.listen()
        _, writer = await asyncio.open_connection(HOST, bridge.bound_port)
        writer.write(b"again")
        await writer.drain()
        await asyncio.sleep(0.05)
        writer.close()
        await disconnected.wait()
        await link.close()

    run(scenario())
    assert driver.written == [b"again"]


def test_listen_twice_is_rejected(driver):
    async def scenario():
        link = await open_link(driver)
        bridge = await start_bridge(link)
        try:
            with pytest.raises(InvalidTransition):
                await bridge.listen()
        finally:
            await bridge.close()
            await link.close()
        return bridge.state.current

    assert run(scenario()) is ConnectionState.CLOSED


def test_serial_error_drops_client(driver):
    async def scenario():
        link = await open_link(driver)
        errors = []
        disconnected = asyncio.Event()
        bridge = await start_bridge(
            link, on_disconnect=disconnected.set, on_error=errors.append
        )
        reader, writer = await asyncio.open_connection(HOST, bridge.bound_port)
        await asyncio.sleep(0.02)
        driver.fail_read("device unplugged")
        eof = await asyncio.wait_for(reader.read(), 1)
        await asyncio.wait_for(disconnected.wait(), 1)
        writer.close()
        await link.close()
        return eof, errors

    eof, errors = run(scenario())
    assert eof == b""
    assert len(errors) == 1
    assert isinstance(errors[0], serial.SerialException)


def test_framing_error_keeps_client(driver):
    async def scenario():
        link = await open_link(driver, FrameParser(timeout_ms=20))
        errors = []
        bridge = await start_bridge(link, on_error=errors.append)
        reader, writer = await asyncio.open_connection(HOST, bridge.bound_port)
        await asyncio.sleep(0.02)
        driver.inject(b"\x09\x00\x00\x00ab")
        await asyncio.sleep(0.08)
        connected = bridge.connected
        writer.close()
        await bridge.close()
        await link.close()
        return connected, errors

    connected, errors = run(scenario())
    assert connected
    assert errors == []


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((HOST, 0))
        return sock.getsockname()[1]


async def connect(port, attempts=100):
    for _ in range(attempts):
        try:
            return await asyncio.open_connection(HOST, port)
        except OSError:
            await asyncio.sleep(0.01)
    raise AssertionError(f"nothing listening on {port}")


def test_serve_relistens_and_reopens_failed_link():
    driver = FakeDriver()
    port = free_port()
    settings = Settings(port="fake", listen=HOST, tcp_port=port, drain_ms=DRAIN_MS)

    async def scenario():
        task = asyncio.create_task(serve(settings, driver=driver))
        reader, writer = await connect(port)
        driver.fail_read("device unplugged")
        assert await asyncio.wait_for(reader.read(), 1) == b""
        writer.close()
        reader, writer = await connect(port)
        writer.write(b"hello")
        await writer.drain()
        await asyncio.sleep(DRAIN_MS * 4 / 1000)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        writer.close()

    run(scenario())
    assert driver.opened == 2
    assert driver.written == [b"hello"]
    assert driver.closed == 2


def test_serve_fails_when_serial_does_not_open():
    driver = FakeDriver(open_error=serial.SerialException("busy"))
    settings = Settings(port="fake", listen=HOST, tcp_port=0)
    with pytest.raises(ConnectionError):
        run(serve(settings, driver=driver))


def test_serve_reopens_link_that_fails_while_listening():
    driver = FakeDriver()
    port = free_port()
    settings = Settings(port="fake", listen=HOST, tcp_port=port, drain_ms=DRAIN_MS)

    async def scenario():
        task = asyncio.create_task(serve(settings, driver=driver))
        # Fail the link while the bridge is only listening.
        while driver.opened == 0:
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.05)
        driver.fail_read("device unplugged")
        await asyncio.sleep(0.05)
        reader, writer = await connect(port)
        writer.write(b"hello")
        await writer.drain()
        await asyncio.sleep(DRAIN_MS * 4 / 1000)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        writer.close()

    run(scenario())
    assert driver.opened == 2
    assert driver.written == [b"hello"]


class StalledReader:
    async def read(self, n):
        raise TimeoutError("stalled")


class ClosingWriter:
    def __init__(self):
        self.closed = False

    def get_extra_info(self, name, default=None):
        return ("10.0.0.2", 5555)

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def test_any_socket_error_takes_close_path(driver):
    async def scenario():
        link = await open_link(driver)
        disconnects = []
        bridge = await start_bridge(link, on_disconnect=lambda: disconnects.append(1))
        writer = ClosingWriter()
        await bridge._on_accept(StalledReader(), writer)
        state = bridge.state.current
        await link.close()
        return disconnects, state, writer.closed

    disconnects, state, closed = run(scenario())
    assert disconnects == [1]
    assert state is ConnectionState.CLOSED
    assert closed


def test_bridge_logs_under_module_name():
    assert bridge_module.logger.name == "serialbridge.bridge"
