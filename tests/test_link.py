import asyncio

import pytest

from fakes import ChannelFactory, FakeChannel, settle
from glove_errors import (
    AlreadyConnected,
    NotConnected,
    TransportDenied,
    TransportOpenFailed,
    TransportUnavailable,
    WriteFailed,
)
from glove_link import TransportSession
from glove_state import ConnectionStateMachine


class Harness:
    def __init__(self, **channel_options):
        self.state = ConnectionStateMachine()
        self.factory = ChannelFactory(**channel_options)
        self.lines = []
        self.ends = []
        self.link = TransportSession(self.state, {"serial": self.factory}, self._on_line, self._on_end)

    async def _on_line(self, line):
        self.lines.append(line)

    async def _on_end(self, error):
        self.ends.append(error)


def test_open_reads_framed_lines():
    async def _run():
        #
        # Arrange
        #
        h = Harness()
        meta = await h.link.open("serial", "/dev/ttyACM0")
        channel = h.factory.last

        #
        # Act
        #
        channel.feed(b"OK\r\n")
        channel.feed(b"TEMP=")
        channel.feed(b"42\n")
        await settle()

        #
        # Assert
        #
        assert meta == {"port": "/dev/ttyACM0", "baudRate": 9600}
        assert h.state.state.is_connected
        assert dict(h.state.state.metadata) == meta
        assert h.lines == ["OK", "TEMP=42"]
        await h.link.close()

    asyncio.run(_run())


def test_write_appends_newline():
    async def _run():
        h = Harness()
        await h.link.open("serial")

        await h.link.write("ping")

        assert h.factory.last.written == [b"ping\n"]
        await h.link.close()

    asyncio.run(_run())


def test_write_without_channel_fails():
    async def _run():
        h = Harness()

        with pytest.raises(NotConnected):
            await h.link.write("ping")

    asyncio.run(_run())


def test_write_fault_keeps_channel_open():
    async def _run():
        h = Harness(write_error=OSError("cable yanked"))
        await h.link.open("serial")

        with pytest.raises(WriteFailed):
            await h.link.write("ping")

        assert h.state.state.is_connected
        assert h.factory.last.close_calls == 0
        await h.link.close()

    asyncio.run(_run())


def test_concurrent_writes_do_not_interleave():
    async def _run():
        h = Harness(write_delay=0.01)
        await h.link.open("serial")

        await asyncio.gather(*(h.link.write(f"cmd{i}") for i in range(5)))

        assert sorted(h.factory.last.written) == [f"cmd{i}\n".encode() for i in range(5)]
        await h.link.close()

    asyncio.run(_run())


def test_second_open_is_rejected_and_first_channel_untouched():
    async def _run():
        h = Harness()
        await h.link.open("serial", "/dev/a")
        first = h.factory.last

        with pytest.raises(AlreadyConnected):
            await h.link.open("serial", "/dev/b")

        assert len(h.factory.created) == 1
        assert first.close_calls == 0
        assert h.link.is_open
        await h.link.write("still here")
        assert first.written == [b"still here\n"]
        await h.link.close()

    asyncio.run(_run())


def test_unknown_kind_is_unavailable():
    async def _run():
        h = Harness()

        with pytest.raises(TransportUnavailable):
            await h.link.open("carrier-pigeon")

        assert h.state.state.is_disconnected

    asyncio.run(_run())


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransportDenied("user said no"), TransportDenied),
        (TransportUnavailable("no port"), TransportUnavailable),
        (RuntimeError("weird"), TransportOpenFailed),
    ],
)
def test_open_failures_return_to_disconnected(error, expected):
    async def _run():
        h = Harness(start_error=error)

        with pytest.raises(expected):
            await h.link.open("serial")

        assert h.state.state.is_disconnected
        assert not h.link.is_open

    asyncio.run(_run())


def test_close_is_idempotent_and_reports_teardown_error():
    async def _run():
        h = Harness(close_error=OSError("already gone"))
        await h.link.open("serial")

        first = await h.link.close()
        second = await h.link.close()

        assert isinstance(first, OSError)
        assert second is None
        assert h.state.state.is_disconnected
        assert h.factory.last.close_calls == 1

    asyncio.run(_run())


def test_close_cancels_in_flight_read():
    async def _run():
        h = Harness()
        await h.link.open("serial")
        channel = h.factory.last
        await settle()
        assert channel.reads_pending == 1

        await asyncio.wait_for(h.link.close(), timeout=1.0)

        assert channel.reads_pending == 0
        assert h.ends == []

    asyncio.run(_run())


def test_partial_line_is_discarded_on_close():
    async def _run():
        h = Harness()
        await h.link.open("serial")
        channel = h.factory.last
        channel.feed(b"HALF")
        await settle()

        await h.link.close()
        await h.link.open("serial")
        h.factory.last.feed(b"\n")
        await settle()

        assert h.lines == []
        await h.link.close()

    asyncio.run(_run())


def test_end_of_stream_disconnects():
    async def _run():
        h = Harness()
        await h.link.open("serial")
        channel = h.factory.last

        channel.feed(b"BYE\nunterminated")
        channel.finish()
        await settle()

        assert h.lines == ["BYE"]
        assert h.ends == [None]
        assert h.state.state.is_disconnected
        assert channel.close_calls == 1

    asyncio.run(_run())


def test_read_fault_disconnects_and_reports():
    async def _run():
        h = Harness()
        await h.link.open("serial")
        fault = OSError("device reset")

        h.factory.last.fail(fault)
        await settle()

        assert h.ends == [fault]
        assert h.state.state.is_disconnected

    asyncio.run(_run())


def test_close_during_open_cancels_the_attempt():
    async def _run():
        h = Harness()
        gate = asyncio.Event()
        created = []

        class SlowChannel(FakeChannel):
            async def start(self):
                await gate.wait()

        def slow_factory(selector):
            channel = SlowChannel(selector)
            created.append(channel)
            return channel

        h.link.factories["serial"] = slow_factory
        opening = asyncio.create_task(h.link.open("serial"))
        await settle()
        assert h.state.state.is_connecting

        await h.link.close()
        gate.set()

        with pytest.raises(TransportOpenFailed):
            await opening
        assert h.state.state.is_disconnected
        assert created[0].close_calls >= 1

    asyncio.run(_run())


def test_stale_end_of_stream_leaves_reconnected_session_alone():
    async def _run():
        #
        # Arrange
        #
        gate = asyncio.Event()
        h = Harness(close_gate=gate)
        await h.link.open("serial", "/dev/a")
        first = h.factory.last
        first.finish()
        await settle()
        assert first.close_calls == 1

        #
        # Act
        #
        await asyncio.wait_for(h.link.close(), timeout=1.0)
        await h.link.open("serial", "/dev/b")
        second = h.factory.last
        second.feed(b"HA")
        await settle()
        gate.set()
        await settle()
        second.feed(b"LF\n")
        await settle()

        #
        # Assert
        #
        assert h.state.state.is_connected
        assert h.state.state.metadata["port"] == "/dev/b"
        assert h.link.is_open
        assert h.ends == []
        assert h.lines == ["HALF"]
        assert second.close_calls == 0
        await h.link.write("still here")
        assert second.written == [b"still here\n"]
        await h.link.close()

    asyncio.run(_run())


def test_teardown_reports_whether_it_disconnected():
    async def _run():
        h = Harness()
        await h.link.open("serial")

        first = await h.link.teardown()
        second = await h.link.teardown()

        assert first == (None, True)
        assert second == (None, False)

    asyncio.run(_run())
