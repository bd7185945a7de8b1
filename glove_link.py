import asyncio
import logging
logger = logging.getLogger(__name__)

from glove_errors import GloveError, NotConnected, TransportOpenFailed, TransportUnavailable, WriteFailed
from glove_framing import LineFramer


class TransportSession:
    """
    Owns at most one open channel and the read loop feeding it through a
    LineFramer.

    `factories` maps a transport kind ("serial", "radio") to a callable
    taking the selector and returning an unopened channel. Connection state
    transitions are driven on the shared ConnectionStateMachine.
    """

    def __init__(self, state, factories, on_line, on_end=None):
        self.state = state
        self.factories = dict(factories)
        self._on_line = on_line
        self._on_end = on_end
        self._channel = None
        self._framer = LineFramer()
        self._reader_task = None
        self._write_lock = asyncio.Lock()
        self._closing = False
        self._generation = 0

    @property
    def is_open(self):
        return self._channel is not None and self.state.state.is_connected

    async def open(self, kind, selector=None):
        factory = self.factories.get(kind)
        self.state.begin(kind)
        self._closing = False
        self._framer = LineFramer()
        # close() bumps the generation; a stale open must not touch the session
        self._generation += 1
        generation = self._generation
        channel = None
        try:
            if factory is None:
                raise TransportUnavailable(f"no {kind} transport on this host")
            channel = factory(selector)
            self._channel = channel
            try:
                await channel.start()
            except GloveError:
                raise
            except Exception as e:
                raise TransportOpenFailed(f"{kind} open failed: {e}") from e
            if generation != self._generation:
                await self._close_channel(channel)
                raise TransportOpenFailed(f"{kind} connection cancelled")
            metadata = channel.info()
        except BaseException:
            if generation == self._generation:
                if channel is not None and self._channel is channel:
                    self._channel = None
                if self.state.state.is_connecting:
                    self.state.failed()
            raise
        self.state.opened(metadata)
        self._reader_task = asyncio.create_task(self._reader_loop(channel), name=f"{kind}-reader")
        logger.debug("TransportSession.open: %s channel up (%s)", kind, metadata)
        return metadata

    async def _reader_loop(self, channel):
        error = None
        try:
            while True:
                data = await channel.read()
                if not data:
                    break
                for line in self._framer.feed(data):
                    if self._closing:
                        return
                    await self._on_line(line)
        except asyncio.CancelledError:
            return
        except Exception as e:
            error = e
            logger.error("read loop error: %s", e)
        if self._closing:
            return
        if error is None:
            logger.debug("read loop: end of stream")
        _close_error, transitioned = await self.teardown()
        if not transitioned:
            # an explicit close (and maybe a new open) got there first
            return
        if self._on_end is not None:
            await self._on_end(error)

    async def write(self, text):
        if self._channel is None or not self.state.state.is_connected:
            raise NotConnected("no device connected")
        data = (text + "\n").encode("utf-8")
        async with self._write_lock:
            channel = self._channel
            if channel is None:
                raise NotConnected("no device connected")
            try:
                await channel.write(data)
            except Exception as e:
                logger.error("write error: %s", e)
                raise WriteFailed(str(e)) from e

    async def close(self):
        """
        Tear the session down and return the teardown error, if any. Leaves the
        state machine Disconnected unless a newer open() has taken over; safe to
        call repeatedly.
        """
        error, _transitioned = await self.teardown()
        return error

    async def teardown(self):
        """
        Like close(), but returns (error, transitioned). `transitioned` is
        True only when this call moved the state machine to Disconnected.
        A teardown overtaken by a newer open/close leaves the session alone.
        """
        self._closing = True
        self._generation += 1
        generation = self._generation
        error = None
        task = self._reader_task
        self._reader_task = None
        channel = self._channel
        self._channel = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("reader task ended with %r", e)
        if channel is not None:
            error = await self._close_channel(channel)
        if generation != self._generation:
            logger.debug("TransportSession.teardown: superseded, leaving current session alone")
            return error, False
        self._framer.reset()
        if self.state.state.is_connecting:
            self.state.failed()
            return error, True
        return error, self.state.closed()

    async def _close_channel(self, channel):
        try:
            await channel.close()
        except Exception as e:
            logger.warning("error while closing %s channel: %s", getattr(channel, "kind", "?"), e)
            return e
        return None
