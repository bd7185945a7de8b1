import asyncio
from dataclasses import dataclass
from typing import Any, Optional
import logging
logger = logging.getLogger(__name__)

from glove_errors import GloveError, NotConnected, PersistenceFailed, SummarizationFailed, TranslationFailed
from glove_journal import IN, OUT, LogEntry
from glove_link import TransportSession
from glove_state import RADIO, SERIAL, ConnectionState, ConnectionStateMachine

TODAY = "today"

_KIND_LABELS = {SERIAL: "Serial", RADIO: "Radio"}
_OPENED = {SERIAL: "Serial port opened", RADIO: "Radio link opened"}


@dataclass(frozen=True)
class MessageReceived:
    entry: LogEntry


@dataclass(frozen=True)
class MessageSent:
    entry: LogEntry


@dataclass(frozen=True)
class StateChanged:
    state: ConnectionState
    metadata_only: bool = False


@dataclass(frozen=True)
class Fault:
    error: Exception
    context: str = ""
    entry: Optional[Any] = None


class GloveSession:
    """
    The one entry point presentation layers use to talk to the glove.

    Every decoded inbound line and every successful send becomes exactly one
    LogEntry, journaled before listeners hear about it. Connection problems
    are raised to the caller and also journaled as inbound diagnostics so the
    visible log shows them.
    """

    def __init__(self, journal, factories, translator=None, summarizer=None):
        self.journal = journal
        self.translator = translator
        self.summarizer = summarizer
        self._listeners = []
        self._state = ConnectionStateMachine()
        self._state.add_listener(self._on_state)
        self.link = TransportSession(self._state, factories, self._on_line, self._on_link_end)
        self._disconnect_lock = asyncio.Lock()

    @property
    def state(self):
        return self._state.state

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    async def connect(self, kind, selector=None):
        label = _KIND_LABELS.get(kind, str(kind))
        try:
            metadata = await self.link.open(kind, selector)
        except GloveError as e:
            self._diagnostic(f"{label} connection error: {e}", e, "connect")
            raise
        self._diagnostic(_OPENED.get(kind, f"{label} link opened"))
        return metadata

    async def send(self, text):
        if text is None or not text.strip():
            return None
        if "\n" in text or "\r" in text:
            raise ValueError("a message must be a single line")
        try:
            await self.link.write(text)
        except NotConnected as e:
            self._diagnostic("No device connected", e, "send")
            raise
        except GloveError as e:
            self._diagnostic(f"Write error: {e}", e, "send")
            raise
        entry = LogEntry.create(text, OUT)
        self._record(entry, MessageSent(entry))
        return entry

    async def disconnect(self):
        async with self._disconnect_lock:
            if self.state.is_disconnected:
                return
            error, transitioned = await self.link.teardown()
            if transitioned:
                self._diagnostic("Disconnected")
            if error is not None:
                self._emit(Fault(error, "disconnect"))

    def update_metadata(self, **changes):
        self._state.update_metadata(**changes)

    def current_log(self, view=TODAY):
        if view == TODAY or view is None:
            return self.journal.load_for_today()
        return self.journal.load_for_date(view)

    async def translated_log(self, view, lang):
        out = []
        for entry in self.current_log(view):
            out.append((entry, await self.translate(entry.text, lang)))
        return out

    async def translate(self, text, lang):
        if self.translator is None:
            return text
        try:
            return await self.translator.translate(text, lang)
        except TranslationFailed as e:
            self._emit(Fault(e, "translate"))
            return f"[translation failed: {e.reason}]"

    async def summarize(self, view=TODAY):
        if self.summarizer is None:
            return "Error during analysis: no AI backend configured"
        try:
            return await self.summarizer.summarize(self.current_log(view))
        except SummarizationFailed as e:
            self._emit(Fault(e, "summarize"))
            return f"Error during analysis: {e}"

    async def close(self):
        await self.disconnect()
        self._listeners.clear()

    async def _on_line(self, line):
        entry = LogEntry.create(line, IN)
        self._record(entry, MessageReceived(entry))

    async def _on_link_end(self, error):
        if error is None:
            self._diagnostic("Device closed the connection")
        else:
            self._diagnostic(f"Connection lost: {error}", error, "read")

    def _on_state(self, state, metadata_only):
        self._emit(StateChanged(state, metadata_only))

    def _diagnostic(self, text, error=None, context=""):
        entry = LogEntry.create(text, IN)
        self._record(entry, MessageReceived(entry))
        if error is not None:
            self._emit(Fault(error, context, entry))

    def _record(self, entry, event):
        try:
            self.journal.append(entry)
        except PersistenceFailed as e:
            logger.warning("journal persistence failed: %s", e)
            self._emit(Fault(e, "journal", entry))
        self._emit(event)

    def _emit(self, event):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("session listener failed on %s", type(event).__name__)
