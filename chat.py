import argparse
import logging
logger = logging.getLogger(__name__)
import asyncio
import curses
import datetime as dt
import importlib
import os
import sys
import signal

from glove_ai import ChatCompletionsClient, Summarizer, Translator
from glove_errors import GloveError, TransportUnavailable
from glove_journal import IN, FileStore, LogJournal
from glove_session import TODAY, Fault, GloveSession, MessageReceived, MessageSent, StateChanged
from glove_state import RADIO, SERIAL

DEFAULT_BAUDRATE = 9600
API_KEY_ENV = ("NEUROGLOVE_AI_KEY", "API_KEY")

HELP = "/connect /disconnect /history YYYY-MM-DD /today /dates /lang CODE /summary /quit"


def format_entry(entry, text=None):
    ts = entry.timestamp.astimezone().strftime("%H:%M:%S")
    arrow = "<--" if entry.direction == IN else "-->"
    return f"[{ts}] {arrow} {entry.text if text is None else text}"


def parse_command(line):
    """Splits '/cmd arg' into ('cmd', 'arg'); plain text gives (None, line)."""
    if not line.startswith("/"):
        return None, line
    name, _, arg = line[1:].partition(" ")
    return name.lower(), arg.strip()


class ChatUI:
    def __init__(self, stdscr):
        self.stdscr = stdscr
        # Rendered log lines for the current view
        self.messages = []
        self.input_buf = []
        self.status = ""
        self.scroll_offset = 0
        self.view = TODAY
        self._last_view_height = None
        self._last_wrapped_count = 0
        self._last_size = None

    def setup(self):
        curses.curs_set(1)
        curses.noecho()
        curses.cbreak()
        self.stdscr.keypad(True)
        self.stdscr.nodelay(True)
        try:
            curses.set_escdelay(25)
        except curses.error:
            pass

    def teardown(self):
        try:
            curses.nocbreak()
            self.stdscr.keypad(False)
            curses.echo()
            curses.curs_set(1)
        except curses.error:
            pass

    def add_message(self, line):
        self.messages.append(line)

    def set_status(self, text):
        self.status = text

    def get_input_text(self):
        return "".join(self.input_buf)

    def clear_input(self):
        self.input_buf.clear()

    def handle_key(self, ch):
        if ch in (curses.KEY_ENTER, 10, 13):
            text = self.get_input_text().strip()
            self.clear_input()
            return text
        if ch == curses.KEY_UP:
            self.scroll_offset += 1
        elif ch == curses.KEY_DOWN:
            self.scroll_offset = max(0, self.scroll_offset - 1)
        elif ch in (curses.KEY_BACKSPACE, 127, 8):
            if self.input_buf:
                self.input_buf.pop()
        elif ch == curses.KEY_PPAGE:
            step = max(1, (self._last_view_height or self._page_size()) - 1)
            self.scroll_offset += step
        elif ch == curses.KEY_NPAGE:
            step = max(1, (self._last_view_height or self._page_size()) - 1)
            self.scroll_offset = max(0, self.scroll_offset - step)
        elif ch == curses.KEY_HOME:
            # draw() clamps
            self.scroll_offset = 1_000_000_000
        elif ch == curses.KEY_END:
            self.scroll_offset = 0
        elif 32 <= ch < 127:
            self.input_buf.append(chr(ch))
        return None

    def _page_size(self):
        h, _ = self.stdscr.getmaxyx()
        return max(1, h - 3)

    def draw(self):
        self.stdscr.erase()
        h, w = self.stdscr.getmaxyx()
        size = (h, w)

        # Layout: log area (h-2), status (1), input (1)
        msg_h = max(1, h - 2)
        status_y = h - 2
        input_y = h - 1
        line_w = max(1, w - 1)

        wrapped = []
        for line in self.messages:
            if len(line) <= line_w:
                wrapped.append(line)
                continue
            for start in range(0, len(line), line_w):
                wrapped.append(line[start : start + line_w])
        total = len(wrapped)

        # While scrolled back, keep the viewport fixed as new lines arrive
        resized = size != (self._last_size or size)
        if self.scroll_offset > 0 and not resized and total > self._last_wrapped_count:
            self.scroll_offset += total - self._last_wrapped_count

        offset = min(self.scroll_offset, total)
        end_idx = max(0, total - offset)
        start_idx = max(0, end_idx - msg_h)
        view = wrapped[start_idx:end_idx]
        self._last_view_height = msg_h

        # Bottom-align within the log area
        top = msg_h - len(view) if len(view) < msg_h else 0
        for i, line in enumerate(view):
            try:
                self.stdscr.addnstr(top + i, 0, line, line_w)
            except curses.error:
                pass

        try:
            self.stdscr.addnstr(status_y, 0, (self.status or "").ljust(w), line_w, curses.A_REVERSE)
        except curses.error:
            pass

        label = "today" if self.view == TODAY else f"history {self.view}"
        prompt = f"[{label}] > "
        input_text = self.get_input_text()
        try:
            self.stdscr.addnstr(input_y, 0, (prompt + input_text).ljust(w), line_w)
            self.stdscr.move(input_y, min(w - 1, len(prompt) + len(input_text)))
        except curses.error:
            pass

        self.stdscr.refresh()
        self.scroll_offset = min(max(0, offset), total)
        self._last_wrapped_count = total
        self._last_size = size


def load_transport(module_name, class_name):
    """
    Import a transport class on first use, so a host without the serial or
    BLE libraries can still run the other transport.
    """
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise TransportUnavailable(f"{module_name} cannot be loaded: {e}") from e
    return getattr(module, class_name)


def build_session(args):
    data_dir = args.data_dir or os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")
    journal = LogJournal(FileStore(data_dir))

    def serial_channel(selector):
        cls = load_transport("transport_serial", "SerialTransport")
        return cls(selector or args.serial_port, baudrate=args.serial_baudrate)

    def radio_channel(selector):
        cls = load_transport("transport_ble", "BLETransport")
        return cls(selector or args.ble_address or args.ble_name, adapter=args.ble_adapter)

    factories = {SERIAL: serial_channel, RADIO: radio_channel}
    translator = summarizer = None
    if args.ai_endpoint:
        api_key = next((os.environ[k] for k in API_KEY_ENV if os.environ.get(k)), None)
        summarizer = Summarizer(ChatCompletionsClient(args.ai_endpoint, args.ai_model, api_key))
        translator = Translator(ChatCompletionsClient(args.ai_endpoint, args.ai_translate_model or args.ai_model, api_key))
    return GloveSession(journal, factories, translator=translator, summarizer=summarizer)


async def main_async(args):
    session = build_session(args)

    stdscr = curses.initscr()
    ui = ChatUI(stdscr)
    ui.setup()

    lang = args.lang
    loop = asyncio.get_running_loop()
    key_queue = asyncio.Queue()
    event_queue = asyncio.Queue()
    needs_redraw = asyncio.Event()
    quit_event = asyncio.Event()

    def update_status(note=None):
        parts = [session.state.describe()]
        if lang and lang != "en":
            parts.append(f"lang={lang}")
        if note:
            parts.append(note)
        parts.append(HELP)
        ui.set_status("  |  ".join(parts))
        needs_redraw.set()

    async def render(entry):
        text = await session.translate(entry.text, lang) if lang and lang != "en" else None
        return format_entry(entry, text)

    async def reload_view():
        ui.messages = []
        ui.scroll_offset = 0
        entries = session.current_log(ui.view)
        for entry in entries:
            ui.add_message(await render(entry))
        if not entries and ui.view != TODAY:
            ui.add_message("No logs found for this date.")
        needs_redraw.set()

    def on_event(event):
        # Called synchronously by the session; rendering may await translation
        event_queue.put_nowait(event)

    unsubscribe = session.subscribe(on_event)

    async def event_worker():
        try:
            while True:
                event = await event_queue.get()
                if isinstance(event, (MessageReceived, MessageSent)):
                    if ui.view == TODAY:
                        ui.add_message(await render(event.entry))
                        needs_redraw.set()
                elif isinstance(event, StateChanged):
                    update_status()
                elif isinstance(event, Fault):
                    logger.warning("chat: %s fault: %s", event.context, event.error)
        except asyncio.CancelledError:
            return

    async def connect():
        kind = args.transport
        try:
            await session.connect(kind)
        except GloveError as e:
            logger.warning("chat: connect failed: %r", e)
            update_status(f"connect failed: {e}")

    async def run_command(name, arg):
        nonlocal lang
        if name == "connect":
            await connect()
        elif name == "disconnect":
            await session.disconnect()
        elif name == "history":
            try:
                ui.view = dt.date.fromisoformat(arg).isoformat()
            except ValueError:
                update_status(f"bad date {arg!r}, expected YYYY-MM-DD")
                return
            await reload_view()
        elif name == "today":
            ui.view = TODAY
            await reload_view()
        elif name == "dates":
            days = session.journal.available_dates()
            ui.add_message("Logged days: " + (", ".join(d.isoformat() for d in days) or "none"))
        elif name == "lang":
            lang = arg or "en"
            update_status()
            await reload_view()
        elif name == "summary":
            update_status("analyzing ...")
            summary = await session.summarize(ui.view)
            for line in summary.splitlines() or [""]:
                ui.add_message(f"  {line}")
            update_status()
        elif name in ("quit", "exit"):
            quit_event.set()
        else:
            update_status(f"unknown command /{name}")
        needs_redraw.set()

    def on_stdin_ready():
        while True:
            try:
                ch = ui.stdscr.getch()
            except curses.error:
                ch = -1
            if ch == -1:
                break
            key_queue.put_nowait(ch)
        needs_redraw.set()

    async def input_worker():
        try:
            while True:
                ch = await key_queue.get()
                line = ui.handle_key(ch)
                if line:
                    name, arg = parse_command(line)
                    if name is not None:
                        await run_command(name, arg)
                    else:
                        try:
                            await session.send(line)
                        except (GloveError, ValueError) as e:
                            update_status(f"send error: {e}")
                needs_redraw.set()
        except asyncio.CancelledError:
            return

    async def draw_worker():
        try:
            while True:
                await needs_redraw.wait()
                needs_redraw.clear()
                try:
                    ts = os.get_terminal_size(sys.stdin.fileno())
                    if hasattr(curses, "resizeterm"):
                        curses.resizeterm(ts.lines, ts.columns)
                except (OSError, curses.error):
                    pass
                ui.draw()
        except asyncio.CancelledError:
            return

    loop.add_reader(sys.stdin.fileno(), on_stdin_ready)
    try:
        loop.add_signal_handler(signal.SIGWINCH, needs_redraw.set)
    except (NotImplementedError, AttributeError, RuntimeError):
        pass

    workers = []
    try:
        await reload_view()
        update_status()
        workers = [
            asyncio.create_task(event_worker()),
            asyncio.create_task(input_worker()),
            asyncio.create_task(draw_worker()),
        ]
        await connect()
        await quit_event.wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        loop.remove_reader(sys.stdin.fileno())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        unsubscribe()
        try:
            await session.close()
        finally:
            ui.teardown()
            curses.endwin()


def build_parser():
    p = argparse.ArgumentParser(description="Terminal console for the Neuro Glove (serial/BLE)")
    p.add_argument("--data-dir", help="Directory holding the daily log journal", default=None)
    p.add_argument("--debug-log", help="Enable debug logging to this file", default=None)
    p.add_argument("--transport", choices=[SERIAL, RADIO], default=SERIAL)

    # Serial options
    p.add_argument("--serial-port", help="Serial port, e.g. /dev/ttyACM0", default="/dev/ttyACM0")
    p.add_argument("--serial-baudrate", type=int, default=DEFAULT_BAUDRATE)

    # Radio options
    p.add_argument("--ble-address", help="BLE MAC address (skips scanning)", default=None)
    p.add_argument("--ble-name", help="BLE device name to scan for", default="Neuro Glove")
    p.add_argument("--ble-adapter", help="BLE adapter name (e.g. hci0)", default=None)

    # AI options; the key comes from NEUROGLOVE_AI_KEY / API_KEY
    p.add_argument("--lang", help="Display language code for translated log lines", default="en")
    p.add_argument("--ai-endpoint", help="OpenAI-compatible endpoint, e.g. localhost:1234", default=None)
    p.add_argument("--ai-model", help="Model used for log analysis", default=None)
    p.add_argument("--ai-translate-model", help="Model used for translation (defaults to --ai-model)", default=None)
    return p


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)

    if args.ai_endpoint and not args.ai_model:
        p.error("--ai-model is required when --ai-endpoint is set")

    # Only log when --debug-log is given; curses owns the terminal otherwise.
    if args.debug_log:
        logging.basicConfig(
            filename=args.debug_log,
            filemode="a",
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("chat: debug logging enabled")
    else:
        logging.disable(logging.CRITICAL)

    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
