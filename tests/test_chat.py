import asyncio
import datetime as dt
import sys

import pytest

import chat
from glove_errors import TransportUnavailable
from glove_journal import IN, OUT, LogEntry
from transport_ble import BLETransport
from transport_serial import SerialTransport


def test_parse_command():
    assert chat.parse_command("/history 2024-05-01") == ("history", "2024-05-01")
    assert chat.parse_command("/Summary") == ("summary", "")
    assert chat.parse_command("FLEX?") == (None, "FLEX?")


def test_format_entry_arrows():
    ts = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)

    assert chat.format_entry(LogEntry.create("OK", IN, ts)).endswith("] <-- OK")
    assert chat.format_entry(LogEntry.create("ping", OUT, ts), "pong").endswith("] --> pong")


def test_defaults():
    args = chat.build_parser().parse_args([])

    assert args.transport == "serial"
    assert args.serial_baudrate == 9600
    assert args.ble_name == "Neuro Glove"
    assert args.lang == "en"


def test_build_session_wires_transports(tmp_path):
    args = chat.build_parser().parse_args(
        ["--data-dir", str(tmp_path), "--serial-port", "/dev/ttyUSB3", "--ble-address", "77:88:99:AA:BB:CC"]
    )

    session = chat.build_session(args)

    serial_channel = session.link.factories["serial"](None)
    radio_channel = session.link.factories["radio"](None)
    assert isinstance(serial_channel, SerialTransport)
    assert serial_channel.port == "/dev/ttyUSB3"
    assert isinstance(radio_channel, BLETransport)
    assert radio_channel.selector == "77:88:99:AA:BB:CC"
    assert session.translator is None
    assert session.journal.store.data_dir == str(tmp_path)


def test_build_session_with_ai_reads_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.delenv("API_KEY", raising=False)
    monkeypatch.setenv("NEUROGLOVE_AI_KEY", "secret")
    args = chat.build_parser().parse_args(
        ["--data-dir", str(tmp_path), "--ai-endpoint", "localhost:1234", "--ai-model", "qwen"]
    )

    session = chat.build_session(args)

    assert session.translator.client.api_key == "secret"
    assert session.translator.client.model == "qwen"
    assert session.summarizer.client.endpoint == "http://localhost:1234/v1/chat/completions"


def test_missing_radio_stack_is_reported_as_unavailable(tmp_path, monkeypatch):
    async def _run():
        #
        # Arrange
        #
        monkeypatch.setitem(sys.modules, "transport_ble", None)
        args = chat.build_parser().parse_args(["--data-dir", str(tmp_path)])
        session = chat.build_session(args)
        events = []
        session.subscribe(events.append)

        #
        # Act
        #
        with pytest.raises(TransportUnavailable):
            await session.connect("radio")

        #
        # Assert
        #
        assert session.state.is_disconnected
        faults = [e for e in events if getattr(e, "context", None) == "connect"]
        assert len(faults) == 1
        assert isinstance(faults[0].error, TransportUnavailable)
        assert isinstance(session.link.factories["serial"](None), SerialTransport)

    asyncio.run(_run())
