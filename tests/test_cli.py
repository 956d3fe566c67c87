import subprocess
import sys
import time
from unittest.mock import MagicMock

import pytest

from ssdp_discovery import list_cli
from ssdp_discovery.cache import CacheEntry
from ssdp_discovery.errors import TransportIOError
from ssdp_discovery.list_cli import format_entry, handle_user_arguments, main
from test_manager import FakeTransport, notify
from test_message import make_message


@pytest.fixture
def fake_transport(monkeypatch):
    transport = FakeTransport()
    factory = MagicMock(return_value=transport)
    monkeypatch.setattr(list_cli, "Transport", factory)
    transport.factory = factory
    return transport


def test_help():
    result = subprocess.run(
        [sys.executable, "-m", "ssdp_discovery.list_cli", "--help"],
        capture_output=True,
        text=True,
        timeout=30,
    )
    assert result.returncode == 0
    assert "--search-time" in result.stdout


def test_default_arguments():
    arguments = handle_user_arguments([])
    assert arguments.target == "ssdp:all"
    assert arguments.attempts == 3
    assert arguments.search_time == 5.0
    assert arguments.interfaces is None
    assert arguments.port == 1900
    assert arguments.fetch_workers == 8
    assert not arguments.verbose


def test_arguments():
    arguments = handle_user_arguments(
        ["-t", "upnp:rootdevice", "-a", "1", "-s", "0.5", "-i", "eth0", "-i", "wlan0", "-v"]
    )
    assert arguments.target == "upnp:rootdevice"
    assert arguments.attempts == 1
    assert arguments.search_time == 0.5
    assert arguments.interfaces == ["eth0", "wlan0"]
    assert arguments.verbose


def test_format_entry():
    text = format_entry(CacheEntry(make_message(), "<root/>"))
    assert text.startswith("uuid:abc\n")
    assert "http://10.0.0.5:80/desc.xml" in text
    assert "unknown server" in text
    assert "7 characters" in text


def test_main_lists_services(fake_transport, capsys):
    fake_transport.announce(notify("uuid:listed"))
    assert main(["-s", "0.5", "-a", "1", "-i", "eth0"]) == 0
    out = capsys.readouterr().out
    assert "uuid:listed" in out
    assert "Found 1 service(s)." in out
    assert fake_transport.searches == ["ssdp:all"]
    fake_transport.factory.assert_called_once_with(port=1900, interfaces=["eth0"])
    assert not fake_transport.is_open


def test_main_without_services(fake_transport, capsys):
    start = time.monotonic()
    assert main(["-s", "0.2"]) == 0
    assert time.monotonic() - start < 5
    assert "Found 0 service(s)." in capsys.readouterr().out


def test_main_open_failure(fake_transport, capsys):
    fake_transport.open = MagicMock(side_effect=TransportIOError("Address in use"))
    assert main(["-s", "0.2"]) == 1
    assert "Found" not in capsys.readouterr().out
