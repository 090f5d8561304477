"""Tests for the meshproxy command line."""

from types import SimpleNamespace

import pytest

import meshproxy.__main__ as cli
from meshproxy.interfaces.ble.exceptions import LinkFailureError


def test_requires_an_action():
    with pytest.raises(SystemExit):
        cli.main([])


def test_actions_are_exclusive():
    with pytest.raises(SystemExit):
        cli.main(["--ble-scan", "--saved"])


def test_decode_reading(capsys):
    assert cli.main(["--decode", "00 4F 32", "--src", "0x0005"]) == 0
    out = capsys.readouterr().out
    assert "0x004F" in out
    assert "25" in out
    assert "0x0005" in out


def test_decode_vendor_reading(capsys):
    assert cli.main(["--decode", "02:13:FF:80"]) == 0
    assert "-1" in capsys.readouterr().out


def test_decode_without_readings(capsys):
    assert cli.main(["--decode", "02 00 3E 80"]) == 1
    out = capsys.readouterr().out
    assert "0x0200" in out
    assert "No readings" in out


def test_decode_invalid_hex(capsys):
    assert cli.main(["--decode", "zz"]) == 2
    assert "Invalid hex" in capsys.readouterr().err


class FakeClient:
    def __enter__(self):
        return self

    def __exit__(self, *_args):
        return None


def test_scan_lists_proxies(monkeypatch, capsys):
    devices = [SimpleNamespace(address="AA:BB:CC:DD:EE:FF", name="proxy-1"), SimpleNamespace(address="11:22:33:44:55:66", name=None)]
    monkeypatch.setattr(cli, "BLEClient", FakeClient)
    monkeypatch.setattr(cli, "ProxyScanner", lambda _client: SimpleNamespace(discover=lambda: devices))
    assert cli.main(["--ble-scan"]) == 0
    out = capsys.readouterr().out
    assert "AA:BB:CC:DD:EE:FF" in out
    assert "proxy-1" in out
    assert "N/A" in out


def test_scan_finds_nothing(monkeypatch, capsys):
    monkeypatch.setattr(cli, "BLEClient", FakeClient)
    monkeypatch.setattr(cli, "ProxyScanner", lambda _client: SimpleNamespace(discover=lambda: []))
    assert cli.main(["--ble-scan"]) == 1
    assert "No proxy nodes found" in capsys.readouterr().out


class FakeInterface:
    def __init__(self, failure=None):
        self.failure = failure
        self.calls = []
        self.closed = False

    def connect(self, address):
        self.calls.append(("connect", address))

    def connect_to_saved_proxy(self):
        self.calls.append(("saved",))
        return True

    def auto_connect(self):
        self.calls.append(("auto",))
        return True

    def wait_for_connection(self, timeout):
        self.calls.append(("wait", timeout))
        if self.failure is not None:
            raise self.failure
        raise KeyboardInterrupt

    def get_mtu(self):
        return 23

    def close(self):
        self.closed = True


@pytest.fixture
def fake_iface(monkeypatch):
    holder = {}

    def create(**kwargs):
        holder["kwargs"] = kwargs
        return holder["iface"]

    monkeypatch.setattr(cli.MeshInterface, "create", staticmethod(create))
    monkeypatch.setattr(cli.pub, "subscribe", lambda *_args, **_kwargs: None)
    return holder


def test_connect_failure_exit_code(fake_iface, tmp_path, capsys):
    fake_iface["iface"] = FakeInterface(failure=LinkFailureError("No proxy node found"))
    prefs = tmp_path / "prefs.json"
    assert cli.main(["--ble", "AA:BB:CC:DD:EE:FF", "--timeout", "5", "--prefs", str(prefs)]) == 1
    iface = fake_iface["iface"]
    assert iface.calls == [("connect", "AA:BB:CC:DD:EE:FF"), ("wait", 5.0)]
    assert iface.closed
    assert "No proxy node found" in capsys.readouterr().err
    assert fake_iface["kwargs"]["store"].path == prefs
    assert fake_iface["kwargs"]["strict_notification_ack"] is False


@pytest.mark.parametrize("flag, call", [("--saved", ("saved",)), ("--auto", ("auto",))])
def test_connect_modes(fake_iface, tmp_path, flag, call):
    fake_iface["iface"] = FakeInterface()
    assert cli.main([flag, "--prefs", str(tmp_path / "p.json"), "--strict-ack"]) == 0
    assert fake_iface["iface"].calls[0] == call
    assert fake_iface["iface"].closed
    assert fake_iface["kwargs"]["strict_notification_ack"] is True
