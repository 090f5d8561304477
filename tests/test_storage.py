"""Tests for the saved proxy address stores."""

import json

from meshproxy.storage import PROXY_ADDRESS_KEY, JsonAddressStore, MemoryAddressStore

ADDRESS = "AA:BB:CC:DD:EE:FF"


def test_memory_store():
    store = MemoryAddressStore()
    assert store.get_proxy_address() is None
    store.save_proxy_address(ADDRESS)
    assert store.get_proxy_address() == ADDRESS
    assert store.save_count == 1


def test_json_store_missing_file(tmp_path):
    store = JsonAddressStore(tmp_path / "prefs.json")
    assert store.get_proxy_address() is None


def test_json_store_round_trip_creates_directories(tmp_path):
    path = tmp_path / "nested" / "dir" / "prefs.json"
    JsonAddressStore(path).save_proxy_address(ADDRESS)
    assert JsonAddressStore(path).get_proxy_address() == ADDRESS
    assert json.loads(path.read_text(encoding="utf-8")) == {PROXY_ADDRESS_KEY: ADDRESS}


def test_json_store_preserves_other_keys(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text(json.dumps({"theme": "dark", PROXY_ADDRESS_KEY: "old"}), encoding="utf-8")
    JsonAddressStore(path).save_proxy_address(ADDRESS)
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "theme": "dark",
        PROXY_ADDRESS_KEY: ADDRESS,
    }


def test_json_store_overwrites_previous_address(tmp_path):
    store = JsonAddressStore(tmp_path / "prefs.json")
    store.save_proxy_address("11:22:33:44:55:66")
    store.save_proxy_address(ADDRESS)
    assert store.get_proxy_address() == ADDRESS


def test_json_store_leaves_no_temp_files(tmp_path):
    JsonAddressStore(tmp_path / "prefs.json").save_proxy_address(ADDRESS)
    assert [p.name for p in tmp_path.iterdir()] == ["prefs.json"]


def test_json_store_ignores_corrupt_file(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonAddressStore(path)
    assert store.get_proxy_address() is None
    store.save_proxy_address(ADDRESS)
    assert store.get_proxy_address() == ADDRESS


def test_json_store_ignores_non_object(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text("[1, 2]", encoding="utf-8")
    assert JsonAddressStore(path).get_proxy_address() is None


def test_json_store_ignores_blank_or_non_string(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text(json.dumps({PROXY_ADDRESS_KEY: "  "}), encoding="utf-8")
    assert JsonAddressStore(path).get_proxy_address() is None
    path.write_text(json.dumps({PROXY_ADDRESS_KEY: 42}), encoding="utf-8")
    assert JsonAddressStore(path).get_proxy_address() is None


def test_json_store_expands_user(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    store = JsonAddressStore("~/prefs.json")
    assert store.path == tmp_path / "prefs.json"
