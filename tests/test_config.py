# tests/test_config.py
from __future__ import annotations

import pytest

from lib import config as config_mod
from lib.config import cfg, reload_config
from lib.watchdog import sd_notify


def test_cfg_sections_and_defaults(write_config):
    write_config({"port": 40000, "transport": {"mode": "both"}, "sensors": [{"name": "a"}]})
    assert cfg("port") == 40000
    assert cfg("transport", "mode") == "both"
    assert cfg("transport", "mqtt_port", default=1883) == 1883
    assert cfg("missing", default="x") == "x"
    assert cfg("port", "nested", default=7) == 7
    assert cfg("sensors") == [{"name": "a"}]


def test_missing_file_gives_empty_config(tmp_path, monkeypatch):
    monkeypatch.setenv("PLEX_SENSORS_CONFIG", str(tmp_path / "nope.json"))
    assert reload_config() == {}


def test_invalid_json_is_skipped(isolated_config, caplog):
    isolated_config.write_text("{not json")
    assert reload_config() == {}
    assert any("Invalid JSON" in r.getMessage() for r in caplog.records)


def test_non_object_config_is_rejected(isolated_config):
    isolated_config.write_text("[1, 2, 3]")
    assert reload_config() == {}


def test_config_is_cached(write_config, isolated_config):
    write_config({"port": 1})
    isolated_config.write_text('{"port": 2}')
    assert cfg("port") == 1
    reload_config()
    assert cfg("port") == 2


@pytest.mark.parametrize("data, message", [
    ({}, "no 'sensors'"),
    ({"sensors": [{"users": []}]}, "has no 'name'"),
    ({"sensors": [{"name": "a"}], "transport": {"mode": "carrier-pigeon"}}, "unknown transport.mode"),
])
def test_validation_warnings(write_config, caplog, data, message):
    write_config(data)
    assert any(message in r.getMessage() for r in caplog.records)


def test_repo_default_config_is_valid(monkeypatch):
    monkeypatch.delenv("PLEX_SENSORS_CONFIG")
    monkeypatch.setattr(config_mod, "_SEARCH_PATHS", config_mod._SEARCH_PATHS[-1:])
    loaded = reload_config()
    assert loaded["port"] == 32512
    assert [s["name"] for s in loaded["sensors"]] == ["Plex Playing", "Living Room Movie"]


def test_sd_notify_without_socket(monkeypatch):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert sd_notify("READY=1") is False
