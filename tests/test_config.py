from __future__ import annotations

import json

from app import config


def _clear_env(monkeypatch, stub_file: bool = True):
    for name in ("ICE_CONFIG_PATH", "STUN_URLS", "TURN_URLS", "TURN_USERNAME", "TURN_CREDENTIAL",
                 "CONNECT_TIMEOUT", "SIGNAL_POLL_INTERVAL", "SIGNAL_SWEEP_INTERVAL", "SIGNALING_URL",
                 "CAPTURE_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    if stub_file:
        monkeypatch.setattr(config, "_load_file_ice_config", lambda: {})


def test_default_ice_config_uses_public_stun(monkeypatch) -> None:
    _clear_env(monkeypatch)
    servers = config.get_initial_ice_config()["ice_servers"]
    assert servers == [{"urls": config.DEFAULT_STUN_URLS, "username": None, "credential": None}]


def test_env_overrides_stun_and_appends_turn(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("STUN_URLS", "stun:stun.example.org:3478, ")
    monkeypatch.setenv("TURN_URLS", "turn:turn.example.org:3478?transport=udp")
    monkeypatch.setenv("TURN_USERNAME", "alice")
    monkeypatch.setenv("TURN_CREDENTIAL", "s3cret")

    servers = config.get_initial_ice_config()["ice_servers"]
    assert servers == [
        {"urls": ["stun:stun.example.org:3478"], "username": None, "credential": None},
        {"urls": ["turn:turn.example.org:3478?transport=udp"], "username": "alice", "credential": "s3cret"},
    ]


def test_ice_config_file_is_loaded(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch, stub_file=False)
    path = tmp_path / "ice.json"
    path.write_text(json.dumps({"ice_servers": [{"urls": "turn:file.example.org:3478", "username": "u",
                                                  "credential": "p"}]}))
    monkeypatch.setenv("ICE_CONFIG_PATH", str(path))

    servers = config.get_initial_ice_config()["ice_servers"]
    assert servers[0] == {"urls": ["turn:file.example.org:3478"], "username": "u", "credential": "p"}


def test_normalize_drops_malformed_entries() -> None:
    assert config.normalize_ice_servers("nope") == []
    assert config.normalize_ice_servers([{"urls": []}, {"urls": 5}, "x", {"urls": ["stun:a"], "username": ""}]) == [
        {"urls": ["stun:a"], "username": None, "credential": None},
    ]


def test_session_config_reads_env(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("CONNECT_TIMEOUT", "12.5")
    monkeypatch.setenv("SIGNAL_POLL_INTERVAL", "0.25")
    session_config = config.get_session_config()
    assert session_config["connect_timeout"] == 12.5
    assert session_config["poll_interval"] == 0.25
    assert session_config["history_cap"] == 50
    assert session_config["session_id_digits"] == 6
    assert session_config["sweep_interval"] == 60


def test_signaling_url_strips_trailing_slash(monkeypatch) -> None:
    _clear_env(monkeypatch)
    assert config.get_signaling_url() == "http://localhost:8104"
    monkeypatch.setenv("SIGNALING_URL", "http://signal.example.org/")
    assert config.get_signaling_url() == "http://signal.example.org"
