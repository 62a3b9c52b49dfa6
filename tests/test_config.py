"""
tests/test_config.py — Configuration Loader Tests
==================================================
"""

from __future__ import annotations

import pytest

from beacon.config import BeaconConfig, load_config


def _write(tmp_path, body: str):
    path = tmp_path / "config.yaml"
    path.write_text(body, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NODE_ID", raising=False)
        cfg = load_config(_write(tmp_path, "node_id: node-a\n"))

        assert cfg == BeaconConfig(node_id="node-a")
        assert cfg.heartbeat_interval_seconds == 30
        assert cfg.node_ttl_seconds == 60
        assert cfg.stale_voice_session_hours == 6

    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NODE_ID", raising=False)
        cfg = load_config(_write(tmp_path, (
            "node_id: node-b\n"
            "heartbeat_interval_seconds: 15\n"
            "voice_accrual_seconds: 30\n"
            "log_level: debug\n"
        )))
        assert cfg.node_id == "node-b"
        assert cfg.heartbeat_interval_seconds == 15
        assert cfg.voice_accrual_seconds == 30
        assert cfg.log_level == "DEBUG"

    def test_env_node_id_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NODE_ID", "node-env")
        assert load_config(_write(tmp_path, "node_id: node-a\n")).node_id == "node-env"

    def test_missing_node_id(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NODE_ID", raising=False)
        with pytest.raises(KeyError):
            load_config(_write(tmp_path, "bot_prefix: '?'\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file_uses_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NODE_ID", "node-c")
        assert load_config(_write(tmp_path, "")).node_id == "node-c"
