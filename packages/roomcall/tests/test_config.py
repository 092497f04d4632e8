"""Tests for roomcall.config: known-keys runtime config."""

import pytest

from roomcall.config import CallConfig


class TestCallConfig:
    def test_defaults(self):
        config = CallConfig()
        assert config["socket_path"] == "/socket"
        assert config["ice_restart_attempts"] == 1
        assert config["reconnect_max_attempts"] == 5

    def test_unknown_key(self):
        config = CallConfig()
        with pytest.raises(KeyError):
            config["nope"]
        with pytest.raises(KeyError):
            config["nope"] = 1
        assert config.get("nope", "fallback") == "fallback"

    def test_update_returns_snapshot(self):
        config = CallConfig()
        snap = config.update({"join_timeout": 1.5})
        assert snap["join_timeout"] == 1.5
        assert config["join_timeout"] == 1.5

    def test_update_with_unknown_key_applies_nothing(self):
        config = CallConfig()
        with pytest.raises(KeyError):
            config.update({"join_timeout": 9.0, "nope": 1})
        assert config["join_timeout"] == 5.0

    def test_snapshot_is_a_copy(self):
        config = CallConfig()
        snap = config.snapshot()
        snap["socket_path"] = "/changed"
        assert config["socket_path"] == "/socket"


class TestFromEnv:
    def test_coerces_to_default_type(self):
        config = CallConfig.from_env({
            "ROOMCALL_RECONNECT_MAX_ATTEMPTS": "3",
            "ROOMCALL_CONNECT_TIMEOUT": "1.5",
            "ROOMCALL_TRICKLE_LOCAL_CANDIDATES": "false",
            "ROOMCALL_SOCKET_PATH": "/ws",
        })
        assert config["reconnect_max_attempts"] == 3
        assert config["connect_timeout"] == 1.5
        assert config["trickle_local_candidates"] is False
        assert config["socket_path"] == "/ws"

    def test_invalid_value_ignored(self):
        config = CallConfig.from_env({"ROOMCALL_RECONNECT_MAX_ATTEMPTS": "many"})
        assert config["reconnect_max_attempts"] == 5

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("ROOMCALL_MAILBOX_LEASE", "12")
        assert CallConfig.from_env()["mailbox_lease"] == 12.0


class TestValueChecks:
    def test_rejects_wrong_type(self):
        config = CallConfig()
        with pytest.raises(TypeError):
            config["reconnect_max_attempts"] = "3"
        with pytest.raises(TypeError):
            config["trickle_local_candidates"] = 1
        assert config["reconnect_max_attempts"] == 5

    def test_whole_number_accepted_for_delay(self):
        config = CallConfig({"reconnect_base_delay": 1})
        assert config["reconnect_base_delay"] == 1.0
        assert isinstance(config["reconnect_base_delay"], float)

    def test_bad_value_applies_nothing(self):
        config = CallConfig()
        with pytest.raises(TypeError):
            config.update({"join_timeout": 1.0, "socket_path": 5})
        assert config["join_timeout"] == 5.0

    def test_contains(self):
        config = CallConfig()
        assert "ice_restart_timeout" in config
        assert "nope" not in config
