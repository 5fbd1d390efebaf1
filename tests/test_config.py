"""Tests for config file loading and environment overrides."""

import json

import pytest

from enrollment_sync.config import ConfigError, SyncConfig, load_config

ENV = {"DIGEST_USERNAME": "admin", "DIGEST_PASSWORD": "secret", "DEVICE_IPS": "10.0.0.21, 10.0.0.22"}


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_env_only_config(tmp_path):
    config = load_config(str(tmp_path / "missing.json"), env=ENV)

    assert config.devices == ["10.0.0.21", "10.0.0.22"]
    assert config.device.username == "admin"
    assert config.chunk_size == 10
    assert config.envelope.max_bytes == 100 * 1024
    assert config.device.timeout_seconds == 30


def test_file_sections_and_env_precedence(tmp_path):
    path = write_config(tmp_path, {
        "devices": ["192.168.1.10"],
        "device": {"username": "file-user", "password": "file-pass", "timeout_seconds": 20},
        "envelope": {"target_width": 400},
        "chunk_size": 5,
        "roster_path": "roster.json",
        "unknown_key": True,
    })

    config = load_config(path, env={"DIGEST_PASSWORD": "env-pass"})

    assert config.devices == ["192.168.1.10"]
    assert config.device.username == "file-user"
    assert config.device.password == "env-pass"
    assert config.device.timeout_seconds == 20
    assert config.envelope.target_width == 400
    assert config.chunk_size == 5
    assert config.roster_path == "roster.json"


def test_devices_as_comma_string(tmp_path):
    path = write_config(tmp_path, {"devices": "a, b,,c"})
    config = load_config(path, env={}, validate=False)
    assert config.devices == ["a", "b", "c"]


def test_roster_url_env_replaces_file_path(tmp_path):
    path = write_config(tmp_path, {"roster_path": "roster.json"})
    config = load_config(path, env={**ENV, "ROSTER_URL": "https://roster/api"})

    assert config.roster_url == "https://roster/api"
    assert config.roster_path is None


@pytest.mark.parametrize("env,message", [
    ({"DIGEST_USERNAME": "a", "DIGEST_PASSWORD": "b"}, "No devices"),
    ({"DEVICE_IPS": "10.0.0.1"}, "credentials"),
])
def test_validation_errors(tmp_path, env, message):
    with pytest.raises(ConfigError, match=message):
        load_config(str(tmp_path / "missing.json"), env=env)


def test_chunk_size_bound():
    config = SyncConfig(devices=["a"], chunk_size=11)
    config.device.username = "u"
    config.device.password = "p"
    with pytest.raises(ConfigError):
        config.validate()


def test_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(str(path), env=ENV)


def test_bad_interval(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.json"), env={**ENV, "SCHEDULER_INTERVAL_MINUTES": "soon"})
