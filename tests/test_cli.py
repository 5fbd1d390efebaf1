"""Tests for the operator command line."""

import json

import pytest

from enrollment_sync import cli


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    for name in ("DIGEST_USERNAME", "DIGEST_PASSWORD", "DEVICE_IPS", "FACE_READER_IPS", "REDIS_URL", "CACHE_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "cache_dir": str(tmp_path / "cache"),
        "lock_path": str(tmp_path / "sync.lock"),
        "log_dir": str(tmp_path / "logs"),
        "json_logs": False,
    }))
    return str(path)


def test_run_without_devices_is_config_error(config_path):
    assert cli.main(["--config", config_path, "run"]) == cli.EXIT_CONFIG


def test_lock_status_when_free(config_path, capsys):
    assert cli.main(["--config", config_path, "lock", "status"]) == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["locked"] is False


def test_registry_stats_on_empty_cache(config_path, capsys):
    assert cli.main(["--config", config_path, "registry", "stats"]) == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["total_users"] == 0


def test_rebuild_mirror_requires_redis(config_path):
    assert cli.main(["--config", config_path, "registry", "rebuild-mirror"]) == cli.EXIT_CONFIG
