"""Tests for the best-effort Redis registry mirror."""

from unittest.mock import MagicMock

import redis

from enrollment_sync.mirror import RedisMirror, mirror_key


def test_add_and_remove_use_device_set():
    client = MagicMock()
    mirror = RedisMirror(client)

    assert mirror.add("10.0.0.21", "user-1:invite-1")
    assert mirror.remove("10.0.0.21", "user-1:invite-1")

    client.sadd.assert_called_once_with("device:10.0.0.21:users", "user-1:invite-1")
    client.srem.assert_called_once_with("device:10.0.0.21:users", "user-1:invite-1")
    assert mirror.stats == {"writes": 2, "failures": 0}


def test_rebuild_replaces_set_in_one_pipeline():
    client = MagicMock()
    pipe = client.pipeline.return_value

    assert RedisMirror(client).rebuild("10.0.0.21", ["a:1", "b:2"])

    pipe.delete.assert_called_once_with(mirror_key("10.0.0.21"))
    pipe.sadd.assert_called_once_with(mirror_key("10.0.0.21"), "a:1", "b:2")
    pipe.execute.assert_called_once()


def test_redis_outage_is_counted_not_raised():
    client = MagicMock()
    client.sadd.side_effect = redis.ConnectionError("connection refused")
    client.sismember.side_effect = redis.ConnectionError("connection refused")
    mirror = RedisMirror(client)

    assert mirror.add("10.0.0.21", "user-1:invite-1") is False
    assert mirror.is_member("10.0.0.21", "user-1:invite-1") is None
    assert mirror.stats["failures"] == 2
