"""
Optional Redis mirror of the device registry.

One set per device, key ``device:<address>:users``, holding
``<identity_id>:<invite_id>`` members. The mirror is a derived index: every
write is best-effort and it can always be rebuilt from the registry files.
"""

import logging
from typing import Iterable, Optional

import redis

logger = logging.getLogger(__name__)


def mirror_key(device: str) -> str:
    return f"device:{device}:users"


class RedisMirror:
    """Best-effort set-per-device mirror; never raises on Redis errors."""

    def __init__(self, client: "redis.Redis"):
        self.client = client
        self.stats = {"writes": 0, "failures": 0}

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 5.0) -> "RedisMirror":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    def _record_failure(self, action: str, device: str, error: Exception) -> None:
        self.stats["failures"] += 1
        logger.warning(f"Mirror {action} failed for {device}: {error}")

    def add(self, device: str, member: str) -> bool:
        try:
            self.client.sadd(mirror_key(device), member)
        except redis.RedisError as e:
            self._record_failure("add", device, e)
            return False
        self.stats["writes"] += 1
        return True

    def remove(self, device: str, member: str) -> bool:
        try:
            self.client.srem(mirror_key(device), member)
        except redis.RedisError as e:
            self._record_failure("remove", device, e)
            return False
        self.stats["writes"] += 1
        return True

    def rebuild(self, device: str, members: Iterable[str]) -> bool:
        """Replace the device's set with exactly `members`."""
        members = list(members)
        key = mirror_key(device)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            if members:
                pipe.sadd(key, *members)
            pipe.execute()
        except redis.RedisError as e:
            self._record_failure("rebuild", device, e)
            return False
        logger.info(f"Mirror rebuilt for {device}: {len(members)} members")
        return True

    def is_member(self, device: str, member: str) -> Optional[bool]:
        """Membership check; None when Redis is unreachable."""
        try:
            return bool(self.client.sismember(mirror_key(device), member))
        except redis.RedisError as e:
            self._record_failure("lookup", device, e)
            return None

    def clear(self, device: str) -> bool:
        try:
            self.client.delete(mirror_key(device))
        except redis.RedisError as e:
            self._record_failure("clear", device, e)
            return False
        return True

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError:
            pass
