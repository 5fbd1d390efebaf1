"""
Durable per-device registry of enrolled invites.

Layout under cache_dir:

    devices/<device>.json              {invite_id: RegistryEntry}
    devices/<device>.address           original device address (file names are sanitized)
    backups/<device>/registry-<ts>.json   10 most recent snapshots per device

Every write backs up the prior file, then rewrites it atomically. The
optional Redis mirror is updated afterwards; mirror failures never fail the
write.
"""

import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .mirror import RedisMirror
from .schemas.device_schemas import RegistryEntry, utcnow
from .storage import atomic_write_json, create_backup, list_backups, read_json

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "registry"


def safe_device_name(device: str) -> str:
    """Filesystem-safe name for a device address (ports, IPv6 colons)."""
    return re.sub(r"[^\w.\-]", "_", device)


class DeviceRegistry:
    """
    Registry cache partitioned by device.

    Writes to different devices never contend: each device has its own
    file and its own in-process lock.
    """

    def __init__(
        self,
        cache_dir: Path,
        max_backups: int = 10,
        mirror: Optional[RedisMirror] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.devices_dir = self.cache_dir / "devices"
        self.backups_dir = self.cache_dir / "backups"
        self.devices_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = max_backups
        self.mirror = mirror

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # =========================================================================
    # Paths / locks
    # =========================================================================

    def _device_path(self, device: str) -> Path:
        return self.devices_dir / f"{safe_device_name(device)}.json"

    def _address_path(self, device: str) -> Path:
        return self.devices_dir / f"{safe_device_name(device)}.address"

    def _remember_address(self, device: str) -> None:
        path = self._address_path(device)
        if not path.exists():
            path.write_text(device, encoding="utf-8")

    def _backup_dir(self, device: str) -> Path:
        return self.backups_dir / safe_device_name(device)

    def _lock_for(self, device: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(device)
            if lock is None:
                lock = self._locks[device] = threading.Lock()
            return lock

    # =========================================================================
    # Read
    # =========================================================================

    def load(self, device: str) -> Dict[str, RegistryEntry]:
        """All entries for a device, keyed by invite_id."""
        raw = read_json(self._device_path(device), default={}) or {}
        entries = {}
        for invite_id, data in raw.items():
            try:
                entries[invite_id] = RegistryEntry.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Skipping invalid registry entry {device}/{invite_id}: {e}")
        return entries

    def get(self, device: str, invite_id: str) -> Optional[RegistryEntry]:
        return self.load(device).get(invite_id)

    def entries(self, device: str) -> List[RegistryEntry]:
        return list(self.load(device).values())

    def list_all(self, device: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entries for one device, or every device, each tagged with its address."""
        targets = [device] if device else self.devices()
        return [
            {"device": name, **entry.model_dump(mode="json")}
            for name in targets
            for entry in self.entries(name)
        ]

    def devices(self) -> List[str]:
        """Device addresses with a registry file, as originally written."""
        addresses = []
        for path in self.devices_dir.glob("*.json"):
            address_path = path.with_suffix(".address")
            if address_path.exists():
                addresses.append(address_path.read_text(encoding="utf-8").strip())
            else:
                addresses.append(path.stem)
        return sorted(addresses)

    def backups(self, device: str) -> List[Path]:
        return list_backups(self._backup_dir(device), BACKUP_PREFIX)

    # =========================================================================
    # Write
    # =========================================================================

    def _write(self, device: str, entries: Dict[str, RegistryEntry]) -> None:
        path = self._device_path(device)
        self._remember_address(device)
        create_backup(path, self._backup_dir(device), BACKUP_PREFIX, self.max_backups)
        atomic_write_json(path, {k: v.model_dump(mode="json") for k, v in entries.items()})

    @staticmethod
    def _merge(existing: Optional[RegistryEntry], invite_id: str, entry: RegistryEntry) -> RegistryEntry:
        data = entry.model_dump()
        data["invite_id"] = invite_id
        data["last_updated"] = utcnow()
        if existing is not None:
            data["registered_at"] = existing.registered_at
        return RegistryEntry(**data)

    def upsert(self, device: str, invite_id: str, entry: RegistryEntry) -> RegistryEntry:
        """
        Create or overwrite the entry for invite_id on device.

        registered_at survives overwrites; last_updated is refreshed.
        """
        return self.upsert_many(device, {invite_id: entry})[invite_id]

    def upsert_many(self, device: str, entries: Dict[str, RegistryEntry]) -> Dict[str, RegistryEntry]:
        """Upsert several entries with one backup and one rewrite."""
        if not entries:
            return {}

        replaced = []
        with self._lock_for(device):
            current = self.load(device)
            written = {}
            for invite_id, entry in entries.items():
                existing = current.get(invite_id)
                merged = self._merge(existing, invite_id, entry)
                if existing is not None and existing.identity_id != merged.identity_id:
                    replaced.append(existing.mirror_member())
                current[invite_id] = merged
                written[invite_id] = merged
            self._write(device, current)

        if self.mirror is not None:
            for member in replaced:
                self.mirror.remove(device, member)
            for merged in written.values():
                self.mirror.add(device, merged.mirror_member())

        logger.debug(f"Registry {device}: upserted {len(written)} entries")
        return written

    def remove(self, device: str, invite_id: str) -> bool:
        with self._lock_for(device):
            current = self.load(device)
            removed = current.pop(invite_id, None)
            if removed is None:
                return False
            self._write(device, current)

        if self.mirror is not None:
            self.mirror.remove(device, removed.mirror_member())
        return True

    def clear(self, device: Optional[str] = None) -> int:
        """Empty one device (or all); returns number of entries dropped."""
        targets = [device] if device else self.devices()
        dropped = 0
        for name in targets:
            with self._lock_for(name):
                current = self.load(name)
                dropped += len(current)
                self._write(name, {})
            if self.mirror is not None:
                self.mirror.clear(name)
        logger.info(f"Registry cleared: {dropped} entries across {len(targets)} device(s)")
        return dropped

    # =========================================================================
    # Reporting / maintenance
    # =========================================================================

    def stats(self) -> Dict:
        users_by_device = {device: len(self.load(device)) for device in self.devices()}
        return {
            "total_devices": len(users_by_device),
            "total_users": sum(users_by_device.values()),
            "users_by_device": users_by_device,
        }

    def export(self, path: Path, devices: Optional[Iterable[str]] = None) -> int:
        """Write {device: {invite_id: entry}} to path; returns entry count."""
        snapshot = {}
        count = 0
        for device in (devices or self.devices()):
            entries = self.load(device)
            snapshot[device] = {k: v.model_dump(mode="json") for k, v in entries.items()}
            count += len(entries)
        atomic_write_json(Path(path), snapshot)
        logger.info(f"Exported {count} registry entries to {path}")
        return count

    def rebuild_mirror(self, device: Optional[str] = None) -> int:
        """Replay the registry into the mirror; returns devices rebuilt."""
        if self.mirror is None:
            logger.warning("No mirror configured, nothing to rebuild")
            return 0

        rebuilt = 0
        for name in ([device] if device else self.devices()):
            members = [entry.mirror_member() for entry in self.entries(name)]
            if self.mirror.rebuild(name, members):
                rebuilt += 1
        return rebuilt
