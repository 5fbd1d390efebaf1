"""
Crash-safe JSON file storage.

All persisted state (registry files, image metadata, run state) is written
through atomic_write_json:

1. Acquire an exclusive portalocker lock on a sidecar .lock file
2. Write to a .tmp file
3. fsync
4. Rename over the target
"""

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

import portalocker

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Atomically replace path with the JSON encoding of data."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    lock_path = path.with_suffix(path.suffix + ".lock")
    temp_path = path.with_suffix(path.suffix + ".tmp")
    lock_path.touch(exist_ok=True)

    with open(lock_path, "r+") as lock_file:
        portalocker.lock(lock_file, portalocker.LOCK_EX)
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
                f.flush()
                os.fsync(f.fileno())

            os.rename(temp_path, path)
        finally:
            if temp_path.exists():
                temp_path.unlink()
            portalocker.unlock(lock_file)


def read_json(path: Path, default: Any = None) -> Any:
    """
    Read a JSON file, returning default when it is missing.

    A corrupt file is logged and treated as missing.
    """
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt JSON in {path}: {e}")
        return default


def create_backup(path: Path, backup_dir: Path, prefix: str, keep: int) -> Optional[Path]:
    """
    Copy path into backup_dir as <prefix>-<timestamp>.json and prune.

    Only the `keep` most recent backups for this prefix survive.
    Returns the backup path, or None if path does not exist yet.
    """
    path = Path(path)
    if not path.exists():
        return None

    backup_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S_%fZ")
    backup_path = backup_dir / f"{prefix}-{timestamp}.json"
    suffix = 1
    while backup_path.exists():
        backup_path = backup_dir / f"{prefix}-{timestamp}_{suffix:02d}.json"
        suffix += 1
    shutil.copy2(path, backup_path)

    prune_backups(backup_dir, prefix, keep)
    return backup_path


def list_backups(backup_dir: Path, prefix: str) -> List[Path]:
    """Backups for prefix, oldest first."""
    if not backup_dir.exists():
        return []
    # Timestamps are fixed-width, so name order is chronological
    return sorted(backup_dir.glob(f"{prefix}-*.json"))


def prune_backups(backup_dir: Path, prefix: str, keep: int) -> int:
    backups = list_backups(backup_dir, prefix)
    excess = backups[:-keep] if keep > 0 else backups
    for old in excess:
        try:
            old.unlink()
        except FileNotFoundError:
            pass
    return len(excess)
