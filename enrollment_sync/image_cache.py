"""
Content-addressed local cache of source photos.

Photos are named by the md5 of their source URL, so a lookup never needs
the network. A single metadata.json maps hash -> {url, identity_id,
downloaded_at, size}.
"""

import hashlib
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import requests

from .schemas.roster_schemas import Identity
from .storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"


class PhotoDownloadError(Exception):
    """Raised when a source photo cannot be fetched."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url


def image_hash(url: str) -> str:
    """Cache key for a source URL."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()


class ImageCache:
    """
    Local photo store keyed by source URL hash.

    Usage:
        cache = ImageCache(Path("cache/images"))
        path = cache.ensure_local(identity.photo_url, identity.identity_id)
    """

    def __init__(
        self,
        cache_dir: Path,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None,
        user_agent: str = "enrollment-sync/1.0.0",
    ):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.metadata_path = self.cache_dir / METADATA_FILE
        self.timeout_seconds = timeout_seconds

        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": user_agent})
        self._session = session

        self._lock = threading.Lock()
        self.metadata: Dict[str, Dict] = read_json(self.metadata_path, default={}) or {}

    def path_for(self, url: str) -> Path:
        return self.cache_dir / f"{image_hash(url)}.jpg"

    def is_cached(self, url: str) -> bool:
        return self.path_for(url).exists()

    def ensure_local(self, url: str, identity_id: Optional[str] = None) -> Path:
        """
        Return the local path for url, downloading only if it is absent.

        Raises:
            PhotoDownloadError: on timeout, HTTP error, empty body or a failed local write
        """
        if not url:
            raise PhotoDownloadError(url or "", "No photo URL")

        path = self.path_for(url)
        if path.exists():
            return path

        try:
            response = self._session.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise PhotoDownloadError(url, f"Download failed: {e}") from e

        content = response.content
        if not content:
            raise PhotoDownloadError(url, "Empty response body")

        # Write beside the target first so a partial file is never "cached"
        temp_path = path.with_suffix(".part")
        try:
            with open(temp_path, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.rename(temp_path, path)
        except OSError as e:
            raise PhotoDownloadError(url, f"Could not store photo: {e}") from e
        finally:
            if temp_path.exists():
                temp_path.unlink()

        key = path.stem
        with self._lock:
            self.metadata[key] = {
                "url": url,
                "identity_id": identity_id,
                "downloaded_at": datetime.now(timezone.utc).isoformat(),
                "size": len(content),
            }
            self._save_metadata()

        logger.debug(f"Cached photo for {identity_id}: {key} ({len(content)/1024:.1f}KB)")
        return path

    def download_all(self, identities: Iterable[Identity]) -> Dict:
        """
        Make every identity's photo local.

        Failures are collected per identity; the batch is never aborted.
        """
        results = {
            "total": 0,
            "downloaded": 0,
            "cached": 0,
            "errors": 0,
            "paths": {},
            "failures": [],
        }

        for identity in identities:
            results["total"] += 1
            was_cached = bool(identity.photo_url) and self.is_cached(identity.photo_url)
            try:
                path = self.ensure_local(identity.photo_url, identity.identity_id)
            except PhotoDownloadError as e:
                results["errors"] += 1
                results["failures"].append((identity.identity_id, str(e)))
                logger.warning(f"Photo unavailable for {identity.identity_id}: {e}")
                continue

            results["paths"][identity.identity_id] = path
            if was_cached:
                results["cached"] += 1
            else:
                results["downloaded"] += 1

        logger.info(
            f"Photos: {results['downloaded']} downloaded, {results['cached']} cached, "
            f"{results['errors']} errors"
        )
        return results

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _save_metadata(self) -> None:
        atomic_write_json(self.metadata_path, self.metadata)

    def stats(self) -> Dict:
        """Cache statistics from the metadata file."""
        with self._lock:
            total_size = sum(meta.get("size", 0) or 0 for meta in self.metadata.values())
            total_images = len(self.metadata)
        return {
            "total_images": total_images,
            "total_size_kb": round(total_size / 1024),
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "cache_dir": str(self.cache_dir),
        }

    def cleanup_old_images(self, days_old: int = 30) -> int:
        """Delete photos whose file is older than days_old; returns count removed."""
        cutoff = time.time() - days_old * 86400
        removed = 0

        with self._lock:
            for image_path in self.cache_dir.glob("*.jpg"):
                if image_path.stat().st_mtime < cutoff:
                    image_path.unlink()
                    self.metadata.pop(image_path.stem, None)
                    removed += 1
            if removed:
                self._save_metadata()

        if removed:
            logger.info(f"Removed {removed} photos older than {days_old} days")
        return removed

    def check_integrity(self) -> Dict[str, List[str]]:
        """
        Compare metadata with the files on disk.

        Returns hashes with metadata but no file, and files with no metadata.
        """
        with self._lock:
            known = set(self.metadata)
        on_disk = {p.stem for p in self.cache_dir.glob("*.jpg")}
        return {
            "missing_files": sorted(known - on_disk),
            "untracked_files": sorted(on_disk - known),
        }

    def clear(self) -> int:
        """Remove every cached photo and reset metadata."""
        with self._lock:
            removed = 0
            for image_path in self.cache_dir.glob("*.jpg"):
                image_path.unlink()
                removed += 1
            self.metadata = {}
            self._save_metadata()
        logger.info(f"Image cache cleared ({removed} photos)")
        return removed
