"""
One full sync cycle.

    roster -> invite selection -> photo cache -> transcode -> devices -> report

Per-identity failures (missing or unreachable photo, oversize photo) are
reported and excluded; the rest of the batch proceeds. A roster failure
aborts the cycle.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .config import SyncConfig
from .image_cache import ImageCache, PhotoDownloadError
from .image_utils import PhotoSizeError, transcode_photo
from .orchestrator import DeviceOrchestrator
from .registry_cache import DeviceRegistry
from .roster import (
    HttpRosterSource,
    JsonFileRosterSource,
    RosterError,
    RosterSource,
    format_name_for_device,
    select_by_invite,
)
from .schemas.device_schemas import utcnow
from .schemas.report_schemas import ProcessingError, SyncReport
from .schemas.roster_schemas import EnrollmentCandidate, Identity
from .storage import atomic_write_json, read_json
from .worker import DeviceWorker, build_registry

logger = logging.getLogger(__name__)


class RunStateStore:
    """Persists the start time of the last completed cycle for incremental runs."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[datetime]:
        data = read_json(self.path, default={}) or {}
        value = data.get("last_processed_at")
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning(f"Ignoring unreadable run state timestamp: {value!r}")
            return None

    def save(self, timestamp: datetime) -> None:
        atomic_write_json(self.path, {"last_processed_at": timestamp.isoformat()})

    def reset(self) -> None:
        if self.path.exists():
            self.path.unlink()


def build_roster_source(config: SyncConfig) -> RosterSource:
    if config.roster_url:
        return HttpRosterSource(
            config.roster_url,
            event_id=config.event_id,
            timeout_seconds=config.download_timeout_seconds,
        )
    if config.roster_path:
        return JsonFileRosterSource(Path(config.roster_path), event_id=config.event_id)
    raise RosterError("No roster source configured (roster_url or roster_path)")


class SyncPipeline:
    """
    Wires roster, photo cache, transcoder and orchestrator into one cycle.

    Usage:
        pipeline = SyncPipeline.from_config(config)
        report = pipeline.run()
    """

    def __init__(
        self,
        config: SyncConfig,
        source: RosterSource,
        image_cache: ImageCache,
        orchestrator: DeviceOrchestrator,
        state_store: Optional[RunStateStore] = None,
    ):
        self.config = config
        self.source = source
        self.image_cache = image_cache
        self.orchestrator = orchestrator
        self.state_store = state_store

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        source: Optional[RosterSource] = None,
        registry: Optional[DeviceRegistry] = None,
    ) -> "SyncPipeline":
        if registry is None:
            registry = build_registry(config)
        if registry.mirror is not None:
            # The mirror is derived; bring it in line with the files before any run
            rebuilt = registry.rebuild_mirror()
            logger.info(f"Mirror resynced from registry for {rebuilt} device(s)")

        if config.isolation == "thread":
            # Threads share one registry; processes each open their own
            worker = DeviceWorker(config, registry=registry)
        else:
            worker = DeviceWorker(config)

        orchestrator = DeviceOrchestrator(
            worker,
            isolation=config.isolation,
            max_workers=config.max_workers,
            device_timeout_seconds=config.device_timeout_seconds,
        )
        image_cache = ImageCache(
            config.cache_path / "images",
            timeout_seconds=config.download_timeout_seconds,
            user_agent=config.device.user_agent,
        )
        state_store = RunStateStore(config.cache_path / "run_state.json") if config.incremental else None
        return cls(
            config,
            source or build_roster_source(config),
            image_cache,
            orchestrator,
            state_store=state_store,
        )

    def prepare(self, identities: Sequence[Identity]) -> Tuple[List[EnrollmentCandidate], List[ProcessingError]]:
        """Cache and transcode every photo; failures are collected, not raised."""
        candidates: List[EnrollmentCandidate] = []
        errors: List[ProcessingError] = []

        for identity in identities:
            try:
                path = self.image_cache.ensure_local(identity.photo_url, identity.identity_id)
            except PhotoDownloadError as e:
                errors.append(ProcessingError(
                    identity_id=identity.identity_id,
                    invite_id=identity.invite_id,
                    stage="download",
                    error=str(e),
                ))
                continue

            try:
                photo = transcode_photo(path, self.config.envelope, source_hash=path.stem)
            except (PhotoSizeError, ValueError, OSError) as e:
                errors.append(ProcessingError(
                    identity_id=identity.identity_id,
                    invite_id=identity.invite_id,
                    stage="transcode",
                    error=str(e),
                ))
                continue

            candidates.append(EnrollmentCandidate(
                identity=identity,
                photo=photo,
                device_name=format_name_for_device(identity.display_name),
            ))

        for error in errors:
            logger.warning(f"Excluded {error.identity_id} ({error.stage}): {error.error}")
        return candidates, errors

    def run(self) -> SyncReport:
        """
        Execute one cycle and return its report.

        Raises:
            RosterError: if the upstream roster cannot be read
        """
        report = SyncReport()
        cycle_started = utcnow()

        since = self.state_store.load() if self.state_store else None
        if since:
            logger.info(f"Incremental run: identities changed since {since.isoformat()}")

        identities = select_by_invite(self.source.fetch(since=since))
        report.roster_size = len(identities)
        logger.info(f"Roster: {len(identities)} identities after invite selection")

        candidates, errors = self.prepare(identities)
        report.candidates = len(candidates)
        report.processing_errors = errors

        if candidates:
            report.devices = self.orchestrator.run_batch(self.config.devices, candidates)
        else:
            logger.info("No identities to enroll this cycle")

        report.finalize()
        if self.state_store:
            if report.complete:
                self.state_store.save(cycle_started)
            else:
                # Keep the old watermark so failed identities are fetched again
                logger.warning("Incremental watermark not advanced: cycle left identities to retry")

        summary = report.summary()
        logger.info(
            f"Cycle finished: verified={summary['users_verified']} deleted={summary['users_deleted']} "
            f"registered={summary['users_registered']} faces={summary['faces_registered']} "
            f"cache_saves={summary['cache_saves']} processing_errors={summary['processing_errors']} "
            f"devices={summary['devices_succeeded']} ok/{summary['devices_failed']} failed",
            extra={"sync_report": summary},
        )
        return report
