"""
Per-device reconciliation.

Converges one device toward the desired candidate batch:

    1. list enrolled records
    2. delete records for desired identities already present
    3. create identities in chunks
    4. re-list and confirm which identities now exist
    5. create faces for confirmed identities only
    6. record every candidate in the registry cache

Device calls are strictly sequential. Chunk and delete failures are
counted, never raised; anything that does raise aborts this device only.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from .device_client import DeviceClient, MAX_BATCH_SIZE
from .logging_config import SyncEventLogger
from .registry_cache import DeviceRegistry
from .roster import chunked
from .schemas.device_schemas import DeviceRecord, RegistryEntry
from .schemas.report_schemas import DeviceResult, DeviceStats
from .schemas.roster_schemas import EnrollmentCandidate

logger = logging.getLogger(__name__)


class DeviceReconciler:
    """
    Runs the delete / create / verify / face / commit cycle for one device.

    Usage:
        reconciler = DeviceReconciler(client, registry)
        result = reconciler.reconcile(candidates)
    """

    def __init__(
        self,
        client: DeviceClient,
        registry: DeviceRegistry,
        chunk_size: int = MAX_BATCH_SIZE,
        delete_pause_seconds: float = 0.2,
        settle_seconds: float = 2.0,
        face_phase_delay_seconds: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        event_logger: Optional[SyncEventLogger] = None,
    ):
        if not 1 <= chunk_size <= MAX_BATCH_SIZE:
            raise ValueError(f"chunk_size must be 1..{MAX_BATCH_SIZE}, got {chunk_size}")

        self.client = client
        self.registry = registry
        self.chunk_size = chunk_size
        self.delete_pause_seconds = delete_pause_seconds
        self.settle_seconds = settle_seconds
        self.face_phase_delay_seconds = face_phase_delay_seconds
        self._sleep = sleep
        self.events = event_logger or SyncEventLogger()

    @property
    def device(self) -> str:
        return self.client.address

    def reconcile(self, candidates: Sequence[EnrollmentCandidate]) -> DeviceResult:
        started = time.monotonic()
        stats = DeviceStats()
        candidates = self._unique(candidates)
        self.events.device_started(self.device, len(candidates))

        existing = self.client.list_enrolled()
        stats.users_verified = len(existing)
        index = {record.identity_id: record for record in existing}

        self._delete_phase(candidates, index, stats)
        self._identity_phase(candidates, stats)

        confirmed, unconfirmed = self._verify(candidates, stats)
        self._face_phase(confirmed, stats)

        stats.cache_saves = self._commit(candidates)
        self.events.phase_completed(self.device, "commit", cache_saves=stats.cache_saves)

        duration = time.monotonic() - started
        self.events.device_finished(self.device, stats.model_dump(), duration)
        return DeviceResult(
            device=self.device,
            success=True,
            stats=stats,
            unconfirmed_ids=unconfirmed,
            duration_seconds=duration,
        )

    # =========================================================================
    # Phases
    # =========================================================================

    def _unique(self, candidates: Sequence[EnrollmentCandidate]) -> List[EnrollmentCandidate]:
        seen = set()
        unique = []
        for candidate in candidates:
            if candidate.identity_id in seen:
                logger.warning(f"Duplicate identity {candidate.identity_id} in batch for {self.device}, ignoring")
                continue
            seen.add(candidate.identity_id)
            unique.append(candidate)
        return unique

    def _delete_phase(
        self,
        candidates: Sequence[EnrollmentCandidate],
        index: Dict[str, DeviceRecord],
        stats: DeviceStats,
    ) -> None:
        to_delete = [index[c.identity_id] for c in candidates if c.identity_id in index]
        if not to_delete:
            return

        logger.info(f"{self.device}: deleting {len(to_delete)} existing records")
        for record in to_delete:
            if not record.remote_record_id:
                logger.warning(f"{self.device}: record for {record.identity_id} has no RecNo, cannot delete")
                stats.delete_failures += 1
                continue
            if self.client.delete_record(record.remote_record_id):
                stats.users_deleted += 1
            else:
                stats.delete_failures += 1
            self._sleep(self.delete_pause_seconds)

        # Let the device settle before re-creating the same UserIDs
        self._sleep(self.settle_seconds)
        self.events.phase_completed(
            self.device, "delete", deleted=stats.users_deleted, failures=stats.delete_failures,
        )

    def _identity_phase(self, candidates: Sequence[EnrollmentCandidate], stats: DeviceStats) -> None:
        for chunk in chunked(candidates, self.chunk_size):
            result = self.client.create_identities(chunk)
            stats.identity_chunks += 1
            if result.success:
                stats.users_registered += result.success_count
            else:
                stats.identity_chunks_failed += 1
                logger.warning(
                    f"{self.device}: identity chunk {stats.identity_chunks} failed "
                    f"({result.error or result.response})"
                )

        self.events.phase_completed(
            self.device, "identities",
            registered=stats.users_registered,
            chunks=stats.identity_chunks,
            failed_chunks=stats.identity_chunks_failed,
        )

    def _verify(self, candidates: Sequence[EnrollmentCandidate], stats: DeviceStats):
        """Split candidates into (confirmed, unconfirmed ids) by re-querying the device."""
        if not candidates:
            return [], []

        self._sleep(self.settle_seconds)
        present = {record.identity_id for record in self.client.list_enrolled()}

        confirmed = [c for c in candidates if c.identity_id in present]
        unconfirmed = [c.identity_id for c in candidates if c.identity_id not in present]
        stats.users_confirmed = len(confirmed)

        if unconfirmed:
            logger.warning(
                f"{self.device}: {len(unconfirmed)} identities not confirmed, skipping their faces: "
                f"{unconfirmed[:10]}{'...' if len(unconfirmed) > 10 else ''}"
            )
        self.events.phase_completed(
            self.device, "verify", confirmed=len(confirmed), unconfirmed=len(unconfirmed),
        )
        return confirmed, unconfirmed

    def _face_phase(self, confirmed: Sequence[EnrollmentCandidate], stats: DeviceStats) -> None:
        if not confirmed:
            return

        self._sleep(self.face_phase_delay_seconds)
        for chunk in chunked(confirmed, self.chunk_size):
            result = self.client.create_faces(chunk)
            stats.face_chunks += 1
            if result.success:
                stats.faces_registered += result.success_count
            else:
                stats.face_chunks_failed += 1
                logger.warning(
                    f"{self.device}: face chunk {stats.face_chunks} failed "
                    f"({result.error or result.response})"
                )

        self.events.phase_completed(
            self.device, "faces",
            registered=stats.faces_registered,
            chunks=stats.face_chunks,
            failed_chunks=stats.face_chunks_failed,
        )

    def _commit(self, candidates: Sequence[EnrollmentCandidate]) -> int:
        """Record registration intent for every candidate, whatever the outcome."""
        entries = {}
        for candidate in candidates:
            identity = candidate.identity
            entries[identity.invite_id] = RegistryEntry(
                invite_id=identity.invite_id,
                identity_id=identity.identity_id,
                display_name=identity.display_name or candidate.device_name,
                kind=identity.kind.value,
                **identity.contact_fields(),
            )
        return len(self.registry.upsert_many(self.device, entries))
