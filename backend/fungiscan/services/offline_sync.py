"""
Offline Mode & Sync Service.
Replays mutations queued while the backend was unreachable, once connectivity returns.

A pass drains pending upserts first, then pending deletes. One item failing
never aborts the pass: the item stays queued with an exponential backoff and
is parked after ``MAX_SYNC_ATTEMPTS`` so a permanently rejected mutation
cannot spin in a retry loop.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.errors import FungiScanError, NotFound, RemoteError, StorageError, ValidationError
from ..core.locks import KeyedLocks
from ..entities.base import EntityRecord, EntityType
from ..models.sync import MutationKind
from .connectivity import ConnectivityOracle
from .local_store import LocalStore, MutationEntry
from .remote_client import RemoteClient

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class SyncStatus(str, Enum):
    """Where a queued mutation stands in the retry policy."""
    PENDING = "pending"
    BACKING_OFF = "backing_off"
    PARKED = "parked"  # Out of automatic attempts; only a forced reconcile retries it


@dataclass
class ItemFailure:
    entity_type: str
    entity_id: str
    kind: str
    error: str
    attempts: int


@dataclass
class ReconcileReport:
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    offline: bool = False
    replayed: int = 0
    skipped: int = 0
    failures: List[ItemFailure] = field(default_factory=list)
    remaining: int = 0
    success: bool = False

    def to_dict(self) -> Dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "offline": self.offline,
            "replayed": self.replayed,
            "skipped": self.skipped,
            "failed": len(self.failures),
            "failures": [f.__dict__ for f in self.failures],
            "remaining": self.remaining,
            "success": self.success,
        }


def retry_delay(attempts: int, base_seconds: float, max_seconds: float) -> timedelta:
    """Exponential backoff after the ``attempts``-th consecutive failure."""
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=min(base_seconds * (2 ** exponent), max_seconds))


class Reconciler:
    """Pushes local mutations to the backend and drains the mutation queue."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteClient,
        oracle: ConnectivityOracle,
        locks: Optional[KeyedLocks] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.remote = remote
        self.oracle = oracle
        self.locks = locks or KeyedLocks()
        self.max_attempts = max_attempts or settings.MAX_SYNC_ATTEMPTS
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else settings.RETRY_BASE_SECONDS
        )
        self.retry_max_seconds = retry_max_seconds or settings.RETRY_MAX_SECONDS
        self._clock = clock
        self._run_lock = asyncio.Lock()
        self.state = ReconcileState.IDLE
        self.last_report: Optional[ReconcileReport] = None

    # ------------------------------------------------------------------
    # Pushing single mutations (shared with the repository write path)
    # ------------------------------------------------------------------

    async def push_upsert(
        self, entity_type: EntityType, record: EntityRecord, is_new: bool = False
    ) -> EntityRecord:
        """Send one local record to the backend; returns the server's version."""
        if entity_type == EntityType.IDENTIFICATION:
            return await self.remote.create(entity_type, record)
        if entity_type == EntityType.LOCATION:
            if is_new:
                return await self.remote.create(entity_type, record)
            try:
                return await self.remote.update(entity_type, record)
            except NotFound:
                # Created offline: the backend has never seen it
                return await self.remote.create(entity_type, record)
        if entity_type == EntityType.PREFERENCES:
            server_record = await self.remote.update_preferences(record)
            # Singleton: always stored under the fixed preferences id
            return server_record.model_copy(update={"id": record.id})
        if entity_type == EntityType.EXPERT_VERIFICATION:
            await self.remote.request_expert_verification(record)
            return record
        raise ValidationError(f"{entity_type.value} records are read-only", {"entity_id": record.id})

    async def push_delete(self, entity_type: EntityType, entity_id: str) -> None:
        if entity_type != EntityType.LOCATION:
            raise ValidationError(f"{entity_type.value} records cannot be deleted remotely")
        try:
            await self.remote.delete(entity_type, entity_id)
        except NotFound:
            logger.debug("%s/%s already gone on the backend", entity_type.value, entity_id)

    async def merge_server_record(
        self, entity_type: EntityType, local_id: str, server_record: EntityRecord
    ) -> None:
        """Fold server-assigned fields (canonical id, timestamps) into the local copy."""
        if server_record.id != local_id:
            logger.info(
                "Backend assigned canonical id %s to %s/%s", server_record.id, entity_type.value, local_id
            )
            await self.store.rekey(entity_type, local_id, server_record)
        else:
            await self.store.put(entity_type, server_record)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def status_of(self, entry: MutationEntry, now: Optional[datetime] = None) -> SyncStatus:
        now = now or self._clock()
        if entry.attempts >= self.max_attempts:
            return SyncStatus.PARKED
        if entry.next_attempt_at is not None and entry.next_attempt_at > now:
            return SyncStatus.BACKING_OFF
        return SyncStatus.PENDING

    async def reconcile(self, force: bool = False) -> ReconcileReport:
        """
        Replay every due queued mutation against the backend.
        Called when connectivity is restored and on a periodic timer.
        ``force`` ignores backoff and parked state (user-initiated retry).
        """
        async with self._run_lock:
            self.state = ReconcileState.RUNNING
            try:
                report = await self._run(force)
            finally:
                self.state = ReconcileState.IDLE
            self.last_report = report
            return report

    async def _run(self, force: bool) -> ReconcileReport:
        report = ReconcileReport(started_at=self._clock())

        if not await self.oracle.is_online():
            report.offline = True
            report.remaining = await self.store.pending_count()
            report.success = report.remaining == 0
            report.finished_at = self._clock()
            return report

        for kind in (MutationKind.UPSERT, MutationKind.DELETE):
            for entry in await self.store.list_pending(kind):
                if not force and self.status_of(entry) is not SyncStatus.PENDING:
                    report.skipped += 1
                    continue
                failure = await self._replay_entry(entry)
                if failure is None:
                    report.replayed += 1
                else:
                    report.failures.append(failure)

        report.remaining = await self.store.pending_count()
        report.success = not report.failures and report.skipped == 0
        report.finished_at = self._clock()
        logger.info(
            "Reconcile finished: replayed=%d failed=%d skipped=%d remaining=%d",
            report.replayed, len(report.failures), report.skipped, report.remaining,
        )
        return report

    async def _replay_entry(self, entry: MutationEntry) -> Optional[ItemFailure]:
        entity_type, entity_id = entry.entity_type, entry.entity_id
        async with self.locks.hold((entity_type, entity_id)):
            # A concurrent write may have superseded the entry since it was listed
            if not await self.store.has_pending(entity_type, entity_id, entry.kind):
                return None
            try:
                if entry.kind == MutationKind.UPSERT:
                    await self._replay_upsert(entity_type, entity_id)
                else:
                    await self.push_delete(entity_type, entity_id)
            except ValidationError as exc:
                logger.error("Dropping unsyncable %s of %s/%s: %s", entry.kind, entity_type.value, entity_id, exc)
            except StorageError as exc:
                logger.error("Cannot replay %s of %s/%s: %s", entry.kind, entity_type.value, entity_id, exc)
                return await self._record_failure(entry, exc)
            except RemoteError as exc:
                return await self._record_failure(entry, exc)
            await self.store.dequeue(entity_type, entity_id, entry.kind)
        return None

    async def _replay_upsert(self, entity_type: EntityType, entity_id: str) -> None:
        record = await self.store.get(entity_type, entity_id)
        if record is None:
            logger.info("%s/%s no longer exists locally; nothing to push", entity_type.value, entity_id)
            return
        server_record = await self.push_upsert(entity_type, record)
        await self.merge_server_record(entity_type, entity_id, server_record)

    async def _record_failure(self, entry: MutationEntry, exc: FungiScanError) -> ItemFailure:
        attempts = entry.attempts + 1
        next_attempt_at = self._clock() + retry_delay(attempts, self.retry_base_seconds, self.retry_max_seconds)
        await self.store.record_failure(
            entry.entity_type, entry.entity_id, entry.kind, str(exc), next_attempt_at
        )
        if attempts >= self.max_attempts:
            logger.warning(
                "Parking %s of %s/%s after %d failed attempts: %s",
                entry.kind, entry.entity_type.value, entry.entity_id, attempts, exc,
            )
        else:
            logger.warning(
                "Sync of %s/%s (%s) failed, attempt %d: %s",
                entry.entity_type.value, entry.entity_id, entry.kind, attempts, exc,
            )
        return ItemFailure(
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            kind=entry.kind,
            error=str(exc),
            attempts=attempts,
        )
