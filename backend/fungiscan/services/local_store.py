"""
Durable local cache for entity records, plus the mutation queue and cache metadata.

Every write is committed before the coroutine returns. Any SQLAlchemy failure
surfaces as ``StorageError``: a local write that cannot be persisted must
never be silently dropped.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, exists, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.errors import StorageError
from ..entities.base import USER_AUTHORED_TYPES, EntityRecord, EntityType
from ..entities.registry import decode
from ..models.base import Base, create_engine_for, make_session_factory
from ..models.sync import CacheMetadata, EntityRow, MutationKind, PendingMutation

logger = logging.getLogger(__name__)

MutationKey = Tuple[EntityType, str, str]


@dataclass(frozen=True)
class MutationEntry:
    """Read-only view of one queued mutation."""
    entity_type: EntityType
    entity_id: str
    kind: str
    enqueued_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @property
    def key(self) -> MutationKey:
        return (self.entity_type, self.entity_id, self.kind)

    @classmethod
    def from_row(cls, row: PendingMutation) -> "MutationEntry":
        return cls(
            entity_type=EntityType(row.entity_type),
            entity_id=row.entity_id,
            kind=row.kind,
            enqueued_at=row.enqueued_at,
            attempts=row.attempts or 0,
            last_error=row.last_error,
            next_attempt_at=row.next_attempt_at,
        )


def _type(entity_type) -> str:
    return EntityType(entity_type).value


class LocalStore:
    """Async key-value persistence keyed by ``(entity_type, entity_id)``."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        clock: Clock = utcnow,
    ):
        self.engine = engine or create_engine_for(database_url or settings.DATABASE_URL)
        self._sessions = make_session_factory(self.engine)
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError("Could not create local schema", {"cause": str(exc)}) from exc

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """One transaction; committed on exit, rolled back on error."""
        try:
            async with self._sessions() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Local store I/O failed: %s", exc)
            raise StorageError("Local store I/O failed", {"cause": str(exc)}) from exc

    # ------------------------------------------------------------------
    # Entity records
    # ------------------------------------------------------------------

    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[EntityRecord]:
        async with self._session() as session:
            row = await self._row(session, _type(entity_type), entity_id)
            return self._decode(entity_type, row) if row is not None else None

    async def get_all(self, entity_type: EntityType) -> List[EntityRecord]:
        """All records of one type, in insertion order."""
        async with self._session() as session:
            rows = await session.scalars(
                select(EntityRow)
                .where(EntityRow.entity_type == _type(entity_type))
                .order_by(EntityRow.seq)
            )
            return [self._decode(entity_type, row) for row in rows]

    async def put(self, entity_type: EntityType, record: EntityRecord) -> None:
        async with self._session() as session:
            await self._put(session, _type(entity_type), record, self._clock())

    async def put_many(self, entity_type: EntityType, records: Iterable[EntityRecord]) -> None:
        now = self._clock()
        async with self._session() as session:
            for record in records:
                await self._put(session, _type(entity_type), record, now)

    async def delete(self, entity_type: EntityType, entity_id: str) -> bool:
        t = _type(entity_type)
        async with self._session() as session:
            result = await session.execute(
                delete(EntityRow).where(EntityRow.entity_type == t, EntityRow.entity_id == entity_id)
            )
            await session.execute(
                delete(CacheMetadata).where(
                    CacheMetadata.entity_type == t, CacheMetadata.entity_id == entity_id
                )
            )
            return result.rowcount > 0

    async def rekey(self, entity_type: EntityType, old_id: str, record: EntityRecord) -> None:
        """Store ``record`` in place of ``old_id`` (server assigned a canonical id).

        The record keeps the old row's insertion slot; metadata and queue
        entries of the old id are dropped.
        """
        t = _type(entity_type)
        now = self._clock()
        async with self._session() as session:
            if record.id != old_id:
                old = await self._row(session, t, old_id)
                if old is not None:
                    if await self._row(session, t, record.id) is None:
                        old.entity_id = record.id
                    else:
                        await session.delete(old)
                await session.execute(
                    delete(CacheMetadata).where(
                        CacheMetadata.entity_type == t, CacheMetadata.entity_id == old_id
                    )
                )
                await session.execute(
                    delete(PendingMutation).where(
                        PendingMutation.entity_type == t, PendingMutation.entity_id == old_id
                    )
                )
                await session.flush()
            await self._put(session, t, record, now)

    # ------------------------------------------------------------------
    # Mutation queue
    # ------------------------------------------------------------------

    async def enqueue_upsert(self, entity_type: EntityType, entity_id: str) -> None:
        await self._enqueue(_type(entity_type), entity_id, MutationKind.UPSERT)

    async def enqueue_delete(self, entity_type: EntityType, entity_id: str) -> None:
        # A pending upsert of a deleted entity has nothing left to push
        await self._enqueue(_type(entity_type), entity_id, MutationKind.DELETE)

    async def dequeue(self, entity_type: EntityType, entity_id: str, kind: str) -> None:
        async with self._session() as session:
            await session.execute(
                delete(PendingMutation).where(
                    PendingMutation.entity_type == _type(entity_type),
                    PendingMutation.entity_id == entity_id,
                    PendingMutation.kind == kind,
                )
            )

    async def list_pending(self, kind: Optional[str] = None) -> List[MutationEntry]:
        """Queued mutations, oldest first."""
        query = select(PendingMutation).order_by(PendingMutation.enqueued_at)
        if kind is not None:
            query = query.where(PendingMutation.kind == kind)
        async with self._session() as session:
            return [MutationEntry.from_row(row) for row in await session.scalars(query)]

    async def pending_count(self) -> int:
        async with self._session() as session:
            return await session.scalar(select(func.count()).select_from(PendingMutation)) or 0

    async def pending_ids(self, entity_type: EntityType, kind: str) -> Set[str]:
        async with self._session() as session:
            ids = await session.scalars(
                select(PendingMutation.entity_id).where(
                    PendingMutation.entity_type == _type(entity_type),
                    PendingMutation.kind == kind,
                )
            )
            return set(ids)

    async def has_pending(self, entity_type: EntityType, entity_id: str, kind: Optional[str] = None) -> bool:
        query = select(PendingMutation.kind).where(
            PendingMutation.entity_type == _type(entity_type),
            PendingMutation.entity_id == entity_id,
        )
        if kind is not None:
            query = query.where(PendingMutation.kind == kind)
        async with self._session() as session:
            return (await session.scalar(query.limit(1))) is not None

    async def record_failure(
        self,
        entity_type: EntityType,
        entity_id: str,
        kind: str,
        error: str,
        next_attempt_at: Optional[datetime],
    ) -> int:
        """Bump the attempt counter of a queued mutation; returns the new count."""
        async with self._session() as session:
            row = await session.get(PendingMutation, (_type(entity_type), entity_id, kind))
            if row is None:
                return 0
            row.attempts = (row.attempts or 0) + 1
            row.last_error = error
            row.next_attempt_at = next_attempt_at
            return row.attempts

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def evict_older_than(self, retention_days: int) -> int:
        """Delete cached entities not written for ``retention_days``.

        User-authored types and records with a pending upsert are kept.
        Returns the number of evicted records.
        """
        cutoff = self._clock() - timedelta(days=retention_days)
        protected = [t.value for t in USER_AUTHORED_TYPES]
        has_pending_upsert = exists().where(
            PendingMutation.entity_type == CacheMetadata.entity_type,
            PendingMutation.entity_id == CacheMetadata.entity_id,
            PendingMutation.kind == MutationKind.UPSERT,
        )
        async with self._session() as session:
            expired = (await session.execute(
                select(CacheMetadata.entity_type, CacheMetadata.entity_id).where(
                    CacheMetadata.last_updated < cutoff,
                    CacheMetadata.entity_type.not_in(protected),
                    ~has_pending_upsert,
                )
            )).all()
            for entity_type, entity_id in expired:
                await session.execute(
                    delete(EntityRow).where(
                        EntityRow.entity_type == entity_type, EntityRow.entity_id == entity_id
                    )
                )
                await session.execute(
                    delete(CacheMetadata).where(
                        CacheMetadata.entity_type == entity_type, CacheMetadata.entity_id == entity_id
                    )
                )
        if expired:
            logger.info("Evicted %d cached records older than %d days", len(expired), retention_days)
        return len(expired)

    async def clear_cache(self) -> None:
        """Drop cached reference data and synced identifications; keep user data and pending writes."""
        async with self._session() as session:
            await self._delete_types(session, [EntityType.MUSHROOM.value])
            pending = select(PendingMutation.entity_id).where(
                PendingMutation.entity_type == EntityType.IDENTIFICATION.value,
                PendingMutation.kind == MutationKind.UPSERT,
            )
            ident = EntityType.IDENTIFICATION.value
            await session.execute(
                delete(EntityRow).where(
                    EntityRow.entity_type == ident, EntityRow.entity_id.not_in(pending)
                )
            )
            await session.execute(
                delete(CacheMetadata).where(
                    CacheMetadata.entity_type == ident, CacheMetadata.entity_id.not_in(pending)
                )
            )
        logger.info("Local cache cleared")

    async def delete_all_user_data(self) -> None:
        """Erase everything the user authored or synced, including both queues.

        Mushroom reference data is kept.
        """
        user_types = [t.value for t in EntityType if t != EntityType.MUSHROOM]
        async with self._session() as session:
            await self._delete_types(session, user_types)
            await session.execute(delete(PendingMutation))
        logger.info("All local user data deleted")

    async def storage_footprint_bytes(self) -> int:
        if self.engine.dialect.name != "sqlite":
            return 0
        async with self._session() as session:
            page_count = await session.scalar(text("PRAGMA page_count"))
            page_size = await session.scalar(text("PRAGMA page_size"))
            return int(page_count or 0) * int(page_size or 0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _row(self, session: AsyncSession, t: str, entity_id: str) -> Optional[EntityRow]:
        return await session.scalar(
            select(EntityRow).where(EntityRow.entity_type == t, EntityRow.entity_id == entity_id)
        )

    async def _put(self, session: AsyncSession, t: str, record: EntityRecord, now: datetime) -> None:
        payload = record.to_wire()
        row = await self._row(session, t, record.id)
        if row is None:
            session.add(EntityRow(
                entity_type=t, entity_id=record.id, payload=payload, created_at=now, updated_at=now,
            ))
        else:
            row.payload = payload
            row.updated_at = now
        await session.merge(CacheMetadata(entity_type=t, entity_id=record.id, last_updated=now))
        await session.flush()

    async def _enqueue(self, t: str, entity_id: str, kind: str) -> None:
        now = self._clock()
        async with self._session() as session:
            if kind == MutationKind.DELETE:
                upsert = await session.get(PendingMutation, (t, entity_id, MutationKind.UPSERT))
                if upsert is not None:
                    await session.delete(upsert)
            row = await session.get(PendingMutation, (t, entity_id, kind))
            if row is None:
                session.add(PendingMutation(
                    entity_type=t, entity_id=entity_id, kind=kind, enqueued_at=now, attempts=0,
                ))
            else:
                row.enqueued_at = now
        logger.debug("Queued %s for %s/%s", kind, t, entity_id)

    async def _delete_types(self, session: AsyncSession, types: List[str]) -> None:
        await session.execute(delete(EntityRow).where(EntityRow.entity_type.in_(types)))
        await session.execute(delete(CacheMetadata).where(CacheMetadata.entity_type.in_(types)))

    @staticmethod
    def _decode(entity_type: EntityType, row: EntityRow) -> EntityRecord:
        try:
            return decode(EntityType(entity_type), row.payload)
        except PydanticValidationError as exc:
            raise StorageError(
                "Corrupt cached record",
                {"entity_type": row.entity_type, "entity_id": row.entity_id, "cause": str(exc)},
            ) from exc
