"""
Sync repository: the single entry point the UI uses for FungiScan data.

Reads follow the per-operation policy in ``sync_policy``. Writes always land
in the local store first and are then pushed opportunistically; anything the
backend did not accept is left in the mutation queue for the reconciler.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type

from pydantic import ValidationError as PydanticValidationError

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.errors import FungiScanError, NotFound, RemoteError, ValidationError
from ..core.locks import KeyedLocks
from ..entities.base import Coordinates, EntityRecord, EntityType
from ..entities.identification import ExpertVerificationRequest, IdentificationResult, Prediction
from ..entities.location import SavedLocation
from ..entities.mushroom import LookalikeSpecies, Mushroom
from ..entities.preferences import PREFERENCES_ID, UserPreferences
from ..models.base import generate_uuid
from ..models.sync import MutationKind
from .connectivity import ConnectivityOracle
from .identification import IdentificationMapper
from .local_store import LocalStore, MutationEntry
from .offline_sync import ReconcileReport, Reconciler, SyncStatus
from .remote_client import RemoteClient
from .sync_policy import policy_for, should_skip_remote

logger = logging.getLogger(__name__)

# Entity types whose collections are returned newest first
TIMESTAMPED_TYPES = frozenset({
    EntityType.IDENTIFICATION,
    EntityType.LOCATION,
    EntityType.EXPERT_VERIFICATION,
})


def build_record(model: Type[EntityRecord], **fields) -> EntityRecord:
    """Construct an entity, reporting bad caller input as ``ValidationError``."""
    try:
        return model(**fields)
    except PydanticValidationError as exc:
        errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
        raise ValidationError(f"Invalid {model.__name__}", {"errors": errors}) from exc


def newest_first(entity_type: EntityType, records: List[EntityRecord]) -> List[EntityRecord]:
    if EntityType(entity_type) not in TIMESTAMPED_TYPES:
        return records
    return sorted(records, key=lambda r: r.timestamp, reverse=True)


class SyncRepository:
    def __init__(
        self,
        store: LocalStore,
        remote: RemoteClient,
        oracle: ConnectivityOracle,
        reconciler: Optional[Reconciler] = None,
        search_threshold: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.remote = remote
        self.oracle = oracle
        self._clock = clock
        self.reconciler = reconciler or Reconciler(store, remote, oracle, clock=clock)
        self.locks: KeyedLocks = self.reconciler.locks
        self.search_threshold = (
            search_threshold if search_threshold is not None else settings.SEARCH_LOCAL_THRESHOLD
        )
        self.mapper = IdentificationMapper()
        self._background: Set[asyncio.Task] = set()
        oracle.on_reconnect(self._on_reconnect)

    async def aclose(self) -> None:
        """Cancel reconcile passes spawned by reconnect events."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Connectivity & reconcile
    # ------------------------------------------------------------------

    async def is_online(self) -> bool:
        return await self.oracle.is_online()

    async def reconcile(self, force: bool = False) -> ReconcileReport:
        return await self.reconciler.reconcile(force=force)

    def _on_reconnect(self) -> None:
        # Runs inside the oracle's probe; the pass itself must not block it
        task = asyncio.create_task(self._reconcile_in_background())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reconcile_in_background(self) -> None:
        try:
            await self.reconciler.reconcile()
        except FungiScanError as exc:
            logger.error("Background reconcile failed: %s", exc)

    # ------------------------------------------------------------------
    # Mushrooms (reference data)
    # ------------------------------------------------------------------

    async def get_mushroom(self, mushroom_id: str) -> Optional[Mushroom]:
        return await self._read_one(
            "get_mushroom", EntityType.MUSHROOM, mushroom_id,
            lambda: self.remote.fetch(EntityType.MUSHROOM, mushroom_id),
        )

    async def get_all_mushrooms(self) -> List[Mushroom]:
        local = await self.store.get_all(EntityType.MUSHROOM)
        return await self._read_many(
            "get_all_mushrooms", EntityType.MUSHROOM, local,
            lambda: self.remote.fetch_all(EntityType.MUSHROOM),
        )

    async def search_mushrooms(self, traits: List[str]) -> List[Mushroom]:
        traits = [t.strip() for t in traits if t and t.strip()]
        if not traits:
            raise ValidationError("At least one trait is required")
        local = [m for m in await self.store.get_all(EntityType.MUSHROOM) if m.has_any_trait(traits)]
        return await self._read_many(
            "search_mushrooms", EntityType.MUSHROOM, local,
            lambda: self.remote.search_mushrooms(traits),
        )

    async def get_dangerous_lookalikes(self, mushroom_id: str) -> List[LookalikeSpecies]:
        """Poisonous or psychoactive species easily confused with ``mushroom_id``.

        The lookalike list is not cached on its own; the local answer is
        derived from the cached mushroom, when there is one.
        """
        cached = await self.store.get(EntityType.MUSHROOM, mushroom_id)
        local = cached.dangerous_lookalikes() if cached is not None else None
        if should_skip_remote(policy_for("get_dangerous_lookalikes"), 0, self.search_threshold):
            return local or []
        if not await self.oracle.is_online():
            return local or []
        try:
            return await self.remote.dangerous_lookalikes(mushroom_id)
        except RemoteError as exc:
            if local is None:
                raise
            logger.warning("Lookalike lookup for %s fell back to cache: %s", mushroom_id, exc)
            return local

    # ------------------------------------------------------------------
    # Identifications
    # ------------------------------------------------------------------

    async def get_identification_history(self) -> List[IdentificationResult]:
        local = await self.store.get_all(EntityType.IDENTIFICATION)
        return await self._read_many(
            "get_identification_history", EntityType.IDENTIFICATION, local,
            lambda: self.remote.fetch_all(EntityType.IDENTIFICATION),
        )

    async def get_recent_identifications(self, limit: int = 10) -> List[IdentificationResult]:
        if limit < 1:
            raise ValidationError("limit must be positive", {"limit": limit})
        local = newest_first(
            EntityType.IDENTIFICATION, await self.store.get_all(EntityType.IDENTIFICATION)
        )[:limit]
        records = await self._read_many(
            "get_recent_identifications", EntityType.IDENTIFICATION, local,
            lambda: self.remote.recent_identifications(limit),
        )
        return records[:limit]

    async def save_identification_result(self, result: IdentificationResult) -> IdentificationResult:
        if not isinstance(result, IdentificationResult):
            raise ValidationError("Expected an IdentificationResult")
        return await self._write(EntityType.IDENTIFICATION, result, is_new=True)

    async def identify_from_predictions(
        self,
        predictions: List[Prediction],
        image_url: str,
        location: Optional[Coordinates] = None,
    ) -> IdentificationResult:
        """Turn ranked ML predictions into a saved identification result."""
        if not predictions:
            raise ValidationError("No predictions to identify from")
        catalog = await self.get_all_mushrooms()
        identified, alternatives = self.mapper.match(predictions, catalog)
        result = build_record(
            IdentificationResult,
            id=generate_uuid(),
            timestamp=self._clock(),
            image_url=image_url,
            identified_mushroom=identified,
            alternatives=alternatives,
            location=location,
        )
        return await self.save_identification_result(result)

    async def request_expert_verification(
        self, identification_id: str, user_query: str
    ) -> ExpertVerificationRequest:
        if not user_query or not user_query.strip():
            raise ValidationError("A question for the expert is required")
        request = build_record(
            ExpertVerificationRequest,
            id=generate_uuid(),
            identification_id=identification_id,
            user_query=user_query.strip(),
        )
        return await self._write(EntityType.EXPERT_VERIFICATION, request, is_new=True)

    # ------------------------------------------------------------------
    # Saved locations
    # ------------------------------------------------------------------

    async def get_saved_location(self, location_id: str) -> Optional[SavedLocation]:
        return await self._read_one(
            "get_saved_location", EntityType.LOCATION, location_id,
            lambda: self.remote.fetch(EntityType.LOCATION, location_id),
        )

    async def get_all_saved_locations(self) -> List[SavedLocation]:
        local = await self.store.get_all(EntityType.LOCATION)
        return await self._read_many(
            "get_all_saved_locations", EntityType.LOCATION, local,
            lambda: self.remote.fetch_all(EntityType.LOCATION),
        )

    async def save_location(
        self,
        name: str,
        notes: str,
        coordinates: Coordinates,
        path: Optional[List[Coordinates]] = None,
        species: Optional[List[str]] = None,
        photos: Optional[List[str]] = None,
    ) -> SavedLocation:
        location = build_record(
            SavedLocation,
            id=generate_uuid(),
            name=name,
            notes=notes or "",
            timestamp=self._clock(),
            coordinates=coordinates,
            path=path,
            species=species or [],
            photos=photos,
        )
        return await self._write(EntityType.LOCATION, location, is_new=True)

    async def update_location(self, location_id: str, **changes: Any) -> SavedLocation:
        """Apply ``changes`` (name, notes, coordinates, path, species, photos); ``None`` keeps a field."""
        unknown = set(changes) - {"name", "notes", "coordinates", "path", "species", "photos"}
        if unknown:
            raise ValidationError("Unknown location fields", {"fields": sorted(unknown)})
        updates = {k: v for k, v in changes.items() if v is not None}

        def apply(existing: SavedLocation) -> SavedLocation:
            fields = dict(existing)
            fields.update(updates)
            return build_record(SavedLocation, **fields)

        return await self._update_location(location_id, apply)

    async def add_species_to_location(
        self, location_id: str, species_name: str, photo_path: Optional[str] = None
    ) -> SavedLocation:
        if not species_name or not species_name.strip():
            raise ValidationError("Species name must not be empty")
        return await self._update_location(
            location_id, lambda existing: existing.with_species(species_name.strip(), photo_path)
        )

    async def delete_location(self, location_id: str) -> None:
        key = (EntityType.LOCATION, location_id)
        async with self.locks.hold(key):
            await self.store.delete(EntityType.LOCATION, location_id)
            try:
                if not await self.oracle.is_online():
                    await self.store.enqueue_delete(EntityType.LOCATION, location_id)
                    return
                await self.reconciler.push_delete(EntityType.LOCATION, location_id)
            except asyncio.CancelledError:
                await asyncio.shield(self.store.enqueue_delete(EntityType.LOCATION, location_id))
                raise
            except RemoteError as exc:
                logger.warning("Deferring delete of location %s: %s", location_id, exc)
                await self.store.enqueue_delete(EntityType.LOCATION, location_id)
                return
            # Nothing left to push for an entity the backend no longer has
            await self.store.dequeue(EntityType.LOCATION, location_id, MutationKind.UPSERT)

    async def _update_location(
        self, location_id: str, apply: Callable[[SavedLocation], SavedLocation]
    ) -> SavedLocation:
        key = (EntityType.LOCATION, location_id)
        async with self.locks.hold(key):
            existing = await self.store.get(EntityType.LOCATION, location_id)
            if existing is None:
                raise NotFound("Location not found", {"location_id": location_id})
            updated = apply(existing)
            await self.store.put(EntityType.LOCATION, updated)
            return await self._propagate_upsert(EntityType.LOCATION, updated, is_new=False)

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def get_user_preferences(self) -> UserPreferences:
        """Never empty: with nothing stored and nothing fetched, defaults apply."""
        preferences = await self._read_one(
            "get_user_preferences", EntityType.PREFERENCES, PREFERENCES_ID,
            self.remote.fetch_preferences,
            fallback=UserPreferences(),
        )
        return preferences or UserPreferences()

    async def update_user_preferences(self, preferences: UserPreferences) -> UserPreferences:
        if preferences.id != PREFERENCES_ID:
            preferences = preferences.model_copy(update={"id": PREFERENCES_ID})
        if preferences.cache_expiry_days < 1:
            raise ValidationError("cacheExpiryDays must be at least 1")
        return await self._write(EntityType.PREFERENCES, preferences)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def clear_cache(self) -> None:
        await self.store.clear_cache()

    async def evict_expired_cache(self, retention_days: Optional[int] = None) -> int:
        """Evict stale cached records; retention comes from stored preferences if not given."""
        if retention_days is None:
            stored = await self.store.get(EntityType.PREFERENCES, PREFERENCES_ID)
            retention_days = stored.cache_expiry_days if stored else settings.CACHE_RETENTION_DAYS
        return await self.store.evict_older_than(retention_days)

    async def storage_usage(self) -> int:
        return await self.store.storage_footprint_bytes()

    async def pending_mutations(self) -> List[MutationEntry]:
        return await self.store.list_pending()

    async def export_user_data(self, path) -> Dict[str, Any]:
        from .data_export import export_user_data

        return await export_user_data(self, path)

    async def delete_all_user_data(self) -> bool:
        """Erase user data locally, then on the backend when reachable.

        Returns whether the backend confirmed the erasure.
        """
        await self.store.delete_all_user_data()
        if not await self.oracle.is_online():
            logger.warning("Offline: user data erased locally only")
            return False
        try:
            await self.remote.delete_all_user_data()
        except RemoteError as exc:
            logger.warning("Backend user-data erasure failed: %s", exc)
            return False
        return True

    async def sync_status(self) -> Dict[str, Any]:
        entries = await self.store.list_pending()
        statuses = [self.reconciler.status_of(e) for e in entries]
        snapshot = self.oracle.snapshot
        last = self.reconciler.last_report
        return {
            "online": snapshot.is_online if snapshot else None,
            "checked_at": snapshot.checked_at.isoformat() if snapshot else None,
            "state": self.reconciler.state.value,
            "pending": len(entries),
            "backing_off": statuses.count(SyncStatus.BACKING_OFF),
            "parked": statuses.count(SyncStatus.PARKED),
            "last_report": last.to_dict() if last else None,
        }

    # ------------------------------------------------------------------
    # Read policy
    # ------------------------------------------------------------------

    async def _read_one(
        self,
        operation: str,
        entity_type: EntityType,
        entity_id: str,
        fetch_remote: Callable[[], Awaitable[EntityRecord]],
        fallback: Optional[EntityRecord] = None,
    ) -> Optional[EntityRecord]:
        local = await self.store.get(entity_type, entity_id)
        if local is None:
            local = fallback
        policy = policy_for(operation)
        if should_skip_remote(policy, 0 if local is None else 1, self.search_threshold):
            return local
        if not await self.oracle.is_online():
            return local
        try:
            remote = await fetch_remote()
        except RemoteError as exc:
            if local is None:
                raise
            logger.warning("%s(%s) served from cache: %s", operation, entity_id, exc)
            return local

        if remote.id != entity_id:
            # Singletons come back under whatever id the backend keeps
            remote = remote.model_copy(update={"id": entity_id})
        if await self.store.has_pending(entity_type, entity_id, MutationKind.DELETE):
            return None
        if await self.store.has_pending(entity_type, entity_id, MutationKind.UPSERT):
            return local if local is not None else remote
        await self.store.put(entity_type, remote)
        return remote

    async def _read_many(
        self,
        operation: str,
        entity_type: EntityType,
        local: List[EntityRecord],
        fetch_remote: Callable[[], Awaitable[List[EntityRecord]]],
    ) -> List[EntityRecord]:
        policy = policy_for(operation)
        if should_skip_remote(policy, len(local), self.search_threshold):
            return newest_first(entity_type, local)
        if not await self.oracle.is_online():
            return newest_first(entity_type, local)
        try:
            remote = await fetch_remote()
        except RemoteError as exc:
            if not local:
                raise
            logger.warning("%s served %d cached records: %s", operation, len(local), exc)
            return newest_first(entity_type, local)
        return newest_first(entity_type, await self._refresh_many(entity_type, remote, local))

    async def _refresh_many(
        self, entity_type: EntityType, remote: List[EntityRecord], local: List[EntityRecord]
    ) -> List[EntityRecord]:
        """Cache ``remote``, letting records with pending local mutations win."""
        upserts = await self.store.pending_ids(entity_type, MutationKind.UPSERT)
        deletes = await self.store.pending_ids(entity_type, MutationKind.DELETE)
        await self.store.put_many(
            entity_type, [r for r in remote if r.id not in upserts and r.id not in deletes]
        )

        local_by_id = {r.id: r for r in local}
        merged, seen = [], set()
        for record in remote:
            if record.id in deletes:
                continue
            if record.id in upserts and record.id in local_by_id:
                record = local_by_id[record.id]
            merged.append(record)
            seen.add(record.id)
        # Written locally, not yet on the backend
        merged.extend(r for r in local if r.id in upserts and r.id not in seen)
        return merged

    # ------------------------------------------------------------------
    # Write policy
    # ------------------------------------------------------------------

    async def _write(self, entity_type: EntityType, record: EntityRecord, is_new: bool = False):
        async with self.locks.hold((entity_type, record.id)):
            await self.store.put(entity_type, record)
            return await self._propagate_upsert(entity_type, record, is_new)

    async def _propagate_upsert(self, entity_type: EntityType, record: EntityRecord, is_new: bool):
        """Push a locally committed record; callers hold the record's key lock."""
        try:
            if not await self.oracle.is_online():
                await self.store.enqueue_upsert(entity_type, record.id)
                return record
            server_record = await self.reconciler.push_upsert(entity_type, record, is_new=is_new)
        except asyncio.CancelledError:
            # The local write stands; make sure reconcile picks it up
            await asyncio.shield(self.store.enqueue_upsert(entity_type, record.id))
            raise
        except RemoteError as exc:
            logger.warning("Deferring sync of %s/%s: %s", entity_type.value, record.id, exc)
            await self.store.enqueue_upsert(entity_type, record.id)
            return record

        await self.reconciler.merge_server_record(entity_type, record.id, server_record)
        await self.store.dequeue(entity_type, record.id, MutationKind.UPSERT)
        return server_record
