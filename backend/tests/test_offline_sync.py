"""Tests for the reconciler: queue draining, partial failure, backoff and parking."""
from datetime import timedelta

from sqlalchemy import update

from conftest import go_offline, go_online, make_mushroom
from fungiscan.entities.base import Coordinates, EntityType
from fungiscan.entities.identification import IdentificationResult
from fungiscan.entities.preferences import UserPreferences
from fungiscan.models.sync import EntityRow, MutationKind
from fungiscan.services.offline_sync import ReconcileState, SyncStatus, retry_delay

PINE_RIDGE = Coordinates(latitude=37.1, longitude=-122.2)


def test_retry_delay_grows_exponentially_and_is_capped():
    assert retry_delay(1, 30, 600) == timedelta(seconds=30)
    assert retry_delay(2, 30, 600) == timedelta(seconds=60)
    assert retry_delay(3, 30, 600) == timedelta(seconds=120)
    assert retry_delay(10, 30, 600) == timedelta(seconds=600)


async def _queue_three_writes(repo):
    await repo.save_location("Pine Ridge", "", PINE_RIDGE)
    await repo.save_location("Oak Hollow", "chanterelles after rain", Coordinates(latitude=37.3, longitude=-122.0))
    await repo.update_user_preferences(UserPreferences(dark_mode_enabled=True))


class TestReconcileConvergence:
    async def test_accepting_remote_drains_queue(self, repo, store, backend, reachability, oracle):
        go_offline(reachability, oracle)
        await _queue_three_writes(repo)
        assert await store.pending_count() == 3

        go_online(reachability, oracle)
        report = await repo.reconcile()

        assert report.success is True
        assert report.replayed == 3
        assert report.remaining == 0
        assert await store.pending_count() == 0
        assert len(backend.records["locations"]) == 2
        assert backend.preferences["darkModeEnabled"] is True

    async def test_rejected_item_stays_queued_alone(self, repo, store, backend, reachability, oracle):
        go_offline(reachability, oracle)
        await _queue_three_writes(repo)
        backend.failures[("PUT", "/user/preferences")] = 500

        go_online(reachability, oracle)
        report = await repo.reconcile()

        assert report.success is False
        assert report.replayed == 2
        assert [(f.entity_type, f.attempts) for f in report.failures] == [("preferences", 1)]
        pending = await store.list_pending()
        assert [(p.entity_type, p.entity_id) for p in pending] == [(EntityType.PREFERENCES, "user_preferences")]
        assert pending[0].last_error is not None

    async def test_corrupt_record_does_not_block_later_items(self, repo, store, backend, reachability, oracle):
        go_offline(reachability, oracle)
        bad = await repo.save_location("Bad", "", PINE_RIDGE)
        good = await repo.save_location("Good", "", PINE_RIDGE)
        async with store._session() as session:
            await session.execute(
                update(EntityRow).where(EntityRow.entity_id == bad.id).values(payload={"id": bad.id})
            )

        go_online(reachability, oracle)
        report = await repo.reconcile()

        assert report.success is False
        assert report.replayed == 1
        assert [(f.entity_id, f.attempts) for f in report.failures] == [(bad.id, 1)]
        assert good.id in backend.records["locations"]
        assert bad.id not in backend.records["locations"]
        assert [p.entity_id for p in await store.list_pending()] == [bad.id]
        assert repo.reconciler.last_report is report

    async def test_offline_reconcile_attempts_nothing(self, repo, store, backend, reachability, oracle):
        go_offline(reachability, oracle)
        empty = await repo.reconcile()
        assert empty.success is True and empty.offline is True

        await repo.save_location("Pine Ridge", "", PINE_RIDGE)
        report = await repo.reconcile()

        assert report.success is False
        assert report.remaining == 1
        assert not [r for r in backend.requests if r[0] != "GET"]

    async def test_state_returns_to_idle_and_report_is_kept(self, repo):
        report = await repo.reconcile()
        assert repo.reconciler.state == ReconcileState.IDLE
        assert repo.reconciler.last_report is report
        assert report.to_dict()["success"] is True


class TestReplayKinds:
    async def test_offline_identification_is_created_remotely(self, repo, backend, reachability, oracle):
        result = IdentificationResult(
            id="ident-1",
            image_url="file:///photos/1.jpg",
            identified_mushroom=make_mushroom("m1", "Chanterelle"),
        )
        go_offline(reachability, oracle)
        await repo.save_identification_result(result)

        go_online(reachability, oracle)
        assert (await repo.reconcile()).success
        assert ("POST", "/identifications") in backend.requests
        assert "ident-1" in backend.records["identifications"]

    async def test_offline_expert_request_is_sent_on_reconcile(self, repo, backend, reachability, oracle):
        go_offline(reachability, oracle)
        await repo.request_expert_verification("ident-1", "Is the stem hollow?")

        go_online(reachability, oracle)
        assert (await repo.reconcile()).success
        assert backend.verifications == [("ident-1", {"userQuery": "Is the stem hollow?"})]

    async def test_delete_of_unknown_remote_record_counts_as_success(self, repo, store, backend, reachability, oracle):
        go_offline(reachability, oracle)
        location = await repo.save_location("Pine Ridge", "", PINE_RIDGE)
        await repo.delete_location(location.id)
        assert await store.pending_ids(EntityType.LOCATION, MutationKind.DELETE) == {location.id}

        go_online(reachability, oracle)
        report = await repo.reconcile()

        assert report.success is True
        assert ("DELETE", f"/locations/{location.id}") in backend.requests
        assert await store.pending_count() == 0

    async def test_upsert_without_local_record_is_dropped(self, repo, store):
        await store.enqueue_upsert(EntityType.LOCATION, "vanished")
        report = await repo.reconcile()
        assert report.success is True
        assert await store.pending_count() == 0

    async def test_read_only_type_is_dropped_not_retried(self, repo, store):
        await store.put(EntityType.MUSHROOM, make_mushroom("m1", "Morel"))
        await store.enqueue_upsert(EntityType.MUSHROOM, "m1")
        report = await repo.reconcile()
        assert report.failures == []
        assert await store.pending_count() == 0


class TestRetryPolicy:
    # Queued through the online write path: no reconnect event, no background pass
    async def _queue_rejected_preferences(self, repo, backend, status):
        backend.failures[("PUT", "/user/preferences")] = status
        await repo.update_user_preferences(UserPreferences(dark_mode_enabled=True))

    async def test_failed_item_backs_off(self, repo, store, backend, clock):
        await self._queue_rejected_preferences(repo, backend, 502)
        first = await repo.reconcile()
        assert first.failures[0].attempts == 1
        puts = backend.requests.count(("PUT", "/user/preferences"))

        again = await repo.reconcile()
        assert again.skipped == 1
        assert again.success is False
        assert backend.requests.count(("PUT", "/user/preferences")) == puts
        entry = (await store.list_pending())[0]
        assert repo.reconciler.status_of(entry) == SyncStatus.BACKING_OFF

        del backend.failures[("PUT", "/user/preferences")]
        clock.advance(seconds=31)
        assert (await repo.reconcile()).success is True

    async def test_item_is_parked_after_max_attempts_until_forced(self, repo, store, backend, clock):
        await self._queue_rejected_preferences(repo, backend, 500)

        for _ in range(3):
            await repo.reconcile()
            clock.advance(minutes=10)

        entry = (await store.list_pending())[0]
        assert entry.attempts == 3
        assert repo.reconciler.status_of(entry) == SyncStatus.PARKED

        del backend.failures[("PUT", "/user/preferences")]
        clock.advance(days=1)
        parked = await repo.reconcile()
        assert parked.skipped == 1 and parked.replayed == 0

        forced = await repo.reconcile(force=True)
        assert forced.success is True
        assert await store.pending_count() == 0

    async def test_user_data_deletion_purges_parked_items(self, repo, store, reachability, oracle):
        go_offline(reachability, oracle)
        await repo.save_location("Pine Ridge", "", PINE_RIDGE)
        assert await repo.delete_all_user_data() is False
        assert await store.pending_count() == 0


class TestPineRidgeScenario:
    async def test_offline_location_gets_canonical_id_after_reconcile(
        self, repo, store, backend, reachability, oracle
    ):
        go_offline(reachability, oracle)
        location = await repo.save_location(name="Pine Ridge", notes="", coordinates=PINE_RIDGE)

        # Visible immediately, with a generated id and a queued upsert
        assert location.id
        assert await store.get(EntityType.LOCATION, location.id) == location
        assert await store.has_pending(EntityType.LOCATION, location.id, MutationKind.UPSERT)
        assert location.id in [l.id for l in await repo.get_all_saved_locations()]

        backend.assign_ids = True
        go_online(reachability, oracle)
        report = await repo.reconcile()

        assert report.success is True
        assert await store.get(EntityType.LOCATION, location.id) is None
        canonical = await store.get(EntityType.LOCATION, "srv-1")
        assert canonical.name == "Pine Ridge"
        assert canonical.coordinates == PINE_RIDGE
        assert await store.pending_count() == 0
        assert [r for r in backend.requests if r[0] in ("PUT", "POST")] == [
            ("PUT", f"/locations/{location.id}"),
            ("POST", "/locations"),
        ]
