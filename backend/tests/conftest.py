"""Shared fixtures: an in-memory fake backend behind httpx.MockTransport, a frozen clock, temp SQLite stores."""
import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from fungiscan.entities.mushroom import Mushroom
from fungiscan.services.connectivity import ConnectivityOracle
from fungiscan.services.local_store import LocalStore
from fungiscan.services.offline_sync import Reconciler
from fungiscan.services.remote_client import RemoteClient
from fungiscan.services.repository import SyncRepository

BASE_URL = "https://api.test/v1"
START = datetime(2026, 1, 1, 12, 0, 0)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeReachability:
    def __init__(self, online: bool = True):
        self.online = online
        self.calls = 0

    async def has_network(self) -> bool:
        self.calls += 1
        return self.online


class FakeBackend:
    """Just enough of the FungiScan REST API to exercise the client and the sync flows."""

    COLLECTIONS = ("mushrooms", "identifications", "locations")

    def __init__(self):
        self.records: Dict[str, Dict[str, dict]] = {c: {} for c in self.COLLECTIONS}
        self.preferences: Optional[dict] = None
        self.verifications: List[Tuple[str, dict]] = []
        self.requests: List[Tuple[str, str]] = []
        self.health_ok = True
        self.health_calls = 0
        # (method, path) -> HTTP status or "network"
        self.failures: Dict[Tuple[str, str], Union[int, str]] = {}
        self.assign_ids = False
        self._next_id = 0
        self.user_data_deleted = False

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add(self, collection: str, record) -> None:
        payload = record.to_wire() if hasattr(record, "to_wire") else dict(record)
        self.records[collection][payload["id"]] = payload

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path[len("/v1"):]
        self.requests.append((method, path))

        failure = self.failures.get((method, path))
        if failure == "network":
            raise httpx.ConnectError("connection refused", request=request)
        if failure is not None:
            return httpx.Response(failure, json={"message": "injected failure"})

        if path == "/health":
            self.health_calls += 1
            return httpx.Response(200 if self.health_ok else 503, json={"status": "ok"})
        if path == "/user/preferences":
            if method == "PUT":
                self.preferences = json.loads(request.content)
            if self.preferences is None:
                return httpx.Response(404, json={"message": "no preferences"})
            return httpx.Response(200, json=self.preferences)
        if path == "/user/data" and method == "DELETE":
            self.user_data_deleted = True
            for collection in ("identifications", "locations"):
                self.records[collection].clear()
            self.preferences = None
            return httpx.Response(204)
        if path == "/mushrooms/search":
            traits = request.url.params.get("traits", "").split(",")
            hits = [m for m in self.records["mushrooms"].values()
                    if Mushroom.from_wire(m).has_any_trait(traits)]
            return httpx.Response(200, json=hits)
        if path == "/identifications/recent":
            limit = int(request.url.params.get("limit", 10))
            recent = sorted(self.records["identifications"].values(),
                            key=lambda r: r["timestamp"], reverse=True)
            return httpx.Response(200, json=recent[:limit])

        parts = [p for p in path.split("/") if p]
        collection = parts[0] if parts else ""
        if collection not in self.records:
            return httpx.Response(404, json={"message": "unknown route"})
        store = self.records[collection]

        if len(parts) == 4 and parts[2:] == ["lookalikes", "dangerous"]:
            mushroom = store.get(parts[1])
            if mushroom is None:
                return httpx.Response(404, json={"message": "not found"})
            dangerous = [l.to_wire() for l in Mushroom.from_wire(mushroom).dangerous_lookalikes()]
            return httpx.Response(200, json=dangerous)
        if len(parts) == 3 and parts[2] == "verify" and method == "POST":
            self.verifications.append((parts[1], json.loads(request.content)))
            return httpx.Response(202, json={"status": "pending"})

        if len(parts) == 1:
            if method == "GET":
                return httpx.Response(200, json=list(store.values()))
            if method == "POST":
                payload = json.loads(request.content)
                if self.assign_ids:
                    self._next_id += 1
                    payload["id"] = f"srv-{self._next_id}"
                store[payload["id"]] = payload
                return httpx.Response(201, json=payload)

        if len(parts) == 2:
            entity_id = parts[1]
            if entity_id not in store:
                return httpx.Response(404, json={"message": "not found"})
            if method == "GET":
                return httpx.Response(200, json=store[entity_id])
            if method == "PUT":
                store[entity_id] = json.loads(request.content)
                return httpx.Response(200, json=store[entity_id])
            if method == "DELETE":
                del store[entity_id]
                return httpx.Response(204)

        return httpx.Response(405, json={"message": "method not allowed"})


def make_mushroom(mushroom_id: str, common_name: str, scientific_name: str = "", **fields) -> Mushroom:
    return Mushroom(
        id=mushroom_id,
        common_name=common_name,
        scientific_name=scientific_name or f"{common_name} sp.",
        **fields,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def reachability():
    return FakeReachability()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'fungiscan.db'}"


@pytest_asyncio.fixture
async def store(db_url, clock):
    local_store = LocalStore(db_url, clock=clock)
    await local_store.create_schema()
    yield local_store
    await local_store.close()


@pytest_asyncio.fixture
async def remote(backend):
    client = RemoteClient(base_url=BASE_URL, api_key="test-key", transport=backend.transport)
    yield client
    await client.aclose()


@pytest.fixture
def oracle(remote, reachability, clock):
    return ConnectivityOracle(remote, reachability, window_seconds=30, clock=clock)


@pytest_asyncio.fixture
async def repo(store, remote, oracle, clock):
    reconciler = Reconciler(
        store, remote, oracle,
        max_attempts=3, retry_base_seconds=30, retry_max_seconds=600, clock=clock,
    )
    repository = SyncRepository(store, remote, oracle, reconciler, search_threshold=5, clock=clock)
    yield repository
    await repository.aclose()


def go_offline(reachability: FakeReachability, oracle: ConnectivityOracle) -> None:
    reachability.online = False
    oracle.invalidate()


def go_online(reachability: FakeReachability, oracle: ConnectivityOracle) -> None:
    reachability.online = True
    oracle.invalidate()
