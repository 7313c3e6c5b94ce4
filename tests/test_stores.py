import json
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError

from app.main import get_optional_secret_store, get_store_service
from app.stores import (
    HARDCODED_STORES,
    SOURCE_BUILTIN,
    SOURCE_DATABASE,
    StoreConfigService,
    hardcoded_store,
)
from tests.fakes import CASTLE_ROCK, CASTLE_ROCK_STORE, make_client, make_session_factory, store_service

LOWRY = {"token": "37CE8WDS8k6isMGLMB9PRA==", "name": "Lowry", "id": "619", "state": "CO", "address": "Lowry Blvd"}
CHEYENNE = {"token": "wy-token-0001", "name": "Cheyenne", "id": "900", "state": "WY", "timezone": "America/Denver"}


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _broken_session():
    raise OperationalError("SELECT 1", {}, Exception("database is down"))


def test_hardcoded_store_table() -> None:
    assert len(HARDCODED_STORES) == 22
    store = hardcoded_store(CASTLE_ROCK)
    assert store["name"] == "Castle Rock"
    assert store["id"] == "109"
    assert store["timezone"] == "America/Denver"
    assert hardcoded_store("missing") is None


def test_lookup_populates_cache_file(tmp_path) -> None:
    service = store_service(tmp_path, stores=(CASTLE_ROCK_STORE, LOWRY, CHEYENNE))
    assert service.health_check()["cacheStatus"] == "missing"

    store = service.get_store(CASTLE_ROCK)
    assert store["id"] == "109"
    assert service.get_store("unknown") is None

    cached = json.loads((tmp_path / "store-cache.json").read_text())
    assert cached["totalStores"] == 3
    assert cached["cacheVersion"] == "1.0"
    assert set(cached["stores"]) == {CASTLE_ROCK, LOWRY["token"], CHEYENNE["token"]}

    assert [s["name"] for s in service.list_active_stores()] == ["Castle Rock", "Cheyenne", "Lowry"]
    assert [s["name"] for s in service.list_stores_by_state("WY")] == ["Cheyenne"]


def test_fresh_cache_file_is_reused(tmp_path) -> None:
    clock = Clock()
    store_service(tmp_path, clock=clock).refresh_cache()

    # a new process reading the same file does not need the database
    restarted = StoreConfigService(str(tmp_path / "store-cache.json"), 900, _broken_session, clock=clock)
    assert restarted.get_store(CASTLE_ROCK)["address"] == CASTLE_ROCK_STORE["address"]
    assert restarted.health_check()["cacheStatus"] == "healthy"


def test_stale_cache_refreshes_and_falls_back(tmp_path) -> None:
    clock = Clock()
    store_service(tmp_path, stores=(CASTLE_ROCK_STORE, CHEYENNE), clock=clock).refresh_cache()

    clock.now += timedelta(seconds=901)
    service = StoreConfigService(str(tmp_path / "store-cache.json"), 900, _broken_session, clock=clock)
    # the database is down, so the refresh serves the built-in table
    assert service.get_store(CHEYENNE["token"]) is None
    assert service.get_store(CASTLE_ROCK)["id"] == "109"
    assert service.health_check()["totalStores"] == len(HARDCODED_STORES)

    clock.now += timedelta(seconds=901)
    assert service.health_check()["cacheStatus"] == "stale"


def test_unreadable_cache_file_is_ignored(tmp_path) -> None:
    (tmp_path / "store-cache.json").write_text("{not json")
    service = store_service(tmp_path)
    assert service.get_store(CASTLE_ROCK)["name"] == "Castle Rock"
    assert json.loads((tmp_path / "store-cache.json").read_text())["totalStores"] == 1


def _client(tmp_path):
    factory = make_session_factory()
    stores = store_service(tmp_path, stores=(CASTLE_ROCK_STORE,), session_factory=factory)
    return make_client(factory, overrides={get_store_service: lambda: stores})


def test_store_health_route(tmp_path) -> None:
    client = _client(tmp_path)
    with client:
        missing = client.get("/api/stores/health")
        assert missing.status_code == 503
        assert missing.json()["data"]["cacheStatus"] == "missing"

        refreshed = client.post("/api/stores/refresh").json()
        assert refreshed["data"]["totalStores"] == 1

        healthy = client.get("/api/stores/health")
        assert healthy.status_code == 200
        assert healthy.json()["data"]["cacheStatus"] == "healthy"


def test_store_lookup_and_listing_routes(tmp_path) -> None:
    client = _client(tmp_path)
    with client:
        assert client.get("/api/stores/lookup").status_code == 400
        assert client.get("/api/stores/lookup", params={"token": "nope"}).status_code == 404
        found = client.get("/api/stores/lookup", params={"token": CASTLE_ROCK}).json()
        assert found["data"]["name"] == "Castle Rock"

        listed = client.get("/api/stores").json()
        assert listed["summary"]["totalStores"] == 1
        assert listed["summary"]["byState"] == {"CO": 1}
        assert listed["summary"]["withAddress"] == 1
        assert listed["summary"]["filter"] == "all"

        wyoming = client.get("/api/stores", params={"state": "WY"}).json()
        assert wyoming["summary"]["filter"] == {"state": "WY"}
        assert wyoming["data"] == []


def test_store_admin_routes(tmp_path) -> None:
    client = _client(tmp_path)
    with client:
        created = client.post("/api/stores", json=CHEYENNE)
        assert created.status_code == 201
        assert created.json()["data"]["name"] == "Cheyenne"
        assert client.get("/api/stores", params={"state": "WY"}).json()["summary"]["totalStores"] == 1

        assert client.post("/api/stores", json=CHEYENNE).status_code == 409
        incomplete = client.post("/api/stores", json={"name": "No token"})
        assert incomplete.status_code == 400
        assert incomplete.json()["error"] == "Missing required fields: token, id"

        # location tokens can contain slashes
        updated = client.put(f"/api/stores/{CASTLE_ROCK}", json={"phone": "303-555-0100", "manager": "Kim"})
        assert updated.status_code == 200
        store = client.get("/api/stores/lookup", params={"token": CASTLE_ROCK}).json()["data"]
        assert store["phone"] == "303-555-0100"
        assert store["manager"] == "Kim"

        assert client.put(f"/api/stores/{CASTLE_ROCK}", json={"id": "999"}).status_code == 400
        assert client.put("/api/stores/unknown", json={"phone": "1"}).status_code == 404


def test_active_stores_report_builtin_source(tmp_path) -> None:
    (tmp_path / "store-cache.json").write_text("{not json")
    service = StoreConfigService(str(tmp_path / "store-cache.json"), 900, _broken_session)
    stores, source = service.active_stores()
    assert source == SOURCE_BUILTIN
    assert len(stores) == len(HARDCODED_STORES)

    healthy = store_service(tmp_path / "fresh")
    assert healthy.active_stores()[1] == SOURCE_DATABASE


def test_configurations_flag_builtin_fallback(tmp_path) -> None:
    (tmp_path / "store-cache.json").write_text("{not json")
    service = StoreConfigService(str(tmp_path / "store-cache.json"), 900, _broken_session)
    client = make_client(
        overrides={get_store_service: lambda: service, get_optional_secret_store: lambda: None}
    )
    with client:
        body = client.get("/api/par-brink/configurations").json()
        assert body["enhanced"] is False
        assert body["fallback"] is True
        assert body["totalLocations"] == len(HARDCODED_STORES)
