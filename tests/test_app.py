import time
from typing import Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.schemas import Booking, PaymentRecord, StoredStation
from datastore.tables import JsonTable
from services.aggregator import StationAggregator
from services.bookings import BookingService
from services.catalog import StationCatalog
from services.ledger import LedgerBook
from services.overpass import OverpassClient
from services.payments import PaymentService, build_default_payment_service
from services.stations import StationSearchService, build_default_station_service
from storage.kv_store import LocalKeyValueStore

OVERPASS_ELEMENTS = [
    {"type": "node", "id": 1001, "lat": 12.9720, "lon": 77.5950, "tags": {"name": "Metro Charger"}},
    {"type": "node", "id": 1002, "lat": 12.9816, "lon": 77.5946, "tags": {"operator": "Tata Power"}},
]


def _overpass_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"elements": OVERPASS_ELEMENTS})


@pytest.fixture
def api_client(tmp_path, monkeypatch) -> Iterator[TestClient]:
    overpass = OverpassClient(
        endpoints=["https://overpass.test/api/interpreter"],
        http_client=httpx.Client(transport=httpx.MockTransport(_overpass_handler)),
    )
    catalog = StationCatalog(
        JsonTable(name="stations", model=StoredStation, persistence_path=tmp_path / "stations.json")
    )
    station_service = StationSearchService(
        overpass=overpass,
        catalog=catalog,
        aggregator=StationAggregator(),
        workers=1,
    )
    ledger_book = LedgerBook(LocalKeyValueStore(name="coins", root_path=tmp_path / "ledger"))
    payment_service = PaymentService(
        ledger_book=ledger_book,
        table=JsonTable(name="payments", model=PaymentRecord, persistence_path=tmp_path / "payments.json"),
        verification_delay=0,
    )

    booking_service = BookingService(
        JsonTable(name="bookings", model=Booking, persistence_path=tmp_path / "bookings.json")
    )

    def build_test_station_service() -> StationSearchService:
        return station_service

    def build_test_payment_service() -> PaymentService:
        return payment_service

    build_test_station_service.cache_clear = lambda: None  # type: ignore[attr-defined]
    build_test_payment_service.cache_clear = lambda: None  # type: ignore[attr-defined]

    monkeypatch.setattr("app.main.build_default_station_service", build_test_station_service)
    monkeypatch.setattr("app.main.build_default_payment_service", build_test_payment_service)
    monkeypatch.setattr("app.api.build_default_station_service", build_test_station_service)
    monkeypatch.setattr("app.api.build_default_payment_service", build_test_payment_service)
    monkeypatch.setattr("app.api.build_default_catalog", lambda: catalog)
    monkeypatch.setattr("app.api.build_default_ledger_book", lambda: ledger_book)
    monkeypatch.setattr("app.api.build_default_booking_service", lambda: booking_service)

    app = create_app()
    with TestClient(app) as client:
        yield client


@pytest.fixture
def isolated_defaults(tmp_path, monkeypatch) -> Iterator[None]:
    from datastore.tables import build_default_payment_table, build_default_station_table
    from services.catalog import build_default_catalog
    from services.ledger import build_default_ledger_book
    from settings import get_settings
    from storage.kv_store import build_default_store

    monkeypatch.setenv("STATION_TABLE_PATH", str(tmp_path / "stations.json"))
    monkeypatch.setenv("PAYMENT_TABLE_PATH", str(tmp_path / "payments.json"))
    monkeypatch.setenv("BOOKING_TABLE_PATH", str(tmp_path / "bookings.json"))
    monkeypatch.setenv("LEDGER_ROOT_PATH", str(tmp_path / "ledger"))
    caches = (
        get_settings,
        build_default_station_table,
        build_default_payment_table,
        build_default_store,
        build_default_catalog,
        build_default_ledger_book,
    )
    for cache in caches:
        cache.cache_clear()
    yield
    for cache in caches:
        cache.cache_clear()


def test_lifespan_shuts_down_services_and_clears_cache(isolated_defaults) -> None:
    app = create_app()

    with TestClient(app):
        stations_during = build_default_station_service()
        payments_during = build_default_payment_service()
        assert stations_during.executor._shutdown is False

    assert stations_during.executor._shutdown is True
    assert payments_during.executor._shutdown is True

    stations_after = build_default_station_service()
    try:
        assert stations_after is not stations_during
        assert stations_after.executor._shutdown is False
    finally:
        stations_after.shutdown()
        build_default_station_service.cache_clear()


def test_nearby_returns_ranked_stations(api_client: TestClient) -> None:
    response = api_client.get("/stations/nearby", params={"latitude": 12.9716, "longitude": 77.5946})

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert payload["radius_km"] == 5.0
    assert payload["per_source_count"] == {"overpass": 2}
    assert payload["nearest_km"] == 0.1
    names = [station["name"] for station in payload["stations"]]
    assert names == ["Metro Charger", "Tata Power Charging Station"]
    distances = [station["distance_km"] for station in payload["stations"]]
    assert distances == sorted(distances)


@pytest.mark.parametrize("radius", ["-3", "0", "inf"])
def test_nearby_echoes_the_radius_actually_used(api_client: TestClient, radius: str) -> None:
    response = api_client.get(
        "/stations/nearby", params={"latitude": 12.9716, "longitude": 77.5946, "radius_km": radius}
    )

    assert response.status_code == 200
    assert response.json()["radius_km"] == 5.0


def test_nearby_rejects_out_of_range_coordinates(api_client: TestClient) -> None:
    response = api_client.get("/stations/nearby", params={"latitude": 95, "longitude": 77.59})

    assert response.status_code == 422


def test_catalog_station_appears_in_nearby_results(api_client: TestClient) -> None:
    created = api_client.post(
        "/catalog/stations",
        json={
            "name": "Spark Hub",
            "latitude": 12.9720,
            "longitude": 77.5950,
            "price_per_kwh": 18,
            "power_kw": 60,
            "connector_types": ["CCS2"],
        },
    )
    assert created.status_code == 201
    station_id = created.json()["id"]

    response = api_client.get("/stations/nearby", params={"latitude": 12.9716, "longitude": 77.5946})
    stations = response.json()["stations"]

    assert stations[0]["id"] == station_id
    assert stations[0]["source"] == "first_party"
    assert response.json()["total"] == 2

    detail = api_client.get(f"/stations/{station_id}")
    assert detail.status_code == 200
    assert detail.json()["name"] == "Spark Hub"


def test_catalog_crud(api_client: TestClient) -> None:
    created = api_client.post(
        "/catalog/stations",
        json={"name": "Depot", "latitude": 12.0, "longitude": 77.0, "price_per_kwh": 12},
    ).json()

    listed = api_client.get("/catalog/stations", params={"min_price": 10, "max_price": 15})
    assert [station["id"] for station in listed.json()] == [created["id"]]

    patched = api_client.patch(f"/catalog/stations/{created['id']}", json={"available": False})
    assert patched.status_code == 200
    assert patched.json()["available"] is False

    cleared = api_client.patch(f"/catalog/stations/{created['id']}", json={"name": None})
    assert cleared.status_code == 400

    assert api_client.delete(f"/catalog/stations/{created['id']}").status_code == 204
    assert api_client.delete(f"/catalog/stations/{created['id']}").status_code == 404


def test_unknown_station_returns_not_found(api_client: TestClient) -> None:
    response = api_client.get("/stations/station-missing")

    assert response.status_code == 404
    assert "station-missing" in response.json()["detail"]


def _poll(client: TestClient, path: str, done, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    last_payload: dict | None = None
    while time.monotonic() < deadline:
        response = client.get(path)
        assert response.status_code == 200
        last_payload = response.json()
        if done(last_payload):
            return last_payload
        time.sleep(0.05)
    pytest.fail(f"{path} did not settle: {last_payload}")


def test_feed_query_lifecycle(api_client: TestClient) -> None:
    accepted = api_client.post(
        "/feeds/map/queries", json={"latitude": 12.9716, "longitude": 77.5946}
    )
    assert accepted.status_code == 202
    assert accepted.json() == {"feed_id": "map", "token": 1}

    state = _poll(api_client, "/feeds/map", lambda payload: not payload["pending"])
    assert state["applied_token"] == 1
    assert len(state["stations"]) == 2

    assert api_client.delete("/feeds/map").status_code == 204
    assert api_client.get("/feeds/map").status_code == 404


def test_wallet_earn_and_spend(api_client: TestClient) -> None:
    wallet = api_client.get("/wallets/alice")
    assert wallet.status_code == 200
    assert wallet.json()["balance"] == 100

    earned = api_client.post("/wallets/alice/earn", json={"amount": 50})
    assert earned.json()["balance"] == 150

    rejected = api_client.post("/wallets/alice/spend", json={"amount": 500})
    assert rejected.status_code == 409
    assert rejected.json()["detail"] == "Not enough Spark Coins. You need 500 coins but have 150."

    spent = api_client.post("/wallets/alice/spend", json={"amount": 20, "description": "Discount"})
    assert spent.json()["balance"] == 130
    assert spent.json()["entries"][-1]["description"] == "Discount"

    assert api_client.post("/wallets/alice/earn", json={"amount": 0}).status_code == 422

    reset = api_client.post("/wallets/alice/reset")
    assert reset.json()["balance"] == 100


def test_payment_flow_credits_coins(api_client: TestClient) -> None:
    opened = api_client.post("/payments", json={"user_id": "alice", "amount": 436})
    assert opened.status_code == 201
    session = opened.json()
    assert session["state"] == "idle"
    assert session["seconds_remaining"] > 0

    upi = api_client.get(f"/payments/{session['id']}/upi")
    assert upi.status_code == 200
    assert upi.json()["url"].startswith("upi://pay?pa=evsparkhub@okaxis")

    started = api_client.post(f"/payments/{session['id']}/initiate")
    assert started.status_code == 202

    final = _poll(
        api_client,
        f"/payments/{session['id']}",
        lambda payload: payload["state"] not in {"idle", "processing"},
    )
    assert final["state"] == "success"
    assert final["coins_earned"] == 43
    assert api_client.get("/wallets/alice").json()["balance"] == 143

    again = api_client.post(f"/payments/{session['id']}/initiate")
    assert again.status_code == 409

    closed = api_client.delete(f"/payments/{session['id']}")
    assert closed.json()["closed"] is True


def test_payment_errors(api_client: TestClient) -> None:
    assert api_client.post("/payments", json={"user_id": "alice", "amount": 0}).status_code == 422
    assert api_client.get("/payments/missing").status_code == 404

    opened = api_client.post("/payments", json={"user_id": "alice", "amount": 100}).json()
    retry = api_client.post(f"/payments/{opened['id']}/retry")
    assert retry.status_code == 409


def test_health_endpoints(api_client: TestClient) -> None:
    assert api_client.get("/health").json() == {"status": "ok"}
    assert api_client.get("/").json()["status"] == "ok"


def test_payment_history_lists_a_users_attempts_newest_first(api_client: TestClient) -> None:
    first = api_client.post("/payments", json={"user_id": "dana", "amount": 120}).json()
    api_client.post(f"/payments/{first['id']}/initiate")
    _poll(api_client, f"/payments/{first['id']}", lambda payload: payload["state"] == "success")
    second = api_client.post("/payments", json={"user_id": "dana", "amount": 80}).json()
    api_client.post(f"/payments/{second['id']}/initiate")
    _poll(api_client, f"/payments/{second['id']}", lambda payload: payload["state"] == "success")
    other = api_client.post("/payments", json={"user_id": "eve", "amount": 50}).json()
    api_client.post(f"/payments/{other['id']}/initiate")

    history = api_client.get("/payments", params={"user_id": "dana"})

    assert history.status_code == 200
    payload = history.json()
    assert payload["total"] == 2
    assert [row["amount"] for row in payload["payments"]] == [80, 120]
    assert {row["status"] for row in payload["payments"]} == {"success"}
    assert api_client.get("/payments", params={"user_id": "nobody"}).json()["total"] == 0


def test_scanned_upi_code_opens_a_payment(api_client: TestClient) -> None:
    scanned = api_client.post(
        "/payments/scan",
        json={
            "user_id": "alice",
            "content": "upi://pay?pa=station@okaxis&pn=Station&am=250&cu=INR&tn=Slot%2042",
        },
    )

    assert scanned.status_code == 201
    session = scanned.json()
    assert session["amount"] == 250
    assert session["description"] == "Slot 42"
    assert session["state"] == "idle"


@pytest.mark.parametrize(
    "content",
    ["https://example.com/not-upi", "upi://pay?pa=station@okaxis&pn=Station", "upi://pay?pa=x@y&am=-5"],
)
def test_unusable_scanned_codes_are_rejected(api_client: TestClient, content: str) -> None:
    response = api_client.post("/payments/scan", json={"user_id": "alice", "content": content})

    assert response.status_code == 400


def test_booking_lifecycle(api_client: TestClient) -> None:
    created = api_client.post(
        "/bookings",
        json={
            "user_id": "alice",
            "station_id": "station-1",
            "start_time": "2026-03-01T10:00:00Z",
            "end_time": "2026-03-01T11:00:00Z",
        },
    )
    assert created.status_code == 201
    booking = created.json()
    assert booking["status"] == "pending"

    api_client.post(
        "/bookings",
        json={
            "user_id": "alice",
            "station_id": "station-2",
            "start_time": "2026-03-05T09:00:00",
            "end_time": "2026-03-05T10:00:00",
        },
    )

    listed = api_client.get("/bookings", params={"user_id": "alice"}).json()
    assert [item["station_id"] for item in listed] == ["station-2", "station-1"]
    early = api_client.get(
        "/bookings", params={"user_id": "alice", "end_date": "2026-03-02T00:00:00Z"}
    ).json()
    assert [item["station_id"] for item in early] == ["station-1"]

    assert api_client.get(f"/bookings/{booking['id']}", params={"user_id": "bob"}).status_code == 404

    confirmed = api_client.patch(
        f"/bookings/{booking['id']}", json={"user_id": "alice", "status": "confirmed"}
    )
    assert confirmed.json()["status"] == "confirmed"
    assert api_client.get(
        "/bookings", params={"user_id": "alice", "status": "confirmed"}
    ).json()[0]["id"] == booking["id"]

    cancelled = api_client.post(f"/bookings/{booking['id']}/cancel", params={"user_id": "alice"})
    assert cancelled.json()["status"] == "cancelled"
    reopened = api_client.patch(
        f"/bookings/{booking['id']}", json={"user_id": "alice", "status": "confirmed"}
    )
    assert reopened.status_code == 409


def test_booking_must_end_after_it_starts(api_client: TestClient) -> None:
    response = api_client.post(
        "/bookings",
        json={
            "user_id": "alice",
            "station_id": "station-1",
            "start_time": "2026-03-01T11:00:00Z",
            "end_time": "2026-03-01T10:00:00Z",
        },
    )

    assert response.status_code == 422
