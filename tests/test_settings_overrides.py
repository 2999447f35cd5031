from __future__ import annotations

from pathlib import Path
from typing import Iterable

from datastore.tables import build_default_payment_table, build_default_station_table
from services.ledger import build_default_ledger_book
from services.payments import build_default_payment_service
from services.stations import build_default_station_service
from settings import DEFAULT_OVERPASS_ENDPOINTS, get_settings
from storage.kv_store import build_default_store
from services.catalog import build_default_catalog

_CACHES = (
    get_settings,
    build_default_station_table,
    build_default_payment_table,
    build_default_store,
    build_default_catalog,
    build_default_ledger_book,
    build_default_station_service,
    build_default_payment_service,
)


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("OVERPASS_ENDPOINTS", "https://one.test/api, https://two.test/api")
    monkeypatch.setenv("OPEN_CHARGE_MAP_API_KEY", "secret")
    monkeypatch.setenv("STATION_TABLE_PATH", str(tmp_path / "stations.json"))
    monkeypatch.setenv("PAYMENT_TABLE_PATH", str(tmp_path / "payments.json"))
    monkeypatch.setenv("LEDGER_ROOT_PATH", str(tmp_path / "ledger"))
    monkeypatch.setenv("STARTING_COIN_BALANCE", "250")
    monkeypatch.setenv("PAYMENT_SESSION_SECONDS", "30")
    monkeypatch.setenv("PAYMENT_VERIFICATION_DELAY_SECONDS", "0")
    monkeypatch.setenv("SEARCH_WORKER_COUNT", "2")
    _clear_caches(_CACHES)

    stations = build_default_station_service()
    payments = build_default_payment_service()

    try:
        assert stations.overpass.endpoints == ("https://one.test/api", "https://two.test/api")
        assert stations.open_charge_map is not None
        assert stations.open_charge_map.enabled is True
        assert stations.executor._max_workers == 2
        assert stations.catalog.table.persistence_path == tmp_path / "stations.json"
        assert payments.table.persistence_path == tmp_path / "payments.json"
        assert payments.session_seconds == 30.0
        assert payments.verification_delay == 0.0
        assert build_default_store().root_path == Path(tmp_path / "ledger")
        assert payments.ledger_book.ledger_for("alice").balance == 250
    finally:
        stations.shutdown()
        payments.shutdown()
        _clear_caches(_CACHES)


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("OVERPASS_ENDPOINTS", " , ")
    monkeypatch.setenv("STARTING_COIN_BALANCE", "-5")
    monkeypatch.setenv("PAYMENT_SESSION_SECONDS", "0")
    monkeypatch.setenv("DEFAULT_SEARCH_RADIUS_KM", "wide")
    monkeypatch.setenv("SEARCH_WORKER_COUNT", "many")
    monkeypatch.setenv("LOG_LEVEL", " debug ")
    monkeypatch.delenv("OPEN_CHARGE_MAP_API_KEY", raising=False)
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.overpass_endpoints == DEFAULT_OVERPASS_ENDPOINTS
        assert settings.starting_balance == 100
        assert settings.payment_session_seconds == 120.0
        assert settings.default_radius_km == 5.0
        assert settings.search_workers == 4
        assert settings.log_level == "DEBUG"
        assert settings.open_charge_map_api_key is None
    finally:
        get_settings.cache_clear()
