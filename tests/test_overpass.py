"""Tests for the Overpass adapter using an in-process HTTP transport."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List
from urllib.parse import parse_qs

import httpx
import pytest

from models.records import StationSource
from services.overpass import OverpassClient

ENDPOINTS = (
    "https://mirror-a.test/api/interpreter",
    "https://mirror-b.test/api/interpreter",
    "https://mirror-c.test/api/interpreter",
)
CENTER = (12.9716, 77.5946)


def _node(node_id: int, lat: float, lon: float, **tags: str) -> Dict[str, Any]:
    return {"type": "node", "id": node_id, "lat": lat, "lon": lon, "tags": tags}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> OverpassClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return OverpassClient(endpoints=ENDPOINTS, http_client=http_client)


class RecordingHandler:
    def __init__(self, responses: Dict[str, Callable[[], httpx.Response]]) -> None:
        self.responses = responses
        self.hosts: List[str] = []
        self.queries: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.hosts.append(request.url.host)
        self.queries.append(parse_qs(request.content.decode())["data"][0])
        return self.responses[request.url.host]()


def _ok(*elements: Dict[str, Any]) -> Callable[[], httpx.Response]:
    return lambda: httpx.Response(200, json={"elements": list(elements)})


def _error(status: int = 500) -> Callable[[], httpx.Response]:
    return lambda: httpx.Response(status, text="upstream error")


def test_rotates_to_next_endpoint_and_remembers_it() -> None:
    handler = RecordingHandler(
        {
            "mirror-a.test": _error(),
            "mirror-b.test": _ok(_node(1, 12.972, 77.595, name="Hub")),
            "mirror-c.test": _ok(),
        }
    )
    client = _client(handler)

    first = client.find_charging_stations(*CENTER)
    second = client.find_charging_stations(*CENTER)

    assert [record.name for record in first] == ["Hub"]
    assert len(second) == 1
    assert handler.hosts == ["mirror-a.test", "mirror-b.test", "mirror-b.test"]
    assert client.current_endpoint == ENDPOINTS[1]


def test_concurrent_calls_each_try_every_endpoint() -> None:
    barrier = threading.Barrier(2, timeout=5)
    lock = threading.Lock()
    tried: Dict[str, List[str]] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        with lock:
            tried.setdefault(threading.current_thread().name, []).append(host)
        if host == "mirror-a.test":
            barrier.wait()
            return httpx.Response(500, text="upstream error")
        if host == "mirror-b.test":
            return httpx.Response(200, json={"elements": [_node(1, 12.972, 77.595, name="Hub")]})
        return httpx.Response(500, text="upstream error")

    client = _client(handler)
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="search") as executor:
        futures = [executor.submit(client.find_charging_stations, *CENTER) for _ in range(2)]
        results = [future.result(timeout=10) for future in futures]

    assert [len(result) for result in results] == [1, 1]
    assert sorted(tried.values()) == [
        ["mirror-a.test", "mirror-b.test"],
        ["mirror-a.test", "mirror-b.test"],
    ]
    assert client.current_endpoint == ENDPOINTS[1]


def test_all_endpoints_failing_returns_empty_after_one_pass() -> None:
    handler = RecordingHandler(
        {
            "mirror-a.test": _error(),
            "mirror-b.test": _error(503),
            "mirror-c.test": lambda: httpx.Response(200, json={"remark": "no elements"}),
        }
    )
    client = _client(handler)

    assert client.find_charging_stations(*CENTER) == []
    assert handler.hosts == ["mirror-a.test", "mirror-b.test", "mirror-c.test"]
    assert client.current_endpoint == ENDPOINTS[0]


def test_transport_errors_rotate_like_http_errors() -> None:
    calls: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "mirror-a.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"elements": [_node(7, 12.97, 77.59)]})

    client = _client(handler)

    result = client.find_charging_stations(*CENTER)

    assert len(result) == 1
    assert calls == ["mirror-a.test", "mirror-b.test"]


@pytest.mark.parametrize(("latitude", "longitude"), [(91.0, 0.0), (0.0, 181.0), ("x", 10.0)])
def test_invalid_coordinates_make_no_request(latitude, longitude) -> None:
    handler = RecordingHandler({})
    client = _client(handler)

    assert client.find_charging_stations(latitude, longitude) == []
    assert handler.hosts == []


@pytest.mark.parametrize(("radius", "expected"), [(2, "around:2000,"), (-3, "around:5000,"), ("far", "around:5000,")])
def test_radius_is_sent_in_metres_with_default_for_invalid_values(radius, expected) -> None:
    handler = RecordingHandler({"mirror-a.test": _ok()})
    client = _client(handler)

    client.find_charging_stations(*CENTER, radius_km=radius)

    assert expected in handler.queries[0]
    assert 'node["amenity"="charging_station"]' in handler.queries[0]


def test_results_are_deduplicated_and_sorted_by_distance() -> None:
    handler = RecordingHandler(
        {
            "mirror-a.test": _ok(
                _node(101, 12.9816, 77.5946, name="Far"),
                _node(202, 12.9720, 77.5950, name="Near"),
                _node(303, 12.9720, 77.5950, name="Near duplicate"),
                {"type": "way", "id": 9, "nodes": [1, 2]},
                {"type": "node", "id": 404, "tags": {}},
            )
        }
    )
    client = _client(handler)

    result = client.find_charging_stations(*CENTER)

    assert [record.source_id for record in result] == ["202", "101"]
    assert [record.distance_km for record in result] == [0.1, 1.1]
    assert all(record.source is StationSource.overpass for record in result)


def test_ids_are_unique_within_and_across_requests() -> None:
    handler = RecordingHandler(
        {"mirror-a.test": _ok(_node(555, 12.97, 77.59), _node(556, 12.98, 77.60))}
    )
    client = _client(handler)

    first = client.find_charging_stations(*CENTER)
    second = client.find_charging_stations(*CENTER)

    ids = [record.id for record in first + second]
    assert len(ids) == len(set(ids))
    assert all(record_id.startswith("overpass-55") for record_id in ids)


def test_map_node_derives_fields_from_tags() -> None:
    client = _client(RecordingHandler({}))
    node = _node(
        987654,
        12.97,
        77.59,
        **{
            "socket:type2": "yes",
            "charge:output": "50 kW",
            "fee": "yes",
            "operator": "Tata Power",
            "capacity": "2",
        },
    )

    record = client.map_node(node, index=3, request_id="req1")

    assert record.id == "overpass-987654-req1-3"
    assert record.name == "Tata Power Charging Station"
    assert record.operator == "Tata Power"
    assert record.socket == "Type 2"
    assert record.speed == "Fast"
    assert record.power == "50 kW"
    assert record.fee is True
    assert record.access == "Public"
    assert record.capacity == 2
    assert record.status is None


def test_map_node_without_tags_uses_placeholders() -> None:
    client = _client(RecordingHandler({}))

    record = client.map_node({"id": 1234567, "lat": 1.0, "lon": 2.0}, index=0, request_id="r")

    assert record.name == "EV Charging Station 12345"
    assert record.socket == "Standard Socket"
    assert record.speed == "Standard"
    assert record.power is None
    assert record.operator is None


def test_get_station_details_returns_node_or_none() -> None:
    handler = RecordingHandler({"mirror-a.test": _ok(_node(42, 12.97, 77.59, name="Depot"))})
    client = _client(handler)

    record = client.get_station_details(42)

    assert record is not None
    assert record.name == "Depot"
    assert "node(42);" in handler.queries[0]

    failing = _client(
        RecordingHandler({host: _error() for host in ("mirror-a.test", "mirror-b.test", "mirror-c.test")})
    )
    assert failing.get_station_details(42) is None


def test_requires_at_least_one_endpoint() -> None:
    with pytest.raises(ValueError):
        OverpassClient(endpoints=())
