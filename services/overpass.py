"""Overpass API adapter returning normalised charging-station records."""

from __future__ import annotations

import logging
from dataclasses import replace
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

import httpx

from models.records import StationRecord, StationSource
from services import tag_rules
from services.aggregator import StationAggregator
from services.geo import haversine_km, is_valid_coordinate, normalize_radius

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_KM = 5.0

_QUERY_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def build_nearby_query(latitude: float, longitude: float, radius_km: float) -> str:
    radius_m = f"{radius_km * 1000:.0f}"
    return (
        "[out:json][timeout:25];\n"
        "(\n"
        f'  node["amenity"="charging_station"](around:{radius_m},{latitude},{longitude});\n'
        ");\n"
        "out body;\n"
    )


def build_node_query(node_id: int) -> str:
    return f"[out:json][timeout:25];\nnode({node_id});\nout body;\n"


class OverpassClient:
    """Query Overpass mirrors in turn until one answers.

    The endpoint cursor survives between calls, so a mirror that failed last
    time is not the first one tried next time.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        http_client: Optional[httpx.Client] = None,
        timeout: float = 20.0,
        aggregator: Optional[StationAggregator] = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one Overpass endpoint is required.")
        self.endpoints = tuple(endpoints)
        self.timeout = timeout
        self.aggregator = aggregator or StationAggregator()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._cursor = 0
        self._cursor_lock = Lock()

    @property
    def current_endpoint(self) -> str:
        with self._cursor_lock:
            return self.endpoints[self._cursor]

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def find_charging_stations(
        self,
        latitude: float,
        longitude: float,
        radius_km: Any = DEFAULT_RADIUS_KM,
    ) -> List[StationRecord]:
        """Return stations around a point, closest first, or ``[]`` on failure."""
        if not is_valid_coordinate(latitude, longitude):
            logger.error(
                "Rejecting station search with invalid coordinates",
                extra={"reason": f"lat={latitude!r} lng={longitude!r}"},
            )
            return []

        radius = normalize_radius(radius_km, default=0.0)
        if radius == 0.0:
            logger.warning(
                "Invalid search radius, using default",
                extra={"reason": f"radius={radius_km!r} default={DEFAULT_RADIUS_KM}"},
            )
            radius = DEFAULT_RADIUS_KM

        latitude, longitude = float(latitude), float(longitude)
        request_id = uuid4().hex[:12]
        payload = self._post(build_nearby_query(latitude, longitude, radius), request_id)
        if payload is None:
            return []

        nodes = [
            element
            for element in payload["elements"]
            if isinstance(element, dict) and element.get("type") == "node"
        ]
        stations: List[StationRecord] = []
        for index, node in enumerate(nodes):
            record = self._map_or_skip(node, index, request_id)
            if record is None:
                continue
            distance = haversine_km(latitude, longitude, record.latitude, record.longitude)
            stations.append(replace(record, distance_km=distance))

        unique = self.aggregator.dedupe(stations)
        logger.info(
            "Overpass search complete",
            extra={"request_id": request_id, "station_count": len(unique)},
        )
        return unique

    def get_station_details(self, node_id: int) -> Optional[StationRecord]:
        """Look up a single OSM node, or ``None`` if it cannot be fetched."""
        request_id = uuid4().hex[:12]
        payload = self._post(build_node_query(int(node_id)), request_id)
        if payload is None:
            return None
        for index, element in enumerate(payload["elements"]):
            if isinstance(element, dict) and element.get("type", "node") == "node":
                return self._map_or_skip(element, index, request_id)
        return None

    def map_node(self, node: Mapping[str, Any], index: int, request_id: str) -> StationRecord:
        node_id = str(node["id"])
        tags: Dict[str, str] = {
            str(key): str(value) for key, value in (node.get("tags") or {}).items()
        }
        network = tag_rules.evaluate(tag_rules.NETWORK_RULES, tags)
        operator = (tags.get("operator") or "").strip() or network
        return StationRecord(
            id=f"overpass-{node_id}-{request_id}-{index}",
            source=StationSource.overpass,
            source_id=node_id,
            latitude=float(node["lat"]),
            longitude=float(node["lon"]),
            name=tag_rules.evaluate(
                tag_rules.name_rules(f"EV Charging Station {node_id[:5]}"), tags
            ),
            operator=operator,
            network=network,
            socket=tag_rules.evaluate(tag_rules.SOCKET_RULES, tags),
            speed=tag_rules.evaluate(tag_rules.SPEED_RULES, tags),
            power=tag_rules.evaluate(tag_rules.POWER_RULES, tags),
            fee=tag_rules.evaluate(tag_rules.FEE_RULES, tags),
            access=tag_rules.evaluate(tag_rules.ACCESS_RULES, tags),
            status=tag_rules.evaluate(tag_rules.STATUS_RULES, tags),
            last_status_update=tag_rules.evaluate(tag_rules.LAST_UPDATE_RULES, tags),
            capacity=tag_rules.evaluate(tag_rules.CAPACITY_RULES, tags),
        )

    def _map_or_skip(
        self, node: Mapping[str, Any], index: int, request_id: str
    ) -> Optional[StationRecord]:
        try:
            return self.map_node(node, index, request_id)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Skipping malformed Overpass node",
                extra={"request_id": request_id, "reason": repr(exc)},
            )
            return None

    def _post(self, query: str, request_id: str) -> Optional[Dict[str, Any]]:
        headers = dict(_QUERY_HEADERS)
        headers["X-Requested-With"] = f"spark-station-aggregator-{request_id}"

        count = len(self.endpoints)
        with self._cursor_lock:
            start = self._cursor
        for attempt in range(1, count + 1):
            position = (start + attempt - 1) % count
            endpoint = self.endpoints[position]
            try:
                response = self._client.post(
                    endpoint,
                    data={"data": query},
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
                    raise ValueError("response has no elements list")
                return payload
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Overpass endpoint failed, rotating",
                    extra={
                        "request_id": request_id,
                        "endpoint": endpoint,
                        "attempt": attempt,
                        "reason": repr(exc),
                    },
                )
                self._move_cursor_past(position)

        logger.error(
            "All Overpass endpoints failed",
            extra={"request_id": request_id, "attempt": len(self.endpoints)},
        )
        return None

    def _move_cursor_past(self, position: int) -> None:
        with self._cursor_lock:
            self._cursor = (position + 1) % len(self.endpoints)

