"""Open Charge Map POI adapter."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

import httpx

from models.records import StationRecord, StationSource, StationStatus
from services.geo import haversine_km, is_valid_coordinate, normalize_radius
from services.tag_rules import format_power, speed_for_power

logger = logging.getLogger(__name__)

ID_PREFIX = "ocm-"


class OpenChargeMapClient:
    """Fetch POIs from an Open Charge Map compatible REST endpoint.

    Like the Overpass adapter, every public method degrades to an empty
    result instead of raising.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 20.0,
        country_code: Optional[str] = None,
        max_results: int = 50,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.base_url = base_url.rstrip("/")
        self.country_code = country_code
        self.max_results = max_results
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return self.api_key is not None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def find_stations(
        self, latitude: float, longitude: float, radius_km: Any = 20.0
    ) -> List[StationRecord]:
        if not self.enabled:
            return []
        if not is_valid_coordinate(latitude, longitude):
            logger.error(
                "Rejecting Open Charge Map search with invalid coordinates",
                extra={"reason": f"lat={latitude!r} lng={longitude!r}"},
            )
            return []

        params: Dict[str, Any] = {
            "output": "json",
            "latitude": latitude,
            "longitude": longitude,
            "distance": normalize_radius(radius_km, 20.0),
            "distanceunit": "KM",
            "maxresults": self.max_results,
            "compact": "true",
            "verbose": "false",
            "key": self.api_key,
        }
        if self.country_code:
            params["countrycode"] = self.country_code

        payload = self._get("/poi/", params)
        if payload is None:
            return []

        stations: List[StationRecord] = []
        for poi in payload:
            record = self._map_or_skip(poi)
            if record is None:
                continue
            distance = haversine_km(
                float(latitude), float(longitude), record.latitude, record.longitude
            )
            stations.append(replace(record, distance_km=distance))
        stations.sort(key=lambda record: record.distance_km or 0.0)
        logger.info("Open Charge Map search complete", extra={"station_count": len(stations)})
        return stations

    def get_station(self, station_id: str) -> Optional[StationRecord]:
        if not self.enabled:
            return None
        native_id = station_id[len(ID_PREFIX):] if station_id.startswith(ID_PREFIX) else station_id
        payload = self._get(f"/poi/{native_id}", {"output": "json", "key": self.api_key})
        if not payload:
            return None
        return self._map_or_skip(payload[0])

    def map_poi(self, poi: Mapping[str, Any]) -> StationRecord:
        address = poi.get("AddressInfo") or {}
        connections = [conn for conn in poi.get("Connections") or [] if isinstance(conn, dict)]

        connector_titles = [
            (conn.get("ConnectionType") or {}).get("Title")
            for conn in connections
        ]
        connector_titles = [title for title in connector_titles if title]
        max_power = max((float(conn.get("PowerKW") or 0) for conn in connections), default=0.0)

        status_type = poi.get("StatusType") or {}
        operational = status_type.get("IsOperational")
        if operational is True:
            status: Optional[StationStatus] = StationStatus.operational
        elif operational is False:
            status = StationStatus.out_of_order
        else:
            status = None

        usage_cost = str(poi.get("UsageCost") or "").strip()
        operator = (poi.get("OperatorInfo") or {}).get("Title")

        return StationRecord(
            id=f"{ID_PREFIX}{poi['ID']}",
            source=StationSource.open_charge_map,
            source_id=str(poi["ID"]),
            latitude=float(address["Latitude"]),
            longitude=float(address["Longitude"]),
            name=address.get("Title") or f"EV Charging Station {poi['ID']}",
            operator=operator,
            socket=connector_titles[0] if connector_titles else None,
            speed=speed_for_power(max_power) if max_power > 0 else None,
            power=format_power(max_power) if max_power > 0 else None,
            fee=bool(usage_cost) and "free" not in usage_cost.lower(),
            status=status,
            last_status_update=poi.get("DateLastStatusUpdate"),
            capacity=poi.get("NumberOfPoints") if isinstance(poi.get("NumberOfPoints"), int) else None,
            address=address.get("AddressLine1"),
        )

    def _map_or_skip(self, poi: Any) -> Optional[StationRecord]:
        if not isinstance(poi, dict):
            return None
        try:
            return self.map_poi(poi)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed Open Charge Map POI", extra={"reason": repr(exc)})
            return None

    def _get(self, path: str, params: Mapping[str, Any]) -> Optional[List[Any]]:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Open Charge Map request failed",
                extra={"endpoint": url, "reason": repr(exc)},
            )
            return None
        if not isinstance(payload, list):
            logger.warning(
                "Open Charge Map returned an unexpected payload",
                extra={"endpoint": url, "reason": type(payload).__name__},
            )
            return None
        return payload

