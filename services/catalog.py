"""First-party station catalogue backed by the station table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional, Tuple
from uuid import uuid4

from app.schemas import StationCreate, StationUpdate, StoredStation
from datastore.tables import JsonTable, build_default_station_table
from models.records import StationRecord, StationSource, StationStatus
from services.geo import haversine_km, is_valid_coordinate
from services.tag_rules import format_power, speed_for_power

logger = logging.getLogger(__name__)


@dataclass
class StationFilters:
    search: Optional[str] = None
    price_range: Optional[Tuple[float, float]] = None
    available_only: bool = False
    connector_types: List[str] = field(default_factory=list)

    def matches(self, station: StoredStation) -> bool:
        if self.search and self.search.strip().lower() not in station.name.lower():
            return False
        if self.price_range is not None:
            low, high = self.price_range
            price = station.price_per_kwh
            if price is None or not low <= price <= high:
                return False
        if self.available_only and not station.available:
            return False
        if self.connector_types:
            offered = {connector.lower() for connector in station.connector_types}
            if not all(connector.lower() in offered for connector in self.connector_types):
                return False
        return True


def to_record(station: StoredStation) -> StationRecord:
    """Normalise a catalogue row into a source-agnostic station record."""
    return StationRecord(
        id=station.id,
        source=StationSource.first_party,
        source_id=station.id,
        latitude=station.latitude,
        longitude=station.longitude,
        name=station.name,
        operator=station.operator,
        socket=station.connector_types[0] if station.connector_types else None,
        speed=speed_for_power(station.power_kw) if station.power_kw else None,
        power=format_power(station.power_kw) if station.power_kw else None,
        fee=bool(station.price_per_kwh),
        status=StationStatus.operational if station.available else StationStatus.out_of_order,
        address=station.address,
    )


class StationCatalog:
    """CRUD and radius lookups over the first-party station table."""

    def __init__(self, table: JsonTable[StoredStation]) -> None:
        self.table = table

    def list_stations(self, filters: Optional[StationFilters] = None) -> List[StoredStation]:
        active = filters or StationFilters()
        stations = self.table.scan(active.matches)
        return sorted(stations, key=lambda station: station.created_at)

    def get_station(self, station_id: str) -> StoredStation:
        station = self.table.get_item(station_id)
        if station is None:
            raise KeyError(f"Station {station_id!r} not found.")
        return station

    def create_station(self, payload: StationCreate) -> StoredStation:
        station = StoredStation(
            id=f"station-{uuid4()}",
            created_at=datetime.now(timezone.utc),
            **payload.model_dump(),
        )
        self.table.put_item(station)
        logger.info("Catalogue station created", extra={"reason": station.id})
        return station

    def update_station(self, station_id: str, changes: StationUpdate) -> StoredStation:
        current = self.get_station(station_id)
        updates = changes.model_dump(exclude_unset=True)
        for required in ("name", "latitude", "longitude", "available", "connector_types"):
            if required in updates and updates[required] is None:
                raise ValueError(f"Station {required} cannot be cleared.")
        updated = StoredStation.model_validate({**current.model_dump(), **updates})
        self.table.put_item(updated)
        return updated

    def delete_station(self, station_id: str) -> None:
        if not self.table.delete_item(station_id):
            raise KeyError(f"Station {station_id!r} not found.")

    def nearby(self, latitude: float, longitude: float, radius_km: float) -> List[StationRecord]:
        """Catalogue stations within ``radius_km`` of the point, closest first."""
        if not is_valid_coordinate(latitude, longitude):
            return []
        records: List[StationRecord] = []
        for station in self.table.scan():
            distance = haversine_km(latitude, longitude, station.latitude, station.longitude)
            if distance <= radius_km:
                records.append(replace(to_record(station), distance_km=distance))
        records.sort(key=lambda record: record.distance_km)
        return records


@lru_cache
def build_default_catalog() -> StationCatalog:
    return StationCatalog(build_default_station_table())
