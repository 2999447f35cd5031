"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StationSource(str, Enum):
    """Where a station record originated."""

    overpass = "overpass"
    open_charge_map = "open_charge_map"
    first_party = "first_party"


class StationStatus(str, Enum):
    """Normalised operational state of a charging station."""

    operational = "operational"
    out_of_order = "out_of_order"
    under_construction = "under_construction"
    unknown = "unknown"


@dataclass(frozen=True)
class StationRecord:
    """A charging station normalised from any source.

    Records are immutable; re-ranking produces copies with a new
    ``distance_km`` via :func:`dataclasses.replace`.
    """

    id: str
    source: StationSource
    source_id: str
    latitude: float
    longitude: float
    name: str
    operator: Optional[str] = None
    network: Optional[str] = None
    socket: Optional[str] = None
    speed: Optional[str] = None
    power: Optional[str] = None
    fee: bool = False
    access: str = "Public"
    status: Optional[StationStatus] = None
    distance_km: Optional[float] = None
    last_status_update: Optional[str] = None
    capacity: Optional[int] = None
    address: Optional[str] = None

    @property
    def coordinate_key(self) -> str:
        """Rounded location used to spot the same physical station twice."""
        return f"{self.latitude:.6f},{self.longitude:.6f}"
