"""Deduplication and distance ranking for station records."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from models.records import StationRecord
from services.geo import haversine_km


@dataclass
class StationSummary:
    """Counts describing one aggregated result set."""

    total: int = 0
    per_source_count: Dict[str, int] = field(default_factory=dict)
    nearest_km: Optional[float] = None


def _distance_or_inf(record: StationRecord) -> float:
    return record.distance_km if record.distance_km is not None else math.inf


class StationAggregator:
    """Pure merge/dedupe/rank component that can be unit tested in isolation."""

    def dedupe(self, records: Iterable[StationRecord]) -> List[StationRecord]:
        """Keep one record per rounded location, closest first.

        Distances are taken as carried by the records. On a tie the first
        record seen wins, and the output order is stable for equal distances.
        """
        closest: Dict[str, StationRecord] = {}
        for record in records:
            key = record.coordinate_key
            current = closest.get(key)
            if current is None or _distance_or_inf(record) < _distance_or_inf(current):
                closest[key] = record
        return sorted(closest.values(), key=_distance_or_inf)

    def merge(
        self,
        reference: Tuple[float, float],
        *sources: Iterable[StationRecord],
    ) -> List[StationRecord]:
        """Combine station lists around ``reference`` into one ranked list.

        Every record gets a fresh distance to ``reference`` before
        deduplication; a ``distance_km`` from an earlier query is ignored.
        """
        ref_lat, ref_lng = reference
        measured = [
            replace(record, distance_km=haversine_km(ref_lat, ref_lng, record.latitude, record.longitude))
            for source in sources
            for record in source
        ]
        return self.dedupe(measured)

    def summarize(self, records: Iterable[StationRecord]) -> StationSummary:
        summary = StationSummary()
        for record in records:
            summary.total += 1
            source = record.source.value
            summary.per_source_count[source] = summary.per_source_count.get(source, 0) + 1
            distance = record.distance_km
            if distance is not None and (summary.nearest_km is None or distance < summary.nearest_km):
                summary.nearest_km = distance
        return summary
