"""Station search orchestration and per-surface result feeds."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from models.records import StationRecord
from services.aggregator import StationAggregator
from services.catalog import StationCatalog, build_default_catalog, to_record
from services.geo import is_valid_coordinate, normalize_radius
from services.open_charge_map import ID_PREFIX as OCM_PREFIX
from services.open_charge_map import OpenChargeMapClient
from services.overpass import OverpassClient
from settings import get_settings

logger = logging.getLogger(__name__)

SearchFn = Callable[[float, float, Optional[float]], Sequence[StationRecord]]


@dataclass(frozen=True)
class FeedSnapshot:
    feed_id: str
    latest_token: int
    applied_token: int
    pending: bool
    stations: Tuple[StationRecord, ...]


class StationFeed:
    """The station list shown by one UI surface.

    Each query gets a request token. Results are applied only when their
    token is still the latest one issued, so a slow older query can never
    overwrite the answer to a newer one.
    """

    def __init__(self, feed_id: str, search: SearchFn, executor: ThreadPoolExecutor) -> None:
        self.feed_id = feed_id
        self._search = search
        self._executor = executor
        self._lock = Lock()
        self._latest_token = 0
        self._applied_token = 0
        self._stations: Tuple[StationRecord, ...] = ()
        self._futures: Dict[int, Future[Sequence[StationRecord]]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def issue_token(self) -> int:
        with self._lock:
            if self._closed:
                raise ValueError(f"Feed {self.feed_id!r} is closed.")
            self._latest_token += 1
            return self._latest_token

    def submit(self, latitude: float, longitude: float, radius_km: Optional[float] = None) -> int:
        """Schedule a search and return its request token."""
        token = self.issue_token()
        future = self._executor.submit(self._search, latitude, longitude, radius_km)
        with self._lock:
            self._futures[token] = future
        future.add_done_callback(lambda done, t=token: self._on_done(t, done))
        logger.debug("Station query submitted", extra={"feed_id": self.feed_id, "token": token})
        return token

    def apply(self, token: int, stations: Sequence[StationRecord]) -> bool:
        """Publish ``stations`` if ``token`` is the newest request; report whether it was."""
        with self._lock:
            if self._closed:
                reason = "feed closed"
            elif token != self._latest_token:
                reason = f"superseded by token {self._latest_token}"
            else:
                self._stations = tuple(stations)
                self._applied_token = token
                reason = None

        if reason is not None:
            logger.info(
                "Discarding station results",
                extra={"feed_id": self.feed_id, "token": token, "reason": reason},
            )
            return False

        logger.info(
            "Station results applied",
            extra={"feed_id": self.feed_id, "token": token, "station_count": len(stations)},
        )
        return True

    def snapshot(self) -> FeedSnapshot:
        with self._lock:
            return FeedSnapshot(
                feed_id=self.feed_id,
                latest_token=self._latest_token,
                applied_token=self._applied_token,
                pending=not self._closed and self._applied_token != self._latest_token,
                stations=self._stations,
            )

    def close(self) -> None:
        """Stop accepting queries and drop whatever is still in flight."""
        with self._lock:
            self._closed = True
            pending = list(self._futures.values())
            self._futures.clear()
        for future in pending:
            future.cancel()

    def _on_done(self, token: int, future: Future[Sequence[StationRecord]]) -> None:
        with self._lock:
            self._futures.pop(token, None)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(
                "Station query failed",
                extra={"feed_id": self.feed_id, "token": token, "reason": repr(error)},
            )
            self.apply(token, [])
            return
        self.apply(token, future.result())


class StationSearchService:
    """Coordinates station sources, ranking and feeds."""

    def __init__(
        self,
        overpass: OverpassClient,
        catalog: StationCatalog,
        aggregator: StationAggregator,
        open_charge_map: Optional[OpenChargeMapClient] = None,
        workers: int = 4,
        default_radius_km: float = 5.0,
        max_feeds: int = 256,
    ) -> None:
        self.overpass = overpass
        self.catalog = catalog
        self.aggregator = aggregator
        self.open_charge_map = open_charge_map
        self.default_radius_km = default_radius_km
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="station-search")
        self.max_feeds = max(1, max_feeds)
        self._feeds: "OrderedDict[str, StationFeed]" = OrderedDict()
        self._feeds_lock = Lock()

    def search_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_km: Optional[float] = None,
    ) -> List[StationRecord]:
        """Merged, deduplicated stations around a point, closest first."""
        if not is_valid_coordinate(latitude, longitude):
            raise ValueError(
                "Coordinates out of valid range. Latitude: -90 to 90, Longitude: -180 to 180."
            )
        latitude, longitude = float(latitude), float(longitude)
        radius = normalize_radius(radius_km, self.default_radius_km)

        sources: List[Sequence[StationRecord]] = [
            self._fetch("catalog", self.catalog.nearby, latitude, longitude, radius),
            self._fetch("overpass", self.overpass.find_charging_stations, latitude, longitude, radius),
        ]
        if self.open_charge_map is not None and self.open_charge_map.enabled:
            sources.append(
                self._fetch(
                    "open_charge_map", self.open_charge_map.find_stations, latitude, longitude, radius
                )
            )

        merged = self.aggregator.merge((latitude, longitude), *sources)
        summary = self.aggregator.summarize(merged)
        logger.info(
            "Nearby search merged",
            extra={"station_count": summary.total, "reason": summary.per_source_count},
        )
        return merged

    def station_details(self, station_id: str) -> StationRecord:
        record: Optional[StationRecord]
        if station_id.startswith(OCM_PREFIX):
            record = self.open_charge_map.get_station(station_id) if self.open_charge_map else None
        elif station_id.startswith("overpass-") or station_id.isdigit():
            node_id = station_id.split("-")[1] if station_id.startswith("overpass-") else station_id
            record = self.overpass.get_station_details(int(node_id)) if node_id.isdigit() else None
        else:
            record = to_record(self.catalog.get_station(station_id))
        if record is None:
            raise KeyError(f"Station {station_id!r} not found.")
        return record

    def feed(self, feed_id: str) -> StationFeed:
        """Return the feed, creating it; at the cap the least recently used feed is closed."""
        evicted: List[StationFeed] = []
        with self._feeds_lock:
            feed = self._feeds.get(feed_id)
            if feed is None:
                while len(self._feeds) >= self.max_feeds:
                    evicted.append(self._feeds.popitem(last=False)[1])
                feed = StationFeed(feed_id, self.search_nearby, self.executor)
                self._feeds[feed_id] = feed
            else:
                self._feeds.move_to_end(feed_id)
        for stale in evicted:
            stale.close()
            logger.info("Evicted least recently used feed", extra={"feed_id": stale.feed_id})
        return feed

    def get_feed(self, feed_id: str) -> StationFeed:
        with self._feeds_lock:
            feed = self._feeds.get(feed_id)
            if feed is not None:
                self._feeds.move_to_end(feed_id)
        if feed is None:
            raise KeyError(f"Feed {feed_id!r} not found.")
        return feed

    def close_feed(self, feed_id: str) -> None:
        with self._feeds_lock:
            feed = self._feeds.pop(feed_id, None)
        if feed is None:
            raise KeyError(f"Feed {feed_id!r} not found.")
        feed.close()

    def shutdown(self) -> None:
        """Release feeds, workers and HTTP clients during service shutdown."""
        with self._feeds_lock:
            feeds = list(self._feeds.values())
            self._feeds.clear()
        for feed in feeds:
            feed.close()
        self.executor.shutdown(wait=False, cancel_futures=True)
        self.overpass.close()
        if self.open_charge_map is not None:
            self.open_charge_map.close()

    def _fetch(self, source: str, fetch: Callable[..., Sequence[StationRecord]], *args) -> Sequence[StationRecord]:
        try:
            return fetch(*args)
        except Exception as exc:  # noqa: BLE001 - a failing source degrades to empty
            logger.error(
                "Station source failed",
                extra={"endpoint": source, "reason": repr(exc)},
            )
            return []


@lru_cache
def build_default_station_service(workers: Optional[int] = None) -> StationSearchService:
    """Factory that wires the search service from settings."""
    settings = get_settings()
    aggregator = StationAggregator()
    overpass = OverpassClient(
        endpoints=settings.overpass_endpoints,
        timeout=settings.overpass_timeout,
        aggregator=aggregator,
    )
    open_charge_map = OpenChargeMapClient(
        api_key=settings.open_charge_map_api_key,
        base_url=settings.open_charge_map_base_url,
        timeout=settings.overpass_timeout,
        country_code=settings.open_charge_map_country,
    )
    return StationSearchService(
        overpass=overpass,
        catalog=build_default_catalog(),
        aggregator=aggregator,
        open_charge_map=open_charge_map,
        workers=workers or settings.search_workers,
        default_radius_km=settings.default_radius_km,
        max_feeds=settings.max_feeds,
    )
