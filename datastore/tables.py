from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from app.schemas import Booking, PaymentRecord, StoredStation
from settings import get_settings

ModelT = TypeVar("ModelT", bound=BaseModel)


class JsonTable(Generic[ModelT]):
    """In-memory table of pydantic rows keyed by ``id``, mirrored to a JSON file."""

    def __init__(
        self,
        name: str,
        model: Type[ModelT],
        persistence_path: Optional[Path] = None,
    ) -> None:
        self.name = name
        self.model = model
        self._items: Dict[str, ModelT] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def put_item(self, item: ModelT) -> None:
        with self._lock:
            items = dict(self._items)
            items[item.id] = item.model_copy(deep=True)  # type: ignore[attr-defined]
            self._persist(items)
            self._items = items

    def get_item(self, key: str) -> Optional[ModelT]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            return item.model_copy(deep=True)

    def delete_item(self, key: str) -> bool:
        with self._lock:
            if key not in self._items:
                return False
            items = {k: v for k, v in self._items.items() if k != key}
            self._persist(items)
            self._items = items
            return True

    def scan(self, predicate: Optional[Callable[[ModelT], bool]] = None) -> List[ModelT]:
        """Return deep copies of stored rows, optionally filtered."""

        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._items.values()
                if predicate is None or predicate(item)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _persist(self, items: Dict[str, ModelT]) -> None:
        if not self.persistence_path:
            return
        payload = {key: item.model_dump(mode="json") for key, item in items.items()}
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for key, payload in data.items():
            self._items[key] = self.model.model_validate(payload)


@lru_cache
def build_default_station_table(path: Optional[str] = None) -> JsonTable[StoredStation]:
    settings = get_settings()
    table_path = settings.station_table_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return JsonTable(name="charging_stations", model=StoredStation, persistence_path=persistence)


@lru_cache
def build_default_payment_table(path: Optional[str] = None) -> JsonTable[PaymentRecord]:
    settings = get_settings()
    table_path = settings.payment_table_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return JsonTable(name="payments", model=PaymentRecord, persistence_path=persistence)


@lru_cache
def build_default_booking_table(path: Optional[str] = None) -> JsonTable[Booking]:
    settings = get_settings()
    table_path = settings.booking_table_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return JsonTable(name="bookings", model=Booking, persistence_path=persistence)
