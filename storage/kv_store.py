from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from settings import get_settings


class LocalKeyValueStore:
    """Key-value documents kept in memory and written through to disk.

    Keys are slash separated paths such as ``ledger/<user_id>``; each value
    is stored as ``<root>/<key>.json``.
    """

    def __init__(self, name: str, root_path: Optional[Path] = None) -> None:
        self.name = name
        self._documents: Dict[str, str] = {}
        self.root_path = root_path
        self._lock = Lock()
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)

    def put(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, sort_keys=True)
        with self._lock:
            if self.root_path:
                path = self._path_for(key)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(encoded)
            self._documents[key] = encoded

    def get(self, key: str) -> Optional[Any]:
        """Return the decoded document, or ``None`` when missing or unreadable."""
        with self._lock:
            encoded = self._documents.get(key)

        if encoded is None and self.root_path:
            path = self._path_for(key)
            if path.exists():
                try:
                    encoded = path.read_text()
                except OSError:
                    return None
                with self._lock:
                    self._documents[key] = encoded

        if encoded is None:
            return None
        try:
            return json.loads(encoded)
        except json.JSONDecodeError:
            return None

    def _path_for(self, key: str) -> Path:
        assert self.root_path is not None
        parts = [part for part in key.split("/") if part not in ("", ".", "..")]
        if not parts:
            raise KeyError(f"Invalid key {key!r} for store {self.name!r}.")
        return self.root_path.joinpath(*parts[:-1]) / f"{parts[-1]}.json"


@lru_cache
def build_default_store(
    name: Optional[str] = None,
    root_path: Optional[str] = None,
) -> LocalKeyValueStore:
    settings = get_settings()
    store_root = settings.ledger_root_path if root_path is None else root_path
    path = Path(store_root) if store_root else None
    return LocalKeyValueStore(name=name or "spark_coins", root_path=path)
