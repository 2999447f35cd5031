"""Spark Coins rewards ledger."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock, RLock
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from app.schemas import LedgerEntry, LedgerEntryType, LedgerSnapshot
from settings import get_settings
from storage.kv_store import LocalKeyValueStore, build_default_store

logger = logging.getLogger(__name__)

GUEST_USER = "guest"
WELCOME_DESCRIPTION = "Welcome bonus"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_positive_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Coin amounts must be whole numbers, got {amount!r}.")
    if amount <= 0:
        raise ValueError(f"Coin amounts must be positive, got {amount}.")
    return amount


class RewardsLedger:
    """Append-only coin history for the active user, written through on every change."""

    def __init__(
        self,
        store: LocalKeyValueStore,
        user_id: str = GUEST_USER,
        starting_balance: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.starting_balance = starting_balance
        self._clock = clock
        self._lock = RLock()
        self._user_id = user_id
        self._entries: List[LedgerEntry] = self._load(user_id)

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def balance(self) -> int:
        with self._lock:
            return sum(entry.amount for entry in self._entries)

    @property
    def history(self) -> List[LedgerEntry]:
        """Entries oldest first, as copies."""
        with self._lock:
            return [entry.model_copy() for entry in self._entries]

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                user_id=self._user_id,
                balance=self.balance,
                entries=self.history,
            )

    def switch_user(self, user_id: str) -> None:
        """Swap to ``user_id``'s own persisted ledger."""
        with self._lock:
            self._user_id = user_id
            self._entries = self._load(user_id)

    def add_coins(self, amount: int, description: str = "Coins earned") -> LedgerEntry:
        _require_positive_amount(amount)
        with self._lock:
            entry = self._append(amount, LedgerEntryType.earned, description)
        logger.info(
            "Spark Coins earned",
            extra={"user_id": self._user_id, "amount": amount, "reason": description},
        )
        return entry

    def use_coins(self, amount: int, description: str = "Coins spent") -> bool:
        """Spend coins; returns ``False`` without changing anything if the balance is short."""
        _require_positive_amount(amount)
        with self._lock:
            balance = self.balance
            if amount > balance:
                logger.info(
                    "Not enough Spark Coins",
                    extra={"user_id": self._user_id, "amount": amount, "reason": f"balance={balance}"},
                )
                return False
            self._append(-amount, LedgerEntryType.spent, description)
        logger.info(
            "Spark Coins spent",
            extra={"user_id": self._user_id, "amount": amount, "reason": description},
        )
        return True

    def reset(self) -> None:
        with self._lock:
            entries = [self._welcome_entry()]
            self._persist(entries)
            self._entries = entries

    def _append(self, amount: int, entry_type: LedgerEntryType, description: str) -> LedgerEntry:
        entry = LedgerEntry(
            id=uuid4().hex[:9],
            amount=amount,
            type=entry_type,
            description=description,
            timestamp=self._clock(),
        )
        entries = self._entries + [entry]
        self._persist(entries)
        self._entries = entries
        return entry

    def _welcome_entry(self) -> LedgerEntry:
        return LedgerEntry(
            id="1",
            amount=self.starting_balance,
            type=LedgerEntryType.earned,
            description=WELCOME_DESCRIPTION,
            timestamp=self._clock(),
        )

    def _key(self, user_id: str) -> str:
        return f"ledger/{user_id}"

    def _load(self, user_id: str) -> List[LedgerEntry]:
        payload = self.store.get(self._key(user_id))
        if payload is not None:
            try:
                return list(LedgerSnapshot.model_validate(payload).entries)
            except ValidationError as exc:
                logger.warning(
                    "Discarding unreadable ledger document",
                    extra={"user_id": user_id, "reason": repr(exc)},
                )
        return [self._welcome_entry()]

    def _persist(self, entries: List[LedgerEntry]) -> None:
        """Write ``entries`` out; the caller adopts them only once this returns."""
        snapshot = LedgerSnapshot(
            user_id=self._user_id,
            balance=sum(entry.amount for entry in entries),
            entries=entries,
        )
        self.store.put(self._key(self._user_id), snapshot.model_dump(mode="json"))


class LedgerBook:
    """Hands out one shared ledger per user so every writer uses the same lock."""

    def __init__(self, store: LocalKeyValueStore, starting_balance: int = 100) -> None:
        self.store = store
        self.starting_balance = starting_balance
        self._ledgers: Dict[str, RewardsLedger] = {}
        self._lock = Lock()

    def ledger_for(self, user_id: Optional[str]) -> RewardsLedger:
        key = user_id or GUEST_USER
        with self._lock:
            ledger = self._ledgers.get(key)
            if ledger is None:
                ledger = RewardsLedger(
                    self.store, user_id=key, starting_balance=self.starting_balance
                )
                self._ledgers[key] = ledger
            return ledger


@lru_cache
def build_default_ledger_book() -> LedgerBook:
    settings = get_settings()
    return LedgerBook(build_default_store(), starting_balance=settings.starting_balance)
