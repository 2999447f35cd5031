"""Charging slot bookings, each owned by the user who made it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional
from uuid import uuid4

from app.schemas import Booking, BookingCreate, BookingStatus, as_utc
from datastore.tables import JsonTable, build_default_booking_table

logger = logging.getLogger(__name__)

FINAL_STATUSES = frozenset({BookingStatus.completed, BookingStatus.cancelled})


class BookingStateError(ValueError):
    """Raised when a booking has already reached a final status."""


@dataclass
class BookingFilters:
    status: Optional[BookingStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, booking: Booking) -> bool:
        if self.status is not None and booking.status is not self.status:
            return False
        if self.start_date is not None and booking.start_time < as_utc(self.start_date):
            return False
        if self.end_date is not None and booking.end_time > as_utc(self.end_date):
            return False
        return True


class BookingService:
    def __init__(self, table: JsonTable[Booking]) -> None:
        self.table = table

    def create_booking(self, payload: BookingCreate) -> Booking:
        booking = Booking(
            id=str(uuid4()),
            user_id=payload.user_id,
            station_id=payload.station_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            created_at=datetime.now(timezone.utc),
        )
        self.table.put_item(booking)
        logger.info(
            "Booking created",
            extra={"booking_id": booking.id, "user_id": booking.user_id, "station_id": booking.station_id},
        )
        return booking

    def list_bookings(self, user_id: str, filters: Optional[BookingFilters] = None) -> List[Booking]:
        """The user's bookings, latest start time first."""
        active = filters or BookingFilters()
        bookings = self.table.scan(lambda row: row.user_id == user_id and active.matches(row))
        return sorted(bookings, key=lambda booking: booking.start_time, reverse=True)

    def get_booking(self, booking_id: str, user_id: str) -> Booking:
        """Another user's booking is reported as missing."""
        booking = self.table.get_item(booking_id)
        if booking is None or booking.user_id != user_id:
            raise KeyError(f"Booking {booking_id!r} not found.")
        return booking

    def update_status(
        self,
        booking_id: str,
        user_id: str,
        status: BookingStatus,
        energy_used: Optional[float] = None,
    ) -> Booking:
        current = self.get_booking(booking_id, user_id)
        if current.status in FINAL_STATUSES and status is not current.status:
            raise BookingStateError(
                f"Booking {booking_id!r} is already {current.status.value}."
            )
        changes = {"status": status, "updated_at": datetime.now(timezone.utc)}
        if energy_used is not None:
            changes["energy_used"] = energy_used
        updated = current.model_copy(update=changes)
        self.table.put_item(updated)
        logger.info(
            "Booking status changed",
            extra={"booking_id": booking_id, "user_id": user_id, "status": status.value},
        )
        return updated

    def cancel_booking(self, booking_id: str, user_id: str) -> Booking:
        return self.update_status(booking_id, user_id, BookingStatus.cancelled)


@lru_cache
def build_default_booking_service() -> BookingService:
    return BookingService(build_default_booking_table())
