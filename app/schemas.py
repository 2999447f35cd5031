"""Pydantic schemas for the HTTP API layer and persisted documents."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field, model_validator

from models.records import StationRecord, StationSource, StationStatus


class StationBase(BaseModel):
    """Fields shared by first-party catalogue rows and their create payload."""

    name: str = Field(..., min_length=1)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    price_per_kwh: Optional[float] = Field(default=None, ge=0)
    available: bool = True
    power_kw: Optional[float] = Field(default=None, gt=0)
    connector_types: List[str] = Field(default_factory=list)
    operator: Optional[str] = None


class StationCreate(StationBase):
    """Payload for adding a station to the first-party catalogue."""


class StationUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    name: Optional[str] = Field(default=None, min_length=1)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    price_per_kwh: Optional[float] = Field(default=None, ge=0)
    available: Optional[bool] = None
    power_kw: Optional[float] = Field(default=None, gt=0)
    connector_types: Optional[List[str]] = None
    operator: Optional[str] = None


class StoredStation(StationBase):
    """A first-party catalogue row as persisted in the station table."""

    id: str
    created_at: datetime


class StationResponse(BaseModel):
    """Wire form of a normalised station record."""

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

    @classmethod
    def from_record(cls, record: StationRecord) -> "StationResponse":
        return cls(**asdict(record))


class NearbyStationsResponse(BaseModel):
    latitude: float
    longitude: float
    radius_km: float
    total: int = Field(..., ge=0)
    per_source_count: Dict[str, int] = Field(default_factory=dict)
    nearest_km: Optional[float] = None
    stations: List[StationResponse] = Field(default_factory=list)


class FeedQueryRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    radius_km: Optional[float] = None


class FeedQueryAccepted(BaseModel):
    feed_id: str
    token: int = Field(..., ge=1)


class FeedStateResponse(BaseModel):
    """What a UI surface should currently display for a feed."""

    feed_id: str
    latest_token: int
    applied_token: int
    pending: bool
    stations: List[StationResponse] = Field(default_factory=list)


class LedgerEntryType(str, Enum):
    earned = "earned"
    spent = "spent"


class LedgerEntry(BaseModel):
    """One immutable line of a user's Spark Coins history."""

    id: str
    amount: int
    type: LedgerEntryType
    description: str
    timestamp: datetime


class LedgerSnapshot(BaseModel):
    """Persisted Spark Coins document for one user."""

    user_id: str
    balance: int
    entries: List[LedgerEntry] = Field(default_factory=list)


class CoinsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)


class PaymentStatus(str, Enum):
    """Persisted outcome of a payment attempt."""

    pending = "pending"
    success = "success"
    failed = "failed"


class PaymentState(str, Enum):
    """Lifecycle of an open payment session."""

    idle = "idle"
    processing = "processing"
    success = "success"
    failed = "failed"


class PaymentRecord(BaseModel):
    """Row in the payments table."""

    id: str
    session_id: str
    user_id: str
    amount: float = Field(..., gt=0)
    description: str
    payee_vpa: str
    payee_name: str
    station_id: Optional[str] = None
    booking_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.pending
    transaction_id: Optional[str] = None
    coins_earned: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None


class PaymentHistoryResponse(BaseModel):
    user_id: str
    total: int = Field(..., ge=0)
    payments: List[PaymentRecord] = Field(default_factory=list)


class PaymentCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    description: str = "EV Charging Payment"
    station_id: Optional[str] = None
    booking_id: Optional[str] = None


class PaymentScanRequest(BaseModel):
    """A scanned UPI QR payload to pay from."""

    user_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    station_id: Optional[str] = None
    booking_id: Optional[str] = None


class PaymentSessionResponse(BaseModel):
    id: str
    user_id: str
    amount: float
    description: str
    state: PaymentState
    closed: bool
    error_message: Optional[str] = None
    coins_earned: Optional[int] = None
    payment_id: Optional[str] = None
    seconds_remaining: float = Field(..., ge=0)


class UpiIntentResponse(BaseModel):
    url: str
    payee_vpa: str
    payee_name: str
    amount: float


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so booking times always compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


class BookingCreate(BaseModel):
    """Payload for reserving a charging slot at a station."""

    user_id: str = Field(..., min_length=1)
    station_id: str = Field(..., min_length=1)
    start_time: UtcDatetime
    end_time: UtcDatetime

    @model_validator(mode="after")
    def _ends_after_start(self) -> "BookingCreate":
        if self.end_time <= self.start_time:
            raise ValueError("Booking end_time must be after start_time.")
        return self


class Booking(BaseModel):
    """Row in the bookings table."""

    id: str
    user_id: str
    station_id: str
    start_time: UtcDatetime
    end_time: UtcDatetime
    status: BookingStatus = BookingStatus.pending
    energy_used: Optional[float] = Field(default=None, ge=0)
    created_at: datetime
    updated_at: Optional[datetime] = None


class BookingStatusUpdate(BaseModel):
    user_id: str = Field(..., min_length=1)
    status: BookingStatus
    energy_used: Optional[float] = Field(default=None, ge=0)
