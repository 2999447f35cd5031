"""HTTP route definitions for the service."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.schemas import (
    Booking,
    BookingCreate,
    BookingStatus,
    BookingStatusUpdate,
    CoinsRequest,
    FeedQueryAccepted,
    FeedQueryRequest,
    FeedStateResponse,
    LedgerSnapshot,
    NearbyStationsResponse,
    PaymentCreateRequest,
    PaymentHistoryResponse,
    PaymentScanRequest,
    PaymentSessionResponse,
    StationCreate,
    StationResponse,
    StationUpdate,
    StoredStation,
    UpiIntentResponse,
)
from services.bookings import (
    BookingFilters,
    BookingService,
    BookingStateError,
    build_default_booking_service,
)
from services.catalog import StationCatalog, StationFilters, build_default_catalog
from services.geo import normalize_radius
from services.ledger import LedgerBook, build_default_ledger_book
from services.payments import (
    PaymentService,
    PaymentSession,
    PaymentStateError,
    build_default_payment_service,
)
from services.stations import FeedSnapshot, StationSearchService, build_default_station_service
from services.upi import build_upi_intent_url, parse_upi_payload

router = APIRouter()


def get_station_service() -> StationSearchService:
    return build_default_station_service()


def get_catalog() -> StationCatalog:
    return build_default_catalog()


def get_ledger_book() -> LedgerBook:
    return build_default_ledger_book()


def get_payment_service() -> PaymentService:
    return build_default_payment_service()


def get_booking_service() -> BookingService:
    return build_default_booking_service()


def _not_found(exc: KeyError) -> HTTPException:
    detail = exc.args[0] if exc.args else str(exc)
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _feed_state(snapshot: FeedSnapshot) -> FeedStateResponse:
    return FeedStateResponse(
        feed_id=snapshot.feed_id,
        latest_token=snapshot.latest_token,
        applied_token=snapshot.applied_token,
        pending=snapshot.pending,
        stations=[StationResponse.from_record(record) for record in snapshot.stations],
    )


def _session_response(session: PaymentSession, payments: PaymentService) -> PaymentSessionResponse:
    return PaymentSessionResponse(
        id=session.id,
        user_id=session.user_id,
        amount=session.amount,
        description=session.description,
        state=session.state,
        closed=session.closed,
        error_message=session.error_message,
        coins_earned=session.coins_earned,
        payment_id=session.payment_id,
        seconds_remaining=payments.seconds_remaining(session),
    )


@router.get(
    "/stations/nearby",
    response_model=NearbyStationsResponse,
    summary="Merged, deduplicated charging stations around a point, closest first.",
)
def nearby_stations(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, description="Search radius; invalid values use the default."),
    service: StationSearchService = Depends(get_station_service),
) -> NearbyStationsResponse:
    try:
        records = service.search_nearby(latitude, longitude, radius_km)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    summary = service.aggregator.summarize(records)
    radius = normalize_radius(radius_km, service.default_radius_km)
    return NearbyStationsResponse(
        latitude=latitude,
        longitude=longitude,
        radius_km=radius,
        total=summary.total,
        per_source_count=summary.per_source_count,
        nearest_km=summary.nearest_km,
        stations=[StationResponse.from_record(record) for record in records],
    )


@router.get(
    "/stations/{station_id}",
    response_model=StationResponse,
    summary="Details for a station from any source.",
)
def station_details(
    station_id: str,
    service: StationSearchService = Depends(get_station_service),
) -> StationResponse:
    try:
        record = service.station_details(station_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return StationResponse.from_record(record)


@router.get(
    "/catalog/stations",
    response_model=List[StoredStation],
    summary="List first-party stations.",
)
def list_catalog_stations(
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    available_only: bool = False,
    connector_type: Optional[List[str]] = Query(None),
    catalog: StationCatalog = Depends(get_catalog),
) -> List[StoredStation]:
    price_range = None
    if min_price is not None or max_price is not None:
        price_range = (min_price or 0.0, max_price if max_price is not None else float("inf"))
    filters = StationFilters(
        search=search,
        price_range=price_range,
        available_only=available_only,
        connector_types=connector_type or [],
    )
    return catalog.list_stations(filters)


@router.post(
    "/catalog/stations",
    status_code=status.HTTP_201_CREATED,
    response_model=StoredStation,
    summary="Add a first-party station.",
)
def create_catalog_station(
    payload: StationCreate,
    catalog: StationCatalog = Depends(get_catalog),
) -> StoredStation:
    return catalog.create_station(payload)


@router.patch(
    "/catalog/stations/{station_id}",
    response_model=StoredStation,
    summary="Update a first-party station.",
)
def update_catalog_station(
    station_id: str,
    payload: StationUpdate,
    catalog: StationCatalog = Depends(get_catalog),
) -> StoredStation:
    try:
        return catalog.update_station(station_id, payload)
    except KeyError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.delete(
    "/catalog/stations/{station_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a first-party station.",
)
def delete_catalog_station(
    station_id: str,
    catalog: StationCatalog = Depends(get_catalog),
) -> Response:
    try:
        catalog.delete_station(station_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/feeds/{feed_id}/queries",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=FeedQueryAccepted,
    summary="Start a station query for a feed; newer queries supersede older ones.",
)
def submit_feed_query(
    feed_id: str,
    payload: FeedQueryRequest,
    service: StationSearchService = Depends(get_station_service),
) -> FeedQueryAccepted:
    feed = service.feed(feed_id)
    try:
        token = feed.submit(payload.latitude, payload.longitude, payload.radius_km)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return FeedQueryAccepted(feed_id=feed_id, token=token)


@router.get(
    "/feeds/{feed_id}",
    response_model=FeedStateResponse,
    summary="Stations currently shown by a feed.",
)
def get_feed(
    feed_id: str,
    service: StationSearchService = Depends(get_station_service),
) -> FeedStateResponse:
    try:
        feed = service.get_feed(feed_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return _feed_state(feed.snapshot())


@router.delete(
    "/feeds/{feed_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Tear down a feed and abandon its in-flight queries.",
)
def close_feed(
    feed_id: str,
    service: StationSearchService = Depends(get_station_service),
) -> Response:
    try:
        service.close_feed(feed_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/wallets/{user_id}",
    response_model=LedgerSnapshot,
    summary="Spark Coins balance and history.",
)
def get_wallet(user_id: str, book: LedgerBook = Depends(get_ledger_book)) -> LedgerSnapshot:
    return book.ledger_for(user_id).snapshot()


@router.post(
    "/wallets/{user_id}/earn",
    response_model=LedgerSnapshot,
    summary="Credit Spark Coins.",
)
def earn_coins(
    user_id: str,
    payload: CoinsRequest,
    book: LedgerBook = Depends(get_ledger_book),
) -> LedgerSnapshot:
    ledger = book.ledger_for(user_id)
    ledger.add_coins(payload.amount, payload.description or "Coins earned")
    return ledger.snapshot()


@router.post(
    "/wallets/{user_id}/spend",
    response_model=LedgerSnapshot,
    summary="Spend Spark Coins; rejected when the balance is too low.",
)
def spend_coins(
    user_id: str,
    payload: CoinsRequest,
    book: LedgerBook = Depends(get_ledger_book),
) -> LedgerSnapshot:
    ledger = book.ledger_for(user_id)
    if not ledger.use_coins(payload.amount, payload.description or "Coins spent"):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Not enough Spark Coins. You need {payload.amount} coins "
                f"but have {ledger.balance}."
            ),
        )
    return ledger.snapshot()


@router.post(
    "/wallets/{user_id}/reset",
    response_model=LedgerSnapshot,
    summary="Reset a wallet to its starting balance.",
)
def reset_wallet(user_id: str, book: LedgerBook = Depends(get_ledger_book)) -> LedgerSnapshot:
    ledger = book.ledger_for(user_id)
    ledger.reset()
    return ledger.snapshot()


@router.post(
    "/payments",
    status_code=status.HTTP_201_CREATED,
    response_model=PaymentSessionResponse,
    summary="Open a payment session.",
)
def open_payment(
    payload: PaymentCreateRequest,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentSessionResponse:
    try:
        session = payments.open_session(
            user_id=payload.user_id,
            amount=payload.amount,
            description=payload.description,
            station_id=payload.station_id,
            booking_id=payload.booking_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _session_response(session, payments)


@router.get(
    "/payments",
    response_model=PaymentHistoryResponse,
    summary="A user's payment attempts, newest first.",
)
def payment_history(
    user_id: str = Query(..., min_length=1),
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentHistoryResponse:
    records = payments.history(user_id)
    return PaymentHistoryResponse(user_id=user_id, total=len(records), payments=records)


@router.post(
    "/payments/scan",
    status_code=status.HTTP_201_CREATED,
    response_model=PaymentSessionResponse,
    summary="Open a payment session from a scanned UPI QR code.",
)
def scan_payment(
    payload: PaymentScanRequest,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentSessionResponse:
    scanned = parse_upi_payload(payload.content)
    if scanned is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid QR code. Please scan a valid UPI payment QR code.",
        )
    try:
        amount = float(scanned.amount or "")
        session = payments.open_session(
            user_id=payload.user_id,
            amount=amount,
            description=scanned.description or "EV Charging Payment",
            station_id=payload.station_id,
            booking_id=payload.booking_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"QR code has no usable amount: {scanned.amount!r}.",
        ) from exc
    return _session_response(session, payments)


@router.get(
    "/payments/{session_id}",
    response_model=PaymentSessionResponse,
    summary="Current state of a payment session.",
)
def get_payment(
    session_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentSessionResponse:
    try:
        session = payments.get_session(session_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return _session_response(session, payments)


@router.post(
    "/payments/{session_id}/initiate",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=PaymentSessionResponse,
    summary="Start verifying a payment.",
)
def initiate_payment(
    session_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentSessionResponse:
    try:
        session = payments.initiate(session_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    except PaymentStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _session_response(session, payments)


@router.post(
    "/payments/{session_id}/retry",
    response_model=PaymentSessionResponse,
    summary="Return a failed payment to idle.",
)
def retry_payment(
    session_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentSessionResponse:
    try:
        session = payments.retry(session_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    except PaymentStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _session_response(session, payments)


@router.delete(
    "/payments/{session_id}",
    response_model=PaymentSessionResponse,
    summary="Dismiss a payment session.",
)
def close_payment(
    session_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentSessionResponse:
    try:
        session = payments.close(session_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return _session_response(session, payments)


@router.get(
    "/payments/{session_id}/upi",
    response_model=UpiIntentResponse,
    summary="UPI intent URL to render as a QR code.",
)
def payment_upi_intent(
    session_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> UpiIntentResponse:
    try:
        session = payments.get_session(session_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    url = build_upi_intent_url(
        amount=session.amount,
        description=session.description,
        payee_vpa=payments.payee_vpa,
        payee_name=payments.payee_name,
        reference_id=session.payment_id,
    )
    return UpiIntentResponse(
        url=url,
        payee_vpa=payments.payee_vpa,
        payee_name=payments.payee_name,
        amount=session.amount,
    )


@router.post(
    "/bookings",
    status_code=status.HTTP_201_CREATED,
    response_model=Booking,
    summary="Book a charging slot.",
)
def create_booking(
    payload: BookingCreate,
    bookings: BookingService = Depends(get_booking_service),
) -> Booking:
    return bookings.create_booking(payload)


@router.get(
    "/bookings",
    response_model=List[Booking],
    summary="A user's bookings, latest start time first.",
)
def list_bookings(
    user_id: str = Query(..., min_length=1),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    bookings: BookingService = Depends(get_booking_service),
) -> List[Booking]:
    filters = BookingFilters(status=booking_status, start_date=start_date, end_date=end_date)
    return bookings.list_bookings(user_id, filters)


@router.get(
    "/bookings/{booking_id}",
    response_model=Booking,
    summary="One of the user's bookings.",
)
def get_booking(
    booking_id: str,
    user_id: str = Query(..., min_length=1),
    bookings: BookingService = Depends(get_booking_service),
) -> Booking:
    try:
        return bookings.get_booking(booking_id, user_id)
    except KeyError as exc:
        raise _not_found(exc) from exc


@router.patch(
    "/bookings/{booking_id}",
    response_model=Booking,
    summary="Change a booking's status.",
)
def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    bookings: BookingService = Depends(get_booking_service),
) -> Booking:
    try:
        return bookings.update_status(
            booking_id, payload.user_id, payload.status, energy_used=payload.energy_used
        )
    except KeyError as exc:
        raise _not_found(exc) from exc
    except BookingStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=Booking,
    summary="Cancel a booking.",
)
def cancel_booking(
    booking_id: str,
    user_id: str = Query(..., min_length=1),
    bookings: BookingService = Depends(get_booking_service),
) -> Booking:
    try:
        return bookings.cancel_booking(booking_id, user_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    except BookingStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
