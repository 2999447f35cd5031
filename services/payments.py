"""Mock UPI payment sessions: idle -> processing -> success | failed."""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from app.schemas import PaymentRecord, PaymentState, PaymentStatus
from datastore.tables import JsonTable, build_default_payment_table
from services.ledger import LedgerBook, build_default_ledger_book
from services.upi import DEFAULT_PAYEE_NAME, DEFAULT_PAYEE_VPA, coins_for_amount
from settings import get_settings

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_MESSAGE = "Payment session timed out. Please try again."


class PaymentStateError(ValueError):
    """Raised when a transition is not allowed from the session's current state."""


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    message: str = ""
    transaction_id: Optional[str] = None


Verifier = Callable[[PaymentRecord], VerificationResult]


class MockUpiVerifier:
    """Stands in for a payment gateway; every payment verifies."""

    def __call__(self, payment: PaymentRecord) -> VerificationResult:
        return VerificationResult(
            success=True,
            message="Payment verified",
            transaction_id=f"mock_txn_{payment.id[:8]}",
        )


@dataclass
class PaymentSession:
    id: str
    user_id: str
    amount: float
    description: str
    expires_at: float
    station_id: Optional[str] = None
    booking_id: Optional[str] = None
    state: PaymentState = PaymentState.idle
    closed: bool = False
    error_message: Optional[str] = None
    coins_earned: Optional[int] = None
    payment_id: Optional[str] = None
    attempt: int = 0


class PaymentService:
    """Owns payment sessions, their verification workers and the coin credit."""

    def __init__(
        self,
        ledger_book: LedgerBook,
        table: JsonTable[PaymentRecord],
        verifier: Optional[Verifier] = None,
        workers: int = 2,
        session_seconds: float = 120.0,
        verification_delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        payee_vpa: str = DEFAULT_PAYEE_VPA,
        payee_name: str = DEFAULT_PAYEE_NAME,
    ) -> None:
        self.ledger_book = ledger_book
        self.table = table
        self.verifier: Verifier = verifier or MockUpiVerifier()
        self.session_seconds = session_seconds
        self.verification_delay = verification_delay
        self.payee_vpa = payee_vpa
        self.payee_name = payee_name
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payment-verify")
        self._clock = clock
        self._sleep = sleep
        self._sessions: Dict[str, PaymentSession] = {}
        self._futures: Dict[str, Future[None]] = {}
        self._lock = Lock()

    def open_session(
        self,
        user_id: str,
        amount: float,
        description: str = "EV Charging Payment",
        station_id: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> PaymentSession:
        """Start the countdown for a new payment, in the idle state."""
        if not math.isfinite(amount) or amount <= 0:
            raise ValueError(f"Payment amount must be positive, got {amount!r}.")
        session = PaymentSession(
            id=str(uuid4()),
            user_id=user_id,
            amount=float(amount),
            description=description,
            station_id=station_id,
            booking_id=booking_id,
            expires_at=self._clock() + self.session_seconds,
        )
        with self._lock:
            self._sessions[session.id] = session
            return replace(session)

    def get_session(self, session_id: str) -> PaymentSession:
        with self._lock:
            session = self._require(session_id)
            expired_payment = self._enforce_deadline(session)
            snapshot = replace(session)
        self._mark_payment_failed(expired_payment, SESSION_TIMEOUT_MESSAGE)
        return snapshot

    def history(self, user_id: str) -> List[PaymentRecord]:
        """Every payment attempt the user has made, newest first."""
        payments = self.table.scan(lambda row: row.user_id == user_id)
        return sorted(payments, key=lambda row: row.created_at, reverse=True)

    def seconds_remaining(self, session: PaymentSession) -> float:
        if session.closed or session.state is PaymentState.success:
            return 0.0
        return max(0.0, session.expires_at - self._clock())

    def initiate(self, session_id: str) -> PaymentSession:
        """Move idle -> processing and schedule verification."""
        with self._lock:
            session = self._require(session_id)
            expired_payment = self._enforce_deadline(session)
            if session.closed:
                error: Optional[PaymentStateError] = PaymentStateError(
                    session.error_message or "Payment session has ended."
                )
            elif session.state is not PaymentState.idle:
                error = PaymentStateError(
                    f"Cannot start a payment that is {session.state.value}."
                )
            else:
                error = None
                session.state = PaymentState.processing
                session.error_message = None
                session.attempt += 1
                payment = PaymentRecord(
                    id=str(uuid4()),
                    session_id=session.id,
                    user_id=session.user_id,
                    amount=session.amount,
                    description=session.description,
                    payee_vpa=self.payee_vpa,
                    payee_name=self.payee_name,
                    station_id=session.station_id,
                    booking_id=session.booking_id,
                    created_at=datetime.now(timezone.utc),
                )
                session.payment_id = payment.id
                self.table.put_item(payment)
                attempt = session.attempt
                snapshot = replace(session)

        self._mark_payment_failed(expired_payment, SESSION_TIMEOUT_MESSAGE)
        if error is not None:
            raise error

        logger.info(
            "Payment initiated",
            extra={"payment_id": payment.id, "user_id": payment.user_id, "amount": payment.amount},
        )

        future = self.executor.submit(self._verify, session_id, attempt, payment)
        with self._lock:
            self._futures[session_id] = future
        future.add_done_callback(lambda _f, sid=session_id: self._clear_future(sid, _f))
        return snapshot

    def retry(self, session_id: str) -> PaymentSession:
        """Move failed -> idle so the user can try again."""
        with self._lock:
            session = self._require(session_id)
            expired_payment = self._enforce_deadline(session)
            if session.closed:
                error: Optional[PaymentStateError] = PaymentStateError(
                    session.error_message or "Payment session has ended."
                )
            elif session.state is not PaymentState.failed:
                error = PaymentStateError(
                    f"Only failed payments can be retried, this one is {session.state.value}."
                )
            else:
                error = None
                session.state = PaymentState.idle
                session.error_message = None
            snapshot = replace(session)

        self._mark_payment_failed(expired_payment, SESSION_TIMEOUT_MESSAGE)
        if error is not None:
            raise error
        return snapshot

    def close(self, session_id: str) -> PaymentSession:
        """Dismiss the session; a verification still in flight is abandoned."""
        with self._lock:
            session = self._require(session_id)
            abandoned = session.payment_id if session.state is PaymentState.processing else None
            session.closed = True
            future = self._futures.pop(session_id, None)
            snapshot = replace(session)
        if future is not None:
            future.cancel()
        self._mark_payment_failed(abandoned, "Payment session closed before verification.")
        logger.info("Payment session closed", extra={"payment_id": snapshot.payment_id})
        return snapshot

    def wait_for(self, session_id: str, timeout: Optional[float] = None) -> PaymentSession:
        """Block until any pending verification for the session has finished."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except (CancelledError, FutureTimeoutError):
                pass
        return self.get_session(session_id)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)

    def _verify(self, session_id: str, attempt: int, payment: PaymentRecord) -> None:
        if self.verification_delay > 0:
            self._sleep(self.verification_delay)
        try:
            result = self.verifier(payment)
        except TimeoutError:
            result = VerificationResult(success=False, message="Payment verification timed out.")
        except Exception as exc:  # noqa: BLE001 - gateway errors become a failed payment
            logger.error(
                "Payment verifier raised",
                extra={"payment_id": payment.id, "reason": repr(exc)},
            )
            result = VerificationResult(success=False, message="Payment verification failed.")
        self._resolve(session_id, attempt, payment, result)

    def _resolve(
        self,
        session_id: str,
        attempt: int,
        payment: PaymentRecord,
        result: VerificationResult,
    ) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            expired_payment = self._enforce_deadline(session)
            if session.closed or session.state is not PaymentState.processing or session.attempt != attempt:
                discard = True
            else:
                discard = False
                if result.success:
                    coins = coins_for_amount(session.amount)
                    try:
                        if coins > 0:
                            self.ledger_book.ledger_for(session.user_id).add_coins(
                                coins, f"Payment: {session.description}"
                            )
                    except OSError as exc:
                        logger.error(
                            "Could not credit Spark Coins",
                            extra={"payment_id": payment.id, "reason": repr(exc)},
                        )
                        result = VerificationResult(
                            success=False, message="Payment verified but coins could not be credited."
                        )
                if result.success:
                    session.state = PaymentState.success
                    session.coins_earned = coins
                else:
                    session.state = PaymentState.failed
                    session.error_message = result.message or "Payment verification failed."

        if expired_payment is not None:
            self._mark_payment_failed(expired_payment, SESSION_TIMEOUT_MESSAGE)
        if discard:
            logger.info(
                "Discarding late verification result",
                extra={"payment_id": payment.id, "status": "discarded"},
            )
            return

        if result.success:
            self._update_payment(
                payment.id,
                status=PaymentStatus.success,
                transaction_id=result.transaction_id,
                coins_earned=coins_for_amount(payment.amount),
            )
        else:
            self._update_payment(payment.id, status=PaymentStatus.failed)
        logger.info(
            "Payment verification finished",
            extra={
                "payment_id": payment.id,
                "user_id": payment.user_id,
                "status": "success" if result.success else "failed",
                "reason": result.message or None,
            },
        )

    def _enforce_deadline(self, session: PaymentSession) -> Optional[str]:
        """Expire the session once its countdown is over; caller holds the lock.

        Returns the id of a payment that was abandoned by the expiry.
        """
        if session.closed or session.state is PaymentState.success:
            return None
        if self._clock() < session.expires_at:
            return None
        abandoned = session.payment_id if session.state is PaymentState.processing else None
        session.state = PaymentState.failed
        session.error_message = SESSION_TIMEOUT_MESSAGE
        session.closed = True
        logger.warning(
            "Payment session timed out",
            extra={"payment_id": session.payment_id, "user_id": session.user_id},
        )
        return abandoned

    def _mark_payment_failed(self, payment_id: Optional[str], reason: str) -> None:
        if payment_id is None:
            return
        current = self.table.get_item(payment_id)
        if current is None or current.status is not PaymentStatus.pending:
            return
        self._update_payment(payment_id, status=PaymentStatus.failed)
        logger.info("Payment marked failed", extra={"payment_id": payment_id, "reason": reason})

    def _update_payment(self, payment_id: str, **changes: Any) -> None:
        current = self.table.get_item(payment_id)
        if current is None:
            return
        changes["updated_at"] = datetime.now(timezone.utc)
        self.table.put_item(current.model_copy(update=changes))

    def _require(self, session_id: str) -> PaymentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Payment session {session_id!r} not found.")
        return session

    def _clear_future(self, session_id: str, future: Future[None]) -> None:
        with self._lock:
            if self._futures.get(session_id) is future:
                self._futures.pop(session_id, None)


@lru_cache
def build_default_payment_service() -> PaymentService:
    """Factory that wires payments with the default ledger and table."""
    settings = get_settings()
    return PaymentService(
        ledger_book=build_default_ledger_book(),
        table=build_default_payment_table(),
        session_seconds=settings.payment_session_seconds,
        verification_delay=settings.payment_verification_delay,
    )
