# rentals/services/bookings.py
from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from dateutil.parser import isoparse, parse as parse_dt
from django.core.exceptions import ValidationError
from django.core.validators import validate_email

from integrations.errors import RECOVERABLE_ERRORS, AbortError
from integrations.schemas import Booking, BookingInput, UserDetails

from .availability import AvailabilityState

GUEST = "guest"


def to_calendar_date(value: Any) -> date:
    """
    Calendar date from a ``date``, a ``datetime`` (time dropped) or a string.
    Strings are read as ISO first, then day-first (``01-03-2025``).
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("Empty date")
        try:
            return isoparse(s).date()
        except ValueError:
            return parse_dt(s, dayfirst=True).date()
    raise TypeError(f"Cannot read a date from {value!r}")


def compute_duration(start: Any, end: Any) -> int:
    """
    Rental days between two calendar dates: the span rounded up to whole
    days, and never less than 1 (same-day rentals count as one day).
    """
    days = abs((to_calendar_date(end) - to_calendar_date(start)).days)
    return max(1, days)


def compute_total(duration: int, rate: int) -> int:
    if duration < 0 or rate < 0:
        raise ValueError("Duration and rate must be non-negative")
    return int(duration) * int(rate)


def renter_details_errors(name: str, email: str, phone: str, agreed: bool) -> Dict[str, str]:
    """Field -> message for everything that blocks submission."""
    errors: Dict[str, str] = {}
    if len((name or "").strip()) < 2:
        errors["name"] = "Name must be at least 2 characters long."
    try:
        validate_email((email or "").strip())
    except ValidationError:
        errors["email"] = "Enter a valid email address."
    if len(re.sub(r"\D", "", phone or "")) < 10:
        errors["phone"] = "Phone number must contain at least 10 digits."
    if not agreed:
        errors["agreed"] = "You have to accept the rental terms."
    return errors


# ---------------------------------------------------------------------------
# Booking flow: dates -> confirmation -> success
# ---------------------------------------------------------------------------

class BookingStep(str, Enum):
    SELECTING_DATES = "dates"
    CONFIRMING_DETAILS = "confirm"
    COMPLETED = "success"


BLOCKING_MESSAGES = {
    "no_dates": "Select the start and the end date.",
    "invalid_range": "The end date cannot be before the start date.",
    "checking": "Availability is still being checked.",
    "unchecked": "Check availability for the selected dates first.",
    "unavailable": "The car is not available on the selected dates.",
    "submitting": "The booking is already being submitted.",
}


class BookingBlocked(Exception):
    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or BLOCKING_MESSAGES.get(reason, reason))
        self.reason = reason


class BookingFlow:
    def __init__(self, car_id: str, price_per_day: int, user_id: str = GUEST):
        self.car_id = car_id
        self.price_per_day = int(price_per_day)
        self.user_id = user_id or GUEST
        self.step = BookingStep.SELECTING_DATES
        self.start_date: Optional[date] = None
        self.end_date: Optional[date] = None
        self.availability = AvailabilityState.idle()
        self.submitting = False
        self.booking: Optional[Booking] = None
        self.error: Optional[str] = None
        self.field_errors: Dict[str, str] = {}

    @property
    def has_dates(self) -> bool:
        return self.start_date is not None and self.end_date is not None

    @property
    def duration(self) -> Optional[int]:
        if not self.has_dates:
            return None
        return compute_duration(self.start_date, self.end_date)

    @property
    def total_price(self) -> Optional[int]:
        duration = self.duration
        if duration is None:
            return None
        return compute_total(duration, self.price_per_day)

    # ---------------- dates & availability ----------------

    def select_dates(self, start: Any, end: Any):
        if self.step is BookingStep.COMPLETED:
            return
        start = to_calendar_date(start) if start else None
        end = to_calendar_date(end) if end else None
        if (start, end) != (self.start_date, self.end_date):
            self.availability = AvailabilityState.idle()
            if self.step is BookingStep.CONFIRMING_DETAILS:
                self.step = BookingStep.SELECTING_DATES
        self.start_date, self.end_date = start, end
        self.error = None

    def matches(self, start: Optional[date], end: Optional[date]) -> bool:
        return (start, end) == (self.start_date, self.end_date)

    def apply_availability(self, start: date, end: date, state: AvailabilityState) -> bool:
        """Store a check result, unless it was made for other dates than the current ones."""
        if self.step is BookingStep.COMPLETED or not self.matches(start, end):
            return False
        self.availability = state
        return True

    def blocking_reason(self) -> Optional[str]:
        if not self.has_dates:
            return "no_dates"
        if self.end_date < self.start_date:
            return "invalid_range"
        status = self.availability.status
        if status == "checking":
            return "checking"
        if status == "unavailable":
            return "unavailable"
        if status != "available":
            return "unchecked"
        return None

    def blocking_message(self) -> Optional[str]:
        reason = self.blocking_reason()
        if reason is None:
            return None
        message = BLOCKING_MESSAGES[reason]
        if reason == "unavailable" and self.availability.conflict_dates:
            dates = ", ".join(d.strftime("%d-%m-%Y") for d in self.availability.conflict_dates)
            message = f"{message} Already booked: {dates}."
        return message

    @property
    def can_proceed(self) -> bool:
        return self.step is BookingStep.SELECTING_DATES and self.blocking_reason() is None

    # ---------------- transitions ----------------

    def proceed(self):
        if self.step is not BookingStep.SELECTING_DATES:
            return
        reason = self.blocking_reason()
        if reason:
            raise BookingBlocked(reason, self.blocking_message())
        self.step = BookingStep.CONFIRMING_DETAILS

    def back(self):
        if self.step is BookingStep.CONFIRMING_DETAILS:
            self.step = BookingStep.SELECTING_DATES
            self.error = None
            self.field_errors = {}

    async def submit(self, api, name: str, email: str, phone: str, agreed: bool) -> Optional[Booking]:
        """
        Post the booking (pending / pending). Returns it on success, None when
        validation or the backend refused it (see ``field_errors``/``error``).
        Once completed, further calls return the stored booking.
        """
        if self.step is BookingStep.COMPLETED:
            return self.booking
        if self.step is not BookingStep.CONFIRMING_DETAILS:
            raise BookingBlocked(self.blocking_reason() or "unchecked")
        if self.submitting:
            raise BookingBlocked("submitting")

        self.field_errors = renter_details_errors(name, email, phone, agreed)
        if self.field_errors:
            return None

        payload = BookingInput(
            car_id=self.car_id,
            user_id=self.user_id,
            start_date=self.start_date,
            end_date=self.end_date,
            total_price=self.total_price,
            status="pending",
            payment_status="pending",
            user_details=UserDetails(name=name.strip(), email=email.strip(), phone=phone.strip()),
        )
        self.submitting = True
        self.error = None
        try:
            booking = await api.create_booking(payload)
        except AbortError:
            return None
        except RECOVERABLE_ERRORS as exc:
            self.error = str(exc)
            return None
        finally:
            self.submitting = False

        self.booking = booking
        self.step = BookingStep.COMPLETED
        return booking

    # ---------------- session persistence ----------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "car_id": self.car_id,
            "price_per_day": self.price_per_day,
            "user_id": self.user_id,
            "step": self.step.value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "availability": self.availability.to_dict(),
            "booking": self.booking.to_wire() if self.booking else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookingFlow":
        flow = cls(data["car_id"], data["price_per_day"], data.get("user_id") or GUEST)
        flow.step = BookingStep(data.get("step") or BookingStep.SELECTING_DATES.value)
        flow.start_date = date.fromisoformat(data["start_date"]) if data.get("start_date") else None
        flow.end_date = date.fromisoformat(data["end_date"]) if data.get("end_date") else None
        flow.availability = AvailabilityState.from_dict(data.get("availability"))
        if data.get("booking"):
            flow.booking = Booking.model_validate(data["booking"])
        flow.error = data.get("error")
        return flow
