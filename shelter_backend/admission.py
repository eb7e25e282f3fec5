"""Booking admission control.

Decides whether a proposed booking may be confirmed against the other
non-cancelled bookings of the same shelter. Everything here is pure: callers
supply the shelter and the bookings, and persist whatever comes back.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class BookingPolicy(str, Enum):
    EXCLUSIVE_ONLY = "exclusive_only"
    INCLUSIVE_ONLY = "inclusive_only"
    BOTH = "both"


class BookingType(str, Enum):
    EXCLUSIVE = "exclusive"  # reserves the entire shelter
    INCLUSIVE = "inclusive"  # counts towards capacity


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


##########
# ERRORS
##########


class AdmissionError(Exception):
    """Base class for rejected booking state changes."""

    status_code = 409


class InvalidWindow(AdmissionError):
    status_code = 422


class ResourceInactive(AdmissionError):
    pass


class PolicyViolation(AdmissionError):
    status_code = 422


class BookingConflict(AdmissionError):
    pass


class CapacityExceeded(AdmissionError):
    pass


class AlreadyCancelled(AdmissionError):
    pass


##############
# TIME WINDOWS
##############


def as_utc(value: datetime) -> datetime:
    """Normalise to aware UTC. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    @classmethod
    def of(cls, start: datetime, end: datetime) -> "TimeWindow":
        return cls(as_utc(start), as_utc(end))


def overlaps(a: TimeWindow, b: TimeWindow) -> bool:
    """True if the windows share an instant. Touching windows do not."""
    return a.start < b.end and b.start < a.end


def validate_window(window: TimeWindow) -> None:
    if window.start >= window.end:
        raise InvalidWindow(
            f"Booking must end after it starts ({window.start} >= {window.end})"
        )


########
# POLICY
########


ALLOWED_TYPES = {
    BookingPolicy.EXCLUSIVE_ONLY: frozenset({BookingType.EXCLUSIVE}),
    BookingPolicy.INCLUSIVE_ONLY: frozenset({BookingType.INCLUSIVE}),
    BookingPolicy.BOTH: frozenset({BookingType.EXCLUSIVE, BookingType.INCLUSIVE}),
}


def is_type_allowed(policy: BookingPolicy, booking_type: BookingType) -> bool:
    return booking_type in ALLOWED_TYPES[policy]


###########
# ADMISSION
###########


def booking_window(booking) -> TimeWindow:
    return TimeWindow.of(booking.start_utc, booking.end_utc)


def admit(shelter, existing, proposed) -> BookingStatus:
    """Decide whether ``proposed`` may join ``existing`` on ``shelter``.

    ``shelter`` needs ``capacity``, ``booking_policy`` and ``is_active``;
    bookings need ``start_utc``, ``end_utc``, ``guests``, ``type`` and
    ``status``. Returns the status the new booking should be stored with, or
    raises an ``AdmissionError`` subclass naming why it was rejected.
    """
    window = booking_window(proposed)
    validate_window(window)
    if proposed.guests < 1:
        raise ValueError("A booking needs at least one guest")
    if not shelter.is_active:
        raise ResourceInactive("Shelter is not accepting bookings")
    if not is_type_allowed(shelter.booking_policy, proposed.type):
        raise PolicyViolation(
            f"Shelter policy {shelter.booking_policy.value} does not allow "
            f"{proposed.type.value} bookings"
        )

    overlapping = [
        booking
        for booking in existing
        if booking.status != BookingStatus.CANCELLED
        and overlaps(booking_window(booking), window)
    ]

    if proposed.type == BookingType.EXCLUSIVE:
        if overlapping:
            raise BookingConflict("Shelter is already booked for the requested time")
        return BookingStatus.CONFIRMED

    if any(booking.type == BookingType.EXCLUSIVE for booking in overlapping):
        raise BookingConflict("Shelter is reserved exclusively for the requested time")

    # Whole-window sum: back-to-back bookings inside the window both count.
    occupied = sum(
        booking.guests
        for booking in overlapping
        if booking.type == BookingType.INCLUSIVE
    )
    if occupied + proposed.guests > shelter.capacity:
        raise CapacityExceeded(
            f"{proposed.guests} guests requested, "
            f"{shelter.capacity - occupied} of {shelter.capacity} places free"
        )
    return BookingStatus.CONFIRMED


##############
# STATUS FLOWS
##############


TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(booking, target: BookingStatus) -> None:
    if not can_transition(booking.status, target):
        raise ValueError(
            f"Invalid booking transition: {booking.status.value} -> {target.value}"
        )
    booking.status = target


def cancel(booking) -> None:
    """Cancel ``booking`` in place. Allowed at any time, including mid-stay."""
    if booking.status == BookingStatus.CANCELLED:
        raise AlreadyCancelled("Booking is already cancelled")
    transition(booking, BookingStatus.CANCELLED)
