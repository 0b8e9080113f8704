"""Spots remaining on a session instance, derived from its held bookings."""

from typing import Iterable

from booking_service.models.booking import HELD_STATUSES


def is_held(status: str) -> bool:
    """Whether a booking in this status occupies capacity."""
    return status in HELD_STATUSES


def held_spots(bookings: Iterable) -> int:
    return sum(b.number_of_spots for b in bookings if is_held(b.status))


def spots_remaining(capacity: int, holding_bookings: Iterable) -> int:
    """
    Capacity minus the spots of every booking in a held state, never below 0.
    Bookings in other states in the iterable are ignored.
    """
    return max(capacity - held_spots(holding_bookings), 0)
