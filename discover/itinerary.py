"""Trip mutations used when a suggestion is accepted."""
from __future__ import annotations

import logging
import uuid
from typing import Optional, Tuple

from .models import Day, Stop, Suggestion, Trip
from .reporting import utc_now_iso

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


def touch(trip: Trip) -> None:
    trip.updated_at = utc_now_iso()


def find_day(trip: Trip, day_id: str) -> Day:
    for day in trip.days:
        if day.id == day_id:
            return day
    raise LookupError(f"Day not found: {day_id}")


def find_stop(trip: Trip, stop_id: str) -> Tuple[Day, int]:
    for day in trip.days:
        for idx, stop in enumerate(day.destinations):
            if stop.id == stop_id:
                return day, idx
    raise LookupError(f"Stop not found: {stop_id}")


def stop_from_suggestion(suggestion: Suggestion) -> Stop:
    return Stop(
        id=new_id(),
        name=suggestion.name,
        notes="",
        place_id=suggestion.place_id or None,
        address=suggestion.address or None,
        location=suggestion.location,
    )


def insert_suggestion(trip: Trip, day_id: str, suggestion: Suggestion) -> Stop:
    """Add the suggestion to the day right after its anchor stop.

    If the anchor was removed since the suggestion was produced, the new stop
    is appended at the end of the day.
    """
    day = find_day(trip, day_id)
    stop = stop_from_suggestion(suggestion)
    position: Optional[int] = None
    for idx, existing in enumerate(day.destinations):
        if existing.id == suggestion.insert_after_stop_id:
            position = idx + 1
            break
    if position is None:
        logger.info("Anchor %s not in day %s; appending", suggestion.insert_after_stop_id, day_id)
        day.destinations.append(stop)
    else:
        day.destinations.insert(position, stop)
    touch(trip)
    return stop


def move_stop(trip: Trip, stop_id: str, to_day_id: str) -> None:
    # Resolve both ends before mutating so a bad id leaves the trip untouched.
    source_day, idx = find_stop(trip, stop_id)
    target_day = find_day(trip, to_day_id)
    stop = source_day.destinations.pop(idx)
    target_day.destinations.append(stop)
    touch(trip)


def add_day(trip: Trip, label: Optional[str] = None) -> Day:
    day = Day(id=new_id(), label=label or f"Day {len(trip.days) + 1}")
    trip.days.append(day)
    touch(trip)
    return day


def remove_day(trip: Trip, day_id: str) -> None:
    day = find_day(trip, day_id)
    if len(trip.days) <= 1:
        raise ValueError("A trip must keep at least one day")
    trip.days.remove(day)
    touch(trip)
