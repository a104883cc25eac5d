from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from .booking import TimeRange
from .models import Reservation
from .store import StoreSession


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    message: str
    conflicting_reservation_id: int | None = None

    @staticmethod
    def valid(message: str = "No conflicts found.") -> "ValidationResult":
        return ValidationResult(True, message)

    def __bool__(self) -> bool:
        return self.is_valid


class AvailabilityChecker:
    """Enforces the two non-overlap invariants over one day's reservations.

    Both scans read the non-rejected reservations of the target space (or
    user) for the calendar day and test each one against the requested range.
    Update flows pass ``exclude_reservation_id`` so a reservation never
    conflicts with its own stored row.
    """

    def __init__(self, uow: StoreSession) -> None:
        self.uow = uow

    def check_space_conflict(
        self,
        space_id: int,
        day: date,
        time_range: TimeRange,
        exclude_reservation_id: int | None = None,
    ) -> ValidationResult:
        existing = self.uow.reservations_on_day(day, space_id=space_id, exclude_reservation_id=exclude_reservation_id)
        conflict = _first_overlap(time_range, existing)
        if conflict is None:
            return ValidationResult.valid()
        return ValidationResult(
            False,
            f"Space conflict: the space is already reserved on {day.isoformat()} "
            f"from {conflict.time_range} by {conflict.user.name} ({conflict.state.value}).",
            conflict.id,
        )

    def check_user_conflict(
        self,
        user_id: int,
        day: date,
        time_range: TimeRange,
        exclude_reservation_id: int | None = None,
    ) -> ValidationResult:
        existing = self.uow.reservations_on_day(day, user_id=user_id, exclude_reservation_id=exclude_reservation_id)
        conflict = _first_overlap(time_range, existing)
        if conflict is None:
            return ValidationResult.valid()
        return ValidationResult(
            False,
            f"User conflict: the user already has a reservation on {day.isoformat()} "
            f"from {conflict.time_range} in {conflict.space.name} ({conflict.state.value}).",
            conflict.id,
        )

    def occupied_ranges(self, space_id: int, day: date) -> list[Reservation]:
        return self.uow.reservations_on_day(day, space_id=space_id)


def _first_overlap(requested: TimeRange, existing: Iterable[Reservation]) -> Reservation | None:
    for reservation in existing:
        if requested.overlaps(TimeRange.parse(reservation.time_range)):
            return reservation
    return None
