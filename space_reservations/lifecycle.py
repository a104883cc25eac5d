"""
Reservation lifecycle: create, update, approve, reject and delete.

Every operation takes the acting ``Principal`` explicitly, runs all of its
checks inside one unit of work and only then writes. A reservation starts
Pending; Approved and Rejected are reachable only from Pending through
``approve``/``reject``. A non-administrator editing the space, date or time of
an Approved reservation sends it back to Pending.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, TypeVar
import logging

from .availability import AvailabilityChecker, ValidationResult
from .booking import TimeRange
from .errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from .identity import Capability, Principal
from .models import Reservation, ReservationState, Role, Space, User
from .store import SqlReservationStore, StoreSession, WriteConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ELIGIBLE_ROLES = frozenset({Role.TEACHER, Role.COORDINATOR, Role.ADMINISTRATOR})
DESCRIPTION_MAX_LENGTH = 500


@dataclass(frozen=True)
class ReservationCreate:
    user_id: int
    space_id: int
    date: date
    time_range: str
    description: str | None = None


@dataclass(frozen=True)
class ReservationUpdate:
    """Partial update. ``None`` keeps the stored value of a field."""

    id: int | None = None
    user_id: int | None = None
    space_id: int | None = None
    date: date | None = None
    time_range: str | None = None
    state: ReservationState | None = None
    description: str | None = None


@dataclass(frozen=True)
class ReservationFilter:
    user_id: int | None = None
    space_id: int | None = None
    state: ReservationState | None = None
    date_from: date | None = None
    date_to: date | None = None


class ReservationLifecycleManager:
    def __init__(
        self,
        store: SqlReservationStore,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._clock: Callable[[], datetime] = now_provider or datetime.now

    def create(self, principal: Principal | None, request: ReservationCreate) -> Reservation:
        principal = _require_principal(principal)
        principal.require(Capability.CREATE_RESERVATION, "You are not allowed to create reservations.")
        if principal.id != request.user_id:
            raise ForbiddenError("Reservations can only be created for the authenticated user.")
        description = _validate_description(request.description)
        now = self._clock()

        def write() -> Reservation:
            with self.store.unit_of_work() as uow:
                user = _load_eligible_user(uow, request.user_id)
                space = _load_bookable_space(uow, request.space_id)
                time_range = TimeRange.parse(request.time_range)
                _ensure_not_past(request.date, now.date())

                checker = AvailabilityChecker(uow)
                _raise_on_conflict(checker.check_space_conflict(space.id, request.date, time_range))
                _raise_on_conflict(checker.check_user_conflict(user.id, request.date, time_range))

                reservation = uow.add(
                    Reservation(
                        user=user,
                        space=space,
                        date=request.date,
                        time_range=str(time_range),
                        state=ReservationState.PENDING,
                        description=description,
                        created_at=now,
                        updated_at=now,
                    )
                )
                uow.log_event("RESERVATION_CREATED", _event_payload(reservation, principal), now)
                return reservation

        def recheck(checker: AvailabilityChecker) -> ValidationResult:
            time_range = TimeRange.parse(request.time_range)
            space_result = checker.check_space_conflict(request.space_id, request.date, time_range)
            if not space_result:
                return space_result
            return checker.check_user_conflict(request.user_id, request.date, time_range)

        reservation = self._write_with_recheck(write, recheck)
        logger.info(
            "Reservation %s created by user %s for space %s on %s %s",
            reservation.id,
            principal.id,
            reservation.space_id,
            reservation.date,
            reservation.time_range,
        )
        return reservation

    def update(self, principal: Principal | None, reservation_id: int, request: ReservationUpdate) -> Reservation:
        principal = _require_principal(principal)
        if request.id is not None and request.id != reservation_id:
            raise ValidationError("The reservation id in the path does not match the payload.")

        can_update_any = principal.can(Capability.UPDATE_ANY_RESERVATION)
        if not (can_update_any or principal.can(Capability.UPDATE_OWN_RESERVATION)):
            raise ForbiddenError("You are not allowed to update reservations.")
        description = _validate_description(request.description)
        now = self._clock()
        checked: dict[str, Any] = {}

        def write() -> Reservation:
            with self.store.unit_of_work() as uow:
                reservation = uow.get_reservation(reservation_id)
                if reservation is None:
                    raise NotFoundError(f"Reservation {reservation_id} not found.")
                if not can_update_any and reservation.user_id != principal.id:
                    raise ForbiddenError("You can only update your own reservations.")

                previous_state = reservation.state

                new_user_id = reservation.user_id
                if request.user_id is not None and request.user_id != reservation.user_id:
                    if principal.can(Capability.REASSIGN_RESERVATION_OWNER):
                        new_user_id = request.user_id
                    else:
                        logger.warning(
                            "Ignoring owner change on reservation %s requested by %s", reservation.id, principal.id
                        )

                new_state = reservation.state
                if request.state is not None and principal.can(Capability.SET_RESERVATION_STATE):
                    new_state = request.state

                new_space_id = request.space_id if request.space_id is not None else reservation.space_id
                new_date = request.date if request.date is not None else reservation.date

                time_range = TimeRange.parse(reservation.time_range)
                range_changed = False
                if request.time_range is not None and request.time_range.strip() != reservation.time_range:
                    candidate = TimeRange.parse(request.time_range)
                    range_changed = str(candidate) != reservation.time_range
                    time_range = candidate

                owner_changed = new_user_id != reservation.user_id
                space_changed = new_space_id != reservation.space_id
                date_changed = new_date != reservation.date

                user: User = reservation.user
                if owner_changed:
                    user = _load_eligible_user(uow, new_user_id)
                space: Space = reservation.space
                if space_changed:
                    space = _load_bookable_space(uow, new_space_id)
                if date_changed:
                    _ensure_not_past(new_date, now.date())

                # Reopening a rejected reservation puts it back under both overlap checks.
                reopened = previous_state == ReservationState.REJECTED and new_state != ReservationState.REJECTED

                checker = AvailabilityChecker(uow)
                if space_changed or date_changed or range_changed or reopened:
                    _raise_on_conflict(
                        checker.check_space_conflict(space.id, new_date, time_range, exclude_reservation_id=reservation.id)
                    )
                if owner_changed or date_changed or range_changed or reopened:
                    _raise_on_conflict(
                        checker.check_user_conflict(user.id, new_date, time_range, exclude_reservation_id=reservation.id)
                    )

                materially_changed = space_changed or date_changed or range_changed
                if (
                    materially_changed
                    and previous_state == ReservationState.APPROVED
                    and not principal.can(Capability.KEEP_APPROVAL_ON_EDIT)
                ):
                    new_state = ReservationState.PENDING

                checked.update(
                    space_id=space.id,
                    user_id=user.id,
                    date=new_date,
                    time_range=time_range,
                )

                reservation.user = user
                reservation.space = space
                reservation.date = new_date
                reservation.time_range = str(time_range)
                reservation.state = new_state
                if description is not None:
                    reservation.description = description
                reservation.updated_at = now
                uow.flush()

                payload = _event_payload(reservation, principal)
                payload["previous_state"] = previous_state.value
                uow.log_event("RESERVATION_UPDATED", payload, now)
                return reservation

        def recheck(checker: AvailabilityChecker) -> ValidationResult:
            if not checked:
                return ValidationResult.valid()
            space_result = checker.check_space_conflict(
                checked["space_id"], checked["date"], checked["time_range"], exclude_reservation_id=reservation_id
            )
            if not space_result:
                return space_result
            return checker.check_user_conflict(
                checked["user_id"], checked["date"], checked["time_range"], exclude_reservation_id=reservation_id
            )

        reservation = self._write_with_recheck(write, recheck)
        logger.info("Reservation %s updated by user %s (state %s)", reservation.id, principal.id, reservation.state.value)
        return reservation

    def approve(self, principal: Principal | None, reservation_id: int) -> Reservation:
        return self._review(principal, reservation_id, ReservationState.APPROVED, "RESERVATION_APPROVED")

    def reject(self, principal: Principal | None, reservation_id: int) -> Reservation:
        return self._review(principal, reservation_id, ReservationState.REJECTED, "RESERVATION_REJECTED")

    def delete(self, principal: Principal | None, reservation_id: int) -> Reservation:
        principal = _require_principal(principal)
        now = self._clock()

        with self.store.unit_of_work() as uow:
            reservation = uow.get_reservation(reservation_id)
            if reservation is None:
                raise NotFoundError(f"Reservation {reservation_id} not found.")

            owns = reservation.user_id == principal.id
            if not principal.can(Capability.DELETE_ANY_RESERVATION) and not (
                owns and principal.can(Capability.DELETE_OWN_RESERVATION)
            ):
                raise ForbiddenError("You can only delete your own reservations.")

            if reservation.state == ReservationState.APPROVED:
                if not principal.can(Capability.DELETE_APPROVED_RESERVATION):
                    raise ForbiddenError("Approved reservations can only be deleted by coordinators or administrators.")
                if reservation.date < now.date() and not principal.can(Capability.DELETE_PAST_APPROVED_RESERVATION):
                    raise ForbiddenError("Only administrators can delete past approved reservations.")

            payload = _event_payload(reservation, principal)
            uow.delete(reservation)
            uow.log_event("RESERVATION_DELETED", payload, now)

        logger.info("Reservation %s deleted by user %s", reservation_id, principal.id)
        return reservation

    def get(self, principal: Principal | None, reservation_id: int) -> Reservation:
        principal = _require_principal(principal)
        with self.store.unit_of_work() as uow:
            reservation = uow.get_reservation(reservation_id)
            if reservation is None:
                raise NotFoundError(f"Reservation {reservation_id} not found.")
            if reservation.user_id != principal.id and not principal.can(Capability.VIEW_ALL_RESERVATIONS):
                raise ForbiddenError("You can only view your own reservations.")
            return reservation

    def list_reservations(self, principal: Principal | None, filters: ReservationFilter | None = None) -> list[Reservation]:
        principal = _require_principal(principal)
        filters = filters or ReservationFilter()
        user_id = filters.user_id
        if not principal.can(Capability.VIEW_ALL_RESERVATIONS):
            user_id = principal.id

        with self.store.unit_of_work() as uow:
            return uow.list_reservations(
                user_id=user_id,
                space_id=filters.space_id,
                state=filters.state,
                date_from=filters.date_from,
                date_to=filters.date_to,
            )

    def _review(
        self,
        principal: Principal | None,
        reservation_id: int,
        target: ReservationState,
        event_type: str,
    ) -> Reservation:
        principal = _require_principal(principal)
        principal.require(Capability.REVIEW_RESERVATION, "Only administrators can approve or reject reservations.")
        now = self._clock()

        with self.store.unit_of_work() as uow:
            reservation = uow.get_reservation(reservation_id)
            if reservation is None:
                raise NotFoundError(f"Reservation {reservation_id} not found.")
            if reservation.state != ReservationState.PENDING:
                raise ConflictError(
                    f"Only pending reservations can be {target.value.lower()}; "
                    f"reservation {reservation.id} is {reservation.state.value}."
                )
            reservation.state = target
            reservation.updated_at = now
            uow.flush()
            uow.log_event(event_type, _event_payload(reservation, principal), now)

        logger.info("Reservation %s %s by user %s", reservation_id, target.value.lower(), principal.id)
        return reservation

    def _write_with_recheck(
        self,
        write: Callable[[], T],
        recheck: Callable[[AvailabilityChecker], ValidationResult],
    ) -> T:
        """Run ``write``; if its commit loses a race, report the conflict that won."""
        try:
            return write()
        except WriteConflictError as error:
            with self.store.unit_of_work() as uow:
                result = recheck(AvailabilityChecker(uow))
            logger.warning("Reservation write lost a concurrent race: %s", result.message)
            if not result:
                raise ConflictError(result.message) from error
            raise ConflictError("The reservation was changed concurrently; reload it and try again.") from error


def _require_principal(principal: Principal | None) -> Principal:
    if principal is None:
        raise UnauthorizedError()
    return principal


def _load_eligible_user(uow: StoreSession, user_id: int) -> User:
    user = uow.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")
    if user.role not in ELIGIBLE_ROLES:
        raise ValidationError(f"User {user.name} is not allowed to hold reservations.")
    return user


def _load_bookable_space(uow: StoreSession, space_id: int) -> Space:
    space = uow.get_space(space_id)
    if space is None:
        raise NotFoundError(f"Space {space_id} not found.")
    if not space.available:
        raise ValidationError(f"Space {space.name} is not available for reservations.")
    return space


def _ensure_not_past(day: date, today: date) -> None:
    if day < today:
        raise ValidationError("Reservations cannot be made for past dates.")


def _raise_on_conflict(result: ValidationResult) -> None:
    if not result:
        logger.warning("Reservation rejected: %s", result.message)
        raise ConflictError(result.message)


def _validate_description(description: str | None) -> str | None:
    if description is None:
        return None
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Description cannot be longer than {DESCRIPTION_MAX_LENGTH} characters.")
    return description


def _event_payload(reservation: Reservation, principal: Principal) -> dict[str, Any]:
    return {
        "reservation_id": reservation.id,
        "user_id": reservation.user_id,
        "space_id": reservation.space_id,
        "date": reservation.date.isoformat(),
        "time_range": reservation.time_range,
        "state": reservation.state.value,
        "actor_id": principal.id,
    }
