from __future__ import annotations

from datetime import date, datetime

from space_reservations import (
    Principal,
    Reservation,
    ReservationState,
    Role,
    Settings,
    Space,
    SpaceType,
    SqlReservationStore,
    User,
)
from space_reservations.identity import hash_password

# Monday morning; tests book from this day on.
FIXED_NOW = datetime(2026, 3, 2, 8, 0)
TODAY = FIXED_NOW.date()
TEST_SECRET = "unit-test-secret-key-0123456789abcdef"
DEFAULT_PASSWORD = "secret123"
DEFAULT_PASSWORD_HASH = hash_password(DEFAULT_PASSWORD)


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_settings(**overrides) -> Settings:
    values = {"database_url": "sqlite://", "jwt_secret_key": TEST_SECRET}
    values.update(overrides)
    return Settings(**values)


def make_store() -> SqlReservationStore:
    return SqlReservationStore("sqlite://")


def add_user(store: SqlReservationStore, name: str, email: str, role: Role) -> User:
    with store.unit_of_work() as uow:
        return uow.add(
            User(
                name=name,
                email=email,
                password_hash=DEFAULT_PASSWORD_HASH,
                role=role,
                department=None,
                created_at=FIXED_NOW,
            )
        )


def add_space(
    store: SqlReservationStore,
    name: str,
    capacity: int = 30,
    space_type: SpaceType = SpaceType.CLASSROOM,
    available: bool = True,
) -> Space:
    with store.unit_of_work() as uow:
        return uow.add(
            Space(
                name=name,
                type=space_type,
                capacity=capacity,
                location="Main building",
                available=available,
                created_at=FIXED_NOW,
            )
        )


def add_reservation(
    store: SqlReservationStore,
    user: User,
    space: Space,
    day: date,
    time_range: str,
    state: ReservationState = ReservationState.PENDING,
) -> Reservation:
    with store.unit_of_work() as uow:
        return uow.add(
            Reservation(
                user=uow.get_user(user.id),
                space=uow.get_space(space.id),
                date=day,
                time_range=time_range,
                state=state,
                created_at=FIXED_NOW,
                updated_at=FIXED_NOW,
            )
        )


def principal_for(user: User) -> Principal:
    return Principal.for_user(user)
