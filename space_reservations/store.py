from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar
import logging

from sqlalchemy import create_engine, event, func, or_, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    ACTIVE_STATES,
    Base,
    Department,
    Reservation,
    ReservationEvent,
    ReservationState,
    Role,
    Space,
    SpaceType,
    User,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReservationStorageError(RuntimeError):
    pass


class WriteConflictError(ReservationStorageError):
    """A commit lost against a concurrent writer (constraint or serialization failure)."""


class StoreSession:
    """Query and write contracts over one open transaction."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: T) -> T:
        self.session.add(entity)
        self.session.flush()
        return entity

    def delete(self, entity: Any) -> None:
        self.session.delete(entity)
        self.session.flush()

    def flush(self) -> None:
        self.session.flush()

    def log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        self.session.add(
            ReservationEvent(
                event_time=(event_time or datetime.now()).replace(microsecond=0),
                event_type=event_type,
                payload=payload,
            )
        )

    def list_events(self, event_type: str | None = None) -> list[ReservationEvent]:
        statement = select(ReservationEvent).order_by(ReservationEvent.id)
        if event_type is not None:
            statement = statement.where(ReservationEvent.event_type == event_type)
        return list(self.session.scalars(statement))

    # Users

    def get_user(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)

    def find_user_by_email(self, email: str) -> User | None:
        statement = select(User).where(User.email == email.strip().lower())
        return self.session.scalars(statement).first()

    def list_users(
        self,
        *,
        role: Role | None = None,
        department_id: int | None = None,
        search: str | None = None,
        without_department: bool = False,
    ) -> list[User]:
        statement = select(User).options(selectinload(User.department)).order_by(User.id)
        if role is not None:
            statement = statement.where(User.role == role)
        if department_id is not None:
            statement = statement.where(User.department_id == department_id)
        if without_department:
            statement = statement.where(User.department_id.is_(None))
        if search:
            pattern = f"%{search.strip().lower()}%"
            statement = statement.where(or_(func.lower(User.name).like(pattern), User.email.like(pattern)))
        return list(self.session.scalars(statement))

    def count_users(self, role: Role | None = None) -> int:
        statement = select(func.count(User.id))
        if role is not None:
            statement = statement.where(User.role == role)
        return int(self.session.scalar(statement) or 0)

    # Departments

    def get_department(self, department_id: int) -> Department | None:
        return self.session.get(Department, department_id)

    def find_department_by_code(self, code: str) -> Department | None:
        statement = select(Department).where(func.upper(Department.code) == code.strip().upper())
        return self.session.scalars(statement).first()

    def find_department_headed_by(self, user_id: int) -> Department | None:
        statement = select(Department).where(Department.head_id == user_id)
        return self.session.scalars(statement).first()

    def list_departments(self) -> list[Department]:
        statement = (
            select(Department)
            .options(selectinload(Department.head), selectinload(Department.members))
            .order_by(Department.id)
        )
        return list(self.session.scalars(statement))

    # Spaces

    def get_space(self, space_id: int) -> Space | None:
        return self.session.get(Space, space_id)

    def find_space_by_name(self, name: str) -> Space | None:
        statement = select(Space).where(func.lower(Space.name) == name.strip().lower())
        return self.session.scalars(statement).first()

    def list_spaces(
        self,
        *,
        space_type: SpaceType | None = None,
        min_capacity: int | None = None,
        only_available: bool = False,
        search: str | None = None,
    ) -> list[Space]:
        statement = select(Space).order_by(Space.name)
        if space_type is not None:
            statement = statement.where(Space.type == space_type)
        if min_capacity is not None:
            statement = statement.where(Space.capacity >= min_capacity)
        if only_available:
            statement = statement.where(Space.available.is_(True))
        if search:
            pattern = f"%{search.strip().lower()}%"
            statement = statement.where(
                or_(
                    func.lower(Space.name).like(pattern),
                    func.lower(Space.location).like(pattern),
                    func.lower(Space.description).like(pattern),
                )
            )
        return list(self.session.scalars(statement))

    # Reservations

    def get_reservation(self, reservation_id: int) -> Reservation | None:
        statement = (
            select(Reservation)
            .options(selectinload(Reservation.user), selectinload(Reservation.space))
            .where(Reservation.id == reservation_id)
        )
        return self.session.scalars(statement).first()

    def list_reservations(
        self,
        *,
        user_id: int | None = None,
        space_id: int | None = None,
        state: ReservationState | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[Reservation]:
        statement = select(Reservation).options(
            selectinload(Reservation.user), selectinload(Reservation.space)
        )
        if user_id is not None:
            statement = statement.where(Reservation.user_id == user_id)
        if space_id is not None:
            statement = statement.where(Reservation.space_id == space_id)
        if state is not None:
            statement = statement.where(Reservation.state == state)
        if date_from is not None:
            statement = statement.where(Reservation.date >= date_from)
        if date_to is not None:
            statement = statement.where(Reservation.date <= date_to)
        statement = statement.order_by(Reservation.date, Reservation.time_range, Reservation.id)
        return list(self.session.scalars(statement))

    def reservations_on_day(
        self,
        day: date,
        *,
        space_id: int | None = None,
        user_id: int | None = None,
        exclude_reservation_id: int | None = None,
    ) -> list[Reservation]:
        """Non-rejected reservations in ``[day, day + 1)``, eagerly loaded."""
        statement = (
            select(Reservation)
            .options(selectinload(Reservation.user), selectinload(Reservation.space))
            .where(
                Reservation.date >= day,
                Reservation.date < day + timedelta(days=1),
                Reservation.state != ReservationState.REJECTED,
            )
        )
        if space_id is not None:
            statement = statement.where(Reservation.space_id == space_id)
        if user_id is not None:
            statement = statement.where(Reservation.user_id == user_id)
        if exclude_reservation_id is not None:
            statement = statement.where(Reservation.id != exclude_reservation_id)
        statement = statement.order_by(Reservation.time_range, Reservation.id)
        return list(self.session.scalars(statement))

    def count_active_reservations(self, *, space_id: int | None = None, user_id: int | None = None) -> int:
        statement = select(func.count(Reservation.id)).where(Reservation.state.in_(ACTIVE_STATES))
        if space_id is not None:
            statement = statement.where(Reservation.space_id == space_id)
        if user_id is not None:
            statement = statement.where(Reservation.user_id == user_id)
        return int(self.session.scalar(statement) or 0)


class SqlReservationStore:
    def __init__(self, database_url: str = "sqlite:///data/reservations.db") -> None:
        self.database_url = database_url
        self.engine = _create_engine(database_url)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def unit_of_work(self) -> Iterator[StoreSession]:
        """Run a block in one transaction: commit on success, roll back on any error."""
        session = self._session_factory()
        try:
            yield StoreSession(session)
            session.commit()
        except (IntegrityError, OperationalError) as error:
            session.rollback()
            if _is_write_conflict(error):
                logger.warning("Write conflict detected: %s", error.orig)
                raise WriteConflictError("The change conflicts with a concurrent write.") from error
            raise ReservationStorageError(f"Database write failed: {error.orig}") from error
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        with self.unit_of_work() as uow:
            return [row.to_dict() for row in uow.list_events(event_type)]

    def seed_administrator(self, name: str, email: str, password_hash: str, now: datetime | None = None) -> User | None:
        """Create the first Administrator when none exists; return it, or None if one already did."""
        with self.unit_of_work() as uow:
            if uow.count_users(Role.ADMINISTRATOR) > 0:
                return None
            admin = uow.add(
                User(
                    name=name,
                    email=email.strip().lower(),
                    password_hash=password_hash,
                    role=Role.ADMINISTRATOR,
                    created_at=now or datetime.now(),
                )
            )
            uow.log_event("USER_SEEDED", {"user_id": admin.id, "email": admin.email}, now)
            logger.info("Seeded administrator account %s", admin.email)
            return admin

    def dispose(self) -> None:
        self.engine.dispose()


def _create_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, isolation_level="SERIALIZABLE", pool_pre_ping=True)

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    else:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **options)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        # Hand transaction control to the "begin" hook below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        # Writers are serialized for the whole check-then-write sequence.
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _is_write_conflict(error: IntegrityError | OperationalError) -> bool:
    if isinstance(error, IntegrityError):
        return True
    if getattr(error.orig, "pgcode", None) in {"40001", "40P01"}:
        return True
    message = str(error.orig).lower()
    return "database is locked" in message or "could not serialize" in message
