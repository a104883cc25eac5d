"""
Relational schema: users, departments, spaces, reservations and the
reservation event log. Enum columns persist their string values.
"""
from __future__ import annotations

import enum
import datetime as dt
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Role(enum.Enum):
    TEACHER = "Teacher"
    COORDINATOR = "Coordinator"
    ADMINISTRATOR = "Administrator"


class DepartmentType(enum.Enum):
    DACI = "DACI"
    DETRI = "DETRI"
    DEE = "DEE"


class SpaceType(enum.Enum):
    CLASSROOM = "Classroom"
    LABORATORY = "Laboratory"
    AUDITORIUM = "Auditorium"


class ReservationState(enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


ACTIVE_STATES = (ReservationState.PENDING, ReservationState.APPROVED)


def _enum_column(enum_cls: type[enum.Enum], length: int) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        length=length,
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(150), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Role] = mapped_column(_enum_column(Role, 20), nullable=False, index=True)
    department_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, default=dt.datetime.now)

    department: Mapped[Optional["Department"]] = relationship(
        back_populates="members", foreign_keys=[department_id], lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<User {self.id} {self.email} ({self.role.value})>"


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    type: Mapped[DepartmentType] = mapped_column(_enum_column(DepartmentType, 10), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    head_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_departments_head_id"),
        unique=True,
        nullable=True,
    )

    head: Mapped[Optional[User]] = relationship(foreign_keys=[head_id], post_update=True, lazy="selectin")
    members: Mapped[list[User]] = relationship(
        back_populates="department", foreign_keys=[User.department_id], lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Department {self.code}>"


class Space(Base):
    __tablename__ = "spaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[SpaceType] = mapped_column(_enum_column(SpaceType, 20), nullable=False, index=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, default=dt.datetime.now)

    def __repr__(self) -> str:
        return f"<Space {self.name}>"


Index("uq_spaces_name_lower", func.lower(Space.name), unique=True)


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    space_id: Mapped[int] = mapped_column(ForeignKey("spaces.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    time_range: Mapped[str] = mapped_column(String(11), nullable=False)
    state: Mapped[ReservationState] = mapped_column(
        _enum_column(ReservationState, 10), nullable=False, default=ReservationState.PENDING
    )
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, default=dt.datetime.now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, default=dt.datetime.now)

    user: Mapped[User] = relationship(lazy="selectin")
    space: Mapped[Space] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_reservations_space_date", "space_id", "date"),
        Index("ix_reservations_user_date", "user_id", "date"),
        # At most one non-rejected reservation per exact slot.
        Index(
            "uq_reservations_active_slot",
            "space_id",
            "date",
            "time_range",
            unique=True,
            sqlite_where=text("state != 'Rejected'"),
            postgresql_where=text("state != 'Rejected'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Reservation {self.id} space={self.space_id} {self.date} {self.time_range} ({self.state.value})>"


class ReservationEvent(Base):
    __tablename__ = "reservation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_time: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_time": self.event_time.isoformat(timespec="seconds"),
            "event_type": self.event_type,
            "payload": self.payload,
        }
