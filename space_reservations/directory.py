from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable
import logging
import re

from .availability import AvailabilityChecker
from .errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from .identity import Capability, Principal, hash_password, validate_password
from .models import Department, DepartmentType, Reservation, Role, Space, SpaceType, User
from .store import SqlReservationStore, StoreSession, WriteConflictError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_CAPACITY = 1
MAX_CAPACITY = 1000


@dataclass(frozen=True)
class UserCreate:
    name: str
    email: str
    password: str
    role: Role
    department_id: int | None = None


@dataclass(frozen=True)
class UserUpdate:
    name: str | None = None
    email: str | None = None
    password: str | None = None
    role: Role | None = None
    department_id: int | None = None
    clear_department: bool = False


@dataclass(frozen=True)
class SpaceInput:
    name: str
    type: SpaceType
    capacity: int
    location: str
    description: str | None = None
    available: bool = True


@dataclass(frozen=True)
class SpaceUpdate:
    id: int | None = None
    name: str | None = None
    type: SpaceType | None = None
    capacity: int | None = None
    location: str | None = None
    description: str | None = None
    available: bool | None = None


@dataclass(frozen=True)
class SpaceFilter:
    type: SpaceType | None = None
    min_capacity: int | None = None
    only_available: bool = False
    search: str | None = None


@dataclass(frozen=True)
class DepartmentInput:
    name: str
    code: str
    type: DepartmentType
    description: str | None = None
    head_id: int | None = None


@dataclass(frozen=True)
class DepartmentUpdate:
    name: str | None = None
    code: str | None = None
    type: DepartmentType | None = None
    description: str | None = None


class _Service:
    def __init__(self, store: SqlReservationStore, now_provider: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock: Callable[[], datetime] = now_provider or datetime.now


class UserDirectory(_Service):
    """User accounts. At least one Administrator exists at all times."""

    def list_users(
        self,
        principal: Principal | None,
        *,
        role: Role | None = None,
        department_id: int | None = None,
        search: str | None = None,
    ) -> list[User]:
        _require(principal, Capability.VIEW_USERS, "You are not allowed to list users.")
        with self.store.unit_of_work() as uow:
            return uow.list_users(role=role, department_id=department_id, search=search)

    def get_user(self, principal: Principal | None, user_id: int) -> User:
        principal = _authenticated(principal)
        if principal.id != user_id and not principal.can(Capability.VIEW_USERS):
            raise ForbiddenError("You can only view your own account.")
        with self.store.unit_of_work() as uow:
            return _get_user(uow, user_id)

    def create_user(self, principal: Principal | None, request: UserCreate) -> User:
        principal = _require(principal, Capability.MANAGE_USERS, "Only administrators can create users.")
        name = _required_text(request.name, "Name", 100)
        email = _validate_email(request.email)
        validate_password(request.password)
        now = self._clock()

        with self.store.unit_of_work() as uow:
            if uow.find_user_by_email(email) is not None:
                raise ConflictError(f"A user with email {email} already exists.")
            department = _get_department(uow, request.department_id) if request.department_id is not None else None
            user = uow.add(
                User(
                    name=name,
                    email=email,
                    password_hash=hash_password(request.password),
                    role=request.role,
                    department=department,
                    created_at=now,
                )
            )
            uow.log_event(
                "USER_CREATED",
                {"user_id": user.id, "email": email, "role": user.role.value, "actor_id": principal.id},
                now,
            )

        logger.info("User %s created with role %s", user.email, user.role.value)
        return user

    def update_user(self, principal: Principal | None, user_id: int, request: UserUpdate) -> User:
        principal = _authenticated(principal)
        is_manager = principal.can(Capability.MANAGE_USERS)
        if principal.id != user_id and not is_manager:
            raise ForbiddenError("You can only update your own account.")
        if not is_manager and (
            request.role is not None or request.department_id is not None or request.clear_department
        ):
            raise ForbiddenError("Only administrators can change roles or departments.")

        name = _required_text(request.name, "Name", 100) if request.name is not None else None
        email = _validate_email(request.email) if request.email is not None else None
        if request.password is not None:
            validate_password(request.password)
        now = self._clock()

        with _translate_write_conflict("A user with that email already exists."):
            with self.store.unit_of_work() as uow:
                user = _get_user(uow, user_id)

                if email is not None and email != user.email:
                    existing = uow.find_user_by_email(email)
                    if existing is not None and existing.id != user.id:
                        raise ConflictError(f"A user with email {email} already exists.")
                    user.email = email
                if name is not None:
                    user.name = name
                if request.password is not None:
                    user.password_hash = hash_password(request.password)

                if request.role is not None and request.role != user.role:
                    _ensure_role_change_allowed(uow, user)
                    user.role = request.role

                if request.clear_department:
                    user.department = None
                elif request.department_id is not None:
                    user.department = _get_department(uow, request.department_id)

                uow.flush()
                uow.log_event("USER_UPDATED", {"user_id": user.id, "actor_id": principal.id}, now)

        return user

    def delete_user(self, principal: Principal | None, user_id: int) -> User:
        principal = _require(principal, Capability.MANAGE_USERS, "Only administrators can delete users.")
        now = self._clock()

        with self.store.unit_of_work() as uow:
            user = _get_user(uow, user_id)
            if user.role == Role.ADMINISTRATOR and uow.count_users(Role.ADMINISTRATOR) <= 1:
                raise ConflictError("The last administrator account cannot be deleted.")

            headed = uow.find_department_headed_by(user.id)
            if headed is not None:
                headed.head = None
                uow.flush()
            removed = uow.list_reservations(user_id=user.id)
            for reservation in removed:
                uow.delete(reservation)
            uow.delete(user)
            uow.log_event(
                "USER_DELETED",
                {"user_id": user.id, "email": user.email, "removed_reservations": len(removed), "actor_id": principal.id},
                now,
            )

        logger.info("User %s deleted together with %d reservations", user.email, len(removed))
        return user


class SpaceCatalog(_Service):
    """Bookable spaces. Spaces with active reservations cannot be deleted or disabled."""

    def list_spaces(self, principal: Principal | None, filters: SpaceFilter | None = None) -> list[Space]:
        _authenticated(principal)
        filters = filters or SpaceFilter()
        with self.store.unit_of_work() as uow:
            return uow.list_spaces(
                space_type=filters.type,
                min_capacity=filters.min_capacity,
                only_available=filters.only_available,
                search=filters.search,
            )

    def get_space(self, principal: Principal | None, space_id: int) -> Space:
        _authenticated(principal)
        with self.store.unit_of_work() as uow:
            return _get_space(uow, space_id)

    def create_space(self, principal: Principal | None, request: SpaceInput) -> Space:
        principal = _require(principal, Capability.MANAGE_SPACES, "You are not allowed to manage spaces.")
        name = _required_text(request.name, "Name", 100)
        location = _required_text(request.location, "Location", 200)
        description = _optional_text(request.description, "Description", 500)
        capacity = _validate_capacity(request.capacity)
        now = self._clock()

        with _translate_write_conflict(f"A space named {name} already exists."):
            with self.store.unit_of_work() as uow:
                if uow.find_space_by_name(name) is not None:
                    raise ConflictError(f"A space named {name} already exists.")
                space = uow.add(
                    Space(
                        name=name,
                        type=request.type,
                        capacity=capacity,
                        location=location,
                        description=description,
                        available=request.available,
                        created_at=now,
                    )
                )
                uow.log_event("SPACE_CREATED", {"space_id": space.id, "name": name, "actor_id": principal.id}, now)

        logger.info("Space %s created", space.name)
        return space

    def update_space(self, principal: Principal | None, space_id: int, request: SpaceUpdate) -> Space:
        principal = _require(principal, Capability.MANAGE_SPACES, "You are not allowed to manage spaces.")
        if request.id is not None and request.id != space_id:
            raise ValidationError("The space id in the path does not match the payload.")
        name = _required_text(request.name, "Name", 100) if request.name is not None else None
        location = _required_text(request.location, "Location", 200) if request.location is not None else None
        description = _optional_text(request.description, "Description", 500)
        capacity = _validate_capacity(request.capacity) if request.capacity is not None else None
        now = self._clock()

        with _translate_write_conflict("A space with that name already exists."):
            with self.store.unit_of_work() as uow:
                space = _get_space(uow, space_id)

                if name is not None and name != space.name:
                    existing = uow.find_space_by_name(name)
                    if existing is not None and existing.id != space.id:
                        raise ConflictError(f"A space named {name} already exists.")
                    space.name = name
                if request.available is False and space.available:
                    active = uow.count_active_reservations(space_id=space.id)
                    if active:
                        raise ConflictError(
                            f"Space {space.name} has {active} active reservations and cannot be marked unavailable."
                        )
                if request.available is not None:
                    space.available = request.available
                if request.type is not None:
                    space.type = request.type
                if capacity is not None:
                    space.capacity = capacity
                if location is not None:
                    space.location = location
                if description is not None:
                    space.description = description

                uow.flush()
                uow.log_event("SPACE_UPDATED", {"space_id": space.id, "actor_id": principal.id}, now)

        return space

    def delete_space(self, principal: Principal | None, space_id: int) -> Space:
        principal = _require(principal, Capability.MANAGE_SPACES, "You are not allowed to manage spaces.")
        now = self._clock()

        with self.store.unit_of_work() as uow:
            space = _get_space(uow, space_id)
            active = uow.count_active_reservations(space_id=space.id)
            if active:
                raise ConflictError(f"Space {space.name} has {active} active reservations and cannot be deleted.")
            for reservation in uow.list_reservations(space_id=space.id):
                uow.delete(reservation)
            uow.delete(space)
            uow.log_event("SPACE_DELETED", {"space_id": space.id, "name": space.name, "actor_id": principal.id}, now)

        logger.info("Space %s deleted", space.name)
        return space

    def occupancy(self, principal: Principal | None, space_id: int, day: date) -> tuple[Space, list[Reservation]]:
        """The space and its non-rejected reservations for ``day``, ordered by start time."""
        _authenticated(principal)
        with self.store.unit_of_work() as uow:
            space = _get_space(uow, space_id)
            return space, AvailabilityChecker(uow).occupied_ranges(space.id, day)


class DepartmentRegistry(_Service):
    """Departments. A head must be a Coordinator and heads at most one department."""

    def list_departments(self, principal: Principal | None) -> list[Department]:
        _authenticated(principal)
        with self.store.unit_of_work() as uow:
            return uow.list_departments()

    def get_department(self, principal: Principal | None, department_id: int) -> Department:
        _authenticated(principal)
        with self.store.unit_of_work() as uow:
            return _get_department(uow, department_id)

    def create_department(self, principal: Principal | None, request: DepartmentInput) -> Department:
        principal = _require(principal, Capability.MANAGE_DEPARTMENTS, "Only administrators can create departments.")
        name = _required_text(request.name, "Name", 100)
        code = _required_text(request.code, "Code", 10).upper()
        description = _optional_text(request.description, "Description", 500)
        now = self._clock()

        with _translate_write_conflict(f"A department with code {code} already exists."):
            with self.store.unit_of_work() as uow:
                if uow.find_department_by_code(code) is not None:
                    raise ConflictError(f"A department with code {code} already exists.")
                head = None
                if request.head_id is not None:
                    head = _eligible_head(uow, request.head_id, department_id=None)
                department = uow.add(
                    Department(name=name, code=code, type=request.type, description=description, head=head, members=[])
                )
                uow.log_event(
                    "DEPARTMENT_CREATED",
                    {"department_id": department.id, "code": code, "actor_id": principal.id},
                    now,
                )

        logger.info("Department %s created", department.code)
        return department

    def update_department(self, principal: Principal | None, department_id: int, request: DepartmentUpdate) -> Department:
        principal = _require(principal, Capability.MANAGE_DEPARTMENTS, "Only administrators can update departments.")
        name = _required_text(request.name, "Name", 100) if request.name is not None else None
        code = _required_text(request.code, "Code", 10).upper() if request.code is not None else None
        description = _optional_text(request.description, "Description", 500)
        now = self._clock()

        with _translate_write_conflict("A department with that code already exists."):
            with self.store.unit_of_work() as uow:
                department = _get_department(uow, department_id)
                if code is not None and code != department.code:
                    existing = uow.find_department_by_code(code)
                    if existing is not None and existing.id != department.id:
                        raise ConflictError(f"A department with code {code} already exists.")
                    department.code = code
                if name is not None:
                    department.name = name
                if request.type is not None:
                    department.type = request.type
                if description is not None:
                    department.description = description
                uow.flush()
                uow.log_event("DEPARTMENT_UPDATED", {"department_id": department.id, "actor_id": principal.id}, now)

        return department

    def delete_department(self, principal: Principal | None, department_id: int) -> Department:
        principal = _require(principal, Capability.MANAGE_DEPARTMENTS, "Only administrators can delete departments.")
        now = self._clock()

        with self.store.unit_of_work() as uow:
            department = _get_department(uow, department_id)
            for member in list(department.members):
                member.department = None
            department.head = None
            uow.flush()
            uow.delete(department)
            uow.log_event("DEPARTMENT_DELETED", {"department_id": department_id, "actor_id": principal.id}, now)

        return department

    def assign_head(self, principal: Principal | None, department_id: int, user_id: int) -> Department:
        principal = _require(
            principal, Capability.MANAGE_DEPARTMENTS, "Only administrators can assign department heads."
        )
        now = self._clock()

        with self.store.unit_of_work() as uow:
            department = _get_department(uow, department_id)
            department.head = _eligible_head(uow, user_id, department_id=department.id)
            uow.flush()
            uow.log_event(
                "DEPARTMENT_HEAD_ASSIGNED",
                {"department_id": department.id, "user_id": user_id, "actor_id": principal.id},
                now,
            )

        logger.info("User %s now heads department %s", user_id, department.code)
        return department

    def assign_teacher(self, principal: Principal | None, department_id: int, user_id: int) -> tuple[Department, User]:
        principal = _require(
            principal, Capability.MANAGE_DEPARTMENTS, "Only administrators can assign teachers to departments."
        )
        now = self._clock()

        with self.store.unit_of_work() as uow:
            department = _get_department(uow, department_id)
            teacher = _get_user(uow, user_id)
            if teacher.role != Role.TEACHER:
                raise ValidationError("Only teachers can be assigned to a department.")
            teacher.department = department
            uow.flush()
            uow.log_event(
                "DEPARTMENT_TEACHER_ASSIGNED",
                {"department_id": department.id, "user_id": teacher.id, "actor_id": principal.id},
                now,
            )

        return department, teacher

    def unassigned_teachers(self, principal: Principal | None) -> list[User]:
        _require(principal, Capability.MANAGE_DEPARTMENTS, "Only administrators can view unassigned teachers.")
        with self.store.unit_of_work() as uow:
            return uow.list_users(role=Role.TEACHER, without_department=True)


def _authenticated(principal: Principal | None) -> Principal:
    if principal is None:
        raise UnauthorizedError()
    return principal


def _require(principal: Principal | None, capability: Capability, message: str) -> Principal:
    principal = _authenticated(principal)
    principal.require(capability, message)
    return principal


@contextmanager
def _translate_write_conflict(message: str) -> Iterator[None]:
    """Report a lost unique-constraint race as a ConflictError."""
    try:
        yield
    except WriteConflictError as error:
        raise ConflictError(message) from error


def _get_user(uow: StoreSession, user_id: int) -> User:
    user = uow.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")
    return user


def _get_space(uow: StoreSession, space_id: int) -> Space:
    space = uow.get_space(space_id)
    if space is None:
        raise NotFoundError(f"Space {space_id} not found.")
    return space


def _get_department(uow: StoreSession, department_id: int) -> Department:
    department = uow.get_department(department_id)
    if department is None:
        raise NotFoundError(f"Department {department_id} not found.")
    return department


def _eligible_head(uow: StoreSession, user_id: int, department_id: int | None) -> User:
    head = _get_user(uow, user_id)
    if head.role != Role.COORDINATOR:
        raise ValidationError("Only coordinators can head a department.")
    headed = uow.find_department_headed_by(head.id)
    if headed is not None and headed.id != department_id:
        raise ConflictError(f"{head.name} already heads department {headed.code}.")
    return head


def _ensure_role_change_allowed(uow: StoreSession, user: User) -> None:
    if user.role == Role.ADMINISTRATOR and uow.count_users(Role.ADMINISTRATOR) <= 1:
        raise ConflictError("The last administrator cannot be given another role.")
    if user.role == Role.COORDINATOR and uow.find_department_headed_by(user.id) is not None:
        raise ConflictError(f"{user.name} heads a department and must remain a coordinator.")


def _required_text(value: str | None, label: str, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required.")
    if len(text) > max_length:
        raise ValidationError(f"{label} cannot be longer than {max_length} characters.")
    return text


def _optional_text(value: str | None, label: str, max_length: int) -> str | None:
    if value is None:
        return None
    text = value.strip()
    if len(text) > max_length:
        raise ValidationError(f"{label} cannot be longer than {max_length} characters.")
    return text


def _validate_email(value: str | None) -> str:
    email = _required_text(value, "Email", 150).lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("Email format is not valid.")
    return email


def _validate_capacity(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Capacity must be an integer.")
    if not MIN_CAPACITY <= value <= MAX_CAPACITY:
        raise ValidationError(f"Capacity must be between {MIN_CAPACITY} and {MAX_CAPACITY}.")
    return value
