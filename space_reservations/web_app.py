from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Mapping, TypeVar
import enum
import logging

from flask import Flask, jsonify, request

from .config import Settings, load_settings
from .directory import (
    DepartmentInput,
    DepartmentRegistry,
    DepartmentUpdate,
    SpaceCatalog,
    SpaceFilter,
    SpaceInput,
    SpaceUpdate,
    UserCreate,
    UserDirectory,
    UserUpdate,
)
from .errors import ReservationError, UnauthorizedError, ValidationError
from .identity import AuthService, Principal, authenticate, hash_password
from .lifecycle import ReservationCreate, ReservationFilter, ReservationLifecycleManager, ReservationUpdate
from .models import Department, DepartmentType, Reservation, ReservationState, Role, Space, SpaceType, User
from .store import ReservationStorageError, SqlReservationStore

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=enum.Enum)


def create_app(
    settings: Settings | None = None,
    now_provider: Callable[[], datetime] | None = None,
    store: SqlReservationStore | None = None,
) -> Flask:
    settings = (settings or load_settings()).validate()
    app = Flask(__name__)
    store = store or SqlReservationStore(settings.database_url)
    clock: Callable[[], datetime] = now_provider or datetime.now

    auth = AuthService(store, settings)
    reservations = ReservationLifecycleManager(store, now_provider=clock)
    users = UserDirectory(store, now_provider=clock)
    spaces = SpaceCatalog(store, now_provider=clock)
    departments = DepartmentRegistry(store, now_provider=clock)

    if settings.admin_email and settings.admin_password:
        store.seed_administrator(settings.admin_name, settings.admin_email, hash_password(settings.admin_password), clock())

    def _principal() -> Principal | None:
        return authenticate(request.headers.get("Authorization"), settings)

    @app.errorhandler(ReservationError)
    def handle_reservation_error(error: ReservationError) -> Any:
        return jsonify({"ok": False, "message": error.message}), error.status_code

    @app.errorhandler(ReservationStorageError)
    def handle_storage_error(error: ReservationStorageError) -> Any:
        logger.exception("Storage failure while handling %s %s", request.method, request.path)
        return jsonify({"ok": False, "message": "The database rejected the change."}), 500

    # Authentication

    @app.post("/api/auth/login")
    def login() -> Any:
        payload = _json_payload()
        token, user = auth.login(_optional_str(payload, "email"), _optional_str(payload, "password"))
        return jsonify(
            {
                "ok": True,
                "token": token,
                "expires_in": settings.token_lifetime_seconds,
                "user": _serialize_user(user),
            }
        )

    @app.post("/api/auth/logout")
    def logout() -> Any:
        if _principal() is None:
            raise UnauthorizedError()
        return jsonify({"ok": True, "message": "Logged out. Discard the token on the client."})

    @app.post("/api/auth/validate-token")
    def validate_token() -> Any:
        user = auth.current_user(_principal())
        return jsonify({"ok": True, "valid": True, "user": _serialize_user(user)})

    @app.post("/api/auth/change-password")
    def change_password() -> Any:
        payload = _json_payload()
        auth.change_password(
            _principal(),
            _optional_str(payload, "current_password"),
            _optional_str(payload, "new_password"),
            _optional_str(payload, "confirm_password"),
        )
        return jsonify({"ok": True, "message": "Password changed."})

    # Users

    @app.get("/api/users")
    def list_users() -> Any:
        found = users.list_users(
            _principal(),
            role=_enum_value(Role, request.args.get("role"), "role"),
            department_id=_int_value(request.args.get("department_id"), "department_id"),
            search=request.args.get("search") or None,
        )
        return jsonify({"ok": True, "users": [_serialize_user(user) for user in found]})

    @app.post("/api/users")
    def create_user() -> Any:
        payload = _json_payload()
        user = users.create_user(
            _principal(),
            UserCreate(
                name=_required_str(payload, "name"),
                email=_required_str(payload, "email"),
                password=_required_str(payload, "password"),
                role=_required_enum(Role, payload, "role"),
                department_id=_int_field(payload, "department_id"),
            ),
        )
        return jsonify({"ok": True, "user": _serialize_user(user)}), 201

    @app.get("/api/users/<int:user_id>")
    def get_user(user_id: int) -> Any:
        return jsonify({"ok": True, "user": _serialize_user(users.get_user(_principal(), user_id))})

    @app.put("/api/users/<int:user_id>")
    def update_user(user_id: int) -> Any:
        payload = _json_payload()
        user = users.update_user(
            _principal(),
            user_id,
            UserUpdate(
                name=_optional_str(payload, "name"),
                email=_optional_str(payload, "email"),
                password=_optional_str(payload, "password"),
                role=_enum_value(Role, payload.get("role"), "role"),
                department_id=_int_field(payload, "department_id"),
                clear_department="department_id" in payload and payload["department_id"] is None,
            ),
        )
        return jsonify({"ok": True, "user": _serialize_user(user)})

    @app.delete("/api/users/<int:user_id>")
    def delete_user(user_id: int) -> Any:
        deleted = users.delete_user(_principal(), user_id)
        return jsonify({"ok": True, "user": _serialize_user(deleted)})

    # Spaces

    @app.get("/api/spaces")
    def list_spaces() -> Any:
        found = spaces.list_spaces(
            _principal(),
            SpaceFilter(
                type=_enum_value(SpaceType, request.args.get("type"), "type"),
                min_capacity=_int_value(request.args.get("min_capacity"), "min_capacity"),
                only_available=_flag(request.args.get("only_available")),
                search=request.args.get("search") or None,
            ),
        )
        return jsonify({"ok": True, "spaces": [_serialize_space(space) for space in found]})

    @app.get("/api/spaces/type/<space_type>")
    def list_spaces_by_type(space_type: str) -> Any:
        found = spaces.list_spaces(_principal(), SpaceFilter(type=_enum_value(SpaceType, space_type, "type")))
        return jsonify({"ok": True, "spaces": [_serialize_space(space) for space in found]})

    @app.post("/api/spaces")
    def create_space() -> Any:
        payload = _json_payload()
        available = _bool_field(payload, "available")
        space = spaces.create_space(
            _principal(),
            SpaceInput(
                name=_required_str(payload, "name"),
                type=_required_enum(SpaceType, payload, "type"),
                capacity=_required_int(payload, "capacity"),
                location=_required_str(payload, "location"),
                description=_optional_str(payload, "description"),
                available=True if available is None else available,
            ),
        )
        return jsonify({"ok": True, "space": _serialize_space(space)}), 201

    @app.get("/api/spaces/<int:space_id>")
    def get_space(space_id: int) -> Any:
        return jsonify({"ok": True, "space": _serialize_space(spaces.get_space(_principal(), space_id))})

    @app.put("/api/spaces/<int:space_id>")
    def update_space(space_id: int) -> Any:
        payload = _json_payload()
        space = spaces.update_space(
            _principal(),
            space_id,
            SpaceUpdate(
                id=_int_field(payload, "id"),
                name=_optional_str(payload, "name"),
                type=_enum_value(SpaceType, payload.get("type"), "type"),
                capacity=_int_field(payload, "capacity"),
                location=_optional_str(payload, "location"),
                description=_optional_str(payload, "description"),
                available=_bool_field(payload, "available"),
            ),
        )
        return jsonify({"ok": True, "space": _serialize_space(space)})

    @app.delete("/api/spaces/<int:space_id>")
    def delete_space(space_id: int) -> Any:
        deleted = spaces.delete_space(_principal(), space_id)
        return jsonify({"ok": True, "space": _serialize_space(deleted)})

    @app.get("/api/spaces/<int:space_id>/availability")
    def space_availability(space_id: int) -> Any:
        day = _date_value(request.args.get("date"), "date") or clock().date()
        space, occupied = spaces.occupancy(_principal(), space_id, day)
        return jsonify(
            {
                "ok": True,
                "space": _serialize_space(space),
                "date": day.isoformat(),
                "occupied": [
                    {
                        "reservation_id": row.id,
                        "time_range": row.time_range,
                        "state": row.state.value,
                        "user_name": row.user.name,
                    }
                    for row in occupied
                ],
            }
        )

    # Departments

    @app.get("/api/departments")
    def list_departments() -> Any:
        found = departments.list_departments(_principal())
        return jsonify({"ok": True, "departments": [_serialize_department(item) for item in found]})

    @app.post("/api/departments")
    def create_department() -> Any:
        payload = _json_payload()
        department = departments.create_department(
            _principal(),
            DepartmentInput(
                name=_required_str(payload, "name"),
                code=_required_str(payload, "code"),
                type=_required_enum(DepartmentType, payload, "type"),
                description=_optional_str(payload, "description"),
                head_id=_int_field(payload, "head_id"),
            ),
        )
        return jsonify({"ok": True, "department": _serialize_department(department)}), 201

    @app.get("/api/departments/unassigned-teachers")
    def unassigned_teachers() -> Any:
        found = departments.unassigned_teachers(_principal())
        return jsonify({"ok": True, "users": [_serialize_user(user) for user in found]})

    @app.get("/api/departments/<int:department_id>")
    def get_department(department_id: int) -> Any:
        department = departments.get_department(_principal(), department_id)
        return jsonify({"ok": True, "department": _serialize_department(department)})

    @app.put("/api/departments/<int:department_id>")
    def update_department(department_id: int) -> Any:
        payload = _json_payload()
        department = departments.update_department(
            _principal(),
            department_id,
            DepartmentUpdate(
                name=_optional_str(payload, "name"),
                code=_optional_str(payload, "code"),
                type=_enum_value(DepartmentType, payload.get("type"), "type"),
                description=_optional_str(payload, "description"),
            ),
        )
        return jsonify({"ok": True, "department": _serialize_department(department)})

    @app.delete("/api/departments/<int:department_id>")
    def delete_department(department_id: int) -> Any:
        deleted = departments.delete_department(_principal(), department_id)
        return jsonify({"ok": True, "department": {"id": deleted.id, "code": deleted.code, "name": deleted.name}})

    @app.put("/api/departments/<int:department_id>/head")
    def assign_department_head(department_id: int) -> Any:
        payload = _json_payload()
        department = departments.assign_head(_principal(), department_id, _required_int(payload, "user_id"))
        return jsonify({"ok": True, "department": _serialize_department(department)})

    @app.put("/api/departments/<int:department_id>/teachers")
    def assign_department_teacher(department_id: int) -> Any:
        payload = _json_payload()
        department, teacher = departments.assign_teacher(_principal(), department_id, _required_int(payload, "user_id"))
        return jsonify(
            {"ok": True, "department": _serialize_department(department), "user": _serialize_user(teacher)}
        )

    # Reservations

    @app.get("/api/reservations")
    def list_reservations() -> Any:
        found = reservations.list_reservations(
            _principal(),
            ReservationFilter(
                user_id=_int_value(request.args.get("user_id"), "user_id"),
                space_id=_int_value(request.args.get("space_id"), "space_id"),
                state=_enum_value(ReservationState, request.args.get("state"), "state"),
                date_from=_date_value(request.args.get("date_from"), "date_from"),
                date_to=_date_value(request.args.get("date_to"), "date_to"),
            ),
        )
        return jsonify({"ok": True, "reservations": [_serialize_reservation(item) for item in found]})

    @app.post("/api/reservations")
    def create_reservation() -> Any:
        principal = _principal()
        if principal is None:
            raise UnauthorizedError()
        payload = _json_payload()
        user_id = _int_field(payload, "user_id")
        created = reservations.create(
            principal,
            ReservationCreate(
                user_id=principal.id if user_id is None else user_id,
                space_id=_required_int(payload, "space_id"),
                date=_required_date(payload, "date"),
                time_range=_required_str(payload, "time_range"),
                description=_optional_str(payload, "description"),
            ),
        )
        return jsonify({"ok": True, "reservation": _serialize_reservation(created)}), 201

    @app.get("/api/reservations/<int:reservation_id>")
    def get_reservation(reservation_id: int) -> Any:
        found = reservations.get(_principal(), reservation_id)
        return jsonify({"ok": True, "reservation": _serialize_reservation(found)})

    @app.put("/api/reservations/<int:reservation_id>")
    def update_reservation(reservation_id: int) -> Any:
        payload = _json_payload()
        updated = reservations.update(
            _principal(),
            reservation_id,
            ReservationUpdate(
                id=_int_field(payload, "id"),
                user_id=_int_field(payload, "user_id"),
                space_id=_int_field(payload, "space_id"),
                date=_date_value(payload.get("date"), "date"),
                time_range=_optional_str(payload, "time_range"),
                state=_enum_value(ReservationState, payload.get("state"), "state"),
                description=_optional_str(payload, "description"),
            ),
        )
        return jsonify({"ok": True, "reservation": _serialize_reservation(updated)})

    @app.delete("/api/reservations/<int:reservation_id>")
    def delete_reservation(reservation_id: int) -> Any:
        deleted = reservations.delete(_principal(), reservation_id)
        return jsonify({"ok": True, "reservation": _serialize_reservation(deleted)})

    @app.put("/api/reservations/<int:reservation_id>/approve")
    def approve_reservation(reservation_id: int) -> Any:
        approved = reservations.approve(_principal(), reservation_id)
        return jsonify({"ok": True, "reservation": _serialize_reservation(approved)})

    @app.put("/api/reservations/<int:reservation_id>/reject")
    def reject_reservation(reservation_id: int) -> Any:
        rejected = reservations.reject(_principal(), reservation_id)
        return jsonify({"ok": True, "reservation": _serialize_reservation(rejected)})

    return app


def _serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "department_id": user.department_id,
        "department_name": user.department.name if user.department is not None else None,
        "created_at": user.created_at.isoformat(timespec="seconds"),
    }


def _serialize_space(space: Space) -> dict[str, Any]:
    return {
        "id": space.id,
        "name": space.name,
        "type": space.type.value,
        "capacity": space.capacity,
        "location": space.location,
        "description": space.description,
        "available": space.available,
        "created_at": space.created_at.isoformat(timespec="seconds"),
    }


def _serialize_department(department: Department) -> dict[str, Any]:
    head = department.head
    return {
        "id": department.id,
        "name": department.name,
        "code": department.code,
        "type": department.type.value,
        "description": department.description,
        "head": {"id": head.id, "name": head.name, "email": head.email} if head is not None else None,
        "teachers": [
            {"id": member.id, "name": member.name, "email": member.email}
            for member in sorted(department.members, key=lambda member: member.name)
            if member.role == Role.TEACHER
        ],
    }


def _serialize_reservation(reservation: Reservation) -> dict[str, Any]:
    return {
        "id": reservation.id,
        "user_id": reservation.user_id,
        "user_name": reservation.user.name,
        "space_id": reservation.space_id,
        "space_name": reservation.space.name,
        "date": reservation.date.isoformat(),
        "time_range": reservation.time_range,
        "state": reservation.state.value,
        "description": reservation.description,
        "created_at": reservation.created_at.isoformat(timespec="seconds"),
        "updated_at": reservation.updated_at.isoformat(timespec="seconds"),
    }


def _json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("The request body must be a JSON object.")
    return payload


def _optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string.")
    return value


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = _optional_str(payload, key)
    if value is None or not value.strip():
        raise ValidationError(f"{key} is required.")
    return value


def _int_value(value: Any, key: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{key} must be an integer.") from error


def _int_field(payload: Mapping[str, Any], key: str) -> int | None:
    return _int_value(payload.get(key), key)


def _required_int(payload: Mapping[str, Any], key: str) -> int:
    value = _int_field(payload, key)
    if value is None:
        raise ValidationError(f"{key} is required.")
    return value


def _bool_field(payload: Mapping[str, Any], key: str) -> bool | None:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        return value
    raise ValidationError(f"{key} must be true or false.")


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def _date_value(value: Any, key: str) -> date | None:
    if value is None or value == "":
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError as error:
        raise ValidationError(f"{key} must be a date in YYYY-MM-DD format.") from error


def _required_date(payload: Mapping[str, Any], key: str) -> date:
    value = _date_value(payload.get(key), key)
    if value is None:
        raise ValidationError(f"{key} is required.")
    return value


def _enum_value(enum_cls: type[E], value: Any, key: str) -> E | None:
    if value is None or value == "":
        return None
    for member in enum_cls:
        if str(value).strip().lower() == member.value.lower():
            return member
    allowed = ", ".join(member.value for member in enum_cls)
    raise ValidationError(f"{key} must be one of: {allowed}.")


def _required_enum(enum_cls: type[E], payload: Mapping[str, Any], key: str) -> E:
    value = _enum_value(enum_cls, payload.get(key), key)
    if value is None:
        raise ValidationError(f"{key} is required.")
    return value


if __name__ == "__main__":
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings)
    app.run(host="127.0.0.1", port=5000, debug=False)
