from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
import enum
import logging

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from .config import Settings
from .errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from .models import Role, User
from .store import SqlReservationStore

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 100


class Capability(enum.Enum):
    CREATE_RESERVATION = "create_reservation"
    UPDATE_OWN_RESERVATION = "update_own_reservation"
    UPDATE_ANY_RESERVATION = "update_any_reservation"
    REASSIGN_RESERVATION_OWNER = "reassign_reservation_owner"
    SET_RESERVATION_STATE = "set_reservation_state"
    REVIEW_RESERVATION = "review_reservation"
    DELETE_OWN_RESERVATION = "delete_own_reservation"
    DELETE_ANY_RESERVATION = "delete_any_reservation"
    DELETE_APPROVED_RESERVATION = "delete_approved_reservation"
    DELETE_PAST_APPROVED_RESERVATION = "delete_past_approved_reservation"
    VIEW_ALL_RESERVATIONS = "view_all_reservations"
    KEEP_APPROVAL_ON_EDIT = "keep_approval_on_edit"
    MANAGE_SPACES = "manage_spaces"
    MANAGE_DEPARTMENTS = "manage_departments"
    MANAGE_USERS = "manage_users"
    VIEW_USERS = "view_users"


_TEACHER = frozenset(
    {
        Capability.CREATE_RESERVATION,
        Capability.UPDATE_OWN_RESERVATION,
        Capability.DELETE_OWN_RESERVATION,
    }
)
_COORDINATOR = _TEACHER | {
    Capability.UPDATE_ANY_RESERVATION,
    Capability.REASSIGN_RESERVATION_OWNER,
    Capability.DELETE_ANY_RESERVATION,
    Capability.DELETE_APPROVED_RESERVATION,
    Capability.VIEW_ALL_RESERVATIONS,
    Capability.MANAGE_SPACES,
    Capability.VIEW_USERS,
}
_ADMINISTRATOR = frozenset(Capability)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.TEACHER: _TEACHER,
    Role.COORDINATOR: frozenset(_COORDINATOR),
    Role.ADMINISTRATOR: _ADMINISTRATOR,
}


@dataclass(frozen=True)
class Principal:
    """The authenticated caller. Capabilities are resolved once from the role."""

    id: int
    email: str
    role: Role
    capabilities: frozenset[Capability] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", ROLE_CAPABILITIES.get(self.role, frozenset()))

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability, message: str) -> None:
        if not self.can(capability):
            raise ForbiddenError(message)

    @staticmethod
    def for_user(user: User) -> "Principal":
        return Principal(id=user.id, email=user.email, role=user.role)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return check_password_hash(password_hash, password)


def validate_password(password: str | None) -> str:
    if not password:
        raise ValidationError("Password is required.")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(f"Password cannot be longer than {PASSWORD_MAX_LENGTH} characters.")
    return password


def issue_token(user: User, settings: Settings, issued_at: datetime | None = None) -> str:
    issued = issued_at or datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "name": user.name,
        "iat": issued,
        "exp": issued + timedelta(days=settings.jwt_expiration_days),
    }
    if settings.jwt_issuer:
        claims["iss"] = settings.jwt_issuer
    if settings.jwt_audience:
        claims["aud"] = settings.jwt_audience
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=TOKEN_ALGORITHM)


def authenticate(authorization_header: str | None, settings: Settings) -> Principal | None:
    """Resolve the principal behind a ``Bearer`` header.

    Any problem with the credential (missing, malformed, expired, bad
    signature, unexpected claims) yields ``None`` so callers treat it exactly
    like an anonymous request.
    """
    if not authorization_header:
        return None

    scheme, _, token = authorization_header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None

    try:
        claims = jwt.decode(
            token.strip(),
            settings.jwt_secret_key,
            algorithms=[TOKEN_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "id", "email", "role"]},
        )
        return Principal(id=int(claims["id"]), email=str(claims["email"]), role=Role(claims["role"]))
    except (jwt.PyJWTError, KeyError, TypeError, ValueError) as error:
        logger.debug("Rejected bearer token: %s", error)
        return None


class AuthService:
    def __init__(self, store: SqlReservationStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def login(self, email: str | None, password: str | None) -> tuple[str, User]:
        if not email or not password:
            raise ValidationError("Email and password are required.")

        with self.store.unit_of_work() as uow:
            user = uow.find_user_by_email(email)
            if user is None or not verify_password(password, user.password_hash):
                logger.info("Failed login attempt for %s", email.strip().lower())
                raise ValidationError("Invalid credentials.")
            uow.log_event("USER_LOGGED_IN", {"user_id": user.id})

        return issue_token(user, self.settings), user

    def current_user(self, principal: Principal | None) -> User:
        if principal is None:
            raise UnauthorizedError()
        with self.store.unit_of_work() as uow:
            user = uow.get_user(principal.id)
            if user is None:
                raise NotFoundError("User not found.")
            return user

    def change_password(
        self,
        principal: Principal | None,
        current_password: str | None,
        new_password: str | None,
        confirm_password: str | None,
    ) -> None:
        if principal is None:
            raise UnauthorizedError()
        if not current_password:
            raise ValidationError("Current password is required.")
        validate_password(new_password)
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match.")

        with self.store.unit_of_work() as uow:
            user = uow.get_user(principal.id)
            if user is None:
                raise NotFoundError("User not found.")
            if not verify_password(current_password, user.password_hash):
                raise ValidationError("Current password is incorrect.")
            user.password_hash = hash_password(new_password)
            uow.log_event("USER_PASSWORD_CHANGED", {"user_id": user.id})
