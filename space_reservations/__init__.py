from .availability import AvailabilityChecker, ValidationResult
from .booking import TimeRange, has_time_overlap
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
from .errors import (
	ConfigurationError,
	ConflictError,
	DurationError,
	ForbiddenError,
	FormatError,
	NotFoundError,
	OrderError,
	ReservationError,
	TimeRangeError,
	UnauthorizedError,
	ValidationError,
	WindowError,
)
from .identity import AuthService, Capability, Principal, authenticate, issue_token
from .lifecycle import ReservationCreate, ReservationFilter, ReservationLifecycleManager, ReservationUpdate
from .models import Department, DepartmentType, Reservation, ReservationState, Role, Space, SpaceType, User
from .store import ReservationStorageError, SqlReservationStore, WriteConflictError

__all__ = [
	"AvailabilityChecker",
	"ValidationResult",
	"TimeRange",
	"has_time_overlap",
	"Settings",
	"load_settings",
	"DepartmentInput",
	"DepartmentRegistry",
	"DepartmentUpdate",
	"SpaceCatalog",
	"SpaceFilter",
	"SpaceInput",
	"SpaceUpdate",
	"UserCreate",
	"UserDirectory",
	"UserUpdate",
	"ConfigurationError",
	"ConflictError",
	"DurationError",
	"ForbiddenError",
	"FormatError",
	"NotFoundError",
	"OrderError",
	"ReservationError",
	"TimeRangeError",
	"UnauthorizedError",
	"ValidationError",
	"WindowError",
	"AuthService",
	"Capability",
	"Principal",
	"authenticate",
	"issue_token",
	"ReservationCreate",
	"ReservationFilter",
	"ReservationLifecycleManager",
	"ReservationUpdate",
	"Department",
	"DepartmentType",
	"Reservation",
	"ReservationState",
	"Role",
	"Space",
	"SpaceType",
	"User",
	"ReservationStorageError",
	"SqlReservationStore",
	"WriteConflictError",
]
