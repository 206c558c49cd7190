"""Authentication models, backend protocols and error types."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

T = TypeVar("T")

DIRECTORY_GROUP_TAG = "$ActiveDirectory"
DEFAULT_EXTENDED_USERS_SUFFIX = "OUTSOURCE"
# LDAP description of a rejected bind
INVALID_CREDENTIALS = "invalidCredentials"


class AuthError(Exception):
    """Base class for every failure reported by the authentication engine."""

    status_code = 500

    def __init__(
        self, message: str, code: str | None = None, status_code: int | None = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code


class BackendError(AuthError):
    """Failure signalled by a backend through its error contract."""


class ExistenceCheckError(AuthError):
    """The directory could not be asked whether the user exists."""

    status_code = 502


class DirectoryAuthError(AuthError):
    """The directory credential check failed at the transport level."""

    status_code = 502


class FallbackAuthError(AuthError):
    """The local credential store check failed."""


class Unauthorized(AuthError):
    """Credentials were rejected by the backend that answered."""

    status_code = 401


class RegistrationForbidden(AuthError):
    """Registration is not possible without a local credential store."""

    status_code = 409


class ServerFault(AuthError):
    """A backend raised outside of its error contract."""


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or an AuthError, never both."""

    value: T | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "Outcome[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass
class AuthResult:
    """Successful authentication: the user and its resolved groups."""

    username: str
    groups: list[str]
    backend: str = "directory"


@dataclass
class GroupCacheEntry:
    """Groups resolved for a user and when they were fetched."""

    groups: list[str]
    last_checked: float


@dataclass(frozen=True)
class DirectoryGroup:
    """A group the directory reports the user as a member of."""

    common_name: str
    dn: str = ""


@dataclass(frozen=True)
class Identity:
    """Derives backend specific usernames from a login name."""

    username: str
    domain_suffix: str | None = None
    extended_users_suffix: str | None = None

    @property
    def principal(self) -> str:
        """Fully qualified name presented to the directory."""
        if self.domain_suffix:
            return f"{self.username}@{self.domain_suffix}"
        return self.username

    @property
    def suffix(self) -> str:
        return self.extended_users_suffix or DEFAULT_EXTENDED_USERS_SUFFIX

    @property
    def fallback_username(self) -> str:
        """Local store name, kept apart from directory names by the suffix."""
        return f"{self.username}__{self.suffix}"


ErrorListener = Callable[[BackendError], Any]


class DirectoryBackend(Protocol):
    """Protocol for the primary, authoritative directory service."""

    async def user_exists(self, user: str) -> bool: ...

    async def authenticate(self, principal: str, password: str) -> bool: ...

    async def get_group_membership(self, user: str) -> Sequence[DirectoryGroup]: ...

    def add_error_listener(self, listener: ErrorListener) -> None: ...


class FallbackBackend(Protocol):
    """Protocol for the optional local credential store."""

    async def authenticate(self, user: str, password: str) -> bool: ...

    async def add_user(self, user: str, password: str) -> bool: ...


@dataclass
class BackendCall(Generic[T]):
    """Outcome of a single backend call, as seen by the orchestrator."""

    operation: str
    value: T | None = None
    error: BackendError | None = None
    fault: Exception | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None and self.fault is None
