"""Authentication against a directory with an optional local fallback."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any

import structlog

from ..monitoring import metrics_data
from .backends import call_backend
from .cache import GroupCache
from .models import (
    DIRECTORY_GROUP_TAG,
    INVALID_CREDENTIALS,
    AuthError,
    AuthResult,
    BackendCall,
    BackendError,
    DirectoryAuthError,
    DirectoryBackend,
    ExistenceCheckError,
    FallbackAuthError,
    FallbackBackend,
    Identity,
    Outcome,
    RegistrationForbidden,
    ServerFault,
    Unauthorized,
)

logger = structlog.get_logger()


class Stage(Enum):
    CHECK_EXISTENCE = "check_existence"
    DIRECTORY_AUTH = "directory_auth"
    FALLBACK_AUTH = "fallback_auth"
    GROUP_RESOLUTION = "group_resolution"
    DONE = "done"


@dataclass(frozen=True)
class Step:
    """Where an authentication goes next; outcome is set once DONE."""

    stage: Stage
    outcome: Outcome[AuthResult] | None = None


def _done(outcome: Outcome[AuthResult]) -> Step:
    return Step(Stage.DONE, outcome)


def _failed(call: BackendCall[Any], error_type: type[AuthError], message: str) -> AuthError:
    """Map a failed backend call onto the orchestrator's error taxonomy."""
    if call.fault is not None:
        return ServerFault(
            f"{call.operation} failed: {call.fault}", code=type(call.fault).__name__
        )
    if call.error is None:
        return error_type(message)
    return error_type(f"{message}: {call.error.message}", code=call.error.code)


def orchestrator_boundary(
    func: Callable[..., Awaitable[Outcome[Any]]],
) -> Callable[..., Awaitable[Outcome[Any]]]:
    """Report anything escaping an orchestrator operation as a ServerFault."""

    @wraps(func)
    async def wrapper(self: "AuthOrchestrator", *args: Any, **kwargs: Any) -> Outcome[Any]:
        try:
            return await func(self, *args, **kwargs)
        except Exception as e:
            logger.error(
                f"Unhandled error in {func.__name__}",
                username=args[0] if args else kwargs.get("user"),
                error=str(e),
                error_type=type(e).__name__,
            )
            return Outcome.failure(ServerFault(str(e), code=type(e).__name__))

    return wrapper


class AuthOrchestrator:
    """Decides which backend answers a request and resolves the user's groups.

    The directory is authoritative for every name it knows. The fallback store
    only serves names the directory does not know, under a suffixed local
    username so the two namespaces never collide.
    """

    def __init__(
        self,
        directory: DirectoryBackend,
        fallback: FallbackBackend | None = None,
        cache: GroupCache | None = None,
        domain_suffix: str | None = None,
        extended_users_suffix: str | None = None,
        group_lookup_delay: float = 0.1,
    ):
        self.directory = directory
        self.fallback = fallback
        self.cache = cache if cache is not None else GroupCache()
        self.domain_suffix = domain_suffix
        self.extended_users_suffix = extended_users_suffix
        self.group_lookup_delay = group_lookup_delay
        self.directory.add_error_listener(self._on_directory_error)

    def identity(self, user: str) -> Identity:
        return Identity(
            username=user,
            domain_suffix=self.domain_suffix,
            extended_users_suffix=self.extended_users_suffix,
        )

    def _on_directory_error(self, error: BackendError) -> None:
        """Consume connection level errors published by the directory."""
        if error.code == INVALID_CREDENTIALS and self.fallback is not None:
            logger.debug("Directory rejected credentials", code=error.code)
            return
        logger.warning(
            "Directory connection error", code=error.code, error=error.message
        )

    @orchestrator_boundary
    async def authenticate(self, user: str, password: str) -> Outcome[AuthResult]:
        """Authenticate user and return its groups; never raises."""
        identity = self.identity(user)

        backend = "directory"
        step = await self._check_existence(identity)
        if step.stage is Stage.DIRECTORY_AUTH:
            step = await self._directory_auth(identity, password)
        elif step.stage is Stage.FALLBACK_AUTH and self.fallback is not None:
            backend = "fallback"
            step = await self._fallback_auth(self.fallback, identity, password)
        if step.stage is Stage.GROUP_RESOLUTION:
            step = await self._resolve_groups(identity)

        if step.outcome is None:
            raise RuntimeError(f"Authentication stopped at {step.stage.value}")
        self._record(backend, step.outcome)
        return step.outcome

    async def _check_existence(self, identity: Identity) -> Step:
        call = await call_backend(
            "user_exists", self.directory.user_exists, identity.username
        )
        if not call.ok:
            error = _failed(call, ExistenceCheckError, "Directory existence check failed")
            logger.warning(
                "Directory existence check failed",
                username=identity.username,
                code=error.code,
            )
            return _done(Outcome.failure(error))

        if call.value:
            return Step(Stage.DIRECTORY_AUTH)

        if self.fallback is None:
            logger.info(
                "User unknown to directory and no fallback configured",
                username=identity.username,
            )
            return _done(Outcome.failure(Unauthorized("Unknown user")))

        return Step(Stage.FALLBACK_AUTH)

    async def _directory_auth(self, identity: Identity, password: str) -> Step:
        call = await call_backend(
            "authenticate", self.directory.authenticate, identity.principal, password
        )
        if not call.ok:
            error = _failed(call, DirectoryAuthError, "Directory authentication failed")
            logger.warning(
                "Directory authentication failed",
                username=identity.username,
                code=error.code,
            )
            return _done(Outcome.failure(error))

        if not call.value:
            logger.warning("Directory rejected credentials", username=identity.username)
            return _done(
                Outcome.failure(Unauthorized("Directory authentication failed"))
            )

        logger.info("Directory authentication succeeded", username=identity.username)
        return Step(Stage.GROUP_RESOLUTION)

    async def _fallback_auth(
        self, fallback: FallbackBackend, identity: Identity, password: str
    ) -> Step:
        call = await call_backend(
            "fallback_authenticate",
            fallback.authenticate,
            identity.fallback_username,
            password,
        )
        if not call.ok:
            error = _failed(call, FallbackAuthError, "Local authentication failed")
            logger.warning(
                "Local authentication failed",
                username=identity.username,
                code=error.code,
            )
            return _done(Outcome.failure(error))

        if not call.value:
            logger.warning("Local store rejected credentials", username=identity.username)
            return _done(Outcome.failure(Unauthorized("Local authentication failed")))

        logger.info("Local authentication succeeded", username=identity.username)
        return _done(
            Outcome.success(
                AuthResult(
                    username=identity.username,
                    groups=[identity.username, identity.suffix],
                    backend="fallback",
                )
            )
        )

    async def _resolve_groups(self, identity: Identity) -> Step:
        user = identity.username
        minimal = [user, DIRECTORY_GROUP_TAG]

        cached = self.cache.get(user)
        if cached is not None:
            metrics_data["group_cache_total"]["hit"] += 1
            return _done(
                Outcome.success(AuthResult(username=user, groups=list(cached.groups)))
            )
        metrics_data["group_cache_total"]["miss"] += 1

        # Spaces out bursts of lookups against the directory.
        await asyncio.sleep(self.group_lookup_delay)

        call = await call_backend(
            "get_group_membership", self.directory.get_group_membership, user
        )
        if not call.ok:
            metrics_data["group_lookups_degraded_total"] += 1
            logger.warning(
                "Group resolution degraded, returning minimal groups",
                username=user,
                error=str(call.error or call.fault),
            )
            return _done(Outcome.success(AuthResult(username=user, groups=minimal)))

        fetched = call.value or []
        groups = minimal + [group.common_name for group in fetched]
        self.cache.put(user, groups)
        logger.info("Resolved directory groups", username=user, groups_count=len(fetched))
        return _done(Outcome.success(AuthResult(username=user, groups=groups)))

    def _record(self, backend: str, outcome: Outcome[AuthResult]) -> None:
        """Count the attempt under the backend that answered it."""
        label = "success" if outcome.ok else type(outcome.error).__name__
        metrics_data["authentications_total"][backend][label] += 1

    @orchestrator_boundary
    async def register_user(self, user: str, password: str) -> Outcome[bool]:
        """Create a local account unless the directory already owns the name.

        Returns success(False) when the directory knows the user: registration
        is skipped, not rejected.
        """
        identity = self.identity(user)
        self.cache.invalidate(user)

        call = await call_backend("user_exists", self.directory.user_exists, user)
        if not call.ok:
            error = _failed(call, ExistenceCheckError, "Directory existence check failed")
            logger.warning(
                "Directory existence check failed", username=user, code=error.code
            )
            return self._registered(Outcome.failure(error))

        if call.value:
            logger.info("User exists in directory, registration skipped", username=user)
            return self._registered(Outcome.success(False))

        if self.fallback is None:
            logger.warning(
                "No local credential store configured. Registration is forbidden",
                username=user,
            )
            return self._registered(
                Outcome.failure(
                    RegistrationForbidden(
                        "No local credential store configured. Registration is forbidden"
                    )
                )
            )

        added = await call_backend(
            "add_user", self.fallback.add_user, identity.fallback_username, password
        )
        if added.fault is not None:
            return self._registered(
                Outcome.failure(_failed(added, FallbackAuthError, "Registration failed"))
            )
        if added.error is not None:
            logger.warning(
                "Local registration failed", username=user, code=added.error.code
            )
            return self._registered(Outcome.failure(added.error))

        logger.info("Local user registered", username=user, created=bool(added.value))
        return self._registered(Outcome.success(bool(added.value)))

    def _registered(self, outcome: Outcome[bool]) -> Outcome[bool]:
        if outcome.ok:
            label = "created" if outcome.value else "skipped"
        else:
            label = type(outcome.error).__name__
        metrics_data["registrations_total"][label] += 1
        return outcome
