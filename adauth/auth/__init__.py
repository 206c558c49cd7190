from .cache import GroupCache
from .models import (
    AuthError,
    AuthResult,
    BackendError,
    DirectoryAuthError,
    DirectoryGroup,
    ExistenceCheckError,
    FallbackAuthError,
    Identity,
    Outcome,
    RegistrationForbidden,
    ServerFault,
    Unauthorized,
)
from .orchestrator import AuthOrchestrator

__all__ = [
    "AuthError",
    "AuthOrchestrator",
    "AuthResult",
    "BackendError",
    "DirectoryAuthError",
    "DirectoryGroup",
    "ExistenceCheckError",
    "FallbackAuthError",
    "GroupCache",
    "Identity",
    "Outcome",
    "RegistrationForbidden",
    "ServerFault",
    "Unauthorized",
]
